"""
portfolio_backtest: rolling-window backtesting of many portfolio strategies on many datasets.

Typical use:

    from portfolio_backtest import (
        BacktestConfig, run_backtests, backtest_summary, backtest_leaderboard,
    )

    config = BacktestConfig(lookback_window=120, rebalance_every=20, benchmarks=("uniform",))
    results = run_backtests({"GMVP": gmvp_fun, "MSRP": msrp_fun}, datasets, config)
    print(backtest_summary(results).performance_summary)
    print(backtest_leaderboard(results, {"sharpe_ratio": 1, "max_drawdown": 1}))
"""

from portfolio_backtest.analytics.performance import (
    add_performance,
    evaluate_run,
    register_performance_measure,
    unregister_performance_measure,
)
from portfolio_backtest.analytics.synthetic_data import generate_gbm_dataset, generate_gbm_datasets
from portfolio_backtest.backtesting.engine import RunResult, RunStatus, run_backtest
from portfolio_backtest.backtesting.reporting import (
    backtest_leaderboard,
    backtest_summary,
    backtest_table,
    select_strategy,
)
from portfolio_backtest.backtesting.results import BacktestResultSet
from portfolio_backtest.config.settings import BacktestConfig, TransactionCost
from portfolio_backtest.data.dataset import Dataset
from portfolio_backtest.orchestration.scheduler import run_backtests
from portfolio_backtest.strategies.base import Fault, NamedStrategy, Strategy
from portfolio_backtest.strategies.benchmarks import generate_random_strategies
from portfolio_backtest.strategies.loader import (
    FileStrategy,
    load_strategies_from_folder,
    load_strategy_file,
    load_strategy_files,
)
from portfolio_backtest.utils.errors import (
    AggregationError,
    BacktestConfigError,
    BacktestError,
    DatasetValidationError,
    StrategyFault,
    StrategyLoadError,
)
from portfolio_backtest.utils.log import configure_logging

__version__ = "0.1.0"

__all__ = [
    "AggregationError",
    "BacktestConfig",
    "BacktestConfigError",
    "BacktestError",
    "BacktestResultSet",
    "Dataset",
    "DatasetValidationError",
    "Fault",
    "FileStrategy",
    "NamedStrategy",
    "RunResult",
    "RunStatus",
    "Strategy",
    "StrategyFault",
    "StrategyLoadError",
    "TransactionCost",
    "add_performance",
    "backtest_leaderboard",
    "backtest_summary",
    "backtest_table",
    "configure_logging",
    "evaluate_run",
    "generate_gbm_dataset",
    "generate_gbm_datasets",
    "generate_random_strategies",
    "load_strategies_from_folder",
    "load_strategy_file",
    "load_strategy_files",
    "register_performance_measure",
    "run_backtest",
    "run_backtests",
    "select_strategy",
    "unregister_performance_measure",
]
