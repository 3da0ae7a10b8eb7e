#!/usr/bin/env python3
"""
Backtest every strategy file of a folder on synthetic datasets.

**Purpose**: This script shows the full harness end to end:
  1. Load every `*.py` file of a folder as an isolated strategy (each file
     defines `portfolio_fun`).
  2. Generate N synthetic GBM datasets (OHLCV plus a market index).
  3. Run the rolling-window backtest on the strategy x dataset matrix, with
     the requested benchmarks and worker counts.
  4. Print the cross-dataset summary, the failures, and the leaderboard.

**Usage**:
    python actions/run_strategy_folder_backtest.py
    python actions/run_strategy_folder_backtest.py actions/strategies --n-datasets 20
    python actions/run_strategy_folder_backtest.py my_strategies --lookback 120 --rebalance-every 20 \
        --cost-bps 15 --parallel-datasets 4 --progress

**Exit codes**:
  - 0: Backtest ran (individual strategy faults are reported, not fatal)
  - 1: Configuration error (missing folder, broken strategy file, bad option)
"""

import argparse
import sys
from pathlib import Path

import pandas as pd

# Add project root to Python path so we can import portfolio_backtest
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from portfolio_backtest.analytics.synthetic_data import generate_gbm_datasets
from portfolio_backtest.backtesting.reporting import backtest_leaderboard, backtest_summary
from portfolio_backtest.config.settings import BacktestConfig
from portfolio_backtest.orchestration.scheduler import run_backtests
from portfolio_backtest.strategies.loader import load_strategies_from_folder
from portfolio_backtest.utils.errors import BacktestConfigError
from portfolio_backtest.utils.log import configure_logging

DEFAULT_FOLDER = Path(__file__).parent / "strategies"

LEADERBOARD_WEIGHTS = {
    "sharpe_ratio": 7,
    "max_drawdown": 1,
    "annual_volatility": 1,
    "cpu_time": 1,
    "failure_rate": 4,
}


def parse_args():
    """
    Parse command line arguments.

    Returns:
        Namespace with the folder, dataset generation and backtest options.
    """
    parser = argparse.ArgumentParser(
        description="Backtest a folder of portfolio_fun strategy files on synthetic datasets",
        epilog="""
Examples:
  # Bundled example strategies, 10 datasets, defaults
  python actions/run_strategy_folder_backtest.py

  # Monthly rebalancing with 15 bps costs, 4 dataset workers
  python actions/run_strategy_folder_backtest.py my_strategies --rebalance-every 21 --cost-bps 15 --parallel-datasets 4
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "folder",
        nargs="?",
        default=str(DEFAULT_FOLDER),
        help=f"Folder of strategy files (default: {DEFAULT_FOLDER})",
    )
    parser.add_argument("--n-datasets", type=int, default=10, help="Number of synthetic datasets (default: 10)")
    parser.add_argument("--n-assets", type=int, default=50, help="Assets per dataset (default: 50)")
    parser.add_argument("--n-bars", type=int, default=504, help="Bars per dataset (default: 504, about 2 years)")
    parser.add_argument("--seed", type=int, default=42, help="Master seed for the datasets (default: 42)")
    parser.add_argument("--lookback", type=int, default=120, help="Lookback window in bars (default: 120)")
    parser.add_argument("--rebalance-every", type=int, default=20, help="Bars between rebalances (default: 20)")
    parser.add_argument("--optimize-every", type=int, default=None, help="Bars between optimizations (default: rebalance)")
    parser.add_argument("--cost-bps", type=float, default=0.0, help="Buy and sell cost in basis points (default: 0)")
    parser.add_argument("--parallel-strategies", type=int, default=1, help="Workers across strategies (default: 1)")
    parser.add_argument("--parallel-datasets", type=int, default=1, help="Workers across datasets (default: 1)")
    parser.add_argument(
        "--backend",
        choices=["process", "thread"],
        default="process",
        help="Worker pool type (default: process)",
    )
    parser.add_argument(
        "--summary",
        choices=["median", "mean", "worst"],
        default="median",
        help="Cross-dataset summary function (default: median)",
    )
    parser.add_argument("--shared-namespace", action="store_true", help="Load all files into one namespace")
    parser.add_argument("--progress", action="store_true", help="Show a progress bar")
    parser.add_argument("--log-level", default=None, help="Logging level (default: PORTFOLIO_BACKTEST_LOG_LEVEL)")

    return parser.parse_args()


def print_section(title: str) -> None:
    print()
    print("=" * 80)
    print(title)
    print("=" * 80)


def main():
    """
    Main entry point for the script.

    **Error handling strategy**:
      - Configuration errors (folder, strategy files, options) exit with code 1
        before anything runs.
      - Strategy faults during the backtest are part of the results and are
        printed, not raised.
    """
    args = parse_args()
    configure_logging(args.log_level)

    try:
        strategies = load_strategies_from_folder(args.folder, isolated=not args.shared_namespace)
        config = BacktestConfig.from_settings(
            lookback_window=args.lookback,
            rebalance_every=args.rebalance_every,
            optimize_every=args.optimize_every,
            transaction_cost=args.cost_bps / 1e4,
            benchmarks=("uniform", "index"),
            parallel_strategies=args.parallel_strategies,
            parallel_datasets=args.parallel_datasets,
            backend=args.backend,
            show_progress=args.progress,
        )
        print(f"Loaded {len(strategies)} strategies from {args.folder}: {[s.name for s in strategies]}")

        datasets = generate_gbm_datasets(
            args.n_datasets,
            n_assets=args.n_assets,
            n_bars=args.n_bars,
            seed=args.seed,
        )
        print(f"Generated {len(datasets)} datasets of {args.n_bars} bars x {args.n_assets} assets")

        results = run_backtests(strategies, datasets, config)
    except BacktestConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    summary = backtest_summary(results, summary_fun=args.summary)

    with pd.option_context("display.width", 160, "display.max_columns", 20, "display.precision", 4):
        print_section(f"Performance summary ({summary.summary_fun} over {len(datasets)} datasets)")
        print(summary.performance_summary)

        print_section("Failure rate and average CPU time per run")
        print(pd.DataFrame({"failure_rate": summary.failure_rate, "cpu_time_average": summary.cpu_time_average}))

        failing = summary.error_message.dropna()
        if len(failing):
            print_section("First error per failing strategy")
            for name, message in failing.items():
                print(f"  ✗ {name}: {message}")

        print_section(f"Leaderboard (weights: {LEADERBOARD_WEIGHTS})")
        print(backtest_leaderboard(results, LEADERBOARD_WEIGHTS, summary_fun=args.summary))


if __name__ == "__main__":
    main()
