"""
Rolling-window (walk-forward) backtest engine.

**Conceptual**: The engine evaluates one strategy on one dataset. It walks
forward through the bars in steps of `rebalance_every`; at each rebalance it
hands the strategy the trailing `lookback_window` bars (never anything newer),
takes the proposed weights, pays transaction costs on the move from the held
(drifted) portfolio, and then lets the portfolio ride the realized prices until
the next rebalance. The output is a RunResult: returns, wealth, weights and
turnover series, plus the fault if the strategy failed.

**Run lifecycle**:
  INIT      -> validate bar count, zero weights, wealth = 1
  STEPPING  -> one iteration per rebalance index
  COMPLETED -> every step processed
  FAULTED   -> a step failed; steps before it are kept, later ones skipped

**Timing convention** (no look-ahead):
  - Rebalance index t uses window bars [t - lookback, t).
  - The weights decided at t are held over bars [t, t + rebalance_every).
  - Bar return r_s = P_s / P_{s-1} - 1, so bar t is the first move the
    new allocation is exposed to.

**Teaching note**: The engine never raises because of a strategy. Anything the
strategy does wrong becomes a Fault on the result; the only exceptions that
leave `run_backtest` are configuration errors detected before the first step.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np
import pandas as pd

from portfolio_backtest.config.settings import BacktestConfig
from portfolio_backtest.data.dataset import Dataset
from portfolio_backtest.strategies.base import Fault, Strategy, StrategyAdapter
from portfolio_backtest.utils.errors import BacktestConfigError
from portfolio_backtest.utils.math import (
    compute_simple_returns,
    compute_transaction_cost,
    compute_turnover,
    drift_weights,
)

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    COMPLETED = "completed"
    FAULTED = "faulted"


@dataclass
class RunResult:
    """
    Result of one (strategy, dataset) run.

    Attributes:
        strategy_name: Display name of the strategy.
        dataset_name: Display name of the dataset.
        returns: Net simple return of every held bar (index = bar timestamps).
        wealth: Wealth after every held bar, starting from 1.0.
        weights: Weights set at each rebalance (rows = rebalance timestamps,
                 columns = assets).
        turnover: Turnover of each rebalance (index = rebalance timestamps).
        total_turnover: Sum of turnover over the run.
        cpu_time: CPU seconds spent inside the strategy.
        elapsed_time: Wall-clock seconds of the whole run.
        n_steps: Number of completed rebalance steps.
        status: COMPLETED or FAULTED.
        fault: The captured fault when status is FAULTED.
    """
    strategy_name: str
    dataset_name: str
    returns: pd.Series
    wealth: pd.Series
    weights: pd.DataFrame
    turnover: pd.Series
    total_turnover: float
    cpu_time: float
    elapsed_time: float
    n_steps: int
    status: RunStatus
    fault: Optional[Fault] = None

    @property
    def failed(self) -> bool:
        return self.status == RunStatus.FAULTED

    @property
    def final_wealth(self) -> float:
        return float(self.wealth.iloc[-1]) if len(self.wealth) else 1.0

    @classmethod
    def from_fault(
        cls,
        strategy_name: str,
        dataset_name: str,
        fault: Fault,
        assets: Optional[list] = None,
    ) -> "RunResult":
        """Build a FAULTED result with zero completed steps."""
        empty_index = pd.Index([])
        return cls(
            strategy_name=strategy_name,
            dataset_name=dataset_name,
            returns=pd.Series([], index=empty_index, dtype=float, name="return"),
            wealth=pd.Series([], index=empty_index, dtype=float, name="wealth"),
            weights=pd.DataFrame(columns=assets or [], dtype=float),
            turnover=pd.Series([], index=empty_index, dtype=float, name="turnover"),
            total_turnover=0.0,
            cpu_time=0.0,
            elapsed_time=0.0,
            n_steps=0,
            status=RunStatus.FAULTED,
            fault=fault,
        )


def check_dataset(dataset: Dataset, config: BacktestConfig) -> None:
    """
    Validate that a dataset can be backtested with this configuration.

    Raises:
        BacktestConfigError: If the price field is missing or the dataset has
                             fewer than lookback_window + rebalance_every bars.
    """
    dataset.prices(config.price_field)
    required = config.lookback_window + config.rebalance_every
    if dataset.n_bars < required:
        raise BacktestConfigError(
            f"Dataset '{dataset.name}' has {dataset.n_bars} bars but needs at least "
            f"{required} (lookback_window={config.lookback_window} + "
            f"rebalance_every={config.rebalance_every})."
        )


def run_backtest(
    strategy: Strategy,
    dataset: Dataset,
    config: Optional[BacktestConfig] = None,
) -> RunResult:
    """
    Run one strategy over one dataset with a rolling window.

    **Per rebalance index t** (t = lookback, lookback + rebalance_every, ...):
      1. Slice the window: bars [t - lookback, t) of every field.
      2. At optimization steps, ask the strategy (through the adapter) for
         weights; at rebalance-only steps reuse the last optimized weights.
      3. On a fault: record it and stop; earlier steps are kept.
      4. Turnover = sum|w_new - w_held|; cost = buy * bought + sell * sold,
         taken from wealth at the rebalance instant.
      5. Hold w_new over bars [t, t + rebalance_every), letting weights drift
         with prices, and append each bar's net return and wealth.

    Args:
        strategy: Strategy to evaluate. Benchmarks flagged `tracks_index` run
                  on the dataset's index view instead of its assets.
        dataset: Dataset to evaluate on (never modified).
        config: Backtest options (defaults to BacktestConfig()).

    Returns:
        RunResult with status COMPLETED or FAULTED.

    Raises:
        BacktestConfigError: If the dataset is unusable with this config.
    """
    if config is None:
        config = BacktestConfig()

    strategy_name = strategy.name
    dataset_name = dataset.name

    if getattr(strategy, "tracks_index", False):
        dataset = dataset.index_dataset(config.price_field)

    # INIT
    check_dataset(dataset, config)
    prices = dataset.prices(config.price_field)
    asset_returns = compute_simple_returns(prices).to_numpy(dtype=float)
    time_index = prices.index
    assets = list(prices.columns)
    n_bars, n_assets = prices.shape

    lookback = config.lookback_window
    rebalance_every = config.rebalance_every
    optimize_every = config.optimize_every
    buy_rate = config.transaction_cost.buy
    sell_rate = config.transaction_cost.sell

    started = time.perf_counter()
    try:
        adapter = StrategyAdapter(
            strategy,
            shortselling=config.shortselling,
            leverage=config.leverage,
            cpu_time_limit=config.cpu_time_limit,
        )
    except Exception as exc:
        fault = Fault.from_exception(exc)
        logger.warning(
            "Strategy '%s' could not be prepared for dataset '%s': %s",
            strategy_name, dataset_name, fault,
        )
        return RunResult.from_fault(strategy_name, dataset_name, fault, assets)

    held = np.zeros(n_assets)
    target = held
    wealth = 1.0

    bar_positions: list[int] = []
    bar_returns: list[float] = []
    bar_wealth: list[float] = []
    step_positions: list[int] = []
    step_weights: list[np.ndarray] = []
    step_turnover: list[float] = []
    fault: Optional[Fault] = None

    # STEPPING
    for t in range(lookback, n_bars, rebalance_every):
        step_time = time_index[t]

        if (t - lookback) % optimize_every == 0:
            window = dataset.window(t - lookback, t)
            proposed, fault = adapter.propose(window, held, assets, step=step_time)
            if fault is not None:
                logger.warning(
                    "Strategy '%s' faulted on dataset '%s' at %s: %s",
                    strategy_name, dataset_name, step_time, fault,
                )
                break
            target = proposed

        new_weights = np.array(target, dtype=float)
        turnover = compute_turnover(held, new_weights)
        cost = compute_transaction_cost(held, new_weights, buy_rate, sell_rate)

        step_positions.append(t)
        step_weights.append(new_weights)
        step_turnover.append(turnover)

        held = new_weights
        for s in range(t, min(t + rebalance_every, n_bars)):
            held, bar_return = drift_weights(held, asset_returns[s])
            if s == t:
                # Rebalance cost is paid before the first bar of the holding period
                bar_return = (1.0 - cost) * (1.0 + bar_return) - 1.0
            wealth *= 1.0 + bar_return
            bar_positions.append(s)
            bar_returns.append(bar_return)
            bar_wealth.append(wealth)

    bar_index = time_index.take(np.asarray(bar_positions, dtype=np.intp))
    step_index = time_index.take(np.asarray(step_positions, dtype=np.intp))
    result = RunResult(
        strategy_name=strategy_name,
        dataset_name=dataset_name,
        returns=pd.Series(bar_returns, index=bar_index, dtype=float, name="return"),
        wealth=pd.Series(bar_wealth, index=bar_index, dtype=float, name="wealth"),
        weights=pd.DataFrame(
            np.array(step_weights).reshape(len(step_weights), n_assets),
            index=step_index,
            columns=assets,
        ),
        turnover=pd.Series(step_turnover, index=step_index, dtype=float, name="turnover"),
        total_turnover=float(np.sum(step_turnover)),
        cpu_time=adapter.cpu_time,
        elapsed_time=time.perf_counter() - started,
        n_steps=len(step_positions),
        status=RunStatus.FAULTED if fault is not None else RunStatus.COMPLETED,
        fault=fault,
    )

    logger.debug(
        "Run '%s' x '%s' %s after %d step(s), final wealth %.6f",
        strategy_name, dataset_name, result.status.value, result.n_steps, result.final_wealth,
    )
    return result
