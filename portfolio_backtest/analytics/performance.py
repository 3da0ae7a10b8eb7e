"""
Performance evaluator: named measures computed from a RunResult.

**Conceptual**: A measure is a function from one run to one number, plus a
direction (is a higher value better?). The direction is what lets the
leaderboard turn every measure into a "higher is better" percentile score.

Built-in measures are registered at import time, in display order:
    annual_return      higher is better
    annual_volatility  lower
    max_drawdown       lower (positive magnitude)
    sharpe_ratio       higher
    sterling_ratio     higher
    omega_ratio        higher
    ROT_bps            higher
    VaR_0.95           lower (positive loss)
    CVaR_0.95          lower (positive loss)
    cpu_time           lower

**Partial runs**: A faulted run is evaluated on whatever prefix of its series
completed. A run with no completed bar reports NaN for every measure, cpu_time
included; the raw CPU seconds stay on RunResult.cpu_time.

**Extension**: `register_performance_measure` adds a measure to the registry
used by every later backtest; `add_performance` computes one extra measure on an
existing result set without touching the registry.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np

from portfolio_backtest.analytics.risk_metrics import (
    PERIODS_PER_YEAR,
    compute_annual_return,
    compute_annualized_volatility,
    compute_conditional_value_at_risk,
    compute_max_drawdown,
    compute_omega_ratio,
    compute_rot_bps,
    compute_sharpe_ratio,
    compute_sterling_ratio,
    compute_value_at_risk,
    compute_wealth_curve,
)
from portfolio_backtest.backtesting.engine import RunResult
from portfolio_backtest.backtesting.results import BacktestResultSet
from portfolio_backtest.utils.errors import BacktestConfigError

logger = logging.getLogger(__name__)

CPU_TIME = "cpu_time"


@dataclass(frozen=True)
class PerformanceMeasure:
    """
    A named performance measure.

    Attributes:
        name: Column name in tables and leaderboards.
        func: func(run) -> float, or func(run, bars_per_year) when annualized.
        higher_is_better: Ranking direction.
        annualized: Whether func takes the bars-per-year constant.
    """
    name: str
    func: Callable
    higher_is_better: bool = True
    annualized: bool = False

    def compute(self, run: RunResult, bars_per_year: int = PERIODS_PER_YEAR) -> float:
        if self.annualized:
            return float(self.func(run, bars_per_year))
        return float(self.func(run))


def _annual_return(run: RunResult, bars_per_year: int) -> float:
    return compute_annual_return(run.returns, bars_per_year)


def _annual_volatility(run: RunResult, bars_per_year: int) -> float:
    return compute_annualized_volatility(run.returns, bars_per_year)


def _max_drawdown(run: RunResult) -> float:
    return compute_max_drawdown(compute_wealth_curve(run.returns))


def _sharpe_ratio(run: RunResult, bars_per_year: int) -> float:
    return compute_sharpe_ratio(run.returns, bars_per_year)


def _sterling_ratio(run: RunResult, bars_per_year: int) -> float:
    return compute_sterling_ratio(run.returns, bars_per_year)


def _omega_ratio(run: RunResult) -> float:
    return compute_omega_ratio(run.returns, threshold=0.0)


def _rot_bps(run: RunResult) -> float:
    return compute_rot_bps(run.returns, run.total_turnover)


def _value_at_risk(run: RunResult) -> float:
    return compute_value_at_risk(run.returns, confidence=0.95)


def _conditional_value_at_risk(run: RunResult) -> float:
    return compute_conditional_value_at_risk(run.returns, confidence=0.95)


def _cpu_time(run: RunResult) -> float:
    return run.cpu_time


BUILTIN_MEASURES = (
    PerformanceMeasure("annual_return", _annual_return, higher_is_better=True, annualized=True),
    PerformanceMeasure("annual_volatility", _annual_volatility, higher_is_better=False, annualized=True),
    PerformanceMeasure("max_drawdown", _max_drawdown, higher_is_better=False),
    PerformanceMeasure("sharpe_ratio", _sharpe_ratio, higher_is_better=True, annualized=True),
    PerformanceMeasure("sterling_ratio", _sterling_ratio, higher_is_better=True, annualized=True),
    PerformanceMeasure("omega_ratio", _omega_ratio, higher_is_better=True),
    PerformanceMeasure("ROT_bps", _rot_bps, higher_is_better=True),
    PerformanceMeasure("VaR_0.95", _value_at_risk, higher_is_better=False),
    PerformanceMeasure("CVaR_0.95", _conditional_value_at_risk, higher_is_better=False),
    PerformanceMeasure(CPU_TIME, _cpu_time, higher_is_better=False),
)

_registry: dict[str, PerformanceMeasure] = {m.name: m for m in BUILTIN_MEASURES}


def register_performance_measure(
    name: str,
    func: Callable[[RunResult], float],
    higher_is_better: bool = True,
    overwrite: bool = False,
) -> PerformanceMeasure:
    """
    Add a measure to the registry used by every later backtest.

    Args:
        name: Measure name (must not clash with an existing one unless overwrite).
        func: func(run_result) -> float.
        higher_is_better: Ranking direction for the leaderboard.
        overwrite: Replace an existing measure of the same name.

    Raises:
        BacktestConfigError: On an empty or duplicate name or a non-callable func.
    """
    if not isinstance(name, str) or not name:
        raise BacktestConfigError(f"Measure name must be a non-empty string, got: {name!r}")
    if not callable(func):
        raise BacktestConfigError(f"Measure '{name}' function is not callable: {func!r}")
    if name in _registry and not overwrite:
        raise BacktestConfigError(
            f"Performance measure '{name}' is already registered (pass overwrite=True to replace it)."
        )

    measure = PerformanceMeasure(name, func, higher_is_better=bool(higher_is_better))
    _registry[name] = measure
    logger.info("Registered performance measure '%s' (higher_is_better=%s)", name, measure.higher_is_better)
    return measure


def unregister_performance_measure(name: str) -> None:
    """Remove a user measure from the registry (built-in measures cannot be removed)."""
    if any(m.name == name for m in BUILTIN_MEASURES):
        raise BacktestConfigError(f"Built-in measure '{name}' cannot be unregistered.")
    _registry.pop(name, None)


def get_measures(names: Optional[Sequence[str]] = None) -> list[PerformanceMeasure]:
    """
    Return registered measures, all of them (in registration order) or `names`.

    Raises:
        BacktestConfigError: If a requested name is not registered.
    """
    if names is None:
        return list(_registry.values())
    unknown = [n for n in names if n not in _registry]
    if unknown:
        raise BacktestConfigError(
            f"Unknown performance measures: {unknown}. Known measures: {list(_registry)}"
        )
    return [_registry[n] for n in names]


def measure_directions(measures: Optional[Sequence[PerformanceMeasure]] = None) -> dict:
    """Map measure name -> higher_is_better."""
    if measures is None:
        measures = get_measures()
    return {m.name: m.higher_is_better for m in measures}


def evaluate_run(
    run: RunResult,
    bars_per_year: int = PERIODS_PER_YEAR,
    measures: Optional[Sequence[PerformanceMeasure]] = None,
) -> dict[str, float]:
    """
    Compute every measure for one run.

    A measure that raises is logged and reported as NaN.

    Args:
        run: The run to evaluate (completed or faulted).
        bars_per_year: Annualization constant.
        measures: Measures to compute (defaults to the whole registry).

    Returns:
        Measure name -> value, in measure order.
    """
    if measures is None:
        measures = get_measures()

    empty = len(run.returns) == 0
    values = {}
    for measure in measures:
        if empty:
            values[measure.name] = np.nan
            continue
        try:
            values[measure.name] = measure.compute(run, bars_per_year)
        except Exception as exc:
            logger.warning(
                "Measure '%s' failed for strategy '%s' on dataset '%s': %s: %s",
                measure.name, run.strategy_name, run.dataset_name, type(exc).__name__, exc,
            )
            values[measure.name] = np.nan
    return values


def add_performance(
    result_set: BacktestResultSet,
    name: str,
    func: Callable[[RunResult], float],
    higher_is_better: bool = True,
) -> BacktestResultSet:
    """
    Compute one extra measure for every run of an existing result set.

    The registry is not touched and `result_set` is not modified. Runs without
    any completed bar get NaN, like every built-in measure. Errors raised by
    `func` propagate to the caller.

    Args:
        result_set: Result set to extend.
        name: Measure name (replaces an existing measure of the same name).
        func: func(run_result) -> float.
        higher_is_better: Ranking direction for the leaderboard.

    Returns:
        A new BacktestResultSet with the measure added.
    """
    if not isinstance(name, str) or not name:
        raise BacktestConfigError(f"Measure name must be a non-empty string, got: {name!r}")
    if not callable(func):
        raise BacktestConfigError(f"Measure '{name}' function is not callable: {func!r}")

    values: dict = {}
    for strategy_name, dataset_name, run in result_set.iter_runs():
        value = np.nan if len(run.returns) == 0 else float(func(run))
        values.setdefault(strategy_name, {})[dataset_name] = value

    return result_set.with_measure(name, values, higher_is_better)
