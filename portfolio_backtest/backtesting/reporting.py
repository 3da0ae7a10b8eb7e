"""
Read-only views over a BacktestResultSet.

**Conceptual**: After a backtest, four questions come up again and again:
  - How did one strategy do on every dataset?        → select_strategy
  - How do strategies compare on each dataset?       → backtest_table
  - How does each strategy do across datasets?       → backtest_summary
  - Which strategy is best overall?                  → backtest_leaderboard

None of these functions modify the result set, and all of them return pandas
objects so the caller can print, plot or export them however it likes.

**Leaderboard scoring**: Each weighted measure's cross-dataset summary is
turned into a percentile score between 0 and 100 with the empirical CDF across
strategies: a strategy scores 100 * (fraction of strategies it is at least as
good as). Lower-is-better measures (volatility, drawdown, VaR, CPU time,
failure rate) are negated first, so a higher score is always better. A
strategy whose summary is NaN scores 0 on that measure. The final score is the
weight-averaged percentile.
"""

from dataclasses import dataclass, field
from numbers import Real
from typing import Any, Callable, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy.stats import rankdata

from portfolio_backtest.backtesting.results import BacktestResultSet
from portfolio_backtest.utils.errors import AggregationError

FAILURE_RATE = "failure_rate"
SUMMARY_FUNCTIONS = ("median", "mean", "worst")


def _resolve_measures(result_set: BacktestResultSet, measures: Optional[Sequence[str]]) -> list[str]:
    if measures is None:
        return result_set.measure_names
    if isinstance(measures, str):
        measures = [measures]
    unknown = [m for m in measures if m not in result_set.measure_directions]
    if unknown:
        raise AggregationError(
            f"Unknown performance measures: {unknown}. Available: {result_set.measure_names}"
        )
    return list(measures)


def _resolve_strategies(
    result_set: BacktestResultSet,
    strategies: Optional[Sequence[Any]],
    show_benchmark: bool,
) -> list[str]:
    if strategies is None:
        names = result_set.strategy_names
    else:
        if isinstance(strategies, (str, int)):
            strategies = [strategies]
        try:
            names = [result_set.resolve_strategy(s) for s in strategies]
        except KeyError as exc:
            raise AggregationError(exc.args[0]) from exc
    if not show_benchmark:
        names = [n for n in names if n not in result_set.benchmark_names]
    return names


@dataclass
class StrategySelection:
    """
    Everything recorded for one strategy, per dataset.

    Attributes:
        strategy_name: Selected strategy.
        performance: DataFrame (rows = datasets, columns = measures).
        error: Series of bool, True where the run faulted.
        error_message: Series of fault descriptions (None where no fault).
        cpu_time: Series of CPU seconds spent in the strategy.
        returns / wealth / weights: Dicts keyed by dataset name.
    """
    strategy_name: str
    performance: pd.DataFrame
    error: pd.Series
    error_message: pd.Series
    cpu_time: pd.Series
    returns: dict = field(default_factory=dict)
    wealth: dict = field(default_factory=dict)
    weights: dict = field(default_factory=dict)


def select_strategy(
    result_set: BacktestResultSet,
    strategy: Union[str, int] = 0,
    measures: Optional[Sequence[str]] = None,
) -> StrategySelection:
    """
    Pull one strategy's results out of a result set.

    Args:
        result_set: Backtest results.
        strategy: Strategy name or 0-based position.
        measures: Subset of measures for the performance table (default all).

    Raises:
        AggregationError: On an unknown strategy or measure.
    """
    try:
        name = result_set.resolve_strategy(strategy)
    except KeyError as exc:
        raise AggregationError(exc.args[0]) from exc
    measure_names = _resolve_measures(result_set, measures)

    datasets = result_set.dataset_names
    runs = result_set.runs[name]
    performance = pd.DataFrame(
        [[result_set.performance[name][d][m] for m in measure_names] for d in datasets],
        index=pd.Index(datasets, name="dataset"),
        columns=measure_names,
        dtype=float,
    )

    return StrategySelection(
        strategy_name=name,
        performance=performance,
        error=pd.Series([runs[d].failed for d in datasets], index=performance.index, name="error", dtype=bool),
        error_message=pd.Series(
            [str(runs[d].fault) if runs[d].failed else None for d in datasets],
            index=performance.index,
            name="error_message",
            dtype=object,
        ),
        cpu_time=pd.Series([runs[d].cpu_time for d in datasets], index=performance.index, name="cpu_time"),
        returns={d: runs[d].returns for d in datasets},
        wealth={d: runs[d].wealth for d in datasets},
        weights={d: runs[d].weights for d in datasets},
    )


def backtest_table(
    result_set: BacktestResultSet,
    strategies: Optional[Sequence[Any]] = None,
    measures: Optional[Sequence[str]] = None,
    show_benchmark: bool = True,
) -> dict[str, pd.DataFrame]:
    """
    Pivot the results into one table per measure.

    Returns:
        Dict measure name -> DataFrame (rows = datasets, columns = strategies),
        plus "error" (bool) and "error_message" (str or None) tables.

    Raises:
        AggregationError: On an unknown strategy or measure.
    """
    names = _resolve_strategies(result_set, strategies, show_benchmark)
    measure_names = _resolve_measures(result_set, measures)
    datasets = pd.Index(result_set.dataset_names, name="dataset")

    tables = {}
    for measure in measure_names:
        tables[measure] = pd.DataFrame(
            {s: [result_set.performance[s][d][measure] for d in datasets] for s in names},
            index=datasets,
            columns=names,
            dtype=float,
        )

    tables["error"] = pd.DataFrame(
        {s: [result_set.runs[s][d].failed for d in datasets] for s in names},
        index=datasets,
        columns=names,
        dtype=bool,
    )
    tables["error_message"] = pd.DataFrame(
        {
            s: [str(result_set.runs[s][d].fault) if result_set.runs[s][d].failed else None for d in datasets]
            for s in names
        },
        index=datasets,
        columns=names,
        dtype=object,
    )
    return tables


@dataclass
class BacktestSummary:
    """
    Cross-dataset summary per strategy.

    Attributes:
        performance_summary: DataFrame (rows = measures, columns = strategies).
        failure_rate: Fraction of datasets on which each strategy faulted.
        cpu_time_average: Mean CPU seconds per run, over all runs.
        error_message: First fault description per strategy (None if none).
        summary_fun: Name of the summary function used.
    """
    performance_summary: pd.DataFrame
    failure_rate: pd.Series
    cpu_time_average: pd.Series
    error_message: pd.Series
    summary_fun: str


def _summary_function(summary_fun: Union[str, Callable]) -> Callable[[pd.Series, bool], float]:
    """Return f(values, higher_is_better) -> float for a summary_fun argument."""
    if callable(summary_fun):
        return lambda values, higher_is_better: float(summary_fun(values))
    if summary_fun == "median":
        return lambda values, higher_is_better: float(values.median())
    if summary_fun == "mean":
        return lambda values, higher_is_better: float(values.mean())
    if summary_fun == "worst":
        return lambda values, higher_is_better: float(values.min() if higher_is_better else values.max())
    raise AggregationError(
        f"summary_fun must be one of {list(SUMMARY_FUNCTIONS)} or a callable, got: {summary_fun!r}"
    )


def backtest_summary(
    result_set: BacktestResultSet,
    summary_fun: Union[str, Callable] = "median",
    show_benchmark: bool = True,
) -> BacktestSummary:
    """
    Summarize every measure across datasets, per strategy.

    **Functionally**:
    - Faulted runs are excluded from the measure summaries (but counted in the
      failure rate), so a strategy is not rewarded or punished twice.
    - NaN values of successful runs are skipped; a strategy with no usable
      value gets NaN.
    - "worst" takes the minimum of higher-is-better measures and the maximum of
      lower-is-better ones.

    Args:
        result_set: Backtest results.
        summary_fun: "median" (default), "mean", "worst", or a callable taking
                     a Series of values and returning a number.
        show_benchmark: Include benchmark strategies.

    Raises:
        AggregationError: On an unknown summary function.
    """
    summarize = _summary_function(summary_fun)
    names = _resolve_strategies(result_set, None, show_benchmark)
    measure_names = result_set.measure_names

    columns = {}
    failure_rate = {}
    cpu_time_average = {}
    error_message = {}
    for name in names:
        runs = result_set.runs[name]
        ok = [d for d, run in runs.items() if not run.failed]
        column = []
        for measure in measure_names:
            values = pd.Series([result_set.performance[name][d][measure] for d in ok], dtype=float).dropna()
            if len(values) == 0:
                column.append(np.nan)
            else:
                column.append(summarize(values, result_set.measure_directions[measure]))
        columns[name] = column

        failure_rate[name] = 1.0 - len(ok) / len(runs) if runs else np.nan
        cpu_time_average[name] = float(np.mean([run.cpu_time for run in runs.values()])) if runs else np.nan
        faults = [str(run.fault) for run in runs.values() if run.failed]
        error_message[name] = faults[0] if faults else None

    performance_summary = pd.DataFrame(
        columns,
        index=pd.Index(measure_names, name="measure"),
        columns=names,
        dtype=float,
    )
    return BacktestSummary(
        performance_summary=performance_summary,
        failure_rate=pd.Series(failure_rate, index=names, name=FAILURE_RATE, dtype=float),
        cpu_time_average=pd.Series(cpu_time_average, index=names, name="cpu_time_average", dtype=float),
        error_message=pd.Series(error_message, index=names, name="error_message", dtype=object),
        summary_fun=summary_fun if isinstance(summary_fun, str) else getattr(summary_fun, "__name__", "custom"),
    )


def percentile_scores(values: pd.Series, higher_is_better: bool = True) -> pd.Series:
    """
    Score values 0-100 by their empirical CDF across strategies.

    **Mathematical**: For the n non-NaN values x_j (negated first when lower is
    better), score_i = 100 * #{j : x_j <= x_i} / n. Ties share the higher
    score; NaN scores 0.

    Examples:
        [1.0, 2.0, 3.0] (higher better) → [33.3, 66.7, 100.0]
        [1.0, 2.0, 3.0] (lower better)  → [100.0, 66.7, 33.3]
    """
    oriented = values.astype(float) if higher_is_better else -values.astype(float)
    scores = pd.Series(0.0, index=values.index, name=values.name)
    valid = oriented.notna()
    n_valid = int(valid.sum())
    if n_valid:
        scores[valid] = rankdata(oriented[valid].to_numpy(), method="max") / n_valid * 100.0
    return scores


def _validate_weights(weights: Mapping[str, Any], directions: Mapping[str, bool]) -> dict[str, float]:
    if not isinstance(weights, Mapping) or not weights:
        raise AggregationError("Leaderboard weights must be a non-empty mapping of measure -> weight.")

    known = list(directions) + [FAILURE_RATE]
    unknown = [k for k in weights if k not in known]
    if unknown:
        raise AggregationError(f"Unknown leaderboard weight keys: {unknown}. Known keys: {known}")

    checked = {}
    for key, weight in weights.items():
        if isinstance(weight, bool) or not isinstance(weight, Real) or not np.isfinite(weight):
            raise AggregationError(f"Weight of '{key}' must be a finite number, got: {weight!r}")
        if weight < 0:
            raise AggregationError(f"Weight of '{key}' must be non-negative, got: {weight}")
        checked[key] = float(weight)

    if sum(checked.values()) <= 0:
        raise AggregationError("Leaderboard weights must not all be zero.")
    return checked


def backtest_leaderboard(
    result_set: BacktestResultSet,
    weights: Mapping[str, float],
    summary_fun: Union[str, Callable] = "median",
    show_benchmark: bool = True,
) -> pd.DataFrame:
    """
    Rank strategies by a weighted sum of percentile scores.

    Args:
        result_set: Backtest results.
        weights: Measure name (or "failure_rate") -> non-negative weight.
                 Unlisted measures get zero weight.
        summary_fun: Cross-dataset summary used before scoring.
        show_benchmark: Include benchmark strategies in the ranking.

    Returns:
        DataFrame indexed by strategy with one score column per positively
        weighted key and a final "score" column (all 0-100, higher is better),
        sorted by score, best first. Ties keep submission order.

    Raises:
        AggregationError: On unknown keys, negative or non-finite weights, or
                          all-zero weights.

    Example:
        >>> backtest_leaderboard(results, {"sharpe_ratio": 2, "max_drawdown": 1})
    """
    checked = _validate_weights(weights, result_set.measure_directions)
    summary = backtest_summary(result_set, summary_fun=summary_fun, show_benchmark=show_benchmark)
    names = list(summary.performance_summary.columns)

    scores = {}
    for key, weight in checked.items():
        if weight == 0:
            continue
        if key == FAILURE_RATE:
            scores[key] = percentile_scores(summary.failure_rate, higher_is_better=False)
        else:
            scores[key] = percentile_scores(
                summary.performance_summary.loc[key],
                higher_is_better=result_set.measure_directions[key],
            )

    board = pd.DataFrame(scores, index=pd.Index(names, name="strategy"))
    total_weight = sum(checked[key] for key in scores)
    board["score"] = sum(board[key] * checked[key] for key in scores) / total_weight
    return board.sort_values("score", ascending=False, kind="mergesort")
