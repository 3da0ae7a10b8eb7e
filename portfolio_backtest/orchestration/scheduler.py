"""
Execution scheduler: run every (strategy, dataset) pair and collect the results.

**Conceptual**: `run_backtests` is the single entry point of the harness. It
  1. normalizes and names the strategies ("fun1", "fun2", ...) and datasets
     ("dataset 1", "dataset 2", ...),
  2. validates the configuration and every dataset before anything runs,
  3. appends the requested benchmarks ("uniform", "index"),
  4. runs the rolling-window engine once per pair, sequentially or on worker
     pools, and
  5. evaluates the registered performance measures on every run.

**Worker layouts** (ps = parallel_strategies, pd = parallel_datasets):
  - ps = 1, pd = 1: everything runs sequentially in the calling process.
  - ps > 1, pd = 1: one pool of ps workers, one task per strategy (the task
    loops over all datasets).
  - ps = 1, pd > 1: strategies one after another, each spreading its datasets
    over a pool of pd workers.
  - ps > 1, pd > 1: ps dispatch threads, one per running strategy, each owning
    its own pool of pd workers. At most ps * pd pairs run at once.

**Isolation**: Runs share nothing mutable. Datasets are read-only and passed to
every worker as-is. Anything that escapes a task (an unpicklable strategy, a
broken worker process) becomes a FAULTED RunResult for the affected pairs; it
never aborts the other pairs or the invocation.

**Ordering**: Results are keyed by strategy and dataset names and laid out in
submission order, whatever order the workers finish in.
"""

import copy
import logging
import threading
import time
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import replace
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from tqdm import tqdm

from portfolio_backtest.analytics.performance import evaluate_run, get_measures, measure_directions
from portfolio_backtest.backtesting.engine import RunResult, check_dataset, run_backtest
from portfolio_backtest.backtesting.results import BacktestResultSet
from portfolio_backtest.config.settings import BacktestConfig
from portfolio_backtest.data.dataset import Dataset
from portfolio_backtest.strategies.base import Fault, NamedStrategy, Strategy
from portfolio_backtest.strategies.benchmarks import INDEX_BENCHMARK, make_benchmarks
from portfolio_backtest.utils.errors import BacktestConfigError, DatasetValidationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Input normalization
# ---------------------------------------------------------------------------

def _renamed_strategy(strategy: Strategy, name: str) -> Strategy:
    if strategy.name == name:
        return strategy
    if isinstance(strategy, NamedStrategy):
        return replace(strategy, name=name)
    renamed = copy.copy(strategy)
    renamed.name = name
    return renamed


def _as_strategy(item: Any, name: str) -> Strategy:
    if isinstance(item, Strategy):
        return _renamed_strategy(item, name)
    if callable(item):
        return NamedStrategy(name=name, func=item)
    raise BacktestConfigError(
        f"Strategy '{name}' is neither a Strategy nor a callable (got {type(item).__name__})."
    )


def normalize_strategies(strategies: Any) -> list[Strategy]:
    """
    Turn the accepted strategy inputs into a list of uniquely named Strategies.

    Accepted inputs:
      - a single callable or Strategy,
      - a mapping name -> callable/Strategy (the key is the display name),
      - a sequence of callables/Strategies. Strategies keep their own names;
        plain callables are auto-named "fun<position>" (1-based).

    Raises:
        BacktestConfigError: On an empty input, a non-callable item, or
                             duplicate names.
    """
    if isinstance(strategies, Strategy) or (callable(strategies) and not isinstance(strategies, Mapping)):
        strategies = [strategies]

    if isinstance(strategies, Mapping):
        normalized = [_as_strategy(item, str(name)) for name, item in strategies.items()]
    else:
        normalized = []
        for position, item in enumerate(strategies, start=1):
            if isinstance(item, Strategy):
                normalized.append(item)
            else:
                normalized.append(_as_strategy(item, f"fun{position}"))

    if not normalized:
        raise BacktestConfigError("No strategies to backtest.")

    names = [s.name for s in normalized]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise BacktestConfigError(f"Strategy names must be unique, duplicates: {duplicates}")
    return normalized


def normalize_datasets(datasets: Any) -> list[Dataset]:
    """
    Turn the accepted dataset inputs into a list of uniquely named Datasets.

    Accepted inputs: a single Dataset, a mapping name -> Dataset, or a
    sequence of Datasets. Unnamed datasets are auto-named "dataset <position>".

    Raises:
        DatasetValidationError: On an empty input, a non-Dataset item, or
                                duplicate names.
    """
    if isinstance(datasets, Dataset):
        datasets = [datasets]

    if isinstance(datasets, Mapping):
        items: Iterable = ((str(name), item) for name, item in datasets.items())
    else:
        items = ((None, item) for item in datasets)

    normalized = []
    for position, (name, item) in enumerate(items, start=1):
        if not isinstance(item, Dataset):
            raise DatasetValidationError(
                f"Item {position} is not a Dataset (got {type(item).__name__}). "
                f"Wrap price matrices with Dataset(...) or Dataset.from_prices(...)."
            )
        name = name or item.name or f"dataset {position}"
        normalized.append(item if item.name == name else item.with_name(name))

    if not normalized:
        raise DatasetValidationError("No datasets to backtest.")

    names = [d.name for d in normalized]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise DatasetValidationError(f"Dataset names must be unique, duplicates: {duplicates}")
    return normalized


def validate_inputs(strategies: Sequence[Strategy], datasets: Sequence[Dataset], config: BacktestConfig) -> None:
    """
    Check everything that can be checked before the first run.

    Raises:
        BacktestConfigError: If a dataset is too short or lacks the price field,
                             if the index benchmark is requested but a dataset
                             has no index series, or if a strategy name clashes
                             with a benchmark name.
    """
    for dataset in datasets:
        check_dataset(dataset, config)

    if INDEX_BENCHMARK in config.benchmarks:
        missing = [d.name for d in datasets if not d.has_index]
        if missing:
            raise BacktestConfigError(
                f"Benchmark '{INDEX_BENCHMARK}' requires an index series, missing in datasets: {missing}"
            )

    clashes = sorted({s.name for s in strategies} & set(config.benchmarks))
    if clashes:
        raise BacktestConfigError(f"Strategy names clash with requested benchmarks: {clashes}")


# ---------------------------------------------------------------------------
# Tasks (module-level so they pickle into worker processes)
# ---------------------------------------------------------------------------

def _fault_result(strategy: Strategy, dataset: Dataset, exc: BaseException) -> RunResult:
    fault = Fault.from_exception(exc)
    logger.warning(
        "Run of strategy '%s' on dataset '%s' failed outside the strategy: %s",
        strategy.name, dataset.name, fault,
    )
    return RunResult.from_fault(strategy.name, dataset.name, fault, dataset.assets)


def run_pair(strategy: Strategy, dataset: Dataset, config: BacktestConfig) -> RunResult:
    """Run one pair; never raises."""
    try:
        return run_backtest(strategy, dataset, config)
    except Exception as exc:
        return _fault_result(strategy, dataset, exc)


def run_strategy(strategy: Strategy, datasets: Sequence[Dataset], config: BacktestConfig) -> list[RunResult]:
    """Run one strategy over every dataset, in order; never raises."""
    return [run_pair(strategy, dataset, config) for dataset in datasets]


def _make_executor(backend: str, workers: int) -> Executor:
    if backend == "thread":
        return ThreadPoolExecutor(max_workers=workers)
    return ProcessPoolExecutor(max_workers=workers)


def _resolve_workers(requested: int, n_items: int) -> int:
    return max(1, min(requested, n_items))


# ---------------------------------------------------------------------------
# Layouts
# ---------------------------------------------------------------------------

class _Progress:
    """Thread-safe wrapper over a tqdm bar counting finished pairs."""

    def __init__(self, total: int, enabled: bool):
        self._bar = tqdm(total=total, desc="Backtesting", unit="run", disable=not enabled)
        self._lock = threading.Lock()

    def advance(self, n: int = 1) -> None:
        with self._lock:
            self._bar.update(n)

    def close(self) -> None:
        self._bar.close()


def _record(results, progress, strategy: Strategy, dataset: Dataset, run: RunResult) -> None:
    results[(strategy.name, dataset.name)] = run
    progress.advance()
    logger.debug("Finished %s x %s: %s", strategy.name, dataset.name, run.status.value)


def _run_sequential(strategies, datasets, config, progress, results) -> None:
    for strategy in strategies:
        for dataset in datasets:
            _record(results, progress, strategy, dataset, run_pair(strategy, dataset, config))


def _run_datasets_in_pool(strategy, datasets, config, executor, progress, results) -> None:
    futures = [(dataset, executor.submit(run_pair, strategy, dataset, config)) for dataset in datasets]
    for dataset, future in futures:
        try:
            run = future.result()
        except Exception as exc:
            run = _fault_result(strategy, dataset, exc)
        _record(results, progress, strategy, dataset, run)


def _run_parallel_strategies(strategies, datasets, config, progress, results) -> None:
    workers = _resolve_workers(config.parallel_strategies, len(strategies))
    logger.info("Running strategies in parallel | backend=%s workers=%d", config.backend, workers)
    with _make_executor(config.backend, workers) as executor:
        futures = [(s, executor.submit(run_strategy, s, datasets, config)) for s in strategies]
        for strategy, future in futures:
            try:
                runs = future.result()
            except Exception as exc:
                runs = [_fault_result(strategy, dataset, exc) for dataset in datasets]
            for dataset, run in zip(datasets, runs):
                _record(results, progress, strategy, dataset, run)


def _run_parallel_datasets(strategies, datasets, config, progress, results) -> None:
    workers = _resolve_workers(config.parallel_datasets, len(datasets))
    logger.info("Running datasets in parallel | backend=%s workers=%d", config.backend, workers)
    with _make_executor(config.backend, workers) as executor:
        for strategy in strategies:
            _run_datasets_in_pool(strategy, datasets, config, executor, progress, results)


def _run_nested(strategies, datasets, config, progress, results) -> None:
    outer = _resolve_workers(config.parallel_strategies, len(strategies))
    inner = _resolve_workers(config.parallel_datasets, len(datasets))
    logger.info(
        "Running strategies x datasets in parallel | backend=%s workers=%d x %d",
        config.backend, outer, inner,
    )

    def dispatch(strategy: Strategy) -> None:
        with _make_executor(config.backend, inner) as executor:
            _run_datasets_in_pool(strategy, datasets, config, executor, progress, results)

    with ThreadPoolExecutor(max_workers=outer) as dispatcher:
        futures = [(s, dispatcher.submit(dispatch, s)) for s in strategies]
        for strategy, future in futures:
            try:
                future.result()
            except Exception as exc:
                for dataset in datasets:
                    if (strategy.name, dataset.name) not in results:
                        _record(results, progress, strategy, dataset, _fault_result(strategy, dataset, exc))


def _select_layout(config: BacktestConfig) -> Callable:
    if config.parallel_strategies > 1 and config.parallel_datasets > 1:
        return _run_nested
    if config.parallel_strategies > 1:
        return _run_parallel_strategies
    if config.parallel_datasets > 1:
        return _run_parallel_datasets
    return _run_sequential


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def run_backtests(
    strategies: Any,
    datasets: Any,
    config: Optional[BacktestConfig] = None,
    **options: Any,
) -> BacktestResultSet:
    """
    Backtest every strategy on every dataset.

    Args:
        strategies: A callable/Strategy, a sequence of them, or a mapping
                    name -> callable/Strategy (see normalize_strategies).
        datasets: A Dataset, a sequence of Datasets, or a mapping
                  name -> Dataset.
        config: Backtest options. When omitted, options are built from the
                environment defaults plus `**options`.
        **options: BacktestConfig fields (only allowed without `config`).

    Returns:
        BacktestResultSet with one RunResult per (strategy, dataset) pair,
        benchmarks last, and the registered measures evaluated on every run.

    Raises:
        BacktestConfigError: If anything is invalid. Nothing runs in that case.
    """
    if config is None:
        config = BacktestConfig.from_settings(**options)
    elif options:
        raise BacktestConfigError(
            f"Pass options either through config or as keywords, not both: {sorted(options)}"
        )

    user_strategies = normalize_strategies(strategies)
    datasets = normalize_datasets(datasets)
    validate_inputs(user_strategies, datasets, config)

    benchmarks = make_benchmarks(config.benchmarks)
    all_strategies = user_strategies + benchmarks
    n_pairs = len(all_strategies) * len(datasets)

    logger.info(
        "Backtesting %d strategies (%d benchmark) x %d datasets = %d runs",
        len(all_strategies), len(benchmarks), len(datasets), n_pairs,
    )

    started = time.perf_counter()
    results: dict = {}
    progress = _Progress(total=n_pairs, enabled=config.show_progress)
    try:
        _select_layout(config)(all_strategies, datasets, config, progress, results)
    finally:
        progress.close()

    measures = get_measures()
    runs: dict = {}
    performance: dict = {}
    for strategy in all_strategies:
        runs[strategy.name] = {}
        performance[strategy.name] = {}
        for dataset in datasets:
            run = results[(strategy.name, dataset.name)]
            runs[strategy.name][dataset.name] = run
            performance[strategy.name][dataset.name] = evaluate_run(run, config.bars_per_year, measures)

    n_failed = sum(run.failed for by_dataset in runs.values() for run in by_dataset.values())
    logger.info(
        "Finished %d runs in %.2fs (%d faulted)",
        n_pairs, time.perf_counter() - started, n_failed,
    )

    return BacktestResultSet(
        runs=runs,
        performance=performance,
        measure_directions=measure_directions(measures),
        benchmark_names=tuple(b.name for b in benchmarks),
        config=config,
    )
