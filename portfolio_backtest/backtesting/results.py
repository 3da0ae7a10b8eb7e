"""
Backtest result set: every run of a strategy x dataset matrix plus its metrics.

**Conceptual**: The scheduler fills a BacktestResultSet once, after every pair
has finished. It is keyed by strategy name and dataset name (never by
completion order) and keeps submission order for display. The aggregation
functions in `reporting.py` only read from it; adding a measure produces a new
set instead of changing this one.
"""

from dataclasses import dataclass, field, replace
from typing import Iterator, Optional

import numpy as np

from portfolio_backtest.backtesting.engine import RunResult
from portfolio_backtest.config.settings import BacktestConfig


@dataclass(frozen=True)
class BacktestResultSet:
    """
    All runs of one backtest invocation.

    Attributes:
        runs: strategy name -> dataset name -> RunResult, in submission order.
        performance: strategy name -> dataset name -> {measure name: value}.
        measure_directions: measure name -> True when higher is better, in
                            display order.
        benchmark_names: Names of the auto-injected benchmark strategies.
        config: Configuration the runs were produced with.
    """
    runs: dict
    performance: dict
    measure_directions: dict
    benchmark_names: tuple = ()
    config: Optional[BacktestConfig] = field(default=None, compare=False)

    @property
    def strategy_names(self) -> list[str]:
        return list(self.runs)

    @property
    def dataset_names(self) -> list[str]:
        for by_dataset in self.runs.values():
            return list(by_dataset)
        return []

    @property
    def measure_names(self) -> list[str]:
        return list(self.measure_directions)

    @property
    def user_strategy_names(self) -> list[str]:
        return [name for name in self.runs if name not in self.benchmark_names]

    def __len__(self) -> int:
        return sum(len(by_dataset) for by_dataset in self.runs.values())

    def __contains__(self, strategy_name: str) -> bool:
        return strategy_name in self.runs

    def resolve_strategy(self, strategy) -> str:
        """
        Turn a strategy name or 0-based position into a strategy name.

        Raises:
            KeyError: If the name is unknown or the position is out of range.
        """
        names = self.strategy_names
        if isinstance(strategy, (int, np.integer)) and not isinstance(strategy, bool):
            if not 0 <= strategy < len(names):
                raise KeyError(f"Strategy position {strategy} out of range (0..{len(names) - 1}).")
            return names[strategy]
        if strategy not in self.runs:
            raise KeyError(f"Unknown strategy '{strategy}'. Available: {names}")
        return strategy

    def get(self, strategy, dataset: str) -> RunResult:
        """Return the RunResult of one (strategy, dataset) pair."""
        strategy_name = self.resolve_strategy(strategy)
        by_dataset = self.runs[strategy_name]
        if dataset not in by_dataset:
            raise KeyError(f"Unknown dataset '{dataset}'. Available: {list(by_dataset)}")
        return by_dataset[dataset]

    def get_performance(self, strategy, dataset: str) -> dict:
        """Return the measure -> value mapping of one (strategy, dataset) pair."""
        strategy_name = self.resolve_strategy(strategy)
        self.get(strategy_name, dataset)
        return dict(self.performance[strategy_name][dataset])

    def iter_runs(self) -> Iterator[tuple[str, str, RunResult]]:
        """Yield (strategy name, dataset name, RunResult) in submission order."""
        for strategy_name, by_dataset in self.runs.items():
            for dataset_name, run in by_dataset.items():
                yield strategy_name, dataset_name, run

    def with_measure(self, name: str, values: dict, higher_is_better: bool) -> "BacktestResultSet":
        """
        Return a copy with one more measure.

        Args:
            name: Measure name (an existing name is replaced in place).
            values: strategy name -> dataset name -> value, for every run.
            higher_is_better: Direction used for rankings.
        """
        performance = {
            strategy_name: {
                dataset_name: {**metrics, name: float(values[strategy_name][dataset_name])}
                for dataset_name, metrics in by_dataset.items()
            }
            for strategy_name, by_dataset in self.performance.items()
        }
        directions = dict(self.measure_directions)
        directions[name] = bool(higher_is_better)
        return replace(self, performance=performance, measure_directions=directions)
