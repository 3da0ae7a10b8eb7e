"""
Benchmark strategies and simple reference allocations.

**Conceptual**: Benchmarks are reference strategies injected next to the user's
strategies so every leaderboard has a baseline:
  - "uniform": the 1/N portfolio, always available. It is hard to beat out of
    sample and costs almost nothing to compute.
  - "index": track the market index. It is only available when the dataset
    carries an index series; the engine then runs it on a one-asset view of
    the index, holding weight 1.0.

All functions here are module-level (or instances of module-level classes) so
they pickle into worker processes.
"""

from typing import Optional

import numpy as np
import pandas as pd

from portfolio_backtest.data.dataset import INDEX_FIELD
from portfolio_backtest.strategies.base import NamedStrategy

UNIFORM_BENCHMARK = "uniform"
INDEX_BENCHMARK = "index"


def _asset_count(window: dict) -> int:
    for name, frame in window.items():
        if name != INDEX_FIELD and isinstance(frame, pd.DataFrame):
            return frame.shape[1]
    raise ValueError("Window holds no field matrix to count assets from.")


def uniform_portfolio_fun(window: dict) -> np.ndarray:
    """Equal weight 1/N on every asset of the window."""
    n_assets = _asset_count(window)
    return np.repeat(1.0 / n_assets, n_assets)


def index_portfolio_fun(window: dict) -> np.ndarray:
    """Fully invested in the single asset of an index view."""
    return np.ones(_asset_count(window))


class IndexBenchmark(NamedStrategy):
    """
    Marker strategy: the engine swaps the dataset for its index view.

    Attributes:
        tracks_index: Always True; read by the engine.
    """
    tracks_index = True


def uniform_benchmark() -> NamedStrategy:
    return NamedStrategy(name=UNIFORM_BENCHMARK, func=uniform_portfolio_fun)


def index_benchmark() -> IndexBenchmark:
    return IndexBenchmark(name=INDEX_BENCHMARK, func=index_portfolio_fun)


def make_benchmarks(names) -> list[NamedStrategy]:
    """Build benchmark strategies in the requested order."""
    builders = {UNIFORM_BENCHMARK: uniform_benchmark, INDEX_BENCHMARK: index_benchmark}
    return [builders[name]() for name in names]


class RandomAllocation:
    """
    Deterministic random long-only allocation.

    **Conceptual**: Picks a random subset of at most `max_size` assets and
    random positive weights summing to one. The generator is re-seeded on every
    call, so the same strategy gives the same allocation for the same asset
    count and two runs of the same pair are identical.

    Attributes:
        seed: Seed of this allocation.
        max_size: Maximum number of assets held.
    """

    def __init__(self, seed: int, max_size: int):
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got: {max_size}")
        self.seed = seed
        self.max_size = max_size

    def __call__(self, window: dict) -> np.ndarray:
        n_assets = _asset_count(window)
        rng = np.random.default_rng(self.seed)
        size = int(rng.integers(1, min(self.max_size, n_assets) + 1))
        chosen = rng.choice(n_assets, size=size, replace=False)
        raw = rng.random(size)
        weights = np.zeros(n_assets)
        weights[chosen] = raw / raw.sum()
        return weights


def generate_random_strategies(
    n: int,
    max_size: int = 10,
    seed: Optional[int] = None,
    prefix: str = "random",
) -> list[NamedStrategy]:
    """
    Generate `n` named random-allocation strategies.

    Useful to populate a leaderboard or to stress-test the harness with many
    strategies. Names are "random1", "random2", ...

    Args:
        n: Number of strategies.
        max_size: Maximum number of assets each one holds.
        seed: Master seed (None draws one from entropy).
        prefix: Name prefix.
    """
    master = np.random.default_rng(seed)
    seeds = master.integers(0, 2**31 - 1, size=n)
    return [
        NamedStrategy(name=f"{prefix}{i + 1}", func=RandomAllocation(int(s), max_size))
        for i, s in enumerate(seeds)
    ]
