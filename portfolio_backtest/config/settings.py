"""
Configuration settings for the backtesting harness.

**Conceptual**: This module provides strongly-typed configuration objects. There
are two layers:
  - `BacktestSettings`: process-wide defaults loaded from environment variables
    (optionally from a project-root .env file). These let a team pin its usual
    lookback, rebalance frequency and worker counts without touching code.
  - `BacktestConfig`: the validated options of one backtest invocation. It is a
    frozen dataclass, so a run's configuration cannot change while workers are
    using it, and it pickles cleanly into worker processes.

**Why fail fast?**
  - A typo in a benchmark name or a non-multiple `optimize_every` should be
    reported before hundreds of (strategy, dataset) pairs are scheduled, not
    discovered in the middle of a parallel run.

This module uses python-dotenv to load .env files and dataclasses for type safety.
"""

import math
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

from portfolio_backtest.utils.errors import BacktestConfigError

# Load .env from project root (no-op when the file does not exist)
env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


KNOWN_BENCHMARKS = ("uniform", "index")
KNOWN_BACKENDS = ("process", "thread")
TRADING_PERIODS_PER_YEAR = 252


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise BacktestConfigError(f"{name} must be an integer, got: {raw}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise BacktestConfigError(f"{name} must be a number, got: {raw}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class TransactionCost:
    """
    Proportional transaction cost rates applied at each rebalance.

    **Mathematical**: With Δw = w_new - w_held, the fraction of wealth lost at
    the rebalance instant is:
        cost = buy * sum(max(Δw, 0)) + sell * sum(max(-Δw, 0))

    Attributes:
        buy: Cost rate on weight bought (e.g., 0.0015 = 15 bps).
        sell: Cost rate on weight sold.
    """
    buy: float = 0.0
    sell: float = 0.0

    def __post_init__(self):
        for name in ("buy", "sell"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value):
                raise BacktestConfigError(
                    f"Transaction cost '{name}' must be a finite number, got: {value!r}"
                )
            if value < 0 or value >= 1:
                raise BacktestConfigError(
                    f"Transaction cost '{name}' must be in [0, 1), got: {value}"
                )

    @property
    def is_free(self) -> bool:
        return self.buy == 0 and self.sell == 0

    @classmethod
    def from_value(cls, value: Any) -> "TransactionCost":
        """
        Coerce user input into a TransactionCost.

        Accepts None (free trading), an existing TransactionCost, a single
        number (same rate both ways), a (buy, sell) pair, or a mapping with
        'buy' and/or 'sell' keys.
        """
        if value is None:
            return cls()
        if isinstance(value, TransactionCost):
            return value
        if isinstance(value, (int, float)):
            return cls(buy=float(value), sell=float(value))
        if isinstance(value, Mapping):
            unknown = set(value) - {"buy", "sell"}
            if unknown:
                raise BacktestConfigError(
                    f"Unknown transaction cost keys: {sorted(unknown)}. "
                    f"Expected 'buy' and/or 'sell'."
                )
            return cls(buy=float(value.get("buy", 0.0)), sell=float(value.get("sell", 0.0)))
        if isinstance(value, (tuple, list)) and len(value) == 2:
            return cls(buy=float(value[0]), sell=float(value[1]))
        raise BacktestConfigError(
            f"Cannot interpret transaction cost: {value!r}. "
            f"Use a number, a (buy, sell) pair, or {{'buy': ..., 'sell': ...}}."
        )


@dataclass(frozen=True)
class BacktestSettings:
    """
    Environment-derived defaults for backtest invocations.

    **Environment variables** (all optional):
      - PORTFOLIO_BACKTEST_LOOKBACK (default 252)
      - PORTFOLIO_BACKTEST_REBALANCE_EVERY (default 1)
      - PORTFOLIO_BACKTEST_PRICE_FIELD (default "adjusted")
      - PORTFOLIO_BACKTEST_BUY_COST / PORTFOLIO_BACKTEST_SELL_COST (default 0)
      - PORTFOLIO_BACKTEST_PARALLEL_STRATEGIES / _PARALLEL_DATASETS (default 1)
      - PORTFOLIO_BACKTEST_BACKEND ("process" or "thread", default "process")
      - PORTFOLIO_BACKTEST_SHOW_PROGRESS (default false)
      - PORTFOLIO_BACKTEST_BARS_PER_YEAR (default 252)
      - PORTFOLIO_BACKTEST_LOG_LEVEL (default "INFO")
    """
    lookback_window: int = 252
    rebalance_every: int = 1
    price_field: str = "adjusted"
    buy_cost: float = 0.0
    sell_cost: float = 0.0
    parallel_strategies: int = 1
    parallel_datasets: int = 1
    backend: str = "process"
    show_progress: bool = False
    bars_per_year: int = TRADING_PERIODS_PER_YEAR
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "BacktestSettings":
        """
        Load settings from PORTFOLIO_BACKTEST_* environment variables.

        Raises:
            BacktestConfigError: If a numeric variable cannot be parsed.
        """
        return cls(
            lookback_window=_env_int("PORTFOLIO_BACKTEST_LOOKBACK", 252),
            rebalance_every=_env_int("PORTFOLIO_BACKTEST_REBALANCE_EVERY", 1),
            price_field=os.getenv("PORTFOLIO_BACKTEST_PRICE_FIELD", "adjusted"),
            buy_cost=_env_float("PORTFOLIO_BACKTEST_BUY_COST", 0.0),
            sell_cost=_env_float("PORTFOLIO_BACKTEST_SELL_COST", 0.0),
            parallel_strategies=_env_int("PORTFOLIO_BACKTEST_PARALLEL_STRATEGIES", 1),
            parallel_datasets=_env_int("PORTFOLIO_BACKTEST_PARALLEL_DATASETS", 1),
            backend=os.getenv("PORTFOLIO_BACKTEST_BACKEND", "process"),
            show_progress=_env_bool("PORTFOLIO_BACKTEST_SHOW_PROGRESS", False),
            bars_per_year=_env_int("PORTFOLIO_BACKTEST_BARS_PER_YEAR", TRADING_PERIODS_PER_YEAR),
            log_level=os.getenv("PORTFOLIO_BACKTEST_LOG_LEVEL", "INFO"),
        )


@dataclass(frozen=True)
class BacktestConfig:
    """
    Validated options for one backtest invocation.

    **Conceptual**: Every knob of the rolling-window simulation and of the
    scheduler lives here. Validation happens in `__post_init__`, so an invalid
    config can never reach the scheduler.

    Attributes:
        lookback_window: Number of trailing bars handed to the strategy.
        rebalance_every: Bars between rebalances (holding period length).
        optimize_every: Bars between strategy invocations. Must be a multiple
                        of rebalance_every; defaults to rebalance_every. At
                        rebalance-only steps the last optimized weights are restored.
        price_field: Dataset field used as the return basis.
        transaction_cost: Buy/sell proportional cost rates (anything accepted by
                          TransactionCost.from_value).
        benchmarks: Subset of {"uniform", "index"} injected as extra strategies.
        parallel_strategies: Worker count across strategies.
        parallel_datasets: Worker count across datasets.
        backend: "process" or "thread" worker pools.
        show_progress: Show a progress bar over (strategy, dataset) pairs.
        shortselling: Allow negative weights.
        leverage: Upper bound on sum(|w|).
        cpu_time_limit: Soft per-invocation limit in seconds (None = unlimited).
                        Checked after the strategy returns; never pre-emptive.
        bars_per_year: Annualization constant.
    """
    lookback_window: int = 252
    rebalance_every: int = 1
    optimize_every: Optional[int] = None
    price_field: str = "adjusted"
    transaction_cost: Any = field(default_factory=TransactionCost)
    benchmarks: tuple = ()
    parallel_strategies: int = 1
    parallel_datasets: int = 1
    backend: str = "process"
    show_progress: bool = False
    shortselling: bool = True
    leverage: float = math.inf
    cpu_time_limit: Optional[float] = None
    bars_per_year: int = TRADING_PERIODS_PER_YEAR

    def __post_init__(self):
        """Validate and normalize options after initialization."""
        for name in ("lookback_window", "rebalance_every", "parallel_strategies",
                     "parallel_datasets", "bars_per_year"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise BacktestConfigError(
                    f"{name} must be a positive integer, got: {value!r}"
                )

        optimize_every = self.optimize_every
        if optimize_every is None:
            optimize_every = self.rebalance_every
        if isinstance(optimize_every, bool) or not isinstance(optimize_every, int) or optimize_every < 1:
            raise BacktestConfigError(
                f"optimize_every must be a positive integer, got: {optimize_every!r}"
            )
        if optimize_every % self.rebalance_every != 0:
            raise BacktestConfigError(
                f"optimize_every ({optimize_every}) must be a multiple of "
                f"rebalance_every ({self.rebalance_every})."
            )
        object.__setattr__(self, "optimize_every", optimize_every)

        if not isinstance(self.price_field, str) or not self.price_field:
            raise BacktestConfigError(f"price_field must be a non-empty string, got: {self.price_field!r}")

        object.__setattr__(self, "transaction_cost", TransactionCost.from_value(self.transaction_cost))

        benchmarks = self.benchmarks
        if benchmarks is None:
            benchmarks = ()
        elif isinstance(benchmarks, str):
            benchmarks = (benchmarks,)
        normalized = []
        for name in benchmarks:
            key = str(name).lower()
            if key not in KNOWN_BENCHMARKS:
                raise BacktestConfigError(
                    f"Unknown benchmark '{name}'. Known benchmarks: {list(KNOWN_BENCHMARKS)}."
                )
            if key not in normalized:
                normalized.append(key)
        object.__setattr__(self, "benchmarks", tuple(normalized))

        if self.backend not in KNOWN_BACKENDS:
            raise BacktestConfigError(
                f"backend must be one of {list(KNOWN_BACKENDS)}, got: {self.backend!r}"
            )

        if not isinstance(self.leverage, (int, float)) or math.isnan(self.leverage) or self.leverage <= 0:
            raise BacktestConfigError(f"leverage must be a positive number, got: {self.leverage!r}")

        if self.cpu_time_limit is not None and not self.cpu_time_limit > 0:
            raise BacktestConfigError(
                f"cpu_time_limit must be positive or None, got: {self.cpu_time_limit!r}"
            )

    @property
    def max_workers(self) -> int:
        """Upper bound on concurrently running (strategy, dataset) pairs."""
        return self.parallel_strategies * self.parallel_datasets

    @classmethod
    def from_settings(
        cls,
        settings: Optional[BacktestSettings] = None,
        **overrides: Any,
    ) -> "BacktestConfig":
        """
        Build a config from environment defaults plus explicit overrides.

        Args:
            settings: Settings to start from (defaults to get_settings()).
            **overrides: Any BacktestConfig field.

        Raises:
            BacktestConfigError: If an override is not a BacktestConfig field or
                                 the resulting config is invalid.
        """
        if settings is None:
            settings = get_settings()

        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise BacktestConfigError(
                f"Unknown backtest options: {sorted(unknown)}. Known options: {sorted(known)}."
            )

        values = {
            "lookback_window": settings.lookback_window,
            "rebalance_every": settings.rebalance_every,
            "price_field": settings.price_field,
            "transaction_cost": TransactionCost(buy=settings.buy_cost, sell=settings.sell_cost),
            "parallel_strategies": settings.parallel_strategies,
            "parallel_datasets": settings.parallel_datasets,
            "backend": settings.backend,
            "show_progress": settings.show_progress,
            "bars_per_year": settings.bars_per_year,
        }
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_mapping(cls, options: Optional[Mapping[str, Any]]) -> "BacktestConfig":
        """
        Build a config from a plain options mapping (e.g., parsed JSON/YAML).

        Missing options fall back to the environment defaults.
        """
        return cls.from_settings(**dict(options or {}))


_default_settings: Optional[BacktestSettings] = None


def get_settings() -> BacktestSettings:
    """
    Get the global settings singleton (loaded from environment on first call).

    Tests can bypass this by building BacktestSettings directly and passing it
    to BacktestConfig.from_settings.
    """
    global _default_settings

    if _default_settings is None:
        _default_settings = BacktestSettings.from_env()

    return _default_settings


def reset_settings():
    """Reset the global settings singleton (for testing)."""
    global _default_settings
    _default_settings = None
