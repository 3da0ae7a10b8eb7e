"""
Error classes shared across the backtesting harness.

**Conceptual**: Errors fall into two families that are handled very differently:
  - Configuration errors (bad datasets, unknown benchmarks, missing strategy
    folders, invalid leaderboard weights). These are raised immediately to the
    caller and abort the backtest before anything is scheduled.
  - Strategy faults (a strategy raised, returned the wrong number of weights,
    returned NaN/Inf, or broke a portfolio constraint). These never escape a
    single (strategy, dataset) run; the engine records them on the run result.

`BacktestConfigError` also subclasses `ValueError` so callers that already
catch `ValueError` around configuration code keep working.
"""


class BacktestError(Exception):
    """Base class for every error raised by portfolio_backtest."""
    pass


class BacktestConfigError(BacktestError, ValueError):
    """
    Raised when the backtest configuration or its inputs are invalid.

    Always raised before scheduling starts (or at aggregation call time for
    reporting helpers), never from inside a running (strategy, dataset) pair.
    """
    pass


class DatasetValidationError(BacktestConfigError):
    """Raised when a dataset's field matrices are malformed or misaligned."""
    pass


class StrategyLoadError(BacktestConfigError):
    """Raised when strategy files cannot be found or do not expose `portfolio_fun`."""
    pass


class AggregationError(BacktestConfigError):
    """Raised by reporting helpers for unknown measures or invalid weights."""
    pass


class StrategyFault(BacktestError):
    """
    Raised inside the engine when a strategy's output is unusable.

    Wrong-length vectors, non-finite entries and constraint violations are
    raised as StrategyFault so that they travel through the same fault boundary
    as exceptions raised by the strategy itself.
    """
    pass
