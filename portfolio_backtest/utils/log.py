"""
Logging setup for the backtesting harness.

Every runtime module logs through `logging.getLogger(__name__)`, so all records
end up under the `portfolio_backtest` logger hierarchy. Scripts call
`configure_logging()` once at startup; library code never configures handlers.
"""

import logging

from portfolio_backtest.config.settings import get_settings

LOGGER_NAME = "portfolio_backtest"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """
    Install a single stream handler on the package logger.

    Calling this more than once replaces the previous handler instead of
    stacking duplicates, so scripts and notebooks can re-run it safely.

    Args:
        level: Logging level name or number. Defaults to the
               PORTFOLIO_BACKTEST_LOG_LEVEL setting (INFO if unset).

    Returns:
        The configured package logger.
    """
    if level is None:
        level = get_settings().log_level

    if isinstance(level, str):
        level_name = level.upper()
        resolved = logging.getLevelName(level_name)
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        level = resolved

    package_logger = logging.getLogger(LOGGER_NAME)
    for handler in list(package_logger.handlers):
        if getattr(handler, "_portfolio_backtest_handler", False):
            package_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._portfolio_backtest_handler = True
    package_logger.addHandler(handler)
    package_logger.setLevel(level)

    return package_logger
