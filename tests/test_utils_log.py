"""
Tests for portfolio_backtest/utils/log.py
"""

import logging

import pytest

from portfolio_backtest.utils.log import LOGGER_NAME, configure_logging


@pytest.fixture
def package_logger():
    logger = logging.getLogger(LOGGER_NAME)
    handlers = list(logger.handlers)
    level = logger.level
    yield logger
    logger.handlers[:] = handlers
    logger.setLevel(level)


def _own_handlers(logger):
    return [h for h in logger.handlers if getattr(h, "_portfolio_backtest_handler", False)]


def test_configure_logging_twice_keeps_one_handler(package_logger):
    configure_logging("INFO")
    configure_logging("debug")

    assert len(_own_handlers(package_logger)) == 1
    assert package_logger.level == logging.DEBUG


def test_configure_logging_accepts_numeric_level(package_logger):
    logger = configure_logging(logging.WARNING)

    assert logger is package_logger
    assert logger.level == logging.WARNING


def test_configure_logging_rejects_unknown_level(package_logger):
    with pytest.raises(ValueError, match="Unknown log level"):
        configure_logging("LOUD")


def test_module_loggers_propagate_to_package_logger(package_logger, caplog):
    configure_logging("INFO")

    with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
        logging.getLogger("portfolio_backtest.orchestration.scheduler").info("hello from the scheduler")

    assert "hello from the scheduler" in caplog.text
