"""
Tests for portfolio_backtest/strategies/base.py

Covers the calling convention detection, weight coercion and validation, fault
capture, and the adapter's fault boundary.
"""

import time

import numpy as np
import pandas as pd
import pytest

from portfolio_backtest.strategies.base import (
    Fault,
    NamedStrategy,
    StrategyAdapter,
    coerce_weights,
    current_weights_mode,
    validate_weights,
)
from portfolio_backtest.utils.errors import StrategyFault

ASSETS = ["A1", "A2", "A3"]


def make_window(n_bars: int = 5) -> dict:
    frame = pd.DataFrame(np.ones((n_bars, len(ASSETS))), columns=ASSETS)
    return {"adjusted": frame}


def window_only(window):
    return np.repeat(1.0 / 3, 3)


def with_current(window, w_current):
    return w_current


def with_keyword(window, *, w_current=None):
    return w_current


def with_var_kwargs(window, **kwargs):
    return kwargs["w_current"]


def with_var_args(*args):
    return args[1]


def failing_helper():
    raise ZeroDivisionError("estimation blew up")


def calls_failing_helper(window):
    return failing_helper()


@pytest.mark.parametrize(
    "func, expected",
    [
        (window_only, None),
        (with_current, "positional"),
        (with_keyword, "keyword"),
        (with_var_kwargs, "keyword"),
        (with_var_args, "positional"),
        (lambda window, w_current=None, lam=1.0: w_current, "positional"),
        (lambda window, weights: weights, "positional"),
        (lambda window, shrinkage=0.5: shrinkage, None),
        (lambda window, shrinkage=0.5, **kwargs: shrinkage, "keyword"),
    ],
)
def test_current_weights_mode(func, expected):
    assert current_weights_mode(func) == expected


def test_current_weights_mode_skips_supplied_parameters():
    """A required second parameter given through kwargs is not the current weights."""
    def scaled(window, scale):
        return np.repeat(scale, 3)

    def scaled_with_current(window, scale, w_current=None):
        return w_current

    assert current_weights_mode(scaled) == "positional"
    assert current_weights_mode(scaled, supplied={"scale"}) is None
    assert current_weights_mode(scaled_with_current, supplied={"scale"}) == "keyword"


def test_coerce_weights_reorders_series_by_asset():
    """A Series keyed by asset is aligned to the window's asset order."""
    raw = pd.Series({"A3": 0.5, "A1": 0.2, "A2": 0.3})
    weights = coerce_weights(raw, ASSETS)

    assert np.allclose(weights, [0.2, 0.3, 0.5])


def test_coerce_weights_flattens_column_vector():
    weights = coerce_weights(np.array([[0.2], [0.3], [0.5]]), ASSETS)

    assert weights.shape == (3,)


@pytest.mark.parametrize("raw", [None, "abc", np.ones((2, 3))])
def test_coerce_weights_rejects_unusable_values(raw):
    with pytest.raises(StrategyFault):
        coerce_weights(raw, ASSETS)


def test_validate_weights_wrong_length():
    with pytest.raises(StrategyFault, match="length 2"):
        validate_weights(np.array([0.5, 0.5]), n_assets=3)


def test_validate_weights_non_finite():
    with pytest.raises(StrategyFault, match="non-finite"):
        validate_weights(np.array([0.5, np.nan, 0.5]), n_assets=3)


def test_validate_weights_no_shortselling():
    with pytest.raises(StrategyFault, match="No-shortselling constraint not satisfied."):
        validate_weights(np.array([1.2, -0.2, 0.0]), n_assets=3, shortselling=False)


def test_validate_weights_leverage():
    weights = np.array([1.0, -0.5, 0.5])

    with pytest.raises(StrategyFault, match="Leverage constraint not satisfied."):
        validate_weights(weights, n_assets=3, leverage=1.5)
    # Exactly at the bound passes
    assert validate_weights(weights, n_assets=3, leverage=2.0) is weights


def test_validate_weights_does_not_normalize():
    """Weights that do not sum to one are used as returned."""
    weights = np.array([0.1, 0.1, 0.1])
    assert np.allclose(validate_weights(weights, n_assets=3), [0.1, 0.1, 0.1])


def test_fault_from_exception_captures_call_site_and_stack():
    try:
        calls_failing_helper(make_window())
    except ZeroDivisionError as exc:
        fault = Fault.from_exception(exc, step="2024-01-05")

    assert fault.exception_type == "ZeroDivisionError"
    assert fault.message == "estimation blew up"
    assert fault.location.endswith("in failing_helper")
    assert any(frame.endswith("in calls_failing_helper") for frame in fault.frames)
    assert "failing_helper" in fault.stack
    assert fault.step == "2024-01-05"
    assert "ZeroDivisionError: estimation blew up" in str(fault)


def test_adapter_passes_current_weights_when_declared():
    adapter = StrategyAdapter(NamedStrategy("hold", with_current))
    current = np.array([0.2, 0.3, 0.5])

    weights, fault = adapter.propose(make_window(), current, ASSETS)

    assert fault is None
    assert np.allclose(weights, current)


def test_adapter_gives_strategy_a_copy_of_current_weights():
    def mutating(window, w_current):
        w_current[:] = 99.0
        return np.repeat(1.0 / 3, 3)

    adapter = StrategyAdapter(NamedStrategy("mutating", mutating))
    current = np.zeros(3)
    adapter.propose(make_window(), current, ASSETS)

    assert np.all(current == 0.0)


def test_adapter_forwards_extra_keyword_arguments():
    def scaled(window, scale):
        return np.repeat(scale, 3)

    adapter = StrategyAdapter(NamedStrategy("scaled", scaled, kwargs={"scale": 0.25}))
    weights, fault = adapter.propose(make_window(), np.zeros(3), ASSETS)

    assert fault is None
    assert np.allclose(weights, 0.25)


def test_adapter_leaves_defaulted_tuning_parameter_alone():
    """A second parameter with a default keeps its default instead of receiving the holdings."""
    seen = []

    def shrunk(window, shrinkage=0.5):
        seen.append(shrinkage)
        return np.repeat(shrinkage / 3, 3)

    adapter = StrategyAdapter(NamedStrategy("shrunk", shrunk))
    weights, fault = adapter.propose(make_window(), np.zeros(3), ASSETS)

    assert fault is None
    assert seen == [0.5]
    assert np.allclose(weights, 0.5 / 3)


def test_adapter_passes_current_weights_next_to_supplied_kwargs():
    def scaled_holdings(window, scale, w_current=None):
        return w_current * scale

    adapter = StrategyAdapter(NamedStrategy("scaled", scaled_holdings, kwargs={"scale": 2.0}))
    weights, fault = adapter.propose(make_window(), np.array([0.1, 0.2, 0.3]), ASSETS)

    assert fault is None
    assert np.allclose(weights, [0.2, 0.4, 0.6])


def test_adapter_converts_helper_exception_into_fault():
    adapter = StrategyAdapter(NamedStrategy("broken", calls_failing_helper))

    weights, fault = adapter.propose(make_window(), np.zeros(3), ASSETS, step="t0")

    assert weights is None
    assert fault.exception_type == "ZeroDivisionError"
    assert fault.location.endswith("in failing_helper")
    assert fault.step == "t0"


def test_adapter_converts_wrong_length_into_fault():
    adapter = StrategyAdapter(NamedStrategy("short", lambda window: [1.0]))

    weights, fault = adapter.propose(make_window(), np.zeros(3), ASSETS)

    assert weights is None
    assert fault.exception_type == "StrategyFault"
    assert "length 1" in fault.message


def test_adapter_enforces_constraints():
    adapter = StrategyAdapter(
        NamedStrategy("short seller", lambda window: [1.5, -0.5, 0.0]),
        shortselling=False,
    )

    _, fault = adapter.propose(make_window(), np.zeros(3), ASSETS)

    assert fault.message == "No-shortselling constraint not satisfied."


def test_adapter_soft_time_limit():
    """An invocation that overruns its CPU time limit is faulted after it returns."""
    def slow(window):
        end = time.thread_time() + 0.05
        while time.thread_time() < end:
            pass
        return np.repeat(1.0 / 3, 3)

    adapter = StrategyAdapter(NamedStrategy("slow", slow), cpu_time_limit=0.01)
    weights, fault = adapter.propose(make_window(), np.zeros(3), ASSETS)

    assert weights is None
    assert "Time limit exceeded" in fault.message
    assert adapter.cpu_time >= 0.05


def test_adapter_accumulates_cpu_time():
    adapter = StrategyAdapter(NamedStrategy("uniform", window_only))
    for _ in range(3):
        adapter.propose(make_window(), np.zeros(3), ASSETS)

    assert adapter.cpu_time >= 0.0
