"""
Tests for the rolling-window backtest engine.

This module tests the engine's ability to:
  - Step through rebalance indices and hand strategies the right window.
  - Compound returns, drift weights and charge transaction costs.
  - Turn strategy failures into FAULTED runs that keep earlier steps.

Most tests use tiny hand-built price matrices with known expected outcomes;
property tests use seeded GBM datasets.
"""

import numpy as np
import pandas as pd
import pytest

from portfolio_backtest.analytics.performance import evaluate_run
from portfolio_backtest.analytics.synthetic_data import generate_gbm_dataset
from portfolio_backtest.backtesting.engine import RunStatus, run_backtest
from portfolio_backtest.config.settings import BacktestConfig
from portfolio_backtest.data.dataset import Dataset
from portfolio_backtest.strategies.base import NamedStrategy
from portfolio_backtest.strategies.benchmarks import index_benchmark, uniform_benchmark
from portfolio_backtest.utils.errors import BacktestConfigError

from conftest import make_price_frame


def hold_current(window, w_current):
    return w_current


def uniform_then_hold(window, w_current):
    n_assets = window["adjusted"].shape[1]
    if not np.any(w_current):
        return np.repeat(1.0 / n_assets, n_assets)
    return w_current


def test_rebalance_schedule_and_holding_periods(two_asset_dataset):
    """
    Test the stepping schedule.

    Scenario: 12 bars, lookback 4, rebalance every 3.
    Expected: rebalances at bars 4, 7, 10; returns for bars 4..11 (the last
    holding period is cut short by the end of the data).
    """
    config = BacktestConfig(lookback_window=4, rebalance_every=3)
    run = run_backtest(uniform_benchmark(), two_asset_dataset, config)

    time_index = two_asset_dataset.time_index
    assert run.status == RunStatus.COMPLETED
    assert run.n_steps == 3
    assert list(run.weights.index) == [time_index[4], time_index[7], time_index[10]]
    assert list(run.returns.index) == list(time_index[4:])
    assert list(run.weights.columns) == ["A1", "A2"]


def test_window_never_contains_current_or_future_bars(two_asset_dataset):
    """Each window ends at the bar before the rebalance index."""
    seen = []

    def spy(window):
        seen.append((window["adjusted"].index[0], window["adjusted"].index[-1], len(window["adjusted"])))
        return [0.5, 0.5]

    config = BacktestConfig(lookback_window=4, rebalance_every=3)
    run_backtest(NamedStrategy("spy", spy), two_asset_dataset, config)

    time_index = two_asset_dataset.time_index
    assert seen == [
        (time_index[0], time_index[3], 4),
        (time_index[3], time_index[6], 4),
        (time_index[6], time_index[9], 4),
    ]


def test_window_includes_index_series(two_asset_dataset):
    seen = []

    def spy(window):
        seen.append(set(window))
        return [0.5, 0.5]

    run_backtest(NamedStrategy("spy", spy), two_asset_dataset, BacktestConfig(lookback_window=4, rebalance_every=4))

    assert seen[0] == {"adjusted", "index"}


def test_daily_rebalanced_returns_are_exact(two_asset_dataset):
    """
    Test return computation.

    Scenario: A1 grows 1% per bar, A2 is flat, 50/50 rebalanced every bar.
    Expected: every bar returns exactly 0.5%, wealth = 1.005^n.
    """
    config = BacktestConfig(lookback_window=4, rebalance_every=1)
    run = run_backtest(uniform_benchmark(), two_asset_dataset, config)

    assert np.allclose(run.returns, 0.005)
    assert np.allclose(run.wealth, 1.005 ** np.arange(1, 9))
    assert np.isclose(run.final_wealth, 1.005**8)


def test_weights_drift_between_rebalances(two_asset_dataset):
    """
    Test buy-and-hold drift within a holding period.

    Scenario: 50/50 at bar 4, held for 8 bars without rebalancing.
    Expected: wealth = 0.5 * 1.01^k + 0.5 after k bars (no rebalancing).
    """
    config = BacktestConfig(lookback_window=4, rebalance_every=8)
    run = run_backtest(uniform_benchmark(), two_asset_dataset, config)

    k = np.arange(1, 9)
    assert run.n_steps == 1
    assert np.allclose(run.wealth, 0.5 * 1.01**k + 0.5)


def test_transaction_cost_charged_at_rebalance(two_asset_dataset):
    """
    Test cost accounting.

    Scenario: first rebalance from cash to 50/50 (turnover 1.0) at 1% per side.
    Expected: first bar return = 0.99 * 1.005 - 1.
    """
    config = BacktestConfig(lookback_window=4, rebalance_every=8, transaction_cost={"buy": 0.01, "sell": 0.01})
    run = run_backtest(uniform_benchmark(), two_asset_dataset, config)

    assert np.isclose(run.turnover.iloc[0], 1.0)
    assert np.isclose(run.returns.iloc[0], 0.99 * 1.005 - 1.0)


def test_uniform_weights_sum_to_one_at_every_step():
    dataset = generate_gbm_dataset(n_assets=20, n_bars=300, seed=3)
    run = run_backtest(uniform_benchmark(), dataset, BacktestConfig(lookback_window=60, rebalance_every=10))

    assert run.weights.shape[1] == 20
    assert np.allclose(run.weights.sum(axis=1), 1.0)


def test_first_step_fault_has_no_completed_steps(two_asset_dataset):
    """A strategy failing on its first call yields a FAULTED run with NaN measures."""
    def broken(window):
        raise RuntimeError("no data for you")

    run = run_backtest(NamedStrategy("broken", broken), two_asset_dataset, BacktestConfig(lookback_window=4))

    assert run.status == RunStatus.FAULTED
    assert run.failed
    assert run.n_steps == 0
    assert len(run.returns) == 0
    assert run.fault.message == "no data for you"
    assert run.fault.step == two_asset_dataset.time_index[4]

    metrics = evaluate_run(run)
    assert all(np.isnan(value) for value in metrics.values())


def test_mid_run_fault_keeps_earlier_steps(two_asset_dataset):
    calls = []

    def fails_on_third_call(window):
        calls.append(1)
        if len(calls) == 3:
            raise ValueError("third call fails")
        return [0.5, 0.5]

    config = BacktestConfig(lookback_window=2, rebalance_every=2)
    run = run_backtest(NamedStrategy("flaky", fails_on_third_call), two_asset_dataset, config)

    assert run.status == RunStatus.FAULTED
    assert run.n_steps == 2
    assert len(run.returns) == 4
    assert len(calls) == 3
    assert not np.isnan(evaluate_run(run)["annual_return"])


@pytest.mark.parametrize(
    "weights, message",
    [
        ([0.5, 0.5, 0.0], "length 3"),
        ([np.nan, 1.0], "non-finite"),
        ([np.inf, 0.0], "non-finite"),
    ],
)
def test_invalid_weights_fault_the_run(two_asset_dataset, weights, message):
    run = run_backtest(NamedStrategy("bad", lambda window: weights), two_asset_dataset, BacktestConfig(lookback_window=4))

    assert run.status == RunStatus.FAULTED
    assert message in run.fault.message


def test_shortselling_constraint_faults_the_run(two_asset_dataset):
    config = BacktestConfig(lookback_window=4, shortselling=False)
    run = run_backtest(NamedStrategy("short", lambda window: [1.5, -0.5]), two_asset_dataset, config)

    assert run.fault.message == "No-shortselling constraint not satisfied."


def test_strategy_holding_current_weights_has_zero_turnover(two_asset_dataset):
    """Returning the current holdings every step never trades and never pays costs."""
    free = run_backtest(NamedStrategy("hold", hold_current), two_asset_dataset, BacktestConfig(lookback_window=4))
    costly = run_backtest(
        NamedStrategy("hold", hold_current),
        two_asset_dataset,
        BacktestConfig(lookback_window=4, transaction_cost=0.0015),
    )

    assert costly.total_turnover == 0.0
    assert np.allclose(costly.wealth, free.wealth)


def test_cost_only_on_initial_allocation_when_holding():
    """
    Test costs with a buy-and-hold strategy.

    Scenario: buy 1/N once, then always return the drifted current weights.
    Expected: turnover only at the first step, so costly wealth is exactly
    (1 - cost of the first trade) times cost-free wealth.
    """
    dataset = generate_gbm_dataset(n_assets=10, n_bars=200, seed=9)
    config = BacktestConfig(lookback_window=50, rebalance_every=10)
    free = run_backtest(NamedStrategy("bh", uniform_then_hold), dataset, config)
    costly = run_backtest(
        NamedStrategy("bh", uniform_then_hold),
        dataset,
        BacktestConfig(lookback_window=50, rebalance_every=10, transaction_cost=0.0015),
    )

    assert np.isclose(costly.total_turnover, 1.0)
    assert np.allclose(costly.turnover.iloc[1:], 0.0)
    assert np.allclose(costly.wealth, free.wealth * (1.0 - 0.0015))


def test_same_inputs_give_identical_results():
    dataset = generate_gbm_dataset(n_assets=15, n_bars=250, seed=21)
    config = BacktestConfig(lookback_window=60, rebalance_every=5, transaction_cost=0.001)

    first = run_backtest(uniform_benchmark(), dataset, config)
    second = run_backtest(uniform_benchmark(), dataset, config)

    pd.testing.assert_series_equal(first.returns, second.returns)
    pd.testing.assert_series_equal(first.wealth, second.wealth)
    pd.testing.assert_frame_equal(first.weights, second.weights)
    assert first.total_turnover == second.total_turnover


def test_engine_does_not_modify_dataset():
    dataset = generate_gbm_dataset(n_assets=5, n_bars=80, seed=2)
    before = dataset["adjusted"].copy()

    def reader(window):
        frame = window["adjusted"]
        return np.repeat(1.0 / frame.shape[1], frame.shape[1])

    run_backtest(NamedStrategy("reader", reader), dataset, BacktestConfig(lookback_window=20, rebalance_every=5))

    pd.testing.assert_frame_equal(dataset["adjusted"], before)


def test_optimize_every_restores_last_optimized_weights(two_asset_dataset):
    """
    Test optimize_every.

    Scenario: rebalance every 2 bars, optimize every 4, from bar 4 to bar 11.
    Expected: strategy invoked at bars 4 and 8 only; every rebalance goes back
    to the optimized 50/50 allocation.
    """
    calls = []

    def counted(window):
        calls.append(1)
        return [0.5, 0.5]

    config = BacktestConfig(lookback_window=4, rebalance_every=2, optimize_every=4)
    run = run_backtest(NamedStrategy("counted", counted), two_asset_dataset, config)

    assert len(calls) == 2
    assert run.n_steps == 4
    assert np.allclose(run.weights.to_numpy(), 0.5)
    # Drift between rebalances means every restore trades a little
    assert np.all(run.turnover.iloc[1:] > 0)


def test_index_benchmark_tracks_index_series(two_asset_dataset):
    config = BacktestConfig(lookback_window=4, rebalance_every=3)
    run = run_backtest(index_benchmark(), two_asset_dataset, config)

    expected = two_asset_dataset.index_series.pct_change().iloc[4:]
    assert list(run.weights.columns) == ["index"]
    assert np.allclose(run.returns.to_numpy(), expected.to_numpy())
    assert run.dataset_name == "two assets"


def test_insufficient_bars_is_configuration_error(two_asset_dataset):
    config = BacktestConfig(lookback_window=10, rebalance_every=3)

    with pytest.raises(BacktestConfigError, match="needs at least 13"):
        run_backtest(uniform_benchmark(), two_asset_dataset, config)


def test_unknown_price_field_is_configuration_error(two_asset_dataset):
    with pytest.raises(BacktestConfigError, match="price field"):
        run_backtest(uniform_benchmark(), two_asset_dataset, BacktestConfig(lookback_window=4, price_field="close"))


def test_missing_prices_count_as_zero_return():
    prices = make_price_frame([0.01, 0.0], n_bars=10)
    prices.iloc[6, 0] = np.nan
    dataset = Dataset.from_prices(prices)

    run = run_backtest(uniform_benchmark(), dataset, BacktestConfig(lookback_window=4, rebalance_every=1))

    assert np.all(np.isfinite(run.returns))
    assert run.status == RunStatus.COMPLETED
