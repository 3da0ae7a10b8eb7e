"""
Tests for portfolio_backtest/orchestration/scheduler.py

End-to-end scenarios on synthetic GBM datasets, input normalization, up-front
validation, fault isolation, and the equivalence of every worker layout with
the sequential run.
"""

import logging

import numpy as np
import pandas as pd
import pytest

from portfolio_backtest.analytics.synthetic_data import generate_gbm_dataset, generate_gbm_datasets
from portfolio_backtest.backtesting.engine import RunStatus
from portfolio_backtest.config.settings import BacktestConfig
from portfolio_backtest.data.dataset import Dataset
from portfolio_backtest.orchestration.scheduler import (
    normalize_datasets,
    normalize_strategies,
    run_backtests,
)
from portfolio_backtest.strategies.base import NamedStrategy
from portfolio_backtest.strategies.benchmarks import generate_random_strategies, uniform_benchmark
from portfolio_backtest.strategies.loader import load_strategies_from_folder
from portfolio_backtest.utils.errors import BacktestConfigError, DatasetValidationError

SMALL = BacktestConfig(lookback_window=40, rebalance_every=10)


def equal_weight(window):
    n_assets = window["adjusted"].shape[1]
    return np.repeat(1.0 / n_assets, n_assets)


def first_asset(window):
    weights = np.zeros(window["adjusted"].shape[1])
    weights[0] = 1.0
    return weights


def inverse_volatility(window):
    vols = window["adjusted"].pct_change().std().to_numpy()
    weights = 1.0 / vols
    return weights / weights.sum()


@pytest.fixture(scope="module")
def small_datasets():
    return generate_gbm_datasets(3, n_assets=6, n_bars=120, seed=11, name_prefix="sim")


def assert_same_runs(left, right):
    assert left.strategy_names == right.strategy_names
    assert left.dataset_names == right.dataset_names
    for strategy_name, dataset_name, run in left.iter_runs():
        other = right.get(strategy_name, dataset_name)
        assert run.status == other.status
        pd.testing.assert_series_equal(run.returns, other.returns)
        pd.testing.assert_frame_equal(run.weights, other.weights)


def test_uniform_strategy_on_ten_gbm_datasets():
    """
    Test a full-size invocation.

    Scenario: 10 datasets x 504 bars x 50 assets, lookback 120, rebalance 20,
    one uniform strategy.
    Expected: every run completes with positive volatility.
    """
    datasets = generate_gbm_datasets(10, n_assets=50, n_bars=504, seed=2024)
    results = run_backtests(
        {"uniform weights": equal_weight},
        datasets,
        BacktestConfig(lookback_window=120, rebalance_every=20),
    )

    assert len(results) == 10
    assert results.dataset_names == [f"dataset {i}" for i in range(1, 11)]
    for _, dataset_name, run in results.iter_runs():
        assert run.status == RunStatus.COMPLETED
        assert run.n_steps == 20
        assert len(run.returns) == 504 - 120
        assert results.get_performance("uniform weights", dataset_name)["annual_volatility"] > 0


def test_transaction_costs_never_increase_wealth(small_datasets):
    free = run_backtests([equal_weight], small_datasets, SMALL)
    costly = run_backtests(
        [equal_weight],
        small_datasets,
        BacktestConfig(lookback_window=40, rebalance_every=10, transaction_cost=0.0015),
    )

    for dataset_name in free.dataset_names:
        free_run = free.get("fun1", dataset_name)
        costly_run = costly.get("fun1", dataset_name)
        assert costly_run.final_wealth < free_run.final_wealth
        assert np.all(costly_run.wealth.to_numpy() <= free_run.wealth.to_numpy() + 1e-12)


def test_strategy_files_from_folder(tmp_path, small_datasets):
    (tmp_path / "equal.py").write_text(
        "import numpy as np\n"
        "\n"
        "def portfolio_fun(window):\n"
        "    n = window['adjusted'].shape[1]\n"
        "    return np.repeat(1.0 / n, n)\n"
    )
    (tmp_path / "holder.py").write_text(
        "import numpy as np\n"
        "\n"
        "def portfolio_fun(window, w_current):\n"
        "    if not np.any(w_current):\n"
        "        n = window['adjusted'].shape[1]\n"
        "        return np.repeat(1.0 / n, n)\n"
        "    return w_current\n"
    )

    strategies = load_strategies_from_folder(tmp_path)
    results = run_backtests(strategies, small_datasets, SMALL)

    assert results.strategy_names == ["equal", "holder"]
    for dataset_name in results.dataset_names:
        assert results.get("equal", dataset_name).status == RunStatus.COMPLETED
        holder = results.get("holder", dataset_name)
        assert holder.status == RunStatus.COMPLETED
        assert np.isclose(holder.total_turnover, 1.0)


def test_auto_naming_of_strategies_and_datasets():
    datasets = generate_gbm_datasets(2, n_assets=4, n_bars=80, seed=5)
    results = run_backtests([equal_weight, first_asset], datasets, SMALL)

    assert results.strategy_names == ["fun1", "fun2"]
    assert results.dataset_names == ["dataset 1", "dataset 2"]


def test_mapping_keys_name_strategies_and_datasets(small_datasets):
    results = run_backtests(
        {"equal": equal_weight, "named": uniform_benchmark()},
        {"first": small_datasets[0], "second": small_datasets[1]},
        SMALL,
    )

    assert results.strategy_names == ["equal", "named"]
    assert results.dataset_names == ["first", "second"]


def test_single_strategy_and_dataset_are_accepted(small_datasets):
    results = run_backtests(equal_weight, small_datasets[0], SMALL)

    assert results.strategy_names == ["fun1"]
    assert results.dataset_names == ["sim 1"]


def test_benchmarks_are_appended_in_order(small_datasets):
    config = BacktestConfig(lookback_window=40, rebalance_every=10, benchmarks=("index", "uniform"))
    results = run_backtests({"mine": first_asset}, small_datasets, config)

    assert results.strategy_names == ["mine", "index", "uniform"]
    assert results.user_strategy_names == ["mine"]
    assert results.benchmark_names == ("index", "uniform")


def test_index_benchmark_without_index_series_is_rejected():
    datasets = generate_gbm_datasets(2, n_assets=4, n_bars=80, seed=6, with_index=False)
    config = BacktestConfig(lookback_window=40, rebalance_every=10, benchmarks=("index",))

    with pytest.raises(BacktestConfigError, match="requires an index series"):
        run_backtests([equal_weight], datasets, config)


def test_strategy_name_clashing_with_benchmark_is_rejected(small_datasets):
    config = BacktestConfig(lookback_window=40, rebalance_every=10, benchmarks=("uniform",))

    with pytest.raises(BacktestConfigError, match="clash"):
        run_backtests({"uniform": equal_weight}, small_datasets, config)


def test_short_dataset_fails_before_any_strategy_call(small_datasets):
    calls = []

    def spy(window):
        calls.append(1)
        return equal_weight(window)

    short = generate_gbm_dataset(n_assets=6, n_bars=30, seed=1, name="short")

    with pytest.raises(BacktestConfigError, match="needs at least 50"):
        run_backtests([spy], list(small_datasets) + [short], SMALL)
    assert calls == []


@pytest.mark.parametrize(
    "strategies, message",
    [
        ([], "No strategies"),
        ([equal_weight, 42], "neither a Strategy nor a callable"),
    ],
)
def test_normalize_strategies_rejects_bad_input(strategies, message):
    with pytest.raises(BacktestConfigError, match=message):
        normalize_strategies(strategies)


def test_mapping_keys_override_strategy_names():
    strategies = normalize_strategies({"same": equal_weight, "other": NamedStrategy("same", first_asset)})

    assert [s.name for s in strategies] == ["same", "other"]


def test_normalize_strategies_rejects_duplicate_names():
    with pytest.raises(BacktestConfigError, match="unique"):
        normalize_strategies([NamedStrategy("a", equal_weight), NamedStrategy("a", first_asset)])


def test_normalize_datasets_rejects_bad_input(small_datasets):
    with pytest.raises(DatasetValidationError, match="not a Dataset"):
        normalize_datasets([small_datasets[0], np.ones((10, 2))])
    with pytest.raises(DatasetValidationError, match="No datasets"):
        normalize_datasets([])
    with pytest.raises(DatasetValidationError, match="unique"):
        normalize_datasets([small_datasets[0], small_datasets[0]])


def test_fault_in_one_pair_does_not_affect_others():
    """A strategy that fails on 3-asset datasets still completes on 5-asset ones."""
    def needs_five_assets(window):
        n_assets = window["adjusted"].shape[1]
        if n_assets < 5:
            raise ValueError("needs at least five assets")
        return np.repeat(1.0 / n_assets, n_assets)

    datasets = {
        "three": generate_gbm_dataset(n_assets=3, n_bars=80, seed=1),
        "five": generate_gbm_dataset(n_assets=5, n_bars=80, seed=2),
    }
    results = run_backtests({"picky": needs_five_assets, "equal": equal_weight}, datasets, SMALL)

    faulted = results.get("picky", "three")
    assert faulted.status == RunStatus.FAULTED
    assert "needs at least five assets" in faulted.fault.message
    assert results.get("picky", "five").status == RunStatus.COMPLETED
    assert results.get("equal", "three").status == RunStatus.COMPLETED


@pytest.mark.parametrize("parallel_strategies, parallel_datasets", [(2, 1), (1, 2), (2, 2), (3, 3)])
def test_thread_layouts_match_sequential(small_datasets, parallel_strategies, parallel_datasets):
    strategies = {"equal": equal_weight, "first": first_asset, "inv_vol": inverse_volatility}
    config = BacktestConfig(lookback_window=40, rebalance_every=10, transaction_cost=0.001, benchmarks="uniform")

    sequential = run_backtests(strategies, small_datasets, config)
    parallel = run_backtests(
        strategies,
        small_datasets,
        BacktestConfig(
            lookback_window=40,
            rebalance_every=10,
            transaction_cost=0.001,
            benchmarks="uniform",
            parallel_strategies=parallel_strategies,
            parallel_datasets=parallel_datasets,
            backend="thread",
        ),
    )

    assert_same_runs(sequential, parallel)


def test_process_backend_matches_sequential(small_datasets):
    strategies = generate_random_strategies(3, max_size=4, seed=8)

    sequential = run_backtests(strategies, small_datasets, SMALL)
    parallel = run_backtests(
        strategies,
        small_datasets,
        BacktestConfig(lookback_window=40, rebalance_every=10, parallel_strategies=2, parallel_datasets=2),
    )

    assert parallel.config.backend == "process"
    assert_same_runs(sequential, parallel)


def test_unpicklable_strategy_faults_under_process_backend(small_datasets):
    config = BacktestConfig(lookback_window=40, rebalance_every=10, parallel_datasets=2, backend="process")
    results = run_backtests(
        {"lambda": lambda window: equal_weight(window), "uniform weights": uniform_benchmark()},
        small_datasets[:2],
        config,
    )

    for dataset_name in results.dataset_names:
        assert results.get("lambda", dataset_name).status == RunStatus.FAULTED
        assert results.get("uniform weights", dataset_name).status == RunStatus.COMPLETED


def test_keyword_options_build_the_config(small_datasets):
    results = run_backtests([equal_weight], small_datasets, lookback_window=40, rebalance_every=10, show_progress=True)

    assert results.config.lookback_window == 40
    assert results.config.show_progress is True
    assert all(run.status == RunStatus.COMPLETED for _, _, run in results.iter_runs())


def test_config_and_keyword_options_together_are_rejected(small_datasets):
    with pytest.raises(BacktestConfigError, match="not both"):
        run_backtests([equal_weight], small_datasets, SMALL, rebalance_every=5)


def test_results_are_keyed_by_name_not_completion_order(small_datasets):
    """Every dataset name maps to the run on that dataset, whatever the layout."""
    config = BacktestConfig(lookback_window=40, rebalance_every=10, parallel_datasets=3, backend="thread")
    results = run_backtests([equal_weight], small_datasets, config)

    for dataset in small_datasets:
        run = results.get("fun1", dataset.name)
        assert run.dataset_name == dataset.name
        assert run.returns.index[0] == dataset.time_index[40]


def test_dataset_objects_can_be_passed_directly():
    prices = pd.DataFrame(
        np.linspace(100.0, 120.0, 60)[:, None] * np.ones((1, 3)),
        index=pd.bdate_range("2024-01-01", periods=60),
        columns=["X", "Y", "Z"],
    )
    results = run_backtests([equal_weight], [Dataset.from_prices(prices)], SMALL)

    run = results.get(0, "dataset 1")
    # The first held bar (40) earns P40 / P39 - 1, so growth starts from bar 39
    assert np.isclose(run.final_wealth, 120.0 / prices.iloc[39, 0])


def test_isolated_files_with_conflicting_helpers_keep_their_own_weights(tmp_path, small_datasets):
    """
    Test isolated loading through a full backtest.

    Scenario: two files each define `helper` with conflicting behaviour; one
    allocates 1/N, the other puts everything in the first asset.
    Expected: both runs complete and each holds the weights its own helper gives.
    """
    (tmp_path / "a_spread.py").write_text(
        "import numpy as np\n"
        "\n"
        "def helper(n):\n"
        "    return np.repeat(1.0 / n, n)\n"
        "\n"
        "def portfolio_fun(window):\n"
        "    return helper(window['adjusted'].shape[1])\n"
    )
    (tmp_path / "b_focused.py").write_text(
        "import numpy as np\n"
        "\n"
        "def helper(n):\n"
        "    w = np.zeros(n)\n"
        "    w[0] = 1.0\n"
        "    return w\n"
        "\n"
        "def portfolio_fun(window):\n"
        "    return helper(window['adjusted'].shape[1])\n"
    )

    results = run_backtests(load_strategies_from_folder(tmp_path), small_datasets, SMALL)

    expected_focused = np.zeros(6)
    expected_focused[0] = 1.0
    for dataset_name in results.dataset_names:
        spread = results.get("a_spread", dataset_name)
        focused = results.get("b_focused", dataset_name)
        assert spread.status == RunStatus.COMPLETED
        assert focused.status == RunStatus.COMPLETED
        assert np.allclose(spread.weights.to_numpy(), 1.0 / 6)
        assert np.allclose(focused.weights.to_numpy(), expected_focused)


def test_each_pair_is_logged_when_it_finishes(small_datasets, caplog):
    """Strategy calls on dataset k see exactly k - 1 finished-pair records before them."""
    seen = []

    def counting(window):
        finished = [r for r in caplog.records if r.getMessage().startswith("Finished counting x")]
        seen.append(len(finished))
        return equal_weight(window)

    with caplog.at_level(logging.DEBUG, logger="portfolio_backtest.orchestration.scheduler"):
        run_backtests({"counting": counting}, small_datasets, SMALL)

    assert sorted(set(seen)) == [0, 1, 2]
    finished = [r for r in caplog.records if r.getMessage().startswith("Finished counting x")]
    assert len(finished) == 3
    assert all(r.levelno == logging.DEBUG for r in finished)
