"""
Synthetic market datasets for testing and validation.

This module generates multi-asset price panels from Geometric Brownian Motion
(GBM) with a shared market factor, wrapped as Datasets that the backtest
harness accepts directly.

These generators are used for:
  - Validating the rolling-window engine and the measures under controlled
    conditions (known drift, known volatility, no missing data)
  - Building many independent datasets for cross-dataset summaries and
    leaderboards without downloading anything
"""

from typing import Optional

import numpy as np
import pandas as pd

from portfolio_backtest.data.dataset import Dataset


def generate_gbm_prices(
    n_assets: int,
    n_bars: int,
    drift: float = 0.08,
    volatility: float = 0.25,
    market_share: float = 0.5,
    initial_price: float = 100.0,
    dt: float = 1 / 252,
    start: str = "2020-01-01",
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """
    Generate a panel of correlated GBM price paths.

    **Conceptual**: Each asset follows GBM, the classic model for equity
    prices: trending, compounding, log-normal. A common market shock makes the
    assets move together, so diversification (e.g., 1/N) visibly lowers
    volatility compared with single assets.

    **Mathematical**: For asset i, with Z_m (market) and Z_i (idiosyncratic)
    independent standard normals and ρ = market_share:
        ε_i = sqrt(ρ) * Z_m + sqrt(1 - ρ) * Z_i
        S_{i,t+1} = S_{i,t} * exp((μ_i - 0.5 * σ_i^2) * dt + σ_i * sqrt(dt) * ε_i)
    Asset drifts μ_i are scattered around `drift` and volatilities σ_i around
    `volatility`, so assets are not interchangeable.

    **Functionally**:
    - Output: DataFrame of shape (n_bars, n_assets), business-day index from
      `start`, columns "A001", "A002", ..., first row equal to initial_price.
    - Same seed → identical panel.

    **Edge cases**:
    - volatility = 0 → deterministic exponential paths.

    Args:
        n_assets: Number of assets (columns).
        n_bars: Number of bars (rows), including the initial price.
        drift: Mean annualized drift.
        volatility: Mean annualized volatility.
        market_share: Fraction of variance explained by the market factor, in [0, 1].
        initial_price: Starting price of every asset.
        dt: Time increment per bar (1/252 for daily).
        start: First timestamp.
        seed: Random seed for reproducibility.

    Returns:
        Price panel as a DataFrame.
    """
    if n_assets < 1 or n_bars < 1:
        raise ValueError(f"n_assets and n_bars must be positive, got: {n_assets}, {n_bars}")
    if not 0.0 <= market_share <= 1.0:
        raise ValueError(f"market_share must be in [0, 1], got: {market_share}")

    rng = np.random.default_rng(seed)

    drifts = drift + rng.normal(0.0, 0.05, size=n_assets)
    vols = volatility * rng.uniform(0.6, 1.4, size=n_assets)

    market_shocks = rng.standard_normal((n_bars - 1, 1))
    own_shocks = rng.standard_normal((n_bars - 1, n_assets))
    shocks = np.sqrt(market_share) * market_shocks + np.sqrt(1.0 - market_share) * own_shocks

    # Drift correction (Itô) keeps the expected price growing at rate μ
    log_steps = (drifts - 0.5 * vols**2) * dt + vols * np.sqrt(dt) * shocks
    log_paths = np.vstack([np.zeros((1, n_assets)), np.cumsum(log_steps, axis=0)])

    index = pd.bdate_range(start=start, periods=n_bars, name="timestamp")
    columns = [f"A{i + 1:03d}" for i in range(n_assets)]
    return pd.DataFrame(initial_price * np.exp(log_paths), index=index, columns=columns)


def generate_gbm_dataset(
    n_assets: int = 50,
    n_bars: int = 504,
    seed: Optional[int] = None,
    name: Optional[str] = None,
    with_index: bool = True,
    drift: float = 0.08,
    volatility: float = 0.25,
    start: str = "2020-01-01",
) -> Dataset:
    """
    Generate a full OHLCV Dataset around a GBM adjusted-close panel.

    **Fields**:
      - adjusted / close: the GBM panel
      - open: previous close times a small overnight gap
      - high / low: envelope of open and close widened by intraday noise
      - volume: random integer share counts
    With `with_index`, the dataset carries an equal-weighted market index
    (mean of normalized prices, starting at 100) so the "index" benchmark can run.

    Args:
        n_assets: Number of assets.
        n_bars: Number of bars (504 ≈ two years of daily data).
        seed: Random seed for reproducibility.
        name: Dataset name (None lets the scheduler auto-name it).
        with_index: Attach an index series.
        drift: Mean annualized drift.
        volatility: Mean annualized volatility.
        start: First timestamp.

    Returns:
        A validated Dataset.
    """
    rng = np.random.default_rng(seed)
    adjusted = generate_gbm_prices(
        n_assets,
        n_bars,
        drift=drift,
        volatility=volatility,
        start=start,
        seed=int(rng.integers(0, 2**31 - 1)),
    )

    shape = adjusted.shape
    gaps = np.exp(rng.normal(0.0, 0.002, size=shape))
    open_ = adjusted.shift(1).fillna(adjusted.iloc[0]) * gaps
    upper = np.maximum(open_, adjusted) * (1.0 + np.abs(rng.normal(0.0, 0.005, size=shape)))
    lower = np.minimum(open_, adjusted) * (1.0 - np.abs(rng.normal(0.0, 0.005, size=shape)))
    volume = pd.DataFrame(
        rng.integers(100_000, 5_000_000, size=shape).astype(float),
        index=adjusted.index,
        columns=adjusted.columns,
    )

    fields = {
        "adjusted": adjusted,
        "open": open_,
        "high": upper,
        "low": lower,
        "close": adjusted.copy(),
        "volume": volume,
    }

    index_series = None
    if with_index:
        index_series = (adjusted / adjusted.iloc[0]).mean(axis=1) * 100.0
        index_series.name = "index"

    return Dataset(fields, name=name, index_series=index_series)


def generate_gbm_datasets(
    n_datasets: int,
    n_assets: int = 50,
    n_bars: int = 504,
    seed: Optional[int] = None,
    with_index: bool = True,
    name_prefix: Optional[str] = None,
) -> list[Dataset]:
    """
    Generate independent synthetic datasets from one master seed.

    Args:
        n_datasets: Number of datasets.
        n_assets: Assets per dataset.
        n_bars: Bars per dataset.
        seed: Master seed; each dataset gets its own spawned seed.
        with_index: Attach an index series to each dataset.
        name_prefix: When given, datasets are named "<prefix> 1", "<prefix> 2", ...
                     Otherwise they are left unnamed.
    """
    children = np.random.SeedSequence(seed).spawn(n_datasets)
    return [
        generate_gbm_dataset(
            n_assets=n_assets,
            n_bars=n_bars,
            seed=int(child.generate_state(1)[0]),
            name=f"{name_prefix} {i + 1}" if name_prefix else None,
            with_index=with_index,
        )
        for i, child in enumerate(children)
    ]
