"""
Mathematical helpers for portfolio accounting.

This module holds the small pieces of arithmetic the rolling-window engine
repeats at every step: turning prices into returns, measuring how far a
rebalance moves the portfolio, pricing that move, and letting weights drift
with the market between rebalances.
"""

import numpy as np
import pandas as pd


def compute_simple_returns(prices: pd.DataFrame | pd.Series) -> pd.DataFrame | pd.Series:
    """
    Convert prices into simple (arithmetic) returns.

    **Mathematical**: For each period t:
        r_t = (P_t / P_{t-1}) - 1

    **Functionally**:
    - Works column-wise on a DataFrame of asset prices (one column per asset).
    - The first row is NaN (no prior price to compare).
    - Missing prices are not filled; a NaN price yields NaN returns around it.
      The engine treats NaN bar returns as zero (asset neither gains nor loses).

    Args:
        prices: Prices in chronological order (oldest first).

    Returns:
        Simple returns with the same shape and index as the input.
    """
    return prices.pct_change(fill_method=None)


def compute_turnover(previous_weights: np.ndarray, new_weights: np.ndarray) -> float:
    """
    L1 distance between two weight vectors.

    **Conceptual**: Turnover answers "what fraction of wealth had to trade to
    move from the held portfolio to the target?" Buying 10% of one asset and
    selling 10% of another is a turnover of 0.2.

    Args:
        previous_weights: Weights held just before the rebalance.
        new_weights: Target weights after the rebalance.

    Returns:
        sum(|new - previous|).
    """
    return float(np.abs(np.asarray(new_weights) - np.asarray(previous_weights)).sum())


def compute_transaction_cost(
    previous_weights: np.ndarray,
    new_weights: np.ndarray,
    buy_rate: float,
    sell_rate: float,
) -> float:
    """
    Fraction of wealth lost to trading costs at a rebalance.

    **Mathematical**: With Δw = new - previous:
        cost = buy_rate * sum(max(Δw, 0)) + sell_rate * sum(max(-Δw, 0))

    Returns:
        Cost as a fraction of wealth (0.001 = 10 bps of wealth).
    """
    delta = np.asarray(new_weights) - np.asarray(previous_weights)
    bought = np.clip(delta, 0.0, None).sum()
    sold = np.clip(-delta, 0.0, None).sum()
    return float(buy_rate * bought + sell_rate * sold)


def drift_weights(weights: np.ndarray, asset_returns: np.ndarray) -> tuple[np.ndarray, float]:
    """
    Let a portfolio drift with one bar of asset returns.

    **Mathematical**: With portfolio return R = w · r, each weight becomes
        w_i' = w_i * (1 + r_i) / (1 + R)
    The un-invested remainder (1 - sum(w)) is cash and earns zero.

    **Edge cases**:
    - If the portfolio is wiped out (1 + R <= 0) the weights cannot be
      renormalized; they are returned unchanged so the caller can keep going
      with a zero-wealth path.

    Args:
        weights: Weights at the start of the bar.
        asset_returns: Simple returns of each asset over the bar (NaN = 0).

    Returns:
        Tuple of (weights at the end of the bar, portfolio return of the bar).
    """
    r = np.nan_to_num(np.asarray(asset_returns, dtype=float), nan=0.0)
    portfolio_return = float(np.dot(weights, r))
    growth = 1.0 + portfolio_return
    if growth <= 0:
        return weights, portfolio_return
    return weights * (1.0 + r) / growth, portfolio_return
