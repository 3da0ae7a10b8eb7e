"""
Pytest configuration file.

Ensures the repo root is on sys.path so that 'import portfolio_backtest...' works,
and provides small deterministic datasets shared by several test modules.
"""
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add the repo root to sys.path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from portfolio_backtest.data.dataset import Dataset  # noqa: E402


def make_price_frame(daily_returns, n_bars: int, start: str = "2024-01-01") -> pd.DataFrame:
    """
    Helper to create a price matrix where asset j compounds at daily_returns[j].

    price[t, j] = 100 * (1 + daily_returns[j]) ** t
    """
    steps = np.arange(n_bars)[:, None]
    growth = (1.0 + np.asarray(daily_returns, dtype=float))[None, :]
    prices = 100.0 * growth**steps
    index = pd.bdate_range(start=start, periods=n_bars, name="timestamp")
    columns = [f"A{j + 1}" for j in range(len(daily_returns))]
    return pd.DataFrame(prices, index=index, columns=columns)


@pytest.fixture
def two_asset_dataset():
    """Asset A1 grows 1% per bar, asset A2 is flat; 12 bars; index = A1."""
    prices = make_price_frame([0.01, 0.0], n_bars=12)
    index_series = prices["A1"].rename("index")
    return Dataset({"adjusted": prices}, name="two assets", index_series=index_series)
