"""Inverse-volatility portfolio."""

import numpy as np


def estimate_scores(prices):
    volatility = prices.pct_change().std().to_numpy()
    return 1.0 / np.where(volatility > 0, volatility, np.nan)


def portfolio_fun(window):
    scores = np.nan_to_num(estimate_scores(window["adjusted"]), nan=0.0)
    return scores / scores.sum()
