"""Global minimum variance portfolio, long-only by clipping."""

import numpy as np


def estimate_scores(prices):
    returns = prices.pct_change().dropna(how="all").fillna(0.0)
    covariance = np.cov(returns.to_numpy(), rowvar=False)
    # Ridge term keeps the estimate invertible when assets outnumber bars
    covariance += 1e-6 * np.eye(covariance.shape[0])
    return np.linalg.solve(covariance, np.ones(covariance.shape[0]))


def portfolio_fun(window):
    scores = np.clip(estimate_scores(window["adjusted"]), 0.0, None)
    if scores.sum() <= 0:
        return np.repeat(1.0 / len(scores), len(scores))
    return scores / scores.sum()
