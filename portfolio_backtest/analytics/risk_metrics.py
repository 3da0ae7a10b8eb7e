"""
Risk and performance metrics for portfolio strategy evaluation.

This module implements the metric set used to compare portfolio strategies
across many datasets. Metrics are grouped into:
  - Return/risk framing: annualized return, annualized volatility, Sharpe ratio
  - Drawdown/pain: max drawdown, Sterling ratio
  - Distribution: Omega ratio, value at risk, conditional value at risk
  - Trading efficiency: return over turnover (ROT)

Every function is total: degenerate inputs (empty series, zero volatility,
no drawdown, no losses, no turnover) return NaN instead of raising, so a
partially completed or failed run can always be evaluated.
"""

import numpy as np
import pandas as pd

PERIODS_PER_YEAR = 252


def compute_total_return(equity_curve: pd.Series) -> float:
    """
    Compute the overall return from start to end of an equity (wealth) curve.

    **Mathematical**: Given an equity curve with initial value E_0 and final value E_T:
        Total Return = (E_T / E_0) - 1

    **Edge cases**:
    - Empty curve → NaN.

    Args:
        equity_curve: Time series of portfolio wealth values (must be positive).

    Returns:
        Total return as a decimal (e.g., 0.50 = 50% gain).
    """
    if len(equity_curve) == 0:
        return np.nan

    initial_equity = equity_curve.iloc[0]
    final_equity = equity_curve.iloc[-1]

    return (final_equity / initial_equity) - 1.0


def compute_wealth_curve(returns: pd.Series, initial_wealth: float = 1.0) -> pd.Series:
    """
    Compound simple returns into a wealth curve that starts at `initial_wealth`.

    The starting point is included, so a curve built from n returns has n + 1
    values. Including it matters for drawdowns: a loss on the very first bar is
    a drawdown from the initial wealth.
    """
    clean_returns = returns.fillna(0.0)
    wealth = initial_wealth * (1.0 + clean_returns).cumprod()
    return pd.concat([pd.Series([initial_wealth]), wealth.reset_index(drop=True)], ignore_index=True)


def compute_annual_return(
    returns: pd.Series,
    periods_per_year: int = PERIODS_PER_YEAR,
) -> float:
    """
    Compute the annualized (geometric) return of a series of simple returns.

    **Conceptual**: Answers "what constant yearly return would compound to the
    same final wealth over the same number of periods?" Unlike the arithmetic
    mean, it correctly penalizes volatility drag.

    **Mathematical**: With n periodic returns r_t:
        annual_return = (prod(1 + r_t))^(periods_per_year / n) - 1

    **Edge cases**:
    - Empty series → NaN.
    - Wealth wiped out (prod(1 + r_t) <= 0) → -1.0 (total loss).

    Args:
        returns: Periodic simple returns.
        periods_per_year: Number of periods per year (252 for daily bars).

    Returns:
        Annualized return as a decimal.
    """
    clean_returns = returns.dropna()
    n_periods = len(clean_returns)
    if n_periods == 0:
        return np.nan

    growth = float(np.prod(1.0 + clean_returns.to_numpy()))
    if growth <= 0:
        return -1.0

    return growth ** (periods_per_year / n_periods) - 1.0


def compute_annualized_volatility(
    returns: pd.Series,
    periods_per_year: int = PERIODS_PER_YEAR,
) -> float:
    """
    Compute annualized volatility (standard deviation of returns).

    **Mathematical**: Given periodic returns with sample standard deviation σ:
        σ_annualized = σ * sqrt(periods_per_year)

    **Edge cases**:
    - Fewer than two returns → NaN.
    - Constant returns → 0.

    Args:
        returns: Periodic simple returns.
        periods_per_year: Number of periods per year.

    Returns:
        Annualized volatility as a decimal.
    """
    clean_returns = returns.dropna()
    if len(clean_returns) < 2:
        return np.nan

    # Sample standard deviation (ddof=1), scaled to a yearly horizon
    return clean_returns.std(ddof=1) * np.sqrt(periods_per_year)


def compute_sharpe_ratio(
    returns: pd.Series,
    periods_per_year: int = PERIODS_PER_YEAR,
) -> float:
    """
    Compute the Sharpe ratio as annualized return over annualized volatility.

    **Conceptual**: How much (geometric) yearly return the strategy earns per
    unit of yearly volatility. Risk-free rate is taken as zero.

    **Edge cases**:
    - Zero volatility (e.g., all returns identical) → NaN, not a division error.
    - Fewer than two returns → NaN.

    Returns:
        Sharpe ratio as a scalar.
    """
    annual_vol = compute_annualized_volatility(returns, periods_per_year)

    # Tolerance instead of exact equality: constant series can give ~1e-18 std
    if np.isnan(annual_vol) or annual_vol < 1e-10:
        return np.nan

    return compute_annual_return(returns, periods_per_year) / annual_vol


def compute_drawdown_series(equity_curve: pd.Series) -> pd.Series:
    """
    Compute the drawdown time series showing the % drop from each prior peak.

    **Mathematical**: At each time t:
        drawdown_t = (equity_t / cumulative_peak_t) - 1
    where cumulative_peak_t = max(equity_0, ..., equity_t).

    Args:
        equity_curve: Time series of wealth values.

    Returns:
        Time series of drawdowns (values <= 0), same index as input.
    """
    cumulative_peak = equity_curve.cummax()
    return (equity_curve / cumulative_peak) - 1.0


def compute_max_drawdown(equity_curve: pd.Series) -> float:
    """
    Compute the maximum drawdown: worst peak-to-trough decline, as a magnitude.

    **Conceptual**: The single worst loss from a peak. Reported as a positive
    number (0.30 = the strategy was at some point 30% below its best wealth),
    so that lower is better and ratios divide by a positive quantity.

    **Edge cases**:
    - Empty curve → NaN.
    - Monotonically increasing wealth → 0.

    Args:
        equity_curve: Time series of wealth values (include the starting wealth).

    Returns:
        Maximum drawdown magnitude in [0, 1].
    """
    if len(equity_curve) == 0:
        return np.nan

    return float(-compute_drawdown_series(equity_curve).min())


def compute_sterling_ratio(
    returns: pd.Series,
    periods_per_year: int = PERIODS_PER_YEAR,
) -> float:
    """
    Compute the Sterling ratio: annualized return divided by max drawdown.

    **Conceptual**: Return per unit of worst-case pain. It punishes strategies
    whose headline return came with a deep drawdown.

    **Edge cases**:
    - No drawdown → NaN (undefined, not +inf).
    - Empty series → NaN.

    Returns:
        Sterling ratio as a scalar.
    """
    if len(returns.dropna()) == 0:
        return np.nan

    max_drawdown = compute_max_drawdown(compute_wealth_curve(returns))
    if np.isnan(max_drawdown) or max_drawdown < 1e-12:
        return np.nan

    return compute_annual_return(returns, periods_per_year) / max_drawdown


def compute_omega_ratio(returns: pd.Series, threshold: float = 0.0) -> float:
    """
    Compute the Omega (gain-loss) ratio at a threshold.

    **Mathematical**:
        Omega = sum(max(r_t - threshold, 0)) / sum(max(threshold - r_t, 0))

    **Edge cases**:
    - No losses below the threshold → NaN.

    Args:
        returns: Periodic simple returns.
        threshold: Return threshold separating gains from losses (default 0).

    Returns:
        Omega ratio as a scalar (> 1 means gains outweigh losses).
    """
    clean_returns = returns.dropna().to_numpy()
    gains = np.clip(clean_returns - threshold, 0.0, None).sum()
    losses = np.clip(threshold - clean_returns, 0.0, None).sum()

    if losses <= 0:
        return np.nan

    return float(gains / losses)


def compute_rot_bps(returns: pd.Series, total_turnover: float) -> float:
    """
    Compute return over turnover in basis points.

    **Conceptual**: How much cumulative return was earned per unit of trading.
    A ROT of 50 bps means each 100% of turnover earned 0.5% return, which
    directly tells how much transaction cost a strategy can absorb.

    **Mathematical**:
        ROT_bps = (prod(1 + r_t) - 1) / total_turnover * 10_000

    **Edge cases**:
    - Zero turnover → NaN.
    - Empty series → NaN.

    Returns:
        Return over turnover in basis points.
    """
    clean_returns = returns.dropna()
    if len(clean_returns) == 0 or not total_turnover > 0:
        return np.nan

    cumulative_return = compute_total_return(compute_wealth_curve(clean_returns))
    return float(cumulative_return) / total_turnover * 1e4


def compute_value_at_risk(returns: pd.Series, confidence: float = 0.95) -> float:
    """
    Compute historical value at risk as a positive loss.

    **Mathematical**: VaR_c = -quantile(r, 1 - c). At c = 0.95, one period in
    twenty is expected to lose more than VaR.

    **Edge cases**:
    - Empty series → NaN.
    """
    clean_returns = returns.dropna()
    if len(clean_returns) == 0:
        return np.nan

    return float(-clean_returns.quantile(1.0 - confidence))


def compute_conditional_value_at_risk(returns: pd.Series, confidence: float = 0.95) -> float:
    """
    Compute conditional value at risk (expected shortfall) as a positive loss.

    **Mathematical**: Mean loss over the periods at or beyond the VaR quantile:
        CVaR_c = -mean(r_t | r_t <= quantile(r, 1 - c))

    **Edge cases**:
    - Empty series → NaN.
    """
    clean_returns = returns.dropna()
    if len(clean_returns) == 0:
        return np.nan

    cutoff = clean_returns.quantile(1.0 - confidence)
    tail = clean_returns[clean_returns <= cutoff]
    return float(-tail.mean())
