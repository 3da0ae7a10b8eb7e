"""
Performance measures and synthetic market data.

Includes the risk/return metrics (annualized return and volatility, drawdown,
Sharpe, Sterling and Omega ratios, ROT, VaR/CVaR), the named measure registry
evaluated on every run, and seeded GBM dataset generators for tests.
"""
