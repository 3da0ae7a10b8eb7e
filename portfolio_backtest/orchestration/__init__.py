"""
Scheduling of the strategy x dataset backtest matrix.

Names and validates inputs, injects benchmarks, and runs every pair
sequentially or on process/thread worker pools.
"""
