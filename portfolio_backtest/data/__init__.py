"""
Dataset container and schema enforcement.

Holds aligned, time-indexed field matrices (adjusted, open, high, low, close,
volume, ...) plus an optional market index, validated once before backtesting.
"""
