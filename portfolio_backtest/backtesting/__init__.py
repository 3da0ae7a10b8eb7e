"""
Rolling-window backtest engine, result set, and reporting utilities.

Walks one strategy forward over one dataset, collects the runs of a whole
backtest into a result set, and builds tables, summaries and leaderboards
from it.
"""
