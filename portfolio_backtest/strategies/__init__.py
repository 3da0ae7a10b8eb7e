"""
Strategy interface, fault-isolating adapter, file loading, and benchmarks.

A strategy is any function mapping a data window (and optionally the current
weights) to a weights vector; strategies can also be loaded from isolated
`portfolio_fun` files.
"""
