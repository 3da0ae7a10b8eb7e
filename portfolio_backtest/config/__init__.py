"""
Configuration loading and validation for backtest invocations.

Provides strongly typed settings objects for environment defaults and the
per-invocation backtest options, with upfront validation.
"""
