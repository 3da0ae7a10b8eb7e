"""
Generic utility functions shared across modules.

Includes portfolio math helpers, logging setup, and error classes.
"""
