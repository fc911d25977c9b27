"""Funding opportunity engine -- cross-exchange funding rate arbitrage."""

__version__ = "0.1.0"
