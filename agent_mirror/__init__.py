"""
Agent position mirror.

Mirrors the positions of an external trading agent onto a Binance USDⓈ-M
futures account with risk gating, proportional capital allocation and
exactly-once application of actions through a persisted order ledger.
"""

__version__ = "1.0.0"
