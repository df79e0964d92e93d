"""
PaperTrade Accounting Engine

Order, margin, position and wallet bookkeeping for paper trading of NSE
equities, futures and options.
"""

__version__ = "1.0.0"
