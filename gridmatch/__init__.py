"""
Regional peer-to-peer energy marketplace.

Households post surplus energy offers and buy requests per region; a
price/time priority matcher crosses them and settles each trade through
a wallet ledger, with a best-effort receipt for every trade.
"""

__version__ = "1.0.0"
