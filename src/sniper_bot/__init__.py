"""
New-pair sniper bot.

Watches a DEX factory for pair-creation events, screens each new pair
(contract verification, liquidity) before committing a fixed amount of the
base asset, and manages the resulting positions until a stop-loss or
take-profit exit.
"""

__version__ = "0.1.0"
