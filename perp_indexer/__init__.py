"""
Perp DEX event indexer: reconciles on-chain position and note events into a
local ledger, plus a standalone price-feed updater.
"""

__version__ = "0.1.0"
