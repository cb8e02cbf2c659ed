"""
System-wide constants for the indexer.

Centralizes default timings and protocol values used across modules.
Runtime values come from config; these are the defaults.
"""

# Scan window
BLOCK_CHUNK_SIZE = 2_000
DELAY_BETWEEN_CHUNKS_MS = 500
QUERY_RETRY_DELAY_SECONDS = 1.0  # 2x the pacing delay
POLLING_INTERVAL_SECONDS = 5
RESTART_DELAY_SECONDS = 10
LOOKBACK_MARGIN_BLOCKS = 100

# RPC
DEFAULT_RPC_TIMEOUT_SECONDS = 15

# Derived identifiers
OWNER_ID_BYTES = 32
ADDRESS_BYTES = 20
MAX_NOTE_NONCE = 2**64 - 1
LIQUIDATED_OUTCOME = "Liquidated"

# Read side
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# Oracle (Pyth Hermes)
PYTH_HERMES_URL = "https://hermes.pyth.network"
PYTH_BTC_USD_FEED_ID = "0xe62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43"
PRICE_DECIMALS = 18
ORACLE_FETCH_RETRY_SECONDS = 10
ORACLE_WITHIN_THRESHOLD_WAIT_SECONDS = 20
ORACLE_CYCLE_WAIT_SECONDS = 15
