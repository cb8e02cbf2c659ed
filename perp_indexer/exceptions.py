"""
Custom exception hierarchy for the indexer.

Provides specific exceptions so the reconciliation loop can classify
failures without inspecting messages.

Hierarchy:

    IndexerError (base)
    ├── OperationalError     : transient/retryable (RPC, network, timeouts)
    │   ├── RpcError         : head height / log query / contract call failed
    │   └── ChunkAbortedError: strict handler policy aborted a chunk
    ├── InitializationError  : cannot build contract handles or a start block
    ├── DataError            : one record is bad or has no target, skip it
    │   ├── RecordNotFoundError
    │   └── EventDecodeError
    └── PriceFeedError       : price API unavailable or malformed (oracle loop)

Rules:
    - OperationalError: catch, log, retry the same chunk after a fixed delay.
    - InitializationError: propagate to the supervisor, back off, reinitialize.
    - DataError: catch, log, count, continue with the next record.
    - Everything else escaping the running loop is treated like an
      initialization failure by the supervisor: back off and reinitialize.
"""


class IndexerError(Exception):
    """Base exception for all indexer errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(IndexerError):
    """Transient/retryable error: RPC endpoint, network, timeouts.

    Treatment: catch, log, retry the same block range, never advance.
    """
    pass


class RpcError(OperationalError):
    """A chain RPC call failed or timed out."""

    def __init__(self, message: str, *, method: str | None = None):
        super().__init__(message)
        self.method = method


class ChunkAbortedError(OperationalError):
    """A handler failed under the abort_chunk policy.

    The chunk is retried from the same checkpoint; already-applied records
    are replayed against idempotent store operations.
    """

    def __init__(self, message: str, *, from_block: int, to_block: int):
        super().__init__(message)
        self.from_block = from_block
        self.to_block = to_block


# ============ INITIALIZATION (fatal for this pipeline instance) ============

class InitializationError(IndexerError):
    """Contract handles or the starting checkpoint could not be resolved.

    Treatment: supervisor waits the restart delay and rebuilds everything.
    """
    pass


# ============ DATA (per record, skip) ============

class DataError(IndexerError):
    """Bad or unmatched record.

    Treatment: catch, log, skip this record, continue the chunk.
    """
    pass


class RecordNotFoundError(DataError):
    """Move/remove targeted an entity that is not in the store.

    Expected under at-least-once redelivery.
    """

    def __init__(self, entity: str, key: str):
        super().__init__(f"{entity} not found: {key}")
        self.entity = entity
        self.key = key


class EventDecodeError(DataError):
    """An event record cannot be mapped to a store mutation."""
    pass


# ============ ORACLE ============

class PriceFeedError(IndexerError):
    """Price API returned an error or an unusable payload."""
    pass
