"""
Domain protocols (interfaces) for dependency inversion.

The reconciliation engine depends on these contracts, not on web3 or
SQLAlchemy. Production implementations live in perp_indexer.chain.client
and perp_indexer.storage.repository; tests substitute in-memory fakes.
"""
from typing import List, Optional, Protocol, runtime_checkable

from perp_indexer.domain.models import (
    ContractHandles,
    EventKind,
    EventRecord,
    OwnerSource,
    Position,
    PositionStatus,
    UnspentNote,
)


@runtime_checkable
class ChainClient(Protocol):
    """
    Read-only view of the remote ledger.

    All methods raise perp_indexer.exceptions.RpcError on transport failure
    or timeout; resolve_handles raises InitializationError.
    """

    async def resolve_handles(self) -> ContractHandles: ...

    async def head_height(self) -> int: ...

    async def query_events(
        self,
        kind: EventKind,
        from_block: int,
        to_block: int,
        *,
        handles: ContractHandles,
    ) -> List[EventRecord]: ...


@runtime_checkable
class LedgerStore(Protocol):
    """
    Write side of the materialized view. Every operation is idempotent
    under retry; move/remove raise RecordNotFoundError when there is no
    target.
    """

    def add_open_position(
        self,
        owner_id: bytes,
        position: Position,
        owner_source: OwnerSource = OwnerSource.PRIVATE,
    ) -> None: ...

    def move_to_historical(
        self,
        position_id: bytes,
        status: PositionStatus,
        outcome: str,
        closing_user: str,
    ) -> None: ...

    def add_unspent_note(self, note: UnspentNote) -> None: ...

    def remove_unspent_note(self, note_id: bytes) -> None: ...

    def load_checkpoint(self, name: str) -> Optional[int]: ...

    def save_checkpoint(self, name: str, next_block: int) -> None: ...
