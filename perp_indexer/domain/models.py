"""
Domain models for the indexer.

Two groups:
- Store entities: Position, HistoricalPosition, UnspentNote (what the
  materialized view holds).
- Event records: typed, decoded chain events handed from the chain client
  to the dispatcher. Every record carries its block number and log index.

Identifiers are 0x-prefixed lowercase hex strings; big integers are kept as
Python ints on records and rendered as decimal strings on entities.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, List, Optional, TypeVar, Union

T = TypeVar("T")


class PositionStatus(str, Enum):
    """Terminal status of a historical position."""
    CLOSED = "Closed"
    LIQUIDATED = "Liquidated"


class OwnerSource(str, Enum):
    """Which key scheme produced a position's owner_id."""
    PRIVATE = "private"  # opaque key emitted by the privacy proxy
    PUBLIC = "public"    # 12 zero bytes + 20-byte address


class EventKind(str, Enum):
    """
    Tracked event kinds.

    Declaration order is the dispatch order inside a chunk.
    """
    POSITION_OPENED = "position_opened"
    POSITION_CLOSED = "position_closed"
    POSITION_LIQUIDATED = "position_liquidated"
    NOTE_CREATED = "note_created"
    NOTE_CLAIMED = "note_claimed"
    PUBLIC_POSITION_OPENED = "public_position_opened"


DISPATCH_ORDER: tuple = tuple(EventKind)


@dataclass(frozen=True)
class Position:
    """Open position as stored."""
    position_id: str
    is_long: bool
    entry_price: str
    margin: str
    size: str


@dataclass(frozen=True)
class HistoricalPosition:
    """Position moved out of the open set by a close or a liquidation."""
    position_id: str
    is_long: bool
    entry_price: str
    margin: str
    size: str
    status: PositionStatus
    outcome: str  # signed PnL, or "Liquidated"
    closing_user: str
    owner_id: str


@dataclass(frozen=True)
class UnspentNote:
    note_id: str
    note_nonce: int
    receiver_hash: str
    value: str


@dataclass(frozen=True)
class PositionLookup:
    """Result of a by-id lookup across the open and historical sets."""
    status: str  # "Open" or "Historical"
    owner_id: str
    open: Optional[Position] = None
    historical: Optional[HistoricalPosition] = None


@dataclass
class Page(Generic[T]):
    """Keyset-paginated result."""
    items: List[T] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None


@dataclass(frozen=True)
class ContractHandles:
    """
    Addresses resolved at initialization.

    clearing_house is discovered from the proxy, never configured.
    """
    privacy_proxy: str
    clearing_house: str
    token_pool: str
    token: str


# ---------------------------------------------------------------------------
# Event records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PositionOpenedRecord:
    """PositionOpened from the privacy proxy (private path)."""
    block_number: int
    log_index: int
    position_id: bytes
    owner_pub_key: bytes
    is_long: bool
    entry_price: int
    margin: int
    size: int


@dataclass(frozen=True)
class PublicPositionOpenedRecord:
    """PositionOpened from the clearing house (public path)."""
    block_number: int
    log_index: int
    position_id: bytes
    user: str
    is_long: bool
    entry_price: int
    margin: int
    size: int


@dataclass(frozen=True)
class PositionClosedRecord:
    block_number: int
    log_index: int
    position_id: bytes
    user: str
    pnl: int


@dataclass(frozen=True)
class PositionLiquidatedRecord:
    block_number: int
    log_index: int
    position_id: bytes
    user: str


@dataclass(frozen=True)
class NoteCreatedRecord:
    block_number: int
    log_index: int
    receiver_hash: bytes
    amount: int
    note_nonce: int


@dataclass(frozen=True)
class NoteClaimedRecord:
    block_number: int
    log_index: int
    note_id: bytes


EventRecord = Union[
    PositionOpenedRecord,
    PublicPositionOpenedRecord,
    PositionClosedRecord,
    PositionLiquidatedRecord,
    NoteCreatedRecord,
    NoteClaimedRecord,
]


def to_hex(value: bytes) -> str:
    """Render an opaque byte key as 0x-prefixed lowercase hex."""
    return "0x" + bytes(value).hex()
