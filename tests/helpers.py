"""
Shared record builders and in-memory fakes for the test suite.
"""
from typing import Dict, List, Optional, Set, Tuple

from perp_indexer.domain.models import (
    ContractHandles,
    EventKind,
    EventRecord,
    NoteClaimedRecord,
    NoteCreatedRecord,
    PositionClosedRecord,
    PositionLiquidatedRecord,
    PositionOpenedRecord,
    PublicPositionOpenedRecord,
)
from perp_indexer.exceptions import InitializationError, RpcError

PROXY = "0x1111111111111111111111111111111111111111"
CLEARING_HOUSE = "0x2222222222222222222222222222222222222222"
TOKEN_POOL = "0x3333333333333333333333333333333333333333"
TOKEN = "0x4444444444444444444444444444444444444444"
TRADER = "0x5555555555555555555555555555555555555555"


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------

def pid(n: int) -> bytes:
    """Deterministic 32-byte position id."""
    return n.to_bytes(32, "big")


def opened(n: int, owner: bytes = b"\xaa" * 32, block: int = 1000, log_index: int = 0) -> PositionOpenedRecord:
    return PositionOpenedRecord(
        block_number=block,
        log_index=log_index,
        position_id=pid(n),
        owner_pub_key=owner,
        is_long=True,
        entry_price=65_000 * 10**18,
        margin=100 * 10**18,
        size=1_000 * 10**18,
    )


def public_opened(n: int, user: str = TRADER, block: int = 1000, log_index: int = 0) -> PublicPositionOpenedRecord:
    return PublicPositionOpenedRecord(
        block_number=block,
        log_index=log_index,
        position_id=pid(n),
        user=user,
        is_long=False,
        entry_price=64_000 * 10**18,
        margin=50 * 10**18,
        size=500 * 10**18,
    )


def closed(n: int, pnl: int = -42, user: str = TRADER, block: int = 1001) -> PositionClosedRecord:
    return PositionClosedRecord(block_number=block, log_index=0, position_id=pid(n), user=user, pnl=pnl)


def liquidated(n: int, user: str = TRADER, block: int = 1001) -> PositionLiquidatedRecord:
    return PositionLiquidatedRecord(block_number=block, log_index=0, position_id=pid(n), user=user)


def note_created(nonce: int, amount: int = 500, receiver: bytes = b"\xbb" * 32, block: int = 1000) -> NoteCreatedRecord:
    return NoteCreatedRecord(block_number=block, log_index=0, receiver_hash=receiver, amount=amount, note_nonce=nonce)


def note_claimed(note_id: bytes, block: int = 1002) -> NoteClaimedRecord:
    return NoteClaimedRecord(block_number=block, log_index=0, note_id=note_id)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeChainClient:
    """
    In-memory ChainClient.

    events: kind -> records; query_events returns those whose block falls in
    the requested window. fail_kinds / fail_head / fail_resolve inject errors.
    """

    def __init__(self, head: int = 5000, handles: Optional[ContractHandles] = None):
        self.head = head
        self.handles = handles or make_handles()
        self.events: Dict[EventKind, List[EventRecord]] = {}
        self.fail_kinds: Set[EventKind] = set()
        self.fail_head = False
        self.fail_resolve = False
        self.queries: List[Tuple[EventKind, int, int]] = []
        self.resolve_calls = 0

    def add(self, kind: EventKind, *records: EventRecord) -> None:
        self.events.setdefault(kind, []).extend(records)

    async def resolve_handles(self) -> ContractHandles:
        self.resolve_calls += 1
        if self.fail_resolve:
            raise InitializationError("proxy unreachable")
        return self.handles

    async def head_height(self) -> int:
        if self.fail_head:
            raise RpcError("connection refused", method="eth_blockNumber")
        return self.head

    async def query_events(self, kind, from_block, to_block, *, handles):
        self.queries.append((kind, from_block, to_block))
        if kind in self.fail_kinds:
            raise RpcError(f"{kind.value} timed out", method="eth_getLogs")
        return [r for r in self.events.get(kind, []) if from_block <= r.block_number <= to_block]


class SleepRecorder:
    """Drop-in for asyncio.sleep that records delays and returns immediately."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_handles() -> ContractHandles:
    return ContractHandles(
        privacy_proxy=PROXY,
        clearing_house=CLEARING_HOUSE,
        token_pool=TOKEN_POOL,
        token=TOKEN,
    )

