"""
Event dispatcher: maps typed chain events to ledger store mutations.

One handler per EventKind. Records of a chunk are applied in the fixed kind
order of DISPATCH_ORDER, and within a kind in the order the chain client
returned them. A failing record is logged with its kind and key, counted,
and skipped. Under the abort_chunk policy a store or other unexpected
failure aborts the chunk instead; DataError (a missing target or a record
that can never be mapped) stays per-record under both policies.
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Literal, Mapping, Sequence

from web3 import Web3

from perp_indexer.constants import ADDRESS_BYTES, LIQUIDATED_OUTCOME, MAX_NOTE_NONCE, OWNER_ID_BYTES
from perp_indexer.domain.models import (
    DISPATCH_ORDER,
    ContractHandles,
    EventKind,
    EventRecord,
    OwnerSource,
    Position,
    PositionStatus,
    UnspentNote,
    to_hex,
)
from perp_indexer.domain.protocols import LedgerStore
from perp_indexer.exceptions import ChunkAbortedError, DataError, EventDecodeError, RecordNotFoundError
from perp_indexer.monitoring.logger import get_logger

logger = get_logger(__name__)

FailurePolicy = Literal["skip", "abort_chunk"]

# Handler results
APPLIED = "applied"
SUPPRESSED = "suppressed"


def derive_note_id(token_address: str, note_nonce: int) -> bytes:
    """keccak256(token address (20 bytes) || nonce as 32-byte big-endian)."""
    token_bytes = Web3.to_bytes(hexstr=token_address)
    if len(token_bytes) != ADDRESS_BYTES:
        raise ValueError(f"Token address must be {ADDRESS_BYTES} bytes: {token_address}")
    if note_nonce < 0:
        raise ValueError(f"Note nonce must be non-negative: {note_nonce}")
    return bytes(Web3.keccak(token_bytes + note_nonce.to_bytes(32, "big")))


def pad_address_to_owner_id(address: str) -> bytes:
    """Public-path owner key: 12 zero bytes followed by the 20-byte address."""
    address_bytes = Web3.to_bytes(hexstr=address)
    if len(address_bytes) != ADDRESS_BYTES:
        raise ValueError(f"Address must be {ADDRESS_BYTES} bytes: {address}")
    return bytes(OWNER_ID_BYTES - ADDRESS_BYTES) + address_bytes


def record_key(kind: EventKind, record: EventRecord) -> str:
    """Identifying key of a record for logs and failure reports."""
    if kind is EventKind.NOTE_CREATED:
        return f"nonce={record.note_nonce}"
    if kind is EventKind.NOTE_CLAIMED:
        return to_hex(record.note_id)
    return to_hex(record.position_id)


@dataclass
class DispatchFailure:
    kind: EventKind
    key: str
    error: str


@dataclass
class DispatchReport:
    """Per-chunk dispatch counters."""
    applied: int = 0
    suppressed: int = 0
    not_found: int = 0
    failed: int = 0
    failures: List[DispatchFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.applied + self.suppressed + self.not_found + self.failed


class EventDispatcher:
    """Applies decoded events to a LedgerStore."""

    def __init__(self, store: LedgerStore, *, failure_policy: FailurePolicy = "skip"):
        if failure_policy not in ("skip", "abort_chunk"):
            raise ValueError(f"Unknown handler failure policy: {failure_policy}")
        self.store = store
        self.failure_policy = failure_policy
        self._handlers: Dict[EventKind, Callable[[EventRecord, ContractHandles], str]] = {
            EventKind.POSITION_OPENED: self._on_position_opened,
            EventKind.POSITION_CLOSED: self._on_position_closed,
            EventKind.POSITION_LIQUIDATED: self._on_position_liquidated,
            EventKind.NOTE_CREATED: self._on_note_created,
            EventKind.NOTE_CLAIMED: self._on_note_claimed,
            EventKind.PUBLIC_POSITION_OPENED: self._on_public_position_opened,
        }

    def dispatch_chunk(
        self,
        events: Mapping[EventKind, Sequence[EventRecord]],
        handles: ContractHandles,
        *,
        from_block: int,
        to_block: int,
    ) -> DispatchReport:
        """
        Apply every record of a fully observed chunk.

        Raises:
            ChunkAbortedError: abort_chunk policy and a handler failed
        """
        report = DispatchReport()
        for kind in DISPATCH_ORDER:
            for record in events.get(kind, ()):
                self._apply(kind, record, handles, report, from_block, to_block)
        return report

    def _apply(
        self,
        kind: EventKind,
        record: EventRecord,
        handles: ContractHandles,
        report: DispatchReport,
        from_block: int,
        to_block: int,
    ) -> None:
        key = record_key(kind, record)
        try:
            result = self._handlers[kind](record, handles)
        except RecordNotFoundError as e:
            report.not_found += 1
            logger.warning("EVENT_TARGET_NOT_FOUND", kind=kind.value, key=key, error=str(e))
            return
        except DataError as e:
            self._record_failure(report, kind, record, key, e, "EVENT_RECORD_REJECTED")
            return
        except Exception as e:
            self._record_failure(report, kind, record, key, e, "EVENT_HANDLER_FAILED")
            if self.failure_policy == "abort_chunk":
                raise ChunkAbortedError(
                    f"{kind.value} handler failed for {key}: {e}",
                    from_block=from_block,
                    to_block=to_block,
                ) from e
            return

        if result == SUPPRESSED:
            report.suppressed += 1
        else:
            report.applied += 1

    @staticmethod
    def _record_failure(
        report: DispatchReport,
        kind: EventKind,
        record: EventRecord,
        key: str,
        error: Exception,
        event: str,
    ) -> None:
        report.failed += 1
        report.failures.append(DispatchFailure(kind=kind, key=key, error=str(error)))
        logger.error(
            event,
            kind=kind.value,
            key=key,
            block=record.block_number,
            error=str(error),
            error_type=type(error).__name__,
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_position_opened(self, record, handles: ContractHandles) -> str:
        position = Position(
            position_id=to_hex(record.position_id),
            is_long=record.is_long,
            entry_price=str(record.entry_price),
            margin=str(record.margin),
            size=str(record.size),
        )
        self.store.add_open_position(record.owner_pub_key, position, OwnerSource.PRIVATE)
        logger.info("POSITION_OPENED", position_id=position.position_id, path="private")
        return APPLIED

    def _on_position_closed(self, record, handles: ContractHandles) -> str:
        self.store.move_to_historical(
            record.position_id,
            PositionStatus.CLOSED,
            str(record.pnl),
            record.user,
        )
        logger.info("POSITION_CLOSED", position_id=to_hex(record.position_id), pnl=str(record.pnl))
        return APPLIED

    def _on_position_liquidated(self, record, handles: ContractHandles) -> str:
        self.store.move_to_historical(
            record.position_id,
            PositionStatus.LIQUIDATED,
            LIQUIDATED_OUTCOME,
            record.user,
        )
        logger.info("POSITION_LIQUIDATED", position_id=to_hex(record.position_id))
        return APPLIED

    def _on_note_created(self, record, handles: ContractHandles) -> str:
        if record.note_nonce > MAX_NOTE_NONCE:
            raise EventDecodeError(f"Note nonce exceeds uint64: {record.note_nonce}")
        note_id = derive_note_id(handles.token, record.note_nonce)
        note = UnspentNote(
            note_id=to_hex(note_id),
            note_nonce=record.note_nonce,
            receiver_hash=to_hex(record.receiver_hash),
            value=str(record.amount),
        )
        self.store.add_unspent_note(note)
        logger.info("NOTE_CREATED", note_id=note.note_id)
        return APPLIED

    def _on_note_claimed(self, record, handles: ContractHandles) -> str:
        self.store.remove_unspent_note(record.note_id)
        logger.info("NOTE_CLAIMED", note_id=to_hex(record.note_id))
        return APPLIED

    def _on_public_position_opened(self, record, handles: ContractHandles) -> str:
        # The proxy relays private opens through the clearing house; the
        # private-path event already recorded them.
        if record.user.lower() == handles.privacy_proxy.lower():
            logger.debug("Public open relayed by proxy, skipped", position_id=to_hex(record.position_id))
            return SUPPRESSED

        position = Position(
            position_id=to_hex(record.position_id),
            is_long=record.is_long,
            entry_price=str(record.entry_price),
            margin=str(record.margin),
            size=str(record.size),
        )
        self.store.add_open_position(pad_address_to_owner_id(record.user), position, OwnerSource.PUBLIC)
        logger.info("POSITION_OPENED", position_id=position.position_id, path="public", user=record.user)
        return APPLIED
