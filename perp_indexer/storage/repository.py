"""
Ledger store: persistence for the materialized view.

Write operations are idempotent so that chunk replays (restart lookback,
retried chunks) converge to the same state:
- add_open_position: upsert; ignored once the id is historical.
- move_to_historical: atomic insert-historical + delete-open.
- add_unspent_note: upsert by note_id.
- remove_unspent_note: delete by note_id.
Move/remove with no target raise RecordNotFoundError (recoverable).
"""
from sqlalchemy import Column, String, DateTime, Integer, BigInteger, Boolean, Index
from datetime import datetime, timezone
from typing import Dict, List, Optional

from perp_indexer.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from perp_indexer.domain.models import (
    HistoricalPosition,
    OwnerSource,
    Page,
    Position,
    PositionLookup,
    PositionStatus,
    UnspentNote,
    to_hex,
)
from perp_indexer.exceptions import RecordNotFoundError
from perp_indexer.monitoring.logger import get_logger
from perp_indexer.storage.db import Base, Database

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ORM Models
class OpenPositionModel(Base):
    """ORM model for open positions."""
    __tablename__ = "open_positions"
    __table_args__ = (
        Index("idx_open_owner", "owner_id"),
    )

    position_id = Column(String(66), primary_key=True)
    owner_id = Column(String(66), nullable=False)
    owner_source = Column(String(16), nullable=False)
    is_long = Column(Boolean, nullable=False)
    # Unbounded integers, kept as decimal strings
    entry_price = Column(String, nullable=False)
    margin = Column(String, nullable=False)
    size = Column(String, nullable=False)
    opened_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class HistoricalPositionModel(Base):
    """ORM model for closed and liquidated positions."""
    __tablename__ = "historical_positions"
    __table_args__ = (
        Index("idx_hist_owner_id", "owner_id", "id"),
    )

    # Surrogate key doubles as the pagination cursor
    id = Column(Integer, primary_key=True, autoincrement=True)
    position_id = Column(String(66), nullable=False, unique=True)
    owner_id = Column(String(66), nullable=False)
    owner_source = Column(String(16), nullable=False)
    is_long = Column(Boolean, nullable=False)
    entry_price = Column(String, nullable=False)
    margin = Column(String, nullable=False)
    size = Column(String, nullable=False)
    status = Column(String(16), nullable=False)
    outcome = Column(String, nullable=False)
    closing_user = Column(String(42), nullable=False)
    opened_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class UnspentNoteModel(Base):
    """ORM model for unspent notes."""
    __tablename__ = "unspent_notes"
    __table_args__ = (
        Index("idx_note_receiver", "receiver_hash"),
    )

    note_id = Column(String(66), primary_key=True)
    # uint64 does not fit a signed BIGINT
    note_nonce = Column(String(20), nullable=False)
    receiver_hash = Column(String(66), nullable=False)
    value = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class IndexerCheckpointModel(Base):
    """Next block to scan, only written when checkpoint persistence is on."""
    __tablename__ = "indexer_checkpoints"

    name = Column(String, primary_key=True)
    next_block = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


def _position_from_model(pm: OpenPositionModel) -> Position:
    return Position(
        position_id=pm.position_id,
        is_long=bool(pm.is_long),
        entry_price=pm.entry_price,
        margin=pm.margin,
        size=pm.size,
    )


def _historical_from_model(hm: HistoricalPositionModel) -> HistoricalPosition:
    return HistoricalPosition(
        position_id=hm.position_id,
        is_long=bool(hm.is_long),
        entry_price=hm.entry_price,
        margin=hm.margin,
        size=hm.size,
        status=PositionStatus(hm.status),
        outcome=hm.outcome,
        closing_user=hm.closing_user,
        owner_id=hm.owner_id,
    )


def _note_from_model(nm: UnspentNoteModel) -> UnspentNote:
    return UnspentNote(
        note_id=nm.note_id,
        note_nonce=int(nm.note_nonce),
        receiver_hash=nm.receiver_hash,
        value=nm.value,
    )


def _key(value: bytes | str) -> str:
    """Normalize a 32-byte key given as raw bytes or hex to the stored form."""
    if isinstance(value, (bytes, bytearray)):
        return to_hex(value)
    value = value.lower()
    return value if value.startswith("0x") else "0x" + value


class SqlLedgerStore:
    """SQLAlchemy implementation of the LedgerStore protocol."""

    def __init__(self, db: Database):
        self.db = db

    # ------------------------------------------------------------------
    # Write side (single writer: the reconciliation engine)
    # ------------------------------------------------------------------

    def add_open_position(
        self,
        owner_id: bytes,
        position: Position,
        owner_source: OwnerSource = OwnerSource.PRIVATE,
    ) -> None:
        """Insert or refresh an open position."""
        owner_hex = _key(owner_id)
        with self.db.get_session() as session:
            closed = (
                session.query(HistoricalPositionModel.id)
                .filter(HistoricalPositionModel.position_id == position.position_id)
                .first()
            )
            if closed:
                # Replayed open of a position that already reached a terminal state
                logger.debug("Open ignored, position is historical", position_id=position.position_id)
                return

            pm = session.get(OpenPositionModel, position.position_id)
            if pm:
                pm.owner_id = owner_hex
                pm.owner_source = owner_source.value
                pm.is_long = position.is_long
                pm.entry_price = position.entry_price
                pm.margin = position.margin
                pm.size = position.size
            else:
                session.add(OpenPositionModel(
                    position_id=position.position_id,
                    owner_id=owner_hex,
                    owner_source=owner_source.value,
                    is_long=position.is_long,
                    entry_price=position.entry_price,
                    margin=position.margin,
                    size=position.size,
                ))

    def move_to_historical(
        self,
        position_id: bytes,
        status: PositionStatus,
        outcome: str,
        closing_user: str,
    ) -> None:
        """
        Move an open position to the historical set.

        Raises:
            RecordNotFoundError: no open position with this id (never opened
                here, or already moved by an earlier delivery)
        """
        pid = _key(position_id)
        with self.db.get_session() as session:
            pm = (
                session.query(OpenPositionModel)
                .filter(OpenPositionModel.position_id == pid)
                .with_for_update()
                .first()
            )
            if pm is None:
                raise RecordNotFoundError("open position", pid)

            session.add(HistoricalPositionModel(
                position_id=pm.position_id,
                owner_id=pm.owner_id,
                owner_source=pm.owner_source,
                is_long=pm.is_long,
                entry_price=pm.entry_price,
                margin=pm.margin,
                size=pm.size,
                status=status.value,
                outcome=outcome,
                closing_user=closing_user,
                opened_at=pm.opened_at,
            ))
            session.delete(pm)

    def add_unspent_note(self, note: UnspentNote) -> None:
        """Insert or refresh an unspent note."""
        with self.db.get_session() as session:
            nm = session.get(UnspentNoteModel, note.note_id)
            if nm:
                nm.note_nonce = str(note.note_nonce)
                nm.receiver_hash = note.receiver_hash
                nm.value = note.value
            else:
                session.add(UnspentNoteModel(
                    note_id=note.note_id,
                    note_nonce=str(note.note_nonce),
                    receiver_hash=note.receiver_hash,
                    value=note.value,
                ))

    def remove_unspent_note(self, note_id: bytes) -> None:
        """
        Delete an unspent note.

        Raises:
            RecordNotFoundError: note absent (redelivered claim)
        """
        nid = _key(note_id)
        with self.db.get_session() as session:
            deleted = session.query(UnspentNoteModel).filter(UnspentNoteModel.note_id == nid).delete()
            if not deleted:
                raise RecordNotFoundError("unspent note", nid)

    def load_checkpoint(self, name: str) -> Optional[int]:
        with self.db.get_session() as session:
            cm = session.get(IndexerCheckpointModel, name)
            return int(cm.next_block) if cm else None

    def save_checkpoint(self, name: str, next_block: int) -> None:
        with self.db.get_session() as session:
            cm = session.get(IndexerCheckpointModel, name)
            if cm:
                cm.next_block = next_block
                cm.updated_at = _utcnow()
            else:
                session.add(IndexerCheckpointModel(name=name, next_block=next_block))

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_position(self, position_id: bytes | str) -> Optional[PositionLookup]:
        """Find a position in the open or the historical set."""
        pid = _key(position_id)
        with self.db.get_session() as session:
            pm = session.get(OpenPositionModel, pid)
            if pm:
                return PositionLookup(status="Open", owner_id=pm.owner_id, open=_position_from_model(pm))
            hm = (
                session.query(HistoricalPositionModel)
                .filter(HistoricalPositionModel.position_id == pid)
                .first()
            )
            if hm:
                return PositionLookup(status="Historical", owner_id=hm.owner_id, historical=_historical_from_model(hm))
        return None

    def get_open_positions(self, owner_id: bytes | str) -> List[Position]:
        owner_hex = _key(owner_id)
        with self.db.get_session() as session:
            rows = (
                session.query(OpenPositionModel)
                .filter(OpenPositionModel.owner_id == owner_hex)
                .order_by(OpenPositionModel.opened_at, OpenPositionModel.position_id)
                .all()
            )
            return [_position_from_model(pm) for pm in rows]

    def get_historical_positions(
        self,
        owner_id: bytes | str,
        cursor: Optional[str] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Page[HistoricalPosition]:
        """
        Historical positions for an owner, newest first.

        Args:
            owner_id: 32-byte owner key (bytes or hex)
            cursor: next_cursor from the previous page, None for the first page
            page_size: 1..MAX_PAGE_SIZE

        Raises:
            ValueError: malformed cursor
        """
        owner_hex = _key(owner_id)
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        with self.db.get_session() as session:
            query = session.query(HistoricalPositionModel).filter(HistoricalPositionModel.owner_id == owner_hex)
            if cursor is not None:
                try:
                    before_id = int(cursor)
                except ValueError:
                    raise ValueError(f"Invalid cursor: {cursor!r}")
                query = query.filter(HistoricalPositionModel.id < before_id)

            rows = query.order_by(HistoricalPositionModel.id.desc()).limit(page_size + 1).all()
            has_more = len(rows) > page_size
            rows = rows[:page_size]
            return Page(
                items=[_historical_from_model(hm) for hm in rows],
                has_more=has_more,
                next_cursor=str(rows[-1].id) if has_more else None,
            )

    def get_unspent_notes(self, receiver_hash: bytes | str) -> List[UnspentNote]:
        rh = _key(receiver_hash)
        with self.db.get_session() as session:
            rows = (
                session.query(UnspentNoteModel)
                .filter(UnspentNoteModel.receiver_hash == rh)
                .order_by(UnspentNoteModel.created_at, UnspentNoteModel.note_id)
                .all()
            )
            return [_note_from_model(nm) for nm in rows]

    def has_unspent_note(self, note_id: bytes | str) -> bool:
        with self.db.get_session() as session:
            return session.get(UnspentNoteModel, _key(note_id)) is not None

    def count_entities(self) -> Dict[str, int]:
        """Row counts for status reporting."""
        with self.db.get_session() as session:
            return {
                "open_positions": session.query(OpenPositionModel).count(),
                "historical_positions": session.query(HistoricalPositionModel).count(),
                "unspent_notes": session.query(UnspentNoteModel).count(),
            }
