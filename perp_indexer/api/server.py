"""
HTTP read API over the ledger store, in the shapes the trading frontend
consumes.

Routes:
    GET /health
    GET /positions/{position_id}
    GET /positions/open/{address}
    GET /positions/history/{address}?cursor=&page_size=
    GET /private/notes/unspent          (X-Receiver-Hash header)

Public-path owners are addressed by their 20-byte address and looked up
under the padded owner id the dispatcher stores. The API never writes.
"""
from dataclasses import asdict
from typing import Any, Dict, Optional, Sequence

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from web3 import Web3

from perp_indexer.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from perp_indexer.domain.models import HistoricalPosition, Position, UnspentNote
from perp_indexer.indexer.dispatcher import pad_address_to_owner_id
from perp_indexer.monitoring.logger import get_logger
from perp_indexer.storage.repository import SqlLedgerStore

logger = get_logger(__name__)

_HEX_CHARS = set("0123456789abcdef")


def _bytes32_hex(value: str, what: str) -> str:
    """Validate a 32-byte hex key and return it in stored form."""
    key = value.lower()
    digits = key[2:] if key.startswith("0x") else key
    if len(digits) != 64 or not set(digits) <= _HEX_CHARS:
        raise HTTPException(status_code=400, detail=f"Invalid {what}: expected 32 bytes of hex")
    return "0x" + digits


def _owner_for_address(address: str) -> bytes:
    if not Web3.is_address(address):
        raise HTTPException(status_code=400, detail=f"Invalid address: {address}")
    return pad_address_to_owner_id(address)


def _position_json(position: Position) -> Dict[str, Any]:
    return asdict(position)


def _historical_json(hist: HistoricalPosition) -> Dict[str, Any]:
    return {
        "position_id": hist.position_id,
        "is_long": hist.is_long,
        "entry_price": hist.entry_price,
        "margin": hist.margin,
        "size": hist.size,
        "status": hist.status.value,
        "final_pnl": hist.outcome,
        "owner_address": hist.closing_user,
    }


def _note_json(note: UnspentNote) -> Dict[str, Any]:
    return {
        "note_id": note.note_id,
        "note_nonce": note.note_nonce,
        "value": note.value,
        "receiver_hash": note.receiver_hash,
    }


def create_app(store: SqlLedgerStore, *, cors_origins: Optional[Sequence[str]] = None) -> FastAPI:
    """
    Build the read API for one store.

    Handlers are plain functions; FastAPI runs them in its threadpool, so
    blocking SQLAlchemy reads stay off the event loop.
    """
    app = FastAPI(title="Perp Indexer API")

    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(cors_origins),
            allow_methods=["GET"],
            allow_headers=["*"],
        )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok", **store.count_entities()}

    @app.get("/positions/open/{address}")
    def open_positions(address: str) -> Dict[str, Any]:
        """Open positions of a public-path trader."""
        positions = store.get_open_positions(_owner_for_address(address))
        return {"open_positions": [_position_json(p) for p in positions]}

    @app.get("/positions/history/{address}")
    def position_history(
        address: str,
        cursor: Optional[str] = None,
        page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    ) -> Dict[str, Any]:
        """Closed and liquidated positions of a public-path trader, newest first."""
        owner = _owner_for_address(address)
        try:
            page = store.get_historical_positions(owner, cursor=cursor, page_size=page_size)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {
            "items": [_historical_json(h) for h in page.items],
            "has_more": page.has_more,
            "next_cursor": page.next_cursor,
        }

    @app.get("/positions/{position_id}")
    def position_by_id(position_id: str) -> Dict[str, Any]:
        lookup = store.get_position(_bytes32_hex(position_id, "position id"))
        if lookup is None:
            raise HTTPException(status_code=404, detail="Position not found")
        if lookup.open is not None:
            return {"position": {"status": "Open", "data": _position_json(lookup.open)}}
        return {"position": {"status": "Historical", "data": _historical_json(lookup.historical)}}

    @app.get("/private/notes/unspent")
    def unspent_notes(receiver_hash: str = Header(..., alias="X-Receiver-Hash")) -> Dict[str, Any]:
        notes = store.get_unspent_notes(_bytes32_hex(receiver_hash, "receiver hash"))
        return {"unspent_notes": [_note_json(n) for n in notes]}

    logger.info("API_APP_CREATED", cors_origins=list(cors_origins or []))
    return app
