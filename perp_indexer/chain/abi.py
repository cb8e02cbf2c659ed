"""
Minimal contract ABIs for the watched contracts.

Only the fragments the indexer and the price updater touch are declared.
PositionOpened exists on both the privacy proxy and the clearing house with
different argument lists, so the two have different topics.
"""
from typing import Dict, List, Tuple

from web3 import Web3

from perp_indexer.domain.models import EventKind


def _event(name: str, inputs: List[Tuple[str, str, bool]]) -> dict:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": arg, "type": typ, "indexed": indexed}
            for arg, typ, indexed in inputs
        ],
    }


PRIVACY_PROXY_ABI = [
    _event("PositionOpened", [
        ("positionId", "bytes32", True),
        ("ownerPubKey", "bytes32", True),
        ("isLong", "bool", False),
        ("entryPrice", "uint256", False),
        ("margin", "uint256", False),
        ("size", "uint256", False),
    ]),
    {
        "type": "function",
        "name": "clearingHouse",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
]

CLEARING_HOUSE_ABI = [
    _event("PositionOpened", [
        ("positionId", "bytes32", True),
        ("user", "address", True),
        ("isLong", "bool", False),
        ("entryPrice", "uint256", False),
        ("margin", "uint256", False),
        ("size", "uint256", False),
    ]),
    _event("PositionClosed", [
        ("positionId", "bytes32", True),
        ("user", "address", True),
        ("pnl", "int256", False),
    ]),
    _event("PositionLiquidated", [
        ("positionId", "bytes32", True),
        ("user", "address", True),
    ]),
]

TOKEN_POOL_ABI = [
    _event("NoteCreated", [
        ("receiverHash", "bytes32", True),
        ("amount", "uint256", False),
        ("noteNonce", "uint256", False),
    ]),
    _event("NoteClaimed", [
        ("noteId", "bytes32", True),
        ("receiver", "address", True),
        ("amount", "uint256", False),
    ]),
]

ORACLE_ABI = [
    {
        "type": "function",
        "name": "setPrice",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "_price", "type": "uint256"}],
        "outputs": [],
    },
]


def event_signature(abi: list, name: str) -> str:
    """Canonical signature, e.g. PositionClosed(bytes32,address,int256)."""
    for entry in abi:
        if entry["type"] == "event" and entry["name"] == name:
            types = ",".join(i["type"] for i in entry["inputs"])
            return f"{name}({types})"
    raise KeyError(f"Event {name} not in ABI")


def event_topic(abi: list, name: str) -> str:
    """topic0 of an event as 0x-prefixed hex."""
    return Web3.to_hex(Web3.keccak(text=event_signature(abi, name)))


# kind -> (ContractHandles attribute, ABI, event name)
EVENT_SOURCES: Dict[EventKind, Tuple[str, list, str]] = {
    EventKind.POSITION_OPENED: ("privacy_proxy", PRIVACY_PROXY_ABI, "PositionOpened"),
    EventKind.POSITION_CLOSED: ("clearing_house", CLEARING_HOUSE_ABI, "PositionClosed"),
    EventKind.POSITION_LIQUIDATED: ("clearing_house", CLEARING_HOUSE_ABI, "PositionLiquidated"),
    EventKind.NOTE_CREATED: ("token_pool", TOKEN_POOL_ABI, "NoteCreated"),
    EventKind.NOTE_CLAIMED: ("token_pool", TOKEN_POOL_ABI, "NoteClaimed"),
    EventKind.PUBLIC_POSITION_OPENED: ("clearing_house", CLEARING_HOUSE_ABI, "PositionOpened"),
}
