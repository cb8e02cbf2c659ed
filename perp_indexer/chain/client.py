"""
Chain client adapter over web3.py (AsyncWeb3 + HTTP polling).

Responsibilities:
- Head height.
- Ranged, typed event queries per EventKind, ordered by (block, log index).
- Clearing-house discovery via the privacy proxy.

Every RPC call runs under a per-call timeout; timeouts and transport errors
surface as RpcError so the scheduler treats them as an ordinary query
failure. A log that cannot be decoded fails the whole query: a partially
decoded range is an incompletely observed range.
"""
import asyncio
from typing import Any, Awaitable, Dict, List, Mapping, Optional, TypeVar

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from perp_indexer.chain.abi import EVENT_SOURCES, PRIVACY_PROXY_ABI, event_topic
from perp_indexer.constants import DEFAULT_RPC_TIMEOUT_SECONDS
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
from perp_indexer.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def to_http_url(rpc_url: str) -> str:
    """Rewrite a websocket endpoint to its HTTP counterpart (polling only)."""
    if rpc_url.startswith("wss://"):
        return "https://" + rpc_url[len("wss://"):]
    if rpc_url.startswith("ws://"):
        return "http://" + rpc_url[len("ws://"):]
    return rpc_url


def build_record(kind: EventKind, event: Mapping[str, Any]) -> EventRecord:
    """
    Map a decoded log (web3 EventData shape: args, blockNumber, logIndex)
    to a typed record.
    """
    args = event["args"]
    block_number = int(event["blockNumber"])
    log_index = int(event["logIndex"])

    if kind is EventKind.POSITION_OPENED:
        return PositionOpenedRecord(
            block_number=block_number,
            log_index=log_index,
            position_id=bytes(args["positionId"]),
            owner_pub_key=bytes(args["ownerPubKey"]),
            is_long=bool(args["isLong"]),
            entry_price=int(args["entryPrice"]),
            margin=int(args["margin"]),
            size=int(args["size"]),
        )
    if kind is EventKind.PUBLIC_POSITION_OPENED:
        return PublicPositionOpenedRecord(
            block_number=block_number,
            log_index=log_index,
            position_id=bytes(args["positionId"]),
            user=Web3.to_checksum_address(args["user"]),
            is_long=bool(args["isLong"]),
            entry_price=int(args["entryPrice"]),
            margin=int(args["margin"]),
            size=int(args["size"]),
        )
    if kind is EventKind.POSITION_CLOSED:
        return PositionClosedRecord(
            block_number=block_number,
            log_index=log_index,
            position_id=bytes(args["positionId"]),
            user=Web3.to_checksum_address(args["user"]),
            pnl=int(args["pnl"]),
        )
    if kind is EventKind.POSITION_LIQUIDATED:
        return PositionLiquidatedRecord(
            block_number=block_number,
            log_index=log_index,
            position_id=bytes(args["positionId"]),
            user=Web3.to_checksum_address(args["user"]),
        )
    if kind is EventKind.NOTE_CREATED:
        return NoteCreatedRecord(
            block_number=block_number,
            log_index=log_index,
            receiver_hash=bytes(args["receiverHash"]),
            amount=int(args["amount"]),
            note_nonce=int(args["noteNonce"]),
        )
    if kind is EventKind.NOTE_CLAIMED:
        return NoteClaimedRecord(
            block_number=block_number,
            log_index=log_index,
            note_id=bytes(args["noteId"]),
        )
    raise ValueError(f"Unknown event kind: {kind}")


class Web3ChainClient:
    """ChainClient implementation backed by web3.AsyncWeb3."""

    def __init__(
        self,
        rpc_url: str,
        privacy_proxy_address: str,
        token_pool_address: str,
        token_address: str,
        *,
        request_timeout_seconds: float = DEFAULT_RPC_TIMEOUT_SECONDS,
        w3: Optional[AsyncWeb3] = None,
    ):
        self.rpc_url = to_http_url(rpc_url)
        self.privacy_proxy_address = privacy_proxy_address
        self.token_pool_address = token_pool_address
        self.token_address = token_address
        self.request_timeout_seconds = request_timeout_seconds
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(self.rpc_url))
        self._topics: Dict[EventKind, str] = {
            kind: event_topic(abi, name) for kind, (_, abi, name) in EVENT_SOURCES.items()
        }

    @classmethod
    def from_config(cls, chain_config) -> "Web3ChainClient":
        return cls(
            chain_config.rpc_url,
            chain_config.privacy_proxy_address,
            chain_config.token_pool_address,
            chain_config.token_address,
            request_timeout_seconds=chain_config.request_timeout_seconds,
        )

    async def _call(self, method: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.request_timeout_seconds)
        except asyncio.TimeoutError:
            raise RpcError(f"{method} timed out after {self.request_timeout_seconds}s", method=method)
        except RpcError:
            raise
        except Exception as e:
            raise RpcError(f"{method} failed: {e}", method=method) from e

    async def resolve_handles(self) -> ContractHandles:
        """
        Parse configured addresses and discover the clearing house.

        Raises:
            InitializationError: bad address or the proxy call failed
        """
        try:
            proxy = Web3.to_checksum_address(self.privacy_proxy_address)
            token_pool = Web3.to_checksum_address(self.token_pool_address)
            token = Web3.to_checksum_address(self.token_address)
        except (ValueError, TypeError) as e:
            raise InitializationError(f"Invalid contract address: {e}") from e

        contract = self.w3.eth.contract(address=proxy, abi=PRIVACY_PROXY_ABI)
        try:
            clearing_house = await self._call("clearingHouse", contract.functions.clearingHouse().call())
        except RpcError as e:
            raise InitializationError(f"Clearing house discovery failed: {e}") from e

        handles = ContractHandles(
            privacy_proxy=proxy,
            clearing_house=Web3.to_checksum_address(clearing_house),
            token_pool=token_pool,
            token=token,
        )
        logger.info(
            "CONTRACT_HANDLES_RESOLVED",
            privacy_proxy=handles.privacy_proxy,
            clearing_house=handles.clearing_house,
            token_pool=handles.token_pool,
        )
        return handles

    async def head_height(self) -> int:
        # block_number is an awaitable property on AsyncEth
        return int(await self._call("eth_blockNumber", self._block_number()))

    async def _block_number(self) -> int:
        return await self.w3.eth.block_number

    async def query_events(
        self,
        kind: EventKind,
        from_block: int,
        to_block: int,
        *,
        handles: ContractHandles,
    ) -> List[EventRecord]:
        handle_attr, abi, event_name = EVENT_SOURCES[kind]
        address = Web3.to_checksum_address(getattr(handles, handle_attr))
        logs = await self._call(
            "eth_getLogs",
            self.w3.eth.get_logs({
                "fromBlock": from_block,
                "toBlock": to_block,
                "address": address,
                "topics": [self._topics[kind]],
            }),
        )

        contract = self.w3.eth.contract(address=address, abi=abi)
        event = getattr(contract.events, event_name)()
        records = []
        for log in logs:
            try:
                decoded = event.process_log(log)
                records.append(build_record(kind, decoded))
            except Exception as e:
                raise RpcError(
                    f"Undecodable {event_name} log in blocks {from_block}-{to_block}: {e}",
                    method="eth_getLogs",
                ) from e

        records.sort(key=lambda r: (r.block_number, r.log_index))
        logger.debug("Events queried", kind=kind.value, from_block=from_block, to_block=to_block, count=len(records))
        return records
