"""
Chain client adapter: URL rewrite, record mapping, log decoding, timeouts.
"""
import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from eth_abi import encode
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from perp_indexer.chain.abi import CLEARING_HOUSE_ABI, EVENT_SOURCES, event_signature, event_topic
from perp_indexer.chain.client import Web3ChainClient, build_record, to_http_url
from perp_indexer.domain.models import (
    EventKind,
    NoteCreatedRecord,
    PositionClosedRecord,
    PositionOpenedRecord,
    PublicPositionOpenedRecord,
)
from perp_indexer.exceptions import InitializationError, RpcError
from tests.helpers import CLEARING_HOUSE, PROXY, TOKEN, TOKEN_POOL, TRADER, make_handles, pid


def _client(w3=None, timeout=15.0):
    return Web3ChainClient(
        "wss://rpc.example.org/ws",
        PROXY,
        TOKEN_POOL,
        TOKEN,
        request_timeout_seconds=timeout,
        w3=w3 or MagicMock(),
    )


class TestUrlRewrite:
    def test_wss_to_https(self):
        assert to_http_url("wss://rpc.example.org/v1/key") == "https://rpc.example.org/v1/key"

    def test_ws_to_http(self):
        assert to_http_url("ws://localhost:8546") == "http://localhost:8546"

    def test_http_untouched(self):
        assert to_http_url("https://rpc.example.org") == "https://rpc.example.org"

    def test_client_uses_rewritten_url(self):
        assert _client().rpc_url == "https://rpc.example.org/ws"


class TestAbi:
    def test_signatures(self):
        assert event_signature(CLEARING_HOUSE_ABI, "PositionClosed") == "PositionClosed(bytes32,address,int256)"

    def test_proxy_and_public_open_have_distinct_topics(self):
        _, proxy_abi, _ = EVENT_SOURCES[EventKind.POSITION_OPENED]
        _, ch_abi, _ = EVENT_SOURCES[EventKind.PUBLIC_POSITION_OPENED]
        assert event_topic(proxy_abi, "PositionOpened") != event_topic(ch_abi, "PositionOpened")

    def test_every_kind_has_a_source(self):
        assert set(EVENT_SOURCES) == set(EventKind)


class TestBuildRecord:
    def test_private_open(self):
        record = build_record(EventKind.POSITION_OPENED, {
            "args": {
                "positionId": HexBytes(pid(1)),
                "ownerPubKey": b"\xaa" * 32,
                "isLong": True,
                "entryPrice": 1,
                "margin": 2,
                "size": 3,
            },
            "blockNumber": 10,
            "logIndex": 4,
        })
        assert isinstance(record, PositionOpenedRecord)
        assert record.position_id == pid(1)
        assert type(record.position_id) is bytes
        assert (record.block_number, record.log_index) == (10, 4)

    def test_public_open_checksums_user(self):
        record = build_record(EventKind.PUBLIC_POSITION_OPENED, {
            "args": {
                "positionId": pid(2),
                "user": TRADER.lower(),
                "isLong": False,
                "entryPrice": 1,
                "margin": 2,
                "size": 3,
            },
            "blockNumber": 10,
            "logIndex": 0,
        })
        assert isinstance(record, PublicPositionOpenedRecord)
        assert record.user == Web3.to_checksum_address(TRADER)

    def test_note_created(self):
        record = build_record(EventKind.NOTE_CREATED, {
            "args": {"receiverHash": b"\xbb" * 32, "amount": 500, "noteNonce": 7},
            "blockNumber": 1,
            "logIndex": 0,
        })
        assert record == NoteCreatedRecord(block_number=1, log_index=0, receiver_hash=b"\xbb" * 32, amount=500, note_nonce=7)


class TestResolveHandles:
    @pytest.mark.asyncio
    async def test_discovers_clearing_house(self):
        w3 = MagicMock()
        w3.eth.contract.return_value.functions.clearingHouse.return_value.call = AsyncMock(
            return_value=CLEARING_HOUSE
        )
        client = _client(w3)

        handles = await client.resolve_handles()

        assert handles.clearing_house == Web3.to_checksum_address(CLEARING_HOUSE)
        assert handles.privacy_proxy == Web3.to_checksum_address(PROXY)
        assert handles.token == Web3.to_checksum_address(TOKEN)

    @pytest.mark.asyncio
    async def test_call_failure_is_initialization_error(self):
        w3 = MagicMock()
        w3.eth.contract.return_value.functions.clearingHouse.return_value.call = AsyncMock(
            side_effect=ConnectionError("refused")
        )

        with pytest.raises(InitializationError):
            await _client(w3).resolve_handles()

    @pytest.mark.asyncio
    async def test_bad_address_is_initialization_error(self):
        client = Web3ChainClient("http://localhost:8545", "0xnot-an-address", TOKEN_POOL, TOKEN, w3=MagicMock())

        with pytest.raises(InitializationError):
            await client.resolve_handles()


class TestHeadHeight:
    @pytest.mark.asyncio
    async def test_returns_block_number(self):
        client = _client()
        client._block_number = AsyncMock(return_value=123)

        assert await client.head_height() == 123

    @pytest.mark.asyncio
    async def test_timeout_is_rpc_error(self):
        client = _client(timeout=0.01)

        async def hang():
            await asyncio.sleep(10)

        client._block_number = hang

        with pytest.raises(RpcError) as exc_info:
            await client.head_height()
        assert exc_info.value.method == "eth_blockNumber"


class TestQueryEvents:
    @pytest.mark.asyncio
    async def test_filters_by_address_and_topic_and_sorts(self):
        w3 = MagicMock()
        w3.eth.get_logs = AsyncMock(return_value=["log-b", "log-a"])
        decoded = {
            "log-a": {"args": {"noteId": b"\x01" * 32}, "blockNumber": 5, "logIndex": 1},
            "log-b": {"args": {"noteId": b"\x02" * 32}, "blockNumber": 7, "logIndex": 0},
        }
        w3.eth.contract.return_value.events.NoteClaimed.return_value.process_log.side_effect = decoded.__getitem__
        client = _client(w3)

        records = await client.query_events(EventKind.NOTE_CLAIMED, 0, 1999, handles=make_handles())

        assert [r.block_number for r in records] == [5, 7]
        params = w3.eth.get_logs.await_args.args[0]
        assert params["fromBlock"] == 0
        assert params["toBlock"] == 1999
        assert params["address"] == Web3.to_checksum_address(TOKEN_POOL)
        assert params["topics"] == [event_topic(EVENT_SOURCES[EventKind.NOTE_CLAIMED][1], "NoteClaimed")]

    @pytest.mark.asyncio
    async def test_undecodable_log_fails_whole_query(self):
        w3 = MagicMock()
        w3.eth.get_logs = AsyncMock(return_value=["good", "bad"])
        w3.eth.contract.return_value.events.PositionClosed.return_value.process_log.side_effect = [
            {"args": {"positionId": pid(1), "user": TRADER, "pnl": 1}, "blockNumber": 1, "logIndex": 0},
            ValueError("mismatched abi"),
        ]

        with pytest.raises(RpcError):
            await _client(w3).query_events(EventKind.POSITION_CLOSED, 0, 10, handles=make_handles())

    @pytest.mark.asyncio
    async def test_transport_error_is_rpc_error(self):
        w3 = MagicMock()
        w3.eth.get_logs = AsyncMock(side_effect=ConnectionError("503"))

        with pytest.raises(RpcError) as exc_info:
            await _client(w3).query_events(EventKind.NOTE_CREATED, 0, 10, handles=make_handles())
        assert exc_info.value.method == "eth_getLogs"

    @pytest.mark.asyncio
    async def test_decodes_real_position_closed_log(self):
        w3 = AsyncWeb3(AsyncHTTPProvider("http://localhost:8545"))
        client = _client(w3)
        handles = make_handles()
        raw_log = {
            "address": Web3.to_checksum_address(CLEARING_HOUSE),
            "topics": [
                HexBytes(Web3.keccak(text="PositionClosed(bytes32,address,int256)")),
                HexBytes(pid(9)),
                HexBytes(b"\x00" * 12 + bytes.fromhex(TRADER[2:])),
            ],
            "data": HexBytes(encode(["int256"], [-1500])),
            "blockNumber": 1234,
            "logIndex": 3,
            "transactionIndex": 0,
            "transactionHash": HexBytes(b"\x01" * 32),
            "blockHash": HexBytes(b"\x02" * 32),
        }

        with patch.object(w3.eth, "get_logs", AsyncMock(return_value=[raw_log])):
            records = await client.query_events(EventKind.POSITION_CLOSED, 1000, 2000, handles=handles)

        assert records == [
            PositionClosedRecord(
                block_number=1234,
                log_index=3,
                position_id=pid(9),
                user=Web3.to_checksum_address(TRADER),
                pnl=-1500,
            )
        ]
