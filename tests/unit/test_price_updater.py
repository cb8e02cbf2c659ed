"""
Price-feed updater: Hermes payload parsing, threshold gate, submit loop.
"""
import json
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from perp_indexer.constants import PYTH_BTC_USD_FEED_ID
from perp_indexer.exceptions import PriceFeedError, RpcError
from perp_indexer.oracle.price_feed import PriceQuote, PythPriceFeed, parse_price_response
from perp_indexer.oracle.updater import PriceUpdater, TickResult, should_submit, to_wad
from tests.helpers import SleepRecorder


def _hermes_payload(price="6512345678900", expo=-8, feed_id=PYTH_BTC_USD_FEED_ID[2:]):
    return {
        "binary": {"encoding": "hex", "data": ["504e4155"]},
        "parsed": [
            {
                "id": feed_id,
                "price": {"price": price, "conf": "2500000", "expo": expo, "publish_time": 1_700_000_000},
                "ema_price": {"price": price, "conf": "2500000", "expo": expo, "publish_time": 1_700_000_000},
                "metadata": {"slot": 1, "proof_available_time": 1, "prev_publish_time": 1},
            }
        ],
    }


def _quote(price: str) -> PriceQuote:
    return PriceQuote(price=Decimal(price), confidence=Decimal("0"), publish_time=0, update_data=b"")


class TestParsePriceResponse:
    def test_applies_exponent(self):
        quote = parse_price_response(_hermes_payload(), PYTH_BTC_USD_FEED_ID)

        assert quote.price == Decimal("65123.45678900")
        assert quote.confidence == Decimal("0.025")
        assert quote.publish_time == 1_700_000_000
        assert quote.update_data == bytes.fromhex("504e4155")

    def test_feed_id_match_ignores_prefix_and_case(self):
        payload = _hermes_payload(feed_id=PYTH_BTC_USD_FEED_ID.upper().replace("0X", ""))
        assert parse_price_response(payload, PYTH_BTC_USD_FEED_ID).price > 0

    def test_missing_feed(self):
        with pytest.raises(PriceFeedError):
            parse_price_response(_hermes_payload(feed_id="00" * 32), PYTH_BTC_USD_FEED_ID)

    def test_missing_binary(self):
        payload = _hermes_payload()
        payload["binary"]["data"] = []
        with pytest.raises(PriceFeedError):
            parse_price_response(payload, PYTH_BTC_USD_FEED_ID)

    def test_malformed_price(self):
        with pytest.raises(PriceFeedError):
            parse_price_response(_hermes_payload(price="abc"), PYTH_BTC_USD_FEED_ID)

    def test_non_positive_price(self):
        with pytest.raises(PriceFeedError):
            parse_price_response(_hermes_payload(price="0"), PYTH_BTC_USD_FEED_ID)


class TestPythPriceFeed:
    def _session(self, status=200, payload=None, text=""):
        response = MagicMock(status=status)
        response.json = AsyncMock(return_value=payload)
        response.text = AsyncMock(return_value=text)
        session = MagicMock()
        session.get.return_value.__aenter__.return_value = response
        return session

    @pytest.mark.asyncio
    async def test_fetch_latest(self):
        session = self._session(payload=_hermes_payload())
        feed = PythPriceFeed("https://hermes.example/", PYTH_BTC_USD_FEED_ID)

        with patch("perp_indexer.oracle.price_feed.aiohttp.ClientSession") as client_session:
            client_session.return_value.__aenter__.return_value = session
            quote = await feed.fetch_latest()

        assert quote.price == Decimal("65123.45678900")
        url = session.get.call_args.args[0]
        assert url == "https://hermes.example/v2/updates/price/latest"
        assert session.get.call_args.kwargs["params"] == {"ids[]": PYTH_BTC_USD_FEED_ID}

    @pytest.mark.asyncio
    async def test_http_error(self):
        session = self._session(status=503, text="unavailable")
        feed = PythPriceFeed("https://hermes.example", PYTH_BTC_USD_FEED_ID)

        with patch("perp_indexer.oracle.price_feed.aiohttp.ClientSession") as client_session:
            client_session.return_value.__aenter__.return_value = session
            with pytest.raises(PriceFeedError):
                await feed.fetch_latest()

    @pytest.mark.asyncio
    async def test_invalid_json_body(self):
        session = self._session()
        session.get.return_value.__aenter__.return_value.json = AsyncMock(
            side_effect=json.JSONDecodeError("Expecting property name", "{not json", 1)
        )
        feed = PythPriceFeed("https://hermes.example", PYTH_BTC_USD_FEED_ID)

        with patch("perp_indexer.oracle.price_feed.aiohttp.ClientSession") as client_session:
            client_session.return_value.__aenter__.return_value = session
            with pytest.raises(PriceFeedError):
                await feed.fetch_latest()

    @pytest.mark.asyncio
    async def test_bad_body_is_a_failed_tick(self):
        """A 200 with a body that is not a price object must not end the loop."""
        for payload in (["not", "an", "object"], {"parsed": 5, "binary": []}, {"parsed": ["x"], "binary": "y"}):
            session = self._session(payload=payload)
            sleeper = SleepRecorder()
            submitter = MagicMock()
            submitter.submit_price = AsyncMock()
            updater = PriceUpdater(
                PythPriceFeed("https://hermes.example", PYTH_BTC_USD_FEED_ID),
                submitter,
                threshold=0.005,
                fetch_retry_seconds=10,
                within_threshold_wait_seconds=20,
                cycle_wait_seconds=15,
                sleep=sleeper,
            )

            with patch("perp_indexer.oracle.price_feed.aiohttp.ClientSession") as client_session:
                client_session.return_value.__aenter__.return_value = session
                result = await updater.tick()

            assert result is TickResult.FETCH_FAILED
            submitter.submit_price.assert_not_awaited()
            assert sleeper.calls == [10]


class TestThreshold:
    def test_first_price_always_submitted(self):
        assert should_submit(Decimal("100"), None, Decimal("0.005"))

    def test_within_threshold(self):
        assert not should_submit(Decimal("100.4"), Decimal("100"), Decimal("0.005"))

    def test_at_threshold(self):
        assert should_submit(Decimal("100.5"), Decimal("100"), Decimal("0.005"))

    def test_drop_counts(self):
        assert should_submit(Decimal("99"), Decimal("100"), Decimal("0.005"))


def test_to_wad():
    assert to_wad(Decimal("65123.456789")) == 65123456789000000000000
    assert to_wad(Decimal("1")) == 10**18
    # Truncates below 1 wei
    assert to_wad(Decimal("0.0000000000000000019")) == 1


class TestPriceUpdater:
    def _updater(self, feed, submitter, sleeper):
        return PriceUpdater(
            feed,
            submitter,
            threshold=0.005,
            fetch_retry_seconds=10,
            within_threshold_wait_seconds=20,
            cycle_wait_seconds=15,
            sleep=sleeper,
        )

    @pytest.mark.asyncio
    async def test_first_tick_submits(self):
        feed = MagicMock()
        feed.fetch_latest = AsyncMock(return_value=_quote("65000"))
        submitter = MagicMock()
        submitter.submit_price = AsyncMock(return_value="0xabc")
        sleeper = SleepRecorder()
        updater = self._updater(feed, submitter, sleeper)

        result = await updater.tick()

        assert result is TickResult.SUBMITTED
        submitter.submit_price.assert_awaited_once_with(65000 * 10**18)
        assert updater.last_price == Decimal("65000")
        assert sleeper.calls == [15]

    @pytest.mark.asyncio
    async def test_small_move_is_skipped(self):
        feed = MagicMock()
        feed.fetch_latest = AsyncMock(return_value=_quote("65100"))
        submitter = MagicMock()
        submitter.submit_price = AsyncMock()
        sleeper = SleepRecorder()
        updater = self._updater(feed, submitter, sleeper)
        updater.last_price = Decimal("65000")

        result = await updater.tick()

        assert result is TickResult.WITHIN_THRESHOLD
        submitter.submit_price.assert_not_awaited()
        assert sleeper.calls == [20]

    @pytest.mark.asyncio
    async def test_fetch_failure_waits_and_skips_submit(self):
        feed = MagicMock()
        feed.fetch_latest = AsyncMock(side_effect=PriceFeedError("503"))
        submitter = MagicMock()
        submitter.submit_price = AsyncMock()
        sleeper = SleepRecorder()
        updater = self._updater(feed, submitter, sleeper)

        result = await updater.tick()

        assert result is TickResult.FETCH_FAILED
        submitter.submit_price.assert_not_awaited()
        assert sleeper.calls == [10]

    @pytest.mark.asyncio
    async def test_failed_submit_keeps_last_price(self):
        feed = MagicMock()
        feed.fetch_latest = AsyncMock(return_value=_quote("70000"))
        submitter = MagicMock()
        submitter.submit_price = AsyncMock(side_effect=RpcError("reverted", method="setPrice"))
        sleeper = SleepRecorder()
        updater = self._updater(feed, submitter, sleeper)
        updater.last_price = Decimal("65000")

        result = await updater.tick()

        assert result is TickResult.SUBMIT_FAILED
        assert updater.last_price == Decimal("65000")
        assert sleeper.calls == [15]

    @pytest.mark.asyncio
    async def test_run_forever_bounded(self):
        feed = MagicMock()
        feed.feed_id = PYTH_BTC_USD_FEED_ID
        feed.fetch_latest = AsyncMock(side_effect=[_quote("65000"), _quote("65001"), _quote("66000")])
        submitter = MagicMock()
        submitter.address = "0x0000000000000000000000000000000000000001"
        submitter.submit_price = AsyncMock(return_value="0xabc")
        sleeper = SleepRecorder()
        updater = self._updater(feed, submitter, sleeper)

        await updater.run_forever(max_ticks=3)

        assert submitter.submit_price.await_count == 2
        assert updater.last_price == Decimal("66000")
        assert sleeper.calls == [15, 20, 15]
