"""
Pyth Hermes price feed client.

GET {feed_url}/v2/updates/price/latest?ids[]=<feed id>

The parsed price is an integer mantissa with a base-10 exponent; the binary
section carries the signed update payload as hex strings.
"""
import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping

import aiohttp

from perp_indexer.exceptions import PriceFeedError
from perp_indexer.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PriceQuote:
    price: Decimal
    confidence: Decimal
    publish_time: int
    update_data: bytes


def _normalize_id(feed_id: str) -> str:
    feed_id = feed_id.lower()
    return feed_id[2:] if feed_id.startswith("0x") else feed_id


def parse_price_response(data: Mapping[str, Any], feed_id: str) -> PriceQuote:
    """
    Extract the quote for feed_id from a Hermes latest-price response.

    Raises:
        PriceFeedError: feed missing or payload malformed
    """
    if not isinstance(data, Mapping):
        raise PriceFeedError(f"Unexpected price payload type: {type(data).__name__}")

    parsed = data.get("parsed")
    if not isinstance(parsed, list):
        parsed = []
    wanted = _normalize_id(feed_id)
    entry = next(
        (p for p in parsed if isinstance(p, Mapping) and _normalize_id(str(p.get("id", ""))) == wanted),
        None,
    )
    if entry is None:
        raise PriceFeedError(f"No price data for feed {feed_id}")

    binary = data.get("binary")
    binary = binary.get("data") if isinstance(binary, Mapping) else None
    if not binary:
        raise PriceFeedError("No binary price update data")

    try:
        price_info = entry["price"]
        scale = Decimal(10) ** int(price_info["expo"])
        price = Decimal(int(price_info["price"])) * scale
        confidence = Decimal(int(price_info.get("conf", 0))) * scale
        publish_time = int(price_info.get("publish_time", 0))
        hex_data = binary[0]
        update_data = bytes.fromhex(hex_data[2:] if hex_data.startswith("0x") else hex_data)
    except (KeyError, TypeError, ValueError, AttributeError, ArithmeticError) as e:
        raise PriceFeedError(f"Malformed price payload: {e}") from e

    if price <= 0:
        raise PriceFeedError(f"Non-positive price: {price}")

    return PriceQuote(price=price, confidence=confidence, publish_time=publish_time, update_data=update_data)


class PythPriceFeed:
    """Fetches the latest quote for one feed over HTTP."""

    def __init__(self, feed_url: str, feed_id: str, *, timeout_seconds: float = 10.0):
        self.feed_url = feed_url.rstrip("/")
        self.feed_id = feed_id
        self.timeout_seconds = timeout_seconds

    async def fetch_latest(self) -> PriceQuote:
        """
        Raises:
            PriceFeedError: HTTP error, timeout or unusable payload
        """
        url = f"{self.feed_url}/v2/updates/price/latest"
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, params={"ids[]": self.feed_id}) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        raise PriceFeedError(f"Price API error {response.status}: {error_text[:200]}")
                    data = await response.json()
        except PriceFeedError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PriceFeedError(f"Price API request failed: {e}") from e
        except ValueError as e:
            # Body is not JSON (json.JSONDecodeError)
            raise PriceFeedError(f"Price API returned invalid JSON: {e}") from e

        quote = parse_price_response(data, self.feed_id)
        logger.debug(
            "Price fetched",
            price=str(quote.price),
            confidence=str(quote.confidence),
            publish_time=quote.publish_time,
            update_bytes=len(quote.update_data),
        )
        return quote
