"""
Price-feed updater: poll, compare, submit.

Runs as its own process and shares nothing with the indexer. Each tick:
1. fetch the latest quote (failure: wait fetch_retry_seconds, next tick)
2. skip when the relative change from the last submitted price is below
   the threshold (wait within_threshold_wait_seconds, next tick)
3. submit setPrice(price scaled to 18 decimals) and wait for the receipt;
   only a successful receipt updates the last submitted price
4. wait cycle_wait_seconds
"""
import asyncio
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Optional

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from perp_indexer.chain.abi import ORACLE_ABI
from perp_indexer.constants import PRICE_DECIMALS
from perp_indexer.exceptions import PriceFeedError, RpcError
from perp_indexer.indexer.scheduler import Sleep
from perp_indexer.monitoring.logger import get_logger
from perp_indexer.oracle.price_feed import PythPriceFeed

logger = get_logger(__name__)


def to_wad(price: Decimal, decimals: int = PRICE_DECIMALS) -> int:
    """Scale a price to an integer with `decimals` decimals (truncating)."""
    scaled = (price * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN)
    return int(scaled)


def relative_change(new_price: Decimal, last_price: Decimal) -> Decimal:
    return abs(new_price - last_price) / last_price


def should_submit(new_price: Decimal, last_price: Optional[Decimal], threshold: Decimal) -> bool:
    """First price always goes through; afterwards only moves >= threshold."""
    if last_price is None or last_price <= 0:
        return True
    return relative_change(new_price, last_price) >= threshold


class OracleSubmitter:
    """Signs and sends setPrice transactions with a local key."""

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        contract_address: str,
        *,
        receipt_timeout_seconds: float = 120.0,
        w3: Optional[AsyncWeb3] = None,
    ):
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.account = self.w3.eth.account.from_key(private_key)
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=ORACLE_ABI,
        )
        self.receipt_timeout_seconds = receipt_timeout_seconds

    @property
    def address(self) -> str:
        return self.account.address

    async def submit_price(self, price_wad: int) -> str:
        """
        Send setPrice and wait for a successful receipt.

        Returns:
            Transaction hash (hex)

        Raises:
            RpcError: build, send or receipt failed, or the tx reverted
        """
        try:
            nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")
            tx = await self.contract.functions.setPrice(price_wad).build_transaction({
                "from": self.account.address,
                "nonce": nonce,
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout_seconds
            )
        except Exception as e:
            raise RpcError(f"setPrice failed: {e}", method="setPrice") from e

        tx_hex = Web3.to_hex(tx_hash)
        if receipt["status"] != 1:
            raise RpcError(f"setPrice reverted: {tx_hex}", method="setPrice")
        return tx_hex


class TickResult(str, Enum):
    FETCH_FAILED = "fetch_failed"
    WITHIN_THRESHOLD = "within_threshold"
    SUBMITTED = "submitted"
    SUBMIT_FAILED = "submit_failed"


class PriceUpdater:
    """Poll/compare/submit loop."""

    def __init__(
        self,
        feed: PythPriceFeed,
        submitter: OracleSubmitter,
        *,
        threshold: float,
        fetch_retry_seconds: float,
        within_threshold_wait_seconds: float,
        cycle_wait_seconds: float,
        sleep: Sleep = asyncio.sleep,
    ):
        self.feed = feed
        self.submitter = submitter
        self.threshold = Decimal(str(threshold))
        self.fetch_retry_seconds = fetch_retry_seconds
        self.within_threshold_wait_seconds = within_threshold_wait_seconds
        self.cycle_wait_seconds = cycle_wait_seconds
        self._sleep = sleep
        self.last_price: Optional[Decimal] = None

    @classmethod
    def from_config(cls, oracle_config, *, sleep: Sleep = asyncio.sleep) -> "PriceUpdater":
        feed = PythPriceFeed(
            oracle_config.feed_url,
            oracle_config.price_feed_id,
            timeout_seconds=oracle_config.request_timeout_seconds,
        )
        submitter = OracleSubmitter(
            oracle_config.rpc_url,
            oracle_config.private_key,
            oracle_config.contract_address,
            receipt_timeout_seconds=oracle_config.receipt_timeout_seconds,
        )
        return cls(
            feed,
            submitter,
            threshold=oracle_config.price_change_threshold,
            fetch_retry_seconds=oracle_config.fetch_retry_seconds,
            within_threshold_wait_seconds=oracle_config.within_threshold_wait_seconds,
            cycle_wait_seconds=oracle_config.cycle_wait_seconds,
            sleep=sleep,
        )

    async def tick(self) -> TickResult:
        try:
            quote = await self.feed.fetch_latest()
        except PriceFeedError as e:
            logger.error("PRICE_FETCH_FAILED", error=str(e), retry_in=self.fetch_retry_seconds)
            await self._sleep(self.fetch_retry_seconds)
            return TickResult.FETCH_FAILED

        if not should_submit(quote.price, self.last_price, self.threshold):
            logger.info(
                "PRICE_WITHIN_THRESHOLD",
                price=str(quote.price),
                last_price=str(self.last_price),
                change=str(relative_change(quote.price, self.last_price)),
            )
            await self._sleep(self.within_threshold_wait_seconds)
            return TickResult.WITHIN_THRESHOLD

        price_wad = to_wad(quote.price)
        try:
            tx_hash = await self.submitter.submit_price(price_wad)
        except RpcError as e:
            logger.error("PRICE_SUBMIT_FAILED", price=str(quote.price), error=str(e))
            result = TickResult.SUBMIT_FAILED
        else:
            self.last_price = quote.price
            logger.info("PRICE_SUBMITTED", price=str(quote.price), price_wad=str(price_wad), tx_hash=tx_hash)
            result = TickResult.SUBMITTED

        await self._sleep(self.cycle_wait_seconds)
        return result

    async def run_forever(self, max_ticks: Optional[int] = None) -> None:
        logger.info(
            "ORACLE_STARTED",
            updater=self.submitter.address,
            feed_id=self.feed.feed_id,
            threshold=str(self.threshold),
        )
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            await self.tick()
            ticks += 1
