"""
Window scheduler: one iteration of the scan loop.

step() takes the current EngineState and returns the next one together
with what happened. The checkpoint only moves after every query of the
window succeeded and the whole chunk was dispatched; any other outcome
returns the state unchanged so the same window is requested again.
"""
import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from perp_indexer.domain.models import DISPATCH_ORDER, ContractHandles, EventKind, EventRecord
from perp_indexer.domain.protocols import ChainClient, LedgerStore
from perp_indexer.exceptions import ChunkAbortedError, OperationalError, RpcError
from perp_indexer.indexer.dispatcher import DispatchReport, EventDispatcher
from perp_indexer.monitoring.logger import get_logger

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def compute_window(from_block: int, head: int, chunk_size: int) -> Optional[Tuple[int, int]]:
    """Inclusive [from, to] window, or None when caught up (from > head)."""
    if from_block > head:
        return None
    return from_block, min(from_block + chunk_size - 1, head)


@dataclass(frozen=True)
class EngineState:
    """Loop state: next block to scan and the resolved contracts."""
    checkpoint: int
    handles: ContractHandles


class StepResult(str, Enum):
    APPLIED = "applied"
    CAUGHT_UP = "caught_up"
    HEAD_UNAVAILABLE = "head_unavailable"
    QUERY_FAILED = "query_failed"
    CHUNK_ABORTED = "chunk_aborted"


@dataclass(frozen=True)
class StepOutcome:
    result: StepResult
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    head: Optional[int] = None
    report: Optional[DispatchReport] = None
    error: Optional[str] = None


class WindowScheduler:
    """Chunked, paced scan over [checkpoint, head]."""

    def __init__(
        self,
        client: ChainClient,
        dispatcher: EventDispatcher,
        store: Optional[LedgerStore] = None,
        *,
        chunk_size: int,
        chunk_delay_seconds: float,
        query_retry_delay_seconds: float,
        polling_interval_seconds: float,
        persist_checkpoint: bool = False,
        checkpoint_name: str = "main",
        sleep: Sleep = asyncio.sleep,
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if persist_checkpoint and store is None:
            raise ValueError("persist_checkpoint requires a store")
        self.client = client
        self.dispatcher = dispatcher
        self.store = store
        self.chunk_size = chunk_size
        self.chunk_delay_seconds = chunk_delay_seconds
        self.query_retry_delay_seconds = query_retry_delay_seconds
        self.polling_interval_seconds = polling_interval_seconds
        self.persist_checkpoint = persist_checkpoint
        self.checkpoint_name = checkpoint_name
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        indexer_config,
        client: ChainClient,
        dispatcher: EventDispatcher,
        store: Optional[LedgerStore] = None,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> "WindowScheduler":
        return cls(
            client,
            dispatcher,
            store,
            chunk_size=indexer_config.chunk_size,
            chunk_delay_seconds=indexer_config.chunk_delay_ms / 1000.0,
            query_retry_delay_seconds=indexer_config.query_retry_delay_seconds,
            polling_interval_seconds=indexer_config.polling_interval_seconds,
            persist_checkpoint=indexer_config.persist_checkpoint,
            checkpoint_name=indexer_config.checkpoint_name,
            sleep=sleep,
        )

    async def step(self, state: EngineState) -> Tuple[EngineState, StepOutcome]:
        """Run one scan iteration, including its trailing wait."""
        try:
            head = await self.client.head_height()
        except OperationalError as e:
            logger.warning("HEAD_HEIGHT_UNAVAILABLE", error=str(e), retry_in=self.polling_interval_seconds)
            await self._sleep(self.polling_interval_seconds)
            return state, StepOutcome(StepResult.HEAD_UNAVAILABLE, error=str(e))

        window = compute_window(state.checkpoint, head, self.chunk_size)
        if window is None:
            logger.debug("Caught up", checkpoint=state.checkpoint, head=head)
            await self._sleep(self.polling_interval_seconds)
            return state, StepOutcome(StepResult.CAUGHT_UP, head=head)

        from_block, to_block = window
        logger.debug("Querying window", from_block=from_block, to_block=to_block, head=head)

        try:
            events = await self._query_window(state.handles, from_block, to_block)
        except RpcError as e:
            logger.warning(
                "INDEXER_QUERY_FAILED",
                from_block=from_block,
                to_block=to_block,
                error=str(e),
                retry_in=self.query_retry_delay_seconds,
            )
            await self._sleep(self.query_retry_delay_seconds)
            return state, StepOutcome(StepResult.QUERY_FAILED, from_block, to_block, head, error=str(e))

        try:
            # Blocking store writes run off the event loop thread
            report = await asyncio.to_thread(
                self.dispatcher.dispatch_chunk,
                events,
                state.handles,
                from_block=from_block,
                to_block=to_block,
            )
        except ChunkAbortedError as e:
            logger.warning(
                "INDEXER_CHUNK_ABORTED",
                from_block=from_block,
                to_block=to_block,
                error=str(e),
                retry_in=self.query_retry_delay_seconds,
            )
            await self._sleep(self.query_retry_delay_seconds)
            return state, StepOutcome(StepResult.CHUNK_ABORTED, from_block, to_block, head, error=str(e))

        next_state = replace(state, checkpoint=to_block + 1)
        if self.persist_checkpoint:
            await asyncio.to_thread(self.store.save_checkpoint, self.checkpoint_name, next_state.checkpoint)

        logger.info(
            "INDEXER_CHUNK_APPLIED",
            from_block=from_block,
            to_block=to_block,
            head=head,
            records=report.total,
            applied=report.applied,
            suppressed=report.suppressed,
            not_found=report.not_found,
            failed=report.failed,
        )
        await self._sleep(self.chunk_delay_seconds)
        return next_state, StepOutcome(StepResult.APPLIED, from_block, to_block, head, report=report)

    async def _query_window(
        self,
        handles: ContractHandles,
        from_block: int,
        to_block: int,
    ) -> Dict[EventKind, List[EventRecord]]:
        """
        Query every tracked kind concurrently and wait for all of them.

        Raises:
            RpcError: at least one query failed (first failure in kind order)
        """
        kinds = DISPATCH_ORDER
        results = await asyncio.gather(
            *(self.client.query_events(kind, from_block, to_block, handles=handles) for kind in kinds),
            return_exceptions=True,
        )

        events: Dict[EventKind, List[EventRecord]] = {}
        for kind, result in zip(kinds, results):
            if isinstance(result, Exception):
                if isinstance(result, RpcError):
                    raise result
                raise RpcError(f"{kind.value} query failed: {result}", method="eth_getLogs") from result
            if isinstance(result, BaseException):
                raise result
            events[kind] = list(result)
        return events
