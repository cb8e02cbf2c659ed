"""
Reconciliation supervisor.

Phases: INITIALIZING -> RUNNING -> (fatal) BACKOFF -> INITIALIZING.

Initialization resolves contract handles and computes the starting
checkpoint. Any failure there, and any unclassified error escaping the
running loop, is followed by the restart delay and a full
reinitialization. There is no terminal state; run(max_cycles=...) only
bounds the loop for tests and one-shot operator runs.
"""
import asyncio
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional

from perp_indexer.domain.protocols import ChainClient, LedgerStore
from perp_indexer.exceptions import InitializationError, OperationalError
from perp_indexer.indexer.scheduler import EngineState, Sleep, StepOutcome, StepResult, WindowScheduler
from perp_indexer.monitoring.logger import get_logger

logger = get_logger(__name__)


class SupervisorPhase(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    BACKOFF = "backoff"


@dataclass
class SupervisorStats:
    """Counters since process start."""
    phase: SupervisorPhase = SupervisorPhase.INITIALIZING
    cycles: int = 0
    restarts: int = 0
    chunks_applied: int = 0
    chunk_retries: int = 0
    records_applied: int = 0
    suppressed: int = 0
    not_found: int = 0
    failures: int = 0
    checkpoint: Optional[int] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data


class ReconciliationSupervisor:
    """Owns the engine state and restarts the pipeline on fatal errors."""

    def __init__(
        self,
        client: ChainClient,
        scheduler: WindowScheduler,
        store: Optional[LedgerStore] = None,
        *,
        lookback_margin: int,
        restart_delay_seconds: float,
        persist_checkpoint: bool = False,
        checkpoint_name: str = "main",
        sleep: Sleep = asyncio.sleep,
    ):
        if persist_checkpoint and store is None:
            raise ValueError("persist_checkpoint requires a store")
        self.client = client
        self.scheduler = scheduler
        self.store = store
        self.lookback_margin = lookback_margin
        self.restart_delay_seconds = restart_delay_seconds
        self.persist_checkpoint = persist_checkpoint
        self.checkpoint_name = checkpoint_name
        self._sleep = sleep
        self.state: Optional[EngineState] = None
        self.stats = SupervisorStats()

    @classmethod
    def from_config(
        cls,
        indexer_config,
        client: ChainClient,
        scheduler: WindowScheduler,
        store: Optional[LedgerStore] = None,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> "ReconciliationSupervisor":
        return cls(
            client,
            scheduler,
            store,
            lookback_margin=indexer_config.lookback_margin,
            restart_delay_seconds=indexer_config.restart_delay_seconds,
            persist_checkpoint=indexer_config.persist_checkpoint,
            checkpoint_name=indexer_config.checkpoint_name,
            sleep=sleep,
        )

    async def initialize(self) -> EngineState:
        """
        Resolve contract handles and the starting checkpoint.

        Raises:
            InitializationError: handles or head height unavailable
        """
        handles = await self.client.resolve_handles()

        saved = None
        if self.persist_checkpoint:
            saved = self.store.load_checkpoint(self.checkpoint_name)

        if saved is not None:
            checkpoint = max(0, saved - self.lookback_margin)
            source = "persisted"
        else:
            try:
                head = await self.client.head_height()
            except OperationalError as e:
                raise InitializationError(f"Head height unavailable at startup: {e}") from e
            checkpoint = max(0, head - self.lookback_margin)
            source = "head"

        logger.info("INDEXER_STARTED", checkpoint=checkpoint, source=source, lookback_margin=self.lookback_margin)
        return EngineState(checkpoint=checkpoint, handles=handles)

    async def run(self, max_cycles: Optional[int] = None) -> SupervisorStats:
        """Drive the pipeline; never returns unless max_cycles is set."""
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            cycles += 1
            self.stats.cycles += 1
            try:
                if self.state is None:
                    self.stats.phase = SupervisorPhase.INITIALIZING
                    self.state = await self.initialize()
                    self.stats.checkpoint = self.state.checkpoint
                    self.stats.phase = SupervisorPhase.RUNNING

                self.state, outcome = await self.scheduler.step(self.state)
                self._record(outcome)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._backoff(e)

        logger.info("SUPERVISOR_STOPPED", **self.stats.to_dict())
        return self.stats

    def _record(self, outcome: StepOutcome) -> None:
        self.stats.checkpoint = self.state.checkpoint
        if outcome.result is StepResult.APPLIED:
            report = outcome.report
            self.stats.chunks_applied += 1
            self.stats.records_applied += report.applied
            self.stats.suppressed += report.suppressed
            self.stats.not_found += report.not_found
            self.stats.failures += report.failed
        elif outcome.result in (StepResult.QUERY_FAILED, StepResult.CHUNK_ABORTED):
            self.stats.chunk_retries += 1

    async def _backoff(self, error: Exception) -> None:
        self.stats.phase = SupervisorPhase.BACKOFF
        self.stats.restarts += 1
        self.state = None
        logger.error(
            "INDEXER_RESTART",
            error=str(error),
            error_type=type(error).__name__,
            restart_in=self.restart_delay_seconds,
            restarts=self.stats.restarts,
        )
        await self._sleep(self.restart_delay_seconds)
