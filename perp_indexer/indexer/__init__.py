"""
Reconciliation engine (dispatcher, window scheduler, supervisor).
"""
from perp_indexer.indexer.dispatcher import DispatchReport, EventDispatcher
from perp_indexer.indexer.scheduler import EngineState, StepResult, WindowScheduler, compute_window
from perp_indexer.indexer.supervisor import ReconciliationSupervisor, SupervisorStats

__all__ = [
    "DispatchReport",
    "EventDispatcher",
    "EngineState",
    "StepResult",
    "WindowScheduler",
    "compute_window",
    "ReconciliationSupervisor",
    "SupervisorStats",
]
