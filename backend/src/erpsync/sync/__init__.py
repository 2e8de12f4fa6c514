"""
Sync orchestration core

Persistent job queue, queue engine with batching and global and per-module circuit
breaking, and the bidirectional entity map.
"""

from .entity_map import EntityMapRepository, generate_sync_hash
from .queue import QueueError, QueueJob, SyncQueueRepository
from .state_store import StateStore
from .circuit_breaker import CircuitBreaker, ModuleCircuitBreaker, CircuitState
from .failure_notifier import FailureNotifier
from .import_guard import ImportGuard
from .batch_processor import BatchCreateProcessor, BatchOutcome
from .engine import SyncEngine, RunPlan
from .poller import DiffScanPoller, PollResult

__all__ = [
    "EntityMapRepository",
    "generate_sync_hash",
    "QueueError",
    "QueueJob",
    "SyncQueueRepository",
    "StateStore",
    "CircuitBreaker",
    "ModuleCircuitBreaker",
    "CircuitState",
    "FailureNotifier",
    "ImportGuard",
    "BatchCreateProcessor",
    "BatchOutcome",
    "SyncEngine",
    "RunPlan",
    "DiffScanPoller",
    "PollResult",
]
