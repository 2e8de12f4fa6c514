"""
Sync Engine - drains the sync queue

One run (a scheduler tick) does the following:
1. Optionally requeues jobs stuck in processing (rate-limited)
2. Claims pages of due jobs while the global circuit breaker is closed,
   skipping modules whose own circuit is open
3. Sends eligible creates through the batch processor, everything else
   through the module handler's push() or pull()
4. Routes every failure through the queue's retry policy
5. Feeds page totals to the global and per-module circuit breakers and
   run totals to the failure notifier

A single failing job never aborts a run.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..connectors.ports import (
    ErrorKind,
    ModuleHandler,
    PayloadDecodeError,
    SyncResult,
    classify_exception,
)
from ..models import SyncDirection
from ..observability.correlation import correlation_scope
from .batch_processor import BatchCreateProcessor, ModuleResolver
from .circuit_breaker import CircuitBreaker, ModuleCircuitBreaker
from .entity_map import EntityMapRepository
from .failure_notifier import FailureNotifier
from .queue import QueueJob, SyncQueueRepository, decode_payload
from .state_store import StateStore

logger = logging.getLogger(__name__)

STALE_RECOVERY_KEY = "stale_recovery"

# Outcomes of a single-job dispatch
JOB_DONE = "done"
JOB_FAILED = "failed"
JOB_UNROUTABLE = "unroutable"


@dataclass
class RunPlan:
    """
    What a run would do with the next page of due jobs.

    Attributes:
        batch_groups: 'module:entity_type' -> job ids sent in one bulk create
        singles: Job ids dispatched one by one, in processing order
        deferred: Job ids of modules whose circuit is open
    """
    batch_groups: Dict[str, List[int]] = field(default_factory=dict)
    singles: List[int] = field(default_factory=list)
    deferred: List[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(len(ids) for ids in self.batch_groups.values()) + len(self.singles) + len(self.deferred)

    def to_dict(self) -> Dict:
        return {
            "batch_groups": {key: list(ids) for key, ids in self.batch_groups.items()},
            "singles": list(self.singles),
            "deferred": list(self.deferred),
        }


@dataclass
class PageResult:
    successes: Dict[str, int] = field(default_factory=dict)
    failures: Dict[str, int] = field(default_factory=dict)
    released: int = 0

    def add(self, module: str, ok: bool) -> None:
        bucket = self.successes if ok else self.failures
        bucket[module] = bucket.get(module, 0) + 1

    @property
    def total_successes(self) -> int:
        return sum(self.successes.values())

    @property
    def total_failures(self) -> int:
        return sum(self.failures.values())


class SyncEngine:
    """
    Queue processor for one tenant.

    Usage:
        registry = ModuleRegistry()
        registry.register("catalog", CatalogHandler(...))

        engine = SyncEngine(db, tenant_id=1, module_resolver=registry.resolve)
        completed = engine.process_queue()
    """

    def __init__(
        self,
        db: Session,
        tenant_id: int,
        module_resolver: ModuleResolver,
        settings: Optional[Settings] = None,
        queue: Optional[SyncQueueRepository] = None,
        entity_map: Optional[EntityMapRepository] = None,
        breaker: Optional[ModuleCircuitBreaker] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        notifier: Optional[FailureNotifier] = None,
        state_store: Optional[StateStore] = None,
        clock: Callable[[], float] = time.time,
        dry_run: Optional[bool] = None,
    ):
        self.db = db
        self.tenant_id = tenant_id
        self.module_resolver = module_resolver
        self.settings = settings or get_settings()
        self._clock = clock
        self.dry_run = self.settings.SYNC_DRY_RUN if dry_run is None else dry_run

        self.state_store = state_store or StateStore(db, tenant_id)
        self.queue = queue or SyncQueueRepository(db, tenant_id, settings=self.settings)
        self.entity_map = entity_map or EntityMapRepository(db, tenant_id)
        self.notifier = notifier or FailureNotifier(self.state_store, settings=self.settings, clock=clock)
        self.breaker = breaker or ModuleCircuitBreaker(
            self.state_store, notifier=self.notifier, clock=clock, settings=self.settings
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            self.state_store, notifier=self.notifier, clock=clock, settings=self.settings
        )
        self.batch_processor = BatchCreateProcessor(
            module_resolver, self.queue, self.entity_map, self.handle_failure
        )

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def process_queue(self) -> int:
        """
        Process due jobs of every module.

        Returns:
            Number of jobs completed successfully (0 in dry-run mode)
        """
        return self._run(module=None)

    def process_module_queue(self, module: str) -> int:
        """Process due jobs of one module only."""
        return self._run(module=module)

    def preview(self, module: Optional[str] = None) -> RunPlan:
        """
        Build the routing plan for the next page without touching any state.

        Jobs are peeked, never claimed; no handler is called.
        """
        unavailable = self.breaker.get_unavailable_modules()
        jobs = self.queue.peek_due(self.settings.SYNC_BATCH_SIZE, module=module)

        plan = RunPlan()
        routable: List[QueueJob] = []
        for job in jobs:
            if job.module in unavailable:
                plan.deferred.append(job.id)
            else:
                routable.append(job)

        grouped: Set[int] = set()
        for (group_module, entity_type), group in self.batch_processor.group(routable).items():
            survivors, _ = self.batch_processor.deduplicate(group)
            if len(survivors) < 2:
                continue
            plan.batch_groups[f"{group_module}:{entity_type}"] = [job.id for job in group]
            grouped.update(job.id for job in group)

        plan.singles = [job.id for job in routable if job.id not in grouped]
        return plan

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def _run(self, module: Optional[str]) -> int:
        if self.dry_run:
            plan = self.preview(module)
            logger.info(
                "Dry run: no jobs claimed",
                extra={
                    "tenant_id": self.tenant_id,
                    "sync_module": module,
                    "count": plan.total,
                    "plan": plan.to_dict(),
                }
            )
            return 0

        if not self.circuit_breaker.is_available():
            logger.info(
                "Sync run skipped: circuit breaker open",
                extra={"tenant_id": self.tenant_id, "sync_module": module}
            )
            return 0

        self._maybe_recover_stale()

        started = self._clock()
        completed = 0
        run_successes = 0
        run_failures = 0

        for iteration in range(self.settings.SYNC_MAX_BATCH_ITERATIONS):
            if self._clock() - started >= self.settings.SYNC_BATCH_TIME_LIMIT:
                logger.info(
                    "Sync run stopped: time limit reached",
                    extra={"tenant_id": self.tenant_id, "processed": completed}
                )
                break

            if iteration > 0 and not self.circuit_breaker.is_available():
                logger.info(
                    "Sync run stopped: circuit breaker opened mid-run",
                    extra={"tenant_id": self.tenant_id, "processed": completed}
                )
                break

            unavailable = self.breaker.get_unavailable_modules()
            if module is not None and module in unavailable:
                logger.info(
                    "Module queue deferred: circuit open",
                    extra={"tenant_id": self.tenant_id, "sync_module": module}
                )
                break

            jobs = self.queue.claim_due(
                self.settings.SYNC_BATCH_SIZE,
                module=module,
                exclude_modules=unavailable,
            )
            if not jobs:
                break

            page = self._process_page(jobs)
            completed += page.total_successes
            run_successes += page.total_successes
            run_failures += page.total_failures

        if run_successes or run_failures:
            logger.info(
                "Sync run finished",
                extra={
                    "tenant_id": self.tenant_id,
                    "sync_module": module,
                    "processed": completed,
                    "count": run_failures,
                }
            )

        self.notifier.check(run_successes, run_failures)
        return completed

    def _process_page(self, jobs: List[QueueJob]) -> PageResult:
        page = PageResult()

        runnable: List[QueueJob] = []
        for job in jobs:
            if self.breaker.is_module_available(job.module):
                runnable.append(job)
            elif self.queue.release(job.id):
                page.released += 1

        if page.released:
            logger.info(
                "Released claimed jobs of paused modules",
                extra={"tenant_id": self.tenant_id, "count": page.released}
            )

        outcome = self.batch_processor.process(runnable)
        for module, count in outcome.successes.items():
            page.successes[module] = page.successes.get(module, 0) + count
        for module, count in outcome.failures.items():
            page.failures[module] = page.failures.get(module, 0) + count

        for job in runnable:
            if job.id in outcome.handled_ids:
                continue
            status = self.process_job(job)
            if status != JOB_UNROUTABLE:
                page.add(job.module, status == JOB_DONE)

        for module in set(page.successes) | set(page.failures):
            self.breaker.record_batch(
                module,
                page.successes.get(module, 0),
                page.failures.get(module, 0),
            )
        self.circuit_breaker.record_batch(page.total_successes, page.total_failures)

        return page

    # ------------------------------------------------------------------
    # Single-job dispatch
    # ------------------------------------------------------------------

    def process_job(self, job: QueueJob) -> str:
        """
        Dispatch one claimed job to its module handler.

        Returns:
            JOB_DONE, JOB_FAILED (retry scheduled or dead-lettered) or
            JOB_UNROUTABLE (module not registered; job parked as failed)
        """
        with correlation_scope(job.correlation_id):
            handler = self.module_resolver(job.module)
            if handler is None:
                logger.error(
                    "Module not registered, job parked as failed",
                    extra={"tenant_id": self.tenant_id, "job_id": job.id, "sync_module": job.module}
                )
                self.queue.mark_failed(job.id, f"Module not registered: {job.module}")
                return JOB_UNROUTABLE

            try:
                payload = decode_payload(job)
            except PayloadDecodeError as e:
                self.handle_failure(job, str(e), ErrorKind.PERMANENT, None)
                return JOB_FAILED

            try:
                result = self._dispatch(handler, job, payload)
            except Exception as e:
                if not self.db.is_active:
                    self.db.rollback()
                logger.error(
                    f"Sync handler raised: {e}",
                    exc_info=True,
                    extra={"tenant_id": self.tenant_id, "job_id": job.id, "sync_module": job.module}
                )
                self.handle_failure(
                    job,
                    str(e) or type(e).__name__,
                    classify_exception(e),
                    getattr(e, "entity_id", None),
                )
                return JOB_FAILED

            if result.success:
                self.queue.mark_done(job.id)
                logger.debug(
                    "Sync job completed",
                    extra={
                        "tenant_id": self.tenant_id,
                        "job_id": job.id,
                        "sync_module": job.module,
                        "entity_type": job.entity_type,
                        "action": job.action,
                    }
                )
                return JOB_DONE

            self.handle_failure(
                job,
                result.message or "Unknown sync failure",
                result.error_kind or ErrorKind.TRANSIENT,
                result.entity_id,
            )
            return JOB_FAILED

    def _dispatch(self, handler: ModuleHandler, job: QueueJob, payload: Dict) -> SyncResult:
        if job.direction == SyncDirection.LOCAL_TO_REMOTE.value:
            return handler.push(job.entity_type, job.action, job.local_id, job.remote_id, payload)
        return handler.pull(job.entity_type, job.action, job.remote_id, job.local_id, payload)

    def handle_failure(
        self,
        job: QueueJob,
        message: str,
        error_kind: ErrorKind,
        entity_id: Optional[int],
    ) -> None:
        """Route a failed job through the queue's retry policy."""
        with correlation_scope(job.correlation_id):
            self.queue.mark_retry(job.id, message, error_kind, entity_id=entity_id)

    # ------------------------------------------------------------------
    # Crash recovery
    # ------------------------------------------------------------------

    def _maybe_recover_stale(self) -> int:
        """Requeue stale processing jobs, at most once per recovery interval."""
        now = self._clock()
        state = self.state_store.get(STALE_RECOVERY_KEY, {}) or {}
        last_run = float(state.get("last_run", 0) or 0)
        if now - last_run < self.settings.SYNC_STALE_RECOVERY_INTERVAL:
            return 0

        self.state_store.set(STALE_RECOVERY_KEY, {"last_run": now})
        return self.queue.recover_stale_processing(self.settings.SYNC_STALE_TIMEOUT)
