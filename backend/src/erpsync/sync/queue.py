"""
Sync Queue Repository - persisted, ordered backlog of sync jobs

Centralizes all database operations on the sync_queue table:
- Deduplicating enqueue (a burst of edits collapses into one pending job)
- Atomic claiming (no two workers ever process the same job)
- Outcome transitions (done / retry with backoff / dead-letter)
- Operator and maintenance actions (retry, cancel, stale recovery, cleanup)

Every transition is a conditional UPDATE on the status the job is expected
to be in, so a job that reached done or dead is never touched again except
by an explicit operator retry.
"""

import json
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..connectors.ports import ErrorKind, PayloadDecodeError
from ..models import (
    SyncQueueJob,
    JobStatus,
    SyncDirection,
    SyncAction,
    utcnow,
)
from ..observability.correlation import generate_correlation_id

logger = logging.getLogger(__name__)

# Upper bound on stored error messages
MAX_ERROR_LENGTH = 65535


class QueueError(Exception):
    """Raised when a queue operation is given invalid arguments."""
    pass


@dataclass(frozen=True)
class QueueJob:
    """
    Read-only snapshot of a sync_queue row.

    The engine and batch processor work on these snapshots; state changes
    always go back through SyncQueueRepository.
    """
    id: int
    tenant_id: int
    module: str
    entity_type: str
    direction: str
    action: str
    local_id: int
    remote_id: int
    payload: Optional[str]
    priority: int
    status: str
    attempts: int
    max_attempts: int
    created_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    last_error: Optional[str] = None
    correlation_id: Optional[str] = None

    @classmethod
    def from_model(cls, row: SyncQueueJob) -> "QueueJob":
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            module=row.module,
            entity_type=row.entity_type,
            direction=row.direction,
            action=row.action,
            local_id=row.local_id or 0,
            remote_id=row.remote_id or 0,
            payload=row.payload,
            priority=row.priority,
            status=row.status,
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            created_at=row.created_at,
            scheduled_at=row.scheduled_at,
            last_error=row.last_error,
            correlation_id=row.correlation_id,
        )

    @property
    def is_batchable(self) -> bool:
        """Only local_to_remote creates may be grouped into a bulk call."""
        return (
            self.direction == SyncDirection.LOCAL_TO_REMOTE.value
            and self.action == SyncAction.CREATE.value
        )


def encode_payload(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    if payload is None:
        return None
    return json.dumps(payload, default=str)


def decode_payload(job: QueueJob) -> Dict[str, Any]:
    """
    Decode a job's stored payload.

    An empty payload decodes to {} (the handler loads live data). JSON that
    is not an object also decodes to {}.

    Raises:
        PayloadDecodeError: If the stored payload is not valid JSON
    """
    if not job.payload:
        return {}
    try:
        decoded = json.loads(job.payload)
    except ValueError as e:
        raise PayloadDecodeError(f"Invalid JSON payload in job #{job.id}: {e}") from e
    return decoded if isinstance(decoded, dict) else {}


class SyncQueueRepository:
    """
    Repository for the sync_queue table, scoped to one tenant.

    Usage:
        queue = SyncQueueRepository(db, tenant_id=1)
        job_id = queue.push("catalog", "product", "create", local_id=10, payload={...})

        for job in queue.claim_due(50):
            ...
            queue.mark_done(job.id)
    """

    def __init__(
        self,
        db: Session,
        tenant_id: Optional[int] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.tenant_id = tenant_id if tenant_id is not None else db.info.get("tenant_id", 1)
        self.settings = settings or get_settings()
        self._now = clock

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        module: str,
        entity_type: str,
        action: str,
        direction: str,
        local_id: int = 0,
        remote_id: int = 0,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = 5,
        max_attempts: Optional[int] = None,
        delay_seconds: int = 0,
    ) -> int:
        """
        Enqueue a sync job with deduplication.

        If a pending job already exists for the same (module, entity_type,
        action, direction) and local id (or remote id, for pulls of records
        not yet mapped locally), it is refreshed in place and its id is
        returned instead of inserting a duplicate.

        Args:
            module: Module key
            entity_type: Entity type within the module
            action: 'create', 'update' or 'delete'
            direction: 'local_to_remote' or 'remote_to_local'
            local_id: Local entity id (0 if unknown)
            remote_id: Remote record id (0 if unknown)
            payload: Entity snapshot (None = handler loads live data)
            priority: 1-10, lower runs first
            max_attempts: Attempts before dead-lettering (default from settings)
            delay_seconds: Not-before delay (debounce)

        Returns:
            The job id (new or existing)

        Raises:
            QueueError: If module/entity_type are empty or action/direction unknown
        """
        module = (module or "").strip()
        entity_type = (entity_type or "").strip()
        if not module or not entity_type:
            raise QueueError("module and entity_type are required")
        if action not in {a.value for a in SyncAction}:
            raise QueueError(f"Unknown action '{action}'")
        if direction not in {d.value for d in SyncDirection}:
            raise QueueError(f"Unknown direction '{direction}'")

        local_id = int(local_id or 0)
        remote_id = int(remote_id or 0)
        priority = min(max(int(priority), 1), 10)
        encoded = encode_payload(payload)

        existing = self._find_pending_duplicate(module, entity_type, action, direction, local_id, remote_id)
        if existing is not None:
            existing.payload = encoded
            existing.priority = priority
            if remote_id and not existing.remote_id:
                existing.remote_id = remote_id
            if local_id and not existing.local_id:
                existing.local_id = local_id
            self.db.commit()
            logger.debug(
                "Enqueue deduplicated against pending job",
                extra={
                    "tenant_id": self.tenant_id,
                    "job_id": existing.id,
                    "sync_module": module,
                    "entity_type": entity_type,
                    "action": action,
                }
            )
            return existing.id

        now = self._now()
        job = SyncQueueJob(
            tenant_id=self.tenant_id,
            module=module,
            entity_type=entity_type,
            direction=direction,
            action=action,
            local_id=local_id,
            remote_id=remote_id,
            payload=encoded,
            priority=priority,
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts or self.settings.SYNC_MAX_ATTEMPTS,
            scheduled_at=now + timedelta(seconds=delay_seconds) if delay_seconds > 0 else None,
            correlation_id=generate_correlation_id(),
            created_at=now,
        )
        self.db.add(job)
        self.db.commit()

        logger.debug(
            "Sync job enqueued",
            extra={
                "tenant_id": self.tenant_id,
                "job_id": job.id,
                "sync_module": module,
                "entity_type": entity_type,
                "action": action,
                "direction": direction,
            }
        )
        return job.id

    def push(
        self,
        module: str,
        entity_type: str,
        action: str,
        local_id: int,
        remote_id: int = 0,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = 5,
        debounce: Optional[int] = None,
    ) -> int:
        """
        Enqueue a local-to-remote job.

        Uses the configured debounce so rapid-fire saves of the same entity
        coalesce via dedup instead of racing.
        """
        delay = self.settings.SYNC_DEBOUNCE_SECONDS if debounce is None else debounce
        return self.enqueue(
            module, entity_type, action, SyncDirection.LOCAL_TO_REMOTE.value,
            local_id=local_id, remote_id=remote_id, payload=payload,
            priority=priority, delay_seconds=delay,
        )

    def pull(
        self,
        module: str,
        entity_type: str,
        action: str,
        remote_id: int,
        local_id: int = 0,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = 5,
        debounce: int = 0,
    ) -> int:
        """Enqueue a remote-to-local job."""
        return self.enqueue(
            module, entity_type, action, SyncDirection.REMOTE_TO_LOCAL.value,
            local_id=local_id, remote_id=remote_id, payload=payload,
            priority=priority, delay_seconds=debounce,
        )

    def _find_pending_duplicate(
        self,
        module: str,
        entity_type: str,
        action: str,
        direction: str,
        local_id: int,
        remote_id: int,
    ) -> Optional[SyncQueueJob]:
        query = self._tenant_query().filter(
            SyncQueueJob.status == JobStatus.PENDING.value,
            SyncQueueJob.module == module,
            SyncQueueJob.entity_type == entity_type,
            SyncQueueJob.action == action,
            SyncQueueJob.direction == direction,
        )
        if local_id > 0:
            query = query.filter(SyncQueueJob.local_id == local_id)
        elif remote_id > 0:
            query = query.filter(SyncQueueJob.local_id == 0, SyncQueueJob.remote_id == remote_id)
        else:
            return None
        return query.order_by(SyncQueueJob.id).first()

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def claim_due(
        self,
        limit: int,
        module: Optional[str] = None,
        exclude_modules: Iterable[str] = (),
    ) -> List[QueueJob]:
        """
        Atomically move up to ``limit`` due pending jobs to processing.

        Candidates are ordered by priority, then age. Each candidate is
        claimed with a conditional UPDATE (``WHERE status = 'pending'``);
        a candidate another worker claimed in the meantime simply affects
        zero rows and is left out. On PostgreSQL the candidate select also
        skips rows locked by a concurrent claimer.

        Args:
            limit: Maximum number of jobs to claim
            module: Only claim jobs of this module
            exclude_modules: Never claim jobs of these modules (open circuits)

        Returns:
            Claimed jobs, in processing order
        """
        if limit <= 0:
            return []

        now = self._now()
        candidates = self._due_query(now, module, exclude_modules).with_entities(SyncQueueJob.id).limit(limit)
        if self.db.get_bind().dialect.name == "postgresql":
            candidates = candidates.with_for_update(skip_locked=True)
        candidate_ids = [row.id for row in candidates.all()]

        claimed_ids = [job_id for job_id in candidate_ids if self._try_claim(job_id, now)]
        self.db.commit()

        if len(claimed_ids) < len(candidate_ids):
            logger.info(
                "Some candidate jobs were claimed by another worker",
                extra={
                    "tenant_id": self.tenant_id,
                    "count": len(candidate_ids) - len(claimed_ids),
                }
            )

        if not claimed_ids:
            return []

        rows = self._tenant_query().filter(SyncQueueJob.id.in_(claimed_ids)).order_by(
            SyncQueueJob.priority, SyncQueueJob.created_at, SyncQueueJob.id
        ).all()
        return [QueueJob.from_model(row) for row in rows]

    def _try_claim(self, job_id: int, now: datetime) -> bool:
        """Compare-and-set one job from pending to processing."""
        updated = self._tenant_query().filter(
            SyncQueueJob.id == job_id,
            SyncQueueJob.status == JobStatus.PENDING.value,
        ).update(
            {
                SyncQueueJob.status: JobStatus.PROCESSING.value,
                SyncQueueJob.claimed_at: now,
            },
            synchronize_session=False,
        )
        return updated == 1

    def peek_due(self, limit: int, module: Optional[str] = None) -> List[QueueJob]:
        """Read-only view of the jobs claim_due() would take next."""
        rows = self._due_query(self._now(), module, ()).limit(limit).all()
        return [QueueJob.from_model(row) for row in rows]

    def _due_query(self, now: datetime, module: Optional[str], exclude_modules: Iterable[str]):
        query = self._tenant_query().filter(
            SyncQueueJob.status == JobStatus.PENDING.value,
            or_(SyncQueueJob.scheduled_at.is_(None), SyncQueueJob.scheduled_at <= now),
        )
        if module is not None:
            query = query.filter(SyncQueueJob.module == module)
        excluded = list(exclude_modules)
        if excluded:
            query = query.filter(SyncQueueJob.module.notin_(excluded))
        return query.order_by(SyncQueueJob.priority, SyncQueueJob.created_at, SyncQueueJob.id)

    # ------------------------------------------------------------------
    # Outcome transitions
    # ------------------------------------------------------------------

    def mark_done(self, job_id: int) -> bool:
        """Mark a processing job as done."""
        return self._transition(
            job_id,
            JobStatus.PROCESSING,
            {
                SyncQueueJob.status: JobStatus.DONE.value,
                SyncQueueJob.processed_at: self._now(),
                SyncQueueJob.last_error: None,
            },
        )

    def mark_superseded(self, job_id: int, superseded_by: int) -> bool:
        """Close a job whose work is carried by a newer job for the same entity."""
        return self._transition(
            job_id,
            JobStatus.PROCESSING,
            {
                SyncQueueJob.status: JobStatus.DONE.value,
                SyncQueueJob.processed_at: self._now(),
                SyncQueueJob.last_error: f"Superseded by job #{superseded_by}",
            },
        )

    def mark_retry(
        self,
        job_id: int,
        error: str,
        error_kind: ErrorKind = ErrorKind.TRANSIENT,
        entity_id: Optional[int] = None,
    ) -> Optional[str]:
        """
        Record a failed attempt and decide the job's next state.

        Permanent errors, and transient errors on the last allowed attempt,
        dead-letter the job. Otherwise the job goes back to pending with a
        backoff delay.

        Args:
            job_id: The failing job
            error: Failure message
            error_kind: TRANSIENT or PERMANENT
            entity_id: Remote id created before the failure; persisted when
                       the job had none so the retry updates instead of
                       creating a duplicate

        Returns:
            The new status ('pending' or 'dead'), or None if the job was not
            in processing
        """
        job = self._tenant_query().filter(SyncQueueJob.id == job_id).first()
        if job is None or job.status != JobStatus.PROCESSING.value:
            logger.warning(
                "mark_retry ignored: job is not processing",
                extra={"tenant_id": self.tenant_id, "job_id": job_id}
            )
            return None

        attempts = job.attempts + 1
        message = (error or "")[:MAX_ERROR_LENGTH]
        now = self._now()
        should_retry = error_kind == ErrorKind.TRANSIENT and attempts < job.max_attempts

        values = {
            SyncQueueJob.attempts: attempts,
            SyncQueueJob.last_error: message,
        }
        if entity_id and not job.remote_id and job.direction == SyncDirection.LOCAL_TO_REMOTE.value:
            values[SyncQueueJob.remote_id] = entity_id

        if should_retry:
            delay = self.compute_retry_delay(attempts)
            values[SyncQueueJob.status] = JobStatus.PENDING.value
            values[SyncQueueJob.scheduled_at] = now + timedelta(seconds=delay)
            new_status = JobStatus.PENDING.value
        else:
            values[SyncQueueJob.status] = JobStatus.DEAD.value
            values[SyncQueueJob.processed_at] = now
            new_status = JobStatus.DEAD.value

        if not self._transition(job_id, JobStatus.PROCESSING, values):
            return None

        if should_retry:
            logger.warning(
                "Sync job failed, will retry",
                extra={
                    "tenant_id": self.tenant_id,
                    "job_id": job_id,
                    "sync_module": job.module,
                    "attempt": attempts,
                    "error": message,
                    "error_kind": error_kind.value,
                }
            )
        else:
            logger.error(
                "Sync job dead-lettered",
                extra={
                    "tenant_id": self.tenant_id,
                    "job_id": job_id,
                    "sync_module": job.module,
                    "entity_type": job.entity_type,
                    "attempt": attempts,
                    "error": message,
                    "error_kind": error_kind.value,
                }
            )
        return new_status

    def mark_dead(self, job_id: int, error: str) -> bool:
        """Dead-letter a job directly, without further retries."""
        job = self._tenant_query().filter(SyncQueueJob.id == job_id).first()
        if job is None:
            return False
        return self._transition(
            job_id,
            (JobStatus.PENDING, JobStatus.PROCESSING),
            {
                SyncQueueJob.status: JobStatus.DEAD.value,
                SyncQueueJob.attempts: min(job.attempts + 1, job.max_attempts),
                SyncQueueJob.last_error: (error or "")[:MAX_ERROR_LENGTH],
                SyncQueueJob.processed_at: self._now(),
            },
        )

    def mark_failed(self, job_id: int, error: str) -> bool:
        """
        Park a job that could not be dispatched at all (e.g. unknown module).

        Unlike dead jobs these are configuration problems; an operator
        retries them with retry_failed() once the module is registered.
        """
        return self._transition(
            job_id,
            JobStatus.PROCESSING,
            {
                SyncQueueJob.status: JobStatus.FAILED.value,
                SyncQueueJob.last_error: (error or "")[:MAX_ERROR_LENGTH],
                SyncQueueJob.processed_at: self._now(),
            },
        )

    def release(self, job_id: int) -> bool:
        """Return a claimed job to pending without consuming an attempt."""
        return self._transition(
            job_id,
            JobStatus.PROCESSING,
            {
                SyncQueueJob.status: JobStatus.PENDING.value,
                SyncQueueJob.claimed_at: None,
            },
        )

    def compute_retry_delay(self, attempts: int) -> int:
        """
        Seconds to wait before the next attempt.

        exponential: base * 2^attempts plus up to ``base`` seconds of jitter
        fixed:       base
        """
        base = self.settings.SYNC_RETRY_BASE_SECONDS
        if self.settings.SYNC_RETRY_BACKOFF == "fixed":
            return base
        return base * (2 ** attempts) + random.randint(0, base)

    def _transition(self, job_id: int, expected, values: Dict[Any, Any]) -> bool:
        expected_statuses = expected if isinstance(expected, tuple) else (expected,)
        updated = self._tenant_query().filter(
            SyncQueueJob.id == job_id,
            SyncQueueJob.status.in_([s.value for s in expected_statuses]),
        ).update(values, synchronize_session=False)
        self.db.commit()

        if updated != 1:
            logger.warning(
                "Queue transition skipped: job not in expected state",
                extra={
                    "tenant_id": self.tenant_id,
                    "job_id": job_id,
                }
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Operator and maintenance actions
    # ------------------------------------------------------------------

    def retry_failed(self, module: Optional[str] = None) -> int:
        """
        Reset failed and dead jobs to pending with a fresh attempt counter.

        Returns:
            Number of jobs reset
        """
        query = self._tenant_query().filter(
            SyncQueueJob.status.in_([JobStatus.FAILED.value, JobStatus.DEAD.value])
        )
        if module is not None:
            query = query.filter(SyncQueueJob.module == module)

        count = query.update(
            {
                SyncQueueJob.status: JobStatus.PENDING.value,
                SyncQueueJob.attempts: 0,
                SyncQueueJob.last_error: None,
                SyncQueueJob.scheduled_at: None,
                SyncQueueJob.claimed_at: None,
            },
            synchronize_session=False,
        )
        self.db.commit()

        logger.info(
            "Failed and dead jobs reset for retry",
            extra={"tenant_id": self.tenant_id, "sync_module": module, "count": count}
        )
        return count

    def retry_job(self, job_id: int) -> bool:
        """Reset a single failed or dead job to pending."""
        return self._transition(
            job_id,
            (JobStatus.FAILED, JobStatus.DEAD),
            {
                SyncQueueJob.status: JobStatus.PENDING.value,
                SyncQueueJob.attempts: 0,
                SyncQueueJob.last_error: None,
                SyncQueueJob.scheduled_at: None,
                SyncQueueJob.claimed_at: None,
            },
        )

    def cancel(self, job_id: int) -> bool:
        """
        Cancel a pending job.

        Returns:
            True if the job was pending and has been deleted
        """
        deleted = self._tenant_query().filter(
            SyncQueueJob.id == job_id,
            SyncQueueJob.status == JobStatus.PENDING.value,
        ).delete(synchronize_session=False)
        self.db.commit()
        return deleted > 0

    def recover_stale_processing(self, timeout_seconds: Optional[int] = None) -> int:
        """
        Requeue jobs stuck in processing past the stale timeout.

        A worker that crashed mid-page leaves its claimed jobs in
        processing. Recovery counts the interrupted run as a consumed
        attempt, so a job that reliably crashes its worker is eventually
        dead-lettered instead of looping forever.

        Returns:
            Number of jobs recovered
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.settings.SYNC_STALE_TIMEOUT
        now = self._now()
        cutoff = now - timedelta(seconds=timeout)

        stale = self._tenant_query().filter(
            SyncQueueJob.status == JobStatus.PROCESSING.value,
            or_(SyncQueueJob.claimed_at.is_(None), SyncQueueJob.claimed_at < cutoff),
        ).all()

        recovered = 0
        for job in stale:
            attempts = job.attempts + 1
            if attempts >= job.max_attempts:
                values = {
                    SyncQueueJob.status: JobStatus.DEAD.value,
                    SyncQueueJob.attempts: attempts,
                    SyncQueueJob.last_error: "Processing lock expired (worker crashed?)",
                    SyncQueueJob.processed_at: now,
                }
            else:
                values = {
                    SyncQueueJob.status: JobStatus.PENDING.value,
                    SyncQueueJob.attempts: attempts,
                    SyncQueueJob.claimed_at: None,
                }
            if self._transition(job.id, JobStatus.PROCESSING, values):
                recovered += 1

        if recovered:
            logger.warning(
                "Recovered stale processing jobs",
                extra={"tenant_id": self.tenant_id, "count": recovered}
            )
        return recovered

    def cleanup(self, days_old: Optional[int] = None) -> int:
        """
        Delete finished jobs (done, failed, dead) older than ``days_old`` days.

        Returns:
            Number of deleted rows
        """
        days = days_old if days_old is not None else self.settings.SYNC_RETENTION_DAYS
        cutoff = self._now() - timedelta(days=days)

        deleted = self._tenant_query().filter(
            SyncQueueJob.status.in_([
                JobStatus.DONE.value,
                JobStatus.FAILED.value,
                JobStatus.DEAD.value,
            ]),
            SyncQueueJob.created_at < cutoff,
        ).delete(synchronize_session=False)
        self.db.commit()

        logger.info(
            "Queue cleanup completed",
            extra={"tenant_id": self.tenant_id, "count": deleted}
        )
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, job_id: int) -> Optional[QueueJob]:
        row = self._tenant_query().filter(SyncQueueJob.id == job_id).first()
        return QueueJob.from_model(row) if row is not None else None

    def get_pending(self, module: str, entity_type: Optional[str] = None) -> List[QueueJob]:
        """All pending jobs for a module, in processing order."""
        query = self._tenant_query().filter(
            SyncQueueJob.module == module,
            SyncQueueJob.status == JobStatus.PENDING.value,
        )
        if entity_type is not None:
            query = query.filter(SyncQueueJob.entity_type == entity_type)
        rows = query.order_by(SyncQueueJob.priority, SyncQueueJob.created_at, SyncQueueJob.id).all()
        return [QueueJob.from_model(row) for row in rows]

    def get_stats(self) -> Dict[str, int]:
        """
        Job counts by status.

        Returns:
            {'pending': n, 'processing': n, 'done': n, 'failed': n, 'dead': n, 'total': n}
        """
        stats = {status.value: 0 for status in JobStatus}
        stats["total"] = 0

        rows = self._tenant_query().with_entities(
            SyncQueueJob.status, func.count(SyncQueueJob.id)
        ).group_by(SyncQueueJob.status).all()

        for status, count in rows:
            if status in stats:
                stats[status] = count
            stats["total"] += count
        return stats

    def _tenant_query(self):
        return self.db.query(SyncQueueJob).filter(SyncQueueJob.tenant_id == self.tenant_id)
