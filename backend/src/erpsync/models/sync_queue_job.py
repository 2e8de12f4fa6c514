"""SyncQueueJob model - persisted backlog of sync work"""

import enum

from sqlalchemy import Column, Integer, Text, DateTime, Index, CheckConstraint
from sqlalchemy.orm import validates

from .base import Base, utcnow


class JobStatus(str, enum.Enum):
    """Lifecycle of a queue job.

    PENDING -> PROCESSING -> DONE | FAILED | DEAD
    """
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
    DEAD = "dead"


class SyncDirection(str, enum.Enum):
    LOCAL_TO_REMOTE = "local_to_remote"
    REMOTE_TO_LOCAL = "remote_to_local"


class SyncAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# Statuses a job can never leave on its own
TERMINAL_STATUSES = (JobStatus.DONE.value, JobStatus.DEAD.value)


class SyncQueueJob(Base):
    """
    Sync Queue Job - one unit of sync work for one entity.

    Rows are created by inbound triggers (content hooks, webhooks, the
    diff-scan poller) and mutated only by the sync engine while it drains
    the queue. Done/dead rows are removed by the retention sweep.

    Attributes:
        id: Monotonic job id assigned at enqueue
        tenant_id: Isolation key (one site in a multi-site deployment)
        module: Integration key handling this entity
        entity_type: Entity type within the module (e.g. 'product')
        direction: local_to_remote or remote_to_local
        action: create, update or delete
        local_id: Local entity id (0 when not yet known)
        remote_id: Remote record id (0 when not yet known)
        payload: JSON snapshot of the entity (empty = re-fetch live)
        priority: 1-10, lower runs first
        status: pending, processing, done, failed, dead
        attempts: Processing attempts consumed so far
        max_attempts: Attempts allowed before dead-lettering
        scheduled_at: Not-before time (debounce and retry backoff)
        claimed_at: When the job last entered the processing state
        processed_at: When the job last left the processing state
        last_error: Last failure message
        correlation_id: Id attached to every log line for this job
        created_at: Enqueue time
    """
    __tablename__ = "sync_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, nullable=False, default=1)
    module = Column(Text, nullable=False)
    entity_type = Column(Text, nullable=False)
    direction = Column(Text, nullable=False, default=SyncDirection.LOCAL_TO_REMOTE.value)
    action = Column(Text, nullable=False, default=SyncAction.UPDATE.value)
    local_id = Column(Integer, nullable=False, default=0)
    remote_id = Column(Integer, nullable=False, default=0)
    payload = Column(Text, nullable=True)
    priority = Column(Integer, nullable=False, default=5)
    status = Column(Text, nullable=False, default=JobStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    scheduled_at = Column(DateTime, nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    correlation_id = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'done', 'failed', 'dead')",
            name='ck_sync_queue_status'
        ),
        CheckConstraint(
            "direction IN ('local_to_remote', 'remote_to_local')",
            name='ck_sync_queue_direction'
        ),
        CheckConstraint(
            "action IN ('create', 'update', 'delete')",
            name='ck_sync_queue_action'
        ),
        Index('idx_sync_queue_claim', 'tenant_id', 'status', 'priority', 'created_at'),
        Index('idx_sync_queue_dedup', 'tenant_id', 'module', 'entity_type', 'action', 'local_id'),
    )

    @validates('status')
    def validate_status(self, key, value):
        """Ensure status is valid."""
        valid_statuses = [s.value for s in JobStatus]
        if value not in valid_statuses:
            raise ValueError(
                f"Invalid status: {value}. "
                f"Must be one of: {', '.join(valid_statuses)}"
            )
        return value

    @validates('attempts')
    def validate_attempts(self, key, value):
        """Ensure attempts is non-negative."""
        if value is not None and value < 0:
            raise ValueError("attempts must be non-negative")
        return value

    def __repr__(self):
        return (
            f"<SyncQueueJob(id={self.id}, module='{self.module}', "
            f"entity_type='{self.entity_type}', action='{self.action}', "
            f"direction='{self.direction}', status='{self.status}', "
            f"attempts={self.attempts})>"
        )
