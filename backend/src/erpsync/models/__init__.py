"""SQLAlchemy Models for erpsync"""

from .base import Base, PortableJSONB, utcnow
from .sync_queue_job import (
    SyncQueueJob,
    JobStatus,
    SyncDirection,
    SyncAction,
    TERMINAL_STATUSES,
)
from .entity_map_entry import EntityMapEntry
from .sync_state import SyncState

__all__ = [
    "Base",
    "PortableJSONB",
    "utcnow",
    "SyncQueueJob",
    "JobStatus",
    "SyncDirection",
    "SyncAction",
    "TERMINAL_STATUSES",
    "EntityMapEntry",
    "SyncState",
]
