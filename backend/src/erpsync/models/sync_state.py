"""SyncState model - keyed JSON blobs for coarse sync state"""

from sqlalchemy import Column, Text, DateTime

from .base import Base, PortableJSONB, utcnow


class SyncState(Base):
    """
    Sync State - one JSON value per key.

    Holds small pieces of engine state that must survive process restarts,
    such as the per-module circuit breaker table and the failure notifier
    counters. Rows are deleted when their state becomes empty so a healthy
    system keeps this table empty.
    """
    __tablename__ = "sync_state"

    key = Column(Text, primary_key=True)
    value = Column(PortableJSONB, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<SyncState(key='{self.key}')>"
