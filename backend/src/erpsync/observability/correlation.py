"""Correlation ID management for job log tracing.

Every sync job carries a correlation id; the engine binds it to the
current context while the job runs so all log lines emitted by the engine,
the batch processor and the module handler can be joined.
"""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

# Context variable for correlation_id (async-safe)
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def generate_correlation_id() -> str:
    """Generate a new unique correlation ID.

    Returns:
        str: UUID v4 correlation ID
    """
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    """Get current correlation ID from context.

    Returns:
        str: Current correlation ID or "no-correlation-id" if not set
    """
    return correlation_id_var.get() or "no-correlation-id"


def set_correlation_id(correlation_id: Optional[str]) -> None:
    """Set correlation ID in current context.

    Args:
        correlation_id: Correlation ID to set (None clears it)
    """
    correlation_id_var.set(correlation_id)


@contextmanager
def correlation_scope(correlation_id: Optional[str]) -> Iterator[None]:
    """Bind a correlation ID for the duration of a block."""
    token = correlation_id_var.set(correlation_id)
    try:
        yield
    finally:
        correlation_id_var.reset(token)
