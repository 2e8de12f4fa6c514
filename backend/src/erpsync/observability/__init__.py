"""Observability: structured logging and job correlation ids."""

from .correlation import (
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
    correlation_scope,
)
from .logging_config import configure_logging, JSONFormatter, CorrelationIDFilter

__all__ = [
    "generate_correlation_id",
    "get_correlation_id",
    "set_correlation_id",
    "correlation_scope",
    "configure_logging",
    "JSONFormatter",
    "CorrelationIDFilter",
]
