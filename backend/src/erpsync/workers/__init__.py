"""Background workers: Celery tasks that drive the sync queue.

All tasks take an optional tenant_id (default SYNC_TENANT_ID), open their
own tenant-scoped session and close it when done.
"""

from .sync_tasks import (
    process_queue_task,
    process_module_queue_task,
    recover_stale_task,
    cleanup_queue_task,
    set_registry_factory,
)

__all__ = [
    "process_queue_task",
    "process_module_queue_task",
    "recover_stale_task",
    "cleanup_queue_task",
    "set_registry_factory",
]
