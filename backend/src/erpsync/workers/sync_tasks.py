"""Celery tasks driving the sync queue.

Tasks:
- sync.process_queue: drain due jobs of every module (scheduler tick)
- sync.process_module_queue: drain one module's jobs (manual trigger)
- sync.recover_stale: requeue jobs left in processing by a crashed worker
- sync.cleanup_queue: delete finished jobs past the retention window

Every task opens its own tenant-scoped session, returns a result dict and
never raises: a run-level error is logged and reported as
``{'status': 'failed', 'error': ...}`` so the beat schedule keeps ticking.

Handlers are not importable from here; the deployment installs a registry
factory at worker start:

    from erpsync.workers.sync_tasks import set_registry_factory

    def build_registry(db, tenant_id):
        registry = ModuleRegistry()
        registry.register("catalog", CatalogHandler(client, EntityMapRepository(db, tenant_id)))
        return registry

    set_registry_factory(build_registry)
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from celery import shared_task
from sqlalchemy.orm import Session

from ..config import get_settings
from ..connectors.registry import ModuleRegistry
from ..database import tenant_scoped_session
from ..sync.engine import SyncEngine
from ..sync.queue import SyncQueueRepository

logger = logging.getLogger(__name__)

RegistryFactory = Callable[[Session, int], ModuleRegistry]

_registry_factory: Optional[RegistryFactory] = None


def set_registry_factory(factory: Optional[RegistryFactory]) -> None:
    """Install the callable that builds the module registry for a session and tenant."""
    global _registry_factory
    _registry_factory = factory


def build_registry(db: Session, tenant_id: int) -> ModuleRegistry:
    """
    Build the module registry for one run.

    Raises:
        RuntimeError: If no registry factory has been installed
    """
    if _registry_factory is None:
        raise RuntimeError(
            "No module registry configured. Call set_registry_factory() at worker start."
        )
    return _registry_factory(db, tenant_id)


def _resolve_tenant(tenant_id: Optional[int]) -> int:
    return tenant_id if tenant_id is not None else get_settings().SYNC_TENANT_ID


def _run_engine(task_name: str, tenant_id: Optional[int], module: Optional[str] = None) -> Dict[str, Any]:
    tenant = _resolve_tenant(tenant_id)
    started = time.monotonic()

    db = tenant_scoped_session(tenant)
    try:
        registry = build_registry(db, tenant)
        engine = SyncEngine(db, tenant_id=tenant, module_resolver=registry.resolve)

        if module is None:
            processed = engine.process_queue()
        else:
            processed = engine.process_module_queue(module)

        result = {
            'status': 'completed',
            'tenant_id': tenant,
            'module': module,
            'processed': processed,
            'dry_run': engine.dry_run,
            'duration_seconds': round(time.monotonic() - started, 3),
            'queue': engine.queue.get_stats(),
        }

        logger.info(
            f"{task_name} completed",
            extra={"tenant_id": tenant, "sync_module": module, "processed": processed}
        )
        return result

    except Exception as e:
        logger.error(
            f"{task_name} failed",
            exc_info=True,
            extra={"tenant_id": tenant, "sync_module": module, "error": str(e)}
        )
        return {
            'status': 'failed',
            'tenant_id': tenant,
            'module': module,
            'error': str(e),
            'processed': 0,
        }

    finally:
        db.close()


@shared_task(name="sync.process_queue", bind=True)
def process_queue_task(self, tenant_id: Optional[int] = None) -> Dict[str, Any]:
    """Drain due jobs of every module for a tenant.

    Scheduled every minute via Celery Beat. Overlapping runs are safe:
    jobs are claimed atomically, so two runs never process the same job.

    Returns:
        Dict with status, processed count, dry_run flag, duration and queue stats
    """
    return _run_engine("Sync queue run", tenant_id)


@shared_task(name="sync.process_module_queue", bind=True)
def process_module_queue_task(self, module: str, tenant_id: Optional[int] = None) -> Dict[str, Any]:
    """Drain due jobs of a single module (manual "sync now" trigger)."""
    return _run_engine("Module queue run", tenant_id, module=module)


@shared_task(name="sync.recover_stale", bind=True)
def recover_stale_task(self, tenant_id: Optional[int] = None, timeout_seconds: Optional[int] = None) -> Dict[str, Any]:
    """Requeue jobs stuck in processing longer than the stale timeout."""
    tenant = _resolve_tenant(tenant_id)

    db = tenant_scoped_session(tenant)
    try:
        recovered = SyncQueueRepository(db, tenant).recover_stale_processing(timeout_seconds)
        return {'status': 'completed', 'tenant_id': tenant, 'recovered': recovered}

    except Exception as e:
        logger.error(
            "Stale job recovery failed",
            exc_info=True,
            extra={"tenant_id": tenant, "error": str(e)}
        )
        return {'status': 'failed', 'tenant_id': tenant, 'error': str(e), 'recovered': 0}

    finally:
        db.close()


@shared_task(name="sync.cleanup_queue", bind=True)
def cleanup_queue_task(self, tenant_id: Optional[int] = None, days_old: Optional[int] = None) -> Dict[str, Any]:
    """Delete done, failed and dead jobs older than the retention window.

    The task is idempotent: a second run finds nothing more to delete.
    """
    tenant = _resolve_tenant(tenant_id)

    db = tenant_scoped_session(tenant)
    try:
        deleted = SyncQueueRepository(db, tenant).cleanup(days_old)
        return {'status': 'completed', 'tenant_id': tenant, 'deleted': deleted}

    except Exception as e:
        logger.error(
            "Sync queue cleanup failed",
            exc_info=True,
            extra={"tenant_id": tenant, "error": str(e)}
        )
        return {'status': 'failed', 'tenant_id': tenant, 'error': str(e), 'deleted': 0}

    finally:
        db.close()
