"""
Diff-Scan Poller - change detection for sources without change hooks

Compares a full listing of local entities against the entity map:
- unmapped entity              -> create job
- mapped, content hash changed -> update job
- mapped, not seen this scan   -> delete job

Seen mappings are stamped with last_polled_at; a mapping whose stamp is
older than the current scan was not listed and is treated as deleted.
Mappings that were never polled are not considered, so the first scan
after enabling polling does not delete everything.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List

from ..models import SyncAction, utcnow
from .entity_map import EntityMapRepository, generate_sync_hash
from .queue import SyncQueueRepository

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0

    @property
    def enqueued(self) -> int:
        return self.created + self.updated + self.deleted


class DiffScanPoller:
    """
    Enqueues push jobs for local entities that drifted from the remote copy.

    Usage:
        poller = DiffScanPoller(queue, entity_map)
        poller.poll_entity_changes("catalog", "product", load_all_products())
    """

    def __init__(
        self,
        queue: SyncQueueRepository,
        entity_map: EntityMapRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue = queue
        self.entity_map = entity_map
        self._now = clock

    def poll_entity_changes(
        self,
        module: str,
        entity_type: str,
        items: List[Dict[str, Any]],
        id_field: str = "id",
    ) -> PollResult:
        """
        Diff a full listing of local entities against the entity map.

        The hash of each item (without its id field) is compared to the
        sync_hash stored when the entity was last pushed. The item data is
        queued as the job payload, so the hash stored after the push
        matches what the next scan computes.

        Args:
            module: Module key
            entity_type: Entity type within the module
            items: Every local entity of this type, as dicts
            id_field: Key holding the local id in each item

        Returns:
            PollResult with counts per enqueued action
        """
        result = PollResult()
        scan_started = self._now()

        local_ids = [int(item.get(id_field) or 0) for item in items]
        existing = self.entity_map.get_mappings_for_local_ids(module, entity_type, local_ids)

        seen: List[int] = []
        for item in items:
            local_id = int(item.get(id_field) or 0)
            if not local_id:
                continue
            seen.append(local_id)

            data = {key: value for key, value in item.items() if key != id_field}
            mapping = existing.get(local_id)

            if mapping is None:
                self.queue.push(module, entity_type, SyncAction.CREATE.value, local_id, payload=data, debounce=0)
                result.created += 1
            elif mapping["sync_hash"] != generate_sync_hash(data):
                self.queue.push(
                    module, entity_type, SyncAction.UPDATE.value, local_id,
                    remote_id=mapping["remote_id"], payload=data, debounce=0,
                )
                result.updated += 1
            else:
                result.unchanged += 1

        self.entity_map.mark_polled(module, entity_type, seen, scan_started)

        stale = self.entity_map.get_stale_poll_mappings(module, entity_type, scan_started)
        for local_id, remote_id in stale.items():
            self.queue.push(
                module, entity_type, SyncAction.DELETE.value, local_id,
                remote_id=remote_id, debounce=0,
            )
            result.deleted += 1

        if result.enqueued:
            logger.info(
                "Diff scan enqueued changes",
                extra={
                    "sync_module": module,
                    "entity_type": entity_type,
                    "count": result.enqueued,
                }
            )
        return result
