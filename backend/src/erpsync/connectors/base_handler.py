"""
Base Module Handler - field-mapping template for ERP integrations

Implements push/pull/push_batch_creates on top of a RemoteClientPort and
the entity map. A concrete integration only supplies the local data access
and the field mapping:

- load_local_data() / save_local_data() / delete_local_data()
- map_to_remote() / map_from_remote()
- remote_models (entity type -> remote model name)
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models import SyncAction
from ..sync.entity_map import EntityMapRepository, generate_sync_hash
from ..sync.import_guard import ImportGuard
from .ports import (
    ErrorKind,
    ModuleHandler,
    PermanentSyncError,
    RemoteClientPort,
    SyncError,
    SyncResult,
)


logger = logging.getLogger(__name__)


class BaseModuleHandler(ModuleHandler, ABC):
    """
    Base class for module handlers that map fields onto remote models.

    Provides:
    - create/update/delete push with mapping-aware create -> update switch
    - remote dedup search before creating (get_dedup_domain)
    - pull with the import guard held, so local save hooks do not echo
      the record back to the remote system
    - bulk creates through RemoteClientPort.create_batch()

    Subclasses must implement:
    - load_local_data(entity_type, local_id) -> dict
    - save_local_data(entity_type, data, local_id) -> int
    - delete_local_data(entity_type, local_id) -> bool
    - map_to_remote(entity_type, data) -> dict
    - map_from_remote(entity_type, record) -> dict
    """

    remote_models: Dict[str, str] = {}

    def __init__(
        self,
        client: RemoteClientPort,
        entity_map: EntityMapRepository,
        import_guard: Optional[ImportGuard] = None,
    ):
        self.client = client
        self.entity_map = entity_map
        self.import_guard = import_guard or ImportGuard()

    # ------------------------------------------------------------------
    # Integration hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def load_local_data(self, entity_type: str, local_id: int) -> Dict[str, Any]:
        pass

    @abstractmethod
    def save_local_data(self, entity_type: str, data: Dict[str, Any], local_id: int) -> int:
        """Create or update a local entity; return its id (0 on failure)."""
        pass

    @abstractmethod
    def delete_local_data(self, entity_type: str, local_id: int) -> bool:
        pass

    @abstractmethod
    def map_to_remote(self, entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def map_from_remote(self, entity_type: str, record: Dict[str, Any]) -> Dict[str, Any]:
        pass

    def get_dedup_domain(self, entity_type: str, values: Dict[str, Any]) -> List[Any]:
        """Search domain identifying an existing remote record for these values (empty = no dedup)."""
        return []

    def get_remote_model(self, entity_type: str) -> str:
        return self.remote_models.get(entity_type, "")

    # ------------------------------------------------------------------
    # ModuleHandler
    # ------------------------------------------------------------------

    def push(
        self,
        entity_type: str,
        action: str,
        local_id: int,
        remote_id: int,
        payload: Dict[str, Any],
    ) -> SyncResult:
        module = self.get_module_id()

        try:
            model = self._model(entity_type)
            if action == SyncAction.DELETE.value:
                if remote_id == 0 and local_id > 0:
                    remote_id = self.entity_map.get_remote_id(module, entity_type, local_id) or 0
                if remote_id > 0:
                    self.client.unlink(model, [remote_id])
                    self.entity_map.remove(module, entity_type, local_id)
                    logger.info(
                        "Deleted remote record",
                        extra={"sync_module": module, "entity_type": entity_type,
                               "local_id": local_id, "remote_id": remote_id}
                    )
                return SyncResult.ok(remote_id)

            data = payload or self.load_local_data(entity_type, local_id)
            values = self.map_to_remote(entity_type, data)
            if not values:
                return SyncResult.failure("No data to push", ErrorKind.PERMANENT)
            sync_hash = generate_sync_hash(data)

            # The entity may have been mapped since the job was enqueued
            if action == SyncAction.CREATE.value or remote_id == 0:
                mapped = self.entity_map.get_remote_id(module, entity_type, local_id)
                if mapped:
                    remote_id = mapped

            if remote_id > 0:
                self.client.write(model, [remote_id], values)
                return self._save_mapping(entity_type, local_id, remote_id, sync_hash, "update")

            domain = self.get_dedup_domain(entity_type, values)
            if domain:
                existing = self.client.search(model, domain, limit=1)
                if existing:
                    remote_id = existing[0]
                    logger.info(
                        "Found existing remote record, switching to update",
                        extra={"sync_module": module, "entity_type": entity_type,
                               "local_id": local_id, "remote_id": remote_id}
                    )
                    self.client.write(model, [remote_id], values)
                    return self._save_mapping(entity_type, local_id, remote_id, sync_hash, "update")

            remote_id = self.client.create(model, values)
            return self._save_mapping(entity_type, local_id, remote_id, sync_hash, "create")

        except SyncError as e:
            return SyncResult.failure(str(e), e.error_kind, e.entity_id or (remote_id or None))
        except ValueError as e:
            return SyncResult.failure(str(e), ErrorKind.PERMANENT, remote_id or None)

    def push_batch_creates(
        self,
        entity_type: str,
        items: List[Dict[str, Any]],
    ) -> Dict[int, SyncResult]:
        """
        Create all unmapped items with one create_batch() call.

        Items already mapped succeed with their existing remote id. The
        caller stores the new mappings.
        """
        module = self.get_module_id()
        model = self._model(entity_type)
        results: Dict[int, SyncResult] = {}

        local_ids = [item["local_id"] for item in items]
        existing = self.entity_map.get_remote_ids_batch(module, entity_type, local_ids)

        values_list = []
        pending_ids = []
        for item in items:
            local_id = item["local_id"]
            if local_id in existing:
                results[local_id] = SyncResult.ok(existing[local_id])
                continue

            data = item.get("payload") or self.load_local_data(entity_type, local_id)
            values = self.map_to_remote(entity_type, data)
            if not values:
                results[local_id] = SyncResult.failure("No data to push", ErrorKind.PERMANENT)
                continue
            values_list.append(values)
            pending_ids.append(local_id)

        if not values_list:
            return results

        remote_ids = self.client.create_batch(model, values_list)
        for local_id, remote_id in zip(pending_ids, remote_ids):
            results[local_id] = SyncResult.ok(remote_id)

        logger.info(
            "Batch created remote records",
            extra={"sync_module": module, "entity_type": entity_type, "count": len(remote_ids)}
        )
        return results

    def pull(
        self,
        entity_type: str,
        action: str,
        remote_id: int,
        local_id: int,
        payload: Dict[str, Any],
    ) -> SyncResult:
        module = self.get_module_id()

        with self.import_guard.importing(module):
            try:
                if local_id == 0:
                    local_id = self.entity_map.get_local_id(module, entity_type, remote_id) or 0

                if action == SyncAction.DELETE.value:
                    if local_id > 0:
                        self.delete_local_data(entity_type, local_id)
                        self.entity_map.remove(module, entity_type, local_id)
                        logger.info(
                            "Deleted local entity from remote signal",
                            extra={"sync_module": module, "entity_type": entity_type,
                                   "local_id": local_id, "remote_id": remote_id}
                        )
                    return SyncResult.ok(local_id)

                records = self.client.read(self._model(entity_type), [remote_id])
                if not records:
                    return SyncResult.failure("Remote record not found during pull", ErrorKind.PERMANENT)

                record = records[0]
                data = self.map_from_remote(entity_type, record)
                local_id = self.save_local_data(entity_type, data, local_id)
                if not local_id:
                    return SyncResult.failure("Failed to save local data during pull", ErrorKind.PERMANENT)

                self.entity_map.save(
                    module,
                    entity_type,
                    local_id,
                    remote_id,
                    remote_model=self.get_remote_model(entity_type),
                    sync_hash=generate_sync_hash(data),
                )
                logger.info(
                    "Pulled remote record",
                    extra={"sync_module": module, "entity_type": entity_type,
                           "local_id": local_id, "remote_id": remote_id}
                )
                return SyncResult.ok(local_id)

            except SyncError as e:
                return SyncResult.failure(str(e), e.error_kind)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _model(self, entity_type: str) -> str:
        model = self.get_remote_model(entity_type)
        if not model:
            raise PermanentSyncError(
                f"Module '{self.get_module_id()}' has no remote model for entity type '{entity_type}'"
            )
        return model

    def _save_mapping(
        self,
        entity_type: str,
        local_id: int,
        remote_id: int,
        sync_hash: str,
        operation: str,
    ) -> SyncResult:
        module = self.get_module_id()
        saved = self.entity_map.save(
            module,
            entity_type,
            local_id,
            remote_id,
            remote_model=self.get_remote_model(entity_type),
            sync_hash=sync_hash,
        )
        if not saved:
            logger.error(
                f"Mapping save failed after remote {operation}",
                extra={"sync_module": module, "entity_type": entity_type,
                       "local_id": local_id, "remote_id": remote_id}
            )
            return SyncResult.failure(
                f"Mapping save failed after remote {operation}",
                ErrorKind.TRANSIENT,
                remote_id,
            )

        logger.info(
            "Remote record created" if operation == "create" else "Remote record updated",
            extra={"sync_module": module, "entity_type": entity_type,
                   "local_id": local_id, "remote_id": remote_id}
        )
        return SyncResult.ok(remote_id)
