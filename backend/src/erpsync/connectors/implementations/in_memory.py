"""
In-Memory Handler - dict-backed remote client and module handler

Simulates the remote ERP and the local content store without external
systems. Used for unit tests and local development.
"""

import logging
from typing import Any, Dict, List, Optional

from ...sync.entity_map import EntityMapRepository
from ...sync.import_guard import ImportGuard
from ..base_handler import BaseModuleHandler
from ..ports import PermanentSyncError, RemoteClientPort, TransientSyncError


logger = logging.getLogger(__name__)


class InMemoryRemoteClient(RemoteClientPort):
    """
    Remote ERP simulated in memory.

    Records are stored per model as {id: values}. Ids are assigned from a
    shared counter starting at ``first_id``.

    Modes:
        - "success": every call succeeds (default)
        - "failure": writes raise PermanentSyncError (rejected by the remote)
        - "timeout": every call raises TransientSyncError

    Usage:
        client = InMemoryRemoteClient()
        client.mode = "timeout"      # simulate an outage
    """

    def __init__(self, first_id: int = 1, mode: str = "success"):
        self.records: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self.mode = mode
        self.error_message = "In-memory remote simulated failure"
        self.calls: List[tuple] = []
        self._next_id = first_id

    def create(self, model: str, values: Dict[str, Any]) -> int:
        self._check("create", model, write=True)
        return self._insert(model, values)

    def create_batch(self, model: str, values_list: List[Dict[str, Any]]) -> List[int]:
        self._check("create_batch", model, write=True)
        return [self._insert(model, values) for values in values_list]

    def write(self, model: str, ids: List[int], values: Dict[str, Any]) -> bool:
        self._check("write", model, write=True)
        table = self.records.get(model, {})
        for record_id in ids:
            if record_id not in table:
                raise PermanentSyncError(f"Record {model}#{record_id} does not exist")
            table[record_id].update(values)
        return True

    def unlink(self, model: str, ids: List[int]) -> bool:
        self._check("unlink", model, write=True)
        table = self.records.get(model, {})
        for record_id in ids:
            table.pop(record_id, None)
        return True

    def read(self, model: str, ids: List[int]) -> List[Dict[str, Any]]:
        self._check("read", model)
        table = self.records.get(model, {})
        return [dict(table[record_id], id=record_id) for record_id in ids if record_id in table]

    def search(self, model: str, domain: List[Any], limit: int = 0) -> List[int]:
        """Match records on (field, '=', value) terms."""
        self._check("search", model)
        matches = []
        for record_id, values in self.records.get(model, {}).items():
            if all(values.get(name) == value for name, op, value in domain if op == "="):
                matches.append(record_id)
                if limit and len(matches) >= limit:
                    break
        return matches

    def _insert(self, model: str, values: Dict[str, Any]) -> int:
        record_id = self._next_id
        self._next_id += 1
        self.records.setdefault(model, {})[record_id] = dict(values)
        return record_id

    def _check(self, operation: str, model: str, write: bool = False) -> None:
        self.calls.append((operation, model))
        if self.mode == "timeout":
            logger.info(f"InMemoryRemoteClient: Simulating timeout on {operation}")
            raise TransientSyncError("Connection timeout")
        if self.mode == "failure" and write:
            logger.info(f"InMemoryRemoteClient: Simulating rejected {operation}")
            raise PermanentSyncError(self.error_message)


class InMemoryModuleHandler(BaseModuleHandler):
    """
    Module handler whose local store is a dict and whose field mapping is
    the identity.

    Args:
        module_id: Module key this handler serves
        client: Remote client (usually InMemoryRemoteClient)
        entity_map: Entity map repository
        remote_models: entity type -> remote model name
        import_guard: Shared import guard
        batch_enabled: Whether push_batch_creates() is offered to the engine
    """

    def __init__(
        self,
        module_id: str,
        client: RemoteClientPort,
        entity_map: EntityMapRepository,
        remote_models: Dict[str, str],
        import_guard: Optional[ImportGuard] = None,
        batch_enabled: bool = True,
    ):
        super().__init__(client, entity_map, import_guard)
        self.module_id = module_id
        self.remote_models = dict(remote_models)
        self.batch_enabled = batch_enabled
        self.local: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self._next_local_id = 1

    def supports_batch_creates(self) -> bool:
        return self.batch_enabled and super().supports_batch_creates()

    def load_local_data(self, entity_type: str, local_id: int) -> Dict[str, Any]:
        return dict(self.local.get(entity_type, {}).get(local_id, {}))

    def save_local_data(self, entity_type: str, data: Dict[str, Any], local_id: int) -> int:
        table = self.local.setdefault(entity_type, {})
        if not local_id:
            local_id = self._next_local_id
            while local_id in table:
                local_id += 1
            self._next_local_id = local_id + 1
        table[local_id] = dict(data)
        return local_id

    def delete_local_data(self, entity_type: str, local_id: int) -> bool:
        return self.local.get(entity_type, {}).pop(local_id, None) is not None

    def map_to_remote(self, entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return dict(data)

    def map_from_remote(self, entity_type: str, record: Dict[str, Any]) -> Dict[str, Any]:
        return {key: value for key, value in record.items() if key != "id"}
