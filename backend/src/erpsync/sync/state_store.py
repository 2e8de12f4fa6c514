"""Keyed JSON state persistence backed by the sync_state table."""

import copy
from typing import Any, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from ..models import SyncState, utcnow


class StateStore:
    """
    Read/write small JSON blobs by key.

    Keys are namespaced per tenant (``{key}:{tenant_id}``) so multi-site
    deployments keep separate breaker tables. Writing an empty value
    deletes the row.
    """

    def __init__(self, db: Session, tenant_id: int = 1):
        self.db = db
        self.tenant_id = tenant_id

    def _key(self, key: str) -> str:
        return f"{key}:{self.tenant_id}"

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        row = self.db.get(SyncState, self._key(key))
        if row is None:
            return default
        return copy.deepcopy(row.value)

    def set(self, key: str, value: Any) -> None:
        if not value:
            self.delete(key)
            return

        row = self.db.get(SyncState, self._key(key))
        if row is None:
            self.db.add(SyncState(key=self._key(key), value=copy.deepcopy(value)))
        else:
            row.value = copy.deepcopy(value)
            row.updated_at = utcnow()
            flag_modified(row, "value")
        self.db.commit()

    def delete(self, key: str) -> None:
        row = self.db.get(SyncState, self._key(key))
        if row is not None:
            self.db.delete(row)
            self.db.commit()
