"""
Entity Map Repository - bidirectional local <-> remote identity map

Centralizes all database operations on the sync_entity_map table. Includes
an in-process lookup cache (LRU, explicitly invalidated) so a batch that
touches the same entity several times only hits the database once.
"""

import hashlib
import json
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import EntityMapEntry, utcnow

logger = logging.getLogger(__name__)

# Maximum number of ids in a single IN clause
BATCH_CHUNK_SIZE = 500

# Cache entries before LRU eviction kicks in
MAX_CACHE_SIZE = 5000

# Safety cap on rows returned by get_module_entity_mappings()
POLL_LIMIT = 50000

CacheKey = Tuple[str, str, str, int]


def generate_sync_hash(data: Dict[str, Any]) -> str:
    """
    Generate a SHA-256 hash of entity data for change detection.

    Keys are sorted so two payloads with the same content hash the same
    regardless of insertion order.

    Args:
        data: The data to hash

    Returns:
        64-character hex hash
    """
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _chunks(values: List[int], size: int) -> Iterable[List[int]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


class EntityMapRepository:
    """
    Repository for the sync_entity_map table, scoped to one tenant.

    The mapping is a bijection per (tenant, module, entity_type): saving a
    pair replaces any row that held either side of it.

    Usage:
        entity_map = EntityMapRepository(db, tenant_id=1)
        entity_map.save("catalog", "product", local_id=10, remote_id=42)
        entity_map.get_remote_id("catalog", "product", 10)   # 42
        entity_map.get_local_id("catalog", "product", 42)    # 10
    """

    def __init__(self, db: Session, tenant_id: int = 1):
        self.db = db
        self.tenant_id = tenant_id
        self._cache: "OrderedDict[CacheKey, Optional[int]]" = OrderedDict()

    # ------------------------------------------------------------------
    # Single lookups
    # ------------------------------------------------------------------

    def get_remote_id(self, module: str, entity_type: str, local_id: int) -> Optional[int]:
        """
        Get the remote id mapped to a local entity.

        Returns:
            The remote id, or None if not mapped
        """
        cache_key = (module, entity_type, "local", local_id)
        if cache_key in self._cache:
            self._cache.move_to_end(cache_key)
            return self._cache[cache_key]

        row = self._base_query(module, entity_type).filter(
            EntityMapEntry.local_id == local_id
        ).first()

        result = row.remote_id if row is not None else None
        self._cache[cache_key] = result
        if result is not None:
            self._cache[(module, entity_type, "remote", result)] = local_id
        self._evict_cache()

        return result

    def get_local_id(self, module: str, entity_type: str, remote_id: int) -> Optional[int]:
        """
        Get the local id mapped to a remote record.

        Returns:
            The local id, or None if not mapped
        """
        cache_key = (module, entity_type, "remote", remote_id)
        if cache_key in self._cache:
            self._cache.move_to_end(cache_key)
            return self._cache[cache_key]

        row = self._base_query(module, entity_type).filter(
            EntityMapEntry.remote_id == remote_id
        ).first()

        result = row.local_id if row is not None else None
        self._cache[cache_key] = result
        if result is not None:
            self._cache[(module, entity_type, "local", result)] = remote_id
        self._evict_cache()

        return result

    # ------------------------------------------------------------------
    # Batch lookups
    # ------------------------------------------------------------------

    def get_remote_ids_batch(self, module: str, entity_type: str, local_ids: List[int]) -> Dict[int, int]:
        """
        Batch-fetch remote ids for several local ids.

        Returns:
            Map of local_id -> remote_id for existing mappings
        """
        return self._lookup_batch(module, entity_type, "local", local_ids)

    def get_local_ids_batch(self, module: str, entity_type: str, remote_ids: List[int]) -> Dict[int, int]:
        """
        Batch-fetch local ids for several remote ids.

        Returns:
            Map of remote_id -> local_id for existing mappings
        """
        return self._lookup_batch(module, entity_type, "remote", remote_ids)

    def _lookup_batch(self, module: str, entity_type: str, side: str, ids: List[int]) -> Dict[int, int]:
        if not ids:
            return {}

        other = "remote" if side == "local" else "local"
        column = EntityMapEntry.local_id if side == "local" else EntityMapEntry.remote_id

        result: Dict[int, int] = {}
        uncached: List[int] = []
        for value in dict.fromkeys(int(i) for i in ids):
            cache_key = (module, entity_type, side, value)
            if cache_key in self._cache:
                if self._cache[cache_key] is not None:
                    result[value] = self._cache[cache_key]
            else:
                uncached.append(value)

        for chunk in _chunks(uncached, BATCH_CHUNK_SIZE):
            rows = self._base_query(module, entity_type).filter(column.in_(chunk)).all()
            for row in rows:
                key_id = row.local_id if side == "local" else row.remote_id
                partner_id = row.remote_id if side == "local" else row.local_id
                result[key_id] = partner_id
                self._cache[(module, entity_type, side, key_id)] = partner_id
                self._cache[(module, entity_type, other, partner_id)] = key_id

        self._evict_cache()
        return result

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(
        self,
        module: str,
        entity_type: str,
        local_id: int,
        remote_id: int,
        remote_model: str = "",
        sync_hash: str = "",
    ) -> bool:
        """
        Save (upsert) a mapping between a local entity and a remote record.

        A row already holding ``remote_id`` for a different local id is
        removed first, so the pair stays a bijection. An existing row for
        ``local_id`` is updated in place (remote id, model, hash refreshed).

        Returns:
            True on success, False if the write conflicted with a concurrent one
        """
        existing = self._base_query(module, entity_type).filter(
            EntityMapEntry.local_id == local_id
        ).first()
        conflict = self._base_query(module, entity_type).filter(
            EntityMapEntry.remote_id == remote_id,
            EntityMapEntry.local_id != local_id,
        ).first()

        stale_keys: List[CacheKey] = []
        try:
            if conflict is not None:
                stale_keys.append((module, entity_type, "local", conflict.local_id))
                self.db.delete(conflict)
                self.db.flush()

            now = utcnow()
            if existing is not None:
                if existing.remote_id != remote_id:
                    stale_keys.append((module, entity_type, "remote", existing.remote_id))
                existing.remote_id = remote_id
                existing.remote_model = remote_model
                existing.sync_hash = sync_hash
                existing.last_synced_at = now
            else:
                self.db.add(EntityMapEntry(
                    tenant_id=self.tenant_id,
                    module=module,
                    entity_type=entity_type,
                    local_id=local_id,
                    remote_id=remote_id,
                    remote_model=remote_model,
                    sync_hash=sync_hash,
                    last_synced_at=now,
                ))
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.error(
                f"Entity map save conflicted: {e}",
                extra={
                    "tenant_id": self.tenant_id,
                    "sync_module": module,
                    "entity_type": entity_type,
                    "local_id": local_id,
                    "remote_id": remote_id,
                }
            )
            self.flush_cache()
            return False

        for key in stale_keys:
            self._cache.pop(key, None)
        self._cache[(module, entity_type, "local", local_id)] = remote_id
        self._cache[(module, entity_type, "remote", remote_id)] = local_id
        self._evict_cache()

        if conflict is not None:
            logger.warning(
                "Entity map: remote id re-assigned to a different local entity",
                extra={
                    "tenant_id": self.tenant_id,
                    "sync_module": module,
                    "entity_type": entity_type,
                    "local_id": local_id,
                    "remote_id": remote_id,
                }
            )

        return True

    def remove(self, module: str, entity_type: str, local_id: int) -> bool:
        """
        Remove a mapping.

        Returns:
            True if a mapping was deleted
        """
        row = self._base_query(module, entity_type).filter(
            EntityMapEntry.local_id == local_id
        ).first()

        self._cache.pop((module, entity_type, "local", local_id), None)
        if row is None:
            return False

        self._cache.pop((module, entity_type, "remote", row.remote_id), None)
        self.db.delete(row)
        self.db.commit()
        return True

    # ------------------------------------------------------------------
    # Diff-scan support
    # ------------------------------------------------------------------

    def get_module_entity_mappings(self, module: str, entity_type: str) -> Dict[int, Dict[str, Any]]:
        """
        Get all mappings for a module and entity type (capped at POLL_LIMIT).

        Returns:
            Map of local_id -> {'remote_id': int, 'sync_hash': str}
        """
        rows = self._base_query(module, entity_type).limit(POLL_LIMIT).all()
        return {
            row.local_id: {"remote_id": row.remote_id, "sync_hash": row.sync_hash}
            for row in rows
        }

    def get_mappings_for_local_ids(
        self,
        module: str,
        entity_type: str,
        local_ids: List[int],
    ) -> Dict[int, Dict[str, Any]]:
        """
        Targeted variant of get_module_entity_mappings() for known local ids.

        Returns:
            Map of local_id -> {'remote_id': int, 'sync_hash': str}
        """
        result: Dict[int, Dict[str, Any]] = {}
        ids = list(dict.fromkeys(int(i) for i in local_ids if i))
        for chunk in _chunks(ids, BATCH_CHUNK_SIZE):
            rows = self._base_query(module, entity_type).filter(
                EntityMapEntry.local_id.in_(chunk)
            ).all()
            for row in rows:
                result[row.local_id] = {"remote_id": row.remote_id, "sync_hash": row.sync_hash}
        return result

    def mark_polled(self, module: str, entity_type: str, local_ids: List[int], timestamp: datetime) -> None:
        """Stamp last_polled_at on the mappings seen by a diff scan."""
        ids = list(dict.fromkeys(int(i) for i in local_ids if i))
        if not ids:
            return

        for chunk in _chunks(ids, BATCH_CHUNK_SIZE):
            self._base_query(module, entity_type).filter(
                EntityMapEntry.local_id.in_(chunk)
            ).update({EntityMapEntry.last_polled_at: timestamp}, synchronize_session=False)
        self.db.commit()

    def get_stale_poll_mappings(self, module: str, entity_type: str, before: datetime) -> Dict[int, int]:
        """
        Mappings polled before ``before`` - i.e. not seen by the current scan.

        Rows never polled (last_polled_at NULL) are excluded so the first
        scan after bootstrapping does not report everything as deleted.

        Returns:
            Map of local_id -> remote_id
        """
        rows = self._base_query(module, entity_type).filter(
            EntityMapEntry.last_polled_at.isnot(None),
            EntityMapEntry.last_polled_at < before,
        ).limit(POLL_LIMIT).all()
        return {row.local_id: row.remote_id for row in rows}

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def flush_cache(self) -> None:
        """Flush the in-process lookup cache."""
        self._cache.clear()

    def invalidate_key(self, module: str, entity_type: str, local_id: int) -> None:
        """Force the next get_remote_id() for this entity to hit the database."""
        self._cache.pop((module, entity_type, "local", local_id), None)

    def cache_size(self) -> int:
        return len(self._cache)

    def _evict_cache(self) -> None:
        """
        Keep the most recently used half of the cache once it overflows.

        Surviving entries whose bidirectional partner was evicted are
        dropped too, so a lookup never succeeds in one direction only.
        """
        if len(self._cache) <= MAX_CACHE_SIZE:
            return

        items = list(self._cache.items())[MAX_CACHE_SIZE // 2:]
        kept = OrderedDict(items)

        for (module, entity_type, side, key_id), value in items:
            if value is None:
                continue
            partner_side = "remote" if side == "local" else "local"
            if (module, entity_type, partner_side, value) not in kept:
                del kept[(module, entity_type, side, key_id)]

        self._cache = kept

    def _base_query(self, module: str, entity_type: str):
        return self.db.query(EntityMapEntry).filter(
            EntityMapEntry.tenant_id == self.tenant_id,
            EntityMapEntry.module == module,
            EntityMapEntry.entity_type == entity_type,
        )
