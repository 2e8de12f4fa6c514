"""Unit tests for the entity map repository.

Tests bidirectional lookups, the bijection guarantee, batch lookups,
diff-scan helpers and the lookup cache.
"""

from datetime import timedelta

from erpsync.models import EntityMapEntry, utcnow
from erpsync.sync import entity_map as entity_map_module
from erpsync.sync.entity_map import EntityMapRepository, generate_sync_hash


class TestSyncHash:
    """Test content hashing for change detection."""

    def test_hash_ignores_key_order(self):
        """Test two dicts with the same content hash the same."""
        assert generate_sync_hash({"a": 1, "b": 2}) == generate_sync_hash({"b": 2, "a": 1})

    def test_hash_changes_with_content(self):
        """Test a changed value changes the hash."""
        assert generate_sync_hash({"a": 1}) != generate_sync_hash({"a": 2})

    def test_hash_is_sha256_hex(self):
        """Test the hash is a 64-character hex digest."""
        digest = generate_sync_hash({"name": "Chair"})
        assert len(digest) == 64
        int(digest, 16)


class TestLookups:
    """Test save and lookups in both directions."""

    def test_save_and_lookup_both_directions(self, entity_map):
        """Test a saved pair resolves local -> remote and remote -> local."""
        assert entity_map.save("catalog", "product", 10, 42, remote_model="product.product", sync_hash="h1")

        assert entity_map.get_remote_id("catalog", "product", 10) == 42
        assert entity_map.get_local_id("catalog", "product", 42) == 10

    def test_lookup_of_unmapped_entity(self, entity_map):
        """Test unmapped ids return None."""
        assert entity_map.get_remote_id("catalog", "product", 99) is None
        assert entity_map.get_local_id("catalog", "product", 99) is None

    def test_mappings_are_scoped_by_module_and_entity_type(self, entity_map):
        """Test the same local id maps independently per module and entity type."""
        entity_map.save("catalog", "product", 10, 42)
        entity_map.save("catalog", "category", 10, 43)
        entity_map.save("crm", "product", 10, 44)

        assert entity_map.get_remote_id("catalog", "product", 10) == 42
        assert entity_map.get_remote_id("catalog", "category", 10) == 43
        assert entity_map.get_remote_id("crm", "product", 10) == 44

    def test_mappings_are_scoped_by_tenant(self, db_session, entity_map):
        """Test another tenant does not see the mapping."""
        entity_map.save("catalog", "product", 10, 42)
        other_tenant = EntityMapRepository(db_session, tenant_id=2)

        assert other_tenant.get_remote_id("catalog", "product", 10) is None

    def test_batch_lookups(self, entity_map):
        """Test batch lookups return only existing mappings."""
        entity_map.save("catalog", "product", 10, 42)
        entity_map.save("catalog", "product", 11, 43)

        assert entity_map.get_remote_ids_batch("catalog", "product", [10, 11, 12]) == {10: 42, 11: 43}
        assert entity_map.get_local_ids_batch("catalog", "product", [42, 99]) == {42: 10}
        assert entity_map.get_remote_ids_batch("catalog", "product", []) == {}

    def test_batch_lookup_uses_cache_and_database(self, entity_map):
        """Test a batch mixing cached and uncached ids returns both."""
        entity_map.save("catalog", "product", 10, 42)
        entity_map.save("catalog", "product", 11, 43)
        entity_map.flush_cache()
        entity_map.get_remote_id("catalog", "product", 10)

        assert entity_map.get_remote_ids_batch("catalog", "product", [10, 11]) == {10: 42, 11: 43}


class TestBijection:
    """Test that one local id and one remote id map to each other only."""

    def test_save_updates_existing_local_mapping(self, db_session, entity_map):
        """Test re-saving a local id with a new remote id replaces the old pair."""
        entity_map.save("catalog", "product", 10, 42)
        entity_map.save("catalog", "product", 10, 50, sync_hash="h2")

        assert entity_map.get_remote_id("catalog", "product", 10) == 50
        assert entity_map.get_local_id("catalog", "product", 42) is None
        assert db_session.query(EntityMapEntry).count() == 1

    def test_remote_id_reassigned_to_new_local_entity(self, db_session, entity_map):
        """Test saving a remote id for a second local id removes the first pair."""
        entity_map.save("catalog", "product", 10, 42)
        entity_map.save("catalog", "product", 11, 42)

        assert entity_map.get_local_id("catalog", "product", 42) == 11
        assert entity_map.get_remote_id("catalog", "product", 10) is None
        assert db_session.query(EntityMapEntry).count() == 1

    def test_bijection_holds_from_a_fresh_repository(self, db_session, entity_map):
        """Test the reassignment is persisted, not only cached."""
        entity_map.save("catalog", "product", 10, 42)
        entity_map.save("catalog", "product", 11, 42)

        fresh = EntityMapRepository(db_session, tenant_id=1)
        assert fresh.get_local_id("catalog", "product", 42) == 11
        assert fresh.get_remote_id("catalog", "product", 10) is None

    def test_remove(self, entity_map):
        """Test removing a mapping clears both directions."""
        entity_map.save("catalog", "product", 10, 42)

        assert entity_map.remove("catalog", "product", 10) is True
        assert entity_map.get_remote_id("catalog", "product", 10) is None
        assert entity_map.get_local_id("catalog", "product", 42) is None
        assert entity_map.remove("catalog", "product", 10) is False


class TestDiffScanSupport:
    """Test helpers used by the diff-scan poller."""

    def test_mappings_for_local_ids(self, entity_map):
        """Test targeted mapping load returns remote id and hash."""
        entity_map.save("catalog", "product", 10, 42, sync_hash="h10")
        entity_map.save("catalog", "product", 11, 43, sync_hash="h11")

        mappings = entity_map.get_mappings_for_local_ids("catalog", "product", [10, 12])

        assert mappings == {10: {"remote_id": 42, "sync_hash": "h10"}}

    def test_module_entity_mappings(self, entity_map):
        """Test full mapping load for a module and entity type."""
        entity_map.save("catalog", "product", 10, 42, sync_hash="h10")
        entity_map.save("catalog", "category", 10, 43, sync_hash="c10")

        assert entity_map.get_module_entity_mappings("catalog", "product") == {
            10: {"remote_id": 42, "sync_hash": "h10"},
        }

    def test_stale_poll_mappings(self, entity_map):
        """Test only mappings polled before the cutoff are stale; never-polled rows are skipped."""
        entity_map.save("catalog", "product", 10, 42)
        entity_map.save("catalog", "product", 11, 43)
        entity_map.save("catalog", "product", 12, 44)

        first_scan = utcnow()
        entity_map.mark_polled("catalog", "product", [10, 11], first_scan)
        second_scan = first_scan + timedelta(minutes=5)
        entity_map.mark_polled("catalog", "product", [10], second_scan)

        assert entity_map.get_stale_poll_mappings("catalog", "product", second_scan) == {11: 43}


class TestCache:
    """Test the in-process lookup cache."""

    def test_lookups_are_cached_until_flushed(self, db_session, entity_map):
        """Test a cached lookup does not see out-of-band changes until flushed."""
        entity_map.save("catalog", "product", 10, 42)
        db_session.query(EntityMapEntry).update({EntityMapEntry.remote_id: 77})
        db_session.commit()

        assert entity_map.get_remote_id("catalog", "product", 10) == 42

        entity_map.flush_cache()
        assert entity_map.get_remote_id("catalog", "product", 10) == 77

    def test_invalidate_key(self, db_session, entity_map):
        """Test invalidating one key forces a database lookup for it."""
        entity_map.save("catalog", "product", 10, 42)
        db_session.query(EntityMapEntry).update({EntityMapEntry.remote_id: 77})
        db_session.commit()

        entity_map.invalidate_key("catalog", "product", 10)

        assert entity_map.get_remote_id("catalog", "product", 10) == 77

    def test_cache_is_bounded_and_keeps_pairs_consistent(self, entity_map, monkeypatch):
        """Test eviction keeps the newest half and never leaves one-way entries."""
        monkeypatch.setattr(entity_map_module, "MAX_CACHE_SIZE", 10)

        for local_id in range(1, 11):
            entity_map.save("catalog", "product", local_id, local_id + 100)

        assert entity_map.cache_size() <= 10
        for (module, entity_type, side, key_id), value in entity_map._cache.items():
            partner = "remote" if side == "local" else "local"
            assert entity_map._cache[(module, entity_type, partner, value)] == key_id

        # Evicted entries still resolve from the database
        assert entity_map.get_remote_id("catalog", "product", 1) == 101
