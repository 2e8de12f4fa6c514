"""Unit tests for the sync queue repository.

Tests deduplicating enqueue, atomic claiming, outcome transitions and
operator/maintenance actions against the SQLite test database.
"""

import json
import pytest
from datetime import timedelta

from erpsync.config import Settings
from erpsync.connectors.ports import ErrorKind
from erpsync.models import utcnow
from erpsync.sync.queue import QueueError, SyncQueueRepository


def queue_at(db_session, settings, offset: timedelta, tenant_id: int = 1) -> SyncQueueRepository:
    """Queue repository whose clock runs ``offset`` ahead of real time."""
    return SyncQueueRepository(
        db_session,
        tenant_id=tenant_id,
        settings=settings,
        clock=lambda: utcnow() + offset,
    )


class TestEnqueue:
    """Test job creation and deduplication."""

    def test_push_creates_pending_job(self, queue):
        """Test push() stores a pending local_to_remote job with its payload."""
        job_id = queue.push("catalog", "product", "create", local_id=10, payload={"name": "Chair"})

        job = queue.get(job_id)
        assert job.status == "pending"
        assert job.direction == "local_to_remote"
        assert job.action == "create"
        assert job.local_id == 10
        assert job.remote_id == 0
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.correlation_id
        assert json.loads(job.payload) == {"name": "Chair"}

    def test_duplicate_pending_job_is_refreshed_in_place(self, queue):
        """Test a second enqueue for the same entity updates the pending job."""
        first = queue.push("catalog", "product", "update", local_id=10, payload={"price": 1})
        second = queue.push("catalog", "product", "update", local_id=10, payload={"price": 2}, priority=2)

        assert first == second
        job = queue.get(first)
        assert json.loads(job.payload) == {"price": 2}
        assert job.priority == 2
        assert queue.get_stats()["total"] == 1

    def test_dedup_records_newly_known_remote_id(self, queue):
        """Test a duplicate enqueue fills in a remote id the pending job lacked."""
        first = queue.push("catalog", "product", "update", local_id=10)
        queue.push("catalog", "product", "update", local_id=10, remote_id=42)

        assert queue.get(first).remote_id == 42

    def test_dedup_only_matches_pending_jobs(self, queue):
        """Test a job already claimed does not absorb a new enqueue."""
        first = queue.push("catalog", "product", "update", local_id=10)
        queue.claim_due(10)

        second = queue.push("catalog", "product", "update", local_id=10)

        assert second != first
        assert queue.get(second).status == "pending"

    def test_dedup_distinguishes_actions(self, queue):
        """Test create and update jobs for the same entity are kept apart."""
        create_id = queue.push("catalog", "product", "create", local_id=10)
        update_id = queue.push("catalog", "product", "update", local_id=10)

        assert create_id != update_id

    def test_pull_dedup_uses_remote_id_when_local_id_unknown(self, queue):
        """Test pulls of unmapped remote records deduplicate on remote id."""
        first = queue.pull("catalog", "product", "update", remote_id=500)
        again = queue.pull("catalog", "product", "update", remote_id=500)
        other = queue.pull("catalog", "product", "update", remote_id=501)

        assert first == again
        assert other != first
        assert queue.get(first).direction == "remote_to_local"

    @pytest.mark.parametrize("module,entity_type,action,direction", [
        ("", "product", "create", "local_to_remote"),
        ("catalog", " ", "create", "local_to_remote"),
        ("catalog", "product", "upsert", "local_to_remote"),
        ("catalog", "product", "create", "sideways"),
    ])
    def test_invalid_arguments_raise_queue_error(self, queue, module, entity_type, action, direction):
        """Test enqueue rejects empty keys and unknown actions/directions."""
        with pytest.raises(QueueError):
            queue.enqueue(module, entity_type, action, direction, local_id=1)

    def test_priority_is_clamped(self, queue):
        """Test priorities outside 1-10 are clamped."""
        low = queue.push("catalog", "product", "create", local_id=1, priority=0)
        high = queue.push("catalog", "product", "create", local_id=2, priority=99)

        assert queue.get(low).priority == 1
        assert queue.get(high).priority == 10

    def test_push_applies_configured_debounce(self, db_session):
        """Test pushed jobs are not due until the debounce window passes."""
        queue = SyncQueueRepository(db_session, tenant_id=1, settings=Settings(SYNC_DEBOUNCE_SECONDS=5))
        job_id = queue.push("catalog", "product", "update", local_id=10)

        assert queue.get(job_id).scheduled_at is not None
        assert queue.claim_due(10) == []
        assert queue.peek_due(10) == []

    def test_tenant_id_falls_back_to_session_info(self, db_session, test_settings):
        """Test a repository without tenant_id uses the tenant-scoped session's tenant."""
        db_session.info["tenant_id"] = 7
        try:
            queue = SyncQueueRepository(db_session, settings=test_settings)
            assert queue.tenant_id == 7
        finally:
            db_session.info.pop("tenant_id")


class TestClaim:
    """Test atomic claiming of due jobs."""

    def test_claim_orders_by_priority_then_age(self, queue):
        """Test lower priority values run first, ties by enqueue order."""
        a = queue.push("catalog", "product", "create", local_id=1, priority=5)
        b = queue.push("catalog", "product", "create", local_id=2, priority=1)
        c = queue.push("catalog", "product", "create", local_id=3, priority=5)

        claimed = queue.claim_due(10)

        assert [job.id for job in claimed] == [b, a, c]
        assert all(job.status == "processing" for job in claimed)

    def test_claim_respects_limit(self, queue):
        """Test no more than ``limit`` jobs are claimed."""
        for local_id in range(1, 6):
            queue.push("catalog", "product", "create", local_id=local_id)

        assert len(queue.claim_due(3)) == 3
        assert queue.get_stats()["pending"] == 2

    def test_claim_skips_jobs_scheduled_in_the_future(self, queue):
        """Test delayed jobs are not due yet."""
        queue.enqueue("catalog", "product", "create", "local_to_remote", local_id=1, delay_seconds=60)

        assert queue.claim_due(10) == []

    def test_claim_filters_and_excludes_modules(self, queue):
        """Test module filter and exclusion list."""
        queue.push("catalog", "product", "create", local_id=1)
        crm_id = queue.push("crm", "contact", "create", local_id=1)

        assert queue.claim_due(10, module="nothing") == []

        claimed = queue.claim_due(10, exclude_modules=["catalog"])
        assert [job.id for job in claimed] == [crm_id]

    def test_claimed_job_is_never_claimed_twice(self, db_session, test_settings, queue):
        """Test two repositories never receive the same job."""
        other = SyncQueueRepository(db_session, tenant_id=1, settings=test_settings)
        job_id = queue.push("catalog", "product", "create", local_id=1)

        first = queue.claim_due(10)
        second = other.claim_due(10)

        assert [job.id for job in first] == [job_id]
        assert second == []

    def test_compare_and_set_fails_after_concurrent_claim(self, db_session, test_settings, queue):
        """Test the conditional update affects nothing once another worker claimed the row."""
        other = SyncQueueRepository(db_session, tenant_id=1, settings=test_settings)
        job_id = queue.push("catalog", "product", "create", local_id=1)

        other.claim_due(1)

        assert queue._try_claim(job_id, utcnow()) is False

    def test_peek_does_not_claim(self, queue):
        """Test peek_due() leaves jobs pending."""
        job_id = queue.push("catalog", "product", "create", local_id=1)

        peeked = queue.peek_due(10)

        assert [job.id for job in peeked] == [job_id]
        assert queue.get(job_id).status == "pending"

    def test_tenants_are_isolated(self, db_session, test_settings, queue):
        """Test a repository only sees its own tenant's jobs."""
        queue.push("catalog", "product", "create", local_id=1)
        other_tenant = SyncQueueRepository(db_session, tenant_id=2, settings=test_settings)

        assert other_tenant.claim_due(10) == []
        assert other_tenant.get_stats()["total"] == 0


class TestOutcomeTransitions:
    """Test done / retry / dead / failed / release transitions."""

    def test_mark_done(self, queue):
        """Test a processing job can be completed once."""
        job_id = queue.push("catalog", "product", "create", local_id=1)
        queue.claim_due(1)

        assert queue.mark_done(job_id) is True
        assert queue.get(job_id).status == "done"
        assert queue.mark_done(job_id) is False

    def test_transient_failure_schedules_retry_with_backoff(self, db_session):
        """Test a transient failure returns the job to pending with a delay."""
        queue = SyncQueueRepository(db_session, tenant_id=1, settings=Settings(
            SYNC_DEBOUNCE_SECONDS=0, SYNC_RETRY_BACKOFF="fixed", SYNC_RETRY_BASE_SECONDS=60,
        ))
        job_id = queue.push("catalog", "product", "update", local_id=1)
        queue.claim_due(1)
        before = utcnow()

        status = queue.mark_retry(job_id, "Connection timeout", ErrorKind.TRANSIENT)

        job = queue.get(job_id)
        assert status == "pending"
        assert job.status == "pending"
        assert job.attempts == 1
        assert job.last_error == "Connection timeout"
        assert job.scheduled_at >= before + timedelta(seconds=59)
        assert queue.claim_due(10) == []

    def test_exponential_backoff_delay(self, queue):
        """Test exponential delay is base * 2^attempts plus up to base of jitter."""
        for _ in range(20):
            delay = queue.compute_retry_delay(2)
            assert 240 <= delay <= 300

    def test_fixed_backoff_delay(self, db_session):
        """Test fixed delay is always the base."""
        queue = SyncQueueRepository(db_session, tenant_id=1, settings=Settings(
            SYNC_RETRY_BACKOFF="fixed", SYNC_RETRY_BASE_SECONDS=30,
        ))

        assert queue.compute_retry_delay(1) == 30
        assert queue.compute_retry_delay(5) == 30

    def test_dead_lettered_when_attempts_exhausted(self, db_session, test_settings, queue):
        """Test the last allowed transient failure dead-letters the job."""
        job_id = queue.enqueue("catalog", "product", "update", "local_to_remote", local_id=1, max_attempts=2)
        queue.claim_due(1)
        assert queue.mark_retry(job_id, "timeout") == "pending"

        later = queue_at(db_session, test_settings, timedelta(hours=2))
        assert [job.id for job in later.claim_due(1)] == [job_id]
        assert later.mark_retry(job_id, "timeout") == "dead"

        job = queue.get(job_id)
        assert job.status == "dead"
        assert job.attempts == 2
        assert job.attempts <= job.max_attempts

    def test_permanent_failure_dead_letters_immediately(self, queue):
        """Test a permanent error never retries."""
        job_id = queue.push("catalog", "product", "create", local_id=1)
        queue.claim_due(1)

        assert queue.mark_retry(job_id, "Invalid field", ErrorKind.PERMANENT) == "dead"
        job = queue.get(job_id)
        assert job.status == "dead"
        assert job.attempts == 1

    def test_retry_persists_remote_id_created_before_failure(self, queue):
        """Test a remote id reported with the failure is kept for the retry."""
        job_id = queue.push("catalog", "product", "create", local_id=1)
        queue.claim_due(1)

        queue.mark_retry(job_id, "Mapping save failed", ErrorKind.TRANSIENT, entity_id=777)

        assert queue.get(job_id).remote_id == 777

    def test_mark_retry_ignores_job_not_processing(self, queue):
        """Test mark_retry on a pending job is a no-op."""
        job_id = queue.push("catalog", "product", "create", local_id=1)

        assert queue.mark_retry(job_id, "boom") is None
        assert queue.get(job_id).attempts == 0

    def test_finished_job_is_immutable(self, queue):
        """Test a done job can not be moved by any transition."""
        job_id = queue.push("catalog", "product", "create", local_id=1)
        queue.claim_due(1)
        queue.mark_done(job_id)

        assert queue.mark_retry(job_id, "late failure") is None
        assert queue.mark_failed(job_id, "late failure") is False
        assert queue.mark_dead(job_id, "late failure") is False
        assert queue.release(job_id) is False
        assert queue.get(job_id).status == "done"

    def test_mark_dead_from_pending(self, queue):
        """Test direct dead-lettering consumes one attempt."""
        job_id = queue.push("catalog", "product", "create", local_id=1)

        assert queue.mark_dead(job_id, "Operator discarded") is True
        job = queue.get(job_id)
        assert job.status == "dead"
        assert job.attempts == 1

    def test_mark_failed(self, queue):
        """Test unroutable jobs are parked as failed."""
        job_id = queue.push("ghost", "thing", "create", local_id=1)
        queue.claim_due(1)

        assert queue.mark_failed(job_id, "Module not registered: ghost") is True
        job = queue.get(job_id)
        assert job.status == "failed"
        assert job.last_error == "Module not registered: ghost"

    def test_release_does_not_consume_attempt(self, queue):
        """Test a released job goes back to pending untouched."""
        job_id = queue.push("catalog", "product", "create", local_id=1)
        queue.claim_due(1)

        assert queue.release(job_id) is True
        job = queue.get(job_id)
        assert job.status == "pending"
        assert job.attempts == 0


class TestMaintenance:
    """Test operator retry, cancel, stale recovery, cleanup and reads."""

    def test_retry_failed_resets_failed_and_dead_jobs(self, queue):
        """Test retry_failed() returns failed and dead jobs to pending."""
        failed_id = queue.push("ghost", "thing", "create", local_id=1)
        dead_id = queue.push("catalog", "product", "create", local_id=2)
        queue.claim_due(10)
        queue.mark_failed(failed_id, "Module not registered: ghost")
        queue.mark_retry(dead_id, "Invalid field", ErrorKind.PERMANENT)

        assert queue.retry_failed() == 2

        for job_id in (failed_id, dead_id):
            job = queue.get(job_id)
            assert job.status == "pending"
            assert job.attempts == 0
            assert job.last_error is None

    def test_retry_failed_by_module(self, queue):
        """Test retry_failed(module) only touches that module."""
        catalog_id = queue.push("catalog", "product", "create", local_id=1)
        crm_id = queue.push("crm", "contact", "create", local_id=1)
        queue.claim_due(10)
        queue.mark_dead(catalog_id, "x")
        queue.mark_dead(crm_id, "x")

        assert queue.retry_failed(module="crm") == 1
        assert queue.get(crm_id).status == "pending"
        assert queue.get(catalog_id).status == "dead"

    def test_retry_single_job(self, queue):
        """Test retry_job() resets one dead job."""
        job_id = queue.push("catalog", "product", "create", local_id=1)
        queue.mark_dead(job_id, "x")

        assert queue.retry_job(job_id) is True
        assert queue.get(job_id).status == "pending"

    def test_cancel_only_pending(self, queue):
        """Test cancel deletes pending jobs and refuses claimed ones."""
        claimed_id = queue.push("catalog", "product", "create", local_id=1, priority=1)
        pending_id = queue.push("catalog", "product", "create", local_id=2, priority=2)
        queue.claim_due(1)

        assert queue.cancel(claimed_id) is False
        assert queue.cancel(pending_id) is True
        assert queue.get(pending_id) is None
        assert queue.get(claimed_id).status == "processing"

    def test_recover_stale_processing(self, db_session, test_settings, queue):
        """Test jobs stuck in processing past the timeout are requeued."""
        job_id = queue.push("catalog", "product", "create", local_id=1)
        queue.claim_due(1)

        assert queue.recover_stale_processing(600) == 0

        later = queue_at(db_session, test_settings, timedelta(minutes=20))
        assert later.recover_stale_processing(600) == 1

        job = queue.get(job_id)
        assert job.status == "pending"
        assert job.attempts == 1

    def test_recover_stale_dead_letters_exhausted_job(self, db_session, test_settings, queue):
        """Test a job that keeps crashing its worker is eventually dead-lettered."""
        job_id = queue.enqueue("catalog", "product", "create", "local_to_remote", local_id=1, max_attempts=1)
        queue.claim_due(1)

        later = queue_at(db_session, test_settings, timedelta(minutes=20))
        later.recover_stale_processing(600)

        assert queue.get(job_id).status == "dead"

    def test_cleanup_deletes_old_finished_jobs(self, db_session, test_settings, queue):
        """Test cleanup removes finished jobs past retention and keeps pending ones."""
        done_id = queue.push("catalog", "product", "create", local_id=1, priority=1)
        pending_id = queue.push("catalog", "product", "create", local_id=2, priority=2)
        queue.claim_due(1)
        queue.mark_done(done_id)

        assert queue.cleanup(7) == 0

        later = queue_at(db_session, test_settings, timedelta(days=8))
        assert later.cleanup(7) == 1
        assert queue.get(done_id) is None
        assert queue.get(pending_id) is not None

    def test_get_stats(self, queue):
        """Test counts per status plus total."""
        done_id = queue.push("catalog", "product", "create", local_id=1, priority=1)
        queue.push("catalog", "product", "create", local_id=2, priority=2)
        queue.claim_due(1)
        queue.mark_done(done_id)

        stats = queue.get_stats()
        assert stats == {
            "pending": 1,
            "processing": 0,
            "done": 1,
            "failed": 0,
            "dead": 0,
            "total": 2,
        }

    def test_get_pending(self, queue):
        """Test pending jobs of a module, optionally filtered by entity type."""
        product_id = queue.push("catalog", "product", "create", local_id=1)
        category_id = queue.push("catalog", "category", "create", local_id=1)
        queue.push("crm", "contact", "create", local_id=1)

        assert [job.id for job in queue.get_pending("catalog")] == [product_id, category_id]
        assert [job.id for job in queue.get_pending("catalog", "category")] == [category_id]
