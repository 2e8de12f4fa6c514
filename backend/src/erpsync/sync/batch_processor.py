"""
Batch Create Processor - bulk local-to-remote creates

Groups claimed ``local_to_remote`` create jobs by module and entity type and
sends each group to the module handler in a single push_batch_creates()
call, instead of one remote round-trip per job.

Only modules whose handler implements push_batch_creates() are batched.
Groups of one, unregistered modules and every other job are left for the
engine's per-job dispatch.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..connectors.ports import ErrorKind, ModuleHandler, PayloadDecodeError, SyncResult
from .entity_map import EntityMapRepository, generate_sync_hash
from .queue import QueueJob, SyncQueueRepository, decode_payload

logger = logging.getLogger(__name__)

ModuleResolver = Callable[[str], Optional[ModuleHandler]]
FailureHandler = Callable[[QueueJob, str, ErrorKind, Optional[int]], None]
GroupKey = Tuple[str, str]


@dataclass
class BatchOutcome:
    """
    Result of one BatchCreateProcessor.process() call.

    Attributes:
        results: SyncResult per job sent to (or rejected before) the bulk call
        handled_ids: Every job id the processor took care of, including
                     superseded duplicates; the engine skips these
        successes: Successful jobs per module
        failures: Failed jobs per module
        processed: Total successful creates
    """
    results: Dict[int, SyncResult] = field(default_factory=dict)
    handled_ids: Set[int] = field(default_factory=set)
    successes: Dict[str, int] = field(default_factory=dict)
    failures: Dict[str, int] = field(default_factory=dict)
    processed: int = 0

    def record_success(self, job: QueueJob, result: SyncResult) -> None:
        self.results[job.id] = result
        self.handled_ids.add(job.id)
        self.successes[job.module] = self.successes.get(job.module, 0) + 1
        self.processed += 1

    def record_failure(self, job: QueueJob, result: SyncResult) -> None:
        self.results[job.id] = result
        self.handled_ids.add(job.id)
        self.failures[job.module] = self.failures.get(job.module, 0) + 1


class BatchCreateProcessor:
    """
    Sends groups of create jobs through one bulk handler call.

    Args:
        module_resolver: Module key -> handler (None when unregistered)
        queue: Queue repository used to close jobs
        entity_map: Entity map receiving the new local -> remote pairs
        failure_handler: Called as failure_handler(job, message, error_kind,
                         entity_id) for every failed job; the engine routes
                         it to the queue's retry policy
    """

    def __init__(
        self,
        module_resolver: ModuleResolver,
        queue: SyncQueueRepository,
        entity_map: EntityMapRepository,
        failure_handler: FailureHandler,
    ):
        self.module_resolver = module_resolver
        self.queue = queue
        self.entity_map = entity_map
        self.failure_handler = failure_handler

    def group(self, jobs: List[QueueJob]) -> "OrderedDict[GroupKey, List[QueueJob]]":
        """
        Group batchable jobs by (module, entity_type), in first-seen order.

        Only jobs whose module resolves to a handler that supports batch
        creates are included. Groups are returned before deduplication.
        """
        groups: "OrderedDict[GroupKey, List[QueueJob]]" = OrderedDict()
        supported: Dict[str, bool] = {}

        for job in jobs:
            if not job.is_batchable:
                continue
            if job.module not in supported:
                handler = self.module_resolver(job.module)
                supported[job.module] = handler is not None and handler.supports_batch_creates()
            if not supported[job.module]:
                continue
            groups.setdefault((job.module, job.entity_type), []).append(job)

        return groups

    @staticmethod
    def deduplicate(group: List[QueueJob]) -> Tuple[List[QueueJob], Dict[int, int]]:
        """
        Keep one job per local id; the last job wins.

        The survivor takes the position of the first job for that local id.
        Jobs without a local id are never merged.

        Returns:
            (survivors, {superseded_job_id: surviving_job_id})
        """
        survivors: List[QueueJob] = []
        index_by_local: Dict[int, int] = {}
        superseded: Dict[int, int] = {}

        for job in group:
            if job.local_id > 0 and job.local_id in index_by_local:
                idx = index_by_local[job.local_id]
                superseded[survivors[idx].id] = job.id
                survivors[idx] = job
                continue
            if job.local_id > 0:
                index_by_local[job.local_id] = len(survivors)
            survivors.append(job)

        # A job superseded by one that was itself superseded points at the final survivor
        final_ids = {job.id for job in survivors}
        for old_id, new_id in superseded.items():
            while new_id not in final_ids:
                new_id = superseded[new_id]
            superseded[old_id] = new_id

        return survivors, superseded

    def process(self, jobs: List[QueueJob]) -> BatchOutcome:
        """
        Batch-create eligible jobs from a claimed page.

        Args:
            jobs: Claimed jobs (status processing)

        Returns:
            BatchOutcome; jobs absent from handled_ids still need per-job dispatch
        """
        outcome = BatchOutcome()

        for (module, entity_type), group in self.group(jobs).items():
            survivors, superseded = self.deduplicate(group)
            if len(survivors) < 2:
                continue

            for old_id, new_id in superseded.items():
                self.queue.mark_superseded(old_id, new_id)
                outcome.handled_ids.add(old_id)

            self._process_group(module, entity_type, survivors, outcome)

        if outcome.processed:
            logger.info(
                "Batch-created records",
                extra={"count": outcome.processed}
            )
        return outcome

    def _process_group(
        self,
        module: str,
        entity_type: str,
        group: List[QueueJob],
        outcome: BatchOutcome,
    ) -> None:
        handler = self.module_resolver(module)

        items = []
        sendable: List[Tuple[QueueJob, dict]] = []
        for job in group:
            try:
                payload = decode_payload(job)
            except PayloadDecodeError as e:
                self._fail(job, str(e), ErrorKind.PERMANENT, None, outcome)
                continue
            items.append({"local_id": job.local_id, "payload": payload})
            sendable.append((job, payload))

        if not sendable:
            return

        try:
            results = handler.push_batch_creates(entity_type, items) or {}
        except Exception as e:
            logger.error(
                f"Batch create call failed: {e}",
                exc_info=True,
                extra={"sync_module": module, "entity_type": entity_type, "count": len(sendable)}
            )
            for job, _ in sendable:
                self._fail(job, f"Batch create failed: {e}", ErrorKind.TRANSIENT, None, outcome)
            return

        remote_model = handler.get_remote_model(entity_type)
        for job, payload in sendable:
            result = results.get(job.local_id)
            if result is None:
                self._fail(job, "No result from batch", ErrorKind.TRANSIENT, None, outcome)
                continue

            if not result.success:
                self._fail(
                    job,
                    result.message or "Batch create failed",
                    result.error_kind or ErrorKind.TRANSIENT,
                    result.entity_id,
                    outcome,
                )
                continue

            if result.entity_id and job.local_id:
                self.entity_map.save(
                    module,
                    entity_type,
                    job.local_id,
                    result.entity_id,
                    remote_model=remote_model,
                    sync_hash=generate_sync_hash(payload),
                )
            self.queue.mark_done(job.id)
            outcome.record_success(job, result)

    def _fail(
        self,
        job: QueueJob,
        message: str,
        error_kind: ErrorKind,
        entity_id: Optional[int],
        outcome: BatchOutcome,
    ) -> None:
        self.failure_handler(job, message, error_kind, entity_id)
        outcome.record_failure(job, SyncResult.failure(message, error_kind, entity_id))
