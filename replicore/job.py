"""
ReplicationJob - "start a run now" for one task.

The job does not own a timer: cron fires and manual requests both arrive
from outside and call run(). A run:
1. Checks the task exists and is enabled
2. Starts a RUNNING record (task -> REPLICATING)
3. Builds the run context (task snapshot, correlation key, local cluster)
4. Fans out to the remote clusters and completes the record
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from replicore.cluster import ClusterRegistry
from replicore.context import JobContextBuilder
from replicore.errors import NotFoundError, TaskDisabledError
from replicore.orchestrator import FanOutOrchestrator
from replicore.record_service import ReplicaRecordService
from replicore.repositories import ReplicaRecordDao, ReplicaRecordDetailDao, ReplicaTaskDao
from replicore.schedule import TimezoneLike
from replicore.schemas import ExecutionStatus, ReplicaRecord, utcnow
from replicore.store import DocumentStore
from replicore.transport import Transport


@dataclass(frozen=True)
class JobRunResult:
    """Outcome of one run."""
    record: ReplicaRecord
    status: ExecutionStatus
    error_reason: Optional[str]
    correlation_key: str

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def to_dict(self) -> dict:
        return {
            "record": self.record.to_dict(),
            "status": self.status.value,
            "error_reason": self.error_reason,
            "correlation_key": self.correlation_key,
        }


class ReplicationJob:
    """
    Runs a task once.

    Usage:
        job = ReplicationJob.create(store, registry, transport)
        result = job.run("task-1")
    """

    def __init__(
        self,
        task_dao: ReplicaTaskDao,
        record_service: ReplicaRecordService,
        context_builder: JobContextBuilder,
        orchestrator: FanOutOrchestrator,
        logger: Optional[logging.Logger] = None,
    ):
        self._task_dao = task_dao
        self._record_service = record_service
        self._context_builder = context_builder
        self._orchestrator = orchestrator
        self._logger = logger or logging.getLogger(__name__)

    @classmethod
    def create(
        cls,
        store: DocumentStore,
        cluster_registry: ClusterRegistry,
        transport: Transport,
        max_workers: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = utcnow,
        schedule_tz: TimezoneLike = None,
    ) -> "ReplicationJob":
        """Wire the default object graph on top of a store."""
        logger = logger or logging.getLogger("replicore")
        task_dao = ReplicaTaskDao(store)
        record_service = ReplicaRecordService(
            task_dao,
            ReplicaRecordDao(store),
            ReplicaRecordDetailDao(store),
            logger=logger,
            clock=clock,
            schedule_tz=schedule_tz,
        )
        orchestrator = FanOutOrchestrator(
            record_service, cluster_registry, transport, max_workers=max_workers, logger=logger
        )
        return cls(
            task_dao,
            record_service,
            JobContextBuilder(task_dao, cluster_registry),
            orchestrator,
            logger=logger,
        )

    @property
    def record_service(self) -> ReplicaRecordService:
        return self._record_service

    def run(self, task_key: str) -> JobRunResult:
        """
        Run a task now.

        Raises:
            NotFoundError: If the task does not exist
            TaskDisabledError: If the task is disabled (no record is created)
            ConflictError: If the task is already running
            IllegalTransitionError: If the task is a completed one-shot task
        """
        task = self._task_dao.find_by_key(task_key)
        if task is None:
            raise NotFoundError("task", task_key)
        if not task.enabled:
            raise TaskDisabledError(task_key)

        record = self._record_service.start_new_record(task_key)
        # A REPLICATING task rejects updates, so this snapshot is the task as started
        try:
            context = self._context_builder.build(task_key)
        except Exception as e:
            self._record_service.abort_record(record.id, f"run context unavailable: {e}")
            raise
        self._logger.info(
            f"replication of task [{task_key}] started, {len(context.snapshot.remote_clusters)} target(s)",
            extra=context.log_extra(record_id=record.id, event="job.start"),
        )

        status, reason = self._orchestrator.execute(context, record)
        finished = self._record_service.get_record_by_id(record.id) or record
        return JobRunResult(
            record=finished,
            status=status,
            error_reason=reason,
            correlation_key=context.correlation_key,
        )
