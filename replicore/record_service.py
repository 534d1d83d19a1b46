"""
ReplicaRecordService - lifecycle of records and details.

This service is the only writer of records and details, and the only place
that moves a task between WAITING/COMPLETED and REPLICATING. All status
changes go through the tables in replicore.state_machine.

Lifecycle of one run:
1. start_new_record: CAS the task to REPLICATING, insert a RUNNING record
2. initial_record_detail: one RUNNING detail per remote cluster
3. update_record_detail_progress: overwrite a detail's counters (last writer wins)
4. complete_record_detail: terminal status, final progress, end time
5. complete_record: terminal record, task back to WAITING (cron) or COMPLETED

No cross-collection transaction is assumed: start_new_record restores the
task's previous state if the record insert fails.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Optional

from replicore.errors import ConflictError, IllegalTransitionError, NotFoundError
from replicore.repositories import (
    ReplicaRecordDao,
    ReplicaRecordDetailDao,
    ReplicaTaskDao,
    dt_value,
)
from replicore.schedule import TimezoneLike, is_cron_task, next_trigger_time
from replicore.schemas import (
    ExecutionResult,
    ExecutionStatus,
    Page,
    PageRequest,
    RecordDetailInitialRequest,
    ReplicaProgress,
    ReplicaRecord,
    ReplicaRecordDetail,
    ReplicaRecordDetailListOption,
    ReplicaTaskRecordInfo,
    ReplicationStatus,
    utcnow,
)
from replicore.state_machine import (
    check_execution_transition,
    completion_event,
    next_task_status,
    start_event,
)

NO_TARGETS_REASON = "no replication targets"


class ReplicaRecordService:
    """
    Creates, updates and finalizes records and details.

    Usage:
        service = ReplicaRecordService(task_dao, record_dao, detail_dao, logger=logger)
        record = service.start_new_record("task-1")
        detail = service.initial_record_detail(RecordDetailInitialRequest(...))
        service.complete_record_detail(detail.id, ExecutionResult.success(progress))
        status, reason = service.aggregate_record_status(record.id)
        service.complete_record(record.id, status, reason)
    """

    def __init__(
        self,
        task_dao: ReplicaTaskDao,
        record_dao: ReplicaRecordDao,
        detail_dao: ReplicaRecordDetailDao,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = utcnow,
        schedule_tz: TimezoneLike = None,
    ):
        """
        Initialize the service.

        Args:
            task_dao / record_dao / detail_dao: Persistence for the three entities
            logger: Logger for lifecycle events (default: module logger)
            clock: Returns the current UTC-aware time
            schedule_tz: Timezone cron expressions are evaluated in
        """
        self._task_dao = task_dao
        self._record_dao = record_dao
        self._detail_dao = detail_dao
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._schedule_tz = schedule_tz

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def start_new_record(self, task_key: str) -> ReplicaRecord:
        """
        Start a run: move the task to REPLICATING and create a RUNNING record.

        The task update is a compare-and-swap on its status, so of two
        concurrent starts exactly one wins.

        Raises:
            NotFoundError: If the task does not exist
            ConflictError: If the task is already replicating, another start
                won the race, or an active record already exists
            IllegalTransitionError: If the task cannot start (completed one-shot task)
            ScheduleError: If a cron task's expression is malformed
        """
        task = self._task_dao.find_by_key(task_key)
        if task is None:
            raise NotFoundError("task", task_key)
        if task.status == ReplicationStatus.REPLICATING:
            raise ConflictError(f"task [{task_key}] is already replicating")

        cron = is_cron_task(task)
        now = self._clock()
        started = task.with_changes(
            status=next_task_status(task.status, start_event(cron)),
            last_execution_time=now,
            last_execution_status=ExecutionStatus.RUNNING,
            next_execution_time=(
                next_trigger_time(task.cron_expression, now, self._schedule_tz)
                if cron else task.next_execution_time
            ),
        )
        if not self._task_dao.compare_and_set_status(started, {task.status}, unchanged_since=task):
            raise ConflictError(f"task [{task_key}] was started or modified concurrently")

        try:
            record = self.initial_record(task_key, start_time=now)
        except Exception:
            self._task_dao.compare_and_set_status(task, {ReplicationStatus.REPLICATING})
            raise

        self._logger.info(
            f"start record [{record.id}] for task [{task_key}]",
            extra={"task_key": task_key, "record_id": record.id, "event": "record.start"},
        )
        return record

    def initial_record(self, task_key: str, start_time: Optional[datetime] = None) -> ReplicaRecord:
        """
        Insert a RUNNING record for a task.

        Raises:
            ConflictError: If the task already has a RUNNING record
        """
        record = ReplicaRecord(
            id="",
            task_key=task_key,
            status=ExecutionStatus.RUNNING,
            start_time=start_time or self._clock(),
        )
        try:
            return self._record_dao.insert(record)
        except ConflictError as e:
            self._logger.warning(f"init record [{task_key}] error: [{e}]")
            raise

    def complete_record(
        self,
        record_id: str,
        status: ExecutionStatus,
        error_reason: Optional[str] = None,
    ) -> ReplicaRecord:
        """
        Finalize a record and update its task.

        Sets the record's terminal status and end time, the task's last
        execution status, and the task's status (WAITING for cron tasks, with
        the next execution time recomputed; COMPLETED otherwise).

        Raises:
            NotFoundError: If the record or its task does not exist
            IllegalTransitionError: If the record is already terminal, the
                status is not terminal, or a detail is still running
        """
        record = self._record_dao.find_by_id(record_id)
        if record is None:
            raise NotFoundError("record", record_id)
        check_execution_transition("record", record.status, status)
        running = [d.id for d in self._detail_dao.list_by_record_id(record_id)
                   if d.status == ExecutionStatus.RUNNING]
        if running:
            raise IllegalTransitionError(
                "record", f"{record.status.value} (details still running: {', '.join(running)})", status.value
            )

        task = self._task_dao.find_by_key(record.task_key)
        if task is None:
            raise NotFoundError("task", record.task_key)

        cron = is_cron_task(task)
        now = self._clock()
        finished_task = task.with_changes(
            status=next_task_status(task.status, completion_event(cron)),
            last_execution_status=status,
            next_execution_time=(
                next_trigger_time(task.cron_expression, now, self._schedule_tz)
                if cron else task.next_execution_time
            ),
        )
        finished = record.with_changes(
            status=status,
            end_time=now,
            error_reason=error_reason if status == ExecutionStatus.FAILED else None,
        )
        finished = self._record_dao.save(finished)
        if not self._task_dao.compare_and_set_status(finished_task, {ReplicationStatus.REPLICATING}):
            raise ConflictError(f"task [{task.key}] changed status while record [{record_id}] completed")

        self._logger.info(
            f"complete record [{record_id}], status from [{record.status.value}] to [{status.value}].",
            extra={"task_key": task.key, "record_id": record_id, "event": "record.complete"},
        )
        return finished

    def abort_record(self, record_id: str, error_reason: str) -> ReplicaRecord:
        """
        Fail a run that stopped before all of its legs finished.

        Details still RUNNING are closed as FAILED with `error_reason` (their
        last progress is kept), then the record is completed FAILED, which
        releases the task for its next run.
        """
        now = self._clock()
        for detail in self._detail_dao.list_by_record_id(record_id):
            if detail.status != ExecutionStatus.RUNNING:
                continue
            self._detail_dao.save(detail.with_changes(
                status=ExecutionStatus.FAILED,
                end_time=now,
                error_reason=error_reason,
            ))
            self._logger.warning(
                f"abort record detail [{detail.id}] to [{detail.remote_cluster}]",
                extra={"record_id": record_id, "detail_id": detail.id, "remote_cluster": detail.remote_cluster},
            )
        return self.complete_record(record_id, ExecutionStatus.FAILED, error_reason)

    def aggregate_record_status(self, record_id: str) -> tuple[ExecutionStatus, Optional[str]]:
        """
        Derive a record's final status from its details.

        SUCCESS iff every detail is SUCCESS. Otherwise FAILED with the reason
        of the first failed detail (by start time, then id). A record without
        details is FAILED.

        Raises:
            IllegalTransitionError: If any detail is still running
        """
        details = self._detail_dao.list_by_record_id(record_id)
        if not details:
            return ExecutionStatus.FAILED, NO_TARGETS_REASON
        for detail in details:
            if not detail.status.is_terminal:
                raise IllegalTransitionError("record", ExecutionStatus.RUNNING.value, "aggregated")
        for detail in details:
            if detail.status != ExecutionStatus.SUCCESS:
                reason = detail.error_reason or f"replication to [{detail.remote_cluster}] failed"
                return ExecutionStatus.FAILED, reason
        return ExecutionStatus.SUCCESS, None

    def get_record_by_id(self, record_id: str) -> Optional[ReplicaRecord]:
        return self._record_dao.find_by_id(record_id)

    def list_records_by_task_key(self, task_key: str) -> list[ReplicaRecord]:
        return self._record_dao.list_by_task_key(task_key)

    def list_records_page(self, task_key: str, page_number: int, page_size: int) -> Page[ReplicaRecord]:
        """Records of a task, newest first."""
        request = PageRequest(page_number, page_size)
        return self._record_dao.find_page({"task_key": task_key}, request)

    def get_record_and_task_info_by_record_id(self, record_id: str) -> ReplicaTaskRecordInfo:
        """
        Raises:
            NotFoundError: If the record or its task does not exist
        """
        record = self._record_dao.find_by_id(record_id)
        if record is None:
            raise NotFoundError("record", record_id)
        task = self._task_dao.find_by_key(record.task_key)
        if task is None:
            raise NotFoundError("task", record.task_key)
        return ReplicaTaskRecordInfo(task.replica_object_type.value, record)

    def delete_by_task_key(self, task_key: str) -> int:
        """
        Delete every record of a task and their details (details first).

        The task itself is untouched.

        Returns:
            Number of records deleted
        """
        records = self._record_dao.list_by_task_key(task_key)
        for record in records:
            self._detail_dao.delete_by_record_id(record.id)
        deleted = self._record_dao.delete_by_task_key(task_key)
        self._logger.info(
            f"deleted {deleted} record(s) of task [{task_key}]",
            extra={"task_key": task_key, "event": "record.delete"},
        )
        return deleted

    def clean_expired_records(self, task_key: str, now: Optional[datetime] = None) -> int:
        """
        Delete terminal records older than the task's record_reserve_days.

        A reserve of 0 or less keeps every record.

        Raises:
            NotFoundError: If the task does not exist
        """
        task = self._task_dao.find_by_key(task_key)
        if task is None:
            raise NotFoundError("task", task_key)
        reserve_days = task.setting.record_reserve_days
        if reserve_days <= 0:
            return 0
        cutoff = (now or self._clock()) - timedelta(days=reserve_days)
        expired = self._record_dao.list_expired(task_key, cutoff)
        for record in expired:
            self._detail_dao.delete_by_record_id(record.id)
            self._record_dao.delete_by_id(record.id)
        if expired:
            self._logger.info(
                f"cleaned {len(expired)} expired record(s) of task [{task_key}]",
                extra={"task_key": task_key, "event": "record.clean"},
            )
        return len(expired)

    # ------------------------------------------------------------------
    # Details
    # ------------------------------------------------------------------

    def initial_record_detail(self, request: RecordDetailInitialRequest) -> ReplicaRecordDetail:
        """
        Create a RUNNING detail with empty progress.

        Raises:
            NotFoundError: If the record does not exist
            IllegalTransitionError: If the record is already terminal
            ConflictError: If the record already has a detail for this remote cluster
        """
        record = self._record_dao.find_by_id(request.record_id)
        if record is None:
            raise NotFoundError("record", request.record_id)
        if record.status.is_terminal:
            raise IllegalTransitionError("record", record.status.value, "new detail")

        detail = ReplicaRecordDetail(
            id="",
            record_id=request.record_id,
            local_cluster=request.local_cluster,
            remote_cluster=request.remote_cluster,
            local_repo_name=request.local_repo_name,
            repo_type=request.repo_type,
            package_constraints=request.package_constraints,
            path_constraints=request.path_constraints,
            status=ExecutionStatus.RUNNING,
            progress=ReplicaProgress(),
            start_time=self._clock(),
        )
        try:
            return self._detail_dao.insert(detail)
        except ConflictError as e:
            self._logger.warning(f"init record detail [{request.record_id}] error: [{e}]")
            raise

    def update_record_detail_progress(self, detail_id: str, progress: ReplicaProgress) -> ReplicaRecordDetail:
        """
        Overwrite a running detail's progress (last writer wins, not additive).

        Raises:
            NotFoundError: If the detail does not exist
            IllegalTransitionError: If the detail is already terminal
        """
        detail = self._detail_dao.find_by_id(detail_id)
        if detail is None:
            raise NotFoundError("detail", detail_id)
        if detail.status.is_terminal:
            raise IllegalTransitionError("detail", detail.status.value, "progress update")
        saved = self._detail_dao.save(detail.with_changes(progress=progress))
        self._logger.debug(f"Update record detail [{detail_id}] success.", extra={"detail_id": detail_id})
        return saved

    def complete_record_detail(self, detail_id: str, result: ExecutionResult) -> ReplicaRecordDetail:
        """
        Finalize a detail with a transport result.

        Raises:
            NotFoundError: If the detail does not exist
            IllegalTransitionError: If the detail is already terminal
        """
        detail = self._detail_dao.find_by_id(detail_id)
        if detail is None:
            raise NotFoundError("detail", detail_id)
        check_execution_transition("detail", detail.status, result.status)
        finished = detail.with_changes(
            status=result.status,
            progress=result.progress,
            end_time=self._clock(),
            error_reason=result.error_reason if result.status == ExecutionStatus.FAILED else None,
        )
        return self._detail_dao.save(finished)

    def get_record_detail_by_id(self, detail_id: str) -> Optional[ReplicaRecordDetail]:
        return self._detail_dao.find_by_id(detail_id)

    def list_details_by_record_id(self, record_id: str) -> list[ReplicaRecordDetail]:
        return self._detail_dao.list_by_record_id(record_id)

    def list_record_detail_page(
        self,
        record_id: str,
        option: Optional[ReplicaRecordDetailListOption] = None,
    ) -> Page[ReplicaRecordDetail]:
        """Details of a record, filtered by status, cluster, constraints and start time."""
        option = option or ReplicaRecordDetailListOption()
        query: dict = {"record_id": record_id}
        if option.status is not None:
            query["status"] = option.status.value
        if option.remote_cluster:
            query["remote_cluster"] = option.remote_cluster
        if option.package_name:
            query["package_constraints.package_key"] = {"$regex": re.escape(option.package_name)}
        if option.path:
            query["path_constraints"] = {"$regex": re.escape(option.path)}
        time_range = {}
        if option.start_after is not None:
            time_range["$gte"] = dt_value(option.start_after)
        if option.start_before is not None:
            time_range["$lte"] = dt_value(option.start_before)
        if time_range:
            query["start_time"] = time_range
        request = PageRequest(option.page_number, option.page_size)
        return self._detail_dao.find_page(query, request)
