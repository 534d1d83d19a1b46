"""
ReplicaTaskService - create, update, enable/disable and delete tasks.

Cron expressions are validated here, at create/update time, so a malformed
schedule never surfaces in the middle of a run. Deleting a task removes its
records and details first.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from replicore.cluster import ClusterRegistry
from replicore.errors import ConflictError, InvalidTaskError, NotFoundError
from replicore.record_service import ReplicaRecordService
from replicore.repositories import ReplicaTaskDao
from replicore.schedule import TimezoneLike, next_trigger_time, validate_cron_expression
from replicore.schemas import (
    PackageConstraint,
    Page,
    PageRequest,
    ReplicaObjectType,
    ReplicaSetting,
    ReplicaTask,
    ReplicaType,
    ReplicationStatus,
    RepositoryType,
    TaskType,
    utcnow,
)
from replicore.state_machine import TaskEvent, next_task_status


def _constraints(data: Optional[list[Any]]) -> Optional[tuple[PackageConstraint, ...]]:
    if data is None:
        return None
    return tuple(
        c if isinstance(c, PackageConstraint) else PackageConstraint.from_dict(c) for c in data
    )


@dataclass(frozen=True)
class ReplicaTaskCreateRequest:
    """Everything needed to create a task."""
    name: str
    local_project_id: str
    local_repo_name: str
    remote_cluster_ids: frozenset[str]
    repo_type: RepositoryType = RepositoryType.GENERIC
    replica_object_type: ReplicaObjectType = ReplicaObjectType.REPOSITORY
    replica_type: ReplicaType = ReplicaType.SCHEDULED
    task_type: TaskType = TaskType.FULL
    setting: ReplicaSetting = field(default_factory=ReplicaSetting)
    remote_project_id: Optional[str] = None
    remote_repo_name: Optional[str] = None
    package_constraints: Optional[tuple[PackageConstraint, ...]] = None
    path_constraints: Optional[tuple[str, ...]] = None
    enabled: bool = True
    description: Optional[str] = None
    key: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReplicaTaskCreateRequest":
        """Build from a mapping (e.g. a YAML task file)."""
        missing = [k for k in ("name", "local_project_id", "local_repo_name", "remote_cluster_ids")
                   if k not in data]
        if missing:
            raise InvalidTaskError(f"task definition missing: {', '.join(missing)}")
        paths = data.get("path_constraints")
        return cls(
            name=data["name"],
            local_project_id=data["local_project_id"],
            local_repo_name=data["local_repo_name"],
            remote_cluster_ids=frozenset(data["remote_cluster_ids"]),
            repo_type=RepositoryType(data.get("repo_type", "GENERIC")),
            replica_object_type=ReplicaObjectType(data.get("replica_object_type", "REPOSITORY")),
            replica_type=ReplicaType(data.get("replica_type", "SCHEDULED")),
            task_type=TaskType(data.get("task_type", "FULL")),
            setting=ReplicaSetting.from_dict(data.get("setting") or {}),
            remote_project_id=data.get("remote_project_id"),
            remote_repo_name=data.get("remote_repo_name"),
            package_constraints=_constraints(data.get("package_constraints")),
            path_constraints=tuple(paths) if paths is not None else None,
            enabled=data.get("enabled", True),
            description=data.get("description"),
            key=data.get("key"),
        )


@dataclass(frozen=True)
class ReplicaTaskUpdateRequest:
    """Fields to change on an existing task; None leaves a field as is."""
    key: str
    name: Optional[str] = None
    setting: Optional[ReplicaSetting] = None
    remote_cluster_ids: Optional[frozenset[str]] = None
    package_constraints: Optional[tuple[PackageConstraint, ...]] = None
    path_constraints: Optional[tuple[str, ...]] = None
    description: Optional[str] = None


class ReplicaTaskService:
    """Task management on top of ReplicaTaskDao."""

    def __init__(
        self,
        task_dao: ReplicaTaskDao,
        record_service: ReplicaRecordService,
        cluster_registry: ClusterRegistry,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = utcnow,
        schedule_tz: TimezoneLike = None,
    ):
        self._task_dao = task_dao
        self._record_service = record_service
        self._cluster_registry = cluster_registry
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._schedule_tz = schedule_tz

    def _validate_clusters(self, remote_cluster_ids: frozenset[str]) -> None:
        if not remote_cluster_ids:
            raise InvalidTaskError("remote cluster set must not be empty")
        local = self._cluster_registry.get_local().name
        if local in remote_cluster_ids:
            raise InvalidTaskError(f"local cluster [{local}] cannot be a replication target")
        unknown = sorted(c for c in remote_cluster_ids if not self._cluster_registry.exists(c))
        if unknown:
            raise InvalidTaskError(f"unknown remote cluster(s): {', '.join(unknown)}")

    def _next_execution_time(self, replica_type: ReplicaType, setting: ReplicaSetting, now: datetime) -> Optional[datetime]:
        """
        Validate the execution plan and compute the first due time.

        Raises:
            ScheduleError: On a malformed cron expression
            InvalidTaskError: On a contradictory plan
        """
        plan = setting.execution_plan
        if plan.cron_expression is not None:
            if replica_type != ReplicaType.SCHEDULED:
                raise InvalidTaskError(f"{replica_type.value} task cannot have a cron expression")
            validate_cron_expression(plan.cron_expression)
            return next_trigger_time(plan.cron_expression, now, self._schedule_tz)
        if replica_type == ReplicaType.REAL_TIME:
            return None
        if plan.execute_immediately:
            return now
        if plan.execute_time is None:
            raise InvalidTaskError("execute_time is required when execute_immediately is false")
        return plan.execute_time

    def create(self, request: ReplicaTaskCreateRequest, operator: str = "system") -> ReplicaTask:
        """
        Create a WAITING task.

        Raises:
            InvalidTaskError: On an invalid request
            ScheduleError: On a malformed cron expression
            ConflictError: If the name or key is taken
        """
        if not request.name or not request.name.strip():
            raise InvalidTaskError("task name must not be blank")
        self._validate_clusters(request.remote_cluster_ids)
        if self._task_dao.find_by_name(request.name) is not None:
            raise ConflictError(f"task name [{request.name}] already exists")

        now = self._clock()
        task = ReplicaTask(
            key=request.key or uuid.uuid4().hex,
            name=request.name,
            local_project_id=request.local_project_id,
            local_repo_name=request.local_repo_name,
            remote_project_id=request.remote_project_id,
            remote_repo_name=request.remote_repo_name,
            repo_type=request.repo_type,
            replica_object_type=request.replica_object_type,
            task_type=request.task_type,
            replica_type=request.replica_type,
            setting=request.setting,
            remote_cluster_set=frozenset(request.remote_cluster_ids),
            package_constraints=request.package_constraints,
            path_constraints=request.path_constraints,
            description=request.description,
            enabled=request.enabled,
            status=ReplicationStatus.WAITING,
            next_execution_time=self._next_execution_time(request.replica_type, request.setting, now),
            created_by=operator,
            created_date=now,
            last_modified_by=operator,
            last_modified_date=now,
        )
        created = self._task_dao.insert(task)
        self._logger.info(f"create replica task [{created.key}] ({created.name}) by [{operator}]",
                          extra={"task_key": created.key, "event": "task.create"})
        return created

    def update(self, request: ReplicaTaskUpdateRequest, operator: str = "system") -> ReplicaTask:
        """
        Update a task that is not currently replicating.

        A task whose new plan has a cron expression is rescheduled to
        WAITING with a fresh next execution time.

        Raises:
            NotFoundError: If the task does not exist
            ConflictError: If the task is replicating, or the new name is taken
            InvalidTaskError / ScheduleError: On an invalid request
        """
        task = self.get_by_key(request.key)
        if task.status == ReplicationStatus.REPLICATING:
            raise ConflictError(f"task [{task.key}] is replicating and cannot be updated")
        if request.name is not None and request.name != task.name:
            if not request.name.strip():
                raise InvalidTaskError("task name must not be blank")
            if self._task_dao.find_by_name(request.name) is not None:
                raise ConflictError(f"task name [{request.name}] already exists")
        if request.remote_cluster_ids is not None:
            self._validate_clusters(request.remote_cluster_ids)

        now = self._clock()
        setting = request.setting or task.setting
        changes: dict[str, Any] = {
            "name": request.name or task.name,
            "setting": setting,
            "last_modified_by": operator,
            "last_modified_date": now,
        }
        if request.remote_cluster_ids is not None:
            changes["remote_cluster_set"] = frozenset(request.remote_cluster_ids)
        if request.package_constraints is not None:
            changes["package_constraints"] = request.package_constraints
        if request.path_constraints is not None:
            changes["path_constraints"] = request.path_constraints
        if request.description is not None:
            changes["description"] = request.description
        if request.setting is not None:
            changes["next_execution_time"] = self._next_execution_time(task.replica_type, setting, now)
            if setting.execution_plan.cron_expression is not None:
                changes["status"] = next_task_status(task.status, TaskEvent.RESCHEDULE)

        updated = task.with_changes(**changes)
        if not self._task_dao.compare_and_set_status(updated, {task.status}, unchanged_since=task):
            raise ConflictError(f"task [{task.key}] was modified concurrently")
        self._logger.info(f"update replica task [{task.key}] by [{operator}]",
                          extra={"task_key": task.key, "event": "task.update"})
        return self.get_by_key(task.key)

    def set_enabled(self, key: str, enabled: bool, operator: str = "system") -> ReplicaTask:
        """
        Enable or disable a task.

        Disabling blocks future runs; a run already in flight finishes.
        """
        task = self.get_by_key(key)
        updated = task.with_changes(enabled=enabled, last_modified_by=operator,
                                    last_modified_date=self._clock())
        if not self._task_dao.compare_and_set_status(updated, {task.status}, unchanged_since=task):
            raise ConflictError(f"task [{key}] was modified concurrently")
        self._logger.info(f"{'enable' if enabled else 'disable'} replica task [{key}] by [{operator}]",
                          extra={"task_key": key, "event": "task.toggle"})
        return self.get_by_key(key)

    def toggle_status(self, key: str, operator: str = "system") -> ReplicaTask:
        task = self.get_by_key(key)
        return self.set_enabled(key, not task.enabled, operator)

    def delete_by_key(self, key: str) -> None:
        """
        Delete a task and all its records and details.

        Raises:
            NotFoundError: If the task does not exist
            ConflictError: If the task is replicating
        """
        task = self.get_by_key(key)
        if task.status == ReplicationStatus.REPLICATING:
            raise ConflictError(f"task [{key}] is replicating and cannot be deleted")
        self._record_service.delete_by_task_key(key)
        self._task_dao.delete_by_key(key)
        self._logger.info(f"delete replica task [{key}]", extra={"task_key": key, "event": "task.delete"})

    def get_by_key(self, key: str) -> ReplicaTask:
        task = self._task_dao.find_by_key(key)
        if task is None:
            raise NotFoundError("task", key)
        return task

    def list_page(
        self,
        name: Optional[str] = None,
        enabled: Optional[bool] = None,
        status: Optional[ReplicationStatus] = None,
        page_number: int = 1,
        page_size: int = 20,
    ) -> Page[ReplicaTask]:
        """Tasks newest first, filtered by name substring, enabled flag and status."""
        query: dict[str, Any] = {}
        if name:
            query["name"] = {"$regex": re.escape(name)}
        if enabled is not None:
            query["enabled"] = enabled
        if status is not None:
            query["status"] = status.value
        return self._task_dao.find_page(query, PageRequest(page_number, page_size))

    def list_due_tasks(self, now: Optional[datetime] = None) -> list[ReplicaTask]:
        """Enabled WAITING tasks whose next execution time has come."""
        return self._task_dao.list_due(now or self._clock())
