"""
Job context - the run-scoped view of a task.

A ReplicationJobContext is built once at the start of a run. It holds a
frozen TaskSnapshot (so edits to the stored task during the run do not leak
into it), a correlation key tying together the record, its details and log
lines, and the resolved local cluster used as the transfer source. The only
mutable part is the aggregate progress, which legs add to as they finish.
"""

import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from replicore.cluster import ClusterNodeInfo, ClusterRegistry
from replicore.errors import NotFoundError
from replicore.repositories import ReplicaTaskDao
from replicore.schemas import (
    ConflictStrategy,
    PackageConstraint,
    ReplicaObjectType,
    ReplicaProgress,
    ReplicaTask,
    ReplicaType,
    RepositoryType,
    TaskType,
)


@dataclass(frozen=True)
class TaskSnapshot:
    """Immutable copy of the replication-relevant fields of a task."""
    key: str
    name: str
    local_project_id: str
    local_repo_name: str
    remote_project_id: Optional[str]
    remote_repo_name: Optional[str]
    repo_type: RepositoryType
    replica_object_type: ReplicaObjectType
    task_type: TaskType
    replica_type: ReplicaType
    remote_clusters: tuple[str, ...]
    package_constraints: Optional[tuple[PackageConstraint, ...]]
    path_constraints: Optional[tuple[str, ...]]
    cron_expression: Optional[str]
    validate_connectivity: bool
    conflict_strategy: ConflictStrategy
    rate_limit: int
    include_metadata: bool
    include_permission: bool

    @classmethod
    def of(cls, task: ReplicaTask) -> "TaskSnapshot":
        setting = task.setting
        return cls(
            key=task.key,
            name=task.name,
            local_project_id=task.local_project_id,
            local_repo_name=task.local_repo_name,
            remote_project_id=task.remote_project_id,
            remote_repo_name=task.remote_repo_name,
            repo_type=task.repo_type,
            replica_object_type=task.replica_object_type,
            task_type=task.task_type,
            replica_type=task.replica_type,
            remote_clusters=tuple(sorted(task.remote_cluster_set)),
            package_constraints=task.package_constraints,
            path_constraints=task.path_constraints,
            cron_expression=setting.execution_plan.cron_expression,
            validate_connectivity=setting.validate_connectivity,
            conflict_strategy=setting.conflict_strategy,
            rate_limit=setting.rate_limit,
            include_metadata=setting.include_metadata,
            include_permission=setting.include_permission,
        )


class ProgressAggregate:
    """Thread-safe running total of finished legs' progress."""

    def __init__(self):
        self._lock = threading.Lock()
        self._total = ReplicaProgress()

    def add(self, progress: ReplicaProgress) -> None:
        with self._lock:
            self._total = self._total + progress

    def snapshot(self) -> ReplicaProgress:
        with self._lock:
            return self._total


@dataclass(frozen=True)
class ReplicationJobContext:
    """
    Everything a run needs, fixed at run start.

    Attributes:
        snapshot: Frozen task fields
        correlation_key: Unique per run; stamped on log lines
        local_cluster: Transfer source
        progress: Aggregate progress of finished legs
    """
    snapshot: TaskSnapshot
    correlation_key: str
    local_cluster: ClusterNodeInfo
    progress: ProgressAggregate = field(default_factory=ProgressAggregate, compare=False)

    @property
    def task_key(self) -> str:
        return self.snapshot.key

    @property
    def cron_expression(self) -> Optional[str]:
        return self.snapshot.cron_expression

    def log_extra(self, **fields: Any) -> dict[str, Any]:
        """`extra` mapping for logger calls made on behalf of this run."""
        return {"correlation_key": self.correlation_key, "task_key": self.task_key, **fields}


def new_correlation_key() -> str:
    return uuid.uuid4().hex


class JobContextBuilder:
    """Builds a ReplicationJobContext from a task key. Read-only."""

    def __init__(self, task_dao: ReplicaTaskDao, cluster_registry: ClusterRegistry):
        self._task_dao = task_dao
        self._cluster_registry = cluster_registry

    def build(self, task_key: str) -> ReplicationJobContext:
        """
        Raises:
            NotFoundError: If the task does not exist
        """
        task = self._task_dao.find_by_key(task_key)
        if task is None:
            raise NotFoundError("task", task_key)
        return ReplicationJobContext(
            snapshot=TaskSnapshot.of(task),
            correlation_key=new_correlation_key(),
            local_cluster=self._cluster_registry.get_local(),
        )
