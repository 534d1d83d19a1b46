"""
ReplicaTask schema - the stored replication intent.

A ReplicaTask names what to replicate (local project/repo plus optional
package or path constraints), where (a set of remote cluster names) and when
(an execution plan that is either one-shot or a cron expression).
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .common import dump_dt, load_dt
from .record import ExecutionStatus


class ReplicationStatus(str, Enum):
    """Status of a task."""
    WAITING = "WAITING"
    REPLICATING = "REPLICATING"
    COMPLETED = "COMPLETED"


class ReplicaType(str, Enum):
    """How a task is triggered."""
    SCHEDULED = "SCHEDULED"
    RUN_ONCE = "RUN_ONCE"
    REAL_TIME = "REAL_TIME"


class TaskType(str, Enum):
    """Whether a run replicates everything or only changes."""
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


class ReplicaObjectType(str, Enum):
    """Granularity of the replicated objects."""
    REPOSITORY = "REPOSITORY"
    PACKAGE = "PACKAGE"
    PATH = "PATH"


class RepositoryType(str, Enum):
    DOCKER = "DOCKER"
    MAVEN = "MAVEN"
    NPM = "NPM"
    HELM = "HELM"
    RPM = "RPM"
    CONAN = "CONAN"
    GENERIC = "GENERIC"


class ConflictStrategy(str, Enum):
    """What a transport does when the artifact already exists remotely."""
    SKIP = "SKIP"
    OVERWRITE = "OVERWRITE"
    FAST_FAIL = "FAST_FAIL"


@dataclass(frozen=True)
class PackageConstraint:
    """
    Restricts replication to one package, optionally to some of its versions.

    Attributes:
        package_key: Package identifier (e.g. "npm://left-pad")
        versions: Versions to replicate; None means every version
    """
    package_key: str
    versions: Optional[tuple[str, ...]] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"package_key": self.package_key}
        if self.versions is not None:
            result["versions"] = list(self.versions)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PackageConstraint":
        versions = data.get("versions")
        return cls(
            package_key=data["package_key"],
            versions=tuple(versions) if versions is not None else None,
        )


@dataclass(frozen=True)
class ExecutionPlan:
    """
    When a task runs.

    A non-blank cron_expression makes the task cron-driven; otherwise the
    task runs once, immediately or at execute_time.
    """
    execute_immediately: bool = True
    execute_time: Optional[datetime] = None
    cron_expression: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "execute_immediately": self.execute_immediately,
            "execute_time": dump_dt(self.execute_time),
            "cron_expression": self.cron_expression,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionPlan":
        return cls(
            execute_immediately=data.get("execute_immediately", True),
            execute_time=load_dt(data.get("execute_time")),
            cron_expression=data.get("cron_expression"),
        )


@dataclass(frozen=True)
class ReplicaSetting:
    """
    Per-task replication settings.

    Attributes:
        rate_limit: Transfer rate limit in bytes/s (0 = unlimited), passed to transports
        include_permission: Replicate permission metadata
        include_metadata: Replicate artifact metadata
        conflict_strategy: Behaviour on existing remote artifacts
        execution_plan: One-shot or cron trigger
        validate_connectivity: Check remote reachability before each leg
        record_reserve_days: Retention of terminal records, in days
    """
    rate_limit: int = 0
    include_permission: bool = False
    include_metadata: bool = True
    conflict_strategy: ConflictStrategy = ConflictStrategy.SKIP
    execution_plan: ExecutionPlan = field(default_factory=ExecutionPlan)
    validate_connectivity: bool = True
    record_reserve_days: int = 30

    def to_dict(self) -> dict[str, Any]:
        return {
            "rate_limit": self.rate_limit,
            "include_permission": self.include_permission,
            "include_metadata": self.include_metadata,
            "conflict_strategy": self.conflict_strategy.value,
            "execution_plan": self.execution_plan.to_dict(),
            "validate_connectivity": self.validate_connectivity,
            "record_reserve_days": self.record_reserve_days,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReplicaSetting":
        return cls(
            rate_limit=data.get("rate_limit", 0),
            include_permission=data.get("include_permission", False),
            include_metadata=data.get("include_metadata", True),
            conflict_strategy=ConflictStrategy(data.get("conflict_strategy", "SKIP")),
            execution_plan=ExecutionPlan.from_dict(data.get("execution_plan") or {}),
            validate_connectivity=data.get("validate_connectivity", True),
            record_reserve_days=data.get("record_reserve_days", 30),
        )


@dataclass
class ReplicaTask:
    """
    A stored replication task.

    Instances are plain values: the DAO builds a fresh one on every read and
    serializes on every write. Use with_changes() to derive an updated copy.

    Attributes:
        key: Globally unique task key
        name: Globally unique display name
        local_project_id / local_repo_name: Replication source
        remote_project_id / remote_repo_name: Optional target override
        repo_type: Repository type tag copied onto every detail
        remote_cluster_set: Names of the remote clusters (fan-out targets)
        package_constraints / path_constraints: Optional artifact filters
        status: WAITING, REPLICATING or COMPLETED
        last_execution_status: Status of the most recent record
        next_execution_time: Next cron fire time (cron tasks only)
    """
    key: str
    name: str
    local_project_id: str
    local_repo_name: str
    remote_cluster_set: frozenset[str]
    repo_type: RepositoryType = RepositoryType.GENERIC
    remote_project_id: Optional[str] = None
    remote_repo_name: Optional[str] = None
    replica_object_type: ReplicaObjectType = ReplicaObjectType.REPOSITORY
    task_type: TaskType = TaskType.FULL
    replica_type: ReplicaType = ReplicaType.RUN_ONCE
    setting: ReplicaSetting = field(default_factory=ReplicaSetting)
    package_constraints: Optional[tuple[PackageConstraint, ...]] = None
    path_constraints: Optional[tuple[str, ...]] = None
    description: Optional[str] = None
    enabled: bool = True
    status: ReplicationStatus = ReplicationStatus.WAITING
    last_execution_status: Optional[ExecutionStatus] = None
    last_execution_time: Optional[datetime] = None
    next_execution_time: Optional[datetime] = None
    created_by: str = "system"
    created_date: Optional[datetime] = None
    last_modified_by: str = "system"
    last_modified_date: Optional[datetime] = None
    id: Optional[str] = None

    @property
    def cron_expression(self) -> Optional[str]:
        return self.setting.execution_plan.cron_expression

    def with_changes(self, **changes: Any) -> "ReplicaTask":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a storable document."""
        return {
            "id": self.id,
            "key": self.key,
            "name": self.name,
            "local_project_id": self.local_project_id,
            "local_repo_name": self.local_repo_name,
            "remote_project_id": self.remote_project_id,
            "remote_repo_name": self.remote_repo_name,
            "repo_type": self.repo_type.value,
            "replica_object_type": self.replica_object_type.value,
            "task_type": self.task_type.value,
            "replica_type": self.replica_type.value,
            "setting": self.setting.to_dict(),
            "remote_cluster_set": sorted(self.remote_cluster_set),
            "package_constraints": (
                [c.to_dict() for c in self.package_constraints]
                if self.package_constraints is not None else None
            ),
            "path_constraints": (
                list(self.path_constraints) if self.path_constraints is not None else None
            ),
            "description": self.description,
            "enabled": self.enabled,
            "status": self.status.value,
            "last_execution_status": (
                self.last_execution_status.value if self.last_execution_status else None
            ),
            "last_execution_time": dump_dt(self.last_execution_time),
            "next_execution_time": dump_dt(self.next_execution_time),
            "created_by": self.created_by,
            "created_date": dump_dt(self.created_date),
            "last_modified_by": self.last_modified_by,
            "last_modified_date": dump_dt(self.last_modified_date),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReplicaTask":
        """Deserialize from a stored document."""
        package_constraints = data.get("package_constraints")
        path_constraints = data.get("path_constraints")
        last_status = data.get("last_execution_status")
        return cls(
            id=data.get("id"),
            key=data["key"],
            name=data["name"],
            local_project_id=data["local_project_id"],
            local_repo_name=data["local_repo_name"],
            remote_project_id=data.get("remote_project_id"),
            remote_repo_name=data.get("remote_repo_name"),
            repo_type=RepositoryType(data.get("repo_type", "GENERIC")),
            replica_object_type=ReplicaObjectType(data.get("replica_object_type", "REPOSITORY")),
            task_type=TaskType(data.get("task_type", "FULL")),
            replica_type=ReplicaType(data.get("replica_type", "RUN_ONCE")),
            setting=ReplicaSetting.from_dict(data.get("setting") or {}),
            remote_cluster_set=frozenset(data.get("remote_cluster_set", [])),
            package_constraints=(
                tuple(PackageConstraint.from_dict(c) for c in package_constraints)
                if package_constraints is not None else None
            ),
            path_constraints=tuple(path_constraints) if path_constraints is not None else None,
            description=data.get("description"),
            enabled=data.get("enabled", True),
            status=ReplicationStatus(data.get("status", "WAITING")),
            last_execution_status=ExecutionStatus(last_status) if last_status else None,
            last_execution_time=load_dt(data.get("last_execution_time")),
            next_execution_time=load_dt(data.get("next_execution_time")),
            created_by=data.get("created_by", "system"),
            created_date=load_dt(data.get("created_date")),
            last_modified_by=data.get("last_modified_by", "system"),
            last_modified_date=load_dt(data.get("last_modified_date")),
        )
