"""
Detail schemas - per-remote-cluster legs of a record.

ReplicaRecordDetail tracks one fan-out leg: which cluster it targets, the
filters it applied, its own status and its transfer progress.
ExecutionResult is what a transport returns when a leg finishes.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional

from .common import dump_dt, load_dt, utcnow
from .record import ExecutionStatus
from .task import PackageConstraint


@dataclass(frozen=True)
class ReplicaProgress:
    """
    Transfer counters for one leg.

    Attributes:
        success: Artifacts replicated
        skip: Artifacts skipped (already present remotely)
        failed: Artifacts that failed to replicate
        total_size: Bytes transferred
    """
    success: int = 0
    skip: int = 0
    failed: int = 0
    total_size: int = 0

    def __post_init__(self):
        for name in ("success", "skip", "failed", "total_size"):
            if getattr(self, name) < 0:
                raise ValueError(f"progress.{name} must be >= 0")

    def __add__(self, other: "ReplicaProgress") -> "ReplicaProgress":
        return ReplicaProgress(
            success=self.success + other.success,
            skip=self.skip + other.skip,
            failed=self.failed + other.failed,
            total_size=self.total_size + other.total_size,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "success": self.success,
            "skip": self.skip,
            "failed": self.failed,
            "total_size": self.total_size,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ReplicaProgress":
        data = data or {}
        return cls(
            success=data.get("success", 0),
            skip=data.get("skip", 0),
            failed=data.get("failed", 0),
            total_size=data.get("total_size", 0),
        )


@dataclass(frozen=True)
class ExecutionResult:
    """Terminal outcome of a leg, as reported by a transport."""
    status: ExecutionStatus
    progress: ReplicaProgress = field(default_factory=ReplicaProgress)
    error_reason: Optional[str] = None

    def __post_init__(self):
        if not self.status.is_terminal:
            raise ValueError(f"ExecutionResult status must be terminal, got {self.status.value}")

    @classmethod
    def success(cls, progress: Optional[ReplicaProgress] = None) -> "ExecutionResult":
        return cls(ExecutionStatus.SUCCESS, progress or ReplicaProgress())

    @classmethod
    def fail(cls, reason: str, progress: Optional[ReplicaProgress] = None) -> "ExecutionResult":
        return cls(ExecutionStatus.FAILED, progress or ReplicaProgress(), reason)


@dataclass(frozen=True)
class RecordDetailInitialRequest:
    """Arguments for creating a detail at the start of a leg."""
    record_id: str
    local_cluster: str
    remote_cluster: str
    local_repo_name: str
    repo_type: str
    package_constraints: Optional[tuple[PackageConstraint, ...]] = None
    path_constraints: Optional[tuple[str, ...]] = None


@dataclass(frozen=True)
class ReplicaRecordDetail:
    """
    A record of one fan-out leg.

    (record_id, remote_cluster) is the natural key: a record has at most one
    detail per remote cluster.
    """
    id: str
    record_id: str
    local_cluster: str
    remote_cluster: str
    local_repo_name: str
    repo_type: str
    package_constraints: Optional[tuple[PackageConstraint, ...]] = None
    path_constraints: Optional[tuple[str, ...]] = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    progress: ReplicaProgress = field(default_factory=ReplicaProgress)
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    error_reason: Optional[str] = None

    def with_changes(self, **changes: Any) -> "ReplicaRecordDetail":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for storage and JSON output."""
        return {
            "id": self.id,
            "record_id": self.record_id,
            "local_cluster": self.local_cluster,
            "remote_cluster": self.remote_cluster,
            "local_repo_name": self.local_repo_name,
            "repo_type": self.repo_type,
            "package_constraints": (
                [c.to_dict() for c in self.package_constraints]
                if self.package_constraints is not None else None
            ),
            "path_constraints": (
                list(self.path_constraints) if self.path_constraints is not None else None
            ),
            "status": self.status.value,
            "progress": self.progress.to_dict(),
            "start_time": self.start_time.isoformat(),
            "end_time": dump_dt(self.end_time),
            "error_reason": self.error_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReplicaRecordDetail":
        """Deserialize from dictionary."""
        package_constraints = data.get("package_constraints")
        path_constraints = data.get("path_constraints")
        return cls(
            id=data["id"],
            record_id=data["record_id"],
            local_cluster=data["local_cluster"],
            remote_cluster=data["remote_cluster"],
            local_repo_name=data["local_repo_name"],
            repo_type=data["repo_type"],
            package_constraints=(
                tuple(PackageConstraint.from_dict(c) for c in package_constraints)
                if package_constraints is not None else None
            ),
            path_constraints=tuple(path_constraints) if path_constraints is not None else None,
            status=ExecutionStatus(data.get("status", "RUNNING")),
            progress=ReplicaProgress.from_dict(data.get("progress")),
            start_time=load_dt(data["start_time"]),
            end_time=load_dt(data.get("end_time")),
            error_reason=data.get("error_reason"),
        )


@dataclass(frozen=True)
class ReplicaRecordDetailListOption:
    """
    Filters and paging for listing the details of a record.

    Attributes:
        page_number: 1-based page number
        page_size: Items per page
        status: Only details in this status
        remote_cluster: Only details targeting this cluster
        package_name: Only details whose package constraints mention this (substring)
        path: Only details whose path constraints mention this (substring)
        start_after / start_before: Inclusive bounds on start_time
    """
    page_number: int = 1
    page_size: int = 20
    status: Optional[ExecutionStatus] = None
    remote_cluster: Optional[str] = None
    package_name: Optional[str] = None
    path: Optional[str] = None
    start_after: Optional[datetime] = None
    start_before: Optional[datetime] = None
