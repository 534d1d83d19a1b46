"""
ReplicaRecord schema - one execution attempt of a task.

A record is created RUNNING when a run starts and completed exactly once
with a terminal status. Records reference their task by key.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .common import load_dt, utcnow


class ExecutionStatus(str, Enum):
    """Status of a record or detail (also a task's last execution status)."""
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ExecutionStatus.SUCCESS, ExecutionStatus.FAILED})


@dataclass(frozen=True)
class ReplicaRecord:
    """
    A record of one task run.

    Attributes:
        id: Store-assigned identifier
        task_key: Key of the owning task
        status: RUNNING, SUCCESS or FAILED
        start_time: When the run started
        end_time: When the run completed (None while running)
        error_reason: Failure reason (None unless FAILED)
    """
    id: str
    task_key: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    error_reason: Optional[str] = None

    @property
    def duration_ms(self) -> Optional[int]:
        """Run duration in milliseconds if completed."""
        if self.end_time:
            delta = self.end_time - self.start_time
            return int(delta.total_seconds() * 1000)
        return None

    def with_changes(self, **changes: Any) -> "ReplicaRecord":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for storage and JSON output."""
        result: dict[str, Any] = {
            "id": self.id,
            "task_key": self.task_key,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
        }
        if self.end_time is not None:
            result["end_time"] = self.end_time.isoformat()
        if self.error_reason is not None:
            result["error_reason"] = self.error_reason
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReplicaRecord":
        """Deserialize from dictionary."""
        return cls(
            id=data["id"],
            task_key=data["task_key"],
            status=ExecutionStatus(data.get("status", "RUNNING")),
            start_time=load_dt(data["start_time"]),
            end_time=load_dt(data.get("end_time")),
            error_reason=data.get("error_reason"),
        )


@dataclass(frozen=True)
class ReplicaTaskRecordInfo:
    """A record together with the object type of its task."""
    replica_object_type: str
    record: ReplicaRecord

    def to_dict(self) -> dict[str, Any]:
        return {
            "replica_object_type": self.replica_object_type,
            "record": self.record.to_dict(),
        }
