"""
replicore.schemas - Data model for replication tasks and their execution records.

ReplicaTask -> ReplicaRecord -> ReplicaRecordDetail

Lifecycle:
1. ReplicaTask: Stored replication intent (what, where, when)
2. ReplicaRecord: One run of a task, created RUNNING at run start
3. ReplicaRecordDetail: One leg of a record per remote cluster, with progress
4. ExecutionResult: Terminal outcome a transport reports for a leg

Ownership:
- Records reference a task by key (many-to-one, independently queryable)
- Details belong to exactly one record and are deleted with it
"""

from .common import utcnow, ensure_utc
from .record import (
    ExecutionStatus,
    TERMINAL_STATUSES,
    ReplicaRecord,
    ReplicaTaskRecordInfo,
)
from .task import (
    ReplicationStatus,
    ReplicaType,
    TaskType,
    ReplicaObjectType,
    RepositoryType,
    ConflictStrategy,
    PackageConstraint,
    ExecutionPlan,
    ReplicaSetting,
    ReplicaTask,
)
from .detail import (
    ReplicaProgress,
    ExecutionResult,
    RecordDetailInitialRequest,
    ReplicaRecordDetail,
    ReplicaRecordDetailListOption,
)
from .page import Page, PageRequest

__all__ = [
    # Time helpers
    "utcnow",
    "ensure_utc",
    # Record
    "ExecutionStatus",
    "TERMINAL_STATUSES",
    "ReplicaRecord",
    "ReplicaTaskRecordInfo",
    # Task
    "ReplicationStatus",
    "ReplicaType",
    "TaskType",
    "ReplicaObjectType",
    "RepositoryType",
    "ConflictStrategy",
    "PackageConstraint",
    "ExecutionPlan",
    "ReplicaSetting",
    "ReplicaTask",
    # Detail
    "ReplicaProgress",
    "ExecutionResult",
    "RecordDetailInitialRequest",
    "ReplicaRecordDetail",
    "ReplicaRecordDetailListOption",
    # Paging
    "Page",
    "PageRequest",
]
