"""
replicore - Replication task orchestration

Runs replication tasks from a local artifact repository to remote clusters,
tracking each run as a record with one detail per remote cluster.
"""

__version__ = "0.1.0"
__author__ = "Replication Team"


__all__ = [
    "ReplicoreConfig",
    "load_config",
    "get_replicore_home",
    "ReplicationJob",
    "JobRunResult",
    "ReplicaRecordService",
    "ReplicaTaskService",
]

from .config import ReplicoreConfig, load_config, get_replicore_home
from .job import ReplicationJob, JobRunResult
from .record_service import ReplicaRecordService
from .task_service import ReplicaTaskService
