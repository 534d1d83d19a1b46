"""
Error classes for replicore.

These error types classify failures at the lifecycle boundaries:
- NotFoundError: task/record/detail lookup miss; surfaced, never retried
- ConflictError: duplicate natural key or lost compare-and-swap; the caller
  decides between retry and abort
- ScheduleError: malformed cron expression; raised at task create/update time
- TransportError: raised by transports; captured per leg as a FAILED detail
- IllegalTransitionError: a status change not allowed by the transition table

Persistence engine failures are StoreError and propagate unchanged.
"""

from typing import Optional


class ReplicationError(Exception):
    """Base exception for replicore."""
    pass


class NotFoundError(ReplicationError):
    """
    A task, record, detail or cluster could not be found.

    Attributes:
        kind: Entity kind ("task", "record", "detail", "cluster")
        identifier: The key or id that missed
    """

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} [{identifier}] not found")


class ConflictError(ReplicationError):
    """
    A unique index rejected an insert, or a conditional update lost its race.

    Never swallowed by the core. The caller chooses retry vs abort.
    """

    def __init__(self, message: str, collection: Optional[str] = None, key: Optional[dict] = None):
        self.collection = collection
        self.key = key or {}
        super().__init__(message)


class ScheduleError(ReplicationError):
    """Malformed or blank cron expression."""

    def __init__(self, expression: Optional[str], reason: str = "invalid cron expression"):
        self.expression = expression
        super().__init__(f"{reason}: {expression!r}")


class TransportError(ReplicationError):
    """
    Transfer failure reported by a transport.

    Examples:
    - Connection refused by the remote cluster
    - Remote repository rejected an artifact
    - Transfer interrupted midway

    The orchestrator converts it into a FAILED detail with the message as
    the error reason.
    """
    pass


class IllegalTransitionError(ReplicationError):
    """A status transition not present in the transition table."""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"illegal {entity} transition: {current} -> {target}")


class TaskDisabledError(ReplicationError):
    """A run was requested for a disabled task."""

    def __init__(self, task_key: str):
        self.task_key = task_key
        super().__init__(f"task [{task_key}] is disabled")


class InvalidTaskError(ReplicationError):
    """A task create/update request failed validation."""
    pass


class StoreError(ReplicationError):
    """Failure inside the persistence engine (I/O, corrupt document)."""
    pass
