"""
Status transition tables.

Task status changes are driven by events and looked up in one table keyed
by (current status, event). Record and detail statuses only move from
RUNNING to a terminal status. Anything else raises IllegalTransitionError.

    WAITING     --START_CRON-->     REPLICATING
    COMPLETED   --START_CRON-->     REPLICATING
    WAITING     --START_ONCE-->     REPLICATING
    REPLICATING --COMPLETE_CRON-->  WAITING
    REPLICATING --COMPLETE_ONCE-->  COMPLETED
    WAITING     --RESCHEDULE-->     WAITING
    COMPLETED   --RESCHEDULE-->     WAITING

COMPLETED is terminal for one-shot tasks: only a cron task (or a task
rescheduled with a cron expression) leaves it.
"""

from enum import Enum

from replicore.errors import IllegalTransitionError
from replicore.schemas import ExecutionStatus, ReplicationStatus


class TaskEvent(str, Enum):
    """Events that move a task between statuses."""
    START_CRON = "START_CRON"
    START_ONCE = "START_ONCE"
    COMPLETE_CRON = "COMPLETE_CRON"
    COMPLETE_ONCE = "COMPLETE_ONCE"
    RESCHEDULE = "RESCHEDULE"


TASK_TRANSITIONS: dict[tuple[ReplicationStatus, TaskEvent], ReplicationStatus] = {
    (ReplicationStatus.WAITING, TaskEvent.START_CRON): ReplicationStatus.REPLICATING,
    (ReplicationStatus.COMPLETED, TaskEvent.START_CRON): ReplicationStatus.REPLICATING,
    (ReplicationStatus.WAITING, TaskEvent.START_ONCE): ReplicationStatus.REPLICATING,
    (ReplicationStatus.REPLICATING, TaskEvent.COMPLETE_CRON): ReplicationStatus.WAITING,
    (ReplicationStatus.REPLICATING, TaskEvent.COMPLETE_ONCE): ReplicationStatus.COMPLETED,
    (ReplicationStatus.WAITING, TaskEvent.RESCHEDULE): ReplicationStatus.WAITING,
    (ReplicationStatus.COMPLETED, TaskEvent.RESCHEDULE): ReplicationStatus.WAITING,
}

EXECUTION_TRANSITIONS: frozenset[tuple[ExecutionStatus, ExecutionStatus]] = frozenset({
    (ExecutionStatus.RUNNING, ExecutionStatus.SUCCESS),
    (ExecutionStatus.RUNNING, ExecutionStatus.FAILED),
})


def next_task_status(current: ReplicationStatus, event: TaskEvent) -> ReplicationStatus:
    """
    Look up the status a task moves to on an event.

    Raises:
        IllegalTransitionError: If the event is not allowed in the current status
    """
    try:
        return TASK_TRANSITIONS[(current, event)]
    except KeyError:
        raise IllegalTransitionError("task", current.value, event.value) from None


def statuses_accepting(event: TaskEvent) -> set[ReplicationStatus]:
    """All statuses in which `event` is legal."""
    return {current for (current, e) in TASK_TRANSITIONS if e == event}


def start_event(is_cron: bool) -> TaskEvent:
    return TaskEvent.START_CRON if is_cron else TaskEvent.START_ONCE


def completion_event(is_cron: bool) -> TaskEvent:
    return TaskEvent.COMPLETE_CRON if is_cron else TaskEvent.COMPLETE_ONCE


def check_execution_transition(entity: str, current: ExecutionStatus, target: ExecutionStatus) -> None:
    """
    Validate a record/detail status change.

    Raises:
        IllegalTransitionError: Unless current is RUNNING and target is terminal
    """
    if (current, target) not in EXECUTION_TRANSITIONS:
        raise IllegalTransitionError(entity, current.value, target.value)
