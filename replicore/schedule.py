"""
Schedule evaluation for cron-driven tasks.

Wraps croniter. Expressions are evaluated in a configurable timezone
(UTC by default) and results are returned as UTC-aware datetimes, so the
same expression and reference time always give the same answer.
"""

from datetime import datetime, timezone, tzinfo
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter, CroniterBadCronError, CroniterBadDateError

from replicore.errors import ScheduleError
from replicore.schemas import ReplicaTask, ensure_utc, utcnow

TimezoneLike = Union[str, tzinfo, None]


def _resolve_tz(tz: TimezoneLike) -> tzinfo:
    if tz is None or tz == "UTC":
        return timezone.utc
    if isinstance(tz, tzinfo):
        return tz
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleError(tz, "unknown timezone") from e


def validate_cron_expression(expression: Optional[str]) -> None:
    """
    Check a cron expression without evaluating it.

    Raises:
        ScheduleError: If the expression is blank or malformed
    """
    if expression is None or not expression.strip():
        raise ScheduleError(expression, "blank cron expression")
    if not croniter.is_valid(expression.strip()):
        raise ScheduleError(expression)


def next_trigger_time(
    expression: Optional[str],
    from_time: Optional[datetime] = None,
    tz: TimezoneLike = None,
) -> datetime:
    """
    Compute the next fire time of a cron expression.

    Args:
        expression: Standard 5-field cron expression (6 fields with seconds)
        from_time: Reference time (default: now); naive values are UTC
        tz: Timezone the expression is written in (name or tzinfo)

    Returns:
        The first fire time strictly after from_time, UTC-aware

    Raises:
        ScheduleError: On a blank or malformed expression
    """
    validate_cron_expression(expression)
    zone = _resolve_tz(tz)
    base = ensure_utc(from_time or utcnow()).astimezone(zone)
    try:
        fire = croniter(expression.strip(), base).get_next(datetime)
    except (CroniterBadCronError, CroniterBadDateError) as e:
        raise ScheduleError(expression, str(e)) from e
    return ensure_utc(fire)


def is_cron_task(task: ReplicaTask) -> bool:
    """True iff the task (or task snapshot) has a non-blank cron expression."""
    expression = task.cron_expression
    return expression is not None and bool(expression.strip())
