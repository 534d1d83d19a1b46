"""Tests for cron schedule evaluation."""

from datetime import datetime, timedelta, timezone

import pytest

from replicore.errors import ScheduleError
from replicore.schedule import is_cron_task, next_trigger_time, validate_cron_expression
from replicore.schemas import ExecutionPlan, ReplicaSetting, ReplicaTask

UTC = timezone.utc


class TestNextTriggerTime:

    def test_every_five_minutes(self):
        start = datetime(2024, 1, 1, 0, 0, tzinfo=UTC)
        assert next_trigger_time("*/5 * * * *", start) == datetime(2024, 1, 1, 0, 5, tzinfo=UTC)

    def test_strictly_after_reference(self):
        on_the_hour = datetime(2024, 1, 1, 3, 0, tzinfo=UTC)
        assert next_trigger_time("0 * * * *", on_the_hour) == datetime(2024, 1, 1, 4, 0, tzinfo=UTC)

    def test_naive_reference_is_utc(self):
        naive = datetime(2024, 1, 1, 0, 0)
        assert next_trigger_time("30 0 * * *", naive) == datetime(2024, 1, 1, 0, 30, tzinfo=UTC)

    def test_deterministic(self):
        start = datetime(2024, 5, 17, 13, 42, tzinfo=UTC)
        assert next_trigger_time("15 2 * * 1", start) == next_trigger_time("15 2 * * 1", start)

    def test_result_is_utc(self):
        result = next_trigger_time("0 0 * * *", datetime(2024, 1, 1, tzinfo=UTC))
        assert result.utcoffset().total_seconds() == 0

    def test_timezone(self):
        # 02:00 at UTC+1 is 01:00 UTC
        start = datetime(2024, 1, 1, 0, 0, tzinfo=UTC)
        result = next_trigger_time("0 2 * * *", start, timezone(timedelta(hours=1)))
        assert result == datetime(2024, 1, 1, 1, 0, tzinfo=UTC)

    def test_unknown_timezone(self):
        with pytest.raises(ScheduleError, match="unknown timezone"):
            next_trigger_time("0 2 * * *", None, "Mars/Olympus")

    @pytest.mark.parametrize("expression", ["", "   ", None, "not a cron", "61 * * * *"])
    def test_invalid(self, expression):
        with pytest.raises(ScheduleError):
            next_trigger_time(expression)


class TestValidate:

    def test_valid(self):
        validate_cron_expression("0 3 * * *")

    def test_blank(self):
        with pytest.raises(ScheduleError, match="blank"):
            validate_cron_expression(" ")


def _task(cron):
    return ReplicaTask(
        "t", "n", "p", "r", frozenset({"A"}),
        setting=ReplicaSetting(execution_plan=ExecutionPlan(cron_expression=cron)),
    )


@pytest.mark.parametrize("cron,expected", [
    ("0 * * * *", True),
    (None, False),
    ("", False),
    ("  ", False),
])
def test_is_cron_task(cron, expected):
    assert is_cron_task(_task(cron)) is expected
