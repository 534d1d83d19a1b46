"""Tests for replicore schemas."""

from datetime import datetime, timedelta, timezone

import pytest

from replicore.schemas import (
    ExecutionPlan,
    ExecutionResult,
    ExecutionStatus,
    PackageConstraint,
    Page,
    PageRequest,
    ReplicaProgress,
    ReplicaRecord,
    ReplicaRecordDetail,
    ReplicaSetting,
    ReplicaTask,
    ReplicaType,
    ReplicationStatus,
    RepositoryType,
    ensure_utc,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestExecutionStatus:

    def test_terminal(self):
        assert not ExecutionStatus.RUNNING.is_terminal
        assert ExecutionStatus.SUCCESS.is_terminal
        assert ExecutionStatus.FAILED.is_terminal


class TestReplicaProgress:

    def test_defaults_to_zero(self):
        assert ReplicaProgress() == ReplicaProgress(0, 0, 0, 0)

    def test_rejects_negative_counters(self):
        with pytest.raises(ValueError, match="progress.skip"):
            ReplicaProgress(skip=-1)

    def test_add(self):
        total = ReplicaProgress(1, 2, 3, 100) + ReplicaProgress(1, 0, 0, 50)
        assert total == ReplicaProgress(2, 2, 3, 150)

    def test_from_dict_fills_missing(self):
        assert ReplicaProgress.from_dict({"success": 3}) == ReplicaProgress(success=3)
        assert ReplicaProgress.from_dict(None) == ReplicaProgress()


class TestExecutionResult:

    def test_success(self):
        result = ExecutionResult.success(ReplicaProgress(success=2))
        assert result.status == ExecutionStatus.SUCCESS
        assert result.error_reason is None
        assert result.progress.success == 2

    def test_fail_keeps_progress(self):
        result = ExecutionResult.fail("boom", ReplicaProgress(success=1))
        assert result.status == ExecutionStatus.FAILED
        assert result.error_reason == "boom"
        assert result.progress.success == 1

    def test_rejects_running(self):
        with pytest.raises(ValueError, match="terminal"):
            ExecutionResult(ExecutionStatus.RUNNING)


class TestReplicaRecord:

    def test_to_dict_omits_unset_fields(self):
        record = ReplicaRecord(id="r1", task_key="t1", start_time=T0)
        assert record.to_dict() == {
            "id": "r1",
            "task_key": "t1",
            "status": "RUNNING",
            "start_time": T0.isoformat(),
        }

    def test_from_dict(self):
        record = ReplicaRecord.from_dict({
            "id": "r1",
            "task_key": "t1",
            "status": "FAILED",
            "start_time": T0.isoformat(),
            "end_time": (T0 + timedelta(seconds=2)).isoformat(),
            "error_reason": "x",
        })
        assert record.status == ExecutionStatus.FAILED
        assert record.duration_ms == 2000
        assert record.error_reason == "x"

    def test_duration_none_while_running(self):
        assert ReplicaRecord(id="r1", task_key="t1").duration_ms is None

    def test_is_frozen(self):
        record = ReplicaRecord(id="r1", task_key="t1")
        with pytest.raises(AttributeError):
            record.status = ExecutionStatus.SUCCESS


class TestReplicaTask:

    def test_from_dict_restores_task(self):
        task = ReplicaTask(
            key="t1",
            name="nightly",
            local_project_id="p",
            local_repo_name="r",
            remote_cluster_set=frozenset({"B", "A"}),
            repo_type=RepositoryType.DOCKER,
            replica_type=ReplicaType.SCHEDULED,
            setting=ReplicaSetting(execution_plan=ExecutionPlan(cron_expression="0 * * * *")),
            package_constraints=(PackageConstraint("docker://nginx", ("1.25",)),),
            path_constraints=("/lib",),
            next_execution_time=T0,
        )
        data = task.to_dict()
        assert data["remote_cluster_set"] == ["A", "B"]

        restored = ReplicaTask.from_dict(data)
        assert restored == task
        assert restored.cron_expression == "0 * * * *"

    def test_with_changes_leaves_original(self):
        task = ReplicaTask("t1", "n", "p", "r", frozenset({"A"}))
        changed = task.with_changes(status=ReplicationStatus.REPLICATING)
        assert task.status == ReplicationStatus.WAITING
        assert changed.status == ReplicationStatus.REPLICATING


class TestReplicaRecordDetail:

    def test_from_dict(self):
        detail = ReplicaRecordDetail(
            id="d1",
            record_id="r1",
            local_cluster="center",
            remote_cluster="A",
            local_repo_name="repo",
            repo_type="DOCKER",
            status=ExecutionStatus.SUCCESS,
            progress=ReplicaProgress(success=3, total_size=30),
            start_time=T0,
            end_time=T0,
        )
        assert ReplicaRecordDetail.from_dict(detail.to_dict()) == detail


class TestPaging:

    def test_skip_and_limit(self):
        request = PageRequest(page_number=3, page_size=10)
        assert request.skip == 20
        assert request.limit == 10

    @pytest.mark.parametrize("number,size", [(0, 10), (1, 0), (1, 1001)])
    def test_rejects_invalid_request(self, number, size):
        with pytest.raises(ValueError):
            PageRequest(number, size)

    def test_total_pages(self):
        assert Page(1, 10, 25, []).total_pages == 3
        assert Page(1, 10, 0, []).total_pages == 0


def test_ensure_utc_treats_naive_as_utc():
    naive = datetime(2024, 1, 1, 12, 0)
    assert ensure_utc(naive) == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    plus_two = datetime(2024, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    assert ensure_utc(plus_two).hour == 12
