import threading
from datetime import datetime, timedelta, timezone

import pytest

from replicore.cluster import ClusterNodeInfo, ClusterNodeType, InMemoryClusterRegistry
from replicore.record_service import ReplicaRecordService
from replicore.repositories import ReplicaRecordDao, ReplicaRecordDetailDao, ReplicaTaskDao
from replicore.schemas import (
    ExecutionPlan,
    ExecutionResult,
    ReplicaProgress,
    ReplicaSetting,
    ReplicaTask,
    ReplicaType,
)
from replicore.store import InMemoryDocumentStore
from replicore.transport import Transport

T0 = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)


class StepClock:
    """Deterministic clock: every call returns a time one second later."""

    def __init__(self, start=T0, step=timedelta(seconds=1)):
        self._now = start
        self._step = step
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            now = self._now
            self._now = now + self._step
            return now

    def peek(self):
        return self._now


class ScriptedTransport(Transport):
    """
    Transport whose behaviour per remote cluster is scripted by the test.

    script maps cluster name -> list of steps. A step is either a
    ReplicaProgress (reported through on_progress), an Exception (raised),
    or an ExecutionResult (returned). Missing clusters succeed empty.
    """

    def __init__(self, script=None, unreachable=()):
        self.script = script or {}
        self.unreachable = set(unreachable)
        self.calls = []
        self.contexts = []
        self._lock = threading.Lock()

    def check_connectivity(self, cluster):
        return cluster.name not in self.unreachable

    def replicate(self, context, remote_cluster, filters, on_progress):
        with self._lock:
            self.calls.append(remote_cluster.name)
            self.contexts.append(context)
        last = ReplicaProgress()
        for step in self.script.get(remote_cluster.name, []):
            if isinstance(step, ReplicaProgress):
                on_progress(step)
                last = step
            elif isinstance(step, Exception):
                raise step
            elif isinstance(step, ExecutionResult):
                return step
        return ExecutionResult.success(last)


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def registry():
    return InMemoryClusterRegistry(
        ClusterNodeInfo("center", "http://center:25901", ClusterNodeType.CENTER),
        [
            ClusterNodeInfo("A", "http://a:25901", ClusterNodeType.EDGE),
            ClusterNodeInfo("B", "http://b:25901", ClusterNodeType.EDGE),
            ClusterNodeInfo("C", "http://c:25901", ClusterNodeType.EDGE),
        ],
    )


@pytest.fixture
def task_dao(store):
    return ReplicaTaskDao(store)


@pytest.fixture
def record_dao(store):
    return ReplicaRecordDao(store)


@pytest.fixture
def detail_dao(store):
    return ReplicaRecordDetailDao(store)


@pytest.fixture
def record_service(task_dao, record_dao, detail_dao, clock):
    return ReplicaRecordService(task_dao, record_dao, detail_dao, clock=clock)


@pytest.fixture
def make_task(task_dao):
    """Insert a WAITING task and return it."""

    def _make(key="task-1", remotes=("A", "B"), cron=None, **overrides):
        plan = ExecutionPlan(cron_expression=cron)
        task = ReplicaTask(
            key=key,
            name=overrides.pop("name", f"name-{key}"),
            local_project_id="proj",
            local_repo_name="docker-local",
            remote_cluster_set=frozenset(remotes),
            replica_type=ReplicaType.SCHEDULED if cron else ReplicaType.RUN_ONCE,
            setting=overrides.pop("setting", ReplicaSetting(execution_plan=plan)),
            created_date=T0,
            **overrides,
        )
        return task_dao.insert(task)

    return _make
