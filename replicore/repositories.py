"""
DAOs for the three entity kinds, built on a DocumentStore.

Each DAO converts between schema dataclasses and stored documents, so an
object handed out by a DAO is never the object the store keeps. Unique
indexes:
- replica_task: key, name
- replica_record: active_task_key (sparse; set only while RUNNING), which
  allows at most one active record per task
- replica_record_detail: (record_id, remote_cluster)
"""

from datetime import datetime
from typing import Any, Optional

from replicore.schemas import (
    ExecutionStatus,
    Page,
    PageRequest,
    ReplicaRecord,
    ReplicaRecordDetail,
    ReplicaTask,
    ReplicationStatus,
    ensure_utc,
)
from replicore.store import (
    ASCENDING,
    DESCENDING,
    Collection,
    DocumentStore,
    Filter,
    SortSpec,
    UniqueIndex,
)

TASK_COLLECTION = "replica_task"
RECORD_COLLECTION = "replica_record"
DETAIL_COLLECTION = "replica_record_detail"


def dt_value(value: datetime) -> str:
    """Filter value for a stored datetime field."""
    return ensure_utc(value).isoformat()


def _page(collection: Collection, query: Filter, sort: SortSpec, request: PageRequest) -> tuple[int, list[dict]]:
    total = collection.count(query)
    docs = collection.find(query, sort=sort, skip=request.skip, limit=request.limit)
    return total, docs


class ReplicaTaskDao:
    """Persistence for ReplicaTask."""

    def __init__(self, store: DocumentStore):
        self._collection = store.collection(
            TASK_COLLECTION,
            unique_indexes=(UniqueIndex(("key",)), UniqueIndex(("name",))),
        )

    def insert(self, task: ReplicaTask) -> ReplicaTask:
        """Insert a new task. Raises ConflictError on duplicate key or name."""
        return ReplicaTask.from_dict(self._collection.insert(task.to_dict()))

    def save(self, task: ReplicaTask) -> ReplicaTask:
        """Replace a stored task by id."""
        if task.id is None:
            raise ValueError("cannot save a task without id")
        return ReplicaTask.from_dict(self._collection.replace(task.id, task.to_dict()))

    def compare_and_set_status(
        self,
        task: ReplicaTask,
        expected: set[ReplicationStatus],
        unchanged_since: Optional[ReplicaTask] = None,
    ) -> bool:
        """
        Save `task` only if the stored status is one of `expected`.

        With `unchanged_since`, the stored task must also still carry that
        task's last modification date, so edits made after it was read are
        never overwritten.

        Returns:
            True if saved, False if another writer changed the task first
        """
        if task.id is None:
            raise ValueError("cannot save a task without id")
        condition: Filter = {"status": {"$in": [s.value for s in expected]}}
        if unchanged_since is not None:
            condition["last_modified_date"] = unchanged_since.to_dict()["last_modified_date"]
        return self._collection.replace_if(task.id, condition, task.to_dict())

    def find_by_key(self, key: str) -> Optional[ReplicaTask]:
        doc = self._collection.find_one({"key": key})
        return ReplicaTask.from_dict(doc) if doc else None

    def find_by_name(self, name: str) -> Optional[ReplicaTask]:
        doc = self._collection.find_one({"name": name})
        return ReplicaTask.from_dict(doc) if doc else None

    def find_page(self, query: Filter, request: PageRequest) -> Page[ReplicaTask]:
        total, docs = _page(self._collection, query, [("created_date", DESCENDING)], request)
        return Page.of(request, total, [ReplicaTask.from_dict(d) for d in docs])

    def list_all(self, query: Optional[Filter] = None) -> list[ReplicaTask]:
        docs = self._collection.find(query, sort=[("created_date", ASCENDING)])
        return [ReplicaTask.from_dict(d) for d in docs]

    def list_due(self, now: datetime) -> list[ReplicaTask]:
        """Enabled WAITING tasks whose next execution time is not after `now`."""
        docs = self._collection.find(
            {
                "enabled": True,
                "status": ReplicationStatus.WAITING.value,
                "next_execution_time": {"$lte": dt_value(now)},
            },
            sort=[("next_execution_time", ASCENDING)],
        )
        return [ReplicaTask.from_dict(d) for d in docs]

    def delete_by_key(self, key: str) -> int:
        return self._collection.delete_many({"key": key})


class ReplicaRecordDao:
    """Persistence for ReplicaRecord."""

    def __init__(self, store: DocumentStore):
        self._collection = store.collection(
            RECORD_COLLECTION,
            unique_indexes=(UniqueIndex(("active_task_key",), sparse=True),),
        )

    @staticmethod
    def _to_doc(record: ReplicaRecord) -> dict[str, Any]:
        doc = record.to_dict()
        doc["active_task_key"] = (
            record.task_key if record.status == ExecutionStatus.RUNNING else None
        )
        return doc

    def insert(self, record: ReplicaRecord) -> ReplicaRecord:
        """
        Insert a record.

        Raises:
            ConflictError: If the task already has a RUNNING record
        """
        doc = self._to_doc(record)
        if not doc["id"]:
            doc.pop("id")
        return ReplicaRecord.from_dict(self._collection.insert(doc))

    def save(self, record: ReplicaRecord) -> ReplicaRecord:
        return ReplicaRecord.from_dict(self._collection.replace(record.id, self._to_doc(record)))

    def find_by_id(self, record_id: str) -> Optional[ReplicaRecord]:
        doc = self._collection.find_by_id(record_id)
        return ReplicaRecord.from_dict(doc) if doc else None

    def list_by_task_key(self, task_key: str) -> list[ReplicaRecord]:
        docs = self._collection.find({"task_key": task_key}, sort=[("start_time", DESCENDING)])
        return [ReplicaRecord.from_dict(d) for d in docs]

    def find_page(self, query: Filter, request: PageRequest) -> Page[ReplicaRecord]:
        total, docs = _page(self._collection, query, [("start_time", DESCENDING)], request)
        return Page.of(request, total, [ReplicaRecord.from_dict(d) for d in docs])

    def count(self, query: Optional[Filter] = None) -> int:
        return self._collection.count(query)

    def list_expired(self, task_key: str, before: datetime) -> list[ReplicaRecord]:
        """Terminal records of a task that started before `before`."""
        docs = self._collection.find({
            "task_key": task_key,
            "status": {"$ne": ExecutionStatus.RUNNING.value},
            "start_time": {"$lt": dt_value(before)},
        })
        return [ReplicaRecord.from_dict(d) for d in docs]

    def delete_by_id(self, record_id: str) -> bool:
        return self._collection.delete_by_id(record_id)

    def delete_by_task_key(self, task_key: str) -> int:
        return self._collection.delete_many({"task_key": task_key})


class ReplicaRecordDetailDao:
    """Persistence for ReplicaRecordDetail."""

    def __init__(self, store: DocumentStore):
        self._collection = store.collection(
            DETAIL_COLLECTION,
            unique_indexes=(UniqueIndex(("record_id", "remote_cluster")),),
        )

    def insert(self, detail: ReplicaRecordDetail) -> ReplicaRecordDetail:
        """
        Insert a detail.

        Raises:
            ConflictError: If the record already has a detail for this remote cluster
        """
        doc = detail.to_dict()
        if not doc["id"]:
            doc.pop("id")
        return ReplicaRecordDetail.from_dict(self._collection.insert(doc))

    def save(self, detail: ReplicaRecordDetail) -> ReplicaRecordDetail:
        return ReplicaRecordDetail.from_dict(self._collection.replace(detail.id, detail.to_dict()))

    def find_by_id(self, detail_id: str) -> Optional[ReplicaRecordDetail]:
        doc = self._collection.find_by_id(detail_id)
        return ReplicaRecordDetail.from_dict(doc) if doc else None

    def list_by_record_id(self, record_id: str) -> list[ReplicaRecordDetail]:
        docs = self._collection.find(
            {"record_id": record_id},
            sort=[("start_time", ASCENDING), ("id", ASCENDING)],
        )
        return [ReplicaRecordDetail.from_dict(d) for d in docs]

    def find_page(self, query: Filter, request: PageRequest) -> Page[ReplicaRecordDetail]:
        total, docs = _page(
            self._collection, query, [("start_time", ASCENDING), ("id", ASCENDING)], request
        )
        return Page.of(request, total, [ReplicaRecordDetail.from_dict(d) for d in docs])

    def count(self, query: Optional[Filter] = None) -> int:
        return self._collection.count(query)

    def delete_by_record_id(self, record_id: str) -> int:
        return self._collection.delete_many({"record_id": record_id})
