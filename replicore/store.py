"""
DocumentStore - generic persistence for tasks, records and details.

The store manages named collections of JSON-compatible documents. Each
collection offers:
- insert with unique indexes (duplicate natural key -> ConflictError)
- replace by id, and conditional replace (compare-and-swap on field values)
- find by id, find one, filtered/sorted/paginated find, count
- delete by filter

Storage backends:
- In-memory (for testing and single-process use)
- File-based (one JSON file per document, for development)

Filters are Mongo-style dicts: {"field": value} for equality, or
{"field": {"$in": [...], "$ne": x, "$gt": x, "$gte": x, "$lt": x,
"$lte": x, "$regex": pattern, "$exists": bool}}. Dotted paths descend into
nested documents and fan out over lists.

No transactional guarantee spans collections. Documents are deep-copied on
the way in and out so callers never share mutable state with the store.
"""

import copy
import json
import os
import random
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from replicore.errors import ConflictError, NotFoundError, StoreError

Document = dict[str, Any]
Filter = dict[str, Any]
SortSpec = Sequence[tuple[str, int]]

ASCENDING = 1
DESCENDING = -1


# Crockford's Base32 alphabet (excludes I, L, O, U)
CROCKFORD = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def _base32(value: int, width: int) -> str:
    chars = []
    for _ in range(width):
        value, digit = divmod(value, 32)
        chars.append(CROCKFORD[digit])
    return "".join(reversed(chars))


def generate_ulid() -> str:
    """
    Generate a 26-character ULID used as document id.

    The first 10 characters encode the millisecond timestamp and the last 16
    are random, so ids of records created later sort after earlier ones.
    """
    return _base32(int(time.time() * 1000), 10) + _base32(random.getrandbits(80), 16)


@dataclass(frozen=True)
class UniqueIndex:
    """
    A unique index over one or more top-level fields.

    A sparse index ignores documents where any indexed field is None, which
    allows "unique while set" constraints.
    """
    fields: tuple[str, ...]
    sparse: bool = False

    def key_of(self, doc: Document) -> Optional[tuple[Any, ...]]:
        values = tuple(doc.get(f) for f in self.fields)
        if self.sparse and any(v is None for v in values):
            return None
        return values


def _resolve_path(doc: Any, path: str) -> list[Any]:
    """Return every value reachable at a dotted path (lists fan out)."""
    values = [doc]
    for part in path.split("."):
        next_values = []
        for value in values:
            if isinstance(value, list):
                for item in value:
                    if isinstance(item, dict) and part in item:
                        next_values.append(item[part])
            elif isinstance(value, dict) and part in value:
                next_values.append(value[part])
        values = next_values
    expanded = []
    for value in values:
        if isinstance(value, list):
            expanded.extend(value)
        expanded.append(value)
    return expanded


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return False
    try:
        if op == "$gt":
            return actual > expected
        if op == "$gte":
            return actual >= expected
        if op == "$lt":
            return actual < expected
        return actual <= expected
    except TypeError:
        return False


def _match_condition(values: list[Any], condition: Any) -> bool:
    if not isinstance(condition, dict) or not any(k.startswith("$") for k in condition):
        if condition is None:
            return not values or any(v is None for v in values)
        return any(v == condition for v in values)

    for op, operand in condition.items():
        if op == "$in":
            if not any(v in operand for v in values):
                return False
        elif op == "$ne":
            if any(v == operand for v in values):
                return False
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            if not any(_compare(op, v, operand) for v in values):
                return False
        elif op == "$regex":
            pattern = re.compile(operand)
            if not any(isinstance(v, str) and pattern.search(v) for v in values):
                return False
        elif op == "$exists":
            present = any(v is not None for v in values)
            if present != bool(operand):
                return False
        else:
            raise StoreError(f"Unsupported filter operator: {op}")
    return True


def matches(doc: Document, query: Optional[Filter]) -> bool:
    """Check whether a document satisfies a filter."""
    if not query:
        return True
    return all(_match_condition(_resolve_path(doc, path), cond) for path, cond in query.items())


def _sort_key(field: str):
    def key(doc: Document):
        values = _resolve_path(doc, field)
        value = values[0] if values else None
        return (value is None, value if value is not None else "")
    return key


class Collection(ABC):
    """
    Abstract base class for a document collection.

    Subclasses provide raw storage (_load, _load_all, _write, _remove); this
    class implements indexing, filtering, sorting and paging on top, all
    under one lock so compare-and-swap is atomic within a process.
    """

    def __init__(self, name: str, unique_indexes: Iterable[UniqueIndex] = ()):
        self.name = name
        self.unique_indexes = tuple(unique_indexes)
        self._lock = threading.RLock()

    @abstractmethod
    def _load(self, doc_id: str) -> Optional[Document]:
        """Load one raw document, or None."""
        pass

    @abstractmethod
    def _load_all(self) -> list[Document]:
        """Load every raw document."""
        pass

    @abstractmethod
    def _write(self, doc: Document) -> None:
        """Persist a document (insert or overwrite by id)."""
        pass

    @abstractmethod
    def _remove(self, doc_id: str) -> None:
        """Delete a document by id."""
        pass

    def _check_unique(self, doc: Document) -> None:
        if not self.unique_indexes:
            return
        others = [d for d in self._load_all() if d.get("id") != doc.get("id")]
        for index in self.unique_indexes:
            key = index.key_of(doc)
            if key is None:
                continue
            for other in others:
                if index.key_of(other) == key:
                    raise ConflictError(
                        f"duplicate key in {self.name}: "
                        + ", ".join(f"{f}={v!r}" for f, v in zip(index.fields, key)),
                        collection=self.name,
                        key=dict(zip(index.fields, key)),
                    )

    def insert(self, doc: Document) -> Document:
        """
        Insert a new document.

        Assigns an id when the document has none.

        Raises:
            ConflictError: If the id or a unique index key already exists
        """
        doc = copy.deepcopy(doc)
        with self._lock:
            if not doc.get("id"):
                doc["id"] = generate_ulid()
            elif self._load(doc["id"]) is not None:
                raise ConflictError(
                    f"duplicate id in {self.name}: {doc['id']}",
                    collection=self.name,
                    key={"id": doc["id"]},
                )
            self._check_unique(doc)
            self._write(doc)
        return copy.deepcopy(doc)

    def replace(self, doc_id: str, doc: Document) -> Document:
        """
        Replace an existing document by id.

        Raises:
            NotFoundError: If no document has this id
            ConflictError: If the new content violates a unique index
        """
        doc = copy.deepcopy(doc)
        doc["id"] = doc_id
        with self._lock:
            if self._load(doc_id) is None:
                raise NotFoundError(self.name, doc_id)
            self._check_unique(doc)
            self._write(doc)
        return copy.deepcopy(doc)

    def replace_if(self, doc_id: str, expected: Filter, doc: Document) -> bool:
        """
        Replace a document only if it currently matches `expected`.

        Returns:
            True if the document was replaced, False if the condition failed

        Raises:
            NotFoundError: If no document has this id
        """
        doc = copy.deepcopy(doc)
        doc["id"] = doc_id
        with self._lock:
            current = self._load(doc_id)
            if current is None:
                raise NotFoundError(self.name, doc_id)
            if not matches(current, expected):
                return False
            self._check_unique(doc)
            self._write(doc)
        return True

    def find_by_id(self, doc_id: str) -> Optional[Document]:
        with self._lock:
            doc = self._load(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def find_one(self, query: Optional[Filter] = None) -> Optional[Document]:
        found = self.find(query, limit=1)
        return found[0] if found else None

    def find(
        self,
        query: Optional[Filter] = None,
        sort: Optional[SortSpec] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> list[Document]:
        """
        Find documents matching a filter.

        Args:
            query: Mongo-style filter (None matches everything)
            sort: (field, ASCENDING|DESCENDING) pairs, applied in order
            skip: Number of matches to skip
            limit: Maximum number of documents to return

        Returns:
            Copies of the matching documents
        """
        with self._lock:
            docs = [d for d in self._load_all() if matches(d, query)]
        # Stable sorts applied from the least significant key
        docs.sort(key=lambda d: d.get("id") or "")
        for field, direction in reversed(list(sort or [])):
            docs.sort(key=_sort_key(field), reverse=direction == DESCENDING)
        end = None if limit is None else skip + limit
        return copy.deepcopy(docs[skip:end])

    def count(self, query: Optional[Filter] = None) -> int:
        with self._lock:
            return sum(1 for d in self._load_all() if matches(d, query))

    def delete_by_id(self, doc_id: str) -> bool:
        with self._lock:
            if self._load(doc_id) is None:
                return False
            self._remove(doc_id)
        return True

    def delete_many(self, query: Optional[Filter] = None) -> int:
        """Delete every matching document and return how many were removed."""
        with self._lock:
            doomed = [d["id"] for d in self._load_all() if matches(d, query)]
            for doc_id in doomed:
                self._remove(doc_id)
        return len(doomed)


class InMemoryCollection(Collection):
    """
    In-memory collection for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self, name: str, unique_indexes: Iterable[UniqueIndex] = ()):
        super().__init__(name, unique_indexes)
        self._docs: dict[str, Document] = {}

    def _load(self, doc_id: str) -> Optional[Document]:
        return self._docs.get(doc_id)

    def _load_all(self) -> list[Document]:
        return list(self._docs.values())

    def _write(self, doc: Document) -> None:
        self._docs[doc["id"]] = doc

    def _remove(self, doc_id: str) -> None:
        self._docs.pop(doc_id, None)


class FileCollection(Collection):
    """
    File-based collection: one JSON file per document.

    Directory structure:
        {store_dir}/{collection}/{id}.json

    Writes go through a temp file and os.replace. The lock is per process;
    concurrent writers from several processes are not coordinated.
    """

    def __init__(self, store_dir: Path | str, name: str, unique_indexes: Iterable[UniqueIndex] = ()):
        super().__init__(name, unique_indexes)
        self._dir = Path(store_dir) / name
        self._dir.mkdir(parents=True, exist_ok=True)

    def _path(self, doc_id: str) -> Path:
        if not re.fullmatch(r"[A-Za-z0-9_.:-]+", doc_id) or doc_id.startswith("."):
            raise StoreError(f"Invalid document id for file storage: {doc_id!r}")
        return self._dir / f"{doc_id}.json"

    def _read(self, path: Path) -> Document:
        try:
            with open(path) as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupt document {path}: {e}") from e

    def _load(self, doc_id: str) -> Optional[Document]:
        path = self._path(doc_id)
        if not path.exists():
            return None
        return self._read(path)

    def _load_all(self) -> list[Document]:
        return [self._read(p) for p in sorted(self._dir.glob("*.json"))]

    def _write(self, doc: Document) -> None:
        path = self._path(doc["id"])
        tmp_path = path.with_name(f".{path.name}.tmp")
        with open(tmp_path, "w") as f:
            json.dump(doc, f, indent=2)
        os.replace(tmp_path, path)

    def _remove(self, doc_id: str) -> None:
        path = self._path(doc_id)
        if path.exists():
            path.unlink()


class DocumentStore(ABC):
    """
    Abstract base class for a set of named collections.

    collection() returns the same Collection object for the same name, so
    every DAO built on one store shares its locks.
    """

    def __init__(self):
        self._collections: dict[str, Collection] = {}
        self._lock = threading.Lock()

    def collection(self, name: str, unique_indexes: Iterable[UniqueIndex] = ()) -> Collection:
        with self._lock:
            if name not in self._collections:
                self._collections[name] = self._create_collection(name, tuple(unique_indexes))
            return self._collections[name]

    @abstractmethod
    def _create_collection(self, name: str, unique_indexes: tuple[UniqueIndex, ...]) -> Collection:
        pass


class InMemoryDocumentStore(DocumentStore):
    """In-memory store for testing."""

    def _create_collection(self, name: str, unique_indexes: tuple[UniqueIndex, ...]) -> Collection:
        return InMemoryCollection(name, unique_indexes)


class FileDocumentStore(DocumentStore):
    """File-based store rooted at a directory."""

    def __init__(self, store_dir: Path | str):
        super().__init__()
        self._store_dir = Path(store_dir).expanduser()
        self._store_dir.mkdir(parents=True, exist_ok=True)

    @property
    def store_dir(self) -> Path:
        return self._store_dir

    def _create_collection(self, name: str, unique_indexes: tuple[UniqueIndex, ...]) -> Collection:
        return FileCollection(self._store_dir, name, unique_indexes)


def open_store(backend: str, path: Optional[Path | str] = None) -> DocumentStore:
    """
    Open a store by backend name ("memory" or "file").

    Raises:
        ValueError: For an unknown backend or a file backend without a path
    """
    if backend == "memory":
        return InMemoryDocumentStore()
    if backend == "file":
        if path is None:
            raise ValueError("file store requires a path")
        return FileDocumentStore(path)
    raise ValueError(f"Unknown store backend: {backend}")
