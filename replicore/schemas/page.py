"""Paging request/response types used by the list operations."""

import math
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 1000


@dataclass(frozen=True)
class PageRequest:
    """1-based page request."""
    page_number: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    def __post_init__(self):
        if self.page_number < 1:
            raise ValueError("page_number must be >= 1")
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")

    @property
    def skip(self) -> int:
        return (self.page_number - 1) * self.page_size

    @property
    def limit(self) -> int:
        return self.page_size


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of results plus the total number of matching rows."""
    page_number: int
    page_size: int
    total_records: int
    records: list[T] = field(default_factory=list)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_records / self.page_size) if self.page_size else 0

    @classmethod
    def of(cls, request: PageRequest, total_records: int, records: list[T]) -> "Page[T]":
        return cls(request.page_number, request.page_size, total_records, list(records))

    def to_dict(self) -> dict[str, Any]:
        return {
            "page_number": self.page_number,
            "page_size": self.page_size,
            "total_records": self.total_records,
            "total_pages": self.total_pages,
            "records": [r.to_dict() if hasattr(r, "to_dict") else r for r in self.records],
        }
