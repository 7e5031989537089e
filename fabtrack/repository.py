"""In-memory record storage used when no database is configured."""

from __future__ import annotations

import copy
from typing import Dict, Generic, List, TypeVar

T = TypeVar("T")


class DataStoreError(RuntimeError):
    """Base exception for any read or write failure of the backing store."""


class DuplicateRecordError(DataStoreError):
    """Raised when a record id is inserted twice."""


class RecordNotFoundError(DataStoreError):
    """Raised when a record id is unknown."""


class InMemoryRepository(Generic[T]):
    """Records of one aggregate keyed by id.

    Records are copied on the way in and out, so callers can mutate what they
    read without touching stored state until they write it back.
    """

    def __init__(self, kind: str = "record") -> None:
        self.kind = kind
        self._records: Dict[str, T] = {}

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def add(self, record_id: str, record: T) -> None:
        if record_id in self._records:
            raise DuplicateRecordError(f"{self.kind} {record_id!r} already exists")
        self._records[record_id] = copy.deepcopy(record)

    def upsert(self, record_id: str, record: T) -> None:
        self._records[record_id] = copy.deepcopy(record)

    def get(self, record_id: str) -> T:
        if record_id not in self._records:
            raise RecordNotFoundError(f"{self.kind} {record_id!r} not found")
        return copy.deepcopy(self._records[record_id])

    def list(self) -> List[T]:
        return copy.deepcopy(list(self._records.values()))

    def snapshot(self) -> Dict[str, T]:
        return copy.deepcopy(self._records)

    def restore(self, snapshot: Dict[str, T]) -> None:
        self._records = snapshot


__all__ = [
    "InMemoryRepository",
    "DataStoreError",
    "DuplicateRecordError",
    "RecordNotFoundError",
]
