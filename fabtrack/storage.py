"""SQLite persistence for work orders, stages, actuals, quotes and settings."""

from __future__ import annotations

import logging
import pickle
import sqlite3
import threading
from contextlib import contextmanager
from typing import Generic, Iterator, List, Optional, Sequence, TypeVar

from .domain import QuoteLineItem, Setting, Stage, StageActual, WorkOrder
from .repository import DataStoreError, DuplicateRecordError, RecordNotFoundError

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT = 30.0


class _ConnectionState:
    """Lock and open-transaction depth shared by the tables of one connection."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.depth = 0


class SQLiteRepository(Generic[T]):
    """Pickled records of one aggregate in a two-column SQLite table."""

    def __init__(
        self,
        connection: sqlite3.Connection,
        table: str,
        kind: str,
        state: Optional[_ConnectionState] = None,
    ) -> None:
        self._connection = connection
        self._table = table
        self.kind = kind
        self._state = state or _ConnectionState()
        self._write(
            f"CREATE TABLE IF NOT EXISTS {table} ("  # nosec - static table names
            "record_id TEXT PRIMARY KEY, payload BLOB NOT NULL)"
        )

    def _query(self, sql: str, params: Sequence[object] = ()) -> List[sqlite3.Row]:
        with self._state.lock:
            try:
                return self._connection.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise DataStoreError(f"Reading {self._table} failed: {exc}") from exc

    def _write(self, sql: str, params: Sequence[object] = ()) -> int:
        # autocommits unless ShopDatabase.transaction() has opened a transaction
        with self._state.lock:
            try:
                return self._connection.execute(sql, params).rowcount
            except sqlite3.Error as exc:
                raise DataStoreError(f"Writing {self._table} failed: {exc}") from exc

    def __contains__(self, record_id: object) -> bool:
        if not isinstance(record_id, str):  # pragma: no cover - non-string ids
            return False
        rows = self._query(
            f"SELECT 1 FROM {self._table} WHERE record_id = ? LIMIT 1", (record_id,)
        )
        return bool(rows)

    def add(self, record_id: str, record: T) -> None:
        inserted = self._write(
            f"INSERT INTO {self._table} (record_id, payload) VALUES (?, ?) "
            "ON CONFLICT(record_id) DO NOTHING",
            (record_id, pickle.dumps(record)),
        )
        if not inserted:
            raise DuplicateRecordError(f"{self.kind} {record_id!r} already exists")

    def upsert(self, record_id: str, record: T) -> None:
        self._write(
            f"INSERT INTO {self._table} (record_id, payload) VALUES (?, ?) "
            "ON CONFLICT(record_id) DO UPDATE SET payload = excluded.payload",
            (record_id, pickle.dumps(record)),
        )

    def get(self, record_id: str) -> T:
        rows = self._query(
            f"SELECT payload FROM {self._table} WHERE record_id = ?", (record_id,)
        )
        if not rows:
            raise RecordNotFoundError(f"{self.kind} {record_id!r} not found")
        return pickle.loads(rows[0]["payload"])

    def list(self) -> List[T]:
        rows = self._query(f"SELECT payload FROM {self._table} ORDER BY record_id")
        return [pickle.loads(row["payload"]) for row in rows]


class ShopDatabase:
    """One SQLite file holding every table of the tracker."""

    def __init__(self, path: str, timeout: float = DEFAULT_BUSY_TIMEOUT) -> None:
        try:
            connection = sqlite3.connect(
                path, timeout=timeout, isolation_level=None, check_same_thread=False
            )
        except sqlite3.Error as exc:
            raise DataStoreError(f"Cannot open database {path!r}: {exc}") from exc
        connection.row_factory = sqlite3.Row
        self._connection = connection
        self._state = _ConnectionState()

        def table(name: str, kind: str) -> SQLiteRepository:
            return SQLiteRepository(connection, name, kind, self._state)

        self.work_orders: SQLiteRepository[WorkOrder] = table("work_orders", "Work order")
        self.stages: SQLiteRepository[Stage] = table("stages", "Stage")
        self.stage_actuals: SQLiteRepository[StageActual] = table(
            "stage_actuals", "Actuals for stage"
        )
        self.quote_items: SQLiteRepository[QuoteLineItem] = table(
            "quote_line_items", "Quote line item"
        )
        self.settings: SQLiteRepository[Setting] = table("settings", "Setting")
        logger.debug("Opened shop database at %s", path)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._connection

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group reads and writes into one commit; roll back on any error.

        The outermost block takes SQLite's write lock up front with
        ``BEGIN IMMEDIATE``, so a check-then-write sequence inside it cannot
        interleave with another connection to the same file. Other writers
        wait up to the busy timeout and then get ``DataStoreError``.
        """

        with self._state.lock:
            if self._state.depth:
                self._state.depth += 1
                try:
                    yield
                finally:
                    self._state.depth -= 1
                return

            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise DataStoreError(f"Cannot start transaction: {exc}") from exc
            self._state.depth = 1
            try:
                yield
            except BaseException:
                self._state.depth = 0
                logger.debug("Rolling back shop database transaction")
                self._connection.rollback()
                raise
            self._state.depth = 0
            try:
                self._connection.commit()
            except sqlite3.Error as exc:
                self._connection.rollback()
                raise DataStoreError(f"Commit failed: {exc}") from exc

    def close(self) -> None:
        self._connection.close()

    def __enter__(self) -> "ShopDatabase":
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[BaseException],
    ) -> None:
        self.close()


__all__ = ["SQLiteRepository", "ShopDatabase"]
