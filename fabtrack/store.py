"""Work-order and settings stores consumed by the controller and scheduler."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import (
    Callable,
    ContextManager,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from .domain import (
    OverallStatus,
    QuoteLineItem,
    Setting,
    Stage,
    StageActual,
    StageStatus,
    WorkOrder,
    ensure_utc,
    utc_now,
)
from .repository import DuplicateRecordError, InMemoryRepository, RecordNotFoundError
from .storage import ShopDatabase, SQLiteRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

Repository = Union[InMemoryRepository[T], SQLiteRepository[T]]
TransactionFactory = Callable[[], ContextManager[None]]


class WorkOrderStore:
    """Persistence operations for work orders, stages, actuals and quotes.

    Repositories default to in-memory ones. When a ``transaction`` factory is
    given (see :meth:`from_database`) units of work run inside it; otherwise
    the in-memory repositories are snapshotted and restored on failure.
    """

    def __init__(
        self,
        work_order_repo: Optional[Repository[WorkOrder]] = None,
        stage_repo: Optional[Repository[Stage]] = None,
        stage_actual_repo: Optional[Repository[StageActual]] = None,
        quote_item_repo: Optional[Repository[QuoteLineItem]] = None,
        *,
        transaction: Optional[TransactionFactory] = None,
    ) -> None:
        self.work_orders = _or_memory(work_order_repo, "Work order")
        self.stages = _or_memory(stage_repo, "Stage")
        self.stage_actuals = _or_memory(stage_actual_repo, "Actuals for stage")
        self.quote_items = _or_memory(quote_item_repo, "Quote line item")
        self._transaction = transaction
        self._lock = threading.RLock()

    @classmethod
    def from_database(cls, database: ShopDatabase) -> "WorkOrderStore":
        return cls(
            work_order_repo=database.work_orders,
            stage_repo=database.stages,
            stage_actual_repo=database.stage_actuals,
            quote_item_repo=database.quote_items,
            transaction=database.transaction,
        )

    @contextmanager
    def unit_of_work(self, scope: str) -> Iterator[None]:
        """Serialize a read-check-write sequence and make its writes atomic."""

        with self._lock:
            if self._transaction is not None:
                with self._transaction():
                    yield
                return
            repos = (self.work_orders, self.stages, self.stage_actuals, self.quote_items)
            snapshots = [repo.snapshot() for repo in repos]
            try:
                yield
            except BaseException:
                logger.debug("Restoring in-memory state after failed unit of work %s", scope)
                for repo, snapshot in zip(repos, snapshots):
                    repo.restore(snapshot)
                raise

    # ------------------------------------------------------------------
    # Work orders
    # ------------------------------------------------------------------
    def add_work_order(self, work_order: WorkOrder, stages: Sequence[Stage]) -> None:
        self.work_orders.add(work_order.id, work_order)
        for stage in stages:
            self.stages.add(stage.id, stage)

    def get_work_order(self, work_order_id: str) -> WorkOrder:
        return self.work_orders.get(work_order_id)

    def upsert_work_order_status(self, work_order_id: str, status: OverallStatus) -> None:
        work_order = self.work_orders.get(work_order_id)
        work_order.overall_status = status
        self.work_orders.upsert(work_order.id, work_order)

    def update_work_order_deadline(
        self, work_order_id: str, due_at: Optional[datetime]
    ) -> None:
        work_order = self.work_orders.get(work_order_id)
        work_order.job_deadline = due_at
        self.work_orders.upsert(work_order.id, work_order)

    def link_quote(self, work_order_id: str, quote_id: Optional[str]) -> WorkOrder:
        work_order = self.work_orders.get(work_order_id)
        work_order.quote_id = quote_id
        self.work_orders.upsert(work_order.id, work_order)
        return work_order

    def list_open_work_orders(self) -> List[WorkOrder]:
        """Open work orders, oldest first."""

        open_orders = [order for order in self.work_orders.list() if order.is_open]
        open_orders.sort(key=lambda order: (ensure_utc(order.created_at), order.id))
        return open_orders

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def get_stage(self, stage_id: str) -> Stage:
        return self.stages.get(stage_id)

    def upsert_stage(self, stage: Stage) -> None:
        if stage.work_order_id not in self.work_orders:
            raise RecordNotFoundError(
                f"Work order {stage.work_order_id!r} for stage {stage.id!r} not found"
            )
        self.stages.upsert(stage.id, stage)

    def list_stages_for_work_order(self, work_order_id: str) -> List[Stage]:
        return _by_sort_order(
            stage for stage in self.stages.list() if stage.work_order_id == work_order_id
        )

    def list_stages_in_progress(self, work_order_id: str) -> List[Stage]:
        return [
            stage
            for stage in self.list_stages_for_work_order(work_order_id)
            if stage.status == StageStatus.IN_PROGRESS
        ]

    def list_pending_stages(self, work_order_ids: Iterable[str]) -> List[Stage]:
        wanted = set(work_order_ids)
        return _by_sort_order(
            stage
            for stage in self.stages.list()
            if stage.work_order_id in wanted and stage.status != StageStatus.COMPLETED
        )

    # ------------------------------------------------------------------
    # Quotes and actuals
    # ------------------------------------------------------------------
    def add_quote_line_item(self, item: QuoteLineItem) -> None:
        self.quote_items.add(item.id, item)

    def list_quote_line_items(self, quote_ids: Iterable[str]) -> List[QuoteLineItem]:
        wanted = set(quote_ids)
        if not wanted:
            return []
        return [item for item in self.quote_items.list() if item.quote_id in wanted]

    def get_stage_actual(self, stage_id: str) -> Optional[StageActual]:
        try:
            return self.stage_actuals.get(stage_id)
        except RecordNotFoundError:
            return None

    def list_stage_actuals(self, stage_ids: Iterable[str]) -> Dict[str, StageActual]:
        wanted = set(stage_ids)
        return {
            actual.stage_id: actual
            for actual in self.stage_actuals.list()
            if actual.stage_id in wanted
        }

    def upsert_stage_actuals(self, actuals: Sequence[StageActual]) -> None:
        for actual in actuals:
            if actual.stage_id not in self.stages:
                raise RecordNotFoundError(f"Stage {actual.stage_id!r} not found")
            self.stage_actuals.upsert(actual.stage_id, actual)


class SettingsStore:
    """Key/value scheduling settings with seeded defaults."""

    def __init__(self, setting_repo: Optional[Repository[Setting]] = None) -> None:
        self.settings = _or_memory(setting_repo, "Setting")

    @classmethod
    def from_database(cls, database: ShopDatabase) -> "SettingsStore":
        return cls(setting_repo=database.settings)

    def get_settings(self, keys: Iterable[str]) -> Dict[str, float]:
        wanted = set(keys)
        return {
            setting.key: setting.value
            for setting in self.settings.list()
            if setting.key in wanted
        }

    def seed_missing_defaults(self, defaults: Sequence[Setting]) -> List[str]:
        """Insert any default whose key is absent and return the seeded keys."""

        seeded: List[str] = []
        for default in defaults:
            if default.key in self.settings:
                continue
            try:
                self.settings.add(default.key, default)
            except DuplicateRecordError:
                # another seeder inserted the key after the membership check
                continue
            seeded.append(default.key)
        if seeded:
            logger.debug("Seeded missing settings: %s", ", ".join(seeded))
        return seeded

    def get(self, key: str) -> Setting:
        return self.settings.get(key)

    def update(self, key: str, value: float) -> Setting:
        setting = self.settings.get(key)
        setting.value = value
        setting.updated_at = utc_now()
        self.settings.upsert(setting.key, setting)
        return setting

    def list(self) -> List[Setting]:
        return sorted(self.settings.list(), key=lambda setting: setting.key)


def _or_memory(repo: Optional[Repository[T]], kind: str) -> Repository[T]:
    return InMemoryRepository(kind) if repo is None else repo


def _by_sort_order(stages: Iterable[Stage]) -> List[Stage]:
    return sorted(stages, key=lambda stage: (stage.sort_order or 0, stage.id))


__all__ = ["Repository", "WorkOrderStore", "SettingsStore", "TransactionFactory"]
