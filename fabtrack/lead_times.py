"""Lead-time estimation and lane-based queue simulation for open work orders."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .domain import (
    LeadTimePayload,
    QuoteLineItem,
    Stage,
    StageActual,
    StageKind,
    StageStatus,
    WorkOrder,
    ensure_utc,
    utc_now,
)
from .settings import LeadTimeConfig, load_lead_time_config, to_number
from .store import SettingsStore, WorkOrderStore

logger = logging.getLogger(__name__)

FORMULA_VERSION = "v2_configurable_formula_plus_service_multiplier_and_capacity"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
HOURS_PER_DAY = 24


def lead_days(hours: float, kind: StageKind, config: LeadTimeConfig) -> int:
    """Calendar days a stage is expected to take for ``hours`` of quoted work."""

    h = max(0.0, to_number(hours))
    if h < config.hours_threshold:
        base = config.min_days_under_threshold
    else:
        bucketed = config.bucket_base_days + config.bucket_step_days * math.ceil(
            h / HOURS_PER_DAY
        )
        linear = config.linear_base_days + h / HOURS_PER_DAY
        base = math.ceil(min(bucketed, linear))
    return max(1, math.ceil(base * config.multiplier_for(kind)))


def quoted_hours_for_stage(
    kind: StageKind, items_by_kind: Mapping[StageKind, QuoteLineItem]
) -> float:
    item = items_by_kind.get(kind)
    if item is None:
        return 0.0
    if kind == StageKind.PRINT:
        total = (
            to_number(item.print_time_hours)
            + to_number(item.support_removal_hours)
            + to_number(item.setup_hours)
            + to_number(item.admin_hours)
        )
        return max(0.0, total)
    return max(0.0, to_number(item.labor_hours))


def index_quote_items(
    items: Sequence[QuoteLineItem],
) -> Dict[str, Dict[StageKind, QuoteLineItem]]:
    by_quote: Dict[str, Dict[StageKind, QuoteLineItem]] = {}
    for item in items:
        if not item.quote_id:
            continue
        by_quote.setdefault(item.quote_id, {})[item.service_type] = item
    return by_quote


@dataclass(slots=True)
class LanePool:
    """Free-at instants of the parallel lanes serving one stage kind."""

    kind: StageKind
    free_at: List[datetime] = field(default_factory=list)

    def resize(self, count: int) -> None:
        count = max(1, count)
        while len(self.free_at) < count:
            self.free_at.append(EPOCH)
        del self.free_at[count:]

    def earliest(self) -> Tuple[int, datetime]:
        index = min(range(len(self.free_at)), key=lambda i: (self.free_at[i], i))
        return index, self.free_at[index]

    def occupy(self, index: int, until: datetime) -> None:
        self.free_at[index] = until


@dataclass(slots=True)
class ScheduledStage:
    """Lane assignment for one pending stage."""

    stage_id: str
    work_order_id: str
    kind: StageKind
    lane_index: int
    payload: LeadTimePayload


@dataclass(slots=True)
class LeadTimeSummary:
    """Result of one full lead-time recompute."""

    scheduled: List[ScheduledStage] = field(default_factory=list)
    deadlines: Dict[str, Optional[datetime]] = field(default_factory=dict)

    @property
    def by_stage(self) -> Dict[str, LeadTimePayload]:
        return {entry.stage_id: entry.payload for entry in self.scheduled}


def simulate_lanes(
    work_orders: Sequence[WorkOrder],
    pending_stages: Sequence[Stage],
    quote_items: Sequence[QuoteLineItem],
    config: LeadTimeConfig,
    *,
    calculated_at: datetime,
) -> LeadTimeSummary:
    """Greedily place each pending stage on the earliest free lane of its kind.

    Work orders are taken in the given order (oldest first), stages within a
    work order by ``sort_order``. The result depends only on the arguments.
    """

    items_by_quote = index_quote_items(quote_items)
    stages_by_order: Dict[str, List[Stage]] = {}
    for stage in pending_stages:
        if stage.status == StageStatus.COMPLETED:
            continue
        stages_by_order.setdefault(stage.work_order_id, []).append(stage)

    pools: Dict[StageKind, LanePool] = {}
    summary = LeadTimeSummary()
    headroom = timedelta(days=config.queue_headroom_days)

    for order in work_orders:
        created_at = ensure_utc(order.created_at)
        quote_map = items_by_quote.get(order.quote_id, {}) if order.quote_id else {}
        order_stages = sorted(
            stages_by_order.get(order.id, []),
            key=lambda stage: (stage.sort_order or 0, stage.id),
        )
        latest_due: Optional[datetime] = None

        for stage in order_stages:
            hours = quoted_hours_for_stage(stage.kind, quote_map)
            days = lead_days(hours, stage.kind, config)
            lanes = config.lane_count_for(stage.kind)
            pool = pools.setdefault(stage.kind, LanePool(kind=stage.kind))
            pool.resize(lanes)

            lane_index, lane_free_at = pool.earliest()
            starts_at = max(created_at, lane_free_at)
            due_at = starts_at + timedelta(days=days)
            pool.occupy(lane_index, due_at + headroom)

            if latest_due is None or due_at > latest_due:
                latest_due = due_at

            payload = LeadTimePayload(
                quoted_hours=round(hours, 2),
                lead_days=days,
                queue_headroom_days=config.queue_headroom_days,
                queue_concurrency=lanes,
                lead_multiplier=config.multiplier_for(stage.kind),
                starts_at=starts_at,
                due_at=due_at,
                formula_version=FORMULA_VERSION,
                calculated_at=calculated_at,
            )
            summary.scheduled.append(
                ScheduledStage(
                    stage_id=stage.id,
                    work_order_id=order.id,
                    kind=stage.kind,
                    lane_index=lane_index,
                    payload=payload,
                )
            )
            logger.debug(
                "Stage %s (%s) on lane %d: %s -> %s",
                stage.id,
                stage.kind.value,
                lane_index,
                starts_at.isoformat(),
                due_at.isoformat(),
            )

        summary.deadlines[order.id] = latest_due
    return summary


class LeadTimeScheduler:
    """Recomputes stage due dates for every open work order from scratch.

    Reads are not locked against concurrent stage transitions; a recompute
    can observe a status change half-way. Re-running it converges because
    the simulation keeps no state between calls.
    """

    def __init__(
        self,
        store: WorkOrderStore,
        settings: SettingsStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock

    def recompute_lead_times(self) -> LeadTimeSummary:
        config = load_lead_time_config(self._settings)
        work_orders = self._store.list_open_work_orders()
        if not work_orders:
            logger.info("No open work orders; nothing to schedule")
            return LeadTimeSummary()

        order_ids = [order.id for order in work_orders]
        pending = self._store.list_pending_stages(order_ids)
        quote_ids = sorted({order.quote_id for order in work_orders if order.quote_id})
        quote_items = self._store.list_quote_line_items(quote_ids)

        summary = simulate_lanes(
            work_orders,
            pending,
            quote_items,
            config,
            calculated_at=ensure_utc(self._clock()),
        )

        stages_by_id = {stage.id: stage for stage in pending}
        with self._store.unit_of_work("lead-times"):
            existing = self._store.list_stage_actuals(stages_by_id)
            batch: List[StageActual] = []
            for entry in summary.scheduled:
                actual = existing.get(entry.stage_id) or StageActual.empty_for(
                    stages_by_id[entry.stage_id]
                )
                actual.lead_time = entry.payload
                batch.append(actual)
            self._store.upsert_stage_actuals(batch)
            for order_id in order_ids:
                self._store.update_work_order_deadline(order_id, summary.deadlines.get(order_id))

        logger.info(
            "Recomputed lead times for %d open work orders (%d stages)",
            len(work_orders),
            len(summary.scheduled),
        )
        return summary


__all__ = [
    "EPOCH",
    "FORMULA_VERSION",
    "LanePool",
    "LeadTimeScheduler",
    "LeadTimeSummary",
    "ScheduledStage",
    "index_quote_items",
    "lead_days",
    "quoted_hours_for_stage",
    "simulate_lanes",
]
