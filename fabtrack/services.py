"""Service layer that exposes the work-order use-cases to callers."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Union
from uuid import uuid4

from .domain import (
    ActualUsage,
    OverallStatus,
    PrintStageActual,
    QuoteLineItem,
    Setting,
    Stage,
    StageActual,
    StageKind,
    StageStatus,
    ValidationError,
    WorkOrder,
    ensure_utc,
    utc_now,
)
from .lead_times import (
    LeadTimeScheduler,
    LeadTimeSummary,
    index_quote_items,
    quoted_hours_for_stage,
)
from .repository import RecordNotFoundError
from .settings import LEAD_TIME_SETTING_KEYS, ensure_lead_time_settings
from .status import DEFAULT_NOTE_TIMESTAMP_FORMAT, StaleViewHook, StepStatusController
from .store import SettingsStore, WorkOrderStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HoursReconciliation:
    """Quoted versus actual hours for one stage."""

    stage_id: str
    kind: StageKind
    status: StageStatus
    quoted_hours: float
    actual_hours: Optional[float]
    variance_hours: Optional[float]


class FabricationService:
    """Facade that exposes work-order use-cases to clients."""

    def __init__(
        self,
        store: Optional[WorkOrderStore] = None,
        settings: Optional[SettingsStore] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        note_timezone: str = "UTC",
        note_timestamp_format: str = DEFAULT_NOTE_TIMESTAMP_FORMAT,
        on_stale: Optional[StaleViewHook] = None,
    ) -> None:
        self.store = store or WorkOrderStore()
        self.settings = settings or SettingsStore()
        self._clock = clock
        self.status_controller = StepStatusController(
            self.store,
            clock=clock,
            note_timezone=note_timezone,
            note_timestamp_format=note_timestamp_format,
            on_stale=on_stale,
        )
        self.scheduler = LeadTimeScheduler(self.store, self.settings, clock=clock)

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------
    def create_work_order(
        self,
        customer_name: str,
        project_details: str,
        stage_kinds: Iterable[Union[StageKind, str]],
        *,
        quote_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> WorkOrder:
        customer_name = (customer_name or "").strip()
        project_details = (project_details or "").strip()
        if not customer_name:
            raise ValidationError("Customer name is required")
        kinds = sorted(
            dict.fromkeys(StageKind.parse(kind) for kind in stage_kinds),
            key=lambda kind: kind.sort_order,
        )
        if not kinds:
            raise ValidationError("Select at least one service")
        if not project_details:
            raise ValidationError("Project details are required")

        work_order = WorkOrder(
            id=str(uuid4()),
            customer_name=customer_name,
            project_details=project_details,
            stage_kinds=tuple(kinds),
            created_at=ensure_utc(created_at or self._clock()),
            quote_id=quote_id or None,
        )
        stages = [
            Stage(id=str(uuid4()), work_order_id=work_order.id, kind=kind)
            for kind in kinds
        ]
        with self.store.unit_of_work(f"intake:{work_order.id}"):
            self.store.add_work_order(work_order, stages)
        logger.info(
            "Created work order %s for %s (%s)",
            work_order.id,
            customer_name,
            ", ".join(kind.value for kind in kinds),
        )
        return work_order

    def link_quote(self, work_order_id: str, quote_id: Optional[str]) -> WorkOrder:
        return self.store.link_quote(work_order_id, quote_id or None)

    def add_quote_line_item(
        self,
        quote_id: str,
        service_type: Union[StageKind, str],
        *,
        labor_hours: float = 0.0,
        print_time_hours: float = 0.0,
        support_removal_hours: float = 0.0,
        setup_hours: float = 0.0,
        admin_hours: float = 0.0,
    ) -> QuoteLineItem:
        if not quote_id:
            raise ValidationError("A quote id is required")
        item = QuoteLineItem(
            id=str(uuid4()),
            quote_id=quote_id,
            service_type=StageKind.parse(service_type),
            labor_hours=labor_hours,
            print_time_hours=print_time_hours,
            support_removal_hours=support_removal_hours,
            setup_hours=setup_hours,
            admin_hours=admin_hours,
        )
        self.store.add_quote_line_item(item)
        return item

    # ------------------------------------------------------------------
    # Stage progress
    # ------------------------------------------------------------------
    def transition_stage(
        self,
        stage_id: str,
        target_status: Union[StageStatus, str],
        note: Optional[str] = None,
    ) -> OverallStatus:
        return self.status_controller.transition_stage(stage_id, target_status, note)

    def progress_label(self, work_order_id: str) -> str:
        """Short human description of where a work order currently stands."""

        work_order = self.store.get_work_order(work_order_id)
        stages = self.store.list_stages_for_work_order(work_order_id)
        active = next(
            (stage for stage in stages if stage.status == StageStatus.IN_PROGRESS), None
        )
        if active is not None:
            return f"{active.kind.value} In Progress"
        upcoming = next(
            (
                stage
                for stage in stages
                if stage.status in {StageStatus.NOT_STARTED, StageStatus.WAITING}
            ),
            None,
        )
        if work_order.overall_status == OverallStatus.IN_PROGRESS and upcoming is not None:
            return f"Waiting to Start {upcoming.kind.value}"
        return work_order.overall_status.value

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def recompute_lead_times(self) -> LeadTimeSummary:
        return self.scheduler.recompute_lead_times()

    def update_setting(self, key: str, value: float, *, recompute: bool = True) -> Setting:
        """Change a scheduling setting and, by default, re-run the scheduler."""

        if key not in LEAD_TIME_SETTING_KEYS:
            raise ValidationError(f"Unknown setting {key!r}")
        try:
            number = float(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Setting {key!r} needs a numeric value") from exc
        if not math.isfinite(number):
            raise ValidationError(f"Setting {key!r} needs a finite value")
        ensure_lead_time_settings(self.settings)
        setting = self.settings.update(key, number)
        logger.info("Setting %s set to %s", key, number)
        if recompute:
            self.recompute_lead_times()
        return setting

    # ------------------------------------------------------------------
    # Actuals
    # ------------------------------------------------------------------
    def record_stage_actual(
        self,
        stage_id: str,
        usage: ActualUsage,
        *,
        notes: str = "",
    ) -> StageActual:
        """Store post-completion actuals, keeping the stage's lead-time payload."""

        try:
            stage = self.store.get_stage(stage_id)
        except RecordNotFoundError as exc:
            raise ValidationError(str(exc)) from exc
        with self.store.unit_of_work(f"actuals:{stage.work_order_id}"):
            existing = self.store.get_stage_actual(stage_id)
            actual = StageActual(
                stage_id=stage.id,
                kind=stage.kind,
                usage=usage,
                notes=notes.strip(),
                elapsed_hours=existing.elapsed_hours if existing else None,
                lead_time=existing.lead_time if existing else None,
                updated_at=ensure_utc(self._clock()),
            )
            self.store.upsert_stage_actuals([actual])
        return actual

    def reconcile_hours(self, work_order_id: str) -> List[HoursReconciliation]:
        """Quoted against actual hours for every stage of a work order."""

        work_order = self.store.get_work_order(work_order_id)
        quote_map = {}
        if work_order.quote_id:
            items = self.store.list_quote_line_items([work_order.quote_id])
            quote_map = index_quote_items(items).get(work_order.quote_id, {})
        stages = self.store.list_stages_for_work_order(work_order_id)
        actuals = self.store.list_stage_actuals(stage.id for stage in stages)

        rows: List[HoursReconciliation] = []
        for stage in stages:
            quoted = quoted_hours_for_stage(stage.kind, quote_map)
            actual_hours = self._actual_hours(stage, actuals.get(stage.id), quote_map)
            rows.append(
                HoursReconciliation(
                    stage_id=stage.id,
                    kind=stage.kind,
                    status=stage.status,
                    quoted_hours=round(quoted, 2),
                    actual_hours=None if actual_hours is None else round(actual_hours, 2),
                    variance_hours=None
                    if actual_hours is None
                    else round(actual_hours - quoted, 2),
                )
            )
        return rows

    @staticmethod
    def _actual_hours(stage: Stage, actual: Optional[StageActual], quote_map) -> Optional[float]:
        if actual is None:
            return None
        if isinstance(actual.usage, PrintStageActual):
            if stage.status != StageStatus.COMPLETED:
                return None
            item = quote_map.get(StageKind.PRINT)
            baseline = 0.0
            if item is not None:
                baseline = item.print_time_hours + item.setup_hours + item.support_removal_hours
            return baseline + actual.usage.extra_hours
        if actual.actual_hours is not None:
            return actual.actual_hours
        return actual.elapsed_hours


__all__ = ["FabricationService", "HoursReconciliation"]
