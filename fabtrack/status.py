"""Stage status transitions for work orders.

Only one stage of a work order may be ``In Progress`` at a time. Every
transition runs inside a unit of work on the store so that the repair pass,
the single-active check and the status/timestamp write are serialized per
store and either all land or none do.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from .domain import (
    OverallStatus,
    Stage,
    StageActual,
    StageStatus,
    ValidationError,
    ConflictError,
    ensure_utc,
    utc_now,
)
from .repository import RecordNotFoundError
from .store import WorkOrderStore

logger = logging.getLogger(__name__)

DEFAULT_NOTE_TIMESTAMP_FORMAT = "%m/%d/%Y, %I:%M:%S %p"

StaleViewHook = Callable[[Sequence[str]], None]

_LATEST = datetime.max.replace(tzinfo=timezone.utc)


def derive_overall_status(statuses: Iterable[StageStatus]) -> Optional[OverallStatus]:
    """Aggregate stage statuses; ``None`` when nothing can be derived."""

    statuses = list(statuses)
    if statuses and all(status == StageStatus.COMPLETED for status in statuses):
        return OverallStatus.COMPLETED
    if any(status == StageStatus.IN_PROGRESS for status in statuses):
        return OverallStatus.IN_PROGRESS
    if any(status == StageStatus.WAITING for status in statuses):
        return OverallStatus.WAITING
    return None


def append_note(existing: str, text: str, stamp: str) -> str:
    line = f"[{stamp}] {text.strip()}"
    if existing.strip():
        return f"{existing.rstrip()}\n\n{line}"
    return line


def apply_status_timestamps(stage: Stage, target: StageStatus, now: datetime) -> None:
    """Set the status of ``stage`` and its timestamps in one step."""

    if target == StageStatus.IN_PROGRESS:
        if stage.started_at is None:
            stage.started_at = now
        stage.paused_at = None
        stage.completed_at = None
    elif target == StageStatus.WAITING:
        stage.paused_at = now
    elif target == StageStatus.COMPLETED:
        stage.completed_at = now
        stage.paused_at = None
    stage.status = target
    stage.updated_at = now


def _active_precedence(stage: Stage) -> Tuple[bool, datetime, int]:
    if stage.started_at is None:
        return (True, _LATEST, stage.sort_order or 0)
    return (False, ensure_utc(stage.started_at), stage.sort_order or 0)


class StepStatusController:
    """Validates and applies stage status transitions."""

    def __init__(
        self,
        store: WorkOrderStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        note_timezone: str = "UTC",
        note_timestamp_format: str = DEFAULT_NOTE_TIMESTAMP_FORMAT,
        on_stale: Optional[StaleViewHook] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._note_zone = ZoneInfo(note_timezone)
        self._note_format = note_timestamp_format
        self._on_stale = on_stale

    def transition_stage(
        self,
        stage_id: str,
        target_status: StageStatus | str,
        note: Optional[str] = None,
    ) -> OverallStatus:
        """Move a stage to ``target_status`` and return the work order's status.

        Raises ``ValidationError`` for an unknown status or stage,
        ``ConflictError`` when another stage of the work order is already in
        progress, and lets ``DataStoreError`` from the store propagate.
        """

        target = StageStatus.parse(target_status)
        if not stage_id:
            raise ValidationError("A stage id is required")
        try:
            stage = self._store.get_stage(stage_id)
            self._store.get_work_order(stage.work_order_id)
        except RecordNotFoundError as exc:
            raise ValidationError(str(exc)) from exc
        work_order_id = stage.work_order_id

        blocking: Optional[Stage] = None
        with self._store.unit_of_work(f"stage-status:{work_order_id}"):
            now = ensure_utc(self._clock())
            self._repair_concurrent_active(work_order_id, now)
            stage = self._store.get_stage(stage_id)
            if target == StageStatus.IN_PROGRESS:
                blocking = next(
                    (
                        other
                        for other in self._store.list_stages_in_progress(work_order_id)
                        if other.id != stage.id
                    ),
                    None,
                )
            if blocking is None:
                previous = stage.status
                if note and note.strip():
                    stamp = now.astimezone(self._note_zone).strftime(self._note_format)
                    stage.notes = append_note(stage.notes, note, stamp)
                apply_status_timestamps(stage, target, now)
                self._store.upsert_stage(stage)
                self._record_actual(stage)
                overall = self._recompute_overall_status(work_order_id)

        if blocking is not None:
            raise ConflictError(
                f"{blocking.kind.value} is already in progress on work order "
                f"{work_order_id}; pause or complete it first"
            )
        logger.info(
            "Stage %s (%s) moved %s -> %s; work order %s is %s",
            stage.id,
            stage.kind.value,
            previous.value,
            target.value,
            work_order_id,
            overall.value,
        )
        self._notify_stale(work_order_id)
        return overall

    # ------------------------------------------------------------------
    # Steps of a transition
    # ------------------------------------------------------------------
    def _repair_concurrent_active(self, work_order_id: str, now: datetime) -> List[Stage]:
        active = self._store.list_stages_in_progress(work_order_id)
        if len(active) <= 1:
            return []
        active.sort(key=_active_precedence)
        keep, demoted = active[0], active[1:]
        for stage in demoted:
            apply_status_timestamps(stage, StageStatus.WAITING, now)
            self._store.upsert_stage(stage)
        logger.warning(
            "Work order %s had %d stages in progress; kept %s, moved %s to Waiting",
            work_order_id,
            len(active),
            keep.id,
            ", ".join(stage.id for stage in demoted),
        )
        return demoted

    def _record_actual(self, stage: Stage) -> None:
        actual = self._store.get_stage_actual(stage.id)
        created = actual is None
        if actual is None:
            actual = StageActual.empty_for(stage)
        if stage.status == StageStatus.COMPLETED:
            if stage.started_at is not None and stage.completed_at is not None:
                elapsed = ensure_utc(stage.completed_at) - ensure_utc(stage.started_at)
                actual.elapsed_hours = max(elapsed.total_seconds(), 0.0) / 3600
        elif not created:
            return
        actual.updated_at = stage.updated_at
        self._store.upsert_stage_actuals([actual])

    def _recompute_overall_status(self, work_order_id: str) -> OverallStatus:
        stages = self._store.list_stages_for_work_order(work_order_id)
        work_order = self._store.get_work_order(work_order_id)
        derived = derive_overall_status(stage.status for stage in stages)
        if derived is None or derived == work_order.overall_status:
            return work_order.overall_status
        self._store.upsert_work_order_status(work_order_id, derived)
        logger.info(
            "Work order %s status %s -> %s",
            work_order_id,
            work_order.overall_status.value,
            derived.value,
        )
        return derived

    def _notify_stale(self, work_order_id: str) -> None:
        paths = [f"/work-orders/{work_order_id}", "/work-orders", "/"]
        logger.debug("Views stale after stage change: %s", ", ".join(paths))
        if self._on_stale is not None:
            self._on_stale(paths)


__all__ = [
    "DEFAULT_NOTE_TIMESTAMP_FORMAT",
    "StaleViewHook",
    "StepStatusController",
    "append_note",
    "apply_status_timestamps",
    "derive_overall_status",
]
