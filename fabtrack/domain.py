"""Core data structures for the contract fabrication work-order tracker."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union


class ValidationError(ValueError):
    """Raised when caller input is malformed or references nothing."""


class ConflictError(RuntimeError):
    """Raised when a change would leave two stages of a work order active."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC instant (naive values are taken as UTC)."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StageKind(str, Enum):
    """Fabrication services a work order can request."""

    SCANNING = "3D Scanning"
    DESIGN = "3D Design"
    PRINT = "Contract Print"
    TESTING = "Material Testing"

    @property
    def sort_order(self) -> int:
        return STAGE_SORT_ORDER[self]

    @property
    def quote_key(self) -> str:
        return {
            StageKind.SCANNING: "3D_SCANNING",
            StageKind.DESIGN: "3D_DESIGN",
            StageKind.PRINT: "CONTRACT_PRINTING",
            StageKind.TESTING: "MATERIAL_TESTING",
        }[self]

    @property
    def setting_suffix(self) -> str:
        return {
            StageKind.SCANNING: "scanning",
            StageKind.DESIGN: "design",
            StageKind.PRINT: "contract_print",
            StageKind.TESTING: "testing",
        }[self]

    @classmethod
    def parse(cls, value: Union[str, "StageKind"]) -> "StageKind":
        if isinstance(value, StageKind):
            return value
        token = str(value or "").strip()
        if token == "Contract Printing":
            return cls.PRINT
        for kind in cls:
            if token.lower() in {kind.value.lower(), kind.name.lower(), kind.quote_key.lower()}:
                return kind
        raise ValidationError(f"Unknown stage kind {value!r}")


class StageStatus(str, Enum):
    """Lifecycle of a single stage."""

    NOT_STARTED = "Not Started"
    WAITING = "Waiting"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"

    @classmethod
    def parse(cls, value: Union[str, "StageStatus"]) -> "StageStatus":
        if isinstance(value, StageStatus):
            return value
        token = str(value or "").strip()
        for status in cls:
            if token.lower() in {status.value.lower(), status.name.lower()}:
                return status
        raise ValidationError(f"Unknown stage status {value!r}")


class OverallStatus(str, Enum):
    """Aggregate status of a work order, derived from its stages."""

    NEW = "New"
    IN_PROGRESS = "In Progress"
    WAITING = "Waiting"
    COMPLETED = "Completed"


STAGE_SORT_ORDER: Dict[StageKind, int] = {
    StageKind.SCANNING: 1,
    StageKind.DESIGN: 2,
    StageKind.PRINT: 3,
    StageKind.TESTING: 4,
}


@dataclass(slots=True)
class WorkOrder:
    """A customer's fabrication request (one or more stages)."""

    id: str
    customer_name: str
    project_details: str
    stage_kinds: Tuple[StageKind, ...]
    overall_status: OverallStatus = OverallStatus.NEW
    created_at: datetime = field(default_factory=utc_now)
    job_deadline: Optional[datetime] = None
    quote_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.overall_status != OverallStatus.COMPLETED


@dataclass(slots=True)
class Stage:
    """One service step of a work order."""

    id: str
    work_order_id: str
    kind: StageKind
    status: StageStatus = StageStatus.NOT_STARTED
    sort_order: Optional[int] = None
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notes: str = ""
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if self.sort_order is None:
            self.sort_order = self.kind.sort_order


@dataclass(slots=True)
class QuoteLineItem:
    """Quoted effort for one service on a quote."""

    id: str
    quote_id: str
    service_type: StageKind
    labor_hours: float = 0.0
    print_time_hours: float = 0.0
    support_removal_hours: float = 0.0
    setup_hours: float = 0.0
    admin_hours: float = 0.0


@dataclass(slots=True, frozen=True)
class LeadTimePayload:
    """Scheduler output recorded for one pending stage."""

    quoted_hours: float
    lead_days: int
    queue_headroom_days: float
    queue_concurrency: int
    lead_multiplier: float
    starts_at: datetime
    due_at: datetime
    formula_version: str
    calculated_at: datetime


@dataclass(slots=True)
class MaterialUsage:
    """Extra material consumed by a print beyond the quoted amount."""

    material_id: str
    grams: float

    def __post_init__(self) -> None:
        if not self.material_id:
            raise ValidationError("Material usage requires a material id")
        if self.grams < 0:
            raise ValidationError("Material usage grams must not be negative")


@dataclass(slots=True)
class SimpleStageActual:
    """Actual effort for scanning, design and testing stages."""

    actual_hours: Optional[float] = None

    def __post_init__(self) -> None:
        if self.actual_hours is not None and self.actual_hours < 0:
            raise ValidationError("Actual hours must not be negative")


@dataclass(slots=True)
class PrintStageActual:
    """Actual usage recorded against a contract print stage."""

    restarted: bool = False
    extra_machine_hours: float = 0.0
    extra_setup_hours: float = 0.0
    extra_support_hours: float = 0.0
    extra_material_usage: List[MaterialUsage] = field(default_factory=list)
    cost_breakdown: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("extra_machine_hours", "extra_setup_hours", "extra_support_hours"):
            if getattr(self, name) < 0:
                raise ValidationError(f"{name} must not be negative")

    @property
    def extra_hours(self) -> float:
        return self.extra_machine_hours + self.extra_setup_hours + self.extra_support_hours


ActualUsage = Union[SimpleStageActual, PrintStageActual]


@dataclass(slots=True)
class StageActual:
    """Recorded actuals and the latest lead-time payload for a stage."""

    stage_id: str
    kind: StageKind
    usage: ActualUsage
    notes: str = ""
    elapsed_hours: Optional[float] = None
    lead_time: Optional[LeadTimePayload] = None
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        expected = PrintStageActual if self.kind == StageKind.PRINT else SimpleStageActual
        if not isinstance(self.usage, expected):
            raise ValidationError(
                f"{self.kind.value} actuals must be recorded as {expected.__name__}"
            )

    @property
    def actual_hours(self) -> Optional[float]:
        if isinstance(self.usage, SimpleStageActual):
            return self.usage.actual_hours
        return None

    @classmethod
    def empty_for(cls, stage: Stage) -> "StageActual":
        usage: ActualUsage = (
            PrintStageActual() if stage.kind == StageKind.PRINT else SimpleStageActual()
        )
        return cls(stage_id=stage.id, kind=stage.kind, usage=usage)


@dataclass(slots=True)
class Setting:
    """Numeric configuration value with a human label and unit."""

    key: str
    label: str
    unit: str
    value: float
    updated_at: datetime = field(default_factory=utc_now)


__all__ = [
    "ValidationError",
    "ConflictError",
    "utc_now",
    "ensure_utc",
    "StageKind",
    "StageStatus",
    "OverallStatus",
    "STAGE_SORT_ORDER",
    "WorkOrder",
    "Stage",
    "QuoteLineItem",
    "LeadTimePayload",
    "MaterialUsage",
    "SimpleStageActual",
    "PrintStageActual",
    "ActualUsage",
    "StageActual",
    "Setting",
]
