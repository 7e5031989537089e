"""Work-order tracking for a contract fabrication shop.

This package tracks scan, design and print stages of customer work orders,
keeps at most one stage per order active, and estimates stage due dates
against the shop's limited parallel capacity.
"""

from .domain import (
    ConflictError,
    OverallStatus,
    PrintStageActual,
    SimpleStageActual,
    Stage,
    StageActual,
    StageKind,
    StageStatus,
    ValidationError,
    WorkOrder,
)
from .lead_times import LeadTimeScheduler, lead_days
from .repository import DataStoreError
from .services import FabricationService, HoursReconciliation
from .status import StepStatusController

__all__ = [
    "ConflictError",
    "DataStoreError",
    "FabricationService",
    "HoursReconciliation",
    "LeadTimeScheduler",
    "OverallStatus",
    "PrintStageActual",
    "SimpleStageActual",
    "Stage",
    "StageActual",
    "StageKind",
    "StageStatus",
    "StepStatusController",
    "ValidationError",
    "WorkOrder",
    "lead_days",
]
