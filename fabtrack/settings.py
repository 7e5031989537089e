"""Lead-time scheduling parameters stored in the settings table."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Tuple

from .domain import Setting, StageKind
from .store import SettingsStore

# key, label, unit, default, minimum
_SCALAR_SETTINGS: Tuple[Tuple[str, str, str, float, float], ...] = (
    ("lead_time_hours_threshold", "Lead Time Hours Threshold", "hours", 36, 1),
    ("lead_time_min_days_under_threshold", "Lead Time Min Days (< threshold)", "days", 5, 1),
    ("lead_time_bucket_base_days", "Lead Time Bucket Base Days", "days", 3, 0),
    ("lead_time_bucket_step_days", "Lead Time Bucket Step Days", "days", 2, 0),
    ("lead_time_linear_base_days", "Lead Time Linear Base Days", "days", 10, 1),
    ("lead_time_queue_headroom_days", "Lead Time Queue Headroom", "days", 2, 0),
)

MIN_MULTIPLIER = 0.1
MIN_CONCURRENCY = 1


def multiplier_key(kind: StageKind) -> str:
    return f"lead_time_multiplier_{kind.setting_suffix}"


def concurrency_key(kind: StageKind) -> str:
    return f"lead_time_concurrency_{kind.setting_suffix}"


def default_settings() -> List[Setting]:
    """Every lead-time setting with its default value."""

    defaults = [
        Setting(key=key, label=label, unit=unit, value=float(value))
        for key, label, unit, value, _ in _SCALAR_SETTINGS
    ]
    for kind in StageKind:
        defaults.append(
            Setting(
                key=multiplier_key(kind),
                label=f"Lead Time Multiplier - {kind.value}",
                unit="x",
                value=1.0,
            )
        )
    for kind in StageKind:
        defaults.append(
            Setting(
                key=concurrency_key(kind),
                label=f"Queue Capacity - {kind.value}",
                unit="parallel jobs",
                value=1.0,
            )
        )
    return defaults


LEAD_TIME_SETTING_KEYS: Tuple[str, ...] = tuple(setting.key for setting in default_settings())
_DEFAULTS: Dict[str, float] = {setting.key: setting.value for setting in default_settings()}


def to_number(value: Any) -> float:
    """Coerce a stored value to a finite float, 0.0 otherwise."""

    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def clamp_min(value: float, minimum: float) -> float:
    if not math.isfinite(value):
        return minimum
    return minimum if value < minimum else value


@dataclass(frozen=True)
class LeadTimeConfig:
    """Immutable snapshot of the scheduler parameters for one call."""

    hours_threshold: float = 36
    min_days_under_threshold: float = 5
    bucket_base_days: float = 3
    bucket_step_days: float = 2
    linear_base_days: float = 10
    queue_headroom_days: float = 2
    multipliers: Mapping[StageKind, float] = field(default_factory=lambda: MappingProxyType({}))
    lane_counts: Mapping[StageKind, int] = field(default_factory=lambda: MappingProxyType({}))

    def multiplier_for(self, kind: StageKind) -> float:
        return self.multipliers.get(kind, 1.0)

    def lane_count_for(self, kind: StageKind) -> int:
        return max(MIN_CONCURRENCY, int(self.lane_counts.get(kind, MIN_CONCURRENCY)))

    @classmethod
    def from_values(cls, values: Mapping[str, Any]) -> "LeadTimeConfig":
        """Build a snapshot from raw setting values, clamping each to its minimum."""

        def setting(key: str, minimum: float) -> float:
            raw = to_number(values[key]) if key in values else _DEFAULTS[key]
            return clamp_min(raw, minimum)

        scalars = {key: setting(key, minimum) for key, _, _, _, minimum in _SCALAR_SETTINGS}
        return cls(
            hours_threshold=scalars["lead_time_hours_threshold"],
            min_days_under_threshold=scalars["lead_time_min_days_under_threshold"],
            bucket_base_days=scalars["lead_time_bucket_base_days"],
            bucket_step_days=scalars["lead_time_bucket_step_days"],
            linear_base_days=scalars["lead_time_linear_base_days"],
            queue_headroom_days=scalars["lead_time_queue_headroom_days"],
            multipliers=MappingProxyType(
                {kind: setting(multiplier_key(kind), MIN_MULTIPLIER) for kind in StageKind}
            ),
            lane_counts=MappingProxyType(
                {
                    kind: int(math.floor(setting(concurrency_key(kind), MIN_CONCURRENCY)))
                    for kind in StageKind
                }
            ),
        )


def ensure_lead_time_settings(settings: SettingsStore) -> List[str]:
    return settings.seed_missing_defaults(default_settings())


def load_lead_time_config(settings: SettingsStore) -> LeadTimeConfig:
    """Seed missing keys, then read a fresh configuration snapshot."""

    ensure_lead_time_settings(settings)
    return LeadTimeConfig.from_values(settings.get_settings(LEAD_TIME_SETTING_KEYS))


__all__ = [
    "LEAD_TIME_SETTING_KEYS",
    "LeadTimeConfig",
    "clamp_min",
    "concurrency_key",
    "default_settings",
    "ensure_lead_time_settings",
    "load_lead_time_config",
    "multiplier_key",
    "to_number",
]
