"""Metric-kind registry.

One table answers every per-kind question the rest of the core asks: which
wire names map to the kind, how units are normalized, whether values are
summed or averaged, which granularity a query defaults to, and which samples a
query may count. Adding a kind or changing a policy means editing this table,
not the aggregation loop.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from .errors import UnsupportedMetricKind

logger = logging.getLogger("healthsync.metrics")

REALTIME_EXPORT_SOURCE = "health_auto_export"
FULL_EXPORT_SOURCE = "health_export_complete"

WORKOUT_PREFIX = "workout_"

GRANULARITIES = ("none", "daily", "weekly", "monthly", "yearly", "total")


class Aggregation(str, Enum):
    SUM = "sum"
    AVERAGE = "average"


class Shape(str, Enum):
    """Where a data point carries its primary quantity."""

    QUANTITY = "quantity"  # {"qty": ...}
    SLEEP = "sleep"  # {"totalSleep": ..., "deep": ..., "rem": ...}
    HEART_RATE = "heart_rate"  # {"Avg": ..., "Min": ..., "Max": ...}


@dataclass(frozen=True)
class UnitConversion:
    """Divisors from accepted units to ``canonical_unit``. Unit lookup ignores case."""

    canonical_unit: str
    divisors: dict[str, float]

    def convert(self, value: float, unit: str | None) -> float | None:
        if unit is None:
            return None
        divisor = self.divisors.get(unit.strip().lower())
        if divisor is None:
            return None
        return value / divisor

    def with_unit(self, unit: str, divisor: float) -> "UnitConversion":
        return UnitConversion(self.canonical_unit, {**self.divisors, unit.strip().lower(): float(divisor)})


@dataclass(frozen=True)
class SourceFilter:
    name: str
    predicate: Callable[[str, dict[str, Any]], bool]

    def __call__(self, source: str, metadata: dict[str, Any]) -> bool:
        return self.predicate(source, metadata)


def _is_wrist_device(metadata: dict[str, Any]) -> bool:
    device = metadata.get("source") or metadata.get("device") or ""
    return isinstance(device, str) and "watch" in device.lower()


def _prefer_realtime_or_watch(source: str, metadata: dict[str, Any]) -> bool:
    if source == REALTIME_EXPORT_SOURCE:
        return True
    return source == FULL_EXPORT_SOURCE and _is_wrist_device(metadata)


# Phone and watch both record the same walk; the full export carries both, the
# realtime path only carries the merged series.
DEVICE_PRIORITY = SourceFilter("device_priority", _prefer_realtime_or_watch)

ENERGY = UnitConversion("kcal", {"kcal": 1.0, "cal": 1.0, "kj": 4.184, "j": 4184.0})


@dataclass(frozen=True)
class MetricKind:
    name: str
    aggregation: Aggregation
    aliases: tuple[str, ...] = ()
    unit: str | None = None
    shape: Shape = Shape.QUANTITY
    conversion: UnitConversion | None = None
    source_filter: SourceFilter | None = None
    default_granularity: str = field(default="")

    def __post_init__(self) -> None:
        if not self.default_granularity:
            default = "daily" if self.cumulative else "none"
            object.__setattr__(self, "default_granularity", default)

    @property
    def cumulative(self) -> bool:
        return self.aggregation is Aggregation.SUM

    @property
    def convertible(self) -> bool:
        return self.conversion is not None

    def normalize(self, value: float, unit: str | None) -> float | None:
        """Canonical-unit value, or None when a convertible kind gets a unit it cannot convert."""
        if self.conversion is None:
            return value
        return self.conversion.convert(value, unit)


DEFAULT_KINDS: tuple[MetricKind, ...] = (
    MetricKind("step_count", Aggregation.SUM, ("steps",), unit="count", source_filter=DEVICE_PRIORITY),
    MetricKind(
        "active_energy",
        Aggregation.SUM,
        ("active-energy", "active_energy_burned"),
        unit="kcal",
        conversion=ENERGY,
    ),
    MetricKind(
        "basal_energy",
        Aggregation.SUM,
        ("basal_energy_burned", "basal-energy", "resting_energy"),
        unit="kcal",
        conversion=ENERGY,
    ),
    MetricKind(
        "distance",
        Aggregation.SUM,
        ("walking_running_distance", "walking-distance", "distance_walking_running"),
    ),
    MetricKind("exercise_minutes", Aggregation.SUM, ("apple_exercise_time", "exercise-minutes"), unit="min"),
    MetricKind("flights_climbed", Aggregation.SUM, ("flights-climbed",), unit="count"),
    MetricKind("heart_rate", Aggregation.AVERAGE, ("heart-rate",), unit="count/min", shape=Shape.HEART_RATE),
    MetricKind("resting_heart_rate", Aggregation.AVERAGE, ("resting-heart-rate",), unit="count/min"),
    MetricKind("walking_heart_rate", Aggregation.AVERAGE, ("walking_heart_rate_average",), unit="count/min"),
    MetricKind("hrv", Aggregation.AVERAGE, ("heart_rate_variability", "heart_rate_variability_sdnn"), unit="ms"),
    MetricKind("weight", Aggregation.AVERAGE, ("weight_body_mass", "body-weight", "body_mass")),
    MetricKind("body_fat_percentage", Aggregation.AVERAGE, ("body-fat",), unit="%"),
    MetricKind("respiratory_rate", Aggregation.AVERAGE, ("respiratory-rate",), unit="count/min"),
    MetricKind("blood_oxygen", Aggregation.AVERAGE, ("blood_oxygen_saturation", "oxygen_saturation"), unit="%"),
    MetricKind("vo2_max", Aggregation.AVERAGE, ("vo2-max",), unit="ml/(kg*min)"),
    MetricKind("sleep_analysis", Aggregation.AVERAGE, ("sleep",), unit="hr", shape=Shape.SLEEP),
)


def workout_kind_name(workout_name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", workout_name.strip().lower()).strip("_")
    return f"{WORKOUT_PREFIX}{slug}" if slug else ""


class MetricRegistry:
    def __init__(self, kinds: tuple[MetricKind, ...] | list[MetricKind] = DEFAULT_KINDS) -> None:
        self._kinds: dict[str, MetricKind] = {}
        self._by_wire_name: dict[str, str] = {}
        for kind in kinds:
            self.register(kind)

    def register(self, kind: MetricKind) -> None:
        self._kinds[kind.name] = kind
        for wire_name in (kind.name, *kind.aliases):
            self._by_wire_name[wire_name.lower()] = kind.name

    def resolve(self, name: str) -> MetricKind:
        key = (name or "").strip().lower()
        canonical = self._by_wire_name.get(key)
        if canonical is not None:
            return self._kinds[canonical]
        if key.startswith(WORKOUT_PREFIX) and len(key) > len(WORKOUT_PREFIX):
            # Workouts are stored as one sample per session, valued by duration.
            return MetricKind(key, Aggregation.SUM, unit="s")
        raise UnsupportedMetricKind(name, self.wire_names())

    def kinds(self) -> list[MetricKind]:
        return list(self._kinds.values())

    def wire_names(self) -> list[str]:
        return sorted(self._by_wire_name.keys())

    def add_conversion(self, name: str, unit: str, divisor: float) -> None:
        kind = self.resolve(name)
        if kind.conversion is None:
            raise ValueError(f"{kind.name} is not a convertible metric kind")
        self._kinds[kind.name] = replace(kind, conversion=kind.conversion.with_unit(unit, divisor))
        logger.info("Registered conversion %s: %s / %s -> %s", kind.name, unit, divisor, kind.conversion.canonical_unit)

    def set_source_filter(self, name: str, source_filter: SourceFilter | None) -> None:
        kind = self.resolve(name)
        self._kinds[kind.name] = replace(kind, source_filter=source_filter)
