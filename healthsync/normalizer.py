from __future__ import annotations

import logging
import math
from typing import Any, Callable

from .db import canonical_timestamp
from .errors import SkippedSample
from .metrics import MetricKind, MetricRegistry, Shape, workout_kind_name
from .models import Sample

logger = logging.getLogger("healthsync.normalizer")

SLEEP_STAGE_FIELDS = (
    "deep",
    "core",
    "rem",
    "awake",
    "asleep",
    "inBed",
    "sleepStart",
    "sleepEnd",
    "inBedStart",
    "inBedEnd",
)
_QUANTITY_FIELDS = {"qty", "value", "date", "source", "units"}

Extracted = tuple[Any, dict[str, Any]]


def _to_float(raw: Any, field_name: str) -> float:
    # bool is an int subclass; a True step count is not a step count.
    if isinstance(raw, bool) or raw is None:
        raise SkippedSample(f"missing or invalid {field_name}: {raw!r}")
    if isinstance(raw, dict):
        raw = raw.get("qty")
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise SkippedSample(f"invalid {field_name}: {raw!r}") from exc
    if not math.isfinite(value):
        raise SkippedSample(f"non-finite {field_name}: {raw!r}")
    return value


def _first_present(point: dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if point.get(k) is not None:
            return point[k]
    return None


def _extract_quantity(point: dict[str, Any]) -> Extracted:
    extra = {k: v for k, v in point.items() if k not in _QUANTITY_FIELDS and v is not None}
    return _first_present(point, "qty", "value"), extra


def _extract_sleep(point: dict[str, Any]) -> Extracted:
    stages = {k: point[k] for k in SLEEP_STAGE_FIELDS if point.get(k) is not None}
    return _first_present(point, "totalSleep", "asleep"), stages


def _extract_heart_rate(point: dict[str, Any]) -> Extracted:
    avg = _first_present(point, "Avg", "avg", "qty")
    extra: dict[str, Any] = {}
    for out_key, keys in (("min", ("Min", "min")), ("max", ("Max", "max")), ("avg", ("Avg", "avg"))):
        v = _first_present(point, *keys)
        if v is not None:
            extra[out_key] = v
    return avg, extra


EXTRACTORS: dict[Shape, Callable[[dict[str, Any]], Extracted]] = {
    Shape.QUANTITY: _extract_quantity,
    Shape.SLEEP: _extract_sleep,
    Shape.HEART_RATE: _extract_heart_rate,
}


class Normalizer:
    """Turns one exported data point into a canonical ``Sample``. Pure."""

    def __init__(self, registry: MetricRegistry | None = None) -> None:
        self.registry = registry or MetricRegistry()

    def resolve(self, metric_name: str) -> MetricKind:
        return self.registry.resolve(metric_name)

    def normalize(
        self,
        metric_name: str,
        unit: str | None,
        point: Any,
        source: str,
        kind: MetricKind | None = None,
    ) -> Sample:
        """Normalize one data point.

        Raises ``UnsupportedMetricKind`` for an unknown ``metric_name`` and
        ``SkippedSample`` when the point itself is unusable (no timestamp, no
        numeric primary value, or a unit the kind cannot convert).
        """
        kind = kind or self.resolve(metric_name)
        if not isinstance(point, dict):
            raise SkippedSample(f"{kind.name}: data point is not an object")

        timestamp = canonical_timestamp(point.get("date"))
        if timestamp is None:
            raise SkippedSample(f"{kind.name}: missing or malformed timestamp {point.get('date')!r}")

        primary, metadata = EXTRACTORS[kind.shape](point)
        raw_value = _to_float(primary, f"{kind.name} value")

        device = point.get("source")
        if device:
            metadata["source"] = device

        unit = point.get("units") or unit
        normalized = kind.normalize(raw_value, unit)
        if normalized is None:
            raise SkippedSample(f"{kind.name}: cannot convert unit {unit!r}")

        return Sample(
            metric_kind=kind.name,
            source=source,
            timestamp=timestamp,
            raw_value=raw_value,
            unit=unit,
            normalized_value=normalized,
            metadata=metadata,
        )

    def normalize_workout(self, workout: Any, source: str) -> Sample:
        if not isinstance(workout, dict):
            raise SkippedSample("workout is not an object")
        name = workout.get("name")
        metric_kind = workout_kind_name(name) if isinstance(name, str) else ""
        if not metric_kind:
            raise SkippedSample(f"workout without a usable name: {name!r}")

        timestamp = canonical_timestamp(workout.get("start"))
        if timestamp is None:
            raise SkippedSample(f"{metric_kind}: missing or malformed start {workout.get('start')!r}")

        duration = workout.get("duration")
        raw_value = 0.0 if duration is None else _to_float(duration, f"{metric_kind} duration")

        metadata = {
            k: workout[k]
            for k in ("end", "calories", "activeEnergyBurned", "distance", "source")
            if workout.get(k) is not None
        }
        return Sample(
            metric_kind=metric_kind,
            source=source,
            timestamp=timestamp,
            raw_value=raw_value,
            unit="s",
            normalized_value=raw_value,
            metadata=metadata,
        )
