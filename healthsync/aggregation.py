from __future__ import annotations

import logging
import math
from contextlib import closing
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Callable, Iterator

from . import settings
from .db import Store, loads_metadata, today_local
from .errors import InvalidGranularity, InvalidRange
from .metrics import GRANULARITIES, WORKOUT_PREFIX, Aggregation, MetricKind, MetricRegistry

logger = logging.getLogger("healthsync.aggregation")

PRECISION = 2


def _iso_week(ts: str) -> str:
    year, week, _ = date.fromisoformat(ts[:10]).isocalendar()
    return f"{year}-W{week:02d}"


# Timestamps are stored as local ISO strings, so day/month/year are prefixes.
PERIOD_KEYS: dict[str, Callable[[str], str]] = {
    "daily": lambda ts: ts[:10],
    "weekly": _iso_week,
    "monthly": lambda ts: ts[:7],
    "yearly": lambda ts: ts[:4],
    "total": lambda ts: "total",
}


def _round(v: float | None) -> float | None:
    if v is None:
        return None
    return round(float(v), PRECISION)


def _parse_day(raw: Any, field_name: str) -> date | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw)[:10])
    except ValueError as exc:
        raise InvalidRange(f"Invalid {field_name}: {raw!r}. Expected YYYY-MM-DD") from exc


def _to_number(v: Any) -> float | None:
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)) and math.isfinite(v):
        return float(v)
    return None


@dataclass
class _Period:
    key: str
    total: float = 0.0
    count: int = 0
    low: float | None = None
    high: float | None = None
    first: str | None = None
    last: str | None = None
    unit: str | None = None

    def add(self, ts: str, value: float, low: float, high: float, unit: str | None) -> None:
        self.total += value
        self.count += 1
        self.low = low if self.low is None else min(self.low, low)
        self.high = high if self.high is None else max(self.high, high)
        if self.first is None:
            self.first = ts
            self.unit = unit
        self.last = ts

    def value(self, aggregation: Aggregation) -> float:
        if aggregation is Aggregation.SUM:
            return self.total
        return self.total / self.count


@dataclass(frozen=True)
class QueryRange:
    start: date
    end: date | None

    @property
    def start_key(self) -> str:
        return self.start.isoformat()

    @property
    def end_key(self) -> str | None:
        # Exclusive upper bound: every timestamp of the end day sorts below the next day.
        return (self.end + timedelta(days=1)).isoformat() if self.end else None

    def as_dict(self) -> dict[str, str | None]:
        return {"start": self.start_key, "end": self.end.isoformat() if self.end else None}


def resolve_range(days: int | None = None, start: Any = None, end: Any = None) -> QueryRange:
    start_d = _parse_day(start, "start")
    end_d = _parse_day(end, "end")
    if start_d is None:
        if days is None:
            days = settings.DEFAULT_QUERY_DAYS
        if days < 0:
            raise InvalidRange(f"days must be >= 0, got {days}")
        anchor = end_d or today_local().date()
        start_d = anchor - timedelta(days=days)
    if end_d is not None and start_d > end_d:
        raise InvalidRange(f"start {start_d} is after end {end_d}")
    return QueryRange(start_d, end_d)


class AggregationEngine:
    """Read path: raw samples or per-period rollups for one metric kind.

    Every call recomputes from the store; nothing is cached between calls.
    """

    def __init__(self, store: Store, registry: MetricRegistry | None = None) -> None:
        self.store = store
        self.registry = registry or MetricRegistry()

    def _granularity(self, token: str | None, kind: MetricKind) -> str:
        if token is None or token == "":
            return kind.default_granularity
        g = token.strip().lower()
        if g not in GRANULARITIES:
            raise InvalidGranularity(token, list(GRANULARITIES))
        return g

    def _rows(self, kind: MetricKind, rng: QueryRange, newest_first: bool) -> Iterator[Any]:
        sql = (
            "SELECT timestamp, raw_value, unit, normalized_value, source, metadata_json "
            "FROM samples WHERE metric_kind = ? AND timestamp >= ?"
        )
        params: list[Any] = [kind.name, rng.start_key]
        if rng.end_key:
            sql += " AND timestamp < ?"
            params.append(rng.end_key)
        if kind.convertible:
            sql += " AND normalized_value IS NOT NULL"
        sql += " ORDER BY timestamp DESC" if newest_first else " ORDER BY timestamp ASC"

        with self.store.connect() as conn:
            cur = conn.execute(sql, params)
            for row in cur:
                yield row

    def _samples(self, kind: MetricKind, rng: QueryRange, newest_first: bool) -> Iterator[dict[str, Any]]:
        needs_metadata = kind.source_filter is not None or kind.aggregation is Aggregation.AVERAGE
        dropped = 0
        for r in self._rows(kind, rng, newest_first):
            metadata = loads_metadata(r["metadata_json"]) if needs_metadata else {}
            if kind.source_filter is not None and not kind.source_filter(r["source"], metadata):
                dropped += 1
                continue
            if kind.convertible:
                value, unit = float(r["normalized_value"]), kind.conversion.canonical_unit  # type: ignore[union-attr]
            else:
                value, unit = float(r["raw_value"]), r["unit"]
            yield {
                "timestamp": r["timestamp"],
                "value": value,
                "unit": unit,
                "raw_value": float(r["raw_value"]),
                "raw_unit": r["unit"],
                "source": r["source"],
                "metadata": metadata,
            }
        if dropped:
            filter_name = kind.source_filter.name if kind.source_filter else "-"
            logger.debug("%s filter dropped %d %s samples", filter_name, dropped, kind.name)

    def query(
        self,
        kind: str,
        days: int | None = None,
        start: Any = None,
        end: Any = None,
        granularity: str | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        """Samples of ``kind`` in range, raw or rolled up per period.

        Returns ``{kind, granularity, unit, range, groups}`` plus ``summary``
        when at least one period was produced. Raises
        ``UnsupportedMetricKind``, ``InvalidGranularity`` or ``InvalidRange``.
        """
        metric = self.registry.resolve(kind)
        gran = self._granularity(granularity, metric)
        rng = resolve_range(days, start, end)

        if gran == "none":
            return self._raw(metric, rng, limit)
        return self._rollup(metric, rng, gran)

    def _raw(self, metric: MetricKind, rng: QueryRange, limit: int | None) -> dict[str, Any]:
        limit = settings.DEFAULT_QUERY_LIMIT if limit is None else limit
        if limit <= 0:
            raise InvalidRange(f"limit must be > 0, got {limit}")

        samples: list[dict[str, Any]] = []
        with closing(self._samples(metric, rng, newest_first=True)) as it:
            for s in it:
                samples.append(s)
                if len(samples) >= limit:
                    break

        unit = samples[0]["unit"] if samples else metric.unit
        logger.info("Retrieved %d raw %s samples", len(samples), metric.name)
        return {"kind": metric.name, "granularity": "none", "unit": unit, "range": rng.as_dict(), "groups": samples}

    def _rollup(self, metric: MetricKind, rng: QueryRange, gran: str) -> dict[str, Any]:
        key_of = PERIOD_KEYS[gran]
        periods: dict[str, _Period] = {}
        averaged = metric.aggregation is Aggregation.AVERAGE

        for s in self._samples(metric, rng, newest_first=False):
            key = key_of(s["timestamp"])
            period = periods.get(key)
            if period is None:
                period = periods[key] = _Period(key)
            value = s["value"]
            low = high = value
            if averaged:
                # Heart rate points carry their own min/max for the sampled interval.
                meta_min = _to_number(s["metadata"].get("min"))
                meta_max = _to_number(s["metadata"].get("max"))
                low = value if meta_min is None else meta_min
                high = value if meta_max is None else meta_max
            period.add(s["timestamp"], value, low, high, s["unit"])

        ordered = [periods[k] for k in sorted(periods)]
        groups: list[dict[str, Any]] = []
        values: list[float] = []
        for p in ordered:
            v = p.value(metric.aggregation)
            values.append(v)
            g: dict[str, Any] = {
                "period": p.key,
                "value": _round(v),
                "unit": p.unit,
                "sample_count": p.count,
                "first_sample_timestamp": p.first,
                "last_sample_timestamp": p.last,
            }
            if averaged:
                g["min"] = _round(p.low)
                g["max"] = _round(p.high)
            groups.append(g)

        unit = ordered[-1].unit if ordered else metric.unit
        out: dict[str, Any] = {
            "kind": metric.name,
            "granularity": gran,
            "unit": unit,
            "aggregation": metric.aggregation.value,
            "range": rng.as_dict(),
            "groups": groups,
        }
        if groups:
            total = sum(values)
            out["summary"] = {
                "total": _round(total),
                "average_per_period": _round(total / len(values)),
                "period_count": len(values),
                "date_range": {
                    "start": (ordered[0].first or "")[:10],
                    "end": (ordered[-1].last or "")[:10],
                },
            }
        logger.debug("Aggregated %s %s: %d periods", gran, metric.name, len(groups))
        return out

    def _stored_workout_kinds(self, rng: QueryRange) -> list[MetricKind]:
        sql = "SELECT DISTINCT metric_kind FROM samples WHERE metric_kind LIKE ? ESCAPE '\\' AND timestamp >= ?"
        params: list[Any] = [WORKOUT_PREFIX.replace("_", "\\_") + "%", rng.start_key]
        if rng.end_key:
            sql += " AND timestamp < ?"
            params.append(rng.end_key)
        with self.store.connect() as conn:
            names = [r["metric_kind"] for r in conn.execute(sql + " ORDER BY metric_kind", params)]
        return [self.registry.resolve(name) for name in names]

    def _kinds_in(self, rng: QueryRange) -> list[MetricKind]:
        return self.registry.kinds() + self._stored_workout_kinds(rng)

    @staticmethod
    def _entry(kind: MetricKind, group: dict[str, Any]) -> dict[str, Any]:
        entry = {
            "value": group["value"],
            "unit": group["unit"],
            "aggregation": kind.aggregation.value,
            "sample_count": group["sample_count"],
            "first_sample_timestamp": group["first_sample_timestamp"],
            "last_sample_timestamp": group["last_sample_timestamp"],
        }
        if "min" in group:
            entry["min"] = group["min"]
            entry["max"] = group["max"]
        return entry

    def daily_snapshot(self, day: Any) -> dict[str, Any]:
        """Every kind's value for one local day, each with its own semantics.

        Workout kinds stored that day are included alongside the registered kinds.
        """
        d = _parse_day(day, "date")
        if d is None:
            raise InvalidRange("date is required")

        rng = QueryRange(d, d)
        metrics: dict[str, Any] = {}
        for kind in self._kinds_in(rng):
            result = self._rollup(kind, rng, "daily")
            if result["groups"]:
                metrics[kind.name] = self._entry(kind, result["groups"][0])
        return {"date": d.isoformat(), "metrics": metrics}

    def summary(self, days: int | None = 7, end: Any = None) -> dict[str, Any]:
        """Per-day values of every kind over the last ``days`` days, newest day first."""
        if days is None:
            days = 7
        rng = resolve_range(days, None, end)
        end_d = rng.end or today_local().date()

        by_day: dict[str, dict[str, Any]] = {}
        for kind in self._kinds_in(rng):
            for g in self._rollup(kind, rng, "daily")["groups"]:
                by_day.setdefault(g["period"], {})[kind.name] = self._entry(kind, g)

        daily_data = [{"date": day, "metrics": by_day[day]} for day in sorted(by_day, reverse=True)]
        logger.info("Summary over %d days: %d days with data", days, len(daily_data))
        return {
            "period": f"{days} days",
            "start_date": rng.start_key,
            "end_date": end_d.isoformat(),
            "total_days": len(daily_data),
            "daily_data": daily_data,
        }
