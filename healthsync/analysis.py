"""Dry-run analysis of an export batch.

Used to inspect what the exporter is sending (sources, date coverage,
same-timestamp duplicates) without writing anything to the store.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any

from .db import canonical_timestamp, now_iso
from .errors import UnsupportedMetricKind
from .metrics import MetricRegistry
from .writer import parse_envelope

logger = logging.getLogger("healthsync.analysis")


def _qty(point: dict[str, Any]) -> float:
    v = point.get("qty", point.get("value"))
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return 0.0
    return float(v)


def _step_analysis(data: list[Any]) -> dict[str, Any]:
    out: dict[str, Any] = {
        "total_samples": len(data),
        "total_steps": 0.0,
        "deduplicated_steps": 0.0,
        "by_source": {},
        "by_date": {},
        "duplicates_detected": [],
        "sample_distribution": {"by_minute": 0, "by_second": 0},
    }
    by_source: dict[str, dict[str, float]] = defaultdict(lambda: {"samples": 0, "steps": 0.0})
    by_date: dict[str, dict[str, float]] = defaultdict(lambda: {"samples": 0, "steps": 0.0})
    by_timestamp: dict[str, list[dict[str, Any]]] = defaultdict(list)

    for point in data:
        if not isinstance(point, dict):
            continue
        steps = _qty(point)
        source = str(point.get("source") or "unknown")
        raw_ts = point.get("date")
        ts = canonical_timestamp(raw_ts)
        day = ts[:10] if ts else "unknown"

        out["total_steps"] += steps
        by_source[source]["samples"] += 1
        by_source[source]["steps"] += steps
        by_date[day]["samples"] += 1
        by_date[day]["steps"] += steps
        if ts:
            by_timestamp[ts].append({"source": source, "steps": steps})
        if isinstance(raw_ts, str) and raw_ts.count(":") >= 2:
            out["sample_distribution"]["by_second"] += 1
        else:
            out["sample_distribution"]["by_minute"] += 1

    for ts, samples in sorted(by_timestamp.items()):
        # What the writer keeps under first-write-wins.
        out["deduplicated_steps"] += samples[0]["steps"]
        if len(samples) > 1:
            out["duplicates_detected"].append(
                {
                    "timestamp": ts,
                    "count": len(samples),
                    "samples": samples,
                    "total_steps": sum(s["steps"] for s in samples),
                }
            )

    out["by_source"] = dict(by_source)
    out["by_date"] = dict(by_date)
    return out


def analyze_batch(payload: Any, registry: MetricRegistry | None = None) -> dict[str, Any]:
    """Describe ``payload`` without storing it. Raises ``MalformedBatch`` like ``ingest``."""
    registry = registry or MetricRegistry()
    envelope = parse_envelope(payload)

    analysis: dict[str, Any] = {
        "import_timestamp": now_iso(),
        "metrics_received": len(envelope.metrics),
        "workouts_received": len(envelope.workouts),
        "samples_received": sum(len(m.data) for m in envelope.metrics),
        "metric_types": [],
        "step_data_analysis": None,
    }

    for series in envelope.metrics:
        try:
            kind_name: str | None = registry.resolve(series.name or "").name
        except UnsupportedMetricKind:
            kind_name = None

        points = [p for p in series.data if isinstance(p, dict)]
        stamps = sorted(ts for ts in (canonical_timestamp(p.get("date")) for p in points) if ts)
        counts: dict[str, int] = defaultdict(int)
        for ts in stamps:
            counts[ts] += 1

        analysis["metric_types"].append(
            {
                "name": series.name,
                "kind": kind_name,
                "units": series.units,
                "data_points": len(series.data),
                "invalid_points": len(series.data) - len(stamps),
                "duplicate_timestamps": sum(1 for c in counts.values() if c > 1),
                "date_range": {
                    "earliest": stamps[0] if stamps else None,
                    "latest": stamps[-1] if stamps else None,
                },
                "sources": sorted({str(p["source"]) for p in points if p.get("source")}),
            }
        )

        if kind_name == "step_count":
            analysis["step_data_analysis"] = _step_analysis(series.data)

    step = analysis["step_data_analysis"]
    if step:
        logger.info(
            "Step data analysis: %d samples, %.0f steps (%.0f after dedup), %d duplicate timestamps",
            step["total_samples"],
            step["total_steps"],
            step["deduplicated_steps"],
            len(step["duplicates_detected"]),
        )
    return analysis
