from __future__ import annotations

import logging
import sqlite3
from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from pydantic import ValidationError

from . import settings
from .db import Store, dumps_payload, now_iso
from .errors import MalformedBatch, SkippedSample, StoreUnavailable, UnsupportedMetricKind
from .metrics import REALTIME_EXPORT_SOURCE, MetricRegistry
from .models import BatchEnvelope, IngestResult, Sample
from .normalizer import Normalizer

logger = logging.getLogger("healthsync.writer")

_INSERT_SAMPLE = """
    INSERT OR IGNORE INTO samples(
      metric_kind, source, timestamp, raw_value, unit, normalized_value, metadata_json, created_at
    ) VALUES(?,?,?,?,?,?,?,?)
"""


class WriteOutcome(str, Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    REPLACED = "replaced"


class DuplicatePolicy(Protocol):
    name: str

    def write(self, conn: sqlite3.Connection, sample: Sample) -> WriteOutcome: ...


def _insert(conn: sqlite3.Connection, sample: Sample) -> bool:
    cur = conn.execute(
        _INSERT_SAMPLE,
        (
            sample.metric_kind,
            sample.source,
            sample.timestamp,
            sample.raw_value,
            sample.unit,
            sample.normalized_value,
            dumps_payload(sample.metadata) if sample.metadata else None,
            now_iso(),
        ),
    )
    return cur.rowcount == 1


class FirstWriteWins:
    """The first value seen for a (kind, source, timestamp) key is kept forever."""

    name = "first"

    def write(self, conn: sqlite3.Connection, sample: Sample) -> WriteOutcome:
        return WriteOutcome.INSERTED if _insert(conn, sample) else WriteOutcome.DUPLICATE


class KeepMax:
    """A later duplicate replaces the stored row only when its value is larger."""

    name = "max"

    def write(self, conn: sqlite3.Connection, sample: Sample) -> WriteOutcome:
        if _insert(conn, sample):
            return WriteOutcome.INSERTED
        value = sample.normalized_value if sample.normalized_value is not None else sample.raw_value
        cur = conn.execute(
            """
            UPDATE samples
            SET raw_value=?, unit=?, normalized_value=?, metadata_json=?
            WHERE metric_kind=? AND source=? AND timestamp=?
              AND COALESCE(normalized_value, raw_value) < ?
            """,
            (
                sample.raw_value,
                sample.unit,
                sample.normalized_value,
                dumps_payload(sample.metadata) if sample.metadata else None,
                sample.metric_kind,
                sample.source,
                sample.timestamp,
                value,
            ),
        )
        return WriteOutcome.REPLACED if cur.rowcount else WriteOutcome.DUPLICATE


POLICIES: dict[str, type] = {FirstWriteWins.name: FirstWriteWins, KeepMax.name: KeepMax}


def policy_from_name(name: str | None = None) -> DuplicatePolicy:
    name = (name or settings.DUPLICATE_POLICY).strip().lower()
    try:
        return POLICIES[name]()
    except KeyError:
        raise ValueError(f"Unknown duplicate policy: {name}. Expected one of: {', '.join(POLICIES)}") from None


def parse_envelope(payload: Any) -> BatchEnvelope:
    """Accept ``{"data": {"metrics", "workouts"}}`` or the bare inner object."""
    if not isinstance(payload, dict):
        raise MalformedBatch("Payload must be an object")
    body = payload.get("data", payload)
    if not isinstance(body, dict) or not ({"metrics", "workouts"} & body.keys()):
        raise MalformedBatch("Invalid payload structure. Expected { data: { metrics: [], workouts: [] } }")
    try:
        return BatchEnvelope.model_validate(
            {"metrics": body.get("metrics") or [], "workouts": body.get("workouts") or []}
        )
    except ValidationError as exc:
        raise MalformedBatch(f"Invalid payload structure: {exc.error_count()} validation error(s)") from exc


class DedupWriter:
    def __init__(
        self,
        store: Store,
        normalizer: Normalizer | None = None,
        policy: DuplicatePolicy | None = None,
        source: str = REALTIME_EXPORT_SOURCE,
    ) -> None:
        self.store = store
        self.normalizer = normalizer or Normalizer()
        self.policy = policy or policy_from_name()
        self.source = source

    def _write(self, conn: sqlite3.Connection, sample: Sample) -> WriteOutcome | None:
        try:
            return self.policy.write(conn, sample)
        except sqlite3.IntegrityError as exc:
            logger.debug("Skipping %s at %s: %s", sample.metric_kind, sample.timestamp, exc)
            return None

    def write_samples(self, conn: sqlite3.Connection, samples: list[Sample]) -> Counter:
        outcomes: Counter = Counter()
        for sample in samples:
            outcome = self._write(conn, sample)
            outcomes[outcome.value if outcome else "skipped"] += 1
        return outcomes

    def _record_batch(
        self,
        conn: sqlite3.Connection,
        *,
        received_at: str,
        source: str,
        payload: Any,
        counts: dict[str, int],
        status: str = "success",
        error_message: str | None = None,
    ) -> int:
        cur = conn.execute(
            """
            INSERT INTO import_batches(
              import_timestamp, source, samples_received, samples_stored,
              workouts_received, workouts_stored, payload_json, status, error_message
            ) VALUES(?,?,?,?,?,?,?,?,?)
            """,
            (
                received_at,
                source,
                counts.get("samples_received", 0),
                counts.get("samples_stored", 0),
                counts.get("workouts_received", 0),
                counts.get("workouts_stored", 0),
                dumps_payload(payload),
                status,
                error_message,
            ),
        )
        return int(cur.lastrowid)

    def _record_failed_batch(self, payload: Any, source: str, received_at: str, message: str) -> None:
        try:
            with self.store.connect() as conn:
                self._record_batch(
                    conn,
                    received_at=received_at,
                    source=source,
                    payload=payload,
                    counts={},
                    status="error",
                    error_message=message,
                )
        except StoreUnavailable as exc:
            logger.error("Failed to log error import: %s", exc)

    def ingest(self, payload: Any, source: str | None = None) -> IngestResult:
        """Store every new sample and workout in ``payload`` exactly once.

        Samples that fail normalization are dropped and counted; a malformed
        envelope raises ``MalformedBatch``. Exactly one import_batches row is
        written per call either way.
        """
        source = source or self.source
        received_at = now_iso()

        try:
            envelope = parse_envelope(payload)
        except MalformedBatch as exc:
            logger.warning("Rejected import from %s: %s", source, exc)
            self._record_failed_batch(payload, source, received_at, str(exc))
            raise

        samples_received = sum(len(series.data) for series in envelope.metrics)
        workouts_received = len(envelope.workouts)
        samples: Counter = Counter()
        workouts: Counter = Counter()

        with self.store.connect() as conn:
            for series in envelope.metrics:
                try:
                    kind = self.normalizer.resolve(series.name or "")
                except UnsupportedMetricKind:
                    logger.debug("Skipping %d points of unsupported metric %r", len(series.data), series.name)
                    samples["skipped"] += len(series.data)
                    continue
                for point in series.data:
                    try:
                        sample = self.normalizer.normalize(kind.name, series.units, point, source, kind=kind)
                    except SkippedSample as exc:
                        logger.debug("Skipping data point: %s", exc)
                        samples["skipped"] += 1
                        continue
                    samples.update(self.write_samples(conn, [sample]))

            for workout in envelope.workouts:
                try:
                    sample = self.normalizer.normalize_workout(workout, source)
                except SkippedSample as exc:
                    logger.debug("Skipping workout: %s", exc)
                    workouts["skipped"] += 1
                    continue
                workouts.update(self.write_samples(conn, [sample]))

            import_id = self._record_batch(
                conn,
                received_at=received_at,
                source=source,
                payload=payload,
                counts={
                    "samples_received": samples_received,
                    "samples_stored": samples[WriteOutcome.INSERTED.value],
                    "workouts_received": workouts_received,
                    "workouts_stored": workouts[WriteOutcome.INSERTED.value],
                },
            )

        logger.info(
            "Processed import %s from %s: %d/%d samples stored (%d duplicate, %d replaced, %d skipped), "
            "%d/%d workouts stored",
            import_id,
            source,
            samples[WriteOutcome.INSERTED.value],
            samples_received,
            samples[WriteOutcome.DUPLICATE.value],
            samples[WriteOutcome.REPLACED.value],
            samples["skipped"],
            workouts[WriteOutcome.INSERTED.value],
            workouts_received,
        )

        return IngestResult(
            importId=import_id,
            samplesReceived=samples_received,
            samplesStored=samples[WriteOutcome.INSERTED.value],
            samplesDuplicate=samples[WriteOutcome.DUPLICATE.value] + samples[WriteOutcome.REPLACED.value],
            samplesSkipped=samples["skipped"],
            workoutsReceived=workouts_received,
            workoutsStored=workouts[WriteOutcome.INSERTED.value],
            timestamp=datetime.fromisoformat(received_at),
        )


def backfill_normalized_values(store: Store, registry: MetricRegistry | None = None) -> dict[str, int]:
    """Fill ``normalized_value`` on rows stored before their kind had a conversion rule.

    Returns counts keyed by the unit that was converted, plus ``unconvertible``
    for rows whose kind or unit has no rule.
    """
    registry = registry or MetricRegistry()
    counts: Counter = Counter()
    with store.connect() as conn:
        rows = conn.execute(
            "SELECT id, metric_kind, raw_value, unit FROM samples WHERE normalized_value IS NULL"
        ).fetchall()
        for r in rows:
            try:
                kind = registry.resolve(r["metric_kind"])
            except UnsupportedMetricKind:
                counts["unconvertible"] += 1
                continue
            value = kind.normalize(float(r["raw_value"]), r["unit"])
            if value is None:
                counts["unconvertible"] += 1
                continue
            conn.execute("UPDATE samples SET normalized_value=? WHERE id=?", (value, r["id"]))
            counts[r["unit"] or "none"] += 1
    logger.info("Backfilled normalized values: %s", dict(counts))
    return dict(counts)
