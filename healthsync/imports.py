from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from .db import Store
from .models import ImportBatch, ImportStats

logger = logging.getLogger("healthsync.imports")

_BATCH_COLUMNS = (
    "id, import_timestamp, source, samples_received, samples_stored, "
    "workouts_received, workouts_stored, status, error_message"
)


def import_stats(store: Store) -> ImportStats:
    with store.connect() as conn:
        row = conn.execute(
            """
            SELECT
              COUNT(*) AS total_imports,
              COALESCE(SUM(samples_received), 0) AS total_samples_received,
              COALESCE(SUM(samples_stored), 0) AS total_samples_stored,
              COALESCE(SUM(workouts_stored), 0) AS total_workouts_stored,
              COALESCE(SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END), 0) AS successful_imports,
              COALESCE(SUM(CASE WHEN status = 'error' THEN 1 ELSE 0 END), 0) AS failed_imports,
              MIN(import_timestamp) AS first_import,
              MAX(import_timestamp) AS last_import
            FROM import_batches
            """
        ).fetchone()
    return ImportStats(**dict(row))


def recent_imports(store: Store, days: int = 7) -> list[ImportBatch]:
    """Import batches received in the last ``days`` days, newest first. Payloads are not returned."""
    cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
    with store.connect() as conn:
        rows = conn.execute(
            f"""
            SELECT {_BATCH_COLUMNS} FROM import_batches
            WHERE import_timestamp >= ?
            ORDER BY import_timestamp DESC, id DESC
            """,
            (cutoff,),
        ).fetchall()
    logger.info("Retrieved %d imports from last %d days", len(rows), days)
    return [ImportBatch(**dict(r)) for r in rows]


def get_import_payload(store: Store, import_id: int) -> str | None:
    with store.connect() as conn:
        row = conn.execute("SELECT payload_json FROM import_batches WHERE id = ?", (import_id,)).fetchone()
    return row["payload_json"] if row else None


def count_samples(store: Store) -> int:
    with store.connect() as conn:
        return int(conn.execute("SELECT COUNT(*) AS c FROM samples").fetchone()["c"])


def last_import(store: Store) -> ImportBatch | None:
    with store.connect() as conn:
        row = conn.execute(
            f"SELECT {_BATCH_COLUMNS} FROM import_batches ORDER BY import_timestamp DESC, id DESC LIMIT 1"
        ).fetchone()
    return ImportBatch(**dict(row)) if row else None
