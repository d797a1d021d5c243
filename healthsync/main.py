from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Body, Depends, FastAPI, HTTPException, Request

from .aggregation import AggregationEngine
from .analysis import analyze_batch
from .db import Store
from .errors import (
    HealthSyncError,
    InvalidGranularity,
    InvalidRange,
    MalformedBatch,
    StoreUnavailable,
    UnsupportedMetricKind,
)
from .imports import count_samples, import_stats, last_import, recent_imports
from .metrics import REALTIME_EXPORT_SOURCE, MetricRegistry
from .models import ImportBatch, ImportStats, IngestResult, StatusResponse
from .normalizer import Normalizer
from .security import require_api_key
from .writer import DedupWriter

logger = logging.getLogger("healthsync.main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    store = Store()
    store.init()
    registry = MetricRegistry()
    app.state.store = store
    app.state.writer = DedupWriter(store, Normalizer(registry))
    app.state.engine = AggregationEngine(store, registry)
    logger.info("Health export sync started (db=%s, duplicate policy=%s)", store.path, app.state.writer.policy.name)
    yield


app = FastAPI(title="Health Export Sync", version="1.0.0", lifespan=lifespan)


def _store(request: Request) -> Store:
    return request.app.state.store


def _writer(request: Request) -> DedupWriter:
    return request.app.state.writer


def _engine(request: Request) -> AggregationEngine:
    return request.app.state.engine


_STATUS_CODES: tuple[tuple[type[HealthSyncError], int], ...] = (
    (UnsupportedMetricKind, 404),
    (InvalidGranularity, 400),
    (InvalidRange, 400),
    (MalformedBatch, 400),
    (StoreUnavailable, 503),
)


def _http_error(exc: HealthSyncError) -> HTTPException:
    for exc_type, status_code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@app.get("/api/status", response_model=StatusResponse)
def status(store: Store = Depends(_store), _: None = Depends(require_api_key)) -> StatusResponse:
    healthy = store.is_healthy()
    total = count_samples(store) if healthy else 0
    last = last_import(store) if healthy else None
    return StatusResponse(
        ok=healthy,
        dbPath=str(store.path),
        database=healthy,
        totalSamples=total,
        lastImportAt=last.import_timestamp if last else None,
        lastImportId=last.id if last else None,
    )


@app.post("/api/apple-health/auto-export", response_model=IngestResult)
def auto_export(
    payload: Any = Body(default=None),
    source: str = REALTIME_EXPORT_SOURCE,
    writer: DedupWriter = Depends(_writer),
    _: None = Depends(require_api_key),
) -> IngestResult:
    try:
        return writer.ingest(payload, source=source)
    except HealthSyncError as exc:
        raise _http_error(exc) from exc


@app.post("/api/apple-health/test-import")
def test_import(payload: Any = Body(default=None), _: None = Depends(require_api_key)) -> dict[str, Any]:
    try:
        analysis = analyze_batch(payload)
    except HealthSyncError as exc:
        raise _http_error(exc) from exc
    return {"stored": False, "analysis": analysis}


@app.get("/api/apple-health/metrics/{kind}")
def metrics(
    kind: str,
    days: int | None = None,
    start: str | None = None,
    end: str | None = None,
    granularity: str | None = None,
    limit: int | None = None,
    engine: AggregationEngine = Depends(_engine),
    _: None = Depends(require_api_key),
) -> dict[str, Any]:
    try:
        return engine.query(kind, days=days, start=start, end=end, granularity=granularity, limit=limit)
    except HealthSyncError as exc:
        raise _http_error(exc) from exc


@app.get("/api/apple-health/daily/{day}")
def daily(day: str, engine: AggregationEngine = Depends(_engine), _: None = Depends(require_api_key)) -> dict[str, Any]:
    try:
        return engine.daily_snapshot(day)
    except HealthSyncError as exc:
        raise _http_error(exc) from exc


@app.get("/api/apple-health/summary")
def summary(
    days: int = 7,
    end: str | None = None,
    engine: AggregationEngine = Depends(_engine),
    _: None = Depends(require_api_key),
) -> dict[str, Any]:
    try:
        return engine.summary(days, end=end)
    except HealthSyncError as exc:
        raise _http_error(exc) from exc


@app.get("/api/apple-health/auto-export/stats", response_model=ImportStats)
def auto_export_stats(store: Store = Depends(_store), _: None = Depends(require_api_key)) -> ImportStats:
    try:
        return import_stats(store)
    except HealthSyncError as exc:
        raise _http_error(exc) from exc


@app.get("/api/apple-health/auto-export/recent", response_model=list[ImportBatch])
def auto_export_recent(
    days: int = 7,
    store: Store = Depends(_store),
    _: None = Depends(require_api_key),
) -> list[ImportBatch]:
    try:
        return recent_imports(store, days=days)
    except HealthSyncError as exc:
        raise _http_error(exc) from exc
