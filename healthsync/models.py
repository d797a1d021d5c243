from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class Sample(BaseModel):
    model_config = ConfigDict(frozen=True)

    metric_kind: str
    source: str
    timestamp: str
    raw_value: float
    unit: Optional[str] = None
    normalized_value: Optional[float] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class MetricSeries(BaseModel):
    """One metric block of an export: ``{"name", "units", "data": [...]}``."""

    name: Optional[str] = None
    units: Optional[str] = None
    data: list[Any] = Field(default_factory=list)


class BatchEnvelope(BaseModel):
    metrics: list[MetricSeries] = Field(default_factory=list)
    workouts: list[Any] = Field(default_factory=list)


class IngestResult(BaseModel):
    importId: int
    samplesReceived: int
    samplesStored: int
    samplesDuplicate: int = 0
    samplesSkipped: int = 0
    workoutsReceived: int
    workoutsStored: int
    timestamp: datetime


class ImportBatch(BaseModel):
    id: int
    import_timestamp: datetime
    source: str
    samples_received: int
    samples_stored: int
    workouts_received: int
    workouts_stored: int
    status: str
    error_message: Optional[str] = None


class ImportStats(BaseModel):
    total_imports: int
    total_samples_received: int
    total_samples_stored: int
    total_workouts_stored: int
    successful_imports: int
    failed_imports: int
    first_import: Optional[datetime] = None
    last_import: Optional[datetime] = None


class StatusResponse(BaseModel):
    ok: bool
    dbPath: str
    database: bool
    totalSamples: int
    lastImportAt: Optional[datetime] = None
    lastImportId: Optional[int] = None
