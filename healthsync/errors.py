"""Error taxonomy for ingestion and queries.

Per-sample problems (``SkippedSample``) are caught and counted by the writer;
everything else is surfaced to the caller of ``ingest``/``query``.
"""

from __future__ import annotations


class HealthSyncError(Exception):
    """Base class for every error raised by the core."""


class MalformedBatch(HealthSyncError, ValueError):
    """The batch envelope does not have the expected top-level shape."""


class SkippedSample(HealthSyncError, ValueError):
    """A single data point could not be normalized and was dropped."""


class UnsupportedMetricKind(HealthSyncError, ValueError):
    def __init__(self, name: str, supported: list[str] | None = None) -> None:
        self.name = name
        self.supported = supported or []
        msg = f"Unknown metric type: {name}"
        if self.supported:
            msg += f". Supported types: {', '.join(self.supported)}"
        super().__init__(msg)


class InvalidGranularity(HealthSyncError, ValueError):
    def __init__(self, token: str, allowed: list[str]) -> None:
        self.token = token
        super().__init__(f"Invalid granularity: {token}. Expected one of: {', '.join(allowed)}")


class InvalidRange(HealthSyncError, ValueError):
    """Query range could not be parsed or is inverted."""


class StoreUnavailable(HealthSyncError, RuntimeError):
    """The sqlite store could not be opened or a statement failed at the storage level."""
