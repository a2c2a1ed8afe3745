"""Raw event store, watermarks and ingestion run audit."""

from __future__ import annotations

from .errors import (
    RawEventPersistError,
    TimezoneAwareRequiredError,
    UnsupportedAttributeTypeError,
)
from .services import (
    RawEventEnvelope,
    RawEventIngestResult,
    RawEventWriter,
    make_dedupe_key,
)
from .storage import (
    Base,
    IngestionRun,
    RawEvent,
    RawEventState,
    RunStatus,
    UTCDateTime,
    Watermark,
    init_bronze_storage,
)
from .watermarks import (
    DEFAULT_ROLLING_WINDOW,
    FetchWindow,
    FetchWindowPolicy,
    WatermarkTracker,
    compute_fetch_window,
)

__all__ = [
    "DEFAULT_ROLLING_WINDOW",
    "Base",
    "FetchWindow",
    "FetchWindowPolicy",
    "IngestionRun",
    "RawEvent",
    "RawEventEnvelope",
    "RawEventIngestResult",
    "RawEventPersistError",
    "RawEventState",
    "RawEventWriter",
    "RunStatus",
    "TimezoneAwareRequiredError",
    "UTCDateTime",
    "UnsupportedAttributeTypeError",
    "Watermark",
    "WatermarkTracker",
    "compute_fetch_window",
    "init_bronze_storage",
]
