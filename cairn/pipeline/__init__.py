"""Event sources, the ingest-aggregate-refresh cycle and its triggers."""

from __future__ import annotations

from .config import PipelineConfig
from .errors import SourceFormatError, TransientFetchError, WatermarkDivergenceError
from .factory import build_event_source, build_pipeline
from .lag import IngestionHealthConfig, IngestionHealthService, IngestionLagMetrics
from .observability import (
    ErrorCategory,
    PipelineEventLogger,
    PipelineEventType,
    categorize_error,
)
from .runs import IngestionRunRecorder, RunRecord
from .service import CycleResult, CycleStatus, EngagementPipeline, PipelineDependencies
from .sources import (
    EventSource,
    IterableEventSource,
    JsonLinesEventSource,
    MixpanelExportRecord,
    SourceEvent,
    from_mixpanel_export,
)

__all__ = [
    "CycleResult",
    "CycleStatus",
    "EngagementPipeline",
    "ErrorCategory",
    "EventSource",
    "IngestionHealthConfig",
    "IngestionHealthService",
    "IngestionLagMetrics",
    "IngestionRunRecorder",
    "IterableEventSource",
    "JsonLinesEventSource",
    "MixpanelExportRecord",
    "PipelineConfig",
    "PipelineDependencies",
    "PipelineEventLogger",
    "PipelineEventType",
    "RunRecord",
    "SourceEvent",
    "SourceFormatError",
    "TransientFetchError",
    "WatermarkDivergenceError",
    "build_event_source",
    "build_pipeline",
    "categorize_error",
    "from_mixpanel_export",
]
