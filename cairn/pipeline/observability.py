"""Structured logging and error categorization for pipeline cycles.

Every event is emitted through Python logging as ``[event.type] key=value``
pairs so log aggregators can parse throughput, failures and divergence.
"""

from __future__ import annotations

import enum
import logging
import typing as typ

from sqlalchemy.exc import (
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)

from cairn.bronze.errors import (
    RawEventPersistError,
    TimezoneAwareRequiredError,
    UnsupportedAttributeTypeError,
)
from cairn.gold.errors import RefreshFailure, ViewRegistryError
from cairn.silver.errors import (
    AggregationConflictError,
    MetricValueError,
    UnknownMetricSetError,
)

from .errors import SourceFormatError, TransientFetchError

if typ.TYPE_CHECKING:
    import datetime as dt

    from cairn.bronze.watermarks import FetchWindow

logger = logging.getLogger(__name__)


class PipelineEventType(enum.StrEnum):
    """Structured log event types for pipeline cycles."""

    RUN_STARTED = "pipeline.run.started"
    RUN_COMPLETED = "pipeline.run.completed"
    RUN_FAILED = "pipeline.run.failed"
    WATERMARK_ADVANCED = "pipeline.watermark.advanced"
    WATERMARK_DIVERGENCE = "pipeline.watermark.divergence"
    STEP_FAILED = "pipeline.step.failed"


class ErrorCategory(enum.StrEnum):
    """Categories for error classification in alerts."""

    TRANSIENT = "transient"
    AGGREGATION_CONFLICT = "aggregation_conflict"
    REFRESH_FAILURE = "refresh_failure"
    SCHEMA_DRIFT = "schema_drift"
    CONFIGURATION = "configuration"
    DATABASE_CONNECTIVITY = "database_connectivity"
    DATA_INTEGRITY = "data_integrity"
    DATABASE_ERROR = "database_error"
    UNKNOWN = "unknown"


# Order matters: subclasses before the SQLAlchemyError catch-all.
_EXCEPTION_CATEGORY_MAP: tuple[tuple[type[BaseException], ErrorCategory], ...] = (
    (TransientFetchError, ErrorCategory.TRANSIENT),
    (AggregationConflictError, ErrorCategory.AGGREGATION_CONFLICT),
    (RefreshFailure, ErrorCategory.REFRESH_FAILURE),
    (SourceFormatError, ErrorCategory.SCHEMA_DRIFT),
    (UnsupportedAttributeTypeError, ErrorCategory.SCHEMA_DRIFT),
    (TimezoneAwareRequiredError, ErrorCategory.SCHEMA_DRIFT),
    (MetricValueError, ErrorCategory.SCHEMA_DRIFT),
    (ViewRegistryError, ErrorCategory.CONFIGURATION),
    (UnknownMetricSetError, ErrorCategory.CONFIGURATION),
    (RawEventPersistError, ErrorCategory.DATA_INTEGRITY),
    (OperationalError, ErrorCategory.DATABASE_CONNECTIVITY),
    (InterfaceError, ErrorCategory.DATABASE_CONNECTIVITY),
    (IntegrityError, ErrorCategory.DATA_INTEGRITY),
    (SQLAlchemyError, ErrorCategory.DATABASE_ERROR),
    (TimeoutError, ErrorCategory.TRANSIENT),
    (ConnectionError, ErrorCategory.TRANSIENT),
)


def categorize_error(exc: BaseException) -> ErrorCategory:
    """Categorize an exception for alerting purposes.

    Returns
    -------
    ErrorCategory
        The type of failure, for alert routing and the run audit trail.

    """
    for exc_type, category in _EXCEPTION_CATEGORY_MAP:
        if isinstance(exc, exc_type):
            return category
    return ErrorCategory.UNKNOWN


class PipelineEventLogger:
    """Emit structured pipeline events via Python logging.

    Success is logged at INFO, divergence at WARNING and failures at ERROR.
    """

    def log_run_started(
        self, source_name: str, window: FetchWindow, *, mode: str
    ) -> None:
        """Log the start of a cycle and the window it will fetch."""
        logger.info(
            "[%s] source=%s window_start=%s window_end=%s backfill=%s mode=%s",
            PipelineEventType.RUN_STARTED,
            source_name,
            window.start.isoformat(),
            window.end.isoformat(),
            window.is_backfill,
            mode,
        )

    def log_run_completed(  # noqa: PLR0913
        self,
        source_name: str,
        *,
        duration: dt.timedelta,
        events_fetched: int,
        events_inserted: int,
        entities_updated: int,
        chunks_committed: int,
    ) -> None:
        """Log a successful ingest and aggregation with its throughput."""
        logger.info(
            "[%s] source=%s duration_seconds=%.3f events_fetched=%d "
            "events_inserted=%d entities_updated=%d chunks_committed=%d",
            PipelineEventType.RUN_COMPLETED,
            source_name,
            duration.total_seconds(),
            events_fetched,
            events_inserted,
            entities_updated,
            chunks_committed,
        )

    def log_run_failed(
        self,
        source_name: str,
        error: BaseException,
        duration: dt.timedelta,
    ) -> None:
        """Log a failed cycle with error categorization."""
        category = categorize_error(error)
        logger.error(
            "[%s] source=%s duration_seconds=%.3f "
            "error_type=%s error_category=%s error_message=%s",
            PipelineEventType.RUN_FAILED,
            source_name,
            duration.total_seconds(),
            type(error).__name__,
            category,
            str(error),
            exc_info=error,
        )

    def log_watermark_advanced(
        self,
        source_name: str,
        previous: dt.datetime | None,
        current: dt.datetime | None,
    ) -> None:
        """Log the watermark position after a successful cycle."""
        logger.info(
            "[%s] source=%s previous=%s current=%s",
            PipelineEventType.WATERMARK_ADVANCED,
            source_name,
            previous.isoformat() if previous else None,
            current.isoformat() if current else None,
        )

    def log_divergence(self, source_name: str, runs: int) -> None:
        """Warn that recent incremental windows held no new events."""
        logger.warning(
            "[%s] source=%s runs=%d action=force_full_resync",
            PipelineEventType.WATERMARK_DIVERGENCE,
            source_name,
            runs,
        )

    def log_step_failed(
        self, source_name: str, step: str, error: BaseException
    ) -> None:
        """Log a bookkeeping step that failed without aborting the cycle."""
        logger.error(
            "[%s] source=%s step=%s error_type=%s error_category=%s "
            "error_message=%s",
            PipelineEventType.STEP_FAILED,
            source_name,
            step,
            type(error).__name__,
            categorize_error(error),
            str(error),
            exc_info=error,
        )
