"""Emit structured observability events for derived view refresh runs.

Usage
-----
>>> event_logger = RefreshEventLogger()
>>> event_logger.log_run_started(run_id="5c1f...", views=6)

"""

from __future__ import annotations

import enum
import typing as typ

from cairn.logging import get_logger, log_error, log_info, log_warning

if typ.TYPE_CHECKING:
    from cairn.gold.orchestrator import RefreshRunResult, ViewRefreshResult

logger = get_logger(__name__)


class RefreshEventType(enum.StrEnum):
    """Structured log event types for refresh runs."""

    RUN_STARTED = "refresh.run.started"
    RUN_COMPLETED = "refresh.run.completed"
    VIEW_COMPLETED = "refresh.view.completed"
    VIEW_FAILED = "refresh.view.failed"
    VIEW_SKIPPED = "refresh.view.skipped"
    MODE_FALLBACK = "refresh.view.mode_fallback"
    AUDIT_FAILED = "refresh.view.audit_failed"


class RefreshEventLogger:
    """Emit structured refresh events via femtologging."""

    def log_run_started(self, *, run_id: str, views: int) -> None:
        """Log the start of a refresh run."""
        log_info(
            logger,
            "[%s] run_id=%s views=%d",
            RefreshEventType.RUN_STARTED,
            run_id,
            views,
        )

    def log_view_completed(self, run_id: str, result: ViewRefreshResult) -> None:
        """Log a successful view refresh with its timing and row count.

        Parameters
        ----------
        run_id
            Identifier shared by every view in the run.
        result
            Outcome of the view refresh.

        """
        log_info(
            logger,
            "[%s] run_id=%s view=%s refresh_mode=%s duration_ms=%d rows_affected=%d",
            RefreshEventType.VIEW_COMPLETED,
            run_id,
            result.name,
            result.refresh_mode,
            result.duration_ms,
            result.rows_affected,
        )

    def log_view_failed(
        self, run_id: str, result: ViewRefreshResult, error: BaseException
    ) -> None:
        """Log a failed view refresh with the underlying exception attached."""
        log_error(
            logger,
            "[%s] run_id=%s view=%s duration_ms=%d error_type=%s error_message=%s",
            RefreshEventType.VIEW_FAILED,
            run_id,
            result.name,
            result.duration_ms,
            type(error.__cause__ or error).__name__,
            result.error,
            exc_info=error,
        )

    def log_view_skipped(self, run_id: str, result: ViewRefreshResult) -> None:
        """Log a view skipped because an upstream view did not succeed."""
        log_warning(
            logger,
            "[%s] run_id=%s view=%s reason=%s",
            RefreshEventType.VIEW_SKIPPED,
            run_id,
            result.name,
            result.error,
        )

    def log_mode_fallback(self, *, view: str, requested: str, effective: str) -> None:
        """Log a view refreshed with a different mode than requested."""
        log_warning(
            logger,
            "[%s] view=%s requested=%s effective=%s reason=missing_unique_key",
            RefreshEventType.MODE_FALLBACK,
            view,
            requested,
            effective,
        )

    def log_audit_failed(
        self, run_id: str, result: ViewRefreshResult, error: BaseException
    ) -> None:
        """Log a refresh log entry that could not be written."""
        log_error(
            logger,
            "[%s] run_id=%s view=%s status=%s error_type=%s",
            RefreshEventType.AUDIT_FAILED,
            run_id,
            result.name,
            result.status,
            type(error).__name__,
            exc_info=error,
        )

    def log_run_completed(self, result: RefreshRunResult) -> None:
        """Log run completion with per-status counts."""
        log_info(
            logger,
            "[%s] run_id=%s status=%s duration_ms=%d succeeded=%d failed=%d "
            "skipped=%d",
            RefreshEventType.RUN_COMPLETED,
            result.run_id,
            result.status,
            result.duration_ms,
            len(result.succeeded),
            len(result.failed),
            len(result.skipped),
        )
