"""Errors raised by event sources and the ingestion pipeline."""

from __future__ import annotations

import datetime as dt  # noqa: TC003


class TransientFetchError(RuntimeError):
    """Raised by an event source when a fetch may succeed if retried.

    The pipeline leaves the watermark untouched so the next run requests the
    same window again.
    """

    def __init__(
        self,
        source_name: str,
        message: str,
        *,
        retry_after: dt.timedelta | None = None,
    ) -> None:
        """Record the failing source and an optional retry hint."""
        super().__init__(f"transient fetch failure for {source_name!r}: {message}")
        self.source_name = source_name
        self.retry_after = retry_after


class SourceFormatError(ValueError):
    """Raised when a source record cannot be decoded into an event."""

    @classmethod
    def bad_line(cls, path: str, line_number: int, detail: str) -> SourceFormatError:
        """Return an error for an undecodable line of an export file."""
        return cls(f"{path}:{line_number}: {detail}")

    @classmethod
    def missing_field(cls, field: str) -> SourceFormatError:
        """Return an error for a record missing a required field."""
        return cls(f"event record is missing {field!r}")


class WatermarkDivergenceError(RuntimeError):
    """Raised when consecutive incremental windows keep coming back empty.

    Signals a stuck watermark; a forced full resync is the remedy.
    """

    def __init__(self, source_name: str, runs: int) -> None:
        """Describe the diverging source and how many runs showed it."""
        super().__init__(
            f"source {source_name!r}: last {runs} incremental runs found "
            "no new events; a full resync is advised"
        )
        self.source_name = source_name
        self.runs = runs
