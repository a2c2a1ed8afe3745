"""Error types raised by the raw event store."""

from __future__ import annotations


class TimezoneAwareRequiredError(ValueError):
    """Raised when datetime inputs lack timezone information."""

    def __init__(self, context: str) -> None:
        """Attach a consistent message for the failing context."""
        super().__init__(f"{context} must be timezone aware")

    @classmethod
    def for_attributes(cls) -> TimezoneAwareRequiredError:
        """Return an error for naive datetimes nested in event attributes."""
        return cls("attribute datetime values")

    @classmethod
    def for_event_time(cls) -> TimezoneAwareRequiredError:
        """Return an error for a naive event_time."""
        return cls("event_time")


class UnsupportedAttributeTypeError(ValueError):
    """Raised when event attributes contain non JSON-serialisable types."""

    def __init__(self, type_name: str) -> None:
        """Record the offending type name for diagnostics."""
        super().__init__(f"attributes contain unsupported type {type_name}")


class RawEventPersistError(RuntimeError):
    """Raised when a batch collides with rows written concurrently."""

    def __init__(self, source_name: str) -> None:
        """Name the source whose batch could not be persisted."""
        super().__init__(
            f"raw event batch for source {source_name!r} collided with "
            "rows written by another writer"
        )
        self.source_name = source_name
