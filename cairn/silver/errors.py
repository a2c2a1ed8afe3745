"""Errors raised while building entity aggregates."""

from __future__ import annotations

import enum


class AggregationConflictReason(enum.StrEnum):
    """Why two aggregate rows for the same key could not be combined."""

    SUBJECT_MISMATCH = "subject_mismatch"
    DIMENSION_MISMATCH = "dimension_mismatch"
    METRIC_SET_MISMATCH = "metric_set_mismatch"


class AggregationConflictError(RuntimeError):
    """Raised when a chunk holds colliding rows for one entity key."""

    def __init__(
        self,
        metric_set: str,
        entity_id: str,
        reason: AggregationConflictReason,
    ) -> None:
        """Describe the colliding key."""
        super().__init__(
            f"conflicting aggregate rows for {metric_set}:{entity_id} ({reason})"
        )
        self.metric_set = metric_set
        self.entity_id = entity_id
        self.reason = reason


class MetricValueError(ValueError):
    """Raised when a metric value cannot be normalised."""

    @classmethod
    def unknown_metric(cls, metric_set: str, name: str) -> MetricValueError:
        """Return an error for a metric the set does not declare."""
        return cls(f"metric {name!r} is not declared by set {metric_set!r}")

    @classmethod
    def not_numeric(cls, name: str, value: object) -> MetricValueError:
        """Return an error for a value that is not a number."""
        return cls(f"metric {name!r} expects a number, got {value!r}")


class UnknownMetricSetError(KeyError):
    """Raised when a metric set name is not registered."""

    def __init__(self, name: str) -> None:
        """Record the missing metric set name."""
        super().__init__(name)
        self.name = name
