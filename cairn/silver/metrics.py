"""Metric declarations and the single normalisation step for metric values.

A :class:`MetricSetSpec` describes one family of entity aggregates: which
events contribute, how each contribution is folded, and which event
attributes split a subject into finer-grained entities (for example a user's
engagement with one portfolio).
"""

from __future__ import annotations

import collections.abc as cabc
import dataclasses as dc
import enum
import math
import typing as typ

from cairn.silver.errors import MetricValueError, UnknownMetricSetError

type MetricValue = int | float | bool
type MetricMap = dict[str, MetricValue]
type AttributePredicate = cabc.Callable[[cabc.Mapping[str, typ.Any]], bool]

ENTITY_KEY_SEPARATOR = "|"


class MetricKind(enum.StrEnum):
    """How an event contributes to a metric and how values merge."""

    COUNT = "count"
    SUM = "sum"
    FLAG = "flag"


def _as_number(name: str, value: object) -> int | float:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int | float):
        if isinstance(value, float) and not math.isfinite(value):
            raise MetricValueError.not_numeric(name, value)
        return value
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError as exc:
            raise MetricValueError.not_numeric(name, value) from exc
        if not math.isfinite(parsed):
            raise MetricValueError.not_numeric(name, value)
        return parsed
    raise MetricValueError.not_numeric(name, value)


def _escape_key_part(part: str) -> str:
    return part.replace("\\", "\\\\").replace(
        ENTITY_KEY_SEPARATOR, f"\\{ENTITY_KEY_SEPARATOR}"
    )


@dc.dataclass(frozen=True, slots=True)
class MetricSpec:
    """One metric in a set.

    Attributes
    ----------
    name
        Key under which the value is stored.
    kind
        COUNT adds one per matching event, SUM adds ``attributes[attribute]``
        and FLAG records that a matching event ever happened.
    event_names
        Event names that may contribute.
    attribute
        Attribute summed by SUM metrics.
    predicate
        Optional filter on the event attributes.

    """

    name: str
    kind: MetricKind
    event_names: frozenset[str]
    attribute: str | None = None
    predicate: AttributePredicate | None = None

    def __post_init__(self) -> None:
        """Reject SUM metrics without a source attribute."""
        if self.kind is MetricKind.SUM and not self.attribute:
            msg = f"SUM metric {self.name!r} requires an attribute"
            raise ValueError(msg)

    @property
    def zero(self) -> MetricValue:
        """Return the value of this metric before any event contributes."""
        match self.kind:
            case MetricKind.FLAG:
                return False
            case MetricKind.SUM:
                return 0.0
            case MetricKind.COUNT:
                return 0

    def matches(self, event_name: str, attributes: cabc.Mapping[str, typ.Any]) -> bool:
        """Return True when the event contributes to this metric."""
        if event_name not in self.event_names:
            return False
        return self.predicate is None or bool(self.predicate(attributes))

    def contribution(self, attributes: cabc.Mapping[str, typ.Any]) -> MetricValue:
        """Return what one matching event adds."""
        match self.kind:
            case MetricKind.FLAG:
                return True
            case MetricKind.COUNT:
                return 1
            case MetricKind.SUM:
                raw = attributes.get(typ.cast("str", self.attribute))
                return 0.0 if raw is None else float(_as_number(self.name, raw))


@dc.dataclass(frozen=True, slots=True)
class MetricSetSpec:
    """A named family of aggregates keyed by subject and dimensions."""

    name: str
    metrics: tuple[MetricSpec, ...]
    dimensions: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Reject duplicate metric names."""
        names = [metric.name for metric in self.metrics]
        if len(names) != len(set(names)):
            msg = f"metric set {self.name!r} declares duplicate metric names"
            raise ValueError(msg)

    @property
    def metric_names(self) -> frozenset[str]:
        """Return the names of the declared metrics."""
        return frozenset(metric.name for metric in self.metrics)

    @property
    def event_names(self) -> frozenset[str]:
        """Return every event name any metric in the set listens to."""
        return frozenset().union(*(metric.event_names for metric in self.metrics))

    def metric(self, name: str) -> MetricSpec:
        """Return the metric called ``name``."""
        for metric in self.metrics:
            if metric.name == name:
                return metric
        raise MetricValueError.unknown_metric(self.name, name)

    def zero_metrics(self) -> MetricMap:
        """Return every metric at its zero value."""
        return {metric.name: metric.zero for metric in self.metrics}

    def dimension_values(
        self, attributes: cabc.Mapping[str, typ.Any]
    ) -> dict[str, str] | None:
        """Return the event's dimension values, or None if any is missing."""
        values: dict[str, str] = {}
        for dimension in self.dimensions:
            raw = attributes.get(dimension)
            if raw is None or raw == "":
                return None
            values[dimension] = str(raw)
        return values

    def entity_key(self, subject_id: str, dimensions: cabc.Mapping[str, str]) -> str:
        """Return the aggregate key for a subject and its dimension values.

        Separators inside a part are backslash-escaped, so distinct parts
        never produce the same key.
        """
        parts = [subject_id, *(dimensions[name] for name in self.dimensions)]
        return ENTITY_KEY_SEPARATOR.join(_escape_key_part(part) for part in parts)


def normalize_metrics(
    metric_set: MetricSetSpec, values: cabc.Mapping[str, object | None]
) -> MetricMap:
    """Return a complete, typed metric map for ``metric_set``.

    Every declared metric is present in the result. Missing and null values
    become the metric's zero; counts become ints, sums floats and flags
    bools. Keys the set does not declare raise :class:`MetricValueError`.
    This is the only place metric values are coerced.
    """
    for name in values:
        metric_set.metric(name)

    normalised: MetricMap = {}
    for metric in metric_set.metrics:
        raw = values.get(metric.name)
        if raw is None:
            normalised[metric.name] = metric.zero
            continue
        match metric.kind:
            case MetricKind.FLAG:
                normalised[metric.name] = bool(raw)
            case MetricKind.COUNT:
                normalised[metric.name] = int(_as_number(metric.name, raw))
            case MetricKind.SUM:
                normalised[metric.name] = float(_as_number(metric.name, raw))
    return normalised


class MetricCatalog:
    """Lookup of the metric sets an aggregation engine maintains."""

    def __init__(self, metric_sets: cabc.Iterable[MetricSetSpec]) -> None:
        """Index the metric sets by name, rejecting duplicates."""
        self._sets: dict[str, MetricSetSpec] = {}
        for metric_set in metric_sets:
            if metric_set.name in self._sets:
                msg = f"duplicate metric set {metric_set.name!r}"
                raise ValueError(msg)
            self._sets[metric_set.name] = metric_set

    def __iter__(self) -> cabc.Iterator[MetricSetSpec]:
        """Iterate metric sets in declaration order."""
        return iter(self._sets.values())

    def __len__(self) -> int:
        """Return the number of metric sets."""
        return len(self._sets)

    def __contains__(self, name: object) -> bool:
        """Return True when a set called ``name`` is registered."""
        return name in self._sets

    @property
    def names(self) -> tuple[str, ...]:
        """Return the registered set names."""
        return tuple(self._sets)

    def get(self, name: str) -> MetricSetSpec:
        """Return the set called ``name``."""
        try:
            return self._sets[name]
        except KeyError as exc:
            raise UnknownMetricSetError(name) from exc
