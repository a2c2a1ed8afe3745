"""Event source contract and the sources shipped with the pipeline.

An event source yields the events of one source whose time falls inside a
requested window. Sources are finite and are not expected to be restartable;
the pipeline calls ``fetch`` once per run.
"""

from __future__ import annotations

import collections.abc as cabc
import dataclasses
import datetime as dt
import typing as typ

import msgspec

from cairn.pipeline.errors import SourceFormatError, TransientFetchError

if typ.TYPE_CHECKING:
    from pathlib import Path

# Identifier properties in priority order.
_IDENTITY_PROPERTIES = (
    "distinct_id",
    "$distinct_id",
    "user_id",
    "$user_id",
    "identified_id",
)
_DEVICE_ID_PREFIX = "$device:"
# Export timestamps above this are milliseconds rather than seconds.
_MILLISECOND_THRESHOLD = 100_000_000_000


@dataclasses.dataclass(frozen=True, slots=True)
class SourceEvent:
    """One behavioural event as delivered by a source."""

    entity_id: str
    event_name: str
    event_time: dt.datetime
    attributes: dict[str, typ.Any] = dataclasses.field(default_factory=dict)


class EventSource(typ.Protocol):
    """Anything that can stream the events of a time window."""

    def fetch(
        self, source_name: str, start: dt.datetime, end: dt.datetime
    ) -> cabc.AsyncIterator[SourceEvent]:
        """Yield events with ``start <= event_time < end``.

        Raises
        ------
        TransientFetchError
            When the upstream is temporarily unavailable.

        """
        ...


class MixpanelExportRecord(msgspec.Struct, kw_only=True):
    """One line of an analytics export file."""

    event: str
    properties: dict[str, typ.Any] = msgspec.field(default_factory=dict)


def _entity_id(properties: cabc.Mapping[str, typ.Any]) -> str | None:
    for name in _IDENTITY_PROPERTIES:
        value = properties.get(name)
        if value is None:
            continue
        text = str(value).strip()
        if text and not text.startswith(_DEVICE_ID_PREFIX):
            return text
    return None


def _event_time(value: object) -> dt.datetime:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise SourceFormatError.missing_field("time")
    seconds = value / 1000 if value > _MILLISECOND_THRESHOLD else value
    return dt.datetime.fromtimestamp(seconds, tz=dt.UTC)


def from_mixpanel_export(record: MixpanelExportRecord) -> SourceEvent | None:
    """Convert an export record into a source event.

    Returns None for anonymous events that only carry a device identifier.
    ``time`` is read as unix seconds, or milliseconds for large values.
    """
    entity_id = _entity_id(record.properties)
    if entity_id is None:
        return None
    return SourceEvent(
        entity_id=entity_id,
        event_name=record.event,
        event_time=_event_time(record.properties.get("time")),
        attributes=dict(record.properties),
    )


class IterableEventSource:
    """Serve events from memory; used for replays and tests."""

    def __init__(self, events: cabc.Iterable[SourceEvent] = ()) -> None:
        """Hold the events to serve."""
        self._events = list(events)

    def extend(self, events: cabc.Iterable[SourceEvent]) -> None:
        """Append events that later fetches will see."""
        self._events.extend(events)

    async def fetch(
        self, source_name: str, start: dt.datetime, end: dt.datetime
    ) -> cabc.AsyncIterator[SourceEvent]:
        """Yield held events inside the window, oldest first."""
        del source_name
        for event in sorted(self._events, key=lambda item: item.event_time):
            if start <= event.event_time < end:
                yield event


class JsonLinesEventSource:
    """Read events from a newline-delimited JSON export file."""

    def __init__(self, path: Path) -> None:
        """Remember the export path; the file is opened on each fetch."""
        self._path = path
        self._decoder = msgspec.json.Decoder(MixpanelExportRecord)

    async def fetch(
        self, source_name: str, start: dt.datetime, end: dt.datetime
    ) -> cabc.AsyncIterator[SourceEvent]:
        """Yield events from the file that fall inside the window.

        Raises
        ------
        TransientFetchError
            If the file cannot be read.
        SourceFormatError
            If a line is not a valid export record.

        """
        try:
            lines = self._path.read_bytes().splitlines()
        except OSError as exc:
            raise TransientFetchError(source_name, str(exc)) from exc

        for line_number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                record = self._decoder.decode(line)
            except msgspec.DecodeError as exc:
                raise SourceFormatError.bad_line(
                    str(self._path), line_number, str(exc)
                ) from exc
            event = from_mixpanel_export(record)
            if event is not None and start <= event.event_time < end:
                yield event
