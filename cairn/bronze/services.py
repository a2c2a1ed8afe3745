"""Services for persisting raw behavioural events."""

from __future__ import annotations

import dataclasses as dc
import datetime as dt
import hashlib
import itertools
import json
import typing as typ

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from cairn.bronze.errors import (
    RawEventPersistError,
    TimezoneAwareRequiredError,
    UnsupportedAttributeTypeError,
)
from cairn.bronze.storage import RawEvent

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

type Attributes = dict[str, typ.Any]
type JSONValue = dict[str, typ.Any] | list[typ.Any] | str | int | float | bool | None

DEFAULT_INSERT_BATCH_SIZE = 500


@dc.dataclass(frozen=True, slots=True)
class RawEventEnvelope:
    """One event as received from a source, before persistence."""

    source_name: str
    entity_id: str
    event_name: str
    event_time: dt.datetime
    attributes: Attributes = dc.field(default_factory=dict)
    discriminator: str | None = None


@dc.dataclass(frozen=True, slots=True)
class RawEventIngestResult:
    """Counts reported by a batch ingest."""

    received: int
    inserted: int

    @property
    def duplicates(self) -> int:
        """Events skipped because an identical row already existed."""
        return self.received - self.inserted


def _normalise_attributes(value: object) -> JSONValue:
    """Deep-copy attributes into JSON-safe values.

    Datetimes must be timezone aware and become ISO strings; other non-JSON
    types are rejected so the dedupe hash stays deterministic.
    """
    match value:
        case dict():
            return {str(k): _normalise_attributes(v) for k, v in value.items()}
        case list() | tuple():
            return [_normalise_attributes(item) for item in value]
        case dt.datetime():
            if value.tzinfo is None:
                raise TimezoneAwareRequiredError.for_attributes()
            return value.astimezone(dt.UTC).isoformat()
        case None | bool() | int() | float() | str():
            return value
        case _:
            raise UnsupportedAttributeTypeError(type(value).__name__)


def _attribute_digest(attributes: Attributes) -> str:
    canonical = json.dumps(attributes, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def make_dedupe_key(envelope: RawEventEnvelope) -> str:
    """Return the stable identity of an event within its source.

    The key covers entity, event name, UTC event time and the discriminator.
    Events without a discriminator fall back to a hash of their attributes.
    """
    if envelope.event_time.tzinfo is None:
        raise TimezoneAwareRequiredError.for_event_time()

    discriminator = envelope.discriminator
    if discriminator is None:
        discriminator = "attrs:" + _attribute_digest(
            typ.cast("Attributes", _normalise_attributes(envelope.attributes))
        )
    material = "|".join(
        [
            envelope.source_name,
            envelope.entity_id,
            envelope.event_name,
            envelope.event_time.astimezone(dt.UTC).isoformat(),
            discriminator,
        ]
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class RawEventWriter:
    """Append-only, de-duplicating writer for raw events."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        batch_size: int = DEFAULT_INSERT_BATCH_SIZE,
    ) -> None:
        """Store the session factory and the rows written per transaction."""
        if batch_size < 1:
            msg = f"batch_size must be positive, got: {batch_size}"
            raise ValueError(msg)
        self._session_factory = session_factory
        self._batch_size = batch_size

    async def ingest_batch(
        self, envelopes: cabc.Iterable[RawEventEnvelope]
    ) -> RawEventIngestResult:
        """Persist envelopes, skipping events already stored.

        Events are written in transactions of ``batch_size`` rows. Duplicates,
        whether repeated inside the input or already present from an earlier
        overlapping window, are dropped; the unique constraint on
        ``(source_name, dedupe_key)`` backs the check.
        """
        received = 0
        inserted = 0
        iterator = iter(envelopes)
        while batch := list(itertools.islice(iterator, self._batch_size)):
            received += len(batch)
            inserted += await self._ingest_chunk(batch)
        return RawEventIngestResult(received=received, inserted=inserted)

    async def _ingest_chunk(self, batch: list[RawEventEnvelope]) -> int:
        rows: dict[tuple[str, str], RawEvent] = {}
        for envelope in batch:
            if envelope.event_time.tzinfo is None:
                raise TimezoneAwareRequiredError.for_event_time()
            attributes = typ.cast(
                "Attributes", _normalise_attributes(envelope.attributes)
            )
            normalised = dc.replace(envelope, attributes=attributes)
            key = (normalised.source_name, make_dedupe_key(normalised))
            if key in rows:
                continue
            rows[key] = RawEvent(
                source_name=normalised.source_name,
                entity_id=normalised.entity_id,
                event_name=normalised.event_name,
                event_time=normalised.event_time,
                discriminator=normalised.discriminator,
                dedupe_key=key[1],
                attributes=attributes,
            )

        async with self._session_factory() as session:
            existing = await self._existing_keys(session, list(rows))
            new_rows = [row for key, row in rows.items() if key not in existing]
            session.add_all(new_rows)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                source_name = new_rows[0].source_name if new_rows else ""
                raise RawEventPersistError(source_name) from exc
            return len(new_rows)

    @staticmethod
    async def _existing_keys(
        session: AsyncSession, keys: list[tuple[str, str]]
    ) -> set[tuple[str, str]]:
        found: set[tuple[str, str]] = set()
        by_source: dict[str, list[str]] = {}
        for source_name, dedupe_key in keys:
            by_source.setdefault(source_name, []).append(dedupe_key)
        for source_name, dedupe_keys in by_source.items():
            stmt = select(RawEvent.dedupe_key).where(
                RawEvent.source_name == source_name,
                RawEvent.dedupe_key.in_(dedupe_keys),
            )
            found.update(
                (source_name, key) for key in (await session.scalars(stmt)).all()
            )
        return found
