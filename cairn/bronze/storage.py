"""Persistence models for raw events, watermarks and ingestion runs."""

from __future__ import annotations

import datetime as dt
import enum
import typing as typ

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

if typ.TYPE_CHECKING:
    from sqlalchemy.engine import Dialect
    from sqlalchemy.ext.asyncio import AsyncEngine

from cairn.bronze.errors import TimezoneAwareRequiredError
from cairn.common.time import utcnow


class RawEventState(enum.IntEnum):
    """Aggregation state of a stored raw event."""

    PENDING = 0
    AGGREGATED = 1


class RunStatus(enum.StrEnum):
    """Outcome recorded for an ingestion pass."""

    SUCCESS = "success"
    FAILED = "failed"


class Base(DeclarativeBase):
    """Declarative base shared by every storage layer."""


class UTCDateTime(TypeDecorator[dt.datetime]):
    """DateTime wrapper that round-trips UTC tzinfo even on SQLite."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(
        self, value: dt.datetime | None, dialect: Dialect
    ) -> dt.datetime | None:
        """Reject naive datetimes and bind aware ones as UTC."""
        if value is None:
            return None
        if value.tzinfo is None:
            raise TimezoneAwareRequiredError.for_event_time()
        return value.astimezone(dt.UTC)

    def process_result_value(
        self, value: dt.datetime | None, dialect: Dialect
    ) -> dt.datetime | None:
        """Return stored datetimes as aware UTC values."""
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.UTC)
        return value.astimezone(dt.UTC)


class RawEvent(Base):
    """Immutable record of one behavioural event received from a source.

    Only ``aggregation_state`` and ``aggregated_at`` change after insert; they
    flip once when the event has been folded into the entity aggregates.
    """

    __tablename__ = "raw_events"
    __table_args__ = (
        UniqueConstraint("source_name", "dedupe_key", name="uq_raw_event_dedupe"),
        Index("ix_raw_events_entity_time", "source_name", "entity_id", "event_time"),
        Index("ix_raw_events_state", "source_name", "aggregation_state"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source_name: Mapped[str] = mapped_column(String(64))
    entity_id: Mapped[str] = mapped_column(String(255))
    event_name: Mapped[str] = mapped_column(String(128))
    event_time: Mapped[dt.datetime] = mapped_column(UTCDateTime())
    discriminator: Mapped[str | None] = mapped_column(String(255), default=None)
    dedupe_key: Mapped[str] = mapped_column(String(128))
    attributes: Mapped[dict[str, typ.Any]] = mapped_column(JSON)
    ingested_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)
    aggregation_state: Mapped[int] = mapped_column(
        Integer, default=RawEventState.PENDING.value
    )
    aggregated_at: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime(), default=None
    )


class Watermark(Base):
    """Last event time successfully aggregated for a source."""

    __tablename__ = "watermarks"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source_name: Mapped[str] = mapped_column(String(64), unique=True)
    last_event_time: Mapped[dt.datetime] = mapped_column(UTCDateTime())
    last_run_status: Mapped[str] = mapped_column(
        String(16), default=RunStatus.SUCCESS.value
    )
    events_processed: Mapped[int] = mapped_column(BigInteger, default=0)
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )


class IngestionRun(Base):
    """Append-only audit row describing one ingestion attempt."""

    __tablename__ = "ingestion_runs"
    __table_args__ = (
        Index("ix_ingestion_runs_source_started", "source_name", "started_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    source_name: Mapped[str] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(16))
    merge_mode: Mapped[str | None] = mapped_column(String(16), default=None)
    window_start: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime(), default=None
    )
    window_end: Mapped[dt.datetime | None] = mapped_column(UTCDateTime(), default=None)
    events_fetched: Mapped[int] = mapped_column(Integer, default=0)
    events_inserted: Mapped[int] = mapped_column(Integer, default=0)
    entities_updated: Mapped[int] = mapped_column(Integer, default=0)
    chunks_committed: Mapped[int] = mapped_column(Integer, default=0)
    error_category: Mapped[str | None] = mapped_column(String(32), default=None)
    error_message: Mapped[str | None] = mapped_column(Text(), default=None)
    started_at: Mapped[dt.datetime] = mapped_column(UTCDateTime())
    finished_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)


async def init_bronze_storage(engine: AsyncEngine) -> None:
    """Create all tables registered with Base if they are absent."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
