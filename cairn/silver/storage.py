"""Entity aggregate rows built from raw events."""

from __future__ import annotations

import datetime as dt  # noqa: TC003
import typing as typ

from sqlalchemy import JSON, BigInteger, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from cairn.bronze.storage import Base, UTCDateTime
from cairn.common.time import utcnow

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


class EntityAggregate(Base):
    """Rolling-window metrics for one entity of a metric set.

    ``entity_id`` joins the subject (the raw event's entity, usually a user)
    with the set's dimension values, so one user owns one row per portfolio
    in the portfolio engagement set.
    """

    __tablename__ = "entity_aggregates"
    __table_args__ = (
        UniqueConstraint("metric_set", "entity_id", name="uq_entity_aggregate_key"),
        Index("ix_entity_aggregates_subject", "metric_set", "subject_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    metric_set: Mapped[str] = mapped_column(String(64))
    entity_id: Mapped[str] = mapped_column(String(512))
    subject_id: Mapped[str] = mapped_column(String(255))
    dimensions: Mapped[dict[str, str]] = mapped_column(JSON, default=dict)
    metrics: Mapped[dict[str, typ.Any]] = mapped_column(JSON, default=dict)
    events_processed: Mapped[int] = mapped_column(BigInteger, default=0)
    first_event_time: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime(), default=None
    )
    last_event_time: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime(), default=None
    )
    window_start: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime(), default=None
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )


async def init_silver_storage(engine: AsyncEngine) -> None:
    """Create aggregate tables registered with the shared Base if absent."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
