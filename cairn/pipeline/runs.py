"""Audit trail of ingestion runs."""

from __future__ import annotations

import dataclasses
import typing as typ

from sqlalchemy import select

from cairn.bronze.storage import IngestionRun, RunStatus
from cairn.common.time import utcnow

if typ.TYPE_CHECKING:
    import datetime as dt

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from cairn.bronze.watermarks import FetchWindow


@dataclasses.dataclass(frozen=True, slots=True)
class RunRecord:
    """Outcome of one ingestion run, ready to be persisted."""

    source_name: str
    status: RunStatus
    started_at: dt.datetime
    window: FetchWindow | None = None
    merge_mode: str | None = None
    events_fetched: int = 0
    events_inserted: int = 0
    entities_updated: int = 0
    chunks_committed: int = 0
    error_category: str | None = None
    error_message: str | None = None


class IngestionRunRecorder:
    """Persist and query :class:`IngestionRun` rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Store the session factory used for run audit access."""
        self._session_factory = session_factory

    async def record(
        self, record: RunRecord, *, finished_at: dt.datetime | None = None
    ) -> IngestionRun:
        """Append one run to the audit trail and return the stored row."""
        window = record.window
        row = IngestionRun(
            source_name=record.source_name,
            status=record.status.value,
            merge_mode=record.merge_mode,
            window_start=window.start if window else None,
            window_end=window.end if window else None,
            events_fetched=record.events_fetched,
            events_inserted=record.events_inserted,
            entities_updated=record.entities_updated,
            chunks_committed=record.chunks_committed,
            error_category=record.error_category,
            error_message=record.error_message,
            started_at=record.started_at,
            finished_at=finished_at or utcnow(),
        )
        async with self._session_factory() as session, session.begin():
            session.add(row)
        return row

    async def recent_runs(
        self, source_name: str, *, limit: int = 20, successful_only: bool = False
    ) -> list[IngestionRun]:
        """Return the newest runs for a source, newest first."""
        stmt = select(IngestionRun).where(IngestionRun.source_name == source_name)
        if successful_only:
            stmt = stmt.where(IngestionRun.status == RunStatus.SUCCESS.value)
        stmt = stmt.order_by(IngestionRun.started_at.desc(), IngestionRun.id.desc())
        async with self._session_factory() as session:
            rows = await session.scalars(stmt.limit(limit))
            return list(rows.all())

    async def last_run(self, source_name: str) -> IngestionRun | None:
        """Return the newest run for a source, if any."""
        runs = await self.recent_runs(source_name, limit=1)
        return runs[0] if runs else None
