"""Read-only freshness queries over the refresh log."""

from __future__ import annotations

import dataclasses
import datetime as dt
import typing as typ

from sqlalchemy import func, select

from cairn.common.time import utcnow
from cairn.gold.storage import RefreshLogEntry, RefreshStatus

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from cairn.common.time import Clock
    from cairn.gold.registry import ViewRegistry


@dataclasses.dataclass(frozen=True, slots=True)
class FreshnessConfig:
    """Thresholds for view freshness."""

    stale_threshold: dt.timedelta = dataclasses.field(
        default_factory=lambda: dt.timedelta(hours=26)
    )


@dataclasses.dataclass(frozen=True, slots=True)
class ViewFreshness:
    """How current one derived view is."""

    view_name: str
    last_refreshed_at: dt.datetime | None
    seconds_since_refresh: float | None
    last_status: str | None
    last_duration_ms: int | None
    last_rows_affected: int | None
    last_error: str | None
    is_stale: bool


def _compute_freshness(
    view_name: str,
    last_success: RefreshLogEntry | None,
    last_attempt: RefreshLogEntry | None,
    now: dt.datetime,
    stale_threshold: dt.timedelta,
) -> ViewFreshness:
    if last_success is None:
        refreshed_at = None
        age = None
        is_stale = True
    else:
        refreshed_at = last_success.run_at
        age = (now - refreshed_at).total_seconds()
        is_stale = age > stale_threshold.total_seconds()

    return ViewFreshness(
        view_name=view_name,
        last_refreshed_at=refreshed_at,
        seconds_since_refresh=age,
        last_status=last_attempt.status if last_attempt else None,
        last_duration_ms=last_success.duration_ms if last_success else None,
        last_rows_affected=last_success.rows_affected if last_success else None,
        last_error=last_attempt.error_message if last_attempt else None,
        is_stale=is_stale,
    )


class RefreshFreshnessService:
    """Answer "how long since view X was last refreshed?".

    Views that never refreshed successfully are reported as stale.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ViewRegistry,
        *,
        config: FreshnessConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Bind the service to storage and the registered views."""
        self._session_factory = session_factory
        self._registry = registry
        self._config = config or FreshnessConfig()
        self._clock = clock

    async def _latest(
        self, session: AsyncSession, view_name: str, *, successful: bool
    ) -> RefreshLogEntry | None:
        stmt = select(RefreshLogEntry).where(RefreshLogEntry.view_name == view_name)
        if successful:
            stmt = stmt.where(RefreshLogEntry.status == RefreshStatus.SUCCESS.value)
        stmt = stmt.order_by(RefreshLogEntry.run_at.desc(), RefreshLogEntry.id.desc())
        return await session.scalar(stmt.limit(1))

    async def get_view_freshness(self, view_name: str) -> ViewFreshness | None:
        """Return freshness for one view, or None if it is not registered."""
        if view_name not in self._registry:
            return None
        async with self._session_factory() as session:
            return _compute_freshness(
                view_name,
                await self._latest(session, view_name, successful=True),
                await self._latest(session, view_name, successful=False),
                self._clock(),
                self._config.stale_threshold,
            )

    async def get_all_view_freshness(self) -> list[ViewFreshness]:
        """Return freshness for every registered view in dependency order."""
        now = self._clock()
        async with self._session_factory() as session:
            return [
                _compute_freshness(
                    name,
                    await self._latest(session, name, successful=True),
                    await self._latest(session, name, successful=False),
                    now,
                    self._config.stale_threshold,
                )
                for name in self._registry.order
            ]

    async def get_stale_views(self) -> list[ViewFreshness]:
        """Return views past the stale threshold or never refreshed."""
        return [view for view in await self.get_all_view_freshness() if view.is_stale]

    async def count_runs(self) -> int:
        """Return the number of refresh runs recorded in the log."""
        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.count(func.distinct(RefreshLogEntry.run_id)))
            )
            return int(total or 0)
