"""Dependency-ordered, failure-isolated refresh of derived views."""

from __future__ import annotations

import asyncio
import dataclasses as dc
import datetime as dt
import enum
import time
import typing as typ
import uuid

from sqlalchemy import delete, insert, select, text
from sqlalchemy.exc import SQLAlchemyError

from cairn.common.time import elapsed_ms, utcnow
from cairn.gold.errors import RefreshFailure
from cairn.gold.observability import RefreshEventLogger
from cairn.gold.registry import RefreshMode
from cairn.gold.storage import RefreshLogEntry, RefreshStatus

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from cairn.common.time import Clock
    from cairn.gold.registry import DerivedViewNode, ViewRegistry, ViewRow


class NodeState(enum.StrEnum):
    """Lifecycle of a view within one refresh run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class RunState(enum.StrEnum):
    """Lifecycle of a refresh run."""

    RUNNING = "running"
    COMPLETED = "completed"


@dc.dataclass(frozen=True, slots=True)
class ViewRefreshResult:
    """Outcome of one view within a run."""

    name: str
    status: RefreshStatus
    duration_ms: int = 0
    rows_affected: int = 0
    error: str | None = None
    refresh_mode: RefreshMode | None = None


@dc.dataclass(frozen=True, slots=True)
class RefreshRunResult:
    """Outcome of a full refresh run."""

    run_id: str
    status: RunState
    started_at: dt.datetime
    finished_at: dt.datetime
    duration_ms: int
    views: tuple[ViewRefreshResult, ...]

    def _with_status(self, status: RefreshStatus) -> tuple[str, ...]:
        return tuple(view.name for view in self.views if view.status is status)

    @property
    def succeeded(self) -> tuple[str, ...]:
        """Return names of views refreshed successfully."""
        return self._with_status(RefreshStatus.SUCCESS)

    @property
    def failed(self) -> tuple[str, ...]:
        """Return names of views whose refresh raised."""
        return self._with_status(RefreshStatus.ERROR)

    @property
    def skipped(self) -> tuple[str, ...]:
        """Return names of views skipped because of an upstream failure."""
        return self._with_status(RefreshStatus.SKIPPED)

    def view(self, name: str) -> ViewRefreshResult:
        """Return the result for view ``name``."""
        for result in self.views:
            if result.name == name:
                return result
        raise KeyError(name)


def _row_key(row: typ.Mapping[str, typ.Any], key: tuple[str, ...]) -> tuple:
    return tuple(row[column] for column in key)


def _model_key(model: object, key: tuple[str, ...]) -> tuple:
    return tuple(getattr(model, column) for column in key)


async def _apply_exclusive(
    session: AsyncSession, node: DerivedViewNode, rows: list[ViewRow]
) -> int:
    """Replace every row of the view in the current transaction."""
    table = node.table.__table__
    if session.get_bind().dialect.name == "postgresql":
        await session.execute(
            text(f'LOCK TABLE "{table.name}" IN ACCESS EXCLUSIVE MODE')  # noqa: S608
        )
    await session.execute(delete(node.table))
    if rows:
        await session.execute(insert(node.table), rows)
    return len(rows)


async def _apply_non_blocking(
    session: AsyncSession, node: DerivedViewNode, rows: list[ViewRow]
) -> int:
    """Apply a keyed diff so readers never see an empty view.

    Only rows whose values changed are written and keys that disappeared are
    deleted. Returns the number of rows inserted, updated or deleted.
    """
    existing = {
        _model_key(model, node.unique_key): model
        for model in (await session.scalars(select(node.table))).all()
    }
    incoming = {_row_key(row, node.unique_key): row for row in rows}
    affected = 0

    for key, model in existing.items():
        if key not in incoming:
            await session.delete(model)
            affected += 1

    for key, row in incoming.items():
        model = existing.get(key)
        if model is None:
            session.add(node.table(**row))
            affected += 1
            continue
        changed = False
        for column, value in row.items():
            if getattr(model, column) != value:
                setattr(model, column, value)
                changed = True
        affected += int(changed)

    await session.flush()
    return affected


_APPLY_FUNCTIONS = {
    RefreshMode.EXCLUSIVE: _apply_exclusive,
    RefreshMode.NON_BLOCKING: _apply_non_blocking,
}


class RefreshOrchestrator:
    """Refresh every registered view in dependency order.

    Each view runs in its own failure boundary and transaction. A view that
    raises or times out is recorded as ``error``; every view downstream of it
    is recorded as ``skipped`` without running. Independent views still run,
    and the run always completes. Each view gets one refresh log entry; a
    failed log write is reported and never aborts the run.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ViewRegistry,
        *,
        view_timeout: dt.timedelta | None = None,
        event_logger: RefreshEventLogger | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Bind the orchestrator to storage and a validated registry."""
        self._session_factory = session_factory
        self._registry = registry
        self._view_timeout = view_timeout
        self._events = event_logger or RefreshEventLogger()
        self._clock = clock

    @property
    def registry(self) -> ViewRegistry:
        """Return the registry this orchestrator refreshes."""
        return self._registry

    async def refresh_all(self) -> RefreshRunResult:
        """Refresh every view once and return the per-view outcomes."""
        run_id = str(uuid.uuid4())
        started_at = self._clock()
        run_started = time.perf_counter()
        states = dict.fromkeys(self._registry.order, NodeState.PENDING)
        results: list[ViewRefreshResult] = []
        self._events.log_run_started(run_id=run_id, views=len(states))

        for name in self._registry.order:
            node = self._registry.node(name)
            node_started_at = self._clock()
            blocked_by = sorted(
                dependency
                for dependency in self._registry.view_dependencies(name)
                if states[dependency] is not NodeState.SUCCESS
            )
            if blocked_by:
                upstream = blocked_by[0]
                reason = f"dependency {upstream!r} did not succeed ({states[upstream]})"
                result = ViewRefreshResult(
                    name=name, status=RefreshStatus.SKIPPED, error=reason
                )
                states[name] = NodeState.SKIPPED
                self._events.log_view_skipped(run_id, result)
            else:
                states[name] = NodeState.RUNNING
                result = await self._refresh_node(run_id, node)
                states[name] = (
                    NodeState.SUCCESS
                    if result.status is RefreshStatus.SUCCESS
                    else NodeState.ERROR
                )
            try:
                await self._append_log(run_id, result, started_at=node_started_at)
            except SQLAlchemyError as exc:
                self._events.log_audit_failed(run_id, result, exc)
            results.append(result)

        run_result = RefreshRunResult(
            run_id=run_id,
            status=RunState.COMPLETED,
            started_at=started_at,
            finished_at=self._clock(),
            duration_ms=elapsed_ms(run_started, time.perf_counter()),
            views=tuple(results),
        )
        self._events.log_run_completed(run_result)
        return run_result

    async def _refresh_node(
        self, run_id: str, node: DerivedViewNode
    ) -> ViewRefreshResult:
        mode = node.effective_mode
        if mode is not node.refresh_mode:
            self._events.log_mode_fallback(
                view=node.name, requested=node.refresh_mode, effective=mode
            )
        timeout = (
            self._view_timeout.total_seconds() if self._view_timeout else None
        )
        deadline = asyncio.timeout(timeout)
        started = time.perf_counter()
        failure: RefreshFailure | None = None
        rows_affected = 0
        try:
            async with deadline:
                rows_affected = await self._recompute(node, mode)
        except TimeoutError as exc:
            # Only an expired deadline is a timeout; the view may raise its own.
            failure = (
                RefreshFailure.timed_out(node.name, timeout or 0.0)
                if deadline.expired()
                else RefreshFailure.from_exception(node.name, exc)
            )
        except Exception as exc:  # noqa: BLE001 - each view is its own failure boundary
            failure = RefreshFailure.from_exception(node.name, exc)
        duration_ms = elapsed_ms(started, time.perf_counter())

        if failure is not None:
            result = ViewRefreshResult(
                name=node.name,
                status=RefreshStatus.ERROR,
                duration_ms=duration_ms,
                error=failure.reason,
                refresh_mode=mode,
            )
            self._events.log_view_failed(run_id, result, failure)
            return result

        result = ViewRefreshResult(
            name=node.name,
            status=RefreshStatus.SUCCESS,
            duration_ms=duration_ms,
            rows_affected=rows_affected,
            refresh_mode=mode,
        )
        self._events.log_view_completed(run_id, result)
        return result

    async def _recompute(self, node: DerivedViewNode, mode: RefreshMode) -> int:
        async with self._session_factory() as session, session.begin():
            rows = await node.compute(session)
            return await _APPLY_FUNCTIONS[mode](session, node, rows)

    async def _append_log(
        self, run_id: str, result: ViewRefreshResult, *, started_at: dt.datetime
    ) -> None:
        async with self._session_factory() as session, session.begin():
            session.add(
                RefreshLogEntry(
                    run_id=run_id,
                    view_name=result.name,
                    status=result.status.value,
                    refresh_mode=(
                        result.refresh_mode.value if result.refresh_mode else None
                    ),
                    duration_ms=result.duration_ms,
                    rows_affected=result.rows_affected,
                    error_message=result.error,
                    started_at=started_at,
                    run_at=self._clock(),
                )
            )
