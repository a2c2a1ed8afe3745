"""Audit resources: view freshness, source lag and on-demand refresh.

Routes
------
``GET /freshness/views``
    Freshness of every registered view, in dependency order.
``GET /freshness/views/{name}``
    Freshness of one view; 404 if it is not registered.
``GET /lag/sources``
    Lag of every known event source.
``GET /lag/sources/{source}``
    Lag of one source; 404 if it has no ingestion history.
``POST /views/refresh``
    Refresh every derived view without ingesting new events.

"""

from __future__ import annotations

import dataclasses as dc
import typing as typ

import falcon
import msgspec

from cairn.api.errors import SourceNotFoundError, ViewNotFoundError
from cairn.logging import get_logger, log_info

if typ.TYPE_CHECKING:
    from falcon.asgi import Request, Response

    from cairn.gold.freshness import RefreshFreshnessService
    from cairn.pipeline.lag import IngestionHealthService
    from cairn.pipeline.service import EngagementPipeline

__all__ = [
    "AuditResourceDependencies",
    "SourceLagCollectionResource",
    "SourceLagResource",
    "ViewFreshnessCollectionResource",
    "ViewFreshnessResource",
    "ViewRefreshResource",
]

logger = get_logger(__name__)


@dc.dataclass(frozen=True, slots=True)
class AuditResourceDependencies:
    """Services behind the audit endpoints.

    Attributes
    ----------
    freshness
        Refresh log queries.
    health
        Watermark and ingestion run queries.

    """

    freshness: RefreshFreshnessService
    health: IngestionHealthService


def _stale_only(req: Request) -> bool:
    return req.get_param_as_bool("stale", default=False) or False


class ViewFreshnessCollectionResource:
    """``GET /freshness/views``; ``?stale=true`` lists only stale views."""

    def __init__(self, dependencies: AuditResourceDependencies) -> None:
        """Configure the resource with its dependencies."""
        self._freshness = dependencies.freshness

    async def on_get(self, req: Request, resp: Response) -> None:
        """Return freshness for all (or only stale) views."""
        if _stale_only(req):
            views = await self._freshness.get_stale_views()
        else:
            views = await self._freshness.get_all_view_freshness()
        resp.media = {"views": msgspec.to_builtins(views)}
        resp.status = falcon.HTTP_200


class ViewFreshnessResource:
    """``GET /freshness/views/{name}``."""

    def __init__(self, dependencies: AuditResourceDependencies) -> None:
        """Configure the resource with its dependencies."""
        self._freshness = dependencies.freshness

    async def on_get(self, _req: Request, resp: Response, *, name: str) -> None:
        """Return freshness for view ``name``.

        Raises
        ------
        ViewNotFoundError
            If no view named ``name`` is registered.

        """
        freshness = await self._freshness.get_view_freshness(name)
        if freshness is None:
            raise ViewNotFoundError(name)
        resp.media = msgspec.to_builtins(freshness)
        resp.status = falcon.HTTP_200


class SourceLagCollectionResource:
    """``GET /lag/sources``; ``?stale=true`` lists only stalled sources."""

    def __init__(self, dependencies: AuditResourceDependencies) -> None:
        """Configure the resource with its dependencies."""
        self._health = dependencies.health

    async def on_get(self, req: Request, resp: Response) -> None:
        """Return lag metrics for all (or only stalled) sources."""
        if _stale_only(req):
            sources = await self._health.get_stalled_sources()
        else:
            sources = await self._health.get_all_source_lags()
        resp.media = {"sources": msgspec.to_builtins(sources)}
        resp.status = falcon.HTTP_200


class SourceLagResource:
    """``GET /lag/sources/{source}``."""

    def __init__(self, dependencies: AuditResourceDependencies) -> None:
        """Configure the resource with its dependencies."""
        self._health = dependencies.health

    async def on_get(self, _req: Request, resp: Response, *, source: str) -> None:
        """Return lag metrics for ``source``.

        Raises
        ------
        SourceNotFoundError
            If the source has neither a watermark nor a recorded run.

        """
        lag = await self._health.get_lag_for_source(source)
        if lag is None:
            raise SourceNotFoundError(source)
        resp.media = msgspec.to_builtins(lag)
        resp.status = falcon.HTTP_200


class ViewRefreshResource:
    """``POST /views/refresh`` runs the refresh-only trigger."""

    def __init__(self, pipeline: EngagementPipeline) -> None:
        """Configure the resource with the pipeline whose views it refreshes."""
        self._pipeline = pipeline

    async def on_post(self, _req: Request, resp: Response) -> None:
        """Refresh every view and return the per-view outcomes."""
        result = await self._pipeline.refresh_only()
        log_info(
            logger,
            "On-demand refresh %s finished with status %s",
            result.refresh_run_id,
            result.status,
        )
        resp.media = msgspec.to_builtins(result)
        resp.status = falcon.HTTP_200
