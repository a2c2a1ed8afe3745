"""Application factory for the Cairn Falcon ASGI application.

Usage
-----
Create a health-only app (no database)::

    app = create_app()

Create a full app with audit endpoints::

    from cairn.api.app import AppDependencies, create_app

    deps = AppDependencies.from_session_factory(session_factory)
    app = create_app(deps)

"""

from __future__ import annotations

import dataclasses as dc
import typing as typ

import falcon.asgi

from cairn.api.errors import ResourceNotFoundError, handle_not_found
from cairn.api.health.resources import HealthResource, ReadyResource

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from cairn.gold.freshness import RefreshFreshnessService
    from cairn.pipeline.lag import IngestionHealthService
    from cairn.pipeline.service import EngagementPipeline

__all__ = ["AppDependencies", "create_app"]


@dc.dataclass(frozen=True, slots=True)
class AppDependencies:
    """Dependencies for the Falcon ASGI application.

    Attributes
    ----------
    session_factory
        Async session factory, used by the readiness check.
    freshness
        View freshness queries; enables ``/freshness`` routes.
    health
        Source lag queries; enables ``/lag`` routes.
    pipeline
        Pipeline whose refresh-only trigger backs ``POST /views/refresh``.

    """

    session_factory: async_sessionmaker[AsyncSession] | None = None
    freshness: RefreshFreshnessService | None = None
    health: IngestionHealthService | None = None
    pipeline: EngagementPipeline | None = None

    @classmethod
    def from_session_factory(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        pipeline: EngagementPipeline | None = None,
    ) -> AppDependencies:
        """Build every audit service on top of ``session_factory``."""
        from cairn.gold.freshness import RefreshFreshnessService
        from cairn.gold.graph import build_default_registry
        from cairn.pipeline.lag import IngestionHealthService

        registry = (
            pipeline.orchestrator.registry if pipeline else build_default_registry()
        )
        return cls(
            session_factory=session_factory,
            freshness=RefreshFreshnessService(session_factory, registry),
            health=IngestionHealthService(session_factory),
            pipeline=pipeline,
        )


def create_app(
    dependencies: AppDependencies | None = None,
) -> falcon.asgi.App:
    """Create and configure the Falcon ASGI application.

    ``/health`` and ``/ready`` are always registered. Audit routes are added
    when both the freshness and health services are supplied, and the
    refresh trigger when a pipeline is.

    """
    deps = dependencies or AppDependencies()
    app = falcon.asgi.App()  # type: ignore[no-matching-overload]  # Falcon stubs

    app.add_route("/health", HealthResource())
    app.add_route("/ready", ReadyResource(deps.session_factory))

    if deps.freshness is not None and deps.health is not None:
        from cairn.api.audit.resources import (
            AuditResourceDependencies,
            SourceLagCollectionResource,
            SourceLagResource,
            ViewFreshnessCollectionResource,
            ViewFreshnessResource,
        )

        audit = AuditResourceDependencies(
            freshness=deps.freshness, health=deps.health
        )
        app.add_route("/freshness/views", ViewFreshnessCollectionResource(audit))
        app.add_route("/freshness/views/{name}", ViewFreshnessResource(audit))
        app.add_route("/lag/sources", SourceLagCollectionResource(audit))
        app.add_route("/lag/sources/{source}", SourceLagResource(audit))

    if deps.pipeline is not None:
        from cairn.api.audit.resources import ViewRefreshResource

        app.add_route("/views/refresh", ViewRefreshResource(deps.pipeline))

    app.add_error_handler(ResourceNotFoundError, handle_not_found)

    return app
