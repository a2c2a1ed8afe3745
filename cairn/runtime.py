"""Cairn runtime entrypoint for container deployments.

``create_app`` is the Granian factory. When ``CAIRN_DATABASE_URL`` is set it
wires the audit services and the refresh trigger; otherwise the app only
serves health checks.

Configuration is driven by environment variables:

- ``CAIRN_HOST``: Bind address (default ``0.0.0.0``)
- ``CAIRN_PORT``: Listen port (default ``8080``)
- ``CAIRN_LOG_LEVEL``: Log level (default ``INFO``)
- ``CAIRN_DATABASE_URL``: Database connection URL (optional)

Pipeline settings are read from the ``CAIRN_*`` variables documented on
:class:`cairn.pipeline.config.PipelineConfig`.

Run the service directly with ``python -m cairn.runtime``.
"""

from __future__ import annotations

import os
import typing as typ

from cairn.logging import (
    configure_logging,
    get_logger,
    log_error,
    log_info,
    log_warning,
)

if typ.TYPE_CHECKING:
    import falcon.asgi

__all__ = ["create_app", "main"]

logger = get_logger(__name__)

_MIN_PORT = 1
_MAX_PORT = 65535


def _parse_port(port_str: str) -> int:
    """Parse and validate a port number string.

    Raises
    ------
    SystemExit
        If ``port_str`` is not an integer in range 1-65535.

    """
    try:
        port = int(port_str)
        if not (_MIN_PORT <= port <= _MAX_PORT):
            msg = f"port {port} outside valid range {_MIN_PORT}-{_MAX_PORT}"
            raise ValueError(msg)  # noqa: TRY301 - unify conversion and range errors
    except ValueError as exc:
        log_error(
            logger,
            "Invalid CAIRN_PORT value: %r (must be %d-%d): %s",
            port_str,
            _MIN_PORT,
            _MAX_PORT,
            exc,
        )
        raise SystemExit(1) from exc
    return port


def create_app() -> falcon.asgi.App:
    """Create the Falcon ASGI application from the environment."""
    from cairn.api.app import create_app as _create_api_app

    database_url = os.environ.get("CAIRN_DATABASE_URL")
    if not database_url:
        return _create_api_app()

    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

    from cairn.api.app import AppDependencies
    from cairn.pipeline.factory import build_pipeline

    engine = create_async_engine(database_url)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    pipeline = build_pipeline(session_factory)
    return _create_api_app(
        AppDependencies.from_session_factory(session_factory, pipeline)
    )


def main() -> None:
    """Start the Cairn runtime server using Granian."""
    from granian import Granian
    from granian.constants import Interfaces

    host = os.environ.get("CAIRN_HOST", "0.0.0.0")  # noqa: S104 - bind all interfaces for container
    port = _parse_port(os.environ.get("CAIRN_PORT", "8080"))
    log_level_str = os.environ.get("CAIRN_LOG_LEVEL", "INFO")

    normalized_level, invalid_level = configure_logging(log_level_str)
    if invalid_level:
        log_warning(
            logger,
            "Invalid CAIRN_LOG_LEVEL %r, falling back to %s",
            log_level_str,
            normalized_level,
        )

    log_info(
        logger,
        "Starting Cairn runtime on %s:%d (log_level=%s)",
        host,
        port,
        normalized_level,
    )

    server = Granian(
        "cairn.runtime:create_app",
        address=host,
        port=port,
        interface=Interfaces.ASGI,
        factory=True,
    )
    server.serve()


if __name__ == "__main__":
    main()
