"""Domain exceptions and Falcon error handlers for the API layer.

Usage
-----
Register error handlers on the Falcon app::

    from cairn.api.errors import (
        SourceNotFoundError,
        ViewNotFoundError,
        handle_not_found,
    )

    app.add_error_handler(ViewNotFoundError, handle_not_found)
    app.add_error_handler(SourceNotFoundError, handle_not_found)

"""

from __future__ import annotations

import typing as typ

import falcon

if typ.TYPE_CHECKING:
    from falcon.asgi import Request, Response

__all__ = [
    "ResourceNotFoundError",
    "SourceNotFoundError",
    "ViewNotFoundError",
    "handle_not_found",
]


class ResourceNotFoundError(Exception):
    """Base for lookups that should map to HTTP 404.

    Attributes
    ----------
    title
        Short summary used as the response title.

    """

    title = "Not found"


class ViewNotFoundError(ResourceNotFoundError):
    """Raised when a derived view is not registered."""

    title = "View not found"

    def __init__(self, view_name: str) -> None:
        """Record the requested view name."""
        self.view_name = view_name
        super().__init__(f"No derived view named {view_name!r} is registered.")


class SourceNotFoundError(ResourceNotFoundError):
    """Raised when an event source has no watermark and no recorded run."""

    title = "Source not found"

    def __init__(self, source_name: str) -> None:
        """Record the requested source name."""
        self.source_name = source_name
        super().__init__(f"No ingestion history for source {source_name!r}.")


async def handle_not_found(
    _req: Request,
    resp: Response,
    ex: ResourceNotFoundError,
    _params: dict[str, typ.Any],
) -> None:
    """Map a :class:`ResourceNotFoundError` to an HTTP 404 JSON response."""
    resp.status = falcon.HTTP_404
    resp.media = {
        "title": ex.title,
        "description": str(ex),
    }
