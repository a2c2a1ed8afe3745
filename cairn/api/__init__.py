"""Cairn HTTP API layer.

Usage
-----
Create and run the application::

    from cairn.api import create_app

    app = create_app()              # health-only mode
    app = create_app(dependencies)  # with audit endpoints
"""

from cairn.api.app import create_app

__all__ = ["create_app"]
