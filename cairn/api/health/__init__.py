"""Liveness and readiness check resources.

Usage
-----
Import health resources for route registration::

    from cairn.api.health.resources import HealthResource, ReadyResource
"""
