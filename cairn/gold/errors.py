"""Errors raised by the view registry and refresh orchestrator."""

from __future__ import annotations

import typing as typ

if typ.TYPE_CHECKING:
    import collections.abc as cabc


class ViewRegistryError(ValueError):
    """Raised when the derived view graph is invalid."""

    @classmethod
    def duplicate_name(cls, name: str) -> ViewRegistryError:
        """Return an error for a name declared twice."""
        return cls(f"view {name!r} is declared more than once")

    @classmethod
    def unknown_dependency(cls, name: str, dependency: str) -> ViewRegistryError:
        """Return an error for a dependency that names nothing known."""
        return cls(f"view {name!r} depends on unknown view or source {dependency!r}")

    @classmethod
    def self_dependency(cls, name: str) -> ViewRegistryError:
        """Return an error for a view that lists itself as a dependency."""
        return cls(f"view {name!r} depends on itself")

    @classmethod
    def cycle(cls, names: cabc.Sequence[str]) -> ViewRegistryError:
        """Return an error naming the views that form a cycle."""
        return cls(f"view dependencies form a cycle: {' -> '.join(names)}")

    @classmethod
    def unknown_view(cls, name: str) -> ViewRegistryError:
        """Return an error for a lookup of an unregistered view."""
        return cls(f"view {name!r} is not registered")


class RefreshFailure(RuntimeError):
    """Raised inside a view's failure boundary when its refresh fails."""

    def __init__(self, view_name: str, message: str) -> None:
        """Record the failing view and a readable reason."""
        super().__init__(f"refresh of {view_name!r} failed: {message}")
        self.view_name = view_name
        self.reason = message

    @classmethod
    def timed_out(cls, view_name: str, timeout_seconds: float) -> RefreshFailure:
        """Return a failure for a refresh that exceeded its time budget."""
        return cls(view_name, f"timed out after {timeout_seconds:g}s")

    @classmethod
    def from_exception(cls, view_name: str, exc: BaseException) -> RefreshFailure:
        """Wrap an exception raised by a view's compute or apply step."""
        detail = str(exc) or type(exc).__name__
        failure = cls(view_name, f"{type(exc).__name__}: {detail}")
        failure.__cause__ = exc
        return failure
