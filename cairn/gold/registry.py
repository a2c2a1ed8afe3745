"""Static, validated graph of derived views.

The registry only declares structure: names, dependencies, target tables and
refresh modes. The recompute functions live beside the views they build, so
changing one view's logic never touches the graph of the others.
"""

from __future__ import annotations

import collections.abc as cabc
import dataclasses as dc
import enum
import graphlib
import typing as typ

from cairn.gold.errors import ViewRegistryError

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from cairn.bronze.storage import Base

type ViewRow = dict[str, typ.Any]
type ViewComputeFn = cabc.Callable[[AsyncSession], cabc.Awaitable[list[ViewRow]]]


class RefreshMode(enum.StrEnum):
    """How recomputed rows replace a view's current contents."""

    EXCLUSIVE = "exclusive"
    NON_BLOCKING = "non_blocking"


@dc.dataclass(frozen=True, slots=True)
class DerivedViewNode:
    """Declaration of one derived view.

    Attributes
    ----------
    name
        Unique view name used in logs and the refresh log.
    dependencies
        Views or aggregate sources that must be current first.
    compute
        Coroutine returning the complete set of rows for the view.
    table
        ORM model the rows are written to.
    unique_key
        Columns identifying a row; required for non-blocking refresh.
    refresh_mode
        Requested refresh mode.

    """

    name: str
    dependencies: frozenset[str]
    compute: ViewComputeFn
    table: type[Base]
    unique_key: tuple[str, ...] = ()
    refresh_mode: RefreshMode = RefreshMode.NON_BLOCKING

    @property
    def effective_mode(self) -> RefreshMode:
        """Return the mode actually used; keyless views refresh exclusively."""
        if self.refresh_mode is RefreshMode.NON_BLOCKING and not self.unique_key:
            return RefreshMode.EXCLUSIVE
        return self.refresh_mode


class ViewRegistry:
    """Validated DAG of derived views with a deterministic refresh order.

    Parameters
    ----------
    nodes
        View declarations.
    sources
        Names that views may depend on without being views themselves, such
        as aggregate metric sets. They are always treated as current.

    Raises
    ------
    ViewRegistryError
        On duplicate names, self-edges, unknown dependencies or cycles.

    """

    def __init__(
        self,
        nodes: cabc.Iterable[DerivedViewNode],
        *,
        sources: cabc.Iterable[str] = (),
    ) -> None:
        """Validate the graph and compute the refresh order."""
        self._sources = frozenset(sources)
        self._nodes: dict[str, DerivedViewNode] = {}
        for node in nodes:
            if node.name in self._nodes or node.name in self._sources:
                raise ViewRegistryError.duplicate_name(node.name)
            self._nodes[node.name] = node

        for node in self._nodes.values():
            for dependency in sorted(node.dependencies):
                if dependency == node.name:
                    raise ViewRegistryError.self_dependency(node.name)
                if dependency not in self._nodes and dependency not in self._sources:
                    raise ViewRegistryError.unknown_dependency(node.name, dependency)

        self._order = self._topological_order()
        self._dependents: dict[str, tuple[str, ...]] = {
            name: tuple(
                other
                for other in self._order
                if name in self._nodes[other].dependencies
            )
            for name in self._order
        }

    def _topological_order(self) -> tuple[str, ...]:
        sorter: graphlib.TopologicalSorter[str] = graphlib.TopologicalSorter()
        for name in sorted(self._nodes):
            sorter.add(name, *sorted(self.view_dependencies(name)))
        try:
            sorter.prepare()
        except graphlib.CycleError as exc:
            raise ViewRegistryError.cycle(list(exc.args[1])) from exc

        order: list[str] = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready())
            order.extend(ready)
            sorter.done(*ready)
        return tuple(order)

    def __contains__(self, name: object) -> bool:
        """Return True when ``name`` is a registered view."""
        return name in self._nodes

    def __len__(self) -> int:
        """Return the number of registered views."""
        return len(self._nodes)

    @property
    def sources(self) -> frozenset[str]:
        """Return the non-view names views may depend on."""
        return self._sources

    @property
    def order(self) -> tuple[str, ...]:
        """Return view names in dependency order, ties broken by name."""
        return self._order

    def node(self, name: str) -> DerivedViewNode:
        """Return the declaration of ``name``."""
        try:
            return self._nodes[name]
        except KeyError as exc:
            raise ViewRegistryError.unknown_view(name) from exc

    def nodes(self) -> list[DerivedViewNode]:
        """Return every declaration in dependency order."""
        return [self._nodes[name] for name in self._order]

    def view_dependencies(self, name: str) -> frozenset[str]:
        """Return the dependencies of ``name`` that are views."""
        return frozenset(
            dependency
            for dependency in self.node(name).dependencies
            if dependency in self._nodes
        )

    def dependents(self, name: str) -> tuple[str, ...]:
        """Return views that depend directly on ``name``."""
        self.node(name)
        return self._dependents[name]

    def descendants(self, name: str) -> tuple[str, ...]:
        """Return every view downstream of ``name`` in dependency order."""
        pending = list(self.dependents(name))
        seen: set[str] = set()
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(self._dependents[current])
        return tuple(view for view in self._order if view in seen)
