"""Staleness propagation over the property dependency graph.

When a property changes, every computed property that reads it, directly or
transitively, becomes stale. Propagation walks the inverted dependency
relation (dependents) breadth first through the StalenessDatabase
collaborator, marks each dependent stale once and emits one event per
dependent naming its immediate cause.

Collaborator calls are awaited one at a time; the collaborator is not
assumed to be safe for concurrent use. A collaborator exception aborts the
traversal and propagates to the caller. Marks already applied stay applied;
mark_stale is idempotent, so the caller may simply retry.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Mapping

import networkx as nx

from trellis.core.types import PropertyKey
from trellis.expressions.errors import (
    ExpressionError,
    circular_dependency_error,
    max_depth_exceeded_error,
)
from trellis.persistence.adapter import (
    PropertyStaleEvent,
    StalenessDatabase,
    StalenessEmitter,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_PROPAGATION_DEPTH = 100


@dataclass
class PropagationResult:
    """Outcome of a propagation.

    Attributes:
        events: One event per property marked stale, in marking order
        error: MAX_DEPTH_EXCEEDED if the traversal was cut short
    """

    events: list[PropertyStaleEvent] = field(default_factory=list)
    error: ExpressionError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def stale_keys(self) -> list[PropertyKey]:
        return [event.key for event in self.events]


@dataclass(frozen=True)
class SortResult:
    """Outcome of topological_sort(): an order, or a circular dependency error."""

    ok: bool
    order: list[PropertyKey] = field(default_factory=list)
    error: ExpressionError | None = None


async def _propagate_from(
    tenant_id: str,
    root: PropertyKey,
    db: StalenessDatabase,
    emitter: StalenessEmitter | None,
    visited: set[PropertyKey],
    max_depth: int,
    result: PropagationResult,
) -> None:
    """BFS from root, sharing visited with any other roots of the same batch.

    The root itself is not pre-marked visited: if a cycle leads back to it,
    it is marked stale like any other dependent.
    """
    queue: deque[tuple[PropertyKey, int]] = deque([(root, 0)])

    while queue:
        source, depth = queue.popleft()
        dependents = await db.get_dependents(tenant_id, source.entity_id, source.property_name)

        for dependent in dependents:
            if dependent in visited:
                continue

            if depth + 1 > max_depth:
                logger.warning(
                    "Staleness propagation from %s exceeded max depth %d at %s",
                    root,
                    max_depth,
                    dependent,
                )
                result.error = max_depth_exceeded_error(max_depth, "Staleness propagation")
                return

            visited.add(dependent)
            await db.mark_stale(tenant_id, dependent.entity_id, dependent.property_name)

            event = PropertyStaleEvent(
                entity_id=dependent.entity_id,
                property_name=dependent.property_name,
                source_entity_id=source.entity_id,
                source_property_name=source.property_name,
            )
            result.events.append(event)
            if emitter is not None:
                await emitter.emit(tenant_id, event)

            queue.append((dependent, depth + 1))


async def propagate_staleness(
    tenant_id: str,
    entity_id: str,
    property_name: str,
    db: StalenessDatabase,
    emitter: StalenessEmitter | None = None,
    max_depth: int = DEFAULT_MAX_PROPAGATION_DEPTH,
) -> PropagationResult:
    """Mark every transitive dependent of a changed property stale.

    Args:
        tenant_id: Tenant owning the property
        entity_id: Entity of the changed property
        property_name: Name of the changed property
        db: Dependency index and stale markers
        emitter: Receives one PropertyStaleEvent per dependent, if given
        max_depth: Longest dependency chain followed before giving up

    Returns:
        PropagationResult with the emitted events and, if the chain was
        longer than max_depth, a MAX_DEPTH_EXCEEDED error
    """
    result = PropagationResult()
    root = PropertyKey(entity_id, property_name)
    await _propagate_from(tenant_id, root, db, emitter, set(), max_depth, result)
    logger.debug("Propagated staleness from %s to %d properties", root, len(result.events))
    return result


async def batch_propagate_staleness(
    tenant_id: str,
    changes: Iterable[PropertyKey],
    db: StalenessDatabase,
    emitter: StalenessEmitter | None = None,
    max_depth: int = DEFAULT_MAX_PROPAGATION_DEPTH,
) -> PropagationResult:
    """Propagate several simultaneous changes with one shared visited set.

    A property reachable from more than one root is marked and reported once.
    """
    result = PropagationResult()
    visited: set[PropertyKey] = set()

    for root in changes:
        await _propagate_from(tenant_id, root, db, emitter, visited, max_depth, result)
        if result.error is not None:
            break

    logger.debug("Batch propagation marked %d properties stale", len(result.events))
    return result


# -----------------------------------------------------------------------------
# Recomputation ordering
# -----------------------------------------------------------------------------


def build_dependency_graph(
    properties: Iterable[PropertyKey],
    dependencies: Mapping[PropertyKey, Iterable[PropertyKey]],
) -> nx.DiGraph:
    """Graph with an edge dependency -> dependent for every key reachable
    from properties through the dependencies mapping."""
    graph = nx.DiGraph()
    pending = list(properties)
    graph.add_nodes_from(pending)

    while pending:
        key = pending.pop()
        for dependency in dependencies.get(key, ()):
            if dependency not in graph:
                pending.append(dependency)
            graph.add_edge(dependency, key)

    return graph


def topological_sort(
    properties: Iterable[PropertyKey],
    dependencies: Mapping[PropertyKey, Iterable[PropertyKey]],
) -> SortResult:
    """Order properties so each comes after all of its dependencies.

    Dependencies reachable through the mapping are included in the order
    even if not listed in properties. Ties break by key, so the order is
    deterministic.

    Returns:
        SortResult with the order, or a CIRCULAR_DEPENDENCY error whose
        chain lists the cycle
    """
    graph = build_dependency_graph(properties, dependencies)

    try:
        order = list(nx.lexicographical_topological_sort(graph, key=str))
    except nx.NetworkXUnfeasible:
        try:
            cycle = nx.find_cycle(graph)
        except nx.NetworkXNoCycle:
            return SortResult(ok=False, error=circular_dependency_error([]))
        chain = [str(edge[0]) for edge in cycle] + [str(cycle[0][0])]
        return SortResult(ok=False, error=circular_dependency_error(chain))

    return SortResult(ok=True, order=order)


async def plan_recomputation(tenant_id: str, db: StalenessDatabase) -> SortResult:
    """Order the tenant's stale properties for recomputation.

    Only edges between stale properties matter: a valid dependency is
    already up to date.
    """
    stale = await db.get_stale_properties(tenant_id)
    stale_set = set(stale)
    dependencies: dict[PropertyKey, list[PropertyKey]] = {}

    for key in stale:
        for dependent in await db.get_dependents(tenant_id, key.entity_id, key.property_name):
            if dependent in stale_set:
                dependencies.setdefault(dependent, []).append(key)

    result = topological_sort(stale, dependencies)
    if not result.ok:
        logger.warning("Stale properties of tenant %s form a cycle: %s", tenant_id, result.error.message)
    return result


# -----------------------------------------------------------------------------
# Deferred staleness
# -----------------------------------------------------------------------------


class DeferredStaleness:
    """Collect changes during a bulk operation and propagate once at the end.

    Usage:
        async with DeferredStaleness(tenant_id, db, emitter) as deferred:
            for row in rows:
                write(row)
                deferred.record_change(row.entity_id, "price")
        deferred.result.events

    Nothing is propagated if the block raises.
    """

    def __init__(
        self,
        tenant_id: str,
        db: StalenessDatabase,
        emitter: StalenessEmitter | None = None,
        max_depth: int = DEFAULT_MAX_PROPAGATION_DEPTH,
    ):
        self.tenant_id = tenant_id
        self.db = db
        self.emitter = emitter
        self.max_depth = max_depth
        self.changes: list[PropertyKey] = []
        self.result: PropagationResult | None = None

    def record_change(self, entity_id: str, property_name: str) -> None:
        key = PropertyKey(entity_id, property_name)
        if key not in self.changes:
            self.changes.append(key)

    async def __aenter__(self) -> DeferredStaleness:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is None:
                self.result = await batch_propagate_staleness(
                    self.tenant_id, self.changes, self.db, self.emitter, self.max_depth
                )
        finally:
            self.changes.clear()
        return False
