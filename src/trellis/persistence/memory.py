"""In-memory collaborator implementations.

Used by tests, the model loader and the CLI. Not safe for concurrent
mutation; one store per event loop.
"""

import logging
from collections import defaultdict
from typing import Iterable, Iterator

from trellis.core.types import Entity, PropertyKey
from trellis.persistence.adapter import PropertyStaleEvent

logger = logging.getLogger(__name__)


class InMemoryEntityStore:
    """Entities plus ordered, named relationships between them.

    Implements EntitySource for the evaluator and resolve_relationship for
    resolve_dependencies.
    """

    def __init__(self, entities: Iterable[Entity] = ()):
        self._entities: dict[str, Entity] = {}
        self._relationships: dict[tuple[str, str], list[str]] = defaultdict(list)
        for entity in entities:
            self.add(entity)

    def add(self, entity: Entity) -> Entity:
        self._entities[entity.id] = entity
        return entity

    def relate(self, source_id: str, relationship_type: str, target_id: str) -> None:
        """Append target_id to the relationship of source_id (no duplicates)."""
        targets = self._relationships[(source_id, relationship_type)]
        if target_id not in targets:
            targets.append(target_id)

    def get_entity(self, entity_id: str) -> Entity | None:
        return self._entities.get(entity_id)

    def get_related(self, entity_id: str, relationship_type: str) -> list[str]:
        return list(self._relationships.get((entity_id, relationship_type), []))

    def relationship_types(self, entity_id: str) -> list[str]:
        return [rel for (source, rel) in self._relationships if source == entity_id]

    async def resolve_relationship(self, entity_id: str, relationship_type: str) -> list[str]:
        return self.get_related(entity_id, relationship_type)

    def __iter__(self) -> Iterator[Entity]:
        return iter(self._entities.values())

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entities

    def __len__(self) -> int:
        return len(self._entities)


class InMemoryStalenessStore:
    """Dependency index and stale markers per tenant.

    Edges are stored inverted (dependency -> dependents), the direction
    propagation walks.
    """

    def __init__(self) -> None:
        self._dependents: dict[str, dict[PropertyKey, list[PropertyKey]]] = defaultdict(dict)
        self._stale: dict[str, dict[PropertyKey, None]] = defaultdict(dict)
        self.mark_stale_calls = 0

    def add_dependency(self, tenant_id: str, dependency: PropertyKey, dependent: PropertyKey) -> None:
        """Record that dependent reads dependency."""
        dependents = self._dependents[tenant_id].setdefault(dependency, [])
        if dependent not in dependents:
            dependents.append(dependent)

    def set_dependencies(
        self, tenant_id: str, dependent: PropertyKey, dependencies: Iterable[PropertyKey]
    ) -> None:
        """Replace every recorded dependency of dependent."""
        for dependents in self._dependents[tenant_id].values():
            if dependent in dependents:
                dependents.remove(dependent)
        for dependency in dependencies:
            self.add_dependency(tenant_id, dependency, dependent)

    def dependencies_of(self, tenant_id: str, dependent: PropertyKey) -> list[PropertyKey]:
        return [
            dependency
            for dependency, dependents in self._dependents[tenant_id].items()
            if dependent in dependents
        ]

    def clear_stale(self, tenant_id: str, key: PropertyKey) -> None:
        self._stale[tenant_id].pop(key, None)

    def is_stale(self, tenant_id: str, key: PropertyKey) -> bool:
        return key in self._stale[tenant_id]

    # StalenessDatabase

    async def get_dependents(
        self, tenant_id: str, entity_id: str, property_name: str
    ) -> list[PropertyKey]:
        key = PropertyKey(entity_id, property_name)
        return list(self._dependents[tenant_id].get(key, []))

    async def mark_stale(self, tenant_id: str, entity_id: str, property_name: str) -> None:
        self.mark_stale_calls += 1
        self._stale[tenant_id][PropertyKey(entity_id, property_name)] = None

    async def mark_stale_many(self, tenant_id: str, keys: list[PropertyKey]) -> None:
        for key in keys:
            await self.mark_stale(tenant_id, key.entity_id, key.property_name)

    async def get_stale_properties(self, tenant_id: str) -> list[PropertyKey]:
        return list(self._stale[tenant_id])


class CollectingEmitter:
    """StalenessEmitter that keeps every event in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, PropertyStaleEvent]] = []

    async def emit(self, tenant_id: str, event: PropertyStaleEvent) -> None:
        logger.debug("Stale event for %s.%s", event.entity_id, event.property_name)
        self.events.append((tenant_id, event))

    def for_tenant(self, tenant_id: str) -> list[PropertyStaleEvent]:
        return [event for tenant, event in self.events if tenant == tenant_id]

    def clear(self) -> None:
        self.events.clear()
