"""Collaborator Protocols — the interfaces the engine consumes from its host.

The host platform implements these against its own storage and event bus.
`trellis.persistence.memory` provides in-memory implementations.
"""

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from trellis.core.types import Entity, PropertyKey


@dataclass(frozen=True)
class PropertyStaleEvent:
    """Notification that a property needs recomputation.

    source_entity_id/source_property_name name the immediate cause, which
    is the root change or another stale property.
    """

    entity_id: str
    property_name: str
    source_entity_id: str
    source_property_name: str

    @property
    def key(self) -> PropertyKey:
        return PropertyKey(self.entity_id, self.property_name)

    @property
    def source(self) -> PropertyKey:
        return PropertyKey(self.source_entity_id, self.source_property_name)

    def to_payload(self) -> dict[str, Any]:
        """Event payload; envelope fields (id, tenant, actor, time) are the host's."""
        return {
            "entity_id": self.entity_id,
            "property_name": self.property_name,
            "source_entity_id": self.source_entity_id,
            "source_property_name": self.source_property_name,
        }


@runtime_checkable
class StalenessDatabase(Protocol):
    """Dependency index and stale markers, keyed by tenant.

    mark_stale must be idempotent: a propagation aborted by a failure is
    retried from the start.
    """

    async def get_dependents(
        self, tenant_id: str, entity_id: str, property_name: str
    ) -> list[PropertyKey]: ...

    async def mark_stale(
        self, tenant_id: str, entity_id: str, property_name: str
    ) -> None: ...

    async def mark_stale_many(self, tenant_id: str, keys: list[PropertyKey]) -> None: ...

    async def get_stale_properties(self, tenant_id: str) -> list[PropertyKey]: ...


@runtime_checkable
class StalenessEmitter(Protocol):
    """Receives one event per property marked stale."""

    async def emit(self, tenant_id: str, event: PropertyStaleEvent) -> None: ...


@runtime_checkable
class RelationshipResolver(Protocol):
    """Follows a relationship from an entity to the related entity ids."""

    async def __call__(self, entity_id: str, relationship_type: str) -> list[str]: ...


@runtime_checkable
class EntitySource(Protocol):
    """Synchronous read access used by the evaluator.

    get_related returns related entity ids in a stable order; [n] indexes
    into that order.
    """

    def get_entity(self, entity_id: str) -> Entity | None: ...

    def get_related(self, entity_id: str, relationship_type: str) -> list[str]: ...
