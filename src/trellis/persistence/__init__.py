"""Persistence layer - collaborator interfaces and in-memory implementations."""

from trellis.persistence.adapter import (
    EntitySource,
    PropertyStaleEvent,
    RelationshipResolver,
    StalenessDatabase,
    StalenessEmitter,
)
from trellis.persistence.memory import (
    CollectingEmitter,
    InMemoryEntityStore,
    InMemoryStalenessStore,
)

__all__ = [
    "EntitySource",
    "PropertyStaleEvent",
    "RelationshipResolver",
    "StalenessDatabase",
    "StalenessEmitter",
    "CollectingEmitter",
    "InMemoryEntityStore",
    "InMemoryStalenessStore",
]
