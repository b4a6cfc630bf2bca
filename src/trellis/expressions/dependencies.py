"""Dependency extraction for computed-property expressions.

`extract_dependencies` walks an AST once, at definition time, and lists
every property the expression reads. `resolve_dependencies` turns those
into concrete (entity, property) pairs by following relationships through
an injected async resolver.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Protocol

from trellis.core.types import PropertyKey
from trellis.expressions.errors import ExpressionError
from trellis.expressions.parser import (
    CallExpression,
    ExpressionNode,
    Identifier,
    PropertyReference,
    iter_nodes,
    parse,
)
from trellis.persistence.adapter import RelationshipResolver

SELF = "self"


@dataclass(frozen=True)
class ExtractedDependency:
    """A property an expression reads, before relationships are resolved.

    Attributes:
        entity_ref: "self" or an explicit entity id
        property_name: Name of the property read (final path segment)
        path: Dot-joined path including [*] / [n] markers
        is_collection: True if any segment fans out with [*]
        relationships: Relationship names traversed before the property
    """

    entity_ref: str
    property_name: str
    path: str
    is_collection: bool = False
    relationships: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_ref": self.entity_ref,
            "property_name": self.property_name,
            "path": self.path,
            "is_collection": self.is_collection,
            "relationships": list(self.relationships),
        }


@dataclass(frozen=True)
class ResolvedDependency:
    """A dependency resolved to a concrete entity."""

    entity_id: str
    property_name: str

    @property
    def key(self) -> PropertyKey:
        return PropertyKey(self.entity_id, self.property_name)


class DependencyResolutionContext(Protocol):
    """What resolve_dependencies needs from its caller."""

    current_entity_id: str

    async def resolve_relationship(
        self, entity_id: str, relationship_type: str
    ) -> list[str]:
        ...


@dataclass
class ResolutionContext:
    """Plain DependencyResolutionContext built from a resolver callable."""

    current_entity_id: str
    resolver: RelationshipResolver

    async def resolve_relationship(self, entity_id: str, relationship_type: str) -> list[str]:
        return await self.resolver(entity_id, relationship_type)


def _dependency_for(node: ExpressionNode) -> ExtractedDependency | None:
    if isinstance(node, Identifier):
        return ExtractedDependency(SELF, node.name, node.name)
    if isinstance(node, PropertyReference):
        return ExtractedDependency(
            entity_ref=SELF if node.base.is_self else node.base.entity_id,
            property_name=node.property_name,
            path=".".join(str(segment) for segment in node.path),
            is_collection=node.is_collection,
            relationships=tuple(segment.property for segment in node.path[:-1]),
        )
    return None


def extract_dependencies(ast: ExpressionNode) -> list[ExtractedDependency]:
    """List the properties an expression reads.

    Deduplicated by (entity_ref, path), in order of first appearance.
    Never fails for a parsed AST.
    """
    found: dict[tuple[str, str], ExtractedDependency] = {}
    for node in iter_nodes(ast):
        dependency = _dependency_for(node)
        if dependency is not None:
            found.setdefault((dependency.entity_ref, dependency.path), dependency)
    return list(found.values())


def parse_with_dependencies(
    source: str,
) -> tuple[ExpressionNode | None, list[ExtractedDependency], ExpressionError | None]:
    """Parse an expression and extract its dependencies in one step.

    Returns:
        (ast, dependencies, error); ast is None and dependencies empty on error
    """
    result = parse(source)
    if not result.ok:
        return None, [], result.error
    return result.ast, extract_dependencies(result.ast), None


async def resolve_dependencies(
    dependencies: Iterable[ExtractedDependency],
    ctx: DependencyResolutionContext,
) -> list[ResolvedDependency]:
    """Resolve extracted dependencies to concrete entities.

    Relationship hops are awaited one at a time. A hop that resolves to no
    entities ends that branch without error.

    Returns:
        Resolved dependencies, deduplicated by (entity_id, property_name)
    """
    resolved: dict[tuple[str, str], ResolvedDependency] = {}

    for dependency in dependencies:
        if dependency.entity_ref == SELF:
            entity_ids = [ctx.current_entity_id]
        else:
            entity_ids = [dependency.entity_ref]

        for relationship in dependency.relationships:
            next_ids: list[str] = []
            for entity_id in entity_ids:
                for related_id in await ctx.resolve_relationship(entity_id, relationship):
                    if related_id not in next_ids:
                        next_ids.append(related_id)
            entity_ids = next_ids

        for entity_id in entity_ids:
            key = (entity_id, dependency.property_name)
            if key not in resolved:
                resolved[key] = ResolvedDependency(entity_id, dependency.property_name)

    return list(resolved.values())


# -----------------------------------------------------------------------------
# Analysis utilities
# -----------------------------------------------------------------------------


def has_collection_traversal(ast: ExpressionNode) -> bool:
    """True if any reference in the expression fans out with [*]."""
    return any(
        isinstance(node, PropertyReference) and node.is_collection
        for node in iter_nodes(ast)
    )


def get_referenced_entity_ids(ast: ExpressionNode) -> list[str]:
    """Explicit entity ids referenced with @{uuid}, without duplicates."""
    ids: list[str] = []
    for node in iter_nodes(ast):
        if isinstance(node, PropertyReference) and not node.base.is_self:
            if node.base.entity_id not in ids:
                ids.append(node.base.entity_id)
    return ids


def get_used_functions(ast: ExpressionNode) -> list[str]:
    """Names of the functions called, without duplicates."""
    names: list[str] = []
    for node in iter_nodes(ast):
        if isinstance(node, CallExpression) and node.callee not in names:
            names.append(node.callee)
    return names
