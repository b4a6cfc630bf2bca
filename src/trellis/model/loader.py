"""Load an entity model from a YAML file.

Format:

    tenant: acme
    entities:
      - id: order-1
        type: order
        required: [quantity]
        properties:
          quantity: 3                                  # literal
          weight: {value: 2.5, dimension: mass, unit: kg}
          placed_at: {type: datetime, value: "2024-05-01T09:00:00+00:00"}
          sensor: {value: 21.5, source: measured}
          discount: {inherited: 0.1, override: 0.2}
          total: {expression: "@self.product.price * #quantity"}
        relationships:
          product: [product-1]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from trellis.config import EngineConfig
from trellis.core.types import (
    ComputationStatus,
    Entity,
    NumberValue,
    Property,
    PropertyKey,
    PropertySource,
    value_from_dict,
    value_from_python,
)
from trellis.expressions.builtins import default_registry
from trellis.expressions.functions import FunctionRegistry
from trellis.expressions.parser import ExpressionNode, parse, validate
from trellis.model.model import Model
from trellis.persistence.memory import InMemoryEntityStore

DEFAULT_TENANT = "default"


@dataclass
class ModelIssue:
    """One problem found while loading a model."""

    location: str
    message: str

    def __str__(self) -> str:
        return f"{self.location}: {self.message}"


class ModelError(ValueError):
    """A model file is malformed; carries every issue found."""

    def __init__(self, path: Path, issues: list[ModelIssue]):
        self.path = path
        self.issues = issues
        details = "\n".join(f"  {issue}" for issue in issues)
        super().__init__(f"Invalid model {path}:\n{details}")


@dataclass
class _PendingEntity:
    entity: Entity
    relationships: dict[str, list[str]] = field(default_factory=dict)


class ModelLoader:
    """Loads a Model from a YAML file.

    All issues are collected before failing, so one run reports every
    broken expression.
    """

    def __init__(
        self,
        path: Path,
        registry: FunctionRegistry | None = None,
        config: EngineConfig | None = None,
    ):
        self.path = Path(path)
        self.registry = registry or default_registry()
        self.config = config or EngineConfig()
        self.issues: list[ModelIssue] = []

    def load(self) -> Model:
        """Read, validate and build the model.

        Raises:
            ModelError: If the file is malformed or any expression is invalid
            FileNotFoundError: If the file does not exist
        """
        with open(self.path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ModelError(self.path, [ModelIssue("file", f"Invalid YAML: {e}")]) from e

        if not isinstance(data, dict):
            raise ModelError(self.path, [ModelIssue("file", "Expected a mapping at the top level")])

        tenant_id = str(data.get("tenant", DEFAULT_TENANT))
        pending: list[_PendingEntity] = []
        expressions: dict[PropertyKey, ExpressionNode] = {}

        entities = data.get("entities") or []
        if not isinstance(entities, list):
            self._issue("entities", "Expected a list of entities")
            entities = []

        for index, entity_data in enumerate(entities):
            loaded = self._load_entity(index, entity_data, tenant_id, expressions)
            if loaded is not None:
                pending.append(loaded)

        store = self._build_store(pending)

        if self.issues:
            raise ModelError(self.path, self.issues)

        return Model(
            tenant_id=tenant_id,
            store=store,
            expressions=expressions,
            registry=self.registry,
            config=self.config,
        )

    def _issue(self, location: str, message: str) -> None:
        self.issues.append(ModelIssue(location, message))

    def _load_entity(
        self,
        index: int,
        data: Any,
        tenant_id: str,
        expressions: dict[PropertyKey, ExpressionNode],
    ) -> _PendingEntity | None:
        location = f"entities[{index}]"
        if not isinstance(data, dict) or "id" not in data:
            self._issue(location, "Entity needs at least an 'id'")
            return None

        entity_id = str(data["id"])
        entity = Entity(
            id=entity_id,
            type=str(data.get("type", "entity")),
            required_properties=frozenset(data.get("required") or []),
            tenant_id=tenant_id,
        )

        for name, spec in (data.get("properties") or {}).items():
            prop = self._load_property(f"{entity_id}.{name}", str(name), spec)
            if prop is None:
                continue
            entity.properties[prop.name] = prop
            if prop.source == PropertySource.COMPUTED:
                ast = self._check_expression(f"{entity_id}.{name}", prop.expression)
                if ast is not None:
                    expressions[PropertyKey(entity_id, prop.name)] = ast

        relationships = {}
        for relationship, targets in (data.get("relationships") or {}).items():
            if isinstance(targets, str):
                targets = [targets]
            relationships[str(relationship)] = [str(t) for t in targets or []]

        return _PendingEntity(entity, relationships)

    def _load_property(self, location: str, name: str, spec: Any) -> Property | None:
        if not isinstance(spec, dict):
            return self._literal(location, name, spec, PropertySource.LITERAL)

        if "expression" in spec:
            return Property(
                name=name,
                source=PropertySource.COMPUTED,
                expression=str(spec["expression"]),
                computation_status=ComputationStatus.PENDING,
            )

        if "inherited" in spec:
            try:
                return Property(
                    name=name,
                    source=PropertySource.INHERITED,
                    resolved_value=value_from_python(spec["inherited"]),
                    override=value_from_python(spec.get("override")),
                )
            except TypeError as e:
                self._issue(location, str(e))
                return None

        if "type" in spec:
            try:
                return Property(name=name, value=value_from_dict(spec))
            except (KeyError, ValueError) as e:
                self._issue(location, f"Invalid typed value: {e}")
                return None

        if "value" in spec:
            try:
                source = PropertySource(spec.get("source", "literal"))
            except ValueError:
                self._issue(location, f"Unknown source {spec.get('source')!r}")
                return None
            if source not in (PropertySource.LITERAL, PropertySource.MEASURED):
                self._issue(location, "Only literal and measured values take a 'source'")
                return None
            value = spec["value"]
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return Property(
                    name=name,
                    source=source,
                    value=NumberValue(value, spec.get("dimension"), spec.get("unit")),
                )
            return self._literal(location, name, value, source)

        return self._literal(location, name, spec, PropertySource.LITERAL)

    def _literal(self, location: str, name: str, value: Any, source: PropertySource) -> Property | None:
        try:
            return Property(name=name, source=source, value=value_from_python(value))
        except TypeError as e:
            self._issue(location, str(e))
            return None

    def _check_expression(self, location: str, source: str) -> ExpressionNode | None:
        result = parse(source)
        if not result.ok:
            self._issue(location, f"{result.error.code.value}: {result.error.message}")
            return None

        valid, errors = validate(source, self.registry)
        if not valid:
            for error in errors:
                self._issue(location, f"{error.code.value}: {error.message}")
            return None
        return result.ast

    def _build_store(self, pending: list[_PendingEntity]) -> InMemoryEntityStore:
        store = InMemoryEntityStore()
        for item in pending:
            if item.entity.id in store:
                self._issue(item.entity.id, "Duplicate entity id")
                continue
            store.add(item.entity)

        for item in pending:
            for relationship, targets in item.relationships.items():
                for target in targets:
                    if target not in store:
                        self._issue(
                            f"{item.entity.id}.{relationship}",
                            f"Relationship target '{target}' is not a known entity",
                        )
                        continue
                    store.relate(item.entity.id, relationship, target)
        return store


async def load_model(
    path: Path,
    registry: FunctionRegistry | None = None,
    config: EngineConfig | None = None,
) -> Model:
    """Load a model and build its dependency index."""
    model = ModelLoader(path, registry, config).load()
    await model.build_dependency_index()
    return model
