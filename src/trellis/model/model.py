"""A loaded entity model: entities, computed properties and their dependency index."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from trellis.config import EngineConfig
from trellis.core.types import ComputationStatus, Entity, PropertyKey, PropertySource, Value
from trellis.expressions.dependencies import (
    ResolutionContext,
    extract_dependencies,
    resolve_dependencies,
)
from trellis.expressions.errors import ExpressionError
from trellis.expressions.evaluator import EvaluationContext, EvaluationResult, evaluate
from trellis.expressions.functions import FunctionRegistry
from trellis.expressions.parser import ExpressionNode
from trellis.expressions.staleness import (
    PropagationResult,
    SortResult,
    plan_recomputation,
    propagate_staleness,
    topological_sort,
)
from trellis.persistence.memory import (
    CollectingEmitter,
    InMemoryEntityStore,
    InMemoryStalenessStore,
)

logger = logging.getLogger(__name__)


@dataclass
class RecomputeReport:
    """Results of a recomputation pass, keyed by property."""

    results: dict[PropertyKey, EvaluationResult] = field(default_factory=dict)
    error: ExpressionError | None = None

    @property
    def failed(self) -> dict[PropertyKey, EvaluationResult]:
        return {key: result for key, result in self.results.items() if not result.ok}


@dataclass
class Model:
    """Entities of one tenant with parsed computed-property expressions.

    Call build_dependency_index() once after loading, and again after
    relationships change.
    """

    tenant_id: str
    store: InMemoryEntityStore
    expressions: dict[PropertyKey, ExpressionNode]
    registry: FunctionRegistry
    config: EngineConfig = field(default_factory=EngineConfig)
    staleness: InMemoryStalenessStore = field(default_factory=InMemoryStalenessStore)
    emitter: CollectingEmitter = field(default_factory=CollectingEmitter)

    def entity(self, entity_id: str) -> Entity:
        entity = self.store.get_entity(entity_id)
        if entity is None:
            raise KeyError(f"Unknown entity: {entity_id}")
        return entity

    def computed_keys(self) -> list[PropertyKey]:
        return sorted(self.expressions)

    def value_of(self, key: PropertyKey) -> Value:
        prop = self.entity(key.entity_id).get_property(key.property_name)
        return prop.current_value() if prop is not None else None

    async def build_dependency_index(self) -> None:
        """Extract and resolve the dependencies of every computed property."""
        for key, ast in self.expressions.items():
            extracted = extract_dependencies(ast)
            ctx = ResolutionContext(key.entity_id, self.store.resolve_relationship)
            resolved = await resolve_dependencies(extracted, ctx)

            self.entity(key.entity_id).properties[key.property_name].dependencies = extracted
            self.staleness.set_dependencies(
                self.tenant_id, key, [dependency.key for dependency in resolved]
            )
        logger.debug("Indexed dependencies of %d computed properties", len(self.expressions))

    def context_for(self, entity_id: str) -> EvaluationContext:
        return EvaluationContext(
            current_entity=self.entity(entity_id),
            entities=self.store,
            registry=self.registry,
            tenant_id=self.tenant_id,
            max_depth=self.config.max_eval_depth,
        )

    def evaluate_property(self, key: PropertyKey) -> EvaluationResult:
        """Evaluate one computed property without storing the result."""
        return evaluate(self.expressions[key], self.context_for(key.entity_id))

    def recomputation_order(self) -> SortResult:
        """Every computed property, ordered after its computed dependencies."""
        dependencies = {
            key: [
                dependency
                for dependency in self.staleness.dependencies_of(self.tenant_id, key)
                if dependency in self.expressions
            ]
            for key in self.expressions
        }
        return topological_sort(self.expressions, dependencies)

    def _store_result(self, key: PropertyKey, result: EvaluationResult) -> None:
        prop = self.entity(key.entity_id).properties[key.property_name]
        if result.ok:
            prop.cached_value = result.value
            prop.computation_status = ComputationStatus.VALID
        else:
            prop.cached_value = None
            prop.computation_status = ComputationStatus.ERROR
        self.staleness.clear_stale(self.tenant_id, key)

    def _recompute(self, order: SortResult) -> RecomputeReport:
        if not order.ok:
            for key_text in order.error.chain:
                entity_id, _, name = key_text.partition(".")
                key = PropertyKey(entity_id, name)
                if key in self.expressions:
                    self.entity(entity_id).properties[name].computation_status = (
                        ComputationStatus.CIRCULAR
                    )
            return RecomputeReport(error=order.error)

        report = RecomputeReport()
        for key in order.order:
            if key not in self.expressions:
                continue
            result = self.evaluate_property(key)
            self._store_result(key, result)
            report.results[key] = result
        return report

    def recompute_all(self) -> RecomputeReport:
        """Evaluate every computed property in dependency order."""
        return self._recompute(self.recomputation_order())

    async def recompute_stale(self) -> RecomputeReport:
        """Evaluate only the stale computed properties, in dependency order."""
        return self._recompute(await plan_recomputation(self.tenant_id, self.staleness))

    async def set_value(self, entity_id: str, property_name: str, value: Value) -> PropagationResult:
        """Write a literal value and propagate staleness to its dependents."""
        entity = self.entity(entity_id)
        prop = entity.get_property(property_name)
        if prop is None or prop.source == PropertySource.COMPUTED:
            raise KeyError(f"No writable property {property_name!r} on {entity_id}")
        if prop.source == PropertySource.INHERITED:
            prop.override = value
        else:
            prop.value = value

        result = await propagate_staleness(
            self.tenant_id,
            entity_id,
            property_name,
            self.staleness,
            self.emitter,
            max_depth=self.config.max_propagation_depth,
        )
        for key in result.stale_keys:
            stale = self.entity(key.entity_id).get_property(key.property_name)
            if stale is not None and stale.source == PropertySource.COMPUTED:
                stale.computation_status = ComputationStatus.STALE
        return result
