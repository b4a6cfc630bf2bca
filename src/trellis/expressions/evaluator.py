"""Evaluator for the Trellis expression language.

Walks the AST and computes a typed runtime value against an evaluation
context holding the current entity, an entity source for references and
relationship hops, and a function registry.

Null semantics: null in, null out. Every arithmetic, comparison and
equality operator, both unary operators and every null-propagating
function yield null when an operand is null. `&&` and `||` short-circuit
only when the left operand alone decides the result (false && _, true || _);
otherwise both sides are evaluated and a null on either side yields null.

Errors are raised internally as ExpressionError and returned by evaluate()
inside an EvaluationResult.
"""

from __future__ import annotations

import difflib
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Mapping, assert_never

from trellis.core.types import (
    BooleanValue,
    DateTimeValue,
    DurationValue,
    Entity,
    ListValue,
    NumberValue,
    Property,
    RecordValue,
    ReferenceValue,
    TextValue,
    Value,
    ValueType,
    common_type,
    normalize_number,
    type_name,
    value_from_python,
)
from trellis.expressions.builtins import default_registry
from trellis.expressions.errors import (
    ExpressionError,
    collection_without_aggregation_error,
    division_by_zero_error,
    entity_not_found_error,
    index_out_of_bounds_error,
    invalid_function_error,
    max_depth_exceeded_error,
    out_of_range_error,
    property_not_found_error,
    relationship_not_found_error,
    type_mismatch_error,
)
from trellis.expressions.functions import FunctionRegistry
from trellis.expressions.parser import (
    BinaryExpression,
    CallExpression,
    ExpressionNode,
    Identifier,
    Literal,
    PathSegment,
    PropertyReference,
    TraversalKind,
    UnaryExpression,
    parse,
)
from trellis.persistence.adapter import EntitySource

DEFAULT_MAX_DEPTH = 50


@dataclass
class EvaluationContext:
    """Context for expression evaluation.

    Attributes:
        current_entity: The entity the expression belongs to (@self)
        entities: Source for explicit references and relationship hops;
            None when the expression may only read the current entity
        registry: Functions callable from the expression
        tenant_id: Tenant of the current entity, for the caller's bookkeeping
        max_depth: Deepest AST nesting evaluated before giving up
    """

    current_entity: Entity
    entities: EntitySource | None = None
    registry: FunctionRegistry = field(default_factory=default_registry)
    tenant_id: str | None = None
    max_depth: int = DEFAULT_MAX_DEPTH


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of one evaluation.

    Attributes:
        ok: True if evaluation succeeded
        value: The computed value (None is a legitimate null result)
        error: The error when ok is False
        accessed_entities: Ids of every entity read, in first-read order
        duration_ms: Wall-clock evaluation time
    """

    ok: bool
    value: Value = None
    error: ExpressionError | None = None
    accessed_entities: tuple[str, ...] = ()
    duration_ms: float = 0.0


def values_equal(left: Value, right: Value) -> bool:
    """Structural equality; values of different types are never equal.

    Numbers compare by value only, ignoring dimension and unit.
    """
    if left is None or right is None:
        return left is right
    if left.type != right.type:
        return False
    match left:
        case ListValue(values):
            return len(values) == len(right.values) and all(
                values_equal(a, b) for a, b in zip(values, right.values)
            )
        case RecordValue(fields):
            return fields.keys() == right.fields.keys() and all(
                values_equal(fields[k], right.fields[k]) for k in fields
            )
        case ReferenceValue(entity_id):
            return entity_id == right.entity_id
        case _:
            return left.value == right.value


class Evaluator:
    """Evaluates an expression AST against a context.

    Usage:
        ctx = EvaluationContext(current_entity=order, entities=store)
        evaluator = Evaluator(ctx)
        value = evaluator.evaluate(ast)

    evaluate() raises ExpressionError; use the module-level evaluate() for
    a result value.
    """

    def __init__(self, context: EvaluationContext):
        self.context = context
        self.accessed_entities: list[str] = [context.current_entity.id]
        self._depth = 0

    def evaluate(self, node: ExpressionNode, allow_collection: bool = False) -> Value:
        """Evaluate an AST node and return the result.

        Args:
            node: Node to evaluate
            allow_collection: True when the node is a direct argument to a
                list-typed function parameter, the only place [*] is legal
        """
        self._depth += 1
        try:
            if self._depth > self.context.max_depth:
                raise max_depth_exceeded_error(self.context.max_depth)
            return self._evaluate_node(node, allow_collection)
        except ExpressionError as e:
            e.with_position(node.start, node.end)
            raise
        finally:
            self._depth -= 1

    def _evaluate_node(self, node: ExpressionNode, allow_collection: bool) -> Value:
        match node:
            case Literal():
                return self._eval_literal(node)
            case Identifier(name=name):
                return self._read_property(self.context.current_entity, name)
            case PropertyReference():
                return self._eval_reference(node, allow_collection)
            case BinaryExpression():
                return self._eval_binary(node)
            case UnaryExpression():
                return self._eval_unary(node)
            case CallExpression():
                return self._eval_call(node)
            case _:
                assert_never(node)

    # -------------------------------------------------------------------------
    # Node type evaluators
    # -------------------------------------------------------------------------

    def _eval_literal(self, node: Literal) -> Value:
        if node.value_type == ValueType.NUMBER:
            return NumberValue(node.value)
        if node.value_type == ValueType.TEXT:
            return TextValue(node.value)
        if node.value_type == ValueType.BOOLEAN:
            return BooleanValue(node.value)
        return None

    def _eval_reference(self, node: PropertyReference, allow_collection: bool) -> Value:
        """Walk a property path, fanning out at [*] segments."""
        if node.is_collection and not allow_collection:
            relationship = next(s.property for s in node.path if s.is_collection)
            raise collection_without_aggregation_error(relationship, node.property_name)

        if node.base.is_self:
            entities = [self.context.current_entity]
        else:
            entities = [self._get_entity(node.base.entity_id)]

        for segment in node.path[:-1]:
            next_entities: list[Entity] = []
            for entity in entities:
                for related_id in self._follow(entity, segment, node.property_name):
                    related = self._find_entity(related_id)
                    # Dangling relationship targets are skipped
                    if related is not None:
                        next_entities.append(related)
            entities = next_entities

        final = node.path[-1]
        if not node.is_collection:
            if not entities:
                return None
            return self._select(self._read_property(entities[0], final.property), final)

        values: list[Value] = []
        for entity in entities:
            value = self._read_property(entity, final.property)
            if final.is_collection and isinstance(value, ListValue):
                values.extend(value.values)
            else:
                values.append(self._select(value, final))
        items = tuple(values)
        return ListValue(items, common_type(items))

    def _follow(self, entity: Entity, segment: PathSegment, property_name: str) -> list[str]:
        """Related entity ids selected by one relationship hop."""
        related_ids = self._related_ids(entity, segment.property)
        traversal = segment.traversal

        if traversal is None:
            if len(related_ids) > 1:
                raise collection_without_aggregation_error(segment.property, property_name)
            return related_ids
        if traversal.kind == TraversalKind.INDEX:
            if traversal.index >= len(related_ids):
                raise index_out_of_bounds_error(traversal.index, len(related_ids))
            return [related_ids[traversal.index]]
        return related_ids

    def _related_ids(self, entity: Entity, relationship: str) -> list[str]:
        """Ids reached from entity via a reference property or a relationship."""
        prop = entity.get_property(relationship)
        if prop is not None:
            value = prop.current_value()
            if isinstance(value, ReferenceValue):
                return [value.entity_id]
            if isinstance(value, ListValue) and value.element_type == ValueType.REFERENCE:
                return [item.entity_id for item in value.values if item is not None]

        if self.context.entities is None:
            raise relationship_not_found_error(relationship, entity.id)
        return self.context.entities.get_related(entity.id, relationship)

    def _select(self, value: Value, segment: PathSegment) -> Value:
        """Apply an [n] marker on the final segment to a list-valued property."""
        if segment.traversal is None or segment.traversal.kind == TraversalKind.ALL:
            return value
        if value is None:
            return None
        if not isinstance(value, ListValue):
            raise type_mismatch_error(f"Index [{segment.traversal.index}]", "list", type_name(value))
        if segment.traversal.index >= len(value.values):
            raise index_out_of_bounds_error(segment.traversal.index, len(value.values))
        return value.values[segment.traversal.index]

    def _eval_binary(self, node: BinaryExpression) -> Value:
        """Evaluate a binary operation."""
        op = node.operator

        if op in ("&&", "||"):
            return self._eval_logical(node)

        left = self.evaluate(node.left)
        right = self.evaluate(node.right)

        if left is None or right is None:
            return None

        if op == "==":
            return BooleanValue(values_equal(left, right))
        if op == "!=":
            return BooleanValue(not values_equal(left, right))
        if op in ("<", "<=", ">", ">="):
            return self._compare(op, left, right)
        try:
            if op == "+":
                return self._add(left, right)
            if op == "-":
                return self._subtract(left, right)
            if op == "*":
                return self._multiply(left, right)
            if op in ("/", "%"):
                return self._divide(op, left, right)
        except (OverflowError, ValueError) as e:
            # Datetime, timedelta and huge-int arithmetic past their limits
            raise out_of_range_error(f"Operator {op}", e) from e

        raise type_mismatch_error(f"Operator {op}", "known operator", op)

    def _eval_logical(self, node: BinaryExpression) -> Value:
        op = node.operator
        label = "Logical AND" if op == "&&" else "Logical OR"

        left = self.evaluate(node.left)
        if left is not None and not isinstance(left, BooleanValue):
            raise type_mismatch_error(label, "boolean", type_name(left))

        # The left side alone decides: false && _, true || _
        if left is not None and left.value == (op == "||"):
            return left

        right = self.evaluate(node.right)
        if right is not None and not isinstance(right, BooleanValue):
            raise type_mismatch_error(label, "boolean", type_name(right))

        if left is None or right is None:
            return None
        return right

    def _eval_unary(self, node: UnaryExpression) -> Value:
        """Evaluate a unary operation."""
        operand = self.evaluate(node.operand)

        if operand is None:
            return None

        if node.operator == "!":
            if not isinstance(operand, BooleanValue):
                raise type_mismatch_error("Operator !", "boolean", type_name(operand))
            return BooleanValue(not operand.value)

        if isinstance(operand, NumberValue):
            return NumberValue(-operand.value, operand.dimension, operand.unit)
        if isinstance(operand, DurationValue):
            try:
                return DurationValue(-operand.value)
            except OverflowError as e:
                raise out_of_range_error("Operator -", e) from e
        raise type_mismatch_error("Operator -", "number or duration", type_name(operand))

    def _eval_call(self, node: CallExpression) -> Value:
        """Evaluate arguments left to right, then invoke the function."""
        registry = self.context.registry
        func_def = registry.get_function(node.callee)
        if func_def is None:
            raise invalid_function_error(node.callee, registry.find_similar_functions(node.callee))

        args = [
            self.evaluate(argument, allow_collection=func_def.parameter_type(index) == "list")
            for index, argument in enumerate(node.arguments)
        ]
        return registry.invoke_function(node.callee, args)

    # -------------------------------------------------------------------------
    # Entity access
    # -------------------------------------------------------------------------

    def _record_access(self, entity_id: str) -> None:
        if entity_id not in self.accessed_entities:
            self.accessed_entities.append(entity_id)

    def _find_entity(self, entity_id: str) -> Entity | None:
        if entity_id == self.context.current_entity.id:
            return self.context.current_entity
        if self.context.entities is None:
            return None
        entity = self.context.entities.get_entity(entity_id)
        if entity is not None:
            self._record_access(entity_id)
        return entity

    def _get_entity(self, entity_id: str) -> Entity:
        entity = self._find_entity(entity_id)
        if entity is None:
            raise entity_not_found_error(entity_id)
        return entity

    def _read_property(self, entity: Entity, name: str) -> Value:
        """Current value of a property; missing optional properties are null."""
        prop = entity.get_property(name)
        if prop is None:
            if name in entity.required_properties:
                suggestions = difflib.get_close_matches(name, list(entity.properties), n=3, cutoff=0.6)
                raise property_not_found_error(name, entity.id, suggestions)
            return None
        return prop.current_value()

    # -------------------------------------------------------------------------
    # Operators
    # -------------------------------------------------------------------------

    def _mismatch(self, op: str, expected: str, left: Value, right: Value) -> ExpressionError:
        return type_mismatch_error(
            f"Operator {op}", expected, f"{type_name(left)} and {type_name(right)}"
        )

    def _check_dimensions(self, op: str, left: NumberValue, right: NumberValue) -> None:
        if left.dimension and right.dimension and left.dimension != right.dimension:
            raise type_mismatch_error(
                f"Operator {op}",
                "matching dimensions",
                f"{left.dimension} and {right.dimension}",
            )
        if left.unit and right.unit and left.unit != right.unit:
            raise type_mismatch_error(
                f"Operator {op}", "matching units", f"{left.unit} and {right.unit}"
            )

    def _compare(self, op: str, left: Value, right: Value) -> BooleanValue:
        comparable = (
            (NumberValue, NumberValue),
            (DateTimeValue, DateTimeValue),
            (DurationValue, DurationValue),
        )
        if (type(left), type(right)) not in comparable:
            raise self._mismatch(op, "number, datetime or duration", left, right)
        if isinstance(left, NumberValue):
            self._check_dimensions(op, left, right)

        a, b = left.value, right.value
        if op == "<":
            return BooleanValue(a < b)
        if op == "<=":
            return BooleanValue(a <= b)
        if op == ">":
            return BooleanValue(a > b)
        return BooleanValue(a >= b)

    def _add(self, left: Value, right: Value) -> Value:
        if isinstance(left, NumberValue) and isinstance(right, NumberValue):
            self._check_dimensions("+", left, right)
            return NumberValue(
                normalize_number(left.value + right.value),
                left.dimension or right.dimension,
                left.unit or right.unit,
            )
        if isinstance(left, TextValue) and isinstance(right, TextValue):
            return TextValue(left.value + right.value)
        if isinstance(left, DateTimeValue) and isinstance(right, DurationValue):
            return DateTimeValue(left.value + right.value)
        if isinstance(left, DurationValue) and isinstance(right, DateTimeValue):
            return DateTimeValue(right.value + left.value)
        if isinstance(left, DurationValue) and isinstance(right, DurationValue):
            return DurationValue(left.value + right.value)
        raise self._mismatch("+", "number", left, right)

    def _subtract(self, left: Value, right: Value) -> Value:
        if isinstance(left, NumberValue) and isinstance(right, NumberValue):
            self._check_dimensions("-", left, right)
            return NumberValue(
                normalize_number(left.value - right.value),
                left.dimension or right.dimension,
                left.unit or right.unit,
            )
        if isinstance(left, DateTimeValue) and isinstance(right, DurationValue):
            return DateTimeValue(left.value - right.value)
        if isinstance(left, DateTimeValue) and isinstance(right, DateTimeValue):
            return DurationValue(left.value - right.value)
        if isinstance(left, DurationValue) and isinstance(right, DurationValue):
            return DurationValue(left.value - right.value)
        raise self._mismatch("-", "number", left, right)

    def _multiply(self, left: Value, right: Value) -> Value:
        if isinstance(left, NumberValue) and isinstance(right, NumberValue):
            product = normalize_number(left.value * right.value)
            # A dimension survives only when exactly one side carries it
            if left.dimension and right.dimension:
                return NumberValue(product)
            return NumberValue(product, left.dimension or right.dimension, left.unit or right.unit)
        if isinstance(left, DurationValue) and isinstance(right, NumberValue):
            return DurationValue(left.value * right.value)
        if isinstance(left, NumberValue) and isinstance(right, DurationValue):
            return DurationValue(right.value * left.value)
        raise self._mismatch("*", "number", left, right)

    def _divide(self, op: str, left: Value, right: Value) -> Value:
        if isinstance(left, NumberValue) and isinstance(right, NumberValue):
            if right.value == 0:
                raise division_by_zero_error(op)
            if op == "%":
                result = left.value % right.value
            else:
                result = left.value / right.value
            if right.dimension:
                return NumberValue(normalize_number(result))
            return NumberValue(normalize_number(result), left.dimension, left.unit)
        if op == "/" and isinstance(left, DurationValue):
            if isinstance(right, NumberValue):
                if right.value == 0:
                    raise division_by_zero_error(op)
                return DurationValue(left.value / right.value)
            if isinstance(right, DurationValue):
                if right.value == timedelta(0):
                    raise division_by_zero_error(op)
                return NumberValue(normalize_number(left.value / right.value))
        raise self._mismatch(op, "number", left, right)


# -----------------------------------------------------------------------------
# Convenience functions
# -----------------------------------------------------------------------------


def _failed(error: ExpressionError, started: float) -> EvaluationResult:
    return EvaluationResult(
        ok=False, error=error, duration_ms=(time.perf_counter() - started) * 1000
    )


def evaluate(ast: ExpressionNode | str, context: EvaluationContext) -> EvaluationResult:
    """Evaluate an expression against a context.

    This is the main entry point for expression evaluation. It never raises
    ExpressionError; failures come back in the result.

    Args:
        ast: A parsed expression, or source text to parse first
        context: The evaluation context

    Returns:
        EvaluationResult with the value or the error
    """
    started = time.perf_counter()

    if isinstance(ast, str):
        parsed = parse(ast)
        if not parsed.ok:
            return _failed(parsed.error, started)
        ast = parsed.ast

    evaluator = Evaluator(context)
    try:
        value = evaluator.evaluate(ast)
    except ExpressionError as e:
        return EvaluationResult(
            ok=False,
            error=e,
            accessed_entities=tuple(evaluator.accessed_entities),
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    return EvaluationResult(
        ok=True,
        value=value,
        accessed_entities=tuple(evaluator.accessed_entities),
        duration_ms=(time.perf_counter() - started) * 1000,
    )


def evaluate_simple(
    ast: ExpressionNode | str,
    properties: Mapping[str, Any],
    registry: FunctionRegistry | None = None,
) -> EvaluationResult:
    """Evaluate against a flat mapping of property values.

    Values may be runtime values or plain Python objects. There is no
    entity source, so relationship hops and explicit references fail.

    Example:
        result = evaluate_simple("#price * 1.1", {"price": 100})
        # result.value == NumberValue(110.00000000000001)
    """
    entity = Entity(
        id="simple",
        type="simple",
        properties={
            name: Property(name=name, value=value_from_python(value))
            for name, value in properties.items()
        },
    )
    context = EvaluationContext(
        current_entity=entity, registry=registry or default_registry()
    )
    return evaluate(ast, context)


def evaluate_batch(
    expressions: Mapping[str, ExpressionNode | str],
    context: EvaluationContext,
) -> dict[str, EvaluationResult]:
    """Evaluate several named expressions; one failure never affects another."""
    return {name: evaluate(ast, context) for name, ast in expressions.items()}
