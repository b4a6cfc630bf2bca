"""Tests for expression evaluation.

Tests cover:
- Arithmetic, comparison and equality over typed values
- Three-valued null logic
- References, relationship hops and collection rules
- Error codes and positions
"""

from datetime import datetime, timedelta, timezone

import pytest

from trellis.core.types import (
    BooleanValue,
    DateTimeValue,
    DurationValue,
    Entity,
    ListValue,
    NumberValue,
    Property,
    PropertySource,
    ReferenceValue,
    TextValue,
    value_from_python,
)
from trellis.expressions import (
    ErrorCode,
    EvaluationContext,
    Evaluator,
    FunctionCategory,
    FunctionDefinition,
    FunctionParameter,
    FunctionRegistry,
    evaluate,
    evaluate_batch,
    evaluate_simple,
    parse,
)
from trellis.persistence import InMemoryEntityStore

UUID = "550e8400-e29b-41d4-a716-446655440000"


def make_entity(entity_id, entity_type="thing", required=(), **properties):
    return Entity(
        id=entity_id,
        type=entity_type,
        properties={
            name: Property(name=name, value=value_from_python(value))
            for name, value in properties.items()
        },
        required_properties=frozenset(required),
    )


def value_of(source, **properties):
    result = evaluate_simple(source, properties)
    assert result.ok, result.error
    return result.value


def error_of(source, **properties):
    result = evaluate_simple(source, properties)
    assert not result.ok
    return result.error


@pytest.fixture
def store():
    """An order with two line items, a customer and a referenced product."""
    store = InMemoryEntityStore([
        make_entity("order-1", "order", quantity=3, product=ReferenceValue(UUID)),
        make_entity("line-1", "line", price=NumberValue(10, "currency", "USD")),
        make_entity("line-2", "line", price=NumberValue(20, "currency", "USD")),
        make_entity("line-3", "line"),
        make_entity("cust-1", "customer", name="Ada"),
        make_entity(UUID, "product", price=25),
    ])
    store.relate("order-1", "items", "line-1")
    store.relate("order-1", "items", "line-2")
    store.relate("order-1", "customer", "cust-1")
    return store


def in_store(store, source, entity_id="order-1", **kwargs):
    context = EvaluationContext(current_entity=store.get_entity(entity_id), entities=store, **kwargs)
    return evaluate(source, context)


# =============================================================================
# Arithmetic and Comparison
# =============================================================================


class TestArithmetic:
    def test_scenario_price_times_factor(self):
        result = value_of("#price * 1.1", price=100)

        assert isinstance(result, NumberValue)
        assert result.value == pytest.approx(110)

    def test_integer_results_stay_integral(self):
        assert value_of("#a / 2", a=10) == NumberValue(5)
        assert isinstance(value_of("#a / 2", a=10).value, int)

    def test_precedence(self):
        assert value_of("2 + 3 * 4") == NumberValue(14)
        assert value_of("(2 + 3) * 4") == NumberValue(20)

    def test_modulo_follows_floor_division(self):
        assert value_of("7 % 3") == NumberValue(1)
        assert value_of("-7 % 3") == NumberValue(2)

    def test_unary_minus(self):
        assert value_of("-#a", a=4) == NumberValue(-4)

    def test_text_concatenation(self):
        assert value_of('"ab" + "cd"') == TextValue("abcd")

    def test_text_plus_number_is_type_mismatch(self):
        error = error_of('"a" + 1')

        assert error.code == ErrorCode.TYPE_MISMATCH
        assert error.message == "Operator +: expected number, got text and number"

    def test_division_by_zero(self):
        error = error_of("#a / 0", a=1)

        assert error.code == ErrorCode.DIVISION_BY_ZERO
        assert error.message == "Division by zero"
        assert error.position == 0

    def test_modulo_by_zero(self):
        assert error_of("5 % 0").message == "Modulo by zero"

    def test_error_position_of_inner_node(self):
        error = error_of("1 + (2 / 0)")

        assert error.position == 5


class TestDimensions:
    def test_same_dimension_adds(self):
        result = value_of("#a + #b", a=NumberValue(2, "length", "m"), b=NumberValue(3, "length", "m"))

        assert result == NumberValue(5, "length", "m")

    def test_mismatched_dimensions(self):
        error = error_of("#a + #b", a=NumberValue(2, "length", "m"), b=NumberValue(3, "mass", "kg"))

        assert error.code == ErrorCode.TYPE_MISMATCH
        assert "length and mass" in error.message

    def test_scaling_keeps_dimension(self):
        result = value_of("#a * 2", a=NumberValue(2, "currency", "USD"))

        assert result == NumberValue(4, "currency", "USD")

    def test_dividing_same_dimension_is_plain_ratio(self):
        result = value_of("#a / #b", a=NumberValue(6, "length", "m"), b=NumberValue(3, "length", "m"))

        assert result == NumberValue(2)


class TestDatesAndDurations:
    def test_datetime_plus_duration(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)

        result = value_of("#start + #span", start=start, span=timedelta(days=2))

        assert result == DateTimeValue(datetime(2024, 1, 3, tzinfo=timezone.utc))

    def test_datetime_difference_is_duration(self):
        result = value_of(
            "#end - #start",
            start=datetime(2024, 1, 1, tzinfo=timezone.utc),
            end=datetime(2024, 1, 1, 6, tzinfo=timezone.utc),
        )

        assert result == DurationValue(timedelta(hours=6))

    def test_datetimes_compare(self):
        result = value_of(
            "#a < #b",
            a=datetime(2024, 1, 1, tzinfo=timezone.utc),
            b=datetime(2024, 6, 1, tzinfo=timezone.utc),
        )

        assert result == BooleanValue(True)

    def test_scenario_date_diff_from_now(self):
        entity = make_entity("e-1", created_at=datetime.now(timezone.utc) - timedelta(days=3))
        context = EvaluationContext(current_entity=entity)
        source = "DATE_DIFF(NOW(), @self.created_at, 'days')"

        first = evaluate(source, context)
        second = evaluate(source, context)

        assert first.ok and second.ok
        assert isinstance(first.value, NumberValue)
        assert isinstance(second.value, NumberValue)
        assert first.value.value == pytest.approx(3, abs=0.01)
        assert abs(second.value.value - first.value.value) < 1e-6


class TestOutOfRange:
    @pytest.mark.parametrize(
        "source",
        [
            "ROUND(1e300, 2)",
            "SUBSTRING('abc', 1e400)",
            "FLOOR(1e400)",
            "DATE_ADD(NOW(), 1e12, 'days')",
            "DATE_ADD(NOW(), 100000, 'years')",
        ],
    )
    def test_failing_builtin_is_returned(self, source):
        error = error_of(source)

        assert error.code == ErrorCode.FUNCTION_ERROR
        assert error.message.startswith("Error calling ")

    def test_datetime_past_max(self):
        error = error_of(
            "#start + #span",
            start=datetime(9999, 12, 31, tzinfo=timezone.utc),
            span=timedelta(days=2),
        )

        assert error.code == ErrorCode.VALUE_OUT_OF_RANGE
        assert error.message.startswith("Operator +: result out of range")

    def test_datetime_before_min(self):
        error = error_of(
            "#start - #span",
            start=datetime(1, 1, 2, tzinfo=timezone.utc),
            span=timedelta(days=5),
        )

        assert error.code == ErrorCode.VALUE_OUT_OF_RANGE

    def test_duration_scaled_too_far(self):
        error = error_of("#span * 1e300", span=timedelta(days=1))

        assert error.code == ErrorCode.VALUE_OUT_OF_RANGE

    def test_naive_datetime_property(self):
        created = Property(name="created_at", value=DateTimeValue(datetime(2024, 1, 1)))
        entity = Entity(id="e-1", type="thing", properties={"created_at": created})

        result = evaluate(
            "DATE_DIFF(NOW(), #created_at, 'days')", EvaluationContext(current_entity=entity)
        )

        assert result.ok, result.error
        assert result.value.value > 0

    def test_batch_continues_after_failure(self):
        context = EvaluationContext(current_entity=make_entity("e-1"))

        results = evaluate_batch({"bad": "FLOOR(1e400)", "good": "1 + 1"}, context)

        assert results["bad"].error.code == ErrorCode.FUNCTION_ERROR
        assert results["good"].value == NumberValue(2)


class TestComparisonAndEquality:
    def test_numeric_comparisons(self):
        assert value_of("2 > 1") == BooleanValue(True)
        assert value_of("2 <= 1") == BooleanValue(False)

    def test_text_is_not_ordered(self):
        assert error_of('"a" < "b"').code == ErrorCode.TYPE_MISMATCH

    def test_equality_ignores_int_float(self):
        assert value_of("1 == 1.0") == BooleanValue(True)

    def test_different_types_are_unequal(self):
        assert value_of('1 == "1"') == BooleanValue(False)
        assert value_of('1 != "1"') == BooleanValue(True)

    def test_list_equality(self):
        assert value_of("#a == #b", a=[1, 2], b=[1, 2]) == BooleanValue(True)


# =============================================================================
# Null Semantics
# =============================================================================


class TestNullSemantics:
    def test_scenario_if_with_null_condition(self):
        result = evaluate_simple("IF(#active, 1, 0)", {"active": None})

        assert result.ok
        assert result.value is None

    @pytest.mark.parametrize(
        "source",
        ["null + 1", "#missing * 2", "-null", "!null", "null == null", "#a != 1", "null < 1"],
    )
    def test_null_propagates(self, source):
        assert value_of(source, a=None) is None

    def test_missing_optional_property_is_null(self):
        assert value_of("#nothing") is None

    def test_coalesce_replaces_null(self):
        assert value_of("COALESCE(#a, 5) + 1", a=None) == NumberValue(6)

    def test_is_null(self):
        assert value_of("IS_NULL(#a)", a=None) == BooleanValue(True)


class TestLogicalOperators:
    @pytest.mark.parametrize(
        "source,expected",
        [
            ("true && true", True),
            ("true && false", False),
            ("false && null", False),
            ("true || null", True),
            ("false || true", True),
            ("false || false", False),
            ("true && null", None),
            ("null && false", None),
            ("null || true", None),
            ("false || null", None),
        ],
    )
    def test_truth_table(self, source, expected):
        result = value_of(source)

        if expected is None:
            assert result is None
        else:
            assert result == BooleanValue(expected)

    def test_short_circuit_skips_right_side(self):
        assert value_of("false && 1 / 0 > 0") == BooleanValue(False)
        assert value_of("true || 1 / 0 > 0") == BooleanValue(True)

    def test_right_side_errors_when_not_decided(self):
        assert error_of("true && 1 / 0 > 0").code == ErrorCode.DIVISION_BY_ZERO

    def test_non_boolean_operand(self):
        error = error_of("1 && true")

        assert error.code == ErrorCode.TYPE_MISMATCH
        assert error.message == "Logical AND: expected boolean, got number"

    def test_not(self):
        assert value_of("!#flag", flag=True) == BooleanValue(False)
        assert error_of('!"x"').code == ErrorCode.TYPE_MISMATCH


# =============================================================================
# References and Relationships
# =============================================================================


class TestReferences:
    def test_self_reference(self, store):
        assert in_store(store, "@self.quantity * 2").value == NumberValue(6)

    def test_to_one_relationship(self, store):
        result = in_store(store, "@self.customer.name")

        assert result.value == TextValue("Ada")
        assert result.accessed_entities == ("order-1", "cust-1")

    def test_reference_property_as_hop(self, store):
        assert in_store(store, "@self.product.price").value == NumberValue(25)

    def test_explicit_entity(self, store):
        result = in_store(store, f"@{{{UUID.upper()}}}.price * #quantity")

        assert result.value == NumberValue(75)

    def test_unknown_explicit_entity(self, store):
        result = in_store(store, "@123e4567-e89b-12d3-a456-426614174000.price")

        assert result.error.code == ErrorCode.ENTITY_NOT_FOUND

    def test_aggregated_collection(self, store):
        assert in_store(store, "SUM(@self.items[*].price)").value == NumberValue(30, "currency", "USD")
        assert in_store(store, "COUNT(@self.items[*].price)").value == NumberValue(2)

    def test_collection_skips_dangling_targets(self, store):
        store.relate("order-1", "items", "ghost")

        assert in_store(store, "COUNT(@self.items[*].price)").value == NumberValue(2)

    def test_collection_without_aggregation(self, store):
        result = in_store(store, "@self.items[*].price + 1")

        assert result.error.code == ErrorCode.COLLECTION_WITHOUT_AGGREGATION
        assert result.error.position == 0

    def test_to_many_without_marker(self, store):
        result = in_store(store, "@self.items.price")

        assert result.error.code == ErrorCode.COLLECTION_WITHOUT_AGGREGATION

    def test_indexed_hop(self, store):
        assert in_store(store, "@self.items[1].price").value == NumberValue(20, "currency", "USD")

    def test_index_out_of_bounds(self, store):
        result = in_store(store, "@self.items[5].price")

        assert result.error.code == ErrorCode.INDEX_OUT_OF_BOUNDS

    def test_missing_relationship_is_null(self, store):
        assert in_store(store, "@self.supplier.name").value is None

    def test_null_reference_hop_is_null(self):
        store = InMemoryEntityStore([make_entity("order-2", "order", product=None)])

        result = in_store(store, "@self.product.price", entity_id="order-2")

        assert result.ok
        assert result.value is None

    def test_relationship_without_entity_source(self):
        error = error_of("@self.customer.name")

        assert error.code == ErrorCode.RELATIONSHIP_NOT_FOUND

    def test_required_property_missing(self):
        entity = make_entity("e-1", required=["price"], prise=10)

        result = evaluate("#price", EvaluationContext(current_entity=entity))

        assert result.error.code == ErrorCode.PROPERTY_NOT_FOUND
        assert result.error.suggestions == ["prise"]

    def test_inherited_override_wins(self):
        entity = Entity(id="e-1", type="thing", properties={
            "rate": Property(
                name="rate",
                source=PropertySource.INHERITED,
                resolved_value=NumberValue(1),
                override=NumberValue(2),
            ),
        })

        result = evaluate("#rate * 10", EvaluationContext(current_entity=entity))

        assert result.value == NumberValue(20)

    def test_computed_property_reads_cached_value(self):
        entity = Entity(id="e-1", type="thing", properties={
            "total": Property(
                name="total",
                source=PropertySource.COMPUTED,
                cached_value=NumberValue(7),
                expression="1 + 6",
            ),
        })

        assert evaluate("#total", EvaluationContext(current_entity=entity)).value == NumberValue(7)

    def test_list_property_index(self):
        assert value_of("@self.scores[1]", scores=[5, 8, 13]) == NumberValue(8)


# =============================================================================
# Functions, Depth and Entry Points
# =============================================================================


class TestEvaluationEntryPoints:
    def test_unknown_function(self):
        error = error_of("FOO(1)")

        assert error.code == ErrorCode.INVALID_FUNCTION

    def test_argument_count(self):
        assert error_of("ROUND()").code == ErrorCode.INVALID_ARGUMENT_COUNT

    def test_custom_registry(self):
        registry = FunctionRegistry()
        registry.register_function(FunctionDefinition(
            name="TRIPLE",
            description="Triples a number",
            category=FunctionCategory.MATH,
            parameters=[FunctionParameter("value", "number", "Number")],
            return_type="number",
            implementation=lambda v: NumberValue(v.value * 3),
        ))

        result = evaluate_simple("TRIPLE(#a)", {"a": 2}, registry)

        assert result.value == NumberValue(6)
        assert evaluate_simple("ROUND(1)", {}, registry).error.code == ErrorCode.INVALID_FUNCTION

    def test_max_depth(self):
        context = EvaluationContext(current_entity=make_entity("e-1"), max_depth=3)

        result = evaluate("1 + (2 + (3 + 4))", context)

        assert result.error.code == ErrorCode.MAX_DEPTH_EXCEEDED

    def test_parse_error_is_returned(self):
        result = evaluate_simple("1 +", {})

        assert not result.ok
        assert result.error.code == ErrorCode.UNEXPECTED_END

    def test_accepts_parsed_ast(self):
        ast = parse("#a + 1").ast

        assert evaluate_simple(ast, {"a": 1}).value == NumberValue(2)

    def test_batch_isolates_failures(self):
        context = EvaluationContext(current_entity=make_entity("e-1", a=4))

        results = evaluate_batch({"ok": "#a * 2", "bad": "#a / 0"}, context)

        assert results["ok"].value == NumberValue(8)
        assert results["bad"].error.code == ErrorCode.DIVISION_BY_ZERO

    def test_duration_reported(self):
        assert evaluate_simple("1 + 1", {}).duration_ms >= 0

    def test_evaluator_raises(self):
        evaluator = Evaluator(EvaluationContext(current_entity=make_entity("e-1")))

        with pytest.raises(Exception) as exc_info:
            evaluator.evaluate(parse("1 / 0").ast)

        assert exc_info.value.code == ErrorCode.DIVISION_BY_ZERO

    def test_list_value_from_collection(self, store):
        context = EvaluationContext(current_entity=store.get_entity("order-1"), entities=store)
        evaluator = Evaluator(context)

        value = evaluator.evaluate(parse("@self.items[*].price").ast, allow_collection=True)

        assert isinstance(value, ListValue)
        assert len(value.values) == 2
