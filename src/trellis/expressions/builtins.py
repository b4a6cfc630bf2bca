"""Built-in functions for the Trellis expression language.

Categories:
- Aggregation: SUM, COUNT, AVG, MIN, MAX
- Conditional: IF, COALESCE, IS_NULL
- String: CONCAT, UPPER, LOWER, LENGTH, SUBSTRING, TRIM, STARTS_WITH, ENDS_WITH
- Math: ROUND, FLOOR, CEIL, ABS, POW, SQRT
- Date: NOW, DATE_DIFF, DATE_ADD, YEAR, MONTH, DAY

Every function returns null when any argument is null, except those
registered with propagates_null=False: IF (only the condition propagates),
COALESCE, IS_NULL and CONCAT (null arguments are skipped).
"""

import calendar
import logging
import math
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache

from trellis.core.types import (
    BooleanValue,
    DateTimeValue,
    DurationValue,
    ListValue,
    NumberValue,
    RecordValue,
    ReferenceValue,
    TextValue,
    Value,
    format_duration,
    normalize_number,
    type_name,
)
from trellis.expressions.errors import type_mismatch_error
from trellis.expressions.functions import (
    FunctionCategory,
    FunctionDefinition,
    FunctionParameter,
    FunctionRegistry,
)

logger = logging.getLogger(__name__)


def create_default_registry() -> FunctionRegistry:
    """Build a new registry holding every built-in function."""
    registry = FunctionRegistry()
    register_all_builtins(registry)
    logger.debug("Built function registry with %d functions", len(registry))
    return registry


@lru_cache(maxsize=None)
def default_registry() -> FunctionRegistry:
    """Process-wide registry of built-ins, built once on first use.

    Treat it as read-only; build your own with create_default_registry()
    to register custom functions.
    """
    return create_default_registry()


def register_all_builtins(registry: FunctionRegistry) -> None:
    """Register all built-in functions with a registry."""
    _register_aggregation_functions(registry)
    _register_conditional_functions(registry)
    _register_string_functions(registry)
    _register_math_functions(registry)
    _register_date_functions(registry)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _numbers(function: str, items: ListValue) -> list[NumberValue]:
    """Non-null items of a list, which must all be numbers."""
    numbers = []
    for item in items.values:
        if item is None:
            continue
        if not isinstance(item, NumberValue):
            raise type_mismatch_error(function, "list of number", f"list containing {type_name(item)}")
        numbers.append(item)
    return numbers


def _like(number: int | float, template: NumberValue) -> NumberValue:
    """A number carrying the dimension and unit of template."""
    return NumberValue(normalize_number(number), template.dimension, template.unit)


def to_text(value: Value) -> str:
    """Render a value as text the way CONCAT does."""
    match value:
        case None:
            return ""
        case TextValue(text):
            return text
        case BooleanValue(flag):
            return "true" if flag else "false"
        case NumberValue(number):
            return str(normalize_number(number))
        case DateTimeValue(moment):
            return moment.isoformat()
        case DurationValue(delta):
            return format_duration(delta)
        case ReferenceValue(entity_id):
            return entity_id
        case ListValue(values):
            return ", ".join(to_text(item) for item in values)
        case RecordValue(fields):
            return ", ".join(f"{k}: {to_text(v)}" for k, v in fields.items())
    raise TypeError(f"Not a runtime value: {value!r}")


# -----------------------------------------------------------------------------
# Aggregation Functions
# -----------------------------------------------------------------------------


def _sum(items: ListValue) -> NumberValue:
    """Sum of non-null numbers; 0 for an empty list."""
    numbers = _numbers("SUM", items)
    if not numbers:
        return NumberValue(0)
    return _like(sum(n.value for n in numbers), numbers[0])


def _count(items: ListValue) -> NumberValue:
    """Number of non-null items."""
    return NumberValue(sum(1 for item in items.values if item is not None))


def _avg(items: ListValue) -> NumberValue | None:
    numbers = _numbers("AVG", items)
    if not numbers:
        return None
    return _like(sum(n.value for n in numbers) / len(numbers), numbers[0])


def _min(items: ListValue) -> NumberValue | None:
    numbers = _numbers("MIN", items)
    if not numbers:
        return None
    return min(numbers, key=lambda n: n.value)


def _max(items: ListValue) -> NumberValue | None:
    numbers = _numbers("MAX", items)
    if not numbers:
        return None
    return max(numbers, key=lambda n: n.value)


def _register_aggregation_functions(registry: FunctionRegistry) -> None:
    items = FunctionParameter("values", "list", "Collection of numbers (use [*])")

    registry.register_function(FunctionDefinition(
        name="SUM",
        description="Returns the sum of the non-null numbers in a collection",
        category=FunctionCategory.AGGREGATION,
        parameters=[items],
        return_type="number",
        implementation=_sum,
        examples=["SUM(@self.line_items[*].amount)"],
    ))

    registry.register_function(FunctionDefinition(
        name="COUNT",
        description="Returns the number of non-null items in a collection",
        category=FunctionCategory.AGGREGATION,
        parameters=[FunctionParameter("values", "list", "Collection (use [*])")],
        return_type="number",
        implementation=_count,
        examples=["COUNT(@self.tasks[*].id)"],
    ))

    registry.register_function(FunctionDefinition(
        name="AVG",
        description="Returns the mean of the non-null numbers, null if there are none",
        category=FunctionCategory.AGGREGATION,
        parameters=[items],
        return_type="number",
        implementation=_avg,
        examples=["AVG(@self.reviews[*].score)"],
    ))

    registry.register_function(FunctionDefinition(
        name="MIN",
        description="Returns the smallest non-null number, null if there are none",
        category=FunctionCategory.AGGREGATION,
        parameters=[items],
        return_type="number",
        implementation=_min,
        examples=["MIN(@self.bids[*].amount)"],
    ))

    registry.register_function(FunctionDefinition(
        name="MAX",
        description="Returns the largest non-null number, null if there are none",
        category=FunctionCategory.AGGREGATION,
        parameters=[items],
        return_type="number",
        implementation=_max,
        examples=["MAX(@self.bids[*].amount)"],
    ))


# -----------------------------------------------------------------------------
# Conditional Functions
# -----------------------------------------------------------------------------


def _if(condition: Value, then_value: Value, else_value: Value) -> Value:
    """Select a branch; an unknown (null) condition yields null."""
    if condition is None:
        return None
    return then_value if condition.value else else_value


def _coalesce(*values: Value) -> Value:
    """Return first non-null value."""
    for value in values:
        if value is not None:
            return value
    return None


def _is_null(value: Value) -> BooleanValue:
    return BooleanValue(value is None)


def _register_conditional_functions(registry: FunctionRegistry) -> None:
    registry.register_function(FunctionDefinition(
        name="IF",
        description="Returns then_value if condition is true, else_value otherwise; "
        "null if condition is null",
        category=FunctionCategory.CONDITIONAL,
        parameters=[
            FunctionParameter("condition", "boolean", "Condition to test"),
            FunctionParameter("then_value", "any", "Value when true"),
            FunctionParameter("else_value", "any", "Value when false"),
        ],
        return_type="any",
        implementation=_if,
        examples=['IF(#active, 1, 0)', 'IF(#total > 1000, "large", "small")'],
        propagates_null=False,
    ))

    registry.register_function(FunctionDefinition(
        name="COALESCE",
        description="Returns the first non-null argument",
        category=FunctionCategory.CONDITIONAL,
        parameters=[
            FunctionParameter("values", "any", "Values to check", variadic=True),
        ],
        return_type="any",
        implementation=_coalesce,
        examples=["COALESCE(#nickname, #name)"],
        propagates_null=False,
    ))

    registry.register_function(FunctionDefinition(
        name="IS_NULL",
        description="Returns true if the value is null",
        category=FunctionCategory.CONDITIONAL,
        parameters=[FunctionParameter("value", "any", "Value to test")],
        return_type="boolean",
        implementation=_is_null,
        examples=["IS_NULL(@self.parent.name)"],
        propagates_null=False,
    ))


# -----------------------------------------------------------------------------
# String Functions
# -----------------------------------------------------------------------------


def _concat(*values: Value) -> TextValue:
    """Concatenate all arguments as text, skipping null values."""
    return TextValue("".join(to_text(v) for v in values if v is not None))


def _upper(value: TextValue) -> TextValue:
    return TextValue(value.value.upper())


def _lower(value: TextValue) -> TextValue:
    return TextValue(value.value.lower())


def _trim(value: TextValue) -> TextValue:
    return TextValue(value.value.strip())


def _length(value: TextValue | ListValue) -> NumberValue:
    if isinstance(value, ListValue):
        return NumberValue(len(value.values))
    return NumberValue(len(value.value))


def _substring(
    value: TextValue, start: NumberValue, length: NumberValue | None = None
) -> TextValue:
    """Substring from a 0-based start, optionally limited to length chars."""
    begin = max(0, int(start.value))
    if length is None:
        return TextValue(value.value[begin:])
    return TextValue(value.value[begin:begin + max(0, int(length.value))])


def _starts_with(value: TextValue, prefix: TextValue) -> BooleanValue:
    return BooleanValue(value.value.startswith(prefix.value))


def _ends_with(value: TextValue, suffix: TextValue) -> BooleanValue:
    return BooleanValue(value.value.endswith(suffix.value))


def _register_string_functions(registry: FunctionRegistry) -> None:
    text = FunctionParameter("value", "text", "Input text")

    registry.register_function(FunctionDefinition(
        name="CONCAT",
        description="Concatenates values as text, skipping nulls",
        category=FunctionCategory.STRING,
        parameters=[
            FunctionParameter("values", "any", "Values to concatenate", variadic=True),
        ],
        return_type="text",
        implementation=_concat,
        examples=['CONCAT(#first_name, " ", #last_name)'],
        propagates_null=False,
    ))

    registry.register_function(FunctionDefinition(
        name="UPPER",
        description="Converts text to uppercase",
        category=FunctionCategory.STRING,
        parameters=[text],
        return_type="text",
        implementation=_upper,
        examples=["UPPER(#code)"],
    ))

    registry.register_function(FunctionDefinition(
        name="LOWER",
        description="Converts text to lowercase",
        category=FunctionCategory.STRING,
        parameters=[text],
        return_type="text",
        implementation=_lower,
        examples=["LOWER(#email)"],
    ))

    registry.register_function(FunctionDefinition(
        name="LENGTH",
        description="Returns the length of text or the size of a collection",
        category=FunctionCategory.STRING,
        parameters=[FunctionParameter("value", "text|list", "Text or collection")],
        return_type="number",
        implementation=_length,
        examples=["LENGTH(#name) > 0"],
    ))

    registry.register_function(FunctionDefinition(
        name="SUBSTRING",
        description="Returns part of text starting at a 0-based index",
        category=FunctionCategory.STRING,
        parameters=[
            text,
            FunctionParameter("start", "number", "0-based start index"),
            FunctionParameter("length", "number", "Maximum length", required=False),
        ],
        return_type="text",
        implementation=_substring,
        examples=["SUBSTRING(#code, 0, 3)"],
    ))

    registry.register_function(FunctionDefinition(
        name="TRIM",
        description="Removes leading and trailing whitespace",
        category=FunctionCategory.STRING,
        parameters=[text],
        return_type="text",
        implementation=_trim,
        examples=["TRIM(#name)"],
    ))

    registry.register_function(FunctionDefinition(
        name="STARTS_WITH",
        description="Returns true if text starts with the prefix",
        category=FunctionCategory.STRING,
        parameters=[text, FunctionParameter("prefix", "text", "Prefix to test")],
        return_type="boolean",
        implementation=_starts_with,
        examples=['STARTS_WITH(#sku, "HW-")'],
    ))

    registry.register_function(FunctionDefinition(
        name="ENDS_WITH",
        description="Returns true if text ends with the suffix",
        category=FunctionCategory.STRING,
        parameters=[text, FunctionParameter("suffix", "text", "Suffix to test")],
        return_type="boolean",
        implementation=_ends_with,
        examples=['ENDS_WITH(#email, "@example.com")'],
    ))


# -----------------------------------------------------------------------------
# Math Functions
# -----------------------------------------------------------------------------


def _round(value: NumberValue, decimals: NumberValue | None = None) -> NumberValue:
    """Round half away from zero to the given number of decimals."""
    places = int(decimals.value) if decimals is not None else 0
    quantum = Decimal(1).scaleb(-places)
    rounded = Decimal(str(value.value)).quantize(quantum, rounding=ROUND_HALF_UP)
    result = int(rounded) if places <= 0 else float(rounded)
    return _like(result, value)


def _floor(value: NumberValue) -> NumberValue:
    return _like(math.floor(value.value), value)


def _ceil(value: NumberValue) -> NumberValue:
    return _like(math.ceil(value.value), value)


def _abs(value: NumberValue) -> NumberValue:
    return _like(abs(value.value), value)


def _pow(base: NumberValue, exponent: NumberValue) -> NumberValue | None:
    """base ** exponent; null where the result is undefined or overflows."""
    try:
        result = math.pow(base.value, exponent.value)
    except (ValueError, OverflowError):
        return None
    return NumberValue(normalize_number(result))


def _sqrt(value: NumberValue) -> NumberValue | None:
    if value.value < 0:
        return None
    return NumberValue(normalize_number(math.sqrt(value.value)))


def _register_math_functions(registry: FunctionRegistry) -> None:
    number = FunctionParameter("value", "number", "Input number")

    registry.register_function(FunctionDefinition(
        name="ROUND",
        description="Rounds half away from zero to the given decimal places (default 0)",
        category=FunctionCategory.MATH,
        parameters=[
            number,
            FunctionParameter("decimals", "number", "Decimal places", required=False),
        ],
        return_type="number",
        implementation=_round,
        examples=["ROUND(#price * 1.1, 2)"],
    ))

    registry.register_function(FunctionDefinition(
        name="FLOOR",
        description="Rounds down to the nearest integer",
        category=FunctionCategory.MATH,
        parameters=[number],
        return_type="number",
        implementation=_floor,
        examples=["FLOOR(#score)"],
    ))

    registry.register_function(FunctionDefinition(
        name="CEIL",
        description="Rounds up to the nearest integer",
        category=FunctionCategory.MATH,
        parameters=[number],
        return_type="number",
        implementation=_ceil,
        examples=["CEIL(#hours)"],
    ))

    registry.register_function(FunctionDefinition(
        name="ABS",
        description="Returns the absolute value",
        category=FunctionCategory.MATH,
        parameters=[number],
        return_type="number",
        implementation=_abs,
        examples=["ABS(#balance)"],
    ))

    registry.register_function(FunctionDefinition(
        name="POW",
        description="Raises base to the power of exponent",
        category=FunctionCategory.MATH,
        parameters=[
            FunctionParameter("base", "number", "Base"),
            FunctionParameter("exponent", "number", "Exponent"),
        ],
        return_type="number",
        implementation=_pow,
        examples=["POW(1 + #rate, #years)"],
    ))

    registry.register_function(FunctionDefinition(
        name="SQRT",
        description="Returns the square root, null for negative numbers",
        category=FunctionCategory.MATH,
        parameters=[number],
        return_type="number",
        implementation=_sqrt,
        examples=["SQRT(#area)"],
    ))


# -----------------------------------------------------------------------------
# Date Functions
# -----------------------------------------------------------------------------

# Average calendar lengths used by DATE_DIFF
UNIT_MILLISECONDS = {
    "millisecond": 1,
    "second": 1000,
    "minute": 60 * 1000,
    "hour": 60 * 60 * 1000,
    "day": 24 * 60 * 60 * 1000,
    "week": 7 * 24 * 60 * 60 * 1000,
    "month": 30.44 * 24 * 60 * 60 * 1000,
    "year": 365.25 * 24 * 60 * 60 * 1000,
}


def normalize_unit(unit: str) -> str | None:
    """Map "days", "Day", "ms" and friends to a canonical unit name."""
    name = unit.strip().lower()
    if name == "ms":
        return "millisecond"
    if name.endswith("s") and name[:-1] in UNIT_MILLISECONDS:
        name = name[:-1]
    return name if name in UNIT_MILLISECONDS else None


def _now() -> DateTimeValue:
    """Return current UTC datetime."""
    return DateTimeValue(datetime.now(timezone.utc))


def _date_diff(first: DateTimeValue, second: DateTimeValue, unit: TextValue) -> NumberValue | None:
    """first - second expressed in unit; null for an unknown unit."""
    name = normalize_unit(unit.value)
    if name is None:
        return None
    milliseconds = (first.value - second.value) / timedelta(milliseconds=1)
    return NumberValue(milliseconds / UNIT_MILLISECONDS[name])


def _add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month."""
    total = moment.month - 1 + months
    year, month = moment.year + total // 12, total % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _date_add(moment: DateTimeValue, amount: NumberValue, unit: TextValue) -> DateTimeValue | None:
    """Add amount units to a datetime; null for an unknown unit."""
    name = normalize_unit(unit.value)
    if name is None:
        return None
    if name == "month":
        return DateTimeValue(_add_months(moment.value, int(amount.value)))
    if name == "year":
        return DateTimeValue(_add_months(moment.value, 12 * int(amount.value)))
    delta = timedelta(milliseconds=amount.value * UNIT_MILLISECONDS[name])
    return DateTimeValue(moment.value + delta)


def _year(moment: DateTimeValue) -> NumberValue:
    return NumberValue(moment.value.year)


def _month(moment: DateTimeValue) -> NumberValue:
    return NumberValue(moment.value.month)


def _day(moment: DateTimeValue) -> NumberValue:
    return NumberValue(moment.value.day)


def _register_date_functions(registry: FunctionRegistry) -> None:
    moment = FunctionParameter("date", "datetime", "Datetime value")
    unit = FunctionParameter(
        "unit",
        "text",
        "One of milliseconds, seconds, minutes, hours, days, weeks, months, years",
    )

    registry.register_function(FunctionDefinition(
        name="NOW",
        description="Returns the current UTC datetime",
        category=FunctionCategory.DATE,
        parameters=[],
        return_type="datetime",
        implementation=_now,
        examples=["NOW()"],
    ))

    registry.register_function(FunctionDefinition(
        name="DATE_DIFF",
        description="Returns date1 - date2 in the given unit "
        "(months are 30.44 days, years 365.25 days)",
        category=FunctionCategory.DATE,
        parameters=[
            FunctionParameter("date1", "datetime", "Later datetime"),
            FunctionParameter("date2", "datetime", "Earlier datetime"),
            unit,
        ],
        return_type="number",
        implementation=_date_diff,
        examples=["DATE_DIFF(NOW(), @self.created_at, 'days')"],
    ))

    registry.register_function(FunctionDefinition(
        name="DATE_ADD",
        description="Adds an amount of the given unit to a datetime",
        category=FunctionCategory.DATE,
        parameters=[moment, FunctionParameter("amount", "number", "Amount to add"), unit],
        return_type="datetime",
        implementation=_date_add,
        examples=["DATE_ADD(#start_date, 30, 'days')"],
    ))

    registry.register_function(FunctionDefinition(
        name="YEAR",
        description="Returns the year of a datetime",
        category=FunctionCategory.DATE,
        parameters=[moment],
        return_type="number",
        implementation=_year,
        examples=["YEAR(#created_at)"],
    ))

    registry.register_function(FunctionDefinition(
        name="MONTH",
        description="Returns the month (1-12) of a datetime",
        category=FunctionCategory.DATE,
        parameters=[moment],
        return_type="number",
        implementation=_month,
        examples=["MONTH(#created_at)"],
    ))

    registry.register_function(FunctionDefinition(
        name="DAY",
        description="Returns the day of the month of a datetime",
        category=FunctionCategory.DATE,
        parameters=[moment],
        return_type="number",
        implementation=_day,
        examples=["DAY(#created_at)"],
    ))
