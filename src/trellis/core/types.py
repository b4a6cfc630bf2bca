"""Core value and entity types shared by the expression engine.

RuntimeValue is a closed union of frozen dataclasses, one per value type of
the host data model. `None` is the null value; it is never wrapped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar, Union


class ValueType(str, Enum):
    """Value types of the host data model."""

    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    DURATION = "duration"
    REFERENCE = "reference"
    LIST = "list"
    RECORD = "record"


@dataclass(frozen=True)
class TextValue:
    value: str
    type: ClassVar[ValueType] = ValueType.TEXT


@dataclass(frozen=True)
class NumberValue:
    """A number, optionally carrying a physical dimension and unit.

    Attributes:
        value: The numeric value (int or float)
        dimension: Physical dimension such as "length" or "currency"
        unit: Unit symbol such as "m" or "USD"
    """

    value: int | float
    dimension: str | None = None
    unit: str | None = None
    type: ClassVar[ValueType] = ValueType.NUMBER


@dataclass(frozen=True)
class BooleanValue:
    value: bool
    type: ClassVar[ValueType] = ValueType.BOOLEAN


@dataclass(frozen=True)
class DateTimeValue:
    """A point in time; naive datetimes are taken as UTC."""

    value: datetime
    type: ClassVar[ValueType] = ValueType.DATETIME

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", _aware(self.value))


@dataclass(frozen=True)
class DurationValue:
    value: timedelta
    type: ClassVar[ValueType] = ValueType.DURATION


@dataclass(frozen=True)
class ReferenceValue:
    entity_id: str
    type: ClassVar[ValueType] = ValueType.REFERENCE


@dataclass(frozen=True)
class ListValue:
    """An ordered list of values; items may be null."""

    values: tuple[RuntimeValue | None, ...]
    element_type: ValueType | None = None
    type: ClassVar[ValueType] = ValueType.LIST


@dataclass(frozen=True)
class RecordValue:
    fields: dict[str, RuntimeValue | None] = field(default_factory=dict)
    type: ClassVar[ValueType] = ValueType.RECORD


RuntimeValue = Union[
    TextValue,
    NumberValue,
    BooleanValue,
    DateTimeValue,
    DurationValue,
    ReferenceValue,
    ListValue,
    RecordValue,
]

# A value as seen by the evaluator: a RuntimeValue or null.
Value = Union[RuntimeValue, None]

RUNTIME_VALUE_TYPES = (
    TextValue,
    NumberValue,
    BooleanValue,
    DateTimeValue,
    DurationValue,
    ReferenceValue,
    ListValue,
    RecordValue,
)


def type_name(value: Value) -> str:
    """Return the value-type name of a value, "null" for None."""
    if value is None:
        return "null"
    return value.type.value


# -----------------------------------------------------------------------------
# Conversions
# -----------------------------------------------------------------------------


def _aware(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with aware ones."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def value_from_python(obj: Any) -> Value:
    """Wrap a plain Python object as a runtime value.

    Raises:
        TypeError: If the object has no runtime value counterpart
    """
    if obj is None or isinstance(obj, RUNTIME_VALUE_TYPES):
        return obj
    if isinstance(obj, bool):
        return BooleanValue(obj)
    if isinstance(obj, (int, float)):
        return NumberValue(obj)
    if isinstance(obj, str):
        return TextValue(obj)
    if isinstance(obj, datetime):
        return DateTimeValue(_aware(obj))
    if isinstance(obj, date):
        return DateTimeValue(datetime(obj.year, obj.month, obj.day, tzinfo=timezone.utc))
    if isinstance(obj, timedelta):
        return DurationValue(obj)
    if isinstance(obj, (list, tuple)):
        values = tuple(value_from_python(item) for item in obj)
        return ListValue(values, common_type(values))
    if isinstance(obj, dict):
        return RecordValue({str(k): value_from_python(v) for k, v in obj.items()})
    raise TypeError(f"Cannot convert {type(obj).__name__} to a runtime value")


def value_to_python(value: Value) -> Any:
    """Unwrap a runtime value into a plain Python object."""
    if value is None:
        return None
    if isinstance(value, ReferenceValue):
        return value.entity_id
    if isinstance(value, ListValue):
        return [value_to_python(item) for item in value.values]
    if isinstance(value, RecordValue):
        return {k: value_to_python(v) for k, v in value.fields.items()}
    return value.value


def normalize_number(number: int | float) -> int | float:
    """Collapse integral floats to int so 2.0 prints as 2."""
    if isinstance(number, float) and number.is_integer() and abs(number) < 2**53:
        return int(number)
    return number


def common_type(values: tuple[Value, ...]) -> ValueType | None:
    types = {v.type for v in values if v is not None}
    if len(types) == 1:
        return types.pop()
    return None


_DURATION_PATTERN = re.compile(
    r"^(?P<sign>-)?P(?:(?P<weeks>\d+(?:\.\d+)?)W)?(?:(?P<days>\d+(?:\.\d+)?)D)?"
    r"(?:T(?:(?P<hours>\d+(?:\.\d+)?)H)?(?:(?P<minutes>\d+(?:\.\d+)?)M)?"
    r"(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)


def parse_duration(text: str) -> timedelta:
    """Parse an ISO 8601 duration (weeks, days and time parts only).

    Raises:
        ValueError: If the text is not a supported ISO 8601 duration
    """
    match = _DURATION_PATTERN.match(text)
    if not match or text in ("P", "-P") or text.endswith("T"):
        raise ValueError(f"Invalid ISO 8601 duration: {text!r}")
    parts = {
        name: float(amount)
        for name, amount in match.groupdict().items()
        if name != "sign" and amount is not None
    }
    result = timedelta(**parts)
    return -result if match.group("sign") else result


def format_duration(delta: timedelta) -> str:
    """Format a timedelta as an ISO 8601 duration."""
    sign = "-" if delta < timedelta(0) else ""
    delta = abs(delta)
    hours, remainder = divmod(delta.seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    seconds_text = f"{seconds + delta.microseconds / 1_000_000:g}"

    result = f"{sign}P"
    if delta.days:
        result += f"{delta.days}D"
    time_part = ""
    if hours:
        time_part += f"{hours}H"
    if minutes:
        time_part += f"{minutes}M"
    if seconds or delta.microseconds:
        time_part += f"{seconds_text}S"
    if time_part:
        result += f"T{time_part}"
    if result in ("P", "-P"):
        return "PT0S"
    return result


def value_to_dict(value: Value) -> dict[str, Any] | None:
    """Serialize a runtime value to its JSON wire shape."""
    if value is None:
        return None
    match value:
        case NumberValue(number, dimension, unit):
            data: dict[str, Any] = {"type": "number", "value": number}
            if dimension is not None:
                data["dimension"] = dimension
            if unit is not None:
                data["unit"] = unit
            return data
        case DateTimeValue(moment):
            return {"type": "datetime", "value": moment.isoformat()}
        case DurationValue(delta):
            return {"type": "duration", "value": format_duration(delta)}
        case ReferenceValue(entity_id):
            return {"type": "reference", "entity_id": entity_id}
        case ListValue(values, element_type):
            return {
                "type": "list",
                "element_type": element_type.value if element_type else None,
                "values": [value_to_dict(item) for item in values],
            }
        case RecordValue(fields):
            return {
                "type": "record",
                "fields": {k: value_to_dict(v) for k, v in fields.items()},
            }
        case _:
            return {"type": value.type.value, "value": value.value}


def value_from_dict(data: dict[str, Any] | None) -> Value:
    """Deserialize a runtime value from its JSON wire shape.

    Raises:
        ValueError: If the type tag is unknown or the payload is malformed
    """
    if data is None:
        return None
    kind = data.get("type")
    if kind == "text":
        return TextValue(str(data["value"]))
    if kind == "number":
        return NumberValue(data["value"], data.get("dimension"), data.get("unit"))
    if kind == "boolean":
        return BooleanValue(bool(data["value"]))
    if kind == "datetime":
        return DateTimeValue(_aware(datetime.fromisoformat(data["value"])))
    if kind == "duration":
        return DurationValue(parse_duration(data["value"]))
    if kind == "reference":
        return ReferenceValue(data["entity_id"])
    if kind == "list":
        element_type = data.get("element_type")
        return ListValue(
            tuple(value_from_dict(item) for item in data.get("values", [])),
            ValueType(element_type) if element_type else None,
        )
    if kind == "record":
        return RecordValue(
            {k: value_from_dict(v) for k, v in data.get("fields", {}).items()}
        )
    raise ValueError(f"Unknown value type: {kind!r}")


# -----------------------------------------------------------------------------
# Entities and properties
# -----------------------------------------------------------------------------


class PropertySource(str, Enum):
    """Where a property's current value comes from."""

    LITERAL = "literal"
    MEASURED = "measured"
    INHERITED = "inherited"
    COMPUTED = "computed"


class ComputationStatus(str, Enum):
    """Lifecycle state of a computed property's cached value."""

    VALID = "valid"
    STALE = "stale"
    PENDING = "pending"
    ERROR = "error"
    CIRCULAR = "circular"


@dataclass
class Property:
    """A property on an entity.

    Attributes:
        name: Property name
        source: Where the value comes from
        value: Stored value for literal and measured properties
        override: Local override for inherited properties
        resolved_value: Value inherited from the parent
        cached_value: Last computed value for computed properties
        computation_status: State of cached_value
        expression: Source expression for computed properties
        dependencies: Extracted dependencies of the expression
    """

    name: str
    source: PropertySource = PropertySource.LITERAL
    value: Value = None
    override: Value = None
    resolved_value: Value = None
    cached_value: Value = None
    computation_status: ComputationStatus = ComputationStatus.VALID
    expression: str | None = None
    dependencies: list[Any] = field(default_factory=list)

    def current_value(self) -> Value:
        """Return the value an expression reading this property sees."""
        if self.source in (PropertySource.LITERAL, PropertySource.MEASURED):
            return self.value
        if self.source == PropertySource.INHERITED:
            return self.override if self.override is not None else self.resolved_value
        return self.cached_value


@dataclass
class Entity:
    """An entity instance with its properties."""

    id: str
    type: str
    properties: dict[str, Property] = field(default_factory=dict)
    required_properties: frozenset[str] = frozenset()
    tenant_id: str | None = None

    def get_property(self, name: str) -> Property | None:
        return self.properties.get(name)


@dataclass(frozen=True, order=True)
class PropertyKey:
    """The unit of staleness propagation: one property on one entity."""

    entity_id: str
    property_name: str

    def __str__(self) -> str:
        return f"{self.entity_id}.{self.property_name}"

    def to_dict(self) -> dict[str, str]:
        return {"entity_id": self.entity_id, "property_name": self.property_name}
