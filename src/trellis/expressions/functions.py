"""Function registry for the Trellis expression language.

Functions are callable from expressions (e.g., `SUM(@self.items[*].price)`,
`NOW()`). Each function is registered with metadata used by static
validation, by the evaluator's invocation checks, and for documentation.

A FunctionRegistry is an ordinary object: build one with
`default_registry()` (see builtins) and pass it where needed; tests
construct isolated registries.
"""

from __future__ import annotations

import difflib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Sequence

from trellis.core.types import Value, type_name
from trellis.expressions.errors import (
    ExpressionError,
    function_error,
    invalid_argument_count_error,
    invalid_function_error,
    type_mismatch_error,
)


class FunctionCategory(Enum):
    """Categories for organizing functions in documentation."""

    AGGREGATION = "aggregation"
    CONDITIONAL = "conditional"
    STRING = "string"
    MATH = "math"
    DATE = "date"


@dataclass(frozen=True)
class FunctionParameter:
    """Definition of a function parameter.

    Attributes:
        name: Parameter name
        type: Expected value type ("number", "text", "list", "any", ...);
            alternatives are separated by "|" (e.g. "text|list")
        description: Human-readable description
        required: Whether this parameter is required
        variadic: If True, this parameter accepts any number of values
    """

    name: str
    type: str
    description: str
    required: bool = True
    variadic: bool = False


@dataclass(frozen=True)
class FunctionDefinition:
    """Complete definition of an expression function.

    Attributes:
        name: Function name as used in expressions (uppercase)
        description: Human-readable description
        category: Category for documentation organization
        parameters: List of parameter definitions
        return_type: Type of the return value
        implementation: Callable receiving runtime values, returning one
        examples: Example expressions using this function
        propagates_null: If True, any null argument short-circuits to null
            before the implementation runs
    """

    name: str
    description: str
    category: FunctionCategory
    parameters: list[FunctionParameter]
    return_type: str
    implementation: Callable[..., Value]
    examples: list[str] = field(default_factory=list)
    propagates_null: bool = True

    @property
    def min_args(self) -> int:
        return sum(1 for p in self.parameters if p.required)

    @property
    def max_args(self) -> int | None:
        if any(p.variadic for p in self.parameters):
            return None
        return len(self.parameters)

    @property
    def arg_types(self) -> list[str]:
        return [p.type for p in self.parameters]

    @property
    def arity_text(self) -> str:
        if self.max_args is None:
            return f"at least {self.min_args}"
        if self.min_args == self.max_args:
            return str(self.min_args)
        return f"{self.min_args}-{self.max_args}"

    def accepts_count(self, count: int) -> bool:
        if count < self.min_args:
            return False
        return self.max_args is None or count <= self.max_args

    def parameter_type(self, index: int) -> str | None:
        """Declared type of the argument at index (variadic tail repeats)."""
        if index < len(self.parameters):
            return self.parameters[index].type
        if self.parameters and self.parameters[-1].variadic:
            return self.parameters[-1].type
        return None

    def to_dict(self) -> dict[str, Any]:
        """Export for documentation."""
        return {
            "name": self.name,
            "description": self.description,
            "category": self.category.value,
            "parameters": [
                {
                    "name": p.name,
                    "type": p.type,
                    "description": p.description,
                    "required": p.required,
                    "variadic": p.variadic,
                }
                for p in self.parameters
            ],
            "returnType": self.return_type,
            "minArgs": self.min_args,
            "maxArgs": self.max_args,
            "propagatesNull": self.propagates_null,
            "examples": self.examples,
        }


def matches_type(value: Value, expected: str | None) -> bool:
    """Check a runtime value against a declared parameter type.

    Null matches every type; null handling is the caller's concern.
    """
    if value is None or expected is None or expected == "any":
        return True
    return value.type.value in expected.split("|")


class FunctionRegistry:
    """Registry for expression functions.

    Names are case-insensitive and stored uppercase.

    Example:
        registry = FunctionRegistry()
        registry.register_function(FunctionDefinition(
            name="DOUBLE",
            description="Doubles a number",
            ...
        ))

        registry.invoke_function("double", [NumberValue(2)])  # NumberValue(4)
    """

    def __init__(self, functions: Sequence[FunctionDefinition] = ()):
        self._functions: dict[str, FunctionDefinition] = {}
        for func_def in functions:
            self.register_function(func_def)

    def register_function(self, func_def: FunctionDefinition) -> None:
        """Register a function definition, replacing any with the same name.

        Registration is not synchronized; callers registering at runtime
        must serialize their calls.
        """
        self._functions[func_def.name.upper()] = func_def

    def get_function(self, name: str) -> FunctionDefinition | None:
        return self._functions.get(name.upper())

    def has_function(self, name: str) -> bool:
        return name.upper() in self._functions

    def get_all_function_names(self) -> list[str]:
        return sorted(self._functions)

    def list_by_category(self, category: FunctionCategory) -> list[FunctionDefinition]:
        return [
            f for name, f in sorted(self._functions.items()) if f.category == category
        ]

    def export_documentation(self) -> list[dict[str, Any]]:
        """Export all function definitions for documentation."""
        return [self._functions[name].to_dict() for name in sorted(self._functions)]

    def clear(self) -> None:
        self._functions.clear()

    def find_similar_functions(self, name: str, limit: int = 3) -> list[str]:
        """Suggest registered names for a misspelled one.

        Prefix matches win; otherwise the closest names by similarity.
        """
        target = name.upper()
        names = self.get_all_function_names()

        prefixed = [n for n in names if n.startswith(target) or target.startswith(n)]
        if prefixed:
            return prefixed[:limit]

        return difflib.get_close_matches(target, names, n=limit, cutoff=0.6)

    def invoke_function(self, name: str, args: Sequence[Value]) -> Value:
        """Invoke a function after checking arity and argument types.

        Raises:
            ExpressionError: INVALID_FUNCTION, INVALID_ARGUMENT_COUNT,
                TYPE_MISMATCH, an error raised by the implementation, or
                FUNCTION_ERROR wrapping any other exception it raises
        """
        func_def = self.get_function(name)
        if func_def is None:
            raise invalid_function_error(name, self.find_similar_functions(name))

        if not func_def.accepts_count(len(args)):
            raise invalid_argument_count_error(func_def.name, func_def.arity_text, len(args))

        if func_def.propagates_null and any(arg is None for arg in args):
            return None

        for index, arg in enumerate(args):
            expected = func_def.parameter_type(index)
            if not matches_type(arg, expected):
                raise type_mismatch_error(func_def.name, expected, type_name(arg))

        try:
            return func_def.implementation(*args)
        except ExpressionError:
            raise
        except Exception as e:
            raise function_error(func_def.name, e) from e

    def __contains__(self, name: str) -> bool:
        return self.has_function(name)

    def __len__(self) -> int:
        return len(self._functions)
