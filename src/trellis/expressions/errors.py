"""Structured errors for the expression engine.

Every failure the engine can report is an ExpressionError with a stable
code. Internally errors are raised; the public entry points catch them and
return them inside result values.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes."""

    # Lexical / syntax
    PARSE_ERROR = "PARSE_ERROR"
    UNEXPECTED_TOKEN = "UNEXPECTED_TOKEN"
    UNEXPECTED_END = "UNEXPECTED_END"
    INVALID_NUMBER = "INVALID_NUMBER"
    UNTERMINATED_STRING = "UNTERMINATED_STRING"
    INVALID_ESCAPE = "INVALID_ESCAPE"

    # Resolution
    PROPERTY_NOT_FOUND = "PROPERTY_NOT_FOUND"
    ENTITY_NOT_FOUND = "ENTITY_NOT_FOUND"
    RELATIONSHIP_NOT_FOUND = "RELATIONSHIP_NOT_FOUND"

    # Evaluation
    TYPE_MISMATCH = "TYPE_MISMATCH"
    DIVISION_BY_ZERO = "DIVISION_BY_ZERO"
    VALUE_OUT_OF_RANGE = "VALUE_OUT_OF_RANGE"
    INDEX_OUT_OF_BOUNDS = "INDEX_OUT_OF_BOUNDS"
    COLLECTION_WITHOUT_AGGREGATION = "COLLECTION_WITHOUT_AGGREGATION"

    # Functions
    INVALID_FUNCTION = "INVALID_FUNCTION"
    INVALID_ARGUMENT_COUNT = "INVALID_ARGUMENT_COUNT"
    FUNCTION_ERROR = "FUNCTION_ERROR"

    # Graph
    CIRCULAR_DEPENDENCY = "CIRCULAR_DEPENDENCY"
    MAX_DEPTH_EXCEEDED = "MAX_DEPTH_EXCEEDED"

    # References
    INVALID_UUID = "INVALID_UUID"


class ExpressionError(Exception):
    """An error raised while lexing, parsing, validating or evaluating.

    Attributes:
        code: Stable error code
        message: Human-readable message
        position: Character offset in the source, if known
        end_position: Offset one past the offending text, if known
        suggestions: "Did you mean" candidates
        chain: Property keys forming a dependency cycle or path
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        position: int | None = None,
        end_position: int | None = None,
        suggestions: list[str] | None = None,
        chain: list[str] | None = None,
    ):
        self.code = code
        self.message = message
        self.position = position
        self.end_position = end_position
        self.suggestions = suggestions or []
        self.chain = chain or []
        super().__init__(message)

    def __repr__(self) -> str:
        return f"ExpressionError({self.code.value}, {self.message!r}, pos={self.position})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ExpressionError):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    __hash__ = Exception.__hash__

    def with_position(self, position: int, end_position: int | None = None) -> ExpressionError:
        """Attach a source position if the error has none yet."""
        if self.position is None:
            self.position = position
            self.end_position = end_position
        return self

    def format_with_source(self, source: str) -> str:
        """Render the error with a caret under the offending source text."""
        result = f"{self.code.value}: {self.message}"

        if self.position is not None and self.position < len(source):
            result += f"\n\n  {source}"
            result += f"\n  {' ' * self.position}^"
            if self.end_position is not None and self.end_position > self.position:
                result += "~" * max(0, self.end_position - self.position - 1)

        if self.suggestions:
            result += f"\n\nDid you mean: {', '.join(self.suggestions)}?"

        if self.chain:
            result += f"\n\nDependency chain: {' -> '.join(self.chain)}"

        return result

    def to_dict(self) -> dict[str, Any]:
        """Export for API responses."""
        return {
            "code": self.code.value,
            "message": self.message,
            "position": self.position,
            "endPosition": self.end_position,
            "suggestions": list(self.suggestions),
            "chain": list(self.chain),
        }


# -----------------------------------------------------------------------------
# Factories
# -----------------------------------------------------------------------------


def parse_error(message: str, position: int | None = None, **kwargs: Any) -> ExpressionError:
    return ExpressionError(ErrorCode.PARSE_ERROR, message, position, **kwargs)


def unexpected_token_error(
    text: str, position: int, expected: str | None = None
) -> ExpressionError:
    if expected:
        message = f"Expected {expected}, got '{text}'"
    else:
        message = f"Unexpected token '{text}'"
    return ExpressionError(
        ErrorCode.UNEXPECTED_TOKEN, message, position, position + max(len(text), 1)
    )


def unexpected_end_error(position: int, expected: str | None = None) -> ExpressionError:
    message = "Unexpected end of expression"
    if expected:
        message += f", expected {expected}"
    return ExpressionError(ErrorCode.UNEXPECTED_END, message, position)


def invalid_number_error(text: str, position: int) -> ExpressionError:
    return ExpressionError(
        ErrorCode.INVALID_NUMBER,
        f"Invalid number '{text}'",
        position,
        position + len(text),
    )


def unterminated_string_error(position: int) -> ExpressionError:
    return ExpressionError(ErrorCode.UNTERMINATED_STRING, "Unterminated string literal", position)


def invalid_escape_error(sequence: str, position: int) -> ExpressionError:
    return ExpressionError(
        ErrorCode.INVALID_ESCAPE,
        f"Invalid escape sequence '{sequence}'",
        position,
        position + len(sequence),
    )


def invalid_uuid_error(text: str, position: int) -> ExpressionError:
    return ExpressionError(
        ErrorCode.INVALID_UUID,
        f"Invalid entity UUID '{text}'",
        position,
        position + len(text),
    )


def property_not_found_error(
    property_name: str, entity_id: str, suggestions: list[str] | None = None
) -> ExpressionError:
    return ExpressionError(
        ErrorCode.PROPERTY_NOT_FOUND,
        f"Property '{property_name}' not found on entity {entity_id}",
        suggestions=suggestions,
    )


def entity_not_found_error(entity_id: str) -> ExpressionError:
    return ExpressionError(ErrorCode.ENTITY_NOT_FOUND, f"Entity '{entity_id}' not found")


def relationship_not_found_error(relationship: str, entity_id: str) -> ExpressionError:
    return ExpressionError(
        ErrorCode.RELATIONSHIP_NOT_FOUND,
        f"Relationship '{relationship}' not found on entity {entity_id}",
    )


def type_mismatch_error(operation: str, expected: str, got: str) -> ExpressionError:
    return ExpressionError(
        ErrorCode.TYPE_MISMATCH, f"{operation}: expected {expected}, got {got}"
    )


def division_by_zero_error(operator: str = "/") -> ExpressionError:
    label = "Modulo" if operator == "%" else "Division"
    return ExpressionError(ErrorCode.DIVISION_BY_ZERO, f"{label} by zero")


def out_of_range_error(operation: str, detail: object) -> ExpressionError:
    return ExpressionError(
        ErrorCode.VALUE_OUT_OF_RANGE, f"{operation}: result out of range ({detail})"
    )


def index_out_of_bounds_error(index: int, length: int) -> ExpressionError:
    return ExpressionError(
        ErrorCode.INDEX_OUT_OF_BOUNDS,
        f"Index {index} out of bounds for collection of length {length}",
    )


def collection_without_aggregation_error(relationship: str, path: str = "property") -> ExpressionError:
    return ExpressionError(
        ErrorCode.COLLECTION_WITHOUT_AGGREGATION,
        f"Relationship '{relationship}' is to-many. Use [*] with an aggregation "
        f"function: SUM(@self.{relationship}[*].{path})",
    )


def invalid_function_error(name: str, suggestions: list[str] | None = None) -> ExpressionError:
    return ExpressionError(
        ErrorCode.INVALID_FUNCTION, f"Unknown function '{name}'", suggestions=suggestions
    )


def invalid_argument_count_error(name: str, expected: str, got: int) -> ExpressionError:
    return ExpressionError(
        ErrorCode.INVALID_ARGUMENT_COUNT,
        f"Function {name} requires {expected} arguments, got {got}",
    )


def function_error(name: str, detail: object) -> ExpressionError:
    return ExpressionError(ErrorCode.FUNCTION_ERROR, f"Error calling {name}: {detail}")


def circular_dependency_error(chain: list[str]) -> ExpressionError:
    return ExpressionError(
        ErrorCode.CIRCULAR_DEPENDENCY,
        f"Circular dependency detected: {' -> '.join(chain)}",
        chain=chain,
    )


def max_depth_exceeded_error(max_depth: int, what: str = "Expression evaluation") -> ExpressionError:
    return ExpressionError(
        ErrorCode.MAX_DEPTH_EXCEEDED, f"{what} exceeded maximum depth of {max_depth}"
    )
