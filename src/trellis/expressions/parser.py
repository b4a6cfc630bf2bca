"""Parser for the Trellis expression language.

Converts a stream of tokens into an Abstract Syntax Tree (AST).
Uses recursive descent parsing with operator precedence.

Operator Precedence (lowest to highest):
1. ||
2. &&
3. == !=
4. < <= > >=
5. + -
6. * / %
7. ! (not) - (unary)
8. literals, references, function calls, ( )
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Callable, Iterator, Union, assert_never

from trellis.core.types import ValueType
from trellis.expressions.builtins import default_registry
from trellis.expressions.errors import (
    ExpressionError,
    collection_without_aggregation_error,
    invalid_argument_count_error,
    invalid_function_error,
    invalid_number_error,
    max_depth_exceeded_error,
    parse_error,
    unexpected_end_error,
    unexpected_token_error,
)
from trellis.expressions.functions import FunctionRegistry
from trellis.expressions.lexer import Lexer, Token, TokenType


# -----------------------------------------------------------------------------
# AST Node Types
# -----------------------------------------------------------------------------


class TraversalKind(str, Enum):
    INDEX = "index"
    ALL = "all"


@dataclass(frozen=True)
class Traversal:
    """Marker on a path segment: a fixed index or the [*] fan-out."""

    kind: TraversalKind
    index: int | None = None

    @classmethod
    def at(cls, index: int) -> Traversal:
        return cls(TraversalKind.INDEX, index)

    @classmethod
    def every(cls) -> Traversal:
        return cls(TraversalKind.ALL)

    def __str__(self) -> str:
        if self.kind == TraversalKind.ALL:
            return "[*]"
        return f"[{self.index}]"


@dataclass(frozen=True)
class PathSegment:
    """One dot-separated step of a property path (e.g. `items[*]`)."""

    property: str
    traversal: Traversal | None = None

    @property
    def is_collection(self) -> bool:
        return self.traversal is not None and self.traversal.kind == TraversalKind.ALL

    def __str__(self) -> str:
        if self.traversal is None:
            return self.property
        return f"{self.property}{self.traversal}"


@dataclass(frozen=True)
class PropertyBase:
    """Base of a property reference: @self (entity_id None) or an explicit entity."""

    entity_id: str | None = None

    @property
    def is_self(self) -> bool:
        return self.entity_id is None

    def __str__(self) -> str:
        return "@self" if self.entity_id is None else f"@{{{self.entity_id}}}"


# Node positions are excluded from equality so that re-parsed trees compare equal.


@dataclass(frozen=True)
class Literal:
    """A literal value (number, string, boolean, null)."""

    value: int | float | str | bool | None
    value_type: ValueType | None
    start: int = field(default=0, compare=False, repr=False)
    end: int = field(default=0, compare=False, repr=False)


@dataclass(frozen=True)
class Identifier:
    """Shorthand reference to a property of the current entity (#name)."""

    name: str
    start: int = field(default=0, compare=False, repr=False)
    end: int = field(default=0, compare=False, repr=False)


@dataclass(frozen=True)
class PropertyReference:
    """Reference to a property, possibly through relationships (@self.a.b)."""

    base: PropertyBase
    path: tuple[PathSegment, ...]
    start: int = field(default=0, compare=False, repr=False)
    end: int = field(default=0, compare=False, repr=False)

    @property
    def is_collection(self) -> bool:
        return any(segment.is_collection for segment in self.path)

    @property
    def property_name(self) -> str:
        return self.path[-1].property


@dataclass(frozen=True)
class BinaryExpression:
    """Binary operation (e.g., a + b, x == y)."""

    operator: str
    left: ExpressionNode
    right: ExpressionNode
    start: int = field(default=0, compare=False, repr=False)
    end: int = field(default=0, compare=False, repr=False)


@dataclass(frozen=True)
class UnaryExpression:
    """Unary operation (e.g., !x, -y)."""

    operator: str
    operand: ExpressionNode
    start: int = field(default=0, compare=False, repr=False)
    end: int = field(default=0, compare=False, repr=False)


@dataclass(frozen=True)
class CallExpression:
    """Function call (e.g., SUM(@self.items[*].price))."""

    callee: str
    arguments: tuple[ExpressionNode, ...]
    start: int = field(default=0, compare=False, repr=False)
    end: int = field(default=0, compare=False, repr=False)


ExpressionNode = Union[
    Literal,
    Identifier,
    PropertyReference,
    BinaryExpression,
    UnaryExpression,
    CallExpression,
]


def child_nodes(node: ExpressionNode) -> tuple[ExpressionNode, ...]:
    """Direct children of a node, left to right."""
    match node:
        case Literal() | Identifier() | PropertyReference():
            return ()
        case BinaryExpression(left=left, right=right):
            return (left, right)
        case UnaryExpression(operand=operand):
            return (operand,)
        case CallExpression(arguments=arguments):
            return arguments
        case _:
            assert_never(node)


def iter_nodes(node: ExpressionNode) -> Iterator[ExpressionNode]:
    """Yield a node and all of its descendants, depth first, left to right."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(child_nodes(current)))


def node_depth(node: ExpressionNode) -> int:
    """Height of the tree rooted at node; a lone leaf has depth 1."""
    deepest = 0
    stack = [(node, 1)]
    while stack:
        current, depth = stack.pop()
        deepest = max(deepest, depth)
        stack.extend((child, depth + 1) for child in child_nodes(current))
    return deepest


# -----------------------------------------------------------------------------
# Parser
# -----------------------------------------------------------------------------


FUNCTION_NAME = re.compile(r"^[A-Z_][A-Z0-9_]*$")

EQUALITY_OPS = {TokenType.EQ: "==", TokenType.NEQ: "!="}

COMPARISON_OPS = {
    TokenType.LT: "<",
    TokenType.LTE: "<=",
    TokenType.GT: ">",
    TokenType.GTE: ">=",
}

ADDITIVE_OPS = {TokenType.PLUS: "+", TokenType.MINUS: "-"}

MULTIPLICATIVE_OPS = {
    TokenType.MULTIPLY: "*",
    TokenType.DIVIDE: "/",
    TokenType.MODULO: "%",
}

# Parenthesized groups and call arguments each add a level of recursion
MAX_NESTING_DEPTH = 32

# Tallest tree accepted; later passes over the AST recurse per level
MAX_AST_DEPTH = 100


class Parser:
    """Recursive descent parser for the expression language.

    Usage:
        parser = Parser('@self.price * 1.1')
        ast = parser.parse()

    Raises ExpressionError; use the module-level parse() for a result value.
    """

    def __init__(self, source: str):
        self.source = source
        self.lexer = Lexer(source)
        self.tokens = self.lexer.tokenize()
        self.position = 0
        self.nesting = 0

    def parse(self) -> ExpressionNode:
        """Parse the expression and return the AST root."""
        if self._is_at_end():
            raise unexpected_end_error(0, "expression")

        ast = self._parse_or()

        if not self._is_at_end():
            token = self._current()
            raise unexpected_token_error(token.text, token.position, "end of expression")

        if node_depth(ast) > MAX_AST_DEPTH:
            raise max_depth_exceeded_error(MAX_AST_DEPTH, "Expression nesting").with_position(
                ast.start, ast.end
            )

        return ast

    # -------------------------------------------------------------------------
    # Helper methods
    # -------------------------------------------------------------------------

    def _current(self) -> Token:
        """Get current token."""
        if self.position >= len(self.tokens):
            return Token(TokenType.EOF, None, "", len(self.source))
        return self.tokens[self.position]

    def _peek(self, offset: int = 1) -> Token:
        """Peek at a token without consuming it."""
        pos = self.position + offset
        if pos >= len(self.tokens):
            return Token(TokenType.EOF, None, "", len(self.source))
        return self.tokens[pos]

    def _previous(self) -> Token:
        return self.tokens[self.position - 1]

    def _is_at_end(self) -> bool:
        """Check if we've consumed all tokens."""
        return self._current().type == TokenType.EOF

    def _advance(self) -> Token:
        """Consume and return current token."""
        token = self._current()
        self.position += 1
        return token

    def _match(self, *types: TokenType) -> bool:
        """Check if current token matches any of the given types."""
        return self._current().type in types

    def _consume(self, token_type: TokenType, expected: str) -> Token:
        """Consume a token of the expected type, or raise error."""
        token = self._current()
        if token.type == token_type:
            return self._advance()
        if token.type == TokenType.EOF:
            raise unexpected_end_error(token.position, expected)
        raise unexpected_token_error(token.text, token.position, expected)

    def _enter(self, token: Token) -> None:
        """Open one level of grouping, failing past MAX_NESTING_DEPTH."""
        self.nesting += 1
        if self.nesting > MAX_NESTING_DEPTH:
            raise max_depth_exceeded_error(MAX_NESTING_DEPTH, "Expression nesting").with_position(
                token.position, token.end
            )

    # -------------------------------------------------------------------------
    # Parsing methods (in order of precedence, lowest to highest)
    # -------------------------------------------------------------------------

    def _parse_binary(
        self,
        operators: dict[TokenType, str],
        operand: Callable[[], ExpressionNode],
    ) -> ExpressionNode:
        """Parse a left-associative chain of one precedence level."""
        left = operand()

        while self._current().type in operators:
            op = operators[self._advance().type]
            right = operand()
            left = BinaryExpression(op, left, right, left.start, right.end)

        return left

    def _parse_or(self) -> ExpressionNode:
        """Parse OR expression (lowest precedence)."""
        return self._parse_binary({TokenType.OR: "||"}, self._parse_and)

    def _parse_and(self) -> ExpressionNode:
        """Parse AND expression."""
        return self._parse_binary({TokenType.AND: "&&"}, self._parse_equality)

    def _parse_equality(self) -> ExpressionNode:
        """Parse equality expression (==, !=)."""
        return self._parse_binary(EQUALITY_OPS, self._parse_comparison)

    def _parse_comparison(self) -> ExpressionNode:
        """Parse comparison expression (<, <=, >, >=)."""
        return self._parse_binary(COMPARISON_OPS, self._parse_additive)

    def _parse_additive(self) -> ExpressionNode:
        """Parse additive expression (+, -)."""
        return self._parse_binary(ADDITIVE_OPS, self._parse_multiplicative)

    def _parse_multiplicative(self) -> ExpressionNode:
        """Parse multiplicative expression (*, /, %)."""
        return self._parse_binary(MULTIPLICATIVE_OPS, self._parse_unary)

    def _parse_unary(self) -> ExpressionNode:
        """Parse unary expression (!, -), innermost operator applied first."""
        operators: list[Token] = []
        while self._match(TokenType.NOT, TokenType.MINUS):
            operators.append(self._advance())

        node = self._parse_primary()
        for op_token in reversed(operators):
            node = UnaryExpression(op_token.text, node, op_token.position, node.end)
        return node

    def _parse_primary(self) -> ExpressionNode:
        """Parse primary expression (literals, references, calls, groups)."""
        token = self._current()

        # Literals
        if token.type == TokenType.NUMBER:
            self._advance()
            return Literal(token.value, ValueType.NUMBER, token.position, token.end)

        if token.type == TokenType.STRING:
            self._advance()
            return Literal(token.value, ValueType.TEXT, token.position, token.end)

        if token.type == TokenType.BOOLEAN:
            self._advance()
            return Literal(token.value, ValueType.BOOLEAN, token.position, token.end)

        if token.type == TokenType.NULL:
            self._advance()
            return Literal(None, None, token.position, token.end)

        # #name shorthand
        if token.type == TokenType.HASH:
            self._advance()
            name = self._consume(TokenType.IDENTIFIER, "property name after '#'")
            return Identifier(str(name.value), token.position, name.end)

        # @self.path / @{uuid}.path
        if token.type in (TokenType.SELF, TokenType.ENTITY_REF):
            self._advance()
            base = PropertyBase(None if token.type == TokenType.SELF else str(token.value))
            return self._parse_reference_path(base, token)

        # Function call or bare identifier
        if token.type == TokenType.IDENTIFIER:
            self._advance()
            if self._match(TokenType.LPAREN):
                return self._parse_function_call(token)
            return Identifier(str(token.value), token.position, token.end)

        # Grouped expression
        if token.type == TokenType.LPAREN:
            self._enter(token)
            self._advance()
            expr = self._parse_or()
            self._consume(TokenType.RPAREN, "')'")
            self.nesting -= 1
            return expr

        if token.type == TokenType.EOF:
            raise unexpected_end_error(token.position, "expression")

        raise unexpected_token_error(token.text, token.position, "expression")

    def _parse_reference_path(self, base: PropertyBase, base_token: Token) -> PropertyReference:
        """Parse the `.segment[...]` chain after a reference sigil."""
        segments: list[PathSegment] = []

        if not self._match(TokenType.DOT):
            raise parse_error(
                f"Property reference '{base_token.text}' requires at least one property",
                base_token.position,
                end_position=base_token.end,
            )

        while self._match(TokenType.DOT):
            self._advance()
            name = self._consume(TokenType.IDENTIFIER, "property name")
            segments.append(PathSegment(str(name.value), self._parse_traversal()))

        return PropertyReference(
            base, tuple(segments), base_token.position, self._previous().end
        )

    def _parse_traversal(self) -> Traversal | None:
        """Parse an optional [n] or [*] suffix."""
        if self._match(TokenType.STAR_BRACKET):
            self._advance()
            return Traversal.every()

        if not self._match(TokenType.LBRACKET):
            return None

        self._advance()
        index = self._consume(TokenType.NUMBER, "index")
        if not isinstance(index.value, int):
            raise invalid_number_error(index.text, index.position)
        self._consume(TokenType.RBRACKET, "']'")
        return Traversal.at(index.value)

    def _parse_function_call(self, name_token: Token) -> CallExpression:
        """Parse a function call (arguments in parentheses)."""
        name = str(name_token.value)
        if not FUNCTION_NAME.match(name):
            raise parse_error(
                f"Function names must be uppercase: '{name}'",
                name_token.position,
                end_position=name_token.end,
                suggestions=[name.upper()],
            )

        self._enter(name_token)
        self._consume(TokenType.LPAREN, "'('")

        arguments: list[ExpressionNode] = []

        if not self._match(TokenType.RPAREN):
            arguments.append(self._parse_or())

            while self._match(TokenType.COMMA):
                self._advance()
                arguments.append(self._parse_or())

        close = self._consume(TokenType.RPAREN, "')' after arguments")
        self.nesting -= 1

        return CallExpression(name, tuple(arguments), name_token.position, close.end)


# -----------------------------------------------------------------------------
# Result-returning API
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ParseResult:
    """Outcome of parse(): the AST on success, the error otherwise."""

    ok: bool
    ast: ExpressionNode | None = None
    error: ExpressionError | None = None


@lru_cache(maxsize=1024)
def parse(source: str) -> ParseResult:
    """Parse an expression string.

    Results are cached by source string; ASTs are immutable so sharing
    them is safe.

    Args:
        source: The expression string

    Returns:
        ParseResult with the AST root, or the first lexical/syntax error
    """
    try:
        return ParseResult(ok=True, ast=Parser(source).parse())
    except ExpressionError as e:
        return ParseResult(ok=False, error=e)


def try_parse(source: str) -> ExpressionNode | None:
    """Parse an expression, returning None instead of an error."""
    return parse(source).ast


def validate(
    source: str, registry: FunctionRegistry | None = None
) -> tuple[bool, list[ExpressionError]]:
    """Parse an expression and check it against a function registry.

    Checks, beyond syntax: every called function exists, is called with a
    valid number of arguments, and [*] references appear only as direct
    arguments to aggregating (list-typed) parameters.

    Returns:
        (is_valid, errors)
    """
    result = parse(source)
    if not result.ok:
        return False, [result.error]

    if registry is None:
        registry = default_registry()

    errors: list[ExpressionError] = []
    _check_node(result.ast, registry, errors, aggregated=False)
    return not errors, errors


def _check_node(
    node: ExpressionNode,
    registry: FunctionRegistry,
    errors: list[ExpressionError],
    aggregated: bool,
) -> None:
    match node:
        case Literal() | Identifier():
            pass
        case PropertyReference():
            if node.is_collection and not aggregated:
                relationship = next(s.property for s in node.path if s.is_collection)
                errors.append(
                    collection_without_aggregation_error(
                        relationship, node.property_name
                    ).with_position(node.start, node.end)
                )
        case BinaryExpression(left=left, right=right):
            _check_node(left, registry, errors, aggregated=False)
            _check_node(right, registry, errors, aggregated=False)
        case UnaryExpression(operand=operand):
            _check_node(operand, registry, errors, aggregated=False)
        case CallExpression(callee=callee, arguments=arguments):
            func_def = registry.get_function(callee)
            if func_def is None:
                errors.append(
                    invalid_function_error(
                        callee, registry.find_similar_functions(callee)
                    ).with_position(node.start, node.start + len(callee))
                )
            elif not func_def.accepts_count(len(arguments)):
                errors.append(
                    invalid_argument_count_error(
                        func_def.name, func_def.arity_text, len(arguments)
                    ).with_position(node.start, node.end)
                )
            for index, argument in enumerate(arguments):
                takes_list = (
                    func_def is not None and func_def.parameter_type(index) == "list"
                )
                _check_node(argument, registry, errors, aggregated=takes_list)
        case _:
            assert_never(node)


# -----------------------------------------------------------------------------
# Serialization
# -----------------------------------------------------------------------------


PRECEDENCE = {
    "||": 1,
    "&&": 2,
    "==": 3,
    "!=": 3,
    "<": 4,
    "<=": 4,
    ">": 4,
    ">=": 4,
    "+": 5,
    "-": 5,
    "*": 6,
    "/": 6,
    "%": 6,
}

_STRING_ESCAPES = {"\\": "\\\\", '"': '\\"', "\n": "\\n", "\r": "\\r", "\t": "\\t"}


def _format_literal(node: Literal) -> str:
    value = node.value
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return '"' + "".join(_STRING_ESCAPES.get(c, c) for c in value) + '"'
    return repr(value)


def to_source(node: ExpressionNode) -> str:
    """Serialize an AST back to canonical source.

    Parentheses are emitted only where precedence requires them, and
    parse(to_source(ast)).ast == ast.
    """
    match node:
        case Literal():
            return _format_literal(node)
        case Identifier(name=name):
            return f"#{name}"
        case PropertyReference(base=base, path=path):
            return str(base) + "".join(f".{segment}" for segment in path)
        case BinaryExpression(operator=op, left=left, right=right):
            left_text = to_source(left)
            right_text = to_source(right)
            if isinstance(left, BinaryExpression) and PRECEDENCE[left.operator] < PRECEDENCE[op]:
                left_text = f"({left_text})"
            if isinstance(right, BinaryExpression) and PRECEDENCE[right.operator] <= PRECEDENCE[op]:
                right_text = f"({right_text})"
            return f"{left_text} {op} {right_text}"
        case UnaryExpression(operator=op, operand=operand):
            operand_text = to_source(operand)
            if isinstance(operand, BinaryExpression):
                operand_text = f"({operand_text})"
            return f"{op}{operand_text}"
        case CallExpression(callee=callee, arguments=arguments):
            return f"{callee}({', '.join(to_source(arg) for arg in arguments)})"
        case _:
            assert_never(node)
