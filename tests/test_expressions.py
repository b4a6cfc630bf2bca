"""Tests for the Trellis expression language front end.

Tests cover:
- Lexer: Tokenization of expression strings and lexical errors
- Parser: AST generation, precedence and syntax errors
- Serialization: to_source canonical form and round trip
- Validation: function checks and collection rules
"""

import pytest

from trellis.core.types import ValueType
from trellis.expressions import (
    BinaryExpression,
    CallExpression,
    ErrorCode,
    ExpressionError,
    Identifier,
    Lexer,
    Literal,
    Parser,
    PathSegment,
    PropertyBase,
    PropertyReference,
    Token,
    TokenType,
    Traversal,
    UnaryExpression,
    create_default_registry,
    parse,
    to_source,
    tokenize,
    try_parse,
    validate,
)

UUID = "550e8400-e29b-41d4-a716-446655440000"


# =============================================================================
# Lexer Tests
# =============================================================================


class TestLexer:
    """Tests for the expression lexer."""

    def test_tokenize_numbers(self):
        tokens = Lexer("42 3.14 0 1e3").tokenize()

        assert tokens[0] == Token(TokenType.NUMBER, 42, "42", 0)
        assert tokens[1] == Token(TokenType.NUMBER, 3.14, "3.14", 3)
        assert tokens[2] == Token(TokenType.NUMBER, 0, "0", 8)
        assert tokens[3] == Token(TokenType.NUMBER, 1000.0, "1e3", 10)
        assert isinstance(tokens[0].value, int)
        assert isinstance(tokens[3].value, float)

    def test_tokenize_strings(self):
        tokens = Lexer('"hello" \'world\'').tokenize()

        assert tokens[0].type == TokenType.STRING
        assert tokens[0].value == "hello"
        assert tokens[0].text == '"hello"'
        assert tokens[1].value == "world"

    def test_tokenize_string_escapes(self):
        tokens = Lexer(r'"a\nb" "tab\there" "q\"uote" "back\\slash"').tokenize()

        assert tokens[0].value == "a\nb"
        assert tokens[1].value == "tab\there"
        assert tokens[2].value == 'q"uote'
        assert tokens[3].value == "back\\slash"

    def test_tokenize_keywords_case_insensitive(self):
        tokens = Lexer("true FALSE Null").tokenize()

        assert tokens[0] == Token(TokenType.BOOLEAN, True, "true", 0)
        assert tokens[1] == Token(TokenType.BOOLEAN, False, "FALSE", 5)
        assert tokens[2].type == TokenType.NULL
        assert tokens[2].value is None

    def test_tokenize_references(self):
        tokens = Lexer(f"@self #price @{{{UUID.upper()}}} @{UUID}").tokenize()

        assert tokens[0] == Token(TokenType.SELF, "self", "@self", 0)
        assert tokens[1].type == TokenType.HASH
        assert tokens[2].type == TokenType.IDENTIFIER
        assert tokens[3].type == TokenType.ENTITY_REF
        assert tokens[3].value == UUID
        assert tokens[4].type == TokenType.ENTITY_REF
        assert tokens[4].value == UUID

    def test_tokenize_operators(self):
        tokens = Lexer("== != < <= > >= && || ! + - * / %").tokenize()

        assert [t.type for t in tokens[:-1]] == [
            TokenType.EQ,
            TokenType.NEQ,
            TokenType.LT,
            TokenType.LTE,
            TokenType.GT,
            TokenType.GTE,
            TokenType.AND,
            TokenType.OR,
            TokenType.NOT,
            TokenType.PLUS,
            TokenType.MINUS,
            TokenType.MULTIPLY,
            TokenType.DIVIDE,
            TokenType.MODULO,
        ]

    def test_tokenize_collection_marker(self):
        tokens = Lexer("items[*].price items[0]").tokenize()

        assert [t.type for t in tokens[:-1]] == [
            TokenType.IDENTIFIER,
            TokenType.STAR_BRACKET,
            TokenType.DOT,
            TokenType.IDENTIFIER,
            TokenType.IDENTIFIER,
            TokenType.LBRACKET,
            TokenType.NUMBER,
            TokenType.RBRACKET,
        ]

    def test_ends_with_eof(self):
        tokens = Lexer("  1  ").tokenize()

        assert tokens[-1].type == TokenType.EOF
        assert tokens[-1].position == 5

    def test_token_end(self):
        token = Lexer("  hello").next_token()

        assert token.position == 2
        assert token.end == 7


class TestLexerErrors:
    """Lexical errors carry a code and the offending position."""

    def test_unterminated_string(self):
        result = tokenize('1 + "abc')

        assert not result.ok
        assert result.error.code == ErrorCode.UNTERMINATED_STRING
        assert result.error.position == 4

    def test_integer_literal_too_long(self):
        result = tokenize("9" * 5000)

        assert result.error.code == ErrorCode.INVALID_NUMBER
        assert result.error.position == 0

    def test_invalid_escape(self):
        result = tokenize(r'"a\qb"')

        assert result.error.code == ErrorCode.INVALID_ESCAPE
        assert result.error.position == 2

    @pytest.mark.parametrize("source,text", [("12abc", "12abc"), ("1.", "1."), ("1.2.3", "1.2.3")])
    def test_invalid_number(self, source, text):
        result = tokenize(source)

        assert result.error.code == ErrorCode.INVALID_NUMBER
        assert result.error.message == f"Invalid number '{text}'"
        assert result.error.position == 0

    def test_unknown_character(self):
        result = tokenize("1 $ 2")

        assert result.error.code == ErrorCode.UNEXPECTED_TOKEN
        assert result.error.position == 2

    @pytest.mark.parametrize("source", ["@{not-a-uuid}.x", "@product.price", "@{" + UUID])
    def test_invalid_uuid(self, source):
        result = tokenize(source)

        assert result.error.code == ErrorCode.INVALID_UUID
        assert result.error.position == 0

    def test_lexer_raises(self):
        with pytest.raises(ExpressionError) as exc_info:
            Lexer('"open').tokenize()

        assert exc_info.value.code == ErrorCode.UNTERMINATED_STRING


# =============================================================================
# Parser Tests
# =============================================================================


class TestParser:
    """Tests for the expression parser."""

    def test_parse_scenario_price_times_factor(self):
        result = parse("#price * 1.1")

        assert result.ok
        assert result.ast == BinaryExpression(
            "*", Identifier("price"), Literal(1.1, ValueType.NUMBER)
        )

    def test_parse_literals(self):
        assert parse("42").ast == Literal(42, ValueType.NUMBER)
        assert parse('"hi"').ast == Literal("hi", ValueType.TEXT)
        assert parse("true").ast == Literal(True, ValueType.BOOLEAN)
        assert parse("null").ast == Literal(None, None)

    def test_parse_bare_identifier(self):
        assert parse("status").ast == Identifier("status")

    def test_multiplication_binds_tighter(self):
        ast = parse("1 + 2 * 3").ast

        assert ast == BinaryExpression(
            "+",
            Literal(1, ValueType.NUMBER),
            BinaryExpression("*", Literal(2, ValueType.NUMBER), Literal(3, ValueType.NUMBER)),
        )

    def test_left_associative(self):
        ast = parse("10 - 4 - 3").ast

        assert ast.operator == "-"
        assert ast.left == BinaryExpression(
            "-", Literal(10, ValueType.NUMBER), Literal(4, ValueType.NUMBER)
        )
        assert ast.right == Literal(3, ValueType.NUMBER)

    def test_logical_precedence(self):
        ast = parse("#a || #b && !#c").ast

        assert ast.operator == "||"
        assert ast.right == BinaryExpression(
            "&&", Identifier("b"), UnaryExpression("!", Identifier("c"))
        )

    def test_comparison_below_arithmetic(self):
        ast = parse("#a + 1 > #b == true").ast

        assert ast.operator == "=="
        assert ast.left.operator == ">"
        assert ast.left.left.operator == "+"

    def test_grouping(self):
        ast = parse("(1 + 2) * 3").ast

        assert ast.operator == "*"
        assert ast.left.operator == "+"

    def test_self_reference_path(self):
        ast = parse("@self.customer.name").ast

        assert ast == PropertyReference(
            PropertyBase(), (PathSegment("customer"), PathSegment("name"))
        )
        assert ast.base.is_self
        assert ast.property_name == "name"
        assert not ast.is_collection

    def test_collection_and_index_traversal(self):
        ast = parse("@self.items[*].price").ast
        indexed = parse("@self.lines[2].amount").ast

        assert ast.path[0] == PathSegment("items", Traversal.every())
        assert ast.is_collection
        assert indexed.path[0] == PathSegment("lines", Traversal.at(2))
        assert not indexed.is_collection

    def test_entity_reference_is_lowercased(self):
        ast = parse(f"@{{{UUID.upper()}}}.price").ast

        assert ast.base == PropertyBase(UUID)
        assert str(ast.base) == f"@{{{UUID}}}"

    def test_function_call(self):
        ast = parse("SUM(@self.items[*].price)").ast

        assert isinstance(ast, CallExpression)
        assert ast.callee == "SUM"
        assert len(ast.arguments) == 1

    def test_function_call_without_arguments(self):
        assert parse("NOW()").ast == CallExpression("NOW", ())

    def test_node_positions(self):
        ast = parse("#price * 1.1").ast

        assert (ast.start, ast.end) == (0, 12)
        assert (ast.left.start, ast.left.end) == (0, 6)
        assert (ast.right.start, ast.right.end) == (9, 12)

    def test_parse_results_are_cached(self):
        assert parse("1 + 1") is parse("1 + 1")

    def test_try_parse(self):
        assert try_parse("1 +") is None
        assert try_parse("1") == Literal(1, ValueType.NUMBER)

    def test_parser_class_raises(self):
        with pytest.raises(ExpressionError):
            Parser("(1").parse()


class TestParserErrors:
    """Syntax errors are returned, never raised, by parse()."""

    def test_empty_expression(self):
        result = parse("   ")

        assert not result.ok
        assert result.error.code == ErrorCode.UNEXPECTED_END

    def test_missing_operand(self):
        result = parse("1 +")

        assert result.error.code == ErrorCode.UNEXPECTED_END
        assert result.error.position == 3
        assert result.error.message == "Unexpected end of expression, expected expression"

    def test_unclosed_group(self):
        result = parse("(1 + 2")

        assert result.error.code == ErrorCode.UNEXPECTED_END
        assert "')'" in result.error.message

    def test_trailing_token(self):
        result = parse("1 2")

        assert result.error.code == ErrorCode.UNEXPECTED_TOKEN
        assert result.error.message == "Expected end of expression, got '2'"
        assert result.error.position == 2

    def test_reference_without_property(self):
        result = parse("@self + 1")

        assert result.error.code == ErrorCode.PARSE_ERROR
        assert result.error.position == 0

    def test_lowercase_function_name(self):
        result = parse("sum(1)")

        assert result.error.code == ErrorCode.PARSE_ERROR
        assert result.error.suggestions == ["SUM"]

    def test_fractional_index(self):
        result = parse("@self.items[1.5].price")

        assert result.error.code == ErrorCode.INVALID_NUMBER

    @pytest.mark.parametrize(
        "source",
        [
            "-" * 3000 + "1",
            "(" * 1500 + "1" + ")" * 1500,
            "ABS(" * 500 + "1" + ")" * 500,
            " + ".join(["1"] * 500),
        ],
    )
    def test_deep_nesting_is_rejected(self, source):
        result = parse(source)

        assert not result.ok
        assert result.error.code == ErrorCode.MAX_DEPTH_EXCEEDED
        assert result.error.message.startswith("Expression nesting exceeded maximum depth")

    def test_nesting_error_points_at_group(self):
        result = parse("(" * 40 + "1" + ")" * 40)

        assert result.error.message == "Expression nesting exceeded maximum depth of 32"
        assert result.error.position == 32

    def test_nesting_within_limit(self):
        assert parse("(" * 30 + "#a" + ")" * 30).ast == Identifier("a")
        assert to_source(parse("-" * 50 + "1").ast) == "-" * 50 + "1"

    def test_deep_expression_fails_validation(self):
        valid, errors = validate("-" * 3000 + "1")

        assert not valid
        assert errors[0].code == ErrorCode.MAX_DEPTH_EXCEEDED

    def test_format_with_source(self):
        error = parse("1 abc").error
        text = error.format_with_source("1 abc")

        assert text.startswith("UNEXPECTED_TOKEN: Expected end of expression, got 'abc'")
        assert "\n  1 abc\n" in text
        assert text.endswith("    ^~~")

    def test_error_to_dict(self):
        data = parse("1 +").error.to_dict()

        assert data["code"] == "UNEXPECTED_END"
        assert data["position"] == 3
        assert data["suggestions"] == []


# =============================================================================
# Serialization Tests
# =============================================================================


class TestToSource:
    """Canonical serialization of an AST."""

    @pytest.mark.parametrize(
        "source,expected",
        [
            ("(1 + 2) * 3", "(1 + 2) * 3"),
            ("1 + (2 * 3)", "1 + 2 * 3"),
            ("#a - (#b - #c)", "#a - (#b - #c)"),
            ("(#a - #b) - #c", "#a - #b - #c"),
            ("price", "#price"),
            ("!(#a && #b)", "!(#a && #b)"),
            ("-(1 + 2)", "-(1 + 2)"),
            ("IF(#a > 1, 'x', null)", 'IF(#a > 1, "x", null)'),
            ("@self.items[*].price", "@self.items[*].price"),
            (f"@{UUID}.price", f"@{{{UUID}}}.price"),
        ],
    )
    def test_canonical_form(self, source, expected):
        assert to_source(parse(source).ast) == expected

    def test_string_escapes(self):
        ast = parse(r'"say \"hi\"\n"').ast

        assert to_source(ast) == r'"say \"hi\"\n"'

    @pytest.mark.parametrize(
        "source",
        [
            "#price * 1.1",
            "SUM(@self.items[*].price) / COUNT(@self.items[*].price)",
            "IF(#active && !IS_NULL(#due), DATE_DIFF(NOW(), #due, 'days'), 0)",
            "#a % 3 == 1 || #b <= -2.5",
            "CONCAT(UPPER(#first), ' ', #last)",
            "@self.lines[0].amount >= 1e3",
            "((#a))",
        ],
    )
    def test_round_trip(self, source):
        ast = parse(source).ast

        assert parse(to_source(ast)).ast == ast


# =============================================================================
# Validation Tests
# =============================================================================


class TestValidate:
    """Static checks beyond syntax."""

    @pytest.fixture
    def registry(self):
        return create_default_registry()

    def test_valid_expression(self, registry):
        assert validate("SUM(@self.items[*].price) * 2", registry) == (True, [])

    def test_collection_outside_aggregation(self, registry):
        valid, errors = validate("@self.items[*].price + 1", registry)

        assert not valid
        assert errors[0].code == ErrorCode.COLLECTION_WITHOUT_AGGREGATION
        assert "SUM(@self.items[*].price)" in errors[0].message
        assert errors[0].position == 0

    def test_collection_in_non_list_parameter(self, registry):
        valid, errors = validate("UPPER(@self.items[*].name)", registry)

        assert not valid
        assert errors[0].code == ErrorCode.COLLECTION_WITHOUT_AGGREGATION

    def test_unknown_function_suggests(self, registry):
        valid, errors = validate("SUMM(1)", registry)

        assert not valid
        assert errors[0].code == ErrorCode.INVALID_FUNCTION
        assert errors[0].suggestions == ["SUM"]

    def test_argument_count(self, registry):
        valid, errors = validate("ROUND()", registry)

        assert errors[0].code == ErrorCode.INVALID_ARGUMENT_COUNT
        assert errors[0].message == "Function ROUND requires 1-2 arguments, got 0"

    def test_reports_every_error(self, registry):
        valid, errors = validate("FOO(1) + ROUND()", registry)

        assert [e.code for e in errors] == [
            ErrorCode.INVALID_FUNCTION,
            ErrorCode.INVALID_ARGUMENT_COUNT,
        ]

    def test_syntax_error(self, registry):
        valid, errors = validate("1 +", registry)

        assert not valid
        assert errors[0].code == ErrorCode.UNEXPECTED_END

    def test_uses_default_registry(self):
        assert validate("UPPER('a')")[0]
