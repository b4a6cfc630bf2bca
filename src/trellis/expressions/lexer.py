"""Lexer/tokenizer for the Trellis expression language.

Converts expression strings into a stream of tokens for the parser.

Token types:
- Literals: NUMBER, STRING, BOOLEAN, NULL
- Identifiers: IDENTIFIER (property shorthand, function names)
- References: SELF (@self), ENTITY_REF (@{uuid} or @uuid), HASH (#)
- Operators: comparison, logical, arithmetic
- Punctuation: LPAREN, RPAREN, LBRACKET, RBRACKET, STAR_BRACKET, COMMA, DOT
"""

import re
from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterator

from trellis.expressions.errors import (
    ExpressionError,
    invalid_escape_error,
    invalid_number_error,
    invalid_uuid_error,
    unexpected_token_error,
    unterminated_string_error,
)


class TokenType(Enum):
    """Types of tokens in the expression language."""

    # Literals
    NUMBER = auto()
    STRING = auto()
    BOOLEAN = auto()
    NULL = auto()

    # Identifiers
    IDENTIFIER = auto()

    # References
    SELF = auto()          # @self
    ENTITY_REF = auto()    # @{uuid} or @uuid
    HASH = auto()          # #

    # Comparison operators
    EQ = auto()            # ==
    NEQ = auto()           # !=
    LT = auto()            # <
    LTE = auto()           # <=
    GT = auto()            # >
    GTE = auto()           # >=

    # Logical operators
    AND = auto()           # &&
    OR = auto()            # ||
    NOT = auto()           # !

    # Arithmetic operators
    PLUS = auto()          # +
    MINUS = auto()         # -
    MULTIPLY = auto()      # *
    DIVIDE = auto()        # /
    MODULO = auto()        # %

    # Punctuation
    LPAREN = auto()        # (
    RPAREN = auto()        # )
    LBRACKET = auto()      # [
    RBRACKET = auto()      # ]
    STAR_BRACKET = auto()  # [*]
    COMMA = auto()         # ,
    DOT = auto()           # .

    # End of input
    EOF = auto()


@dataclass(frozen=True)
class Token:
    """A single token from the lexer.

    Attributes:
        type: The token type
        value: Decoded value (number, unescaped string, entity id, name)
        text: The raw source text of the token
        position: Character offset of the first character in the source
    """

    type: TokenType
    value: str | int | float | bool | None
    text: str
    position: int

    @property
    def end(self) -> int:
        return self.position + len(self.text)

    def __repr__(self) -> str:
        return f"Token({self.type.name}, {self.value!r}, pos={self.position})"


@dataclass(frozen=True)
class TokenizeResult:
    """Outcome of tokenize(): tokens on success, error otherwise."""

    ok: bool
    tokens: list[Token]
    error: ExpressionError | None = None


UUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

# Token patterns (order matters - longer matches first)
TOKEN_PATTERNS = [
    # Whitespace (skip)
    (r"\s+", None),

    # Collection marker before plain bracket
    (r"\[\*\]", TokenType.STAR_BRACKET),

    # Multi-character operators (before single character)
    (r"==", TokenType.EQ),
    (r"!=", TokenType.NEQ),
    (r"<=", TokenType.LTE),
    (r">=", TokenType.GTE),
    (r"&&", TokenType.AND),
    (r"\|\|", TokenType.OR),

    # Single character operators
    (r"<", TokenType.LT),
    (r">", TokenType.GT),
    (r"!", TokenType.NOT),
    (r"\+", TokenType.PLUS),
    (r"-", TokenType.MINUS),
    (r"\*", TokenType.MULTIPLY),
    (r"/", TokenType.DIVIDE),
    (r"%", TokenType.MODULO),

    # Punctuation
    (r"\(", TokenType.LPAREN),
    (r"\)", TokenType.RPAREN),
    (r"\[", TokenType.LBRACKET),
    (r"\]", TokenType.RBRACKET),
    (r",", TokenType.COMMA),
    (r"\.", TokenType.DOT),
    (r"#", TokenType.HASH),

    # Numbers (integer, decimal, exponent)
    (r"\d+(?:\.\d+)?(?:[eE][+-]?\d+)?", TokenType.NUMBER),

    # Keywords and identifiers (must come after operators)
    (r"[a-zA-Z_][a-zA-Z0-9_]*", TokenType.IDENTIFIER),
]

# Keywords that map to specific token types (matched case-insensitively)
KEYWORDS = {
    "true": (TokenType.BOOLEAN, True),
    "false": (TokenType.BOOLEAN, False),
    "null": (TokenType.NULL, None),
}

ESCAPES = {
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "\\": "\\",
    '"': '"',
    "'": "'",
}

_IDENT_CHAR = re.compile(r"[a-zA-Z0-9_.]")
_NUMBER_TAIL = re.compile(r"[a-zA-Z0-9_.]*")
_ENTITY_ID_CHARS = re.compile(r"[a-zA-Z0-9_-]*")


class Lexer:
    """Tokenizer for the expression language.

    Usage:
        lexer = Lexer('@self.price * 1.1')
        for token in lexer:
            print(token)

    Raises ExpressionError on malformed input; use tokenize() for a
    result value instead.
    """

    def __init__(self, source: str):
        self.source = source
        self.position = 0
        self._compiled_patterns = [
            (re.compile(pattern), token_type)
            for pattern, token_type in TOKEN_PATTERNS
        ]

    def __iter__(self) -> Iterator[Token]:
        """Iterate over all tokens in the source."""
        while True:
            token = self.next_token()
            yield token
            if token.type == TokenType.EOF:
                break

    def next_token(self) -> Token:
        """Get the next token from the source."""
        self._skip_whitespace()

        if self.position >= len(self.source):
            return Token(TokenType.EOF, None, "", self.position)

        char = self.source[self.position]
        if char in ("'", '"'):
            return self._read_string(char)
        if char == "@":
            return self._read_reference()

        for pattern, token_type in self._compiled_patterns:
            match = pattern.match(self.source, self.position)
            if not match or token_type is None:
                continue

            text = match.group()
            start = self.position
            self.position = match.end()

            if token_type == TokenType.NUMBER:
                return self._number_token(text, start)

            if token_type == TokenType.IDENTIFIER:
                keyword = KEYWORDS.get(text.lower())
                if keyword is not None:
                    keyword_type, keyword_value = keyword
                    return Token(keyword_type, keyword_value, text, start)
                return Token(TokenType.IDENTIFIER, text, text, start)

            return Token(token_type, text, text, start)

        # No pattern matched
        raise unexpected_token_error(char, self.position)

    def tokenize(self) -> list[Token]:
        """Tokenize the entire source and return list of tokens."""
        return list(self)

    # -------------------------------------------------------------------------
    # Scanners
    # -------------------------------------------------------------------------

    def _skip_whitespace(self) -> None:
        while self.position < len(self.source) and self.source[self.position].isspace():
            self.position += 1

    def _number_token(self, text: str, start: int) -> Token:
        # "12abc", "1.", "1e" and "1.2.3" are malformed numbers, not two tokens
        if self.position < len(self.source) and _IDENT_CHAR.match(self.source[self.position]):
            tail = _NUMBER_TAIL.match(self.source, self.position)
            self.position = tail.end()
            raise invalid_number_error(self.source[start:self.position], start)

        value: int | float
        if "." in text or "e" in text or "E" in text:
            value = float(text)
        else:
            try:
                value = int(text)
            except ValueError:
                # Past the interpreter's integer string conversion limit
                raise invalid_number_error(text, start) from None
        return Token(TokenType.NUMBER, value, text, start)

    def _read_string(self, quote: str) -> Token:
        """Scan a quoted string, decoding escape sequences."""
        start = self.position
        i = start + 1
        result = []

        while i < len(self.source):
            char = self.source[i]
            if char == quote:
                self.position = i + 1
                return Token(TokenType.STRING, "".join(result), self.source[start:i + 1], start)
            if char == "\\":
                if i + 1 >= len(self.source):
                    break
                escaped = self.source[i + 1]
                if escaped not in ESCAPES:
                    raise invalid_escape_error(self.source[i:i + 2], i)
                result.append(ESCAPES[escaped])
                i += 2
                continue
            result.append(char)
            i += 1

        raise unterminated_string_error(start)

    def _read_reference(self) -> Token:
        """Scan @self, @{uuid} or a bare @uuid."""
        start = self.position
        rest = self.source[start + 1:]

        if rest.startswith("self") and not (
            len(rest) > 4 and (rest[4].isalnum() or rest[4] == "_")
        ):
            self.position = start + 5
            return Token(TokenType.SELF, "self", "@self", start)

        if rest.startswith("{"):
            close = self.source.find("}", start)
            if close == -1:
                raise invalid_uuid_error(self.source[start:], start)
            entity_id = self.source[start + 2:close]
            if not UUID_PATTERN.match(entity_id):
                raise invalid_uuid_error(entity_id, start)
            self.position = close + 1
            return Token(TokenType.ENTITY_REF, entity_id.lower(), self.source[start:close + 1], start)

        match = _ENTITY_ID_CHARS.match(self.source, start + 1)
        entity_id = match.group()
        if not entity_id:
            raise unexpected_token_error("@", start)
        if not UUID_PATTERN.match(entity_id):
            raise invalid_uuid_error(entity_id, start)
        self.position = match.end()
        return Token(TokenType.ENTITY_REF, entity_id.lower(), "@" + entity_id, start)


def tokenize(source: str) -> TokenizeResult:
    """Tokenize a source string without raising.

    Returns:
        TokenizeResult with the full token stream (ending in EOF), or the
        first lexical error.
    """
    try:
        return TokenizeResult(ok=True, tokens=Lexer(source).tokenize())
    except ExpressionError as e:
        return TokenizeResult(ok=False, tokens=[], error=e)
