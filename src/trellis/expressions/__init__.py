"""Expression engine for Trellis computed properties.

This module provides:
- Lexer / tokenize: Tokenizes expression strings
- Parser / parse / try_parse / validate: Produces and checks the AST
- FunctionRegistry: Registry of callable functions, with built-ins
- extract_dependencies / resolve_dependencies: What an expression reads
- Evaluator / evaluate: Computes typed values against entity data
- propagate_staleness / topological_sort: Staleness over the dependency graph
"""

from trellis.expressions.builtins import create_default_registry, default_registry
from trellis.expressions.dependencies import (
    DependencyResolutionContext,
    ExtractedDependency,
    ResolutionContext,
    ResolvedDependency,
    extract_dependencies,
    get_referenced_entity_ids,
    get_used_functions,
    has_collection_traversal,
    parse_with_dependencies,
    resolve_dependencies,
)
from trellis.expressions.errors import ErrorCode, ExpressionError
from trellis.expressions.evaluator import (
    EvaluationContext,
    EvaluationResult,
    Evaluator,
    evaluate,
    evaluate_batch,
    evaluate_simple,
)
from trellis.expressions.functions import (
    FunctionCategory,
    FunctionDefinition,
    FunctionParameter,
    FunctionRegistry,
)
from trellis.expressions.lexer import Lexer, Token, TokenizeResult, TokenType, tokenize
from trellis.expressions.parser import (
    BinaryExpression,
    CallExpression,
    ExpressionNode,
    Identifier,
    Literal,
    ParseResult,
    Parser,
    PathSegment,
    PropertyBase,
    PropertyReference,
    Traversal,
    TraversalKind,
    UnaryExpression,
    parse,
    to_source,
    try_parse,
    validate,
)
from trellis.expressions.staleness import (
    DeferredStaleness,
    PropagationResult,
    SortResult,
    batch_propagate_staleness,
    plan_recomputation,
    propagate_staleness,
    topological_sort,
)

__all__ = [
    # Errors
    "ErrorCode",
    "ExpressionError",
    # Lexer
    "Lexer",
    "Token",
    "TokenizeResult",
    "TokenType",
    "tokenize",
    # Parser
    "BinaryExpression",
    "CallExpression",
    "ExpressionNode",
    "Identifier",
    "Literal",
    "ParseResult",
    "Parser",
    "PathSegment",
    "PropertyBase",
    "PropertyReference",
    "Traversal",
    "TraversalKind",
    "UnaryExpression",
    "parse",
    "to_source",
    "try_parse",
    "validate",
    # Functions
    "FunctionCategory",
    "FunctionDefinition",
    "FunctionParameter",
    "FunctionRegistry",
    "create_default_registry",
    "default_registry",
    # Dependencies
    "DependencyResolutionContext",
    "ExtractedDependency",
    "ResolutionContext",
    "ResolvedDependency",
    "extract_dependencies",
    "get_referenced_entity_ids",
    "get_used_functions",
    "has_collection_traversal",
    "parse_with_dependencies",
    "resolve_dependencies",
    # Evaluator
    "EvaluationContext",
    "EvaluationResult",
    "Evaluator",
    "evaluate",
    "evaluate_batch",
    "evaluate_simple",
    # Staleness
    "DeferredStaleness",
    "PropagationResult",
    "SortResult",
    "batch_propagate_staleness",
    "plan_recomputation",
    "propagate_staleness",
    "topological_sort",
]
