"""Expression CLI commands — parse, check, deps, eval, and the function listing."""

import json

import click
import yaml

from trellis.core.types import NumberValue, TextValue, Value, type_name, value_to_dict
from trellis.expressions.builtins import default_registry, to_text
from trellis.expressions.dependencies import get_used_functions, parse_with_dependencies
from trellis.expressions.errors import ExpressionError
from trellis.expressions.evaluator import evaluate_simple
from trellis.expressions.functions import FunctionCategory
from trellis.expressions.lexer import tokenize
from trellis.expressions.parser import parse, to_source, validate


def describe_value(value: Value) -> str:
    """One-line rendering of a runtime value with its type."""
    if value is None:
        return "null"
    if isinstance(value, TextValue):
        text = json.dumps(value.value)
    else:
        text = to_text(value)
    if isinstance(value, NumberValue) and value.unit:
        text += f" {value.unit}"
    return f"{text} ({type_name(value)})"


def report_error(error: ExpressionError, source: str | None = None) -> None:
    """Print an engine error to stderr, with a caret when the source is known."""
    text = error.format_with_source(source) if source is not None else str(error)
    click.echo(click.style(text, fg="red"), err=True)


def _parse_assignments(ctx, param, values):
    """Turn name=value pairs into a dict, reading values as YAML scalars."""
    properties = {}
    for item in values:
        name, sep, raw = item.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected name=value, got '{item}'")
        try:
            properties[name.strip()] = yaml.safe_load(raw) if raw.strip() else None
        except yaml.YAMLError as e:
            raise click.BadParameter(f"cannot read value of '{name}': {e}")
    return properties


@click.group()
def expr():
    """Expression commands."""
    pass


@expr.command("parse")
@click.argument("source")
@click.option("--tokens", is_flag=True, default=False, help="Also print the token stream.")
def parse_cmd(source: str, tokens: bool):
    """Parse an expression and print its canonical form."""
    result = parse(source)
    if not result.ok:
        report_error(result.error, source)
        raise SystemExit(1)

    if tokens:
        for token in tokenize(source).tokens:
            click.echo(f"  {token.position:>4}  {token.type.name:<13} {token.text}")
        click.echo("")

    click.echo(to_source(result.ast))


@expr.command()
@click.argument("source")
def check(source: str):
    """Validate an expression against the built-in functions."""
    valid, errors = validate(source, default_registry())
    if not valid:
        for error in errors:
            report_error(error, source)
        click.echo(
            click.style(f"\n{len(errors)} error(s) found", fg="red", bold=True),
            err=True,
        )
        raise SystemExit(1)

    click.echo(click.style("Expression is valid.", fg="green", bold=True))


@expr.command()
@click.argument("source")
def deps(source: str):
    """List the properties an expression reads."""
    ast, dependencies, error = parse_with_dependencies(source)
    if error is not None:
        report_error(error, source)
        raise SystemExit(1)

    if not dependencies:
        click.echo("No property dependencies.")
    else:
        click.echo(f"{len(dependencies)} dependenc{'y' if len(dependencies) == 1 else 'ies'}:")
        for dependency in dependencies:
            marker = " [collection]" if dependency.is_collection else ""
            click.echo(f"  {dependency.entity_ref}: {dependency.path}{marker}")

    used = get_used_functions(ast)
    if used:
        click.echo(f"Functions: {', '.join(used)}")


@expr.command("eval")
@click.argument("source")
@click.option(
    "--set",
    "properties",
    multiple=True,
    callback=_parse_assignments,
    help="Property of the current entity, as name=value (repeatable).",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the value as JSON.")
def eval_cmd(source: str, properties: dict, as_json: bool):
    """Evaluate an expression against properties given on the command line."""
    try:
        result = evaluate_simple(source, properties, default_registry())
    except TypeError as e:
        raise click.BadParameter(str(e), param_hint="--set")

    if not result.ok:
        report_error(result.error, source)
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(value_to_dict(result.value), indent=2))
    else:
        click.echo(describe_value(result.value))


@click.command()
@click.option(
    "--category",
    type=click.Choice([c.value for c in FunctionCategory]),
    default=None,
    help="Only list functions of this category.",
)
def functions(category: str | None):
    """List the functions callable from expressions."""
    registry = default_registry()
    categories = [FunctionCategory(category)] if category else list(FunctionCategory)

    for cat in categories:
        definitions = registry.list_by_category(cat)
        if not definitions:
            continue
        click.echo(click.style(f"{cat.value.title()}:", bold=True))
        for func_def in definitions:
            params = ", ".join(
                f"{p.name}{'...' if p.variadic else ''}{'' if p.required else '?'}"
                for p in func_def.parameters
            )
            click.echo(f"  {func_def.name}({params}) -> {func_def.return_type}")
            click.echo(f"      {func_def.description}")
        click.echo("")
