"""Model CLI commands — check, order, propagate, compute."""

import asyncio
from pathlib import Path

import click

from trellis.cli.expr_cmd import describe_value, report_error
from trellis.core.types import PropertyKey
from trellis.expressions.staleness import batch_propagate_staleness
from trellis.model.loader import ModelError, ModelLoader
from trellis.model.model import Model


def _load(path: Path, config) -> Model:
    """Load a model and index its dependencies, exiting on errors."""
    try:
        model = ModelLoader(path, config=config).load()
    except ModelError as e:
        for issue in e.issues:
            click.echo(click.style(str(issue), fg="red"), err=True)
        click.echo(
            click.style(f"\n{len(e.issues)} model error(s) found", fg="red", bold=True),
            err=True,
        )
        raise SystemExit(1)

    asyncio.run(model.build_dependency_index())
    return model


def _parse_key(text: str) -> PropertyKey:
    entity_id, sep, property_name = text.rpartition(".")
    if not sep or not entity_id or not property_name:
        raise click.BadParameter(f"expected ENTITY.PROPERTY, got '{text}'")
    return PropertyKey(entity_id, property_name)


model_path = click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))


@click.group()
def model():
    """Model commands."""
    pass


@model.command()
@model_path
@click.pass_obj
def check(config, path: Path):
    """Validate a model file and every expression in it."""
    loaded = _load(path, config)

    entities = list(loaded.store)
    click.echo(f"Loaded {len(entities)} entities (tenant: {loaded.tenant_id}):")
    for entity in sorted(entities, key=lambda e: e.id):
        computed = sum(1 for key in loaded.expressions if key.entity_id == entity.id)
        click.echo(
            f"  ✓ {entity.id} ({entity.type}, {len(entity.properties)} properties, "
            f"{computed} computed)"
        )

    order = loaded.recomputation_order()
    if not order.ok:
        report_error(order.error)
        raise SystemExit(1)

    click.echo(click.style("\nModel is valid.", fg="green", bold=True))


@model.command()
@model_path
@click.pass_obj
def order(config, path: Path):
    """Print the order in which computed properties are recomputed."""
    loaded = _load(path, config)

    result = loaded.recomputation_order()
    if not result.ok:
        report_error(result.error)
        raise SystemExit(1)

    computed = [key for key in result.order if key in loaded.expressions]
    if not computed:
        click.echo("No computed properties.")
        return

    for index, key in enumerate(computed, start=1):
        click.echo(f"  {index}. {key}")


@model.command()
@model_path
@click.argument("changes", nargs=-1, required=True)
@click.pass_obj
def propagate(config, path: Path, changes: tuple[str, ...]):
    """Simulate changes to ENTITY.PROPERTY and list the stale events emitted."""
    loaded = _load(path, config)

    keys = [_parse_key(change) for change in changes]
    for key in keys:
        entity = loaded.store.get_entity(key.entity_id)
        if entity is None or entity.get_property(key.property_name) is None:
            click.echo(click.style(f"Error: Unknown property {key}", fg="red"), err=True)
            raise SystemExit(1)

    result = asyncio.run(
        batch_propagate_staleness(
            loaded.tenant_id,
            keys,
            loaded.staleness,
            loaded.emitter,
            max_depth=config.max_propagation_depth,
        )
    )

    if not result.events:
        click.echo("No dependents; nothing became stale.")
    else:
        click.echo(f"{len(result.events)} propert{'y' if len(result.events) == 1 else 'ies'} marked stale:")
        for event in result.events:
            click.echo(f"  ~ {event.key}  (caused by {event.source})")

    if not result.ok:
        report_error(result.error)
        raise SystemExit(1)


@model.command()
@model_path
@click.pass_obj
def compute(config, path: Path):
    """Compute every computed property in dependency order."""
    loaded = _load(path, config)

    report = loaded.recompute_all()
    if report.error is not None:
        report_error(report.error)
        raise SystemExit(1)

    for key, result in report.results.items():
        if result.ok:
            click.echo(f"  {key} = {describe_value(result.value)}")
        else:
            source = loaded.entity(key.entity_id).properties[key.property_name].expression
            click.echo(click.style(f"  {key}: error", fg="red"), err=True)
            report_error(result.error, source)

    if report.failed:
        click.echo(
            click.style(f"\n{len(report.failed)} computation(s) failed", fg="red", bold=True),
            err=True,
        )
        raise SystemExit(1)

    click.echo(click.style(f"\nComputed {len(report.results)} properties.", fg="green"))
