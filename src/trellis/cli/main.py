"""Trellis CLI entry point."""

import click

from trellis.config import EngineConfig, configure_logging


@click.group()
@click.pass_context
def cli(ctx: click.Context):
    """Trellis — computed-property expression engine CLI."""
    try:
        config = EngineConfig.from_env()
    except ValueError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        raise SystemExit(1)
    configure_logging(config.log_level)
    ctx.obj = config


# Register subcommand groups
from trellis.cli.expr_cmd import expr, functions  # noqa: E402
from trellis.cli.model_cmd import model  # noqa: E402

cli.add_command(expr)
cli.add_command(functions)
cli.add_command(model)
