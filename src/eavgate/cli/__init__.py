"""
eavgate CLI Package.

- schema.py: schema inspection commands
- objects.py: validate / apply / get / delete / logs commands
"""

from __future__ import annotations

import platform

import typer

from eavgate._version import get_version
from eavgate.cli import objects
from eavgate.cli.schema import schema_app

app = typer.Typer(
    help="eavgate - schema-driven object gateway",
    no_args_is_help=True,
)
app.add_typer(schema_app, name="schema")
app.command(name="validate")(objects.validate)
app.command(name="apply")(objects.apply)
app.command(name="get")(objects.get)
app.command(name="delete")(objects.delete)
app.command(name="logs")(objects.logs)


def version_callback(value: bool) -> None:
    """Display version and environment information."""
    if value:
        typer.echo(f"eavgate {get_version()}")
        typer.echo(f"Python {platform.python_version()} ({platform.python_implementation()})")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """eavgate - schema-driven object gateway."""


def main() -> None:
    app()


__all__ = ["app", "main", "version_callback"]
