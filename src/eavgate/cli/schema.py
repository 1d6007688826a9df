"""
Schema commands for the eavgate CLI.

- schema check: load a schema directory and resolve cross references
- schema show: print the attributes of one entity
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from eavgate.core.errors import SchemaError
from eavgate_back.converters import load_schema_dir
from eavgate_back.runtime.schema_registry import SchemaRegistry

console = Console()

schema_app = typer.Typer(
    help="Inspect and check entity schema definitions",
    no_args_is_help=True,
)


def load_registry(schema_dir: Path) -> SchemaRegistry:
    """Load and resolve every schema in a directory, exiting on errors."""
    if not schema_dir.is_dir():
        typer.echo(f"Schema directory not found: {schema_dir}", err=True)
        raise typer.Exit(code=1)
    try:
        registry = SchemaRegistry(load_schema_dir(schema_dir))
        registry.resolve()
    except SchemaError as e:
        typer.echo(f"Schema error at {e.path}: {e.message}", err=True)
        raise typer.Exit(code=1)
    return registry


@schema_app.command(name="check")
def schema_check(
    schema_dir: Path = typer.Argument(..., help="Directory of *.json schema definitions"),  # noqa: B008
) -> None:
    """Check that all schemas load and reference known entities."""
    registry = load_registry(schema_dir)

    table = Table(title=f"Entities in {schema_dir}")
    table.add_column("Entity", style="cyan")
    table.add_column("Route")
    table.add_column("Attributes", justify="right")
    table.add_column("Source")
    for entity in registry.entities:
        table.add_row(entity.name, entity.route or "", str(len(entity.attributes)), entity.source or "-")
    console.print(table)
    console.print(f"[green]{len(registry)} entity schema(s) OK[/green]")


@schema_app.command(name="show")
def schema_show(
    entity: str = typer.Argument(..., help="Entity name or route"),
    schema_dir: Path = typer.Option(  # noqa: B008
        Path("schemas"), "--schemas", "-s", help="Directory of *.json schema definitions"
    ),
) -> None:
    """Show the attributes of one entity."""
    registry = load_registry(schema_dir)
    try:
        spec = registry.get_entity(entity)
    except SchemaError as e:
        typer.echo(e.message, err=True)
        raise typer.Exit(code=1)

    table = Table(title=spec.name)
    table.add_column("Attribute", style="cyan")
    table.add_column("Type")
    table.add_column("Flags")
    for attribute in spec.attributes:
        flags = [
            flag
            for flag, on in (
                ("required", attribute.required),
                ("nullable", attribute.nullable),
                ("multiple", attribute.multiple),
                ("readOnly", attribute.read_only),
                ("cascadeDelete", attribute.cascade_delete),
            )
            if on
        ]
        type_name = str(attribute.type)
        if attribute.target_entity:
            type_name = f"{type_name} → {attribute.target_entity}"
        elif attribute.format:
            type_name = f"{type_name} ({attribute.format})"
        table.add_row(attribute.name, type_name, ", ".join(flags))
    console.print(table)
