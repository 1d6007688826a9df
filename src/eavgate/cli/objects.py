"""
Object commands for the eavgate CLI.

- validate: dry-run a payload against a schema (nothing stored or sent)
- apply: create or update an object, synchronizing it to its source
- get: render a stored object
- delete: delete a stored object
- logs: show recent gateway log entries
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from eavgate.cli.schema import load_registry
from eavgate.core.errors import GatewayError
from eavgate.core.manifest import GatewayManifest, load_manifest
from eavgate_back.runtime.gateway import create_gateway
from eavgate_back.runtime.logging import get_log_file, get_recent_logs, setup_logging
from eavgate_back.runtime.mutation_service import MutationResult, RequestContext
from eavgate_back.runtime.object_graph import ObjectArena, ObjectEntity
from eavgate_back.runtime.validator import Validator

console = Console()

_MANIFEST_OPTION = typer.Option(
    Path("gateway.toml"), "--manifest", "-m", help="Gateway manifest (default: ./gateway.toml)"
)


def _read_payload(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        typer.echo(f"Could not read payload {path}: {e}", err=True)
        raise typer.Exit(code=1)


def _load_manifest(path: Path) -> GatewayManifest:
    if not path.exists():
        typer.echo(f"No manifest found at {path}", err=True)
        raise typer.Exit(code=1)
    manifest = load_manifest(path)
    setup_logging(
        manifest.logging.log_dir,
        manifest.logging.level,
        jsonl=manifest.logging.jsonl,
    )
    return manifest


def _print_errors(errors: dict[str, list[Any]]) -> None:
    table = Table(title="Validation errors")
    table.add_column("Attribute", style="cyan")
    table.add_column("Message", style="red")
    for name, messages in errors.items():
        for message in messages:
            text = message if isinstance(message, str) else json.dumps(message)
            table.add_row(name, text)
    console.print(table)


def _print_result(result: MutationResult) -> None:
    if result.result is not None:
        console.print_json(data=result.result)
    if result.is_error:
        raise typer.Exit(code=1)


async def _with_gateway(manifest: GatewayManifest, action: Any) -> MutationResult:
    gateway = create_gateway(manifest)
    try:
        result: MutationResult = await action(gateway.service)
        return result
    finally:
        await gateway.close()


def validate(
    entity: str = typer.Argument(..., help="Entity name or route"),
    payload_file: Path = typer.Argument(..., help="JSON payload file"),  # noqa: B008
    schema_dir: Path = typer.Option(  # noqa: B008
        Path("schemas"), "--schemas", "-s", help="Directory of *.json schema definitions"
    ),
) -> None:
    """Validate a payload against a schema without storing or sending it."""
    registry = load_registry(schema_dir)
    payload = _read_payload(payload_file)
    if not isinstance(payload, dict):
        typer.echo("The payload must be a JSON object", err=True)
        raise typer.Exit(code=1)

    try:
        spec = registry.get_entity(entity)
    except GatewayError as e:
        typer.echo(e.message, err=True)
        raise typer.Exit(code=1)

    arena = ObjectArena()
    index = arena.add(ObjectEntity(entity=spec.name))
    obj = Validator(registry).validate(arena, index, payload)
    if obj.has_errors:
        _print_errors(obj.errors)
        raise typer.Exit(code=1)
    console.print(f"[green]Payload is a valid {spec.name}[/green]")


def apply(
    entity: str = typer.Argument(..., help="Entity name or route"),
    payload_file: Path = typer.Argument(..., help="JSON payload file"),  # noqa: B008
    object_id: str | None = typer.Option(None, "--id", help="Update this object instead of creating one"),
    organization: str | None = typer.Option(None, "--organization", help="Active organization"),
    fields: str | None = typer.Option(None, "--fields", help="Fields to render, e.g. name,address.street"),
    manifest_path: Path = _MANIFEST_OPTION,
) -> None:
    """Create or update an object and synchronize it to its source."""
    manifest = _load_manifest(manifest_path)
    payload = _read_payload(payload_file)
    context = RequestContext(organization=organization)
    result = asyncio.run(
        _with_gateway(
            manifest,
            lambda service: service.handle_mutation(entity, object_id, payload, context, fields),
        )
    )
    _print_result(result)


def get(
    entity: str = typer.Argument(..., help="Entity name or route"),
    object_id: str = typer.Argument(..., help="Object id or external id"),
    fields: str | None = typer.Option(None, "--fields", help="Fields to render, e.g. name,address.street"),
    manifest_path: Path = _MANIFEST_OPTION,
) -> None:
    """Render a stored object."""
    manifest = _load_manifest(manifest_path)
    result = asyncio.run(
        _with_gateway(manifest, lambda service: service.handle_get(entity, object_id, fields))
    )
    _print_result(result)


def delete(
    entity: str = typer.Argument(..., help="Entity name or route"),
    object_id: str = typer.Argument(..., help="Object id or external id"),
    manifest_path: Path = _MANIFEST_OPTION,
) -> None:
    """Delete a stored object (cascading where the schema says so)."""
    manifest = _load_manifest(manifest_path)
    result = asyncio.run(
        _with_gateway(manifest, lambda service: service.handle_delete(entity, object_id))
    )
    _print_result(result)
    if not result.is_error:
        console.print(f"[green]Deleted {entity} {object_id}[/green]")


def logs(
    count: int = typer.Option(20, "--count", "-n", help="Number of entries to show"),
    level: str | None = typer.Option(None, "--level", "-l", help="Only this level, e.g. WARNING"),
    manifest_path: Path = _MANIFEST_OPTION,
) -> None:
    """Show recent entries of the gateway log."""
    manifest = _load_manifest(manifest_path)
    entries = get_recent_logs(count=count, level=level)
    if not entries:
        console.print("[dim]No log entries[/dim]")
        return

    table = Table(title=str(get_log_file()))
    table.add_column("Time", style="dim")
    table.add_column("Level")
    table.add_column("Component", style="cyan")
    table.add_column("Message")
    for entry in entries:
        table.add_row(
            entry.get("timestamp", "")[11:19],
            entry.get("level", ""),
            entry.get("component", ""),
            entry.get("message", ""),
        )
    console.print(table)
    if not manifest.logging.jsonl:
        console.print("[yellow]JSONL logging is off for this gateway[/yellow]")
