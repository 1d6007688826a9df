"""
Renderer - turns an object graph back into JSON-compatible data.

Rendering is read-only: it never mutates the arena and never schedules
synchronization.

Output key order: mirror data first (with identity keys renamed), then the
local attribute values, then the engine's identity keys.
"""

from __future__ import annotations

from typing import Any

from eavgate_back.runtime.object_graph import ObjectArena, ObjectEntity
from eavgate_back.runtime.schema_registry import SchemaRegistry

# Identity keys a source may return, renamed when merged as mirror data
MIRROR_KEY_RENAMES: dict[str, str] = {
    "id": "@externalId",
    "@id": "@externalUri",
    "@type": "@externalType",
    "@context": "@externalContext",
}

ENGINE_KEYS = ("@id", "@type", "@context", "id")

# Nested fields selection: attribute name -> sub-selection (``True`` = everything)
FieldSelection = dict[str, Any]


def parse_fields(fields: str | list[str] | None) -> FieldSelection | None:
    """
    Parse a field selection like ``"name,address.street"`` into a tree.

    >>> parse_fields("name,address.street")
    {'name': True, 'address': {'street': True}}
    """
    if not fields:
        return None
    items = fields.split(",") if isinstance(fields, str) else fields

    tree: FieldSelection = {}
    for item in items:
        parts = [p for p in item.strip().split(".") if p]
        if not parts:
            continue
        node = tree
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                # ``address`` already selected in full wins over ``address.street``
                if child is True:
                    break
                child = node[part] = {}
            node = child
        else:
            node[parts[-1]] = True
    return tree or None


class Renderer:
    """
    Render objects of an arena.

    Args:
        registry: Schema registry (for attribute order and max depth).
        base_uri: Base of locally generated object URIs.
    """

    def __init__(self, registry: SchemaRegistry, base_uri: str) -> None:
        self._registry = registry
        self._base_uri = base_uri

    def render(
        self,
        arena: ObjectArena,
        index: int,
        fields: FieldSelection | None = None,
        *,
        include_errors: bool = True,
    ) -> dict[str, Any]:
        """Render the object at ``index`` with its nested objects."""
        obj = arena.get(index)
        max_depth = self._registry.get_entity(obj.entity).max_depth
        return self._render(arena, obj, fields, 0, max_depth, (obj.index,), include_errors)

    def _render(
        self,
        arena: ObjectArena,
        obj: ObjectEntity,
        fields: FieldSelection | None,
        depth: int,
        max_depth: int,
        path: tuple[int, ...],
        include_errors: bool,
    ) -> dict[str, Any]:
        entity = self._registry.get_entity(obj.entity)
        result: dict[str, Any] = {}

        if obj.external_result:
            for key, value in obj.external_result.items():
                renamed = MIRROR_KEY_RENAMES.get(key)
                # Identity keys always survive a field selection
                if renamed is None and fields is not None and key not in fields:
                    continue
                result[renamed or key] = value

        for attribute in entity.attributes:
            name = attribute.name
            if fields is not None and name not in fields:
                continue
            value = obj.values.get(name)
            if value is None:
                result[name] = [] if attribute.multiple else None
                continue
            if not attribute.is_object:
                result[name] = value.scalar
                continue

            sub_fields = fields.get(name) if fields is not None else None
            if sub_fields is True:
                sub_fields = None
            rendered = [
                self._render_child(
                    arena, arena.get(ref), sub_fields, depth, max_depth, path, include_errors
                )
                for ref in value.object_refs
            ]
            if attribute.multiple:
                result[name] = rendered
            else:
                result[name] = rendered[0] if rendered else None

        result["@id"] = obj.resolved_uri(self._base_uri)
        result["@type"] = obj.entity
        result["@context"] = f"/contexts/{obj.entity}.jsonld"
        result["id"] = obj.id
        if include_errors and obj.errors:
            result["@errors"] = obj.errors
        return result

    def _render_child(
        self,
        arena: ObjectArena,
        child: ObjectEntity,
        fields: FieldSelection | None,
        depth: int,
        max_depth: int,
        path: tuple[int, ...],
        include_errors: bool,
    ) -> dict[str, Any] | str:
        # Past the depth limit, or back on the current path: reference only
        if depth + 1 > max_depth or child.index in path:
            return child.resolved_uri(self._base_uri)
        return self._render(
            arena, child, fields, depth + 1, max_depth, (*path, child.index), include_errors
        )
