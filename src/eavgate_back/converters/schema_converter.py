"""
Schema converter - converts admin-authored JSON definitions to EntitySpec.

Definitions use JSON-Schema style camelCase keys, as produced by the schema
admin screens and by schema exports::

    {
        "name": "Person",
        "reference": "https://schemas.example.org/person.json",
        "version": "1.0",
        "source": "brp",
        "endpoint": "people",
        "maxDepth": 3,
        "attributes": [
            {"name": "name", "type": "string", "required": true, "maxLength": 255},
            {"name": "address", "type": "object", "targetEntity": "Address"}
        ]
    }

``attributes`` may also be a mapping of name to definition.
"""

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from eavgate.core.errors import SchemaError
from eavgate_back.specs import AttributeFormat, AttributeSpec, AttributeType, EntitySpec

logger = logging.getLogger(__name__)

# camelCase definition key -> AttributeSpec field
_ATTRIBUTE_KEYS: dict[str, str] = {
    "name": "name",
    "type": "type",
    "format": "format",
    "description": "description",
    "required": "required",
    "nullable": "nullable",
    "multiple": "multiple",
    "defaultValue": "default_value",
    "enum": "enum",
    "readOnly": "read_only",
    "minimum": "minimum",
    "maximum": "maximum",
    "exclusiveMinimum": "exclusive_minimum",
    "exclusiveMaximum": "exclusive_maximum",
    "multipleOf": "multiple_of",
    "minLength": "min_length",
    "maxLength": "max_length",
    "minItems": "min_items",
    "maxItems": "max_items",
    "uniqueItems": "unique_items",
    "targetEntity": "target_entity",
    "object": "target_entity",
    "cascadeDelete": "cascade_delete",
    "mayBeOrphaned": "may_be_orphaned",
    "persistToSource": "persist_to_source",
}

_ENTITY_KEYS: dict[str, str] = {
    "name": "name",
    "description": "description",
    "reference": "reference",
    "version": "version",
    "route": "route",
    "source": "source",
    "endpoint": "endpoint",
    "maxDepth": "max_depth",
}

_TYPES = {t.value for t in AttributeType}
_FORMATS = {f.value for f in AttributeFormat}


def convert_attribute(definition: dict[str, Any], entity_name: str) -> AttributeSpec:
    """Convert one attribute definition."""
    name = definition.get("name", "")
    path = f"{entity_name}.{name}"

    attr_type = definition.get("type")
    if attr_type not in _TYPES:
        raise SchemaError(
            f"Attribute '{name}' has an unknown type: [{attr_type}]",
            path=path,
            data={"type": attr_type, "allowed": sorted(_TYPES)},
        )
    attr_format = definition.get("format")
    if attr_format is not None and attr_format not in _FORMATS:
        raise SchemaError(
            f"Attribute '{name}' has an unknown format: [{attr_format}]",
            path=path,
            data={"format": attr_format, "allowed": sorted(_FORMATS)},
        )

    kwargs: dict[str, Any] = {}
    for key, value in definition.items():
        field_name = _ATTRIBUTE_KEYS.get(key)
        if field_name is None:
            logger.debug("Ignoring unsupported attribute key %s on %s", key, path)
            continue
        kwargs[field_name] = value

    try:
        return AttributeSpec(**kwargs)
    except ValidationError as e:
        raise SchemaError(f"Invalid attribute '{name}': {e}", path=path) from e


def convert_entity(definition: dict[str, Any]) -> EntitySpec:
    """Convert an entity definition (with its attributes) to an EntitySpec."""
    name = definition.get("name")
    if not name:
        raise SchemaError("Entity definition has no name", path="entity")

    raw_attributes = definition.get("attributes", [])
    if isinstance(raw_attributes, dict):
        raw_attributes = [{"name": key, **value} for key, value in raw_attributes.items()]

    attributes = [convert_attribute(a, name) for a in raw_attributes]

    kwargs: dict[str, Any] = {
        field_name: definition[key] for key, field_name in _ENTITY_KEYS.items() if key in definition
    }
    kwargs.setdefault("route", f"/api/{name}")

    try:
        return EntitySpec(attributes=attributes, **kwargs)
    except ValidationError as e:
        raise SchemaError(f"Invalid entity '{name}': {e}", path=name) from e


def load_schema_file(path: Path) -> list[EntitySpec]:
    """Load one JSON file holding a single entity or a list of entities."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise SchemaError(f"Could not parse {path.name}: {e}", path=str(path)) from e

    definitions = data if isinstance(data, list) else [data]
    return [convert_entity(d) for d in definitions]


def load_schema_dir(directory: Path) -> list[EntitySpec]:
    """Load every ``*.json`` schema definition in a directory (sorted by file name)."""
    entities: list[EntitySpec] = []
    for path in sorted(directory.glob("*.json")):
        entities.extend(load_schema_file(path))
    logger.info("Loaded %d entity schema(s) from %s", len(entities), directory)
    return entities
