"""Core building blocks shared by the runtime and the CLI."""

from eavgate.core.errors import (
    AccessDeniedError,
    ErrorType,
    GatewayError,
    ObjectLookupError,
    SchemaError,
    UnknownSchemaError,
    error_body,
)
from eavgate.core.manifest import GatewayManifest, SourceConfig, load_manifest

__all__ = [
    "AccessDeniedError",
    "ErrorType",
    "GatewayError",
    "ObjectLookupError",
    "SchemaError",
    "UnknownSchemaError",
    "error_body",
    "GatewayManifest",
    "SourceConfig",
    "load_manifest",
]
