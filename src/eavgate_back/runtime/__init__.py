"""
Gateway Runtime

Validation, storage, rendering and synchronization of objects described
by runtime entity schemas.

This module provides:
- Object graph (ObjectArena, ObjectEntity, Value)
- Validator and Renderer
- Synchronizer with the mirror cache
- Object repository (SQLite)
- Mutation service (request orchestration)

Example usage:
    >>> from eavgate_back.runtime import create_gateway
    >>> gateway = create_gateway(manifest)
    >>> result = await gateway.service.handle_mutation("Person", None, payload)
"""

from eavgate_back.runtime.api_cache import MirrorCache
from eavgate_back.runtime.gateway import Gateway, create_gateway
from eavgate_back.runtime.mutation_service import MutationResult, MutationService, RequestContext
from eavgate_back.runtime.object_graph import ObjectArena, ObjectEntity, Value
from eavgate_back.runtime.renderer import Renderer, parse_fields
from eavgate_back.runtime.repository import DatabaseManager, ObjectRepository
from eavgate_back.runtime.schema_registry import SchemaRegistry
from eavgate_back.runtime.synchronizer import Synchronizer, SyncResult, sync_error_key
from eavgate_back.runtime.validator import Validator

__all__ = [
    "DatabaseManager",
    "Gateway",
    "MirrorCache",
    "MutationResult",
    "MutationService",
    "ObjectArena",
    "ObjectEntity",
    "ObjectRepository",
    "Renderer",
    "RequestContext",
    "SchemaRegistry",
    "SyncResult",
    "Synchronizer",
    "Validator",
    "Value",
    "create_gateway",
    "parse_fields",
    "sync_error_key",
]
