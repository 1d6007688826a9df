"""
Gateway assembly - builds the runtime components from a manifest.

Example usage:
    >>> from eavgate.core.manifest import load_manifest
    >>> from eavgate_back.runtime.gateway import create_gateway
    >>>
    >>> gateway = create_gateway(load_manifest(Path("gateway.toml")))
    >>> result = await gateway.service.handle_mutation("Person", None, {"name": "Ada"})
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from eavgate.core.manifest import GatewayManifest
from eavgate_back.converters import load_schema_dir
from eavgate_back.runtime.api_cache import MirrorCache
from eavgate_back.runtime.mutation_service import MutationService
from eavgate_back.runtime.repository import DatabaseManager, ObjectRepository
from eavgate_back.runtime.schema_registry import SchemaRegistry
from eavgate_back.runtime.synchronizer import Synchronizer
from eavgate_back.specs.entity import EntitySpec

logger = logging.getLogger(__name__)


@dataclass
class Gateway:
    """The wired runtime components."""

    manifest: GatewayManifest
    registry: SchemaRegistry
    repository: ObjectRepository
    cache: MirrorCache
    synchronizer: Synchronizer
    service: MutationService

    async def close(self) -> None:
        await self.cache.close()


def create_gateway(
    manifest: GatewayManifest,
    entities: list[EntitySpec] | None = None,
) -> Gateway:
    """
    Build a gateway from a manifest.

    Args:
        manifest: Gateway configuration.
        entities: Schemas to register; defaults to the manifest's schema_dir.
    """
    if entities is None:
        entities = load_schema_dir(Path(manifest.schema_dir)) if manifest.schema_dir else []

    repository = ObjectRepository(DatabaseManager(manifest.database))
    registry = SchemaRegistry(entities, repository=repository)
    registry.resolve()

    cache = MirrorCache(manifest.redis_url, ttl=manifest.cache_ttl)
    synchronizer = Synchronizer(registry, manifest.sources, cache, manifest.base_uri)
    service = MutationService(
        registry,
        repository,
        cache,
        synchronizer,
        base_uri=manifest.base_uri,
        require_organization=manifest.require_organization,
    )

    logger.info(
        "Gateway %s ready: %d entities, %d sources",
        manifest.name,
        len(registry),
        len(manifest.sources),
    )
    return Gateway(manifest, registry, repository, cache, synchronizer, service)
