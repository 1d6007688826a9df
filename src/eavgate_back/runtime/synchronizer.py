"""
Synchronizer - mirrors validated objects to their external source.

The validator calls ``sync`` for every object that validated cleanly and
whose entity names an external source. ``sync`` schedules one asyncio task
per object and returns immediately. A task first waits for the tasks of
all nested objects (bottom-up), because the outbound payload carries the
children's resolved URIs instead of their data.

Transport and remote failures never raise out of a task: they become an
error on the object under ``gateway endpoint on <Entity> said``.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
from dataclasses import dataclass
from typing import Any

import httpx

from eavgate.core.errors import SchemaError
from eavgate.core.manifest import SourceConfig
from eavgate_back.runtime.api_cache import MirrorCache
from eavgate_back.runtime.logging import log_with_context
from eavgate_back.runtime.object_graph import ObjectArena, ObjectEntity
from eavgate_back.runtime.schema_registry import SchemaRegistry
from eavgate_back.specs.entity import EntitySpec

logger = logging.getLogger(__name__)


def sync_error_key(entity_name: str) -> str:
    """Error key under which a failed synchronization is reported."""
    return f"gateway endpoint on {entity_name} said"


@dataclass
class SyncResult:
    """Outcome of one outbound call."""

    object_id: str
    entity: str
    method: str
    url: str
    status_code: int | None = None
    success: bool = False
    error: str | None = None


class Synchronizer:
    """
    Schedule and run outbound synchronization calls.

    Args:
        registry: Schema registry used to resolve entities.
        sources: External sources by name.
        cache: Mirror cache receiving successful responses.
        base_uri: Base of locally generated object URIs.
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        sources: dict[str, SourceConfig],
        cache: MirrorCache,
        base_uri: str,
    ) -> None:
        self._registry = registry
        self._sources = sources
        self._cache = cache
        self._base_uri = base_uri

    # =========================================================================
    # Scheduling
    # =========================================================================

    def sync(self, arena: ObjectArena, index: int) -> asyncio.Task[SyncResult]:
        """
        Schedule synchronization of the object at ``index``.

        Must be called from a running event loop. The task waits for the
        pending tasks of all attached nested objects before it builds its
        payload.

        Raises:
            SchemaError: If the entity names an unknown source.
        """
        obj = arena.get(index)
        entity = self._registry.get_entity(obj.entity)
        source = self._get_source(entity)

        dependencies = [
            child.pending for child in arena.descendants(index) if child.pending is not None
        ]
        return asyncio.get_running_loop().create_task(
            self._run(arena, index, entity, source, dependencies),
            name=f"sync:{entity.name}:{obj.id}",
        )

    async def await_all(self, arena: ObjectArena) -> None:
        """
        Block until every task scheduled for ``arena`` has settled.

        A task that died with an unexpected exception is reported as a
        synchronization error on its object.
        """
        tasks = arena.pending_tasks()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for obj in arena:
            task = obj.pending
            if task is None:
                continue
            obj.pending = None
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                logger.error(
                    "Synchronization of %s %s crashed", obj.entity, obj.id, exc_info=exc
                )
                obj.add_error(sync_error_key(obj.entity), str(exc) or type(exc).__name__)

    def discard(self, arena: ObjectArena) -> int:
        """Cancel every pending task of ``arena``. Returns the number cancelled."""
        cancelled = 0
        for obj in arena:
            if obj.pending is not None:
                if obj.pending.cancel():
                    cancelled += 1
                obj.pending = None
        if cancelled:
            logger.debug("Discarded %d pending synchronization task(s)", cancelled)
        return cancelled

    # =========================================================================
    # Outbound Calls
    # =========================================================================

    async def _run(
        self,
        arena: ObjectArena,
        index: int,
        entity: EntitySpec,
        source: SourceConfig,
        dependencies: list[asyncio.Task[Any]],
    ) -> SyncResult:
        if dependencies:
            await asyncio.gather(*dependencies, return_exceptions=True)

        obj = arena.get(index)
        payload = self.build_payload(arena, index, entity)

        if obj.uri:
            method, url = "PUT", obj.uri
        else:
            method, url = "POST", self._collection_url(entity, source)

        result = SyncResult(object_id=obj.id, entity=entity.name, method=method, url=url)
        headers = self._resolve_auth_headers(source)

        try:
            async with httpx.AsyncClient(timeout=source.timeout) as client:
                resp = await client.request(method, url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            result.error = str(e) or type(e).__name__
            logger.warning("Sync of %s %s to %s failed: %s", entity.name, obj.id, url, result.error)
            obj.add_error(sync_error_key(entity.name), result.error)
            return result

        result.status_code = resp.status_code
        data = self._parse_body(resp)

        success = 200 <= resp.status_code < 300
        if success and (data is not None or not resp.content):
            await self._reconcile(obj, method, url, data)
            result.success = True
            log_with_context(
                logger,
                logging.INFO,
                f"Synchronized {entity.name} {obj.id}",
                method=method,
                uri=obj.uri,
                status=resp.status_code,
            )
            return result

        result.error = self._error_message(source, data, resp, url)
        logger.warning(
            "Sync of %s %s returned %d: %s", entity.name, obj.id, resp.status_code, result.error
        )
        obj.add_error(sync_error_key(entity.name), result.error)
        return result

    async def _reconcile(
        self,
        obj: ObjectEntity,
        method: str,
        url: str,
        data: dict[str, Any] | None,
    ) -> None:
        """Store the identifier and response the source returned."""
        if data is None:
            return

        external_id = data.get("id")
        if external_id is not None:
            obj.external_id = str(external_id)
            if method == "POST":
                obj.uri = f"{url}/{external_id}"
        if obj.uri is None and isinstance(data.get("@id"), str):
            obj.uri = data["@id"]

        obj.external_result = data
        if obj.uri:
            await self._cache.put(obj.uri, data)

    async def delete_remote(self, obj: ObjectEntity) -> bool:
        """
        Delete the mirrored copy of an object.

        Returns:
            True when the source confirmed the delete (or there was nothing to delete).
        """
        if not obj.uri:
            return True
        entity = self._registry.get_entity(obj.entity)
        source = self._get_source(entity)
        try:
            async with httpx.AsyncClient(timeout=source.timeout) as client:
                resp = await client.request(
                    "DELETE", obj.uri, headers=self._resolve_auth_headers(source)
                )
        except httpx.HTTPError as e:
            logger.warning("Remote delete of %s failed: %s", obj.uri, e)
            return False
        if 200 <= resp.status_code < 300 or resp.status_code == 404:
            return True
        logger.warning("Remote delete of %s returned %d", obj.uri, resp.status_code)
        return False

    # =========================================================================
    # Payload and Helpers
    # =========================================================================

    def build_payload(self, arena: ObjectArena, index: int, entity: EntitySpec) -> dict[str, Any]:
        """
        Outbound body for an object.

        Attributes with ``persist_to_source`` off stay local. Nested objects
        are sent as their resolved URIs.
        """
        obj = arena.get(index)
        payload: dict[str, Any] = {}
        for attribute in entity.attributes:
            if not attribute.persist_to_source:
                continue
            value = obj.values.get(attribute.name)
            if value is None:
                continue
            if attribute.is_object:
                uris = [arena.get(ref).resolved_uri(self._base_uri) for ref in value.object_refs]
                if attribute.multiple:
                    payload[attribute.name] = uris
                else:
                    payload[attribute.name] = uris[0] if uris else None
            else:
                payload[attribute.name] = value.scalar
        return payload

    def _get_source(self, entity: EntitySpec) -> SourceConfig:
        source = self._sources.get(entity.source or "")
        if source is None:
            raise SchemaError(
                f"Entity {entity.name} refers to an unknown source {entity.source}",
                path=entity.name,
                data={"source": entity.source},
            )
        return source

    @staticmethod
    def _collection_url(entity: EntitySpec, source: SourceConfig) -> str:
        endpoint = entity.endpoint.strip("/")
        return f"{source.base_url}/{endpoint}" if endpoint else source.base_url

    @staticmethod
    def _parse_body(resp: httpx.Response) -> dict[str, Any] | None:
        if not resp.content:
            return None
        try:
            data = resp.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _error_message(
        source: SourceConfig, data: dict[str, Any] | None, resp: httpx.Response, url: str
    ) -> str:
        """Pick a human readable message out of a failed response."""
        if data is not None:
            for path in source.error_paths:
                message = data.get(path)
                if isinstance(message, str) and message:
                    return message
        if 200 <= resp.status_code < 300:
            return f"Could not parse the response of {url}"
        return resp.text[:1000] or f"HTTP {resp.status_code}"

    @staticmethod
    def _resolve_auth_headers(source: SourceConfig) -> dict[str, str]:
        """Resolve source credentials to HTTP headers."""
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            **source.headers,
        }

        # Credentials are environment variable names
        cred_values = [os.environ.get(c, "") for c in source.credentials]

        if source.auth == "apikey":
            if cred_values:
                headers["Authorization"] = cred_values[0]
        elif source.auth == "bearer":
            if cred_values:
                headers["Authorization"] = f"Bearer {cred_values[0]}"
        elif source.auth == "basic":
            if len(cred_values) >= 2:
                encoded = base64.b64encode(f"{cred_values[0]}:{cred_values[1]}".encode()).decode()
            elif cred_values:
                encoded = base64.b64encode(f"{cred_values[0]}:".encode()).decode()
            else:
                encoded = None
            if encoded:
                headers["Authorization"] = f"Basic {encoded}"

        return headers
