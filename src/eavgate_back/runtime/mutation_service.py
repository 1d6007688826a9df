"""
Mutation service - request orchestration for the gateway.

Ties the validator, repository, synchronizer and renderer together:

1. resolve or create the root object
2. validate the payload
3. on errors: discard pending synchronization, persist nothing
4. persist the object graph in one transaction
5. wait for every synchronization task
6. write sync results as a follow-up update (the local record stays)
7. render

Configuration errors raised on the way are converted to an error body at
this boundary; callers always get a ``MutationResult``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any
from uuid import UUID

from eavgate.core.errors import (
    AccessDeniedError,
    ErrorType,
    GatewayError,
    ObjectLookupError,
    error_body,
)
from eavgate_back.runtime.api_cache import MirrorCache
from eavgate_back.runtime.object_graph import ObjectArena, ObjectEntity
from eavgate_back.runtime.renderer import Renderer, parse_fields
from eavgate_back.runtime.repository import ObjectRepository
from eavgate_back.runtime.schema_registry import SchemaRegistry
from eavgate_back.runtime.synchronizer import Synchronizer
from eavgate_back.runtime.validator import Validator
from eavgate_back.specs.entity import EntitySpec

logger = logging.getLogger(__name__)

VALIDATION_FAILED_MESSAGE = "There were errors"
ORGANIZATION_REQUIRED_MESSAGE = (
    "An active organization is required in the session, please login to create a new session."
)
CANT_BE_ORPHANED_MESSAGE = (
    "You are not allowed to delete this object because of attributes that can not be orphaned."
)


@dataclass
class RequestContext:
    """Identity of the caller, stamped on newly created objects."""

    organization: str | None = None
    application: str | None = None
    user: str | None = None


@dataclass
class MutationResult:
    """What a handler returns: a JSON body (or None) and an HTTP status."""

    result: dict[str, Any] | None
    response_type: HTTPStatus
    object_id: str | None = None

    @property
    def is_error(self) -> bool:
        return self.response_type >= HTTPStatus.BAD_REQUEST


def _status_for(error: GatewayError) -> HTTPStatus:
    if error.error_type == ErrorType.FORBIDDEN:
        return HTTPStatus.FORBIDDEN
    return HTTPStatus.BAD_REQUEST


class MutationService:
    """
    Create, update, read, search and delete objects of runtime entities.

    Args:
        registry: Schema registry.
        repository: Object repository.
        cache: Mirror cache read when rendering.
        synchronizer: Synchronizer for entities with an external source;
            ``None`` keeps everything local.
        base_uri: Base of locally generated object URIs.
        require_organization: Refuse creates without an active organization.
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        repository: ObjectRepository,
        cache: MirrorCache,
        synchronizer: Synchronizer | None = None,
        *,
        base_uri: str = "http://localhost/api/v1/eav",
        require_organization: bool = False,
    ) -> None:
        self.registry = registry
        self.repository = repository
        self.cache = cache
        self.synchronizer = synchronizer
        self.require_organization = require_organization
        self.validator = Validator(registry, synchronizer)
        self.renderer = Renderer(registry, base_uri)

    # =========================================================================
    # Lookup
    # =========================================================================

    def get_object(self, entity: EntitySpec, object_id: str) -> tuple[ObjectArena, int]:
        """
        Load an object of ``entity`` by id or external id.

        Raises:
            ObjectLookupError: Invalid id, unknown object, or entity mismatch.
        """
        row = self.repository.find_by_id_or_external_id(object_id)
        if row is None:
            try:
                UUID(object_id)
            except ValueError:
                raise ObjectLookupError(
                    f"The given id ({object_id}) is not a valid uuid.",
                    path=entity.name,
                    data={"id": object_id},
                ) from None
            raise ObjectLookupError(
                f"Could not find an object with id {object_id} of type {entity.name}",
                path=entity.name,
                data={"id": object_id},
            )

        if row["entity"] != entity.name:
            raise ObjectLookupError(
                f"There is a mismatch between the provided ({entity.name}) entity and "
                f"the entity already attached to the object ({row['entity']})",
                path=entity.name,
                data={"providedEntity": entity.name, "objectEntity": row["entity"]},
            )

        loaded = self.repository.load(row["id"])
        if loaded is None:
            raise ObjectLookupError(
                f"Could not find an object with id {object_id} of type {entity.name}",
                path=entity.name,
            )
        return loaded

    # =========================================================================
    # Mutations
    # =========================================================================

    async def handle_mutation(
        self,
        entity_name: str,
        object_id: str | None,
        payload: Any,
        context: RequestContext | None = None,
        fields: str | None = None,
    ) -> MutationResult:
        """
        Create (``object_id`` is None) or update an object from a JSON payload.

        Returns 201/200 with the rendered object, or 400/403 with an error
        body. A synchronization failure still persists the object: the
        result is an error body carrying the object's id.
        """
        context = context or RequestContext()
        try:
            return await self._mutate(entity_name, object_id, payload, context, fields)
        except GatewayError as e:
            logger.info("Mutation of %s refused: %s", entity_name, e.message)
            return MutationResult(e.to_error_body(), _status_for(e), object_id)

    async def _mutate(
        self,
        entity_name: str,
        object_id: str | None,
        payload: Any,
        context: RequestContext,
        fields: str | None,
    ) -> MutationResult:
        entity = self.registry.get_entity(entity_name)
        if not isinstance(payload, dict):
            raise GatewayError("The request body must be a JSON object", path=entity.name)

        payload = dict(payload)
        owner = payload.pop("@owner", None)

        if object_id:
            arena, index = self.get_object(entity, object_id)
            created = False
        else:
            if self.require_organization and not context.organization:
                raise AccessDeniedError(ORGANIZATION_REQUIRED_MESSAGE, path=entity.name)
            arena = ObjectArena()
            index = arena.add(
                ObjectEntity(
                    entity=entity.name,
                    organization=context.organization,
                    application=context.application,
                    owner=owner or context.user,
                )
            )
            created = True

        obj = arena.get(index)
        try:
            self.validator.validate(arena, index, payload)
        except GatewayError:
            self._discard(arena)
            raise

        if obj.has_errors:
            self._discard(arena)
            return MutationResult(
                error_body(VALIDATION_FAILED_MESSAGE, ErrorType.ERROR, entity.name, obj.errors),
                HTTPStatus.BAD_REQUEST,
                None if created else obj.id,
            )

        # Scheduled syncs must not reach the source for an object never stored
        try:
            with self.repository.transaction():
                self.repository.save(arena, index)
                self._delete_detached(arena, index)
        except BaseException:
            self._discard(arena)
            raise

        if self.synchronizer is not None:
            await self.synchronizer.await_all(arena)
            self.repository.update_sync_state(arena, index)

        errors = arena.collect_errors(index)
        if errors:
            return MutationResult(
                error_body(VALIDATION_FAILED_MESSAGE, ErrorType.ERROR, entity.name, errors),
                HTTPStatus.BAD_REQUEST,
                obj.id,
            )

        status = HTTPStatus.CREATED if created else HTTPStatus.OK
        logger.info("%s %s %s", "Created" if created else "Updated", entity.name, obj.id)
        rendered = self.renderer.render(arena, index, parse_fields(fields))
        return MutationResult(rendered, status, obj.id)

    def _discard(self, arena: ObjectArena) -> None:
        if self.synchronizer is not None:
            self.synchronizer.discard(arena)

    def _delete_detached(self, arena: ObjectArena, index: int) -> None:
        """Delete children unlinked by this mutation when their attribute cascades."""
        for obj in arena.graph(index):
            entity = self.registry.get_entity(obj.entity)
            for value in obj.values.values():
                if not value.detached:
                    continue
                attribute = entity.get_attribute(value.attribute)
                if attribute is not None and attribute.cascade_delete:
                    for ref in value.detached:
                        child = arena.get(ref)
                        if not child.is_new:
                            for target in self._cascade_targets(arena, child):
                                self.repository.delete(target.id)
                value.detached.clear()

    # =========================================================================
    # Reads
    # =========================================================================

    async def handle_get(
        self, entity_name: str, object_id: str, fields: str | None = None
    ) -> MutationResult:
        """Render one stored object, merging mirror data from the cache."""
        try:
            entity = self.registry.get_entity(entity_name)
            arena, index = self.get_object(entity, object_id)
        except GatewayError as e:
            return MutationResult(e.to_error_body(), _status_for(e), object_id)

        await self._hydrate(arena)
        rendered = self.renderer.render(arena, index, parse_fields(fields))
        return MutationResult(rendered, HTTPStatus.OK, arena.get(index).id)

    async def handle_search(
        self,
        entity_name: str,
        filters: dict[str, Any] | None = None,
        *,
        limit: int = 100,
        offset: int = 0,
        fields: str | None = None,
    ) -> MutationResult:
        """List objects of an entity whose values equal ``filters``."""
        try:
            entity = self.registry.get_entity(entity_name)
            for name in filters or {}:
                self.registry.get_attribute(entity, name)
        except GatewayError as e:
            return MutationResult(e.to_error_body(), _status_for(e))

        selection = parse_fields(fields)
        results: list[dict[str, Any]] = []
        for object_id in self.repository.find_by_value(
            entity.name, filters, limit=limit, offset=offset
        ):
            loaded = self.repository.load(object_id)
            if loaded is None:
                continue
            arena, index = loaded
            await self._hydrate(arena)
            results.append(self.renderer.render(arena, index, selection))

        body = {
            "results": results,
            "total": self.repository.count(entity.name, filters),
            "limit": limit,
            "offset": offset,
        }
        return MutationResult(body, HTTPStatus.OK)

    async def _hydrate(self, arena: ObjectArena) -> None:
        """Refresh mirror data from the cache (stored data is the fallback)."""
        for obj in arena:
            if obj.uri:
                mirror = await self.cache.get(obj.uri)
                if mirror is not None:
                    obj.external_result = mirror

    # =========================================================================
    # Delete
    # =========================================================================

    async def handle_delete(
        self, entity_name: str, object_id: str, context: RequestContext | None = None
    ) -> MutationResult:
        """
        Delete an object, cascading into children of ``cascadeDelete`` attributes.

        Refused (403) when an attribute that may not be orphaned still holds
        children it would not delete.
        """
        try:
            entity = self.registry.get_entity(entity_name)
            arena, index = self.get_object(entity, object_id)
            obj = arena.get(index)

            blocking = [
                attribute.name
                for attribute in entity.object_attributes()
                if not attribute.may_be_orphaned
                and not attribute.cascade_delete
                and arena.children(obj, attribute.name)
            ]
            if blocking:
                raise AccessDeniedError(
                    CANT_BE_ORPHANED_MESSAGE,
                    path=entity.name,
                    data={"cantBeOrphaned": blocking},
                )
        except GatewayError as e:
            return MutationResult(e.to_error_body(), _status_for(e), object_id)

        targets = self._cascade_targets(arena, obj)

        if self.synchronizer is not None:
            for target in targets:
                if target.uri and self.registry.get_entity(target.entity).has_source:
                    await self.synchronizer.delete_remote(target)

        with self.repository.transaction():
            for target in targets:
                self.repository.delete(target.id)

        for target in targets:
            if target.uri:
                await self.cache.delete(target.uri)

        user = context.user if context else None
        logger.info("Deleted %s %s (%d object(s)) by %s", entity.name, obj.id, len(targets), user)
        return MutationResult(None, HTTPStatus.NO_CONTENT, obj.id)

    def _cascade_targets(self, arena: ObjectArena, obj: ObjectEntity) -> list[ObjectEntity]:
        """``obj`` and every child reachable through cascading attributes, children first."""
        seen: set[int] = set()
        ordered: list[ObjectEntity] = []

        def visit(current: ObjectEntity) -> None:
            if current.index in seen:
                return
            seen.add(current.index)
            entity = self.registry.get_entity(current.entity)
            for attribute in entity.object_attributes():
                if attribute.cascade_delete:
                    for child in arena.children(current, attribute.name):
                        visit(child)
            ordered.append(current)

        visit(obj)
        return ordered
