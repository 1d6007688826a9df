"""
Schema registry - lookup of runtime entity schemas.

Holds the current ``EntitySpec`` per entity name. Specs are frozen, so a
schema change replaces the registered spec; callers holding the old spec
for the duration of a request are unaffected.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from eavgate.core.errors import SchemaError, UnknownSchemaError
from eavgate_back.specs.entity import AttributeSpec, EntitySpec

if TYPE_CHECKING:
    from eavgate_back.runtime.repository import ObjectRepository

logger = logging.getLogger(__name__)


class SchemaRegistry:
    """
    In-memory registry of entity schemas.

    Args:
        entities: Initial entities to register.
        repository: Object repository notified when attributes are removed,
            so stored values for them are detached.
    """

    def __init__(
        self,
        entities: list[EntitySpec] | None = None,
        repository: ObjectRepository | None = None,
    ) -> None:
        self._entities: dict[str, EntitySpec] = {}
        self._repository = repository
        for entity in entities or []:
            self.register(entity)

    def __contains__(self, name: str) -> bool:
        return name in self._entities

    def __len__(self) -> int:
        return len(self._entities)

    @property
    def entities(self) -> list[EntitySpec]:
        return list(self._entities.values())

    def set_repository(self, repository: ObjectRepository) -> None:
        self._repository = repository

    def register(self, entity: EntitySpec) -> None:
        """Register (or replace) an entity schema."""
        if entity.name in self._entities:
            logger.info("Replacing schema for entity %s", entity.name)
        self._entities[entity.name] = entity

    def get_entity(self, name_or_route: str) -> EntitySpec:
        """
        Look up an entity by name, then by route (``/api/<name>``).

        Raises:
            UnknownSchemaError: If no entity matches.
        """
        if not name_or_route:
            raise UnknownSchemaError("No entity name provided", path="entity")

        entity = self._entities.get(name_or_route)
        if entity is not None:
            return entity

        route = name_or_route if name_or_route.startswith("/") else f"/api/{name_or_route}"
        for candidate in self._entities.values():
            if candidate.route == route:
                return candidate

        raise UnknownSchemaError(
            f"Could not establish an entity for {name_or_route}",
            path="entity",
            data={"Entity Name": name_or_route},
        )

    def get_attribute(self, entity: EntitySpec | str, name: str) -> AttributeSpec:
        """Look up an attribute within an entity."""
        spec = self.get_entity(entity) if isinstance(entity, str) else entity
        attribute = spec.get_attribute(name)
        if attribute is None:
            raise SchemaError(
                f"Entity {spec.name} has no attribute {name}",
                path=spec.name,
                data={"attribute": name},
            )
        return attribute

    def remove_attribute(self, entity_name: str, attribute_name: str) -> EntitySpec:
        """
        Remove an attribute from a schema.

        Stored values for the attribute are detached in the repository so no
        value is left pointing at an attribute that no longer exists.
        """
        entity = self.get_entity(entity_name)
        self.get_attribute(entity, attribute_name)

        updated = entity.without_attribute(attribute_name)
        if self._repository is not None:
            removed = self._repository.detach_attribute(entity.name, attribute_name)
            logger.info(
                "Detached %d stored value(s) of %s.%s", removed, entity.name, attribute_name
            )
        self._entities[entity.name] = updated
        return updated

    def resolve(self) -> None:
        """
        Check cross references between registered schemas.

        Raises:
            SchemaError: If an object attribute targets an unknown entity.
        """
        for entity in self._entities.values():
            for attribute in entity.object_attributes():
                if attribute.target_entity not in self._entities:
                    raise SchemaError(
                        f"Attribute {entity.name}.{attribute.name} targets unknown entity "
                        f"{attribute.target_entity}",
                        path=entity.name,
                        data={"targetEntity": attribute.target_entity},
                    )
