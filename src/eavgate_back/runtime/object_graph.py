"""
Object graph - the instance data validated against runtime schemas.

Every ``ObjectEntity`` handled within one request batch lives in a single
``ObjectArena``. Cross references (a value's nested objects, a nested
object's back-reference to the value owning it) are arena indices, never
object references, so parent/child cycles never become reference cycles.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from eavgate_back.specs.entity import AttributeSpec

# Errors are keyed by attribute name. A message is either a string or, for
# nested objects, the nested object's own error mapping.
ErrorSet = dict[str, list[Any]]


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class Value:
    """
    One attribute's data for one object.

    ``scalar`` holds a scalar or a list of scalars; ``object_refs`` holds the
    arena indices of nested objects. Which one is meaningful is decided by
    the attribute type, never both.
    """

    attribute: str
    is_object: bool = False
    scalar: Any = None
    object_refs: list[int] = field(default_factory=list)
    # Children unlinked by the last validation (candidates for cascade delete)
    detached: list[int] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid4()))

    def set_scalar(self, value: Any) -> None:
        self.scalar = value

    def set_objects(self, refs: list[int]) -> None:
        removed = [r for r in self.object_refs if r not in refs]
        self.detached.extend(r for r in removed if r not in self.detached)
        self.object_refs = list(refs)

    def clear(self) -> None:
        """Set to null: no scalar and no nested objects."""
        if self.is_object:
            self.set_objects([])
        else:
            self.scalar = None


@dataclass(eq=False)
class ObjectEntity:
    """A persisted (or about to be persisted) instance of an entity."""

    entity: str
    id: str = field(default_factory=lambda: str(uuid4()))
    uri: str | None = None
    external_id: str | None = None
    organization: str | None = None
    application: str | None = None
    owner: str | None = None
    values: dict[str, Value] = field(default_factory=dict)
    errors: ErrorSet = field(default_factory=dict)
    # (arena index of the parent object, attribute name); traversal only
    subresource_of: tuple[int, str] | None = None
    # Mirror data: the external source's last response for this object
    external_result: dict[str, Any] | None = None
    date_created: datetime = field(default_factory=_now)
    date_modified: datetime = field(default_factory=_now)
    is_new: bool = True
    index: int = -1
    pending: asyncio.Task[Any] | None = field(default=None, repr=False)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def add_error(self, key: str, message: Any) -> None:
        self.errors.setdefault(key, []).append(message)

    def get_value(self, attribute: AttributeSpec) -> Value:
        """Get the value for an attribute, creating an empty one on first use."""
        value = self.values.get(attribute.name)
        if value is None:
            value = Value(attribute=attribute.name, is_object=attribute.is_object)
            self.values[attribute.name] = value
        return value

    def local_uri(self, base_uri: str) -> str:
        """URI of this object on the gateway itself."""
        return f"{base_uri.rstrip('/')}/object_entities/{self.entity}/{self.id}"

    def resolved_uri(self, base_uri: str) -> str:
        """The external URI once synchronized, otherwise the local one."""
        return self.uri or self.local_uri(base_uri)


class ObjectArena:
    """Indexed storage for all objects of one request batch."""

    def __init__(self) -> None:
        self._objects: list[ObjectEntity] = []
        self._by_id: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._objects)

    def __iter__(self) -> Iterator[ObjectEntity]:
        return iter(self._objects)

    def add(self, obj: ObjectEntity) -> int:
        """Add an object and return its index."""
        if obj.id in self._by_id:
            return self._by_id[obj.id]
        obj.index = len(self._objects)
        self._objects.append(obj)
        self._by_id[obj.id] = obj.index
        return obj.index

    def get(self, index: int) -> ObjectEntity:
        return self._objects[index]

    def find(self, object_id: str) -> int | None:
        return self._by_id.get(object_id)

    def new_child(self, parent: ObjectEntity, attribute: AttributeSpec) -> int:
        """Create a nested object for an object attribute of ``parent``."""
        assert attribute.target_entity is not None
        child = ObjectEntity(
            entity=attribute.target_entity,
            organization=parent.organization,
            application=parent.application,
            owner=parent.owner,
            subresource_of=(parent.index, attribute.name),
        )
        return self.add(child)

    def children(self, obj: ObjectEntity, attribute: str | None = None) -> list[ObjectEntity]:
        """Nested objects attached to ``obj`` (for one attribute, or all)."""
        if attribute is None:
            values = list(obj.values.values())
        else:
            values = [obj.values[attribute]] if attribute in obj.values else []
        result: list[ObjectEntity] = []
        for value in values:
            if value.is_object:
                result.extend(self._objects[i] for i in value.object_refs)
        return result

    def parent_of(self, obj: ObjectEntity) -> ObjectEntity | None:
        if obj.subresource_of is None:
            return None
        return self._objects[obj.subresource_of[0]]

    def descendants(self, index: int) -> list[ObjectEntity]:
        """All objects reachable through attached nested values (cycle safe)."""
        seen = {index}
        stack = [index]
        result: list[ObjectEntity] = []
        while stack:
            current = self._objects[stack.pop()]
            for child in self.children(current):
                if child.index not in seen:
                    seen.add(child.index)
                    result.append(child)
                    stack.append(child.index)
        return result

    def graph(self, index: int) -> list[ObjectEntity]:
        """The object at ``index`` followed by its descendants."""
        return [self._objects[index], *self.descendants(index)]

    def pending_tasks(self) -> list[asyncio.Task[Any]]:
        return [obj.pending for obj in self._objects if obj.pending is not None]

    def collect_errors(self, index: int) -> ErrorSet:
        """
        Errors of an object merged with those of its attached nested objects.

        Nested errors are reported under the attribute holding the child.
        """
        return self._collect_errors(index, {index})

    def _collect_errors(self, index: int, seen: set[int]) -> ErrorSet:
        obj = self._objects[index]
        errors: ErrorSet = {key: list(messages) for key, messages in obj.errors.items()}
        for name, value in obj.values.items():
            if not value.is_object:
                continue
            for ref in value.object_refs:
                if ref in seen:
                    continue
                seen.add(ref)
                child_errors = self._collect_errors(ref, seen)
                if child_errors and child_errors not in errors.get(name, []):
                    errors.setdefault(name, []).append(child_errors)
        return errors
