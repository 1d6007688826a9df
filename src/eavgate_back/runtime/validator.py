"""
Validator - checks JSON payloads against runtime schemas.

Walks the attributes of an entity in declaration order and writes the
accepted values onto an ``ObjectEntity`` in an ``ObjectArena``. Nested
object attributes recurse into child objects.

Malformed data never raises: every problem is recorded on the object's
error set under the attribute name. Exceptions only escape for programmer
errors such as a reference to an unregistered entity.
"""

from __future__ import annotations

import copy
import json
import logging
import math
import re
from collections.abc import Callable
from datetime import date, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse
from uuid import UUID

from eavgate_back.runtime.object_graph import ObjectArena, ObjectEntity
from eavgate_back.runtime.schema_registry import SchemaRegistry
from eavgate_back.specs.entity import AttributeFormat, AttributeSpec, AttributeType

if TYPE_CHECKING:
    from eavgate_back.runtime.synchronizer import Synchronizer

logger = logging.getLogger(__name__)

REQUIRED_MESSAGE = "this attribute is required"


# =============================================================================
# Helpers
# =============================================================================


def json_type(value: Any) -> str:
    """Name of the JSON type of a decoded value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _fmt(number: float) -> str:
    """Render 5.0 as "5" in messages."""
    if isinstance(number, float) and number.is_integer():
        return str(int(number))
    return str(number)


def _parses_as_datetime(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        datetime.fromisoformat(value)
    except ValueError:
        return False
    return True


# =============================================================================
# Format Checkers
# =============================================================================

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^\+?[0-9][0-9 ()\-]{5,19}$")
_COUNTRY_RE = re.compile(r"^[A-Z]{2}$")
_IBAN_RE = re.compile(r"^[A-Z]{2}[0-9]{2}[A-Z0-9]{11,30}$")


def _is_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value))


def _is_uuid(value: str) -> bool:
    try:
        UUID(value)
    except ValueError:
        return False
    return True


def _is_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _is_uri(value: str) -> bool:
    parsed = urlparse(value)
    return bool(parsed.scheme) and bool(parsed.netloc or parsed.path)


def _is_date(value: str) -> bool:
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _is_date_time(value: str) -> bool:
    return "T" in value and _parses_as_datetime(value)


def _is_phone(value: str) -> bool:
    return bool(_PHONE_RE.match(value))


def _is_country_code(value: str) -> bool:
    return bool(_COUNTRY_RE.match(value))


def _is_iban(value: str) -> bool:
    compact = value.replace(" ", "").upper()
    if not _IBAN_RE.match(compact):
        return False
    rearranged = compact[4:] + compact[:4]
    digits = "".join(str(int(ch, 36)) for ch in rearranged)
    return int(digits) % 97 == 1


def _is_bsn(value: str) -> bool:
    """Dutch citizen service number: 9 digits passing the eleven test."""
    if not value.isdigit() or len(value) != 9:
        return False
    total = sum(int(digit) * (9 - i) for i, digit in enumerate(value[:8]))
    return (total - int(value[8])) % 11 == 0


_FORMAT_CHECKERS: dict[str, Callable[[str], bool]] = {
    AttributeFormat.EMAIL: _is_email,
    AttributeFormat.UUID: _is_uuid,
    AttributeFormat.URL: _is_url,
    AttributeFormat.URI: _is_uri,
    AttributeFormat.DATE: _is_date,
    AttributeFormat.DATE_TIME: _is_date_time,
    AttributeFormat.PHONE: _is_phone,
    AttributeFormat.COUNTRY_CODE: _is_country_code,
    AttributeFormat.IBAN: _is_iban,
    AttributeFormat.BSN: _is_bsn,
}


# =============================================================================
# Validator
# =============================================================================


class Validator:
    """
    Validate payloads into an object graph.

    Args:
        registry: Schema registry used to resolve entities.
        synchronizer: When given, every object that validates cleanly and
            whose entity has an external source gets a synchronization task.
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        synchronizer: Synchronizer | None = None,
    ) -> None:
        self._registry = registry
        self._synchronizer = synchronizer

    def validate(
        self,
        arena: ObjectArena,
        index: int,
        payload: dict[str, Any],
        *,
        depth: int = 0,
        max_depth: int | None = None,
    ) -> ObjectEntity:
        """
        Validate ``payload`` onto the object at ``index``.

        Attributes are processed strictly in declaration order. For each one:
        payload value, else default value, else null when nullable, else a
        "required" error when required, else null.

        Returns:
            The validated object; inspect ``has_errors``/``errors``.
        """
        obj = arena.get(index)
        entity = self._registry.get_entity(obj.entity)
        if max_depth is None:
            max_depth = entity.max_depth

        obj.errors = {}

        for attribute in entity.attributes:
            if attribute.read_only:
                continue
            if attribute.name in payload:
                self._validate_attribute(
                    arena, obj, attribute, payload[attribute.name], depth, max_depth
                )
            elif attribute.default_value is not None:
                default = copy.deepcopy(attribute.default_value)
                if attribute.is_object:
                    self._validate_attribute(arena, obj, attribute, default, depth, max_depth)
                else:
                    obj.get_value(attribute).set_scalar(default)
            elif attribute.nullable:
                obj.get_value(attribute).clear()
            elif attribute.required:
                obj.add_error(attribute.name, REQUIRED_MESSAGE)
            else:
                # Omitted optional values are cleared, not kept (PUT semantics)
                obj.get_value(attribute).clear()

        if obj.has_errors:
            logger.debug("Object %s of %s has errors: %s", obj.id, obj.entity, obj.errors)
        elif entity.has_source and self._synchronizer is not None:
            obj.pending = self._synchronizer.sync(arena, index)

        return obj

    # =========================================================================
    # Attributes
    # =========================================================================

    def _validate_attribute(
        self,
        arena: ObjectArena,
        obj: ObjectEntity,
        attribute: AttributeSpec,
        value: Any,
        depth: int,
        max_depth: int,
    ) -> None:
        name = attribute.name
        errors_before = len(obj.errors.get(name, []))

        if value is None:
            if attribute.required and not attribute.nullable:
                obj.add_error(name, f"Expects {attribute.type}, null given.")
            else:
                obj.get_value(attribute).clear()
            return

        if attribute.multiple:
            self._validate_multiple(arena, obj, attribute, value, depth, max_depth)
        elif attribute.is_object:
            self._validate_object(arena, obj, attribute, value, depth, max_depth)
        else:
            for message in self.check_scalar(attribute, value):
                obj.add_error(name, message)

        # Object values are attached while validating; scalars only when clean
        if not attribute.is_object and len(obj.errors.get(name, [])) == errors_before:
            obj.get_value(attribute).set_scalar(value)

    def _validate_multiple(
        self,
        arena: ObjectArena,
        obj: ObjectEntity,
        attribute: AttributeSpec,
        value: Any,
        depth: int,
        max_depth: int,
    ) -> None:
        name = attribute.name
        if not isinstance(value, list):
            obj.add_error(
                name,
                f"Expects array, {json_type(value)} given. (Multiple is set for this value)",
            )
            return

        if attribute.min_items is not None and len(value) < attribute.min_items:
            obj.add_error(
                name, f"The minimum array length of this attribute is {attribute.min_items}."
            )
        if attribute.max_items is not None and len(value) > attribute.max_items:
            obj.add_error(
                name, f"The maximum array length of this attribute is {attribute.max_items}."
            )

        # Records have no defined equality, only arrays of scalars are checked
        if attribute.unique_items and not any(isinstance(item, dict) for item in value):
            keys = [json.dumps(item, sort_keys=True) for item in value]
            if len(set(keys)) != len(keys):
                obj.add_error(name, "Must be an array of unique items")

        if attribute.is_object:
            self._validate_object_list(arena, obj, attribute, value, depth, max_depth)
            return

        for item in value:
            for message in self.check_scalar(attribute, item):
                obj.add_error(name, message)

    def _validate_object(
        self,
        arena: ObjectArena,
        obj: ObjectEntity,
        attribute: AttributeSpec,
        value: Any,
        depth: int,
        max_depth: int,
    ) -> None:
        name = attribute.name
        if not isinstance(value, dict):
            obj.add_error(name, f"Expects object, {json_type(value)} given.")
            return
        if depth + 1 > max_depth:
            obj.add_error(name, f"The maximum depth of {max_depth} nested objects is exceeded.")
            return

        holder = obj.get_value(attribute)
        existing = arena.children(obj, name)
        if existing:
            child_index = existing[0].index
        else:
            child_index = arena.new_child(obj, attribute)

        child = self.validate(arena, child_index, value, depth=depth + 1, max_depth=max_depth)

        if child.has_errors:
            obj.add_error(name, dict(child.errors))
        else:
            holder.set_objects([child_index])

    def _validate_object_list(
        self,
        arena: ObjectArena,
        obj: ObjectEntity,
        attribute: AttributeSpec,
        value: list[Any],
        depth: int,
        max_depth: int,
    ) -> None:
        name = attribute.name
        holder = obj.get_value(attribute)
        existing = {child.id: child.index for child in arena.children(obj, name)}
        refs: list[int] = []

        for position, element in enumerate(value):
            if not isinstance(element, dict):
                obj.add_error(
                    name, "Multiple is set for this value. Expecting an array of objects."
                )
                continue
            if depth + 1 > max_depth:
                obj.add_error(
                    name, f"The maximum depth of {max_depth} nested objects is exceeded."
                )
                break

            element_id = element.get("id")
            if element_id is not None and str(element_id) in existing:
                child_index = existing[str(element_id)]
            else:
                child_index = arena.new_child(obj, attribute)

            child = self.validate(arena, child_index, element, depth=depth + 1, max_depth=max_depth)

            if child.has_errors:
                obj.add_error(name, {"item": position, "errors": dict(child.errors)})
            elif child_index not in refs:
                refs.append(child_index)

        holder.set_objects(refs)

    # =========================================================================
    # Scalars
    # =========================================================================

    def check_scalar(self, attribute: AttributeSpec, value: Any) -> list[str]:
        """
        Check one scalar value against an attribute's type, enum and format.

        Returns:
            Error messages (empty when the value is acceptable).
        """
        attr_type = attribute.type
        messages: list[str] = []
        expects = f"Expects {attr_type}, {json_type(value)} given."

        if attr_type == AttributeType.STRING:
            if not isinstance(value, str):
                return [expects]
            if attribute.min_length is not None and len(value) < attribute.min_length:
                messages.append(f"Is too short, minimum length is {attribute.min_length}.")
            if attribute.max_length is not None and len(value) > attribute.max_length:
                messages.append(f"Is too long, maximum length is {attribute.max_length}.")

        elif attr_type in (AttributeType.NUMBER, AttributeType.INTEGER):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return [expects]
            if attr_type == AttributeType.INTEGER and isinstance(value, float):
                if not value.is_integer():
                    return [expects]
            messages.extend(self._check_range(attribute, value))

        elif attr_type == AttributeType.BOOLEAN:
            if not isinstance(value, bool):
                return [expects]

        elif attr_type in (AttributeType.DATE, AttributeType.DATETIME):
            if not _parses_as_datetime(value):
                return [f"Expects {attr_type}, failed to parse string to DateTime."]

        elif attr_type == AttributeType.OBJECT:
            return [expects]

        else:
            return [f"has an unknown type: [{attr_type}]"]

        if messages:
            return messages

        if attribute.enum is not None and value not in attribute.enum:
            allowed = ", ".join(str(v) for v in attribute.enum)
            messages.append(f"Must be one of: {allowed}.")

        if attribute.format is not None:
            checker = _FORMAT_CHECKERS.get(attribute.format)
            if checker is None:
                messages.append(f"has an unknown format: [{attribute.format}]")
            elif not checker(str(value)):
                messages.append(f"Is not a valid {attribute.format}.")

        return messages

    @staticmethod
    def _check_range(attribute: AttributeSpec, value: float) -> list[str]:
        messages: list[str] = []
        minimum = attribute.minimum
        maximum = attribute.maximum

        if minimum is not None:
            if attribute.exclusive_minimum and value <= minimum:
                messages.append(f"Must be higher than {_fmt(minimum)}.")
            elif not attribute.exclusive_minimum and value < minimum:
                messages.append(f"Must be {_fmt(minimum)} or higher.")

        if maximum is not None:
            if attribute.exclusive_maximum and value >= maximum:
                messages.append(f"Must be lower than {_fmt(maximum)}.")
            elif not attribute.exclusive_maximum and value > maximum:
                messages.append(f"Must be {_fmt(maximum)} or lower.")

        multiple_of = attribute.multiple_of
        if multiple_of:
            remainder = abs(math.fmod(value, multiple_of))
            if not (
                math.isclose(remainder, 0, abs_tol=1e-9)
                or math.isclose(remainder, abs(multiple_of), abs_tol=1e-9)
            ):
                m = _fmt(multiple_of)
                messages.append(f"Must be a multiple of {m}, {_fmt(value)} is not a multiple of {m}.")

        return messages
