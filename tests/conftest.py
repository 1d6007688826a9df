"""Shared pytest fixtures for eavgate tests."""

from pathlib import Path

import pytest

from eavgate.core.manifest import SourceConfig
from eavgate_back.runtime.api_cache import MirrorCache
from eavgate_back.runtime.repository import DatabaseManager, ObjectRepository
from eavgate_back.runtime.schema_registry import SchemaRegistry
from eavgate_back.specs import AttributeSpec, EntitySpec

SOURCE_URL = "https://zrc.example.org/api"


def make_entities(source: str | None = None) -> list[EntitySpec]:
    """Person with a nested Address and a cascading list of Pets."""
    address = EntitySpec(
        name="Address",
        source=source,
        endpoint="addresses",
        attributes=[
            AttributeSpec(name="street", type="string", required=True),
            AttributeSpec(name="number", type="integer", minimum=1),
        ],
    )
    pet = EntitySpec(
        name="Pet",
        source=source,
        endpoint="pets",
        attributes=[AttributeSpec(name="name", type="string", required=True)],
    )
    person = EntitySpec(
        name="Person",
        route="/api/people",
        source=source,
        endpoint="people",
        attributes=[
            AttributeSpec(name="name", type="string", required=True, max_length=50),
            AttributeSpec(name="email", type="string", format="email"),
            AttributeSpec(name="age", type="integer", minimum=0),
            AttributeSpec(name="tags", type="string", multiple=True, unique_items=True),
            AttributeSpec(name="address", type="object", target_entity="Address"),
            AttributeSpec(
                name="pets",
                type="object",
                target_entity="Pet",
                multiple=True,
                cascade_delete=True,
            ),
        ],
    )
    return [address, pet, person]


@pytest.fixture
def registry() -> SchemaRegistry:
    return SchemaRegistry(make_entities())


@pytest.fixture
def synced_registry() -> SchemaRegistry:
    """Same schemas, every entity mirrored to the ``zrc`` source."""
    return SchemaRegistry(make_entities(source="zrc"))


@pytest.fixture
def sources() -> dict[str, SourceConfig]:
    return {"zrc": SourceConfig(name="zrc", location=SOURCE_URL)}


@pytest.fixture
def repository(tmp_path: Path) -> ObjectRepository:
    return ObjectRepository(DatabaseManager(tmp_path / "data.db"))


@pytest.fixture
def cache(monkeypatch: pytest.MonkeyPatch) -> MirrorCache:
    """Mirror cache without Redis (in-process store)."""
    monkeypatch.delenv("REDIS_URL", raising=False)
    return MirrorCache(redis_url="")
