"""Tests for the SQLite object repository."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from eavgate_back.runtime.object_graph import ObjectArena, ObjectEntity
from eavgate_back.runtime.repository import DatabaseManager, ObjectRepository
from eavgate_back.runtime.schema_registry import SchemaRegistry
from eavgate_back.runtime.validator import Validator
from eavgate_back.specs import AttributeSpec, EntitySpec


def _person(registry: SchemaRegistry, payload: dict) -> tuple[ObjectArena, int]:
    arena = ObjectArena()
    index = arena.add(ObjectEntity(entity="Person", organization="org-1"))
    obj = Validator(registry).validate(arena, index, payload)
    assert not obj.has_errors, obj.errors
    return arena, index


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestDatabaseManager:
    def test_creates_tables_and_parent_dir(self, tmp_path: Path) -> None:
        db = DatabaseManager(tmp_path / "nested" / "data.db")
        ObjectRepository(db)

        with db.connection() as conn:
            tables = {
                row["name"]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }
        assert {"object_entities", "object_values", "object_value_links"} <= tables

    def test_connection_rolls_back_on_error(self, tmp_path: Path) -> None:
        db = DatabaseManager(tmp_path / "data.db")
        db.create_tables()

        with pytest.raises(RuntimeError):
            with db.connection() as conn:
                conn.execute(
                    "INSERT INTO object_entities (id, entity, date_created, date_modified) "
                    "VALUES ('x', 'Person', '2024-01-01', '2024-01-01')"
                )
                raise RuntimeError("abort")

        with db.connection() as conn:
            assert conn.execute("SELECT COUNT(*) FROM object_entities").fetchone()[0] == 0


# ---------------------------------------------------------------------------
# Save / load
# ---------------------------------------------------------------------------


class TestSaveLoad:
    def test_nested_graph_round_trip(
        self, registry: SchemaRegistry, repository: ObjectRepository
    ) -> None:
        arena, index = _person(
            registry,
            {
                "name": "Ada",
                "age": 36,
                "tags": ["math"],
                "address": {"street": "Main", "number": 12},
                "pets": [{"name": "Rex"}, {"name": "Tom"}],
            },
        )
        obj = arena.get(index)

        repository.save(arena, index)
        loaded_arena, loaded_index = repository.load(obj.id)
        loaded = loaded_arena.get(loaded_index)

        assert loaded.id == obj.id
        assert loaded.organization == "org-1"
        assert loaded.is_new is False
        assert loaded.values["name"].scalar == "Ada"
        assert loaded.values["age"].scalar == 36
        assert loaded.values["tags"].scalar == ["math"]
        assert loaded.values["email"].scalar is None
        address = loaded_arena.children(loaded, "address")
        assert [a.values["street"].scalar for a in address] == ["Main"]
        pets = loaded_arena.children(loaded, "pets")
        assert [p.values["name"].scalar for p in pets] == ["Rex", "Tom"]
        assert loaded_arena.parent_of(pets[0]) is loaded

    def test_save_marks_objects_stored(
        self, registry: SchemaRegistry, repository: ObjectRepository
    ) -> None:
        arena, index = _person(registry, {"name": "Ada", "pets": [{"name": "Rex"}]})
        repository.save(arena, index)
        assert all(not obj.is_new for obj in arena)

    def test_resave_updates_in_place(
        self, registry: SchemaRegistry, repository: ObjectRepository
    ) -> None:
        arena, index = _person(registry, {"name": "Ada"})
        repository.save(arena, index)
        Validator(registry).validate(arena, index, {"name": "Ada L."})
        repository.save(arena, index)

        loaded_arena, loaded_index = repository.load(arena.get(index).id)
        assert loaded_arena.get(loaded_index).values["name"].scalar == "Ada L."
        assert repository.count("Person") == 1

    def test_load_unknown_returns_none(self, repository: ObjectRepository) -> None:
        assert repository.load("5f0a2c1e-9c1b-4c55-9a53-2f3c1d2e4b6a") is None

    def test_cyclic_graph(self, repository: ObjectRepository) -> None:
        registry = SchemaRegistry(
            [
                EntitySpec(
                    name="Node",
                    attributes=[
                        AttributeSpec(name="label", type="string"),
                        AttributeSpec(name="next", type="object", target_entity="Node"),
                    ],
                )
            ]
        )
        attribute = registry.get_attribute("Node", "next")
        arena = ObjectArena()
        a = arena.add(ObjectEntity(entity="Node"))
        b = arena.add(ObjectEntity(entity="Node"))
        arena.get(a).get_value(attribute).set_objects([b])
        arena.get(b).get_value(attribute).set_objects([a])

        repository.save(arena, a)
        loaded_arena, loaded_index = repository.load(arena.get(a).id)

        assert len(loaded_arena) == 2
        first = loaded_arena.get(loaded_index)
        second = loaded_arena.children(first, "next")[0]
        assert loaded_arena.children(second, "next")[0] is first


# ---------------------------------------------------------------------------
# Sync state
# ---------------------------------------------------------------------------


class TestSyncState:
    def test_update_sync_state(self, registry: SchemaRegistry, repository: ObjectRepository) -> None:
        arena, index = _person(registry, {"name": "Ada"})
        repository.save(arena, index)
        obj = arena.get(index)
        obj.uri = "https://zrc.example.org/api/people/9"
        obj.external_id = "9"
        obj.external_result = {"id": 9}
        obj.add_error("gateway endpoint on Person said", "late")

        repository.update_sync_state(arena, index)

        loaded_arena, loaded_index = repository.load(obj.id)
        loaded = loaded_arena.get(loaded_index)
        assert loaded.uri == "https://zrc.example.org/api/people/9"
        assert loaded.external_result == {"id": 9}
        assert loaded.errors == {"gateway endpoint on Person said": ["late"]}

    def test_find_by_external_id(self, registry: SchemaRegistry, repository: ObjectRepository) -> None:
        arena, index = _person(registry, {"name": "Ada"})
        obj = arena.get(index)
        obj.external_id = "9"
        repository.save(arena, index)

        assert repository.find_by_id_or_external_id(obj.id) == {"id": obj.id, "entity": "Person"}
        assert repository.find_by_id_or_external_id("9") == {"id": obj.id, "entity": "Person"}
        assert repository.find_by_id_or_external_id("10") is None


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    def test_find_by_value(self, registry: SchemaRegistry, repository: ObjectRepository) -> None:
        ids = {}
        for name, age in (("Ada", 36), ("Bob", 36), ("Cy", 20)):
            arena, index = _person(registry, {"name": name, "age": age})
            repository.save(arena, index)
            ids[name] = arena.get(index).id

        assert set(repository.find_by_value("Person", {"age": 36})) == {ids["Ada"], ids["Bob"]}
        assert repository.find_by_value("Person", {"age": 36, "name": "Bob"}) == [ids["Bob"]]
        assert repository.find_by_value("Person", {"name": "Nobody"}) == []
        assert len(repository.find_by_value("Person")) == 3
        assert len(repository.find_by_value("Person", limit=2)) == 2
        assert len(repository.find_by_value("Person", limit=2, offset=2)) == 1

    def test_count_with_filters(self, registry: SchemaRegistry, repository: ObjectRepository) -> None:
        for name, age in (("Ada", 36), ("Bob", 36), ("Cy", 20)):
            arena, index = _person(registry, {"name": name, "age": age})
            repository.save(arena, index)

        assert repository.count("Person", {"age": 36}) == 2
        assert repository.count("Person", {"age": 36, "name": "Cy"}) == 0
        assert repository.count("Person", {}) == 3

    def test_count_per_entity(self, registry: SchemaRegistry, repository: ObjectRepository) -> None:
        arena, index = _person(registry, {"name": "Ada", "pets": [{"name": "Rex"}]})
        repository.save(arena, index)
        assert repository.count("Person") == 1
        assert repository.count("Pet") == 1
        assert repository.count("Address") == 0


# ---------------------------------------------------------------------------
# Deletes
# ---------------------------------------------------------------------------


class TestDeletes:
    def test_delete_removes_values_and_links(
        self, registry: SchemaRegistry, repository: ObjectRepository
    ) -> None:
        arena, index = _person(registry, {"name": "Ada", "pets": [{"name": "Rex"}]})
        repository.save(arena, index)
        person_id = arena.get(index).id

        assert repository.delete(person_id) is True
        assert repository.delete(person_id) is False

        with repository.db.connection() as conn:
            values = conn.execute(
                "SELECT COUNT(*) FROM object_values WHERE object_id = ?", (person_id,)
            ).fetchone()[0]
            links = conn.execute("SELECT COUNT(*) FROM object_value_links").fetchone()[0]
        assert values == 0
        assert links == 0
        # The child row itself is left for the caller to cascade
        assert repository.count("Pet") == 1

    def test_deleted_child_drops_out_of_parent(
        self, registry: SchemaRegistry, repository: ObjectRepository
    ) -> None:
        arena, index = _person(registry, {"name": "Ada", "pets": [{"name": "Rex"}, {"name": "Tom"}]})
        repository.save(arena, index)
        rex = arena.children(arena.get(index), "pets")[0]

        repository.delete(rex.id)

        loaded_arena, loaded_index = repository.load(arena.get(index).id)
        pets = loaded_arena.children(loaded_arena.get(loaded_index), "pets")
        assert [p.values["name"].scalar for p in pets] == ["Tom"]

    def test_detach_attribute(self, registry: SchemaRegistry, repository: ObjectRepository) -> None:
        arena, index = _person(registry, {"name": "Ada", "age": 3})
        repository.save(arena, index)

        assert repository.detach_attribute("Person", "age") == 1
        assert repository.detach_attribute("Pet", "age") == 0

        loaded_arena, loaded_index = repository.load(arena.get(index).id)
        assert "age" not in loaded_arena.get(loaded_index).values


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TestTransaction:
    def test_rollback_discards_every_call(
        self, registry: SchemaRegistry, repository: ObjectRepository
    ) -> None:
        first, first_index = _person(registry, {"name": "Ada"})
        second, second_index = _person(registry, {"name": "Bob"})

        with pytest.raises(sqlite3.IntegrityError):
            with repository.transaction() as conn:
                repository.save(first, first_index)
                repository.save(second, second_index)
                conn.execute(
                    "INSERT INTO object_entities (id, entity, date_created, date_modified) "
                    "VALUES (?, 'Person', 'x', 'x')",
                    (first.get(first_index).id,),
                )

        assert repository.count("Person") == 0

    def test_nested_transaction_joins_outer(self, repository: ObjectRepository) -> None:
        with repository.transaction() as outer:
            with repository.transaction() as inner:
                assert inner is outer
