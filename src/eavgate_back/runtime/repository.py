"""
Object repository - SQLite persistence for the object graph.

Stores objects in three generic tables instead of one table per entity:

- ``object_entities``: one row per object (identity, ownership, sync state)
- ``object_values``: one row per (object, attribute); scalars as JSON
- ``object_value_links``: ordered links from an object-typed value to the
  nested objects it holds

A whole mutation is written inside one ``transaction()``; synchronization
results are written afterwards with ``update_sync_state``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from eavgate_back.runtime.object_graph import ObjectArena, ObjectEntity, Value

logger = logging.getLogger(__name__)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS object_entities (
    id TEXT PRIMARY KEY,
    entity TEXT NOT NULL,
    uri TEXT,
    external_id TEXT,
    organization TEXT,
    application TEXT,
    owner TEXT,
    subresource_of TEXT,
    subresource_attribute TEXT,
    errors TEXT NOT NULL DEFAULT '{}',
    external_result TEXT,
    date_created TEXT NOT NULL,
    date_modified TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_object_entities_entity ON object_entities (entity);
CREATE INDEX IF NOT EXISTS idx_object_entities_external_id ON object_entities (external_id);

CREATE TABLE IF NOT EXISTS object_values (
    id TEXT PRIMARY KEY,
    object_id TEXT NOT NULL REFERENCES object_entities (id) ON DELETE CASCADE,
    attribute TEXT NOT NULL,
    is_object INTEGER NOT NULL DEFAULT 0,
    scalar TEXT,
    UNIQUE (object_id, attribute)
);
CREATE INDEX IF NOT EXISTS idx_object_values_lookup ON object_values (attribute, scalar);

CREATE TABLE IF NOT EXISTS object_value_links (
    value_id TEXT NOT NULL REFERENCES object_values (id) ON DELETE CASCADE,
    child_id TEXT NOT NULL REFERENCES object_entities (id) ON DELETE CASCADE
        DEFERRABLE INITIALLY DEFERRED,
    position INTEGER NOT NULL,
    PRIMARY KEY (value_id, child_id)
);
"""


def _now() -> datetime:
    return datetime.now(UTC)


def _dump(value: Any) -> str:
    return json.dumps(value, default=str)


def _load_json(raw: str | None) -> Any:
    return json.loads(raw) if raw else None


def _filter_joins(filters: dict[str, Any] | None) -> tuple[str, list[Any]]:
    """One join on object_values per filtered attribute, scalar equality."""
    joins = ""
    params: list[Any] = []
    for i, (attribute, value) in enumerate((filters or {}).items()):
        joins += (
            f" JOIN object_values v{i} ON v{i}.object_id = o.id"
            f" AND v{i}.attribute = ? AND v{i}.scalar = ?"
        )
        params.extend([attribute, _dump(value)])
    return joins, params


# =============================================================================
# Database Manager
# =============================================================================


class DatabaseManager:
    """
    Manages the SQLite database file and its schema.
    """

    def __init__(self, db_path: str | Path = ".eavgate/data.db"):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """
        Get a database connection context manager.

        Commits on success, rolls back when the block raises.

        Yields:
            SQLite connection
        """
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def create_tables(self) -> None:
        """Create the object tables if they do not exist."""
        with self.connection() as conn:
            conn.executescript(_SCHEMA)


# =============================================================================
# Object Repository
# =============================================================================


class ObjectRepository:
    """
    Load and store object graphs.

    Args:
        db: Database manager; tables are created on construction.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db
        self.db.create_tables()
        self._conn: sqlite3.Connection | None = None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run several repository calls in one transaction.

        Nested calls join the outer transaction.
        """
        if self._conn is not None:
            yield self._conn
            return
        with self.db.connection() as conn:
            self._conn = conn
            try:
                yield conn
            finally:
                self._conn = None

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._conn is not None:
            yield self._conn
        else:
            with self.db.connection() as conn:
                yield conn

    # =========================================================================
    # Writes
    # =========================================================================

    def save(self, arena: ObjectArena, index: int) -> None:
        """Upsert an object together with all nested objects attached to it."""
        # Children before parents so links always point at existing rows
        objects = list(reversed(arena.graph(index)))
        with self._connection() as conn:
            for obj in objects:
                self._save_object(conn, arena, obj)
        logger.debug("Saved %d object(s) for %s", len(objects), arena.get(index).id)

    def _save_object(self, conn: sqlite3.Connection, arena: ObjectArena, obj: ObjectEntity) -> None:
        obj.date_modified = _now()
        parent = arena.parent_of(obj)
        parent_id = parent.id if parent is not None else None
        parent_attribute = obj.subresource_of[1] if obj.subresource_of else None

        conn.execute(
            """
            INSERT INTO object_entities (
                id, entity, uri, external_id, organization, application, owner,
                subresource_of, subresource_attribute, errors, external_result,
                date_created, date_modified
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                uri = excluded.uri,
                external_id = excluded.external_id,
                subresource_of = excluded.subresource_of,
                subresource_attribute = excluded.subresource_attribute,
                errors = excluded.errors,
                external_result = excluded.external_result,
                date_modified = excluded.date_modified
            """,
            (
                obj.id,
                obj.entity,
                obj.uri,
                obj.external_id,
                obj.organization,
                obj.application,
                obj.owner,
                parent_id,
                parent_attribute,
                _dump(obj.errors),
                _dump(obj.external_result) if obj.external_result is not None else None,
                obj.date_created.isoformat(),
                obj.date_modified.isoformat(),
            ),
        )

        for value in obj.values.values():
            scalar = None if value.is_object else _dump(value.scalar)
            conn.execute(
                """
                INSERT INTO object_values (id, object_id, attribute, is_object, scalar)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (object_id, attribute) DO UPDATE SET
                    is_object = excluded.is_object,
                    scalar = excluded.scalar
                """,
                (value.id, obj.id, value.attribute, int(value.is_object), scalar),
            )
            row = conn.execute(
                "SELECT id FROM object_values WHERE object_id = ? AND attribute = ?",
                (obj.id, value.attribute),
            ).fetchone()
            value.id = row["id"]

            if value.is_object:
                conn.execute("DELETE FROM object_value_links WHERE value_id = ?", (value.id,))
                conn.executemany(
                    "INSERT INTO object_value_links (value_id, child_id, position) VALUES (?, ?, ?)",
                    [
                        (value.id, arena.get(ref).id, position)
                        for position, ref in enumerate(value.object_refs)
                    ],
                )

        obj.is_new = False

    def update_sync_state(self, arena: ObjectArena, index: int) -> None:
        """
        Write synchronization results (URIs, external ids, errors).

        Runs as its own follow-up transaction after the mutation committed.
        """
        with self._connection() as conn:
            for obj in arena.graph(index):
                conn.execute(
                    """
                    UPDATE object_entities
                    SET uri = ?, external_id = ?, errors = ?, external_result = ?, date_modified = ?
                    WHERE id = ?
                    """,
                    (
                        obj.uri,
                        obj.external_id,
                        _dump(obj.errors),
                        _dump(obj.external_result) if obj.external_result is not None else None,
                        _now().isoformat(),
                        obj.id,
                    ),
                )

    def delete(self, object_id: str) -> bool:
        """Delete one object; its values and links go with it."""
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM object_entities WHERE id = ?", (object_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted object %s", object_id)
        return deleted

    def detach_attribute(self, entity: str, attribute: str) -> int:
        """Delete every stored value of an attribute. Returns the number removed."""
        with self._connection() as conn:
            cursor = conn.execute(
                """
                DELETE FROM object_values
                WHERE attribute = ?
                AND object_id IN (SELECT id FROM object_entities WHERE entity = ?)
                """,
                (attribute, entity),
            )
            return cursor.rowcount

    # =========================================================================
    # Reads
    # =========================================================================

    def find_by_id_or_external_id(self, identifier: str) -> dict[str, Any] | None:
        """Find an object row by local id, falling back to the external id."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT id, entity FROM object_entities WHERE id = ?", (identifier,)
            ).fetchone()
            if row is None:
                row = conn.execute(
                    "SELECT id, entity FROM object_entities WHERE external_id = ?",
                    (identifier,),
                ).fetchone()
        return dict(row) if row is not None else None

    def find_by_value(
        self,
        entity: str,
        filters: dict[str, Any] | None = None,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> list[str]:
        """
        Ids of objects of ``entity`` whose scalar values equal all ``filters``.

        Without filters every object of the entity is listed (oldest first).
        """
        joins, params = _filter_joins(filters)
        sql = (
            f"SELECT o.id FROM object_entities o{joins}"
            " WHERE o.entity = ? ORDER BY o.date_created, o.id LIMIT ? OFFSET ?"
        )
        params.extend([entity, limit, offset])

        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [row["id"] for row in rows]

    def count(self, entity: str, filters: dict[str, Any] | None = None) -> int:
        """Number of objects of ``entity`` matching ``filters`` (see ``find_by_value``)."""
        joins, params = _filter_joins(filters)
        params.append(entity)
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS n FROM object_entities o{joins} WHERE o.entity = ?", params
            ).fetchone()
        return int(row["n"])

    def load(self, object_id: str, arena: ObjectArena | None = None) -> tuple[ObjectArena, int] | None:
        """
        Load an object and its nested objects into an arena.

        Objects already in the arena are reused, so reference cycles between
        stored objects terminate.

        Returns:
            ``(arena, index)`` or ``None`` if no such object exists.
        """
        arena = arena if arena is not None else ObjectArena()
        with self._connection() as conn:
            index = self._load(conn, object_id, arena, None)
        if index is None:
            return None
        return arena, index

    def _load(
        self,
        conn: sqlite3.Connection,
        object_id: str,
        arena: ObjectArena,
        parent: tuple[int, str] | None,
    ) -> int | None:
        existing = arena.find(object_id)
        if existing is not None:
            return existing

        row = conn.execute("SELECT * FROM object_entities WHERE id = ?", (object_id,)).fetchone()
        if row is None:
            return None

        obj = ObjectEntity(
            entity=row["entity"],
            id=row["id"],
            uri=row["uri"],
            external_id=row["external_id"],
            organization=row["organization"],
            application=row["application"],
            owner=row["owner"],
            errors=_load_json(row["errors"]) or {},
            subresource_of=parent,
            external_result=_load_json(row["external_result"]),
            date_created=datetime.fromisoformat(row["date_created"]),
            date_modified=datetime.fromisoformat(row["date_modified"]),
            is_new=False,
        )
        index = arena.add(obj)

        value_rows = conn.execute(
            "SELECT id, attribute, is_object, scalar FROM object_values WHERE object_id = ?",
            (object_id,),
        ).fetchall()
        for value_row in value_rows:
            value = Value(
                attribute=value_row["attribute"],
                is_object=bool(value_row["is_object"]),
                id=value_row["id"],
            )
            obj.values[value.attribute] = value
            if not value.is_object:
                value.scalar = _load_json(value_row["scalar"])
                continue

            links = conn.execute(
                "SELECT child_id FROM object_value_links WHERE value_id = ? ORDER BY position",
                (value.id,),
            ).fetchall()
            for link in links:
                child_index = self._load(conn, link["child_id"], arena, (index, value.attribute))
                if child_index is not None:
                    value.object_refs.append(child_index)

        return index
