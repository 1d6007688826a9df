"""Tests for outbound synchronization."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from eavgate.core.errors import SchemaError
from eavgate.core.manifest import SourceConfig
from eavgate_back.runtime.api_cache import MirrorCache
from eavgate_back.runtime.object_graph import ObjectArena, ObjectEntity
from eavgate_back.runtime.schema_registry import SchemaRegistry
from eavgate_back.runtime.synchronizer import Synchronizer, SyncResult, sync_error_key
from eavgate_back.runtime.validator import Validator
from eavgate_back.specs import AttributeSpec, EntitySpec

BASE = "http://gw.test/api/v1/eav"
SOURCE = "https://zrc.example.org/api"


def _run(coro: Any) -> Any:
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _response(status: int, data: Any = None, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    if data is None:
        resp.content = text.encode()
        resp.json = MagicMock(side_effect=ValueError("no json"))
    else:
        resp.content = json.dumps(data).encode()
        resp.json = MagicMock(return_value=data)
    resp.text = text
    return resp


def _returns(resp: MagicMock) -> Callable[..., Any]:
    return lambda *args, **kwargs: resp


def _mock_client(side_effect: Any) -> MagicMock:
    """An httpx.AsyncClient stand-in; ``side_effect`` answers (or raises for) ``request``."""
    mock_client = MagicMock()
    mock_client.request = AsyncMock(side_effect=side_effect)
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


def _synchronizer(registry: SchemaRegistry, cache: MirrorCache) -> Synchronizer:
    sources = {"zrc": SourceConfig(name="zrc", location=SOURCE)}
    return Synchronizer(registry, sources, cache, BASE)


async def _validate_and_sync(
    registry: SchemaRegistry,
    synchronizer: Synchronizer,
    payload: dict[str, Any],
    entity: str = "Person",
    obj: ObjectEntity | None = None,
) -> tuple[ObjectArena, ObjectEntity]:
    arena = ObjectArena()
    index = arena.add(obj or ObjectEntity(entity=entity))
    result = Validator(registry, synchronizer).validate(arena, index, payload)
    await synchronizer.await_all(arena)
    return arena, result


async def _sync_outcome(
    registry: SchemaRegistry, synchronizer: Synchronizer, payload: dict[str, Any]
) -> tuple[ObjectEntity, SyncResult]:
    arena = ObjectArena()
    index = arena.add(ObjectEntity(entity="Person"))
    person = Validator(registry, synchronizer).validate(arena, index, payload)
    task = person.pending
    assert task is not None
    await synchronizer.await_all(arena)
    return person, task.result()


# ---------------------------------------------------------------------------
# Ordering and payloads
# ---------------------------------------------------------------------------


class TestOrdering:
    @patch("eavgate_back.runtime.synchronizer.httpx.AsyncClient")
    def test_child_settles_before_parent_request(
        self, mock_client_cls: MagicMock, synced_registry: SchemaRegistry, cache: MirrorCache
    ) -> None:
        calls: list[tuple[str, str, dict[str, Any]]] = []

        async def handler(method: str, url: str, json: Any = None, headers: Any = None) -> Any:
            calls.append((method, url, json))
            await asyncio.sleep(0)
            if url.endswith("/addresses"):
                return _response(201, {"id": "a1", "street": "Main"})
            return _response(201, {"id": "p1"})

        mock_client_cls.return_value = _mock_client(handler)
        synchronizer = _synchronizer(synced_registry, cache)

        arena, person = _run(
            _validate_and_sync(
                synced_registry, synchronizer, {"name": "Ada", "address": {"street": "Main"}}
            )
        )

        assert [url for _, url, _ in calls] == [f"{SOURCE}/addresses", f"{SOURCE}/people"]
        parent_payload = calls[1][2]
        assert parent_payload["address"] == f"{SOURCE}/addresses/a1"
        assert parent_payload["pets"] == []
        assert not person.has_errors
        assert person.uri == f"{SOURCE}/people/p1"
        assert person.external_id == "p1"
        [address] = arena.children(person, "address")
        assert address.uri == f"{SOURCE}/addresses/a1"
        assert address.external_result == {"id": "a1", "street": "Main"}

    @patch("eavgate_back.runtime.synchronizer.httpx.AsyncClient")
    def test_task_result_describes_call(
        self, mock_client_cls: MagicMock, synced_registry: SchemaRegistry, cache: MirrorCache
    ) -> None:
        mock_client_cls.return_value = _mock_client(_returns(_response(201, {"id": "p1"})))
        synchronizer = _synchronizer(synced_registry, cache)

        person, outcome = _run(_sync_outcome(synced_registry, synchronizer, {"name": "Ada"}))

        assert outcome == SyncResult(
            object_id=person.id,
            entity="Person",
            method="POST",
            url=f"{SOURCE}/people",
            status_code=201,
            success=True,
        )
        assert not any(isinstance(v, list) for v in vars(synchronizer).values())

    @patch("eavgate_back.runtime.synchronizer.httpx.AsyncClient")
    def test_successful_response_cached(
        self, mock_client_cls: MagicMock, synced_registry: SchemaRegistry, cache: MirrorCache
    ) -> None:
        mock_client_cls.return_value = _mock_client(
            _returns(_response(201, {"id": "p1", "name": "Ada"}))
        )
        synchronizer = _synchronizer(synced_registry, cache)

        _run(_validate_and_sync(synced_registry, synchronizer, {"name": "Ada"}))

        assert _run(cache.get(f"{SOURCE}/people/p1")) == {"id": "p1", "name": "Ada"}

    @patch("eavgate_back.runtime.synchronizer.httpx.AsyncClient")
    def test_known_uri_is_updated_with_put(
        self, mock_client_cls: MagicMock, synced_registry: SchemaRegistry, cache: MirrorCache
    ) -> None:
        mock_client = _mock_client(_returns(_response(200, {"id": "p1"})))
        mock_client_cls.return_value = mock_client
        synchronizer = _synchronizer(synced_registry, cache)
        existing = ObjectEntity(entity="Person", uri=f"{SOURCE}/people/p1", is_new=False)

        _, person = _run(
            _validate_and_sync(synced_registry, synchronizer, {"name": "Ada"}, obj=existing)
        )

        args = mock_client.request.call_args
        assert args.args[:2] == ("PUT", f"{SOURCE}/people/p1")
        assert person.uri == f"{SOURCE}/people/p1"

    def test_payload_skips_local_only_attributes(self, cache: MirrorCache) -> None:
        registry = SchemaRegistry(
            [
                EntitySpec(
                    name="Case",
                    source="zrc",
                    attributes=[
                        AttributeSpec(name="title", type="string"),
                        AttributeSpec(name="notes", type="string", persist_to_source=False),
                    ],
                )
            ]
        )
        arena = ObjectArena()
        index = arena.add(ObjectEntity(entity="Case"))
        Validator(registry).validate(arena, index, {"title": "t", "notes": "internal"})

        payload = _synchronizer(registry, cache).build_payload(
            arena, index, registry.get_entity("Case")
        )
        assert payload == {"title": "t"}

    def test_payload_uses_local_uri_for_unsynced_children(
        self, registry: SchemaRegistry, cache: MirrorCache
    ) -> None:
        arena = ObjectArena()
        index = arena.add(ObjectEntity(entity="Person"))
        Validator(registry).validate(arena, index, {"name": "Ada", "pets": [{"name": "Rex"}]})
        [rex] = arena.children(arena.get(index), "pets")

        payload = _synchronizer(registry, cache).build_payload(
            arena, index, registry.get_entity("Person")
        )
        assert payload["pets"] == [rex.local_uri(BASE)]
        assert payload["address"] is None


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    @patch("eavgate_back.runtime.synchronizer.httpx.AsyncClient")
    def test_transport_error_becomes_object_error(
        self, mock_client_cls: MagicMock, synced_registry: SchemaRegistry, cache: MirrorCache
    ) -> None:
        mock_client_cls.return_value = _mock_client(
            httpx.ConnectError("connection refused")
        )
        synchronizer = _synchronizer(synced_registry, cache)

        person, outcome = _run(_sync_outcome(synced_registry, synchronizer, {"name": "Ada"}))

        assert person.errors == {sync_error_key("Person"): ["connection refused"]}
        assert person.uri is None
        assert outcome.success is False
        assert outcome.error == "connection refused"

    @patch("eavgate_back.runtime.synchronizer.httpx.AsyncClient")
    def test_timeout_does_not_abort_siblings(
        self, mock_client_cls: MagicMock, synced_registry: SchemaRegistry, cache: MirrorCache
    ) -> None:
        async def handler(method: str, url: str, json: Any = None, headers: Any = None) -> Any:
            if url.endswith("/pets") and json["name"] == "Slow":
                raise httpx.ReadTimeout("timed out")
            return _response(201, {"id": json["name"]})

        mock_client_cls.return_value = _mock_client(handler)
        synchronizer = _synchronizer(synced_registry, cache)

        arena, person = _run(
            _validate_and_sync(
                synced_registry,
                synchronizer,
                {"name": "Ada", "pets": [{"name": "Slow"}, {"name": "Rex"}]},
            )
        )

        slow, rex = arena.children(person, "pets")
        assert slow.errors == {sync_error_key("Pet"): ["timed out"]}
        assert rex.uri == f"{SOURCE}/pets/Rex"
        assert person.uri == f"{SOURCE}/people/Ada"
        assert arena.collect_errors(person.index) == {
            "pets": [{sync_error_key("Pet"): ["timed out"]}]
        }

    @patch("eavgate_back.runtime.synchronizer.httpx.AsyncClient")
    def test_remote_error_message_extracted(
        self, mock_client_cls: MagicMock, synced_registry: SchemaRegistry, cache: MirrorCache
    ) -> None:
        mock_client_cls.return_value = _mock_client(
            _returns(_response(400, {"@type": "hydra:Error", "hydra:description": "bsn is invalid"}))
        )
        synchronizer = _synchronizer(synced_registry, cache)

        person, outcome = _run(_sync_outcome(synced_registry, synchronizer, {"name": "Ada"}))

        assert person.errors == {sync_error_key("Person"): ["bsn is invalid"]}
        assert outcome.status_code == 400

    @patch("eavgate_back.runtime.synchronizer.httpx.AsyncClient")
    def test_remote_error_without_json_uses_text(
        self, mock_client_cls: MagicMock, synced_registry: SchemaRegistry, cache: MirrorCache
    ) -> None:
        mock_client_cls.return_value = _mock_client(
            _returns(_response(502, text="Bad Gateway"))
        )
        synchronizer = _synchronizer(synced_registry, cache)

        _, person = _run(_validate_and_sync(synced_registry, synchronizer, {"name": "Ada"}))

        assert person.errors == {sync_error_key("Person"): ["Bad Gateway"]}

    @patch("eavgate_back.runtime.synchronizer.httpx.AsyncClient")
    def test_unparsable_success_body_is_an_error(
        self, mock_client_cls: MagicMock, synced_registry: SchemaRegistry, cache: MirrorCache
    ) -> None:
        mock_client_cls.return_value = _mock_client(
            _returns(_response(200, text="<html>ok</html>"))
        )
        synchronizer = _synchronizer(synced_registry, cache)

        _, person = _run(_validate_and_sync(synced_registry, synchronizer, {"name": "Ada"}))

        assert person.errors == {
            sync_error_key("Person"): [f"Could not parse the response of {SOURCE}/people"]
        }

    def test_unknown_source_raises(self, cache: MirrorCache) -> None:
        registry = SchemaRegistry([EntitySpec(name="Case", source="nowhere")])
        synchronizer = _synchronizer(registry, cache)

        async def scenario() -> None:
            arena = ObjectArena()
            index = arena.add(ObjectEntity(entity="Case"))
            synchronizer.sync(arena, index)

        with pytest.raises(SchemaError, match="unknown source nowhere"):
            _run(scenario())


# ---------------------------------------------------------------------------
# Discard
# ---------------------------------------------------------------------------


class TestDiscard:
    @patch("eavgate_back.runtime.synchronizer.httpx.AsyncClient")
    def test_discarded_tasks_never_call_out(
        self, mock_client_cls: MagicMock, synced_registry: SchemaRegistry, cache: MirrorCache
    ) -> None:
        mock_client = _mock_client(_returns(_response(201, {"id": "x"})))
        mock_client_cls.return_value = mock_client
        synchronizer = _synchronizer(synced_registry, cache)

        async def scenario() -> int:
            arena = ObjectArena()
            index = arena.add(ObjectEntity(entity="Person"))
            Validator(synced_registry, synchronizer).validate(
                arena, index, {"name": "Ada", "address": {"street": "Main"}}
            )
            cancelled = synchronizer.discard(arena)
            await asyncio.sleep(0)
            assert arena.pending_tasks() == []
            return cancelled

        assert _run(scenario()) == 2
        mock_client.request.assert_not_called()


# ---------------------------------------------------------------------------
# Auth headers
# ---------------------------------------------------------------------------


class TestAuthHeaders:
    def test_bearer(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ZRC_TOKEN", "secret")
        source = SourceConfig(name="zrc", location=SOURCE, auth="bearer", credentials=["ZRC_TOKEN"])
        headers = Synchronizer._resolve_auth_headers(source)
        assert headers["Authorization"] == "Bearer secret"
        assert headers["Content-Type"] == "application/json"

    def test_apikey_and_extra_headers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ZRC_KEY", "k-123")
        source = SourceConfig(
            name="zrc",
            location=SOURCE,
            auth="apikey",
            credentials=["ZRC_KEY"],
            headers={"Accept-Crs": "EPSG:4326"},
        )
        headers = Synchronizer._resolve_auth_headers(source)
        assert headers["Authorization"] == "k-123"
        assert headers["Accept-Crs"] == "EPSG:4326"

    def test_basic(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ZRC_USER", "user")
        monkeypatch.setenv("ZRC_PASS", "pass")
        source = SourceConfig(
            name="zrc", location=SOURCE, auth="basic", credentials=["ZRC_USER", "ZRC_PASS"]
        )
        headers = Synchronizer._resolve_auth_headers(source)
        assert headers["Authorization"] == "Basic dXNlcjpwYXNz"

    def test_none(self) -> None:
        headers = Synchronizer._resolve_auth_headers(SourceConfig(name="zrc", location=SOURCE))
        assert "Authorization" not in headers


# ---------------------------------------------------------------------------
# Remote delete
# ---------------------------------------------------------------------------


class TestDeleteRemote:
    @patch("eavgate_back.runtime.synchronizer.httpx.AsyncClient")
    def test_delete_remote(
        self, mock_client_cls: MagicMock, synced_registry: SchemaRegistry, cache: MirrorCache
    ) -> None:
        mock_client = _mock_client(_returns(_response(204)))
        mock_client_cls.return_value = mock_client
        obj = ObjectEntity(entity="Person", uri=f"{SOURCE}/people/p1")

        assert _run(_synchronizer(synced_registry, cache).delete_remote(obj)) is True
        assert mock_client.request.call_args.args == ("DELETE", f"{SOURCE}/people/p1")

    def test_nothing_to_delete_without_uri(
        self, synced_registry: SchemaRegistry, cache: MirrorCache
    ) -> None:
        obj = ObjectEntity(entity="Person")
        assert _run(_synchronizer(synced_registry, cache).delete_remote(obj)) is True
