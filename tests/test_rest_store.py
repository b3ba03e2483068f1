"""Tests for the PostgREST backend, against a mock transport."""

import json

import httpx
import pytest

from shelf.errors import StoreError, StoreTimeout
from shelf.protocol import lt, prefix
from shelf.rest_store import RestStore, build_params


def make_store(handler):
    return RestStore(
        "https://db.example.com", "key123",
        transport=httpx.MockTransport(handler),
    )


class TestBuildParams:

    def test_operators(self):
        params = build_params({
            "status": "pending",
            "bucket": ["Todos", 'Say "hi"'],
            "phase_id": None,
            "created_at": lt("2026-01-01T00:00:00"),
            "title": prefix("50% done"),
            "metadata.hash": "abc",
            "is_parent": True,
        })
        assert params == [
            ("status", "eq.pending"),
            ("bucket", 'in.("Todos","Say \\"hi\\"")'),
            ("phase_id", "is.null"),
            ("created_at", "lt.2026-01-01T00:00:00"),
            ("title", "ilike.50\\% done*"),
            ("metadata->>hash", "eq.abc"),
            ("is_parent", "eq.true"),
        ]


class TestRestStore:

    def test_select_sends_query_and_auth(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(200, json=[{"id": "1"}])

        rows = make_store(handler).select(
            "todos", {"status": "open"}, columns=["id", "title"],
            order="created_at", descending=True, limit=5,
        )

        assert rows == [{"id": "1"}]
        assert seen["url"].path == "/rest/v1/todos"
        assert seen["url"].params.get("select") == "id,title"
        assert seen["url"].params.get("status") == "eq.open"
        assert seen["url"].params.get("order") == "created_at.desc"
        assert seen["url"].params.get("limit") == "5"
        assert seen["auth"] == "Bearer key123"

    def test_count_reads_content_range(self):
        def handler(request):
            assert request.method == "HEAD"
            assert request.headers["prefer"] == "count=exact"
            return httpx.Response(200, headers={"content-range": "0-9/42"})

        assert make_store(handler).count("sessions") == 42

    def test_insert_returns_representation(self):
        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(201, json=[{**body, "id": "new"}])

        row = make_store(handler).insert("bugs", {"title": "t"})
        assert row == {"title": "t", "id": "new"}

    def test_update_counts_returned_rows(self):
        def handler(request):
            assert request.method == "PATCH"
            assert request.url.params.get("status") == "eq.pending"
            return httpx.Response(200, json=[{"id": "a"}])

        assert make_store(handler).update("extractions", {"status": "pending"},
                                          {"status": "processed"}) == 1

    def test_update_requires_filters(self):
        with pytest.raises(ValueError):
            make_store(lambda r: httpx.Response(200, json=[])).update("todos", {}, {"x": 1})

    def test_delete_chunks_ids(self):
        calls = []

        def handler(request):
            calls.append(request.url.params.get("id"))
            return httpx.Response(200, json=[{}] * request.url.params.get("id").count(","))

        deleted = make_store(handler).delete("sessions", [f"id{i}" for i in range(250)])

        assert len(calls) == 2
        assert deleted == 199 + 49

    def test_http_error_becomes_store_error(self):
        def handler(request):
            return httpx.Response(400, json={"message": "column missing"})

        with pytest.raises(StoreError, match="todos: column missing"):
            make_store(handler).select("todos")

    def test_timeout_becomes_store_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(StoreTimeout):
            make_store(handler).get("todos", "x")

    def test_plain_http_refused_for_remote_hosts(self):
        with pytest.raises(ValueError, match="HTTPS"):
            RestStore("http://db.example.com", "key")
        RestStore("http://localhost:54321", "key").close()
