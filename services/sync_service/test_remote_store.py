"""Tests for the remote store clients."""

import json

import httpx
import pytest

from shared.errors import RemoteStoreError
from shared.models import Tombstone, encode_page_cursor
from services.sync_service.remote_store import HttpRemoteStore, InMemoryRemoteStore

USER_ID = "user-1"


def doc(page_id, last_modified, content="x"):
    return {"id": page_id, "content": content, "lastModified": last_modified}


class TestInMemoryRemoteStore:
    @pytest.fixture
    def store(self):
        return InMemoryRemoteStore()

    @pytest.mark.asyncio
    async def test_query_orders_by_modification_then_id(self, store):
        await store.batch_write(USER_ID, upserts=[
            doc("b", "2024-01-02T00:00:00+00:00"),
            doc("a", "2024-01-02T00:00:00+00:00"),
            doc("c", "2024-01-01T00:00:00+00:00"),
        ])

        results = await store.query_pages(USER_ID, modified_after="1970-01-01T00:00:00+00:00", limit=10)

        assert [d["id"] for d in results] == ["c", "a", "b"]

    @pytest.mark.asyncio
    async def test_query_filters_by_timestamp(self, store):
        await store.batch_write(USER_ID, upserts=[
            doc("old", "2024-01-01T00:00:00+00:00"),
            doc("new", "2024-03-01T00:00:00Z"),
        ])

        results = await store.query_pages(USER_ID, modified_after="2024-02-01T00:00:00+00:00", limit=10)

        assert [d["id"] for d in results] == ["new"]

    @pytest.mark.asyncio
    async def test_query_cursor_pages_through_results(self, store):
        await store.batch_write(USER_ID, upserts=[
            doc(f"p{i}", f"2024-01-0{i + 1}T00:00:00+00:00") for i in range(5)
        ])

        first = await store.query_pages(USER_ID, "1970-01-01T00:00:00+00:00", limit=2)
        cursor = encode_page_cursor(first[-1]["lastModified"], first[-1]["id"])
        second = await store.query_pages(USER_ID, "1970-01-01T00:00:00+00:00", limit=2, start_after=cursor)
        malformed = await store.query_pages(USER_ID, "1970-01-01T00:00:00+00:00", limit=2, start_after="p1")

        assert [d["id"] for d in first] == ["p0", "p1"]
        assert [d["id"] for d in second] == ["p2", "p3"]
        assert [d["id"] for d in malformed] == ["p0", "p1"]

    @pytest.mark.asyncio
    async def test_cursor_position_survives_edit_of_its_document(self, store):
        await store.batch_write(USER_ID, upserts=[
            doc(f"p{i}", f"2024-01-0{i + 1}T00:00:00+00:00") for i in range(5)
        ])
        cursor = encode_page_cursor("2024-01-02T00:00:00+00:00", "p1")

        await store.batch_write(USER_ID, upserts=[doc("p1", "2024-02-01T00:00:00+00:00")])
        results = await store.query_pages(USER_ID, "1970-01-01T00:00:00+00:00", limit=10, start_after=cursor)

        assert [d["id"] for d in results] == ["p2", "p3", "p4", "p1"]

    @pytest.mark.asyncio
    async def test_users_are_isolated(self, store):
        await store.batch_write(USER_ID, upserts=[doc("a", "2024-01-01T00:00:00+00:00")])

        assert await store.get_page("someone-else", "a") is None
        assert (await store.get_page(USER_ID, "a"))["id"] == "a"

    @pytest.mark.asyncio
    async def test_batch_write_applies_deletes_and_tombstones(self, store):
        await store.batch_write(USER_ID, upserts=[doc("a", "2024-01-01T00:00:00+00:00")])
        tombstone = Tombstone(page_id="a", deleted_at="2024-01-05T00:00:00+00:00")

        await store.batch_write(USER_ID, deletes=["a"], tombstones=[tombstone])

        assert store.documents(USER_ID) == {}
        assert await store.query_tombstones(USER_ID, "2024-01-01T00:00:00+00:00") == [tombstone]
        assert await store.query_tombstones(USER_ID, "2024-01-06T00:00:00+00:00") == []

    @pytest.mark.asyncio
    async def test_failed_batch_write_changes_nothing(self, store):
        store.fail_next("batch_write")

        with pytest.raises(RemoteStoreError) as exc_info:
            await store.batch_write(USER_ID, upserts=[doc("a", "2024-01-01T00:00:00+00:00")])

        assert exc_info.value.status_code == 503
        assert store.documents(USER_ID) == {}

        await store.batch_write(USER_ID, upserts=[doc("a", "2024-01-01T00:00:00+00:00")])
        assert "a" in store.documents(USER_ID)

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self, store):
        await store.batch_write(USER_ID, upserts=[doc("a", "2024-01-01T00:00:00+00:00", content="original")])

        fetched = await store.get_page(USER_ID, "a")
        fetched["content"] = "mutated"

        assert store.documents(USER_ID)["a"]["content"] == "original"


class TestHttpRemoteStore:
    @pytest.mark.asyncio
    async def test_query_pages_sends_cursor_and_auth(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            captured["params"] = dict(request.url.params)
            captured["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"documents": [doc("a", "2024-01-01T00:00:00+00:00")]})

        store = HttpRemoteStore("https://remote.test/v1/", api_token="secret",
                                transport=httpx.MockTransport(handler))

        results = await store.query_pages(USER_ID, "2024-01-01T00:00:00+00:00", limit=25,
                                         start_after=encode_page_cursor("2024-01-01T00:00:00Z", "z"))
        await store.close()

        assert [d["id"] for d in results] == ["a"]
        assert captured["path"] == "/v1/users/user-1/pages"
        assert captured["params"] == {
            "modifiedAfter": "2024-01-01T00:00:00+00:00",
            "limit": "25",
            "startAfterModified": "2024-01-01T00:00:00+00:00",
            "startAfterId": "z",
        }
        assert captured["auth"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_get_page_returns_none_on_404(self):
        store = HttpRemoteStore("https://remote.test",
                                transport=httpx.MockTransport(lambda request: httpx.Response(404)))

        assert await store.get_page(USER_ID, "missing") is None
        await store.close()

    @pytest.mark.asyncio
    async def test_batch_write_serializes_tombstones(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={})

        store = HttpRemoteStore("https://remote.test", transport=httpx.MockTransport(handler))
        tombstone = Tombstone(page_id="a", deleted_at="2024-01-05T00:00:00+00:00")

        await store.batch_write(USER_ID, deletes=["a"], tombstones=[tombstone])
        await store.close()

        assert bodies == [{
            "upserts": [],
            "deletes": ["a"],
            "tombstones": [{"pageId": "a", "deletedAt": "2024-01-05T00:00:00+00:00"}],
        }]

    @pytest.mark.asyncio
    async def test_error_status_raises_remote_store_error(self):
        store = HttpRemoteStore("https://remote.test",
                                transport=httpx.MockTransport(lambda request: httpx.Response(500, text="down")))

        with pytest.raises(RemoteStoreError) as exc_info:
            await store.query_tombstones(USER_ID, "2024-01-01T00:00:00+00:00")
        await store.close()

        assert exc_info.value.status_code == 500
        assert "down" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_query_tombstones_parses_documents(self):
        payload = {"documents": [{"pageId": "a", "deletedAt": "2024-01-05T00:00:00+00:00"}]}
        store = HttpRemoteStore("https://remote.test",
                                transport=httpx.MockTransport(lambda request: httpx.Response(200, json=payload)))

        tombstones = await store.query_tombstones(USER_ID, "2024-01-01T00:00:00+00:00")
        await store.close()

        assert tombstones == [Tombstone(page_id="a", deleted_at="2024-01-05T00:00:00+00:00")]
