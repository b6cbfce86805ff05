"""Tests for the local page store."""

import pytest

from shared.db_operations import LocalStore
from shared.models import Page, SyncStatus


@pytest.fixture
def store():
    """Create a local store backed by in-memory SQLite."""
    db = LocalStore(database_url="sqlite:///:memory:")
    db.create_tables()
    return db


class TestPages:
    """Tests for page persistence."""

    def test_save_page_creates_pending_page(self, store):
        page = store.save_page("page-1", "hello", name="Notes")

        assert page.content == "hello"
        assert page.name == "Notes"
        assert page.pending_sync == 1
        assert page.sync_status == SyncStatus.PENDING
        assert page.created_at is not None
        assert page.last_modified is not None
        assert page.last_synced is None

    def test_save_page_updates_existing(self, store):
        first = store.save_page("page-1", "hello", name="Notes", order=3)
        store.mark_synced("page-1", "2024-01-01T00:00:00+00:00")

        second = store.save_page("page-1", "hello again")

        assert second.content == "hello again"
        assert second.name == "Notes"
        assert second.order == 3
        assert second.created_at == first.created_at
        assert second.pending_sync == 1

    def test_get_missing_page(self, store):
        assert store.get_page("nope") is None

    def test_put_page_upserts(self, store):
        store.put_page(Page(id="a", content="one", name="A"))
        store.put_page(Page(id="a", content="two", name="B", order=4))

        page = store.get_page("a")
        assert page.content == "two"
        assert page.name == "B"
        assert page.order == 4

    def test_update_page(self, store):
        store.save_page("a", "text")
        updated = store.update_page("a", name="Renamed", pending_sync=0)

        assert updated.name == "Renamed"
        assert updated.pending_sync == 0
        assert store.update_page("missing", name="x") is None

    def test_update_page_rejects_unknown_field(self, store):
        store.save_page("a", "text")
        with pytest.raises(ValueError):
            store.update_page("a", colour="red")

    def test_pending_pages_with_cursor(self, store):
        for page_id in ("c", "a", "b"):
            store.save_page(page_id, page_id)
        store.put_page(Page(id="d", content="synced", pending_sync=0))

        assert [p.id for p in store.get_pending_pages()] == ["a", "b", "c"]
        assert [p.id for p in store.get_pending_pages(above_id="a")] == ["b", "c"]

    def test_get_all_pages_by_order(self, store):
        store.put_page(Page(id="x", order=2))
        store.put_page(Page(id="y", order=1))
        store.put_page(Page(id="z", order=3))

        assert [p.id for p in store.get_all_pages()] == ["y", "x", "z"]

    def test_pages_modified_since(self, store):
        store.put_page(Page(id="old", last_modified="2024-01-01T00:00:00+00:00"))
        store.put_page(Page(id="new", last_modified="2024-06-01T00:00:00+00:00"))

        pages = store.get_pages_modified_since("2024-03-01T00:00:00+00:00")
        assert [p.id for p in pages] == ["new"]

    def test_mark_synced(self, store):
        page = store.save_page("a", "text")

        assert store.mark_synced("a", "2030-01-01T00:00:00+00:00", page.last_modified) is True

        synced = store.get_page("a")
        assert synced.pending_sync == 0
        assert synced.sync_status == SyncStatus.SYNCED
        assert synced.last_synced == "2030-01-01T00:00:00+00:00"

    def test_mark_synced_skips_page_edited_since_upload(self, store):
        store.save_page("a", "text")

        assert store.mark_synced("a", "2030-01-01T00:00:00+00:00", "1999-01-01T00:00:00+00:00") is False
        assert store.get_page("a").pending_sync == 1

    def test_delete_page(self, store):
        store.save_page("a", "text")
        assert store.delete_page("a") is True
        assert store.delete_page("a") is False
        assert store.get_page("a") is None


class TestMetadata:
    """Tests for metadata items and the deletion set."""

    def test_set_get_remove(self, store):
        assert store.get_item("lastSyncTime") is None
        assert store.get_item("lastSyncTime", "default") == "default"

        store.set_item("pendingSyncJob", {"jobId": "j1", "phase": "uploading"})
        assert store.get_item("pendingSyncJob") == {"jobId": "j1", "phase": "uploading"}

        store.set_item("pendingSyncJob", {"jobId": "j2"})
        assert store.get_item("pendingSyncJob") == {"jobId": "j2"}

        store.remove_item("pendingSyncJob")
        assert store.get_item("pendingSyncJob") is None

    def test_mark_page_deleted_tracks_id(self, store):
        store.save_page("a", "text")

        store.mark_page_deleted("a")

        assert store.get_page("a") is None
        assert store.get_deleted_page_ids() == {"a"}

    def test_clear_deleted_page_ids(self, store):
        for page_id in ("a", "b", "c"):
            store.add_deleted_page_id(page_id)

        store.clear_deleted_page_ids(["a", "c"])

        assert store.get_deleted_page_ids() == {"b"}
