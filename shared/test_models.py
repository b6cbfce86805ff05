"""Unit tests for shared data models."""

from datetime import timezone

from shared.models import (
    EPOCH,
    Page,
    SyncCheckpoint,
    SyncErrorRecord,
    SyncPhase,
    Tombstone,
    parse_timestamp,
)


class TestPage:
    """Tests for Page dataclass."""

    def test_document_round_trip(self):
        page = Page(
            id="p1",
            content="ciphertext",
            name="Groceries",
            order=2,
            created_at="2024-01-01T00:00:00+00:00",
            last_modified="2024-01-02T00:00:00+00:00",
            is_encrypted=True,
        )

        document = page.to_document()
        assert document["lastModified"] == "2024-01-02T00:00:00+00:00"
        assert document["isEncrypted"] is True
        assert Page.from_document(document) == page

    def test_from_sparse_document(self):
        page = Page.from_document({"id": "p2"})

        assert page.content == ""
        assert page.order == 0
        assert page.pending_sync == 0
        assert page.is_encrypted is False

    def test_copy(self):
        page = Page(id="p1", content="a")
        other = page.copy(content="b")
        assert page.content == "a"
        assert other.content == "b"


class TestSyncCheckpoint:
    """Tests for SyncCheckpoint serialization."""

    def test_round_trip(self):
        checkpoint = SyncCheckpoint(
            job_id="job-1",
            phase=SyncPhase.UPLOADING,
            resume_token="page-9",
            processed_items=4,
            total_items=10,
            failed_items=["page-3"],
        )

        restored = SyncCheckpoint.from_dict(checkpoint.to_dict())
        assert restored == checkpoint

    def test_missing_phase(self):
        checkpoint = SyncCheckpoint.from_dict({"jobId": "job-2"})
        assert checkpoint.phase is None
        assert checkpoint.failed_items == []


class TestTimestamps:
    """Tests for timestamp helpers."""

    def test_parse_zulu(self):
        parsed = parse_timestamp("2024-03-01T10:00:00Z")
        assert parsed.tzinfo is not None
        assert parsed.hour == 10

    def test_parse_naive_as_utc(self):
        assert parse_timestamp("2024-03-01T10:00:00").tzinfo == timezone.utc

    def test_none_is_epoch(self):
        assert parse_timestamp(None) == parse_timestamp(EPOCH)


def test_tombstone_document():
    tombstone = Tombstone(page_id="p1", deleted_at="2024-01-01T00:00:00+00:00")
    assert Tombstone.from_document(tombstone.to_document()) == tombstone


def test_error_record_key():
    record = SyncErrorRecord(operation="decrypt", document_id=None, message="bad", timestamp=EPOCH)
    assert record.key == "decrypt:general"
    assert SyncErrorRecord.from_dict(record.to_dict()) == record
