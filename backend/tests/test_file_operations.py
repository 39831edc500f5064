"""Tests for record operations and their bulk variants."""

import pytest

from bulk_engine import OutcomeStatus
from errors import ExternalServiceError, InvalidItemError, NotFoundError
from file_operations import FileOperations, FileUpdate
from records import RecordPage, RecordQuery


@pytest.fixture
def operations(blob_store, record_store, analyzer):
    return FileOperations(blob_store, record_store, analyzer, concurrency=4)


class TestFileUpdate:
    def test_missing_id(self):
        with pytest.raises(InvalidItemError, match="File ID is required"):
            FileUpdate(id=None, filename="a.png").to_patch()

    def test_no_changes(self):
        with pytest.raises(InvalidItemError, match="No updates provided"):
            FileUpdate(id="abc").to_patch()

    def test_blank_filename(self):
        with pytest.raises(InvalidItemError, match="Filename cannot be empty"):
            FileUpdate(id="abc", filename="   ").to_patch()

    def test_patch_contains_only_requested_fields(self):
        patch = FileUpdate(id="abc", tags=["beach"]).to_patch()
        assert patch["tags"] == ["beach"]
        assert "filename" not in patch
        assert "updated_at" in patch


class TestSingleOperations:
    @pytest.mark.asyncio
    async def test_foreign_record_is_not_found(self, operations, record_store):
        record = record_store.seed("bob")
        with pytest.raises(NotFoundError, match="File not found or access denied"):
            await operations.get_file("alice", record.id)

    @pytest.mark.asyncio
    async def test_delete_removes_blob_then_record(self, operations, record_store, blob_store):
        record = record_store.seed("alice", filename="keep.png")

        deleted = await operations.delete_file("alice", record.id)

        assert deleted == {"id": record.id, "filename": "keep.png"}
        assert blob_store.deleted == [record.file_path]
        assert record.id not in record_store.rows

    @pytest.mark.asyncio
    async def test_analyze_uses_fresh_locator(self, operations, record_store, analyzer):
        record = record_store.seed("alice", description=None, tags=[])

        updated = await operations.analyze_file("alice", record.id, "seo")

        assert analyzer.calls == [(f"https://blobs.test/{record.file_path}?fresh=1", "seo")]
        assert updated["description"] == "A test image."
        assert updated["public_url"].endswith("?fresh=1")
        assert updated["has_ai_analysis"] is True

    @pytest.mark.asyncio
    async def test_analyze_failure_flags_record(self, operations, record_store, analyzer):
        record = record_store.seed("alice", file_path="images/alice/broken.png")
        analyzer.fail_markers.add("broken.png")

        with pytest.raises(ExternalServiceError):
            await operations.analyze_file("alice", record.id)

        assert record_store.rows[record.id]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_analyze_rejects_non_images(self, operations, record_store):
        record = record_store.seed("alice", filename="notes.pdf", mime_type="application/pdf")
        with pytest.raises(InvalidItemError, match="File is not an image"):
            await operations.analyze_file("alice", record.id)


class TestBulkOperations:
    @pytest.mark.asyncio
    async def test_bulk_delete_with_foreign_ids(self, operations, record_store):
        own = [record_store.seed("alice", filename=f"own-{i}.png") for i in range(3)]
        foreign = [record_store.seed("bob", filename=f"bob-{i}.png") for i in range(2)]
        ids = [own[0].id, foreign[0].id, own[1].id, foreign[1].id, own[2].id]

        outcome = await operations.bulk_delete("alice", ids)

        assert outcome.status is OutcomeStatus.PARTIAL
        assert len(outcome.succeeded) == 3
        assert len(outcome.failed) == 2
        assert {unit.item_ref for unit in outcome.failed} == {foreign[0].id, foreign[1].id}
        assert all(unit.error.message == "File not found or access denied" for unit in outcome.failed)
        assert all(record.id in record_store.rows for record in foreign)
        assert not any(record.id in record_store.rows for record in own)

    @pytest.mark.asyncio
    async def test_bulk_update_validates_each_item(self, operations, record_store):
        record = record_store.seed("alice", filename="old.png")
        updates = [
            FileUpdate(id=record.id, filename="new.png", tags=["renamed"]),
            FileUpdate(id=None, filename="orphan.png"),
            FileUpdate(id=record.id),
        ]

        outcome = await operations.bulk_update("alice", updates)

        assert outcome.status is OutcomeStatus.PARTIAL
        assert outcome.succeeded[0].result["filename"] == "new.png"
        messages = sorted(unit.error.message for unit in outcome.failed)
        assert messages == ["File ID is required", "No updates provided"]
        assert all(unit.error.code == "INVALID_ITEM" for unit in outcome.failed)

    @pytest.mark.asyncio
    async def test_bulk_regenerate_all_failed(self, operations, record_store):
        outcome = await operations.bulk_regenerate("alice", ["missing-1", "missing-2"], "playful")

        assert outcome.status is OutcomeStatus.FAILURE
        assert outcome.total_requested == 2
        assert all(unit.error.code == "NOT_FOUND" for unit in outcome.failed)

    @pytest.mark.asyncio
    async def test_bulk_regenerate_success(self, operations, record_store, analyzer):
        records = [record_store.seed("alice") for _ in range(3)]

        outcome = await operations.bulk_regenerate("alice", [r.id for r in records], "neutral")

        assert outcome.status is OutcomeStatus.SUCCESS
        assert len(analyzer.calls) == 3


class TestRecordQuery:
    def test_unknown_sort_column(self):
        with pytest.raises(ValueError, match="sort_by"):
            RecordQuery(sort_by="password")

    def test_offset_and_pagination(self):
        query = RecordQuery(page=2, per_page=2)
        assert query.offset == 2

        pagination = RecordPage(records=[], total=5, page=2, per_page=2).pagination()
        assert pagination == {
            "current_page": 2,
            "per_page": 2,
            "total_items": 5,
            "total_pages": 3,
            "has_next_page": True,
            "has_prev_page": True,
            "next_page": 3,
            "prev_page": 1,
        }


class TestListingAndStats:
    @pytest.mark.asyncio
    async def test_listing_is_owner_scoped_and_paged(self, operations, record_store):
        for name in ("a.png", "b.png", "c.png"):
            record_store.seed("alice", filename=name)
        record_store.seed("bob", filename="theirs.png")

        first = await operations.list_files("alice", RecordQuery(sort_by="filename", descending=False, per_page=2))
        second = await operations.list_files(
            "alice", RecordQuery(sort_by="filename", descending=False, page=2, per_page=2)
        )

        assert [record.filename for record in first.records] == ["a.png", "b.png"]
        assert [record.filename for record in second.records] == ["c.png"]
        assert first.total == second.total == 3
        assert second.pagination()["has_next_page"] is False

    @pytest.mark.asyncio
    async def test_status_and_search_filters(self, operations, record_store):
        record_store.seed("alice", filename="beach.png", description="Waves at sunset", tags=["ocean"])
        record_store.seed("alice", filename="city.png", status="failed")
        record_store.seed("alice", filename="forest.png", tags=["Trees", "SUNSET"])

        failed = await operations.list_files("alice", RecordQuery(status="failed"))
        sunset = await operations.list_files("alice", RecordQuery(search="sunset", sort_by="filename"))

        assert [record.filename for record in failed.records] == ["city.png"]
        assert sorted(record.filename for record in sunset.records) == ["beach.png", "forest.png"]
        assert sunset.total == 2

    @pytest.mark.asyncio
    async def test_stats_cover_every_record(self, operations, record_store):
        record_store.seed("alice", filename="a.png", description="A cat.", file_size=1024 * 1024)
        record_store.seed("alice", filename="b.png", status="failed", file_size=1024 * 1024)
        record_store.seed("alice", filename="notes.txt", mime_type="text/plain", file_size=0)
        record_store.seed("alice", filename="blob", mime_type=None, file_size=None)
        record_store.seed("bob", filename="theirs.png")

        stats = await operations.get_stats("alice")

        assert stats["total_files"] == 4
        assert stats["files_with_ai_analysis"] == 1
        assert stats["status_distribution"] == {"completed": 3, "failed": 1}
        assert stats["file_type_distribution"] == {"image": 2, "text": 1, "unknown": 1}
        assert stats["storage_usage"]["total_bytes"] == 2 * 1024 * 1024
        assert stats["storage_usage"]["total_mb"] == 2.0
        assert stats["storage_usage"]["human_readable"] == "2.0 MB"
