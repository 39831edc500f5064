"""Tests for the per-file upload pipeline and its stage machine."""

import pytest

from bulk_engine import OutcomeStatus, run_bulk
from upload_pipeline import (
    FileProgress,
    InvalidTransitionError,
    Stage,
    UploadItem,
    UploadPipeline,
    can_transition,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def _item(ref: str, filename: str) -> UploadItem:
    return UploadItem(item_ref=ref, filename=filename, content_type="image/png", data=PNG_BYTES)


class TestStageMachine:
    def test_forward_one_step_only(self):
        assert can_transition(Stage.PENDING, Stage.UPLOADING)
        assert can_transition(Stage.ANALYZING, Stage.COMPLETED)
        assert not can_transition(Stage.PENDING, Stage.PERSISTING)
        assert not can_transition(Stage.ANALYZING, Stage.UPLOADING)

    def test_any_live_stage_may_fail(self):
        for stage in (Stage.PENDING, Stage.UPLOADING, Stage.PERSISTING, Stage.ANALYZING):
            assert can_transition(stage, Stage.FAILED)

    def test_terminal_stages_are_final(self):
        progress = FileProgress(item_ref="file-1", filename="a.png", stage=Stage.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            progress.advance(Stage.FAILED, error="late")

    def test_failed_stage_records_error(self):
        progress = FileProgress(item_ref="file-1", filename="a.png")
        progress.advance(Stage.FAILED)
        assert progress.error == "Processing failed."
        assert progress.to_dict()["stage"] == "failed"


class TestUploadPipeline:
    @pytest.mark.asyncio
    async def test_successful_file_reports_every_stage(self, blob_store, record_store, analyzer):
        events = []
        pipeline = UploadPipeline(blob_store, record_store, analyzer)

        outcome = await pipeline.run(
            _item("file-1", "cat.png"),
            "alice",
            tag_style="playful",
            listener=lambda ref, stage, result, error: events.append((ref, stage)),
        )

        assert outcome.success
        assert [stage for _, stage in events] == [
            Stage.UPLOADING,
            Stage.PERSISTING,
            Stage.ANALYZING,
            Stage.COMPLETED,
        ]
        assert outcome.result["description"] == "A test image."
        assert outcome.result["status"] == "completed"
        assert outcome.result["user_id"] == "alice"
        assert analyzer.calls[0][1] == "playful"
        assert len(blob_store.objects) == 1

    @pytest.mark.asyncio
    async def test_storage_failure_stops_before_persisting(self, blob_store, record_store, analyzer):
        blob_store.fail_filenames.add("broken.png")
        events = []
        pipeline = UploadPipeline(blob_store, record_store, analyzer)

        outcome = await pipeline.run(
            _item("file-1", "broken.png"),
            "alice",
            listener=lambda ref, stage, result, error: events.append((stage, error)),
        )

        assert not outcome.success
        assert outcome.error.details["stage"] == "uploading"
        assert [stage for stage, _ in events] == [Stage.UPLOADING, Stage.FAILED]
        assert "upload rejected" in events[-1][1]
        assert record_store.rows == {}

    @pytest.mark.asyncio
    async def test_analysis_failure_keeps_record_without_caption(self, blob_store, record_store, analyzer):
        analyzer.fail_markers.add("name=blurry.png")
        pipeline = UploadPipeline(blob_store, record_store, analyzer)

        outcome = await pipeline.run(_item("file-1", "blurry.png"), "alice")

        assert not outcome.success
        assert outcome.error.details["stage"] == "analyzing"
        record_id = outcome.error.details["record_id"]
        row = record_store.rows[record_id]
        assert row["status"] == "failed"
        assert row.get("description") is None
        assert not row.get("tags")

    @pytest.mark.asyncio
    async def test_failed_caption_write_marks_record_failed(self, blob_store, record_store, analyzer):
        original_update = record_store.update

        async def update(record_id, owner_id, patch):
            if "description" in patch:
                raise RuntimeError("database write timed out")
            return await original_update(record_id, owner_id, patch)

        record_store.update = update
        pipeline = UploadPipeline(blob_store, record_store, analyzer)

        outcome = await pipeline.run(_item("file-1", "cat.png"), "alice")

        assert not outcome.success
        assert outcome.error.details["stage"] == "analyzing"
        row = record_store.rows[outcome.error.details["record_id"]]
        assert row["status"] == "failed"
        assert row.get("description") is None

    @pytest.mark.asyncio
    async def test_three_file_batch_with_one_analysis_failure(self, blob_store, record_store, analyzer):
        analyzer.fail_markers.add("name=b.png")
        pipeline = UploadPipeline(blob_store, record_store, analyzer)
        items = [_item("file-1", "a.png"), _item("file-2", "b.png"), _item("file-3", "c.png")]

        async def upload(item):
            return await pipeline.run(item, "alice")

        outcome = await run_bulk(items, upload)

        assert outcome.status is OutcomeStatus.PARTIAL
        assert sorted(unit.item_ref for unit in outcome.succeeded) == ["file-1", "file-3"]
        assert [unit.item_ref for unit in outcome.failed] == ["file-2"]
        assert len(record_store.rows) == 3
