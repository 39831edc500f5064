"""Per-file upload pipeline: store the blob, persist the record, analyze, finalize.

Stages advance strictly forward, one step at a time:

    pending -> uploading -> persisting -> analyzing -> completed

Any non-terminal stage may drop to ``failed``. Every transition is reported
to the optional stage listener as soon as it happens.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from bulk_engine import UnitOutcome
from collaborators import BlobStore, ImageAnalyzer, RecordStore, StoredObject
from errors import UnitError
from records import ImageRecord, utc_now_iso

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PERSISTING = "persisting"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STAGE_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETED, Stage.FAILED)


_STAGE_RANK = {
    Stage.PENDING: 0,
    Stage.UPLOADING: 1,
    Stage.PERSISTING: 2,
    Stage.ANALYZING: 3,
    Stage.COMPLETED: 4,
    Stage.FAILED: 4,
}


class InvalidTransitionError(ValueError):
    pass


def can_transition(current: Stage, target: Stage) -> bool:
    if current.is_terminal:
        return False
    if target is Stage.FAILED:
        return True
    return target.rank == current.rank + 1


@dataclass
class FileProgress:
    """Live progress of one file. Only `stage` changes until a terminal stage."""

    item_ref: str
    filename: str
    stage: Stage = Stage.PENDING
    result: Any = None
    error: Optional[str] = None

    def advance(self, stage: Stage, result: Any = None, error: Optional[str] = None) -> None:
        if not can_transition(self.stage, stage):
            raise InvalidTransitionError(f"{self.item_ref}: cannot move from {self.stage.value} to {stage.value}")
        self.stage = stage
        if stage is Stage.COMPLETED:
            self.result = result
        elif stage is Stage.FAILED:
            self.error = error or "Processing failed."

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_ref": self.item_ref,
            "filename": self.filename,
            "stage": self.stage.value,
            "result": self.result,
            "error": self.error,
        }


@dataclass(frozen=True)
class UploadItem:
    item_ref: str
    filename: str
    content_type: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)


StageListener = Callable[[str, Stage, Any, Optional[str]], None]


class UploadPipeline:
    """Runs the staged upload-and-analyze flow for a single file."""

    def __init__(self, blob_store: BlobStore, record_store: RecordStore, analyzer: ImageAnalyzer) -> None:
        self.blob_store = blob_store
        self.record_store = record_store
        self.analyzer = analyzer

    async def run(
        self,
        item: UploadItem,
        owner_id: str,
        *,
        tag_style: str = "neutral",
        listener: Optional[StageListener] = None,
    ) -> UnitOutcome:
        """Process one file. Never raises; failures become a failed outcome."""

        def emit(stage: Stage, result: Any = None, error: Optional[str] = None) -> None:
            if listener is not None:
                listener(item.item_ref, stage, result, error)

        def fail(exc: Exception, stage: Stage, **details: Any) -> UnitOutcome:
            unit_error = UnitError.from_exception(exc, stage=stage.value, **details)
            logger.warning(
                "upload_unit_failed item_ref=%s filename=%s stage=%s error=%s",
                item.item_ref,
                item.filename,
                stage.value,
                unit_error.message,
            )
            emit(Stage.FAILED, error=unit_error.message)
            return UnitOutcome.failed(item.item_ref, unit_error)

        emit(Stage.UPLOADING)
        try:
            stored: StoredObject = await self.blob_store.put(owner_id, item.filename, item.data, item.content_type)
        except Exception as exc:
            return fail(exc, Stage.UPLOADING)

        emit(Stage.PERSISTING)
        try:
            record = await self.record_store.create(
                owner_id,
                {
                    "filename": item.filename,
                    "file_path": stored.path,
                    "file_size": item.size,
                    "mime_type": item.content_type,
                    "public_url": stored.public_url,
                    "status": "processing",
                    "uploaded_at": utc_now_iso(),
                },
            )
        except Exception as exc:
            # The blob stays behind without a record.
            return fail(exc, Stage.PERSISTING, file_path=stored.path)

        emit(Stage.ANALYZING)
        try:
            analysis = await self.analyzer.analyze(stored.public_url, tag_style)
        except Exception as exc:
            await self._mark_analysis_failed(record, owner_id)
            return fail(exc, Stage.ANALYZING, record_id=record.id)

        try:
            enriched = await self.record_store.update(
                record.id,
                owner_id,
                {
                    "description": analysis.description,
                    "tags": analysis.tags,
                    "status": "completed",
                    "updated_at": utc_now_iso(),
                },
            )
        except Exception as exc:
            await self._mark_analysis_failed(record, owner_id)
            return fail(exc, Stage.ANALYZING, record_id=record.id)

        result = enriched.to_dict()
        emit(Stage.COMPLETED, result=result)
        return UnitOutcome.ok(item.item_ref, result)

    async def _mark_analysis_failed(self, record: ImageRecord, owner_id: str) -> None:
        """Flag the record as failed; description and tags stay empty."""
        try:
            await self.record_store.update(
                record.id, owner_id, {"status": "failed", "updated_at": utc_now_iso()}
            )
        except Exception as exc:
            logger.warning("Could not flag record %s as failed: %s", record.id, exc)
