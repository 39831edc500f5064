"""Record-level operations and their synchronous bulk variants."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from bulk_engine import BatchOutcome, as_unit_operation, run_bulk
from collaborators import BlobStore, ImageAnalyzer, RecordStore
from errors import ExternalServiceError, InvalidItemError, NotFoundError
from records import ImageRecord, RecordPage, RecordQuery, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileUpdate:
    id: Optional[str]
    filename: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None

    def to_patch(self) -> Dict[str, Any]:
        """Validate the requested changes and return the record patch."""
        if not self.id:
            raise InvalidItemError("File ID is required")
        if self.filename is None and self.description is None and self.tags is None:
            raise InvalidItemError("No updates provided", {"id": self.id})

        patch: Dict[str, Any] = {"updated_at": utc_now_iso()}
        if self.filename is not None:
            filename = self.filename.strip()
            if not filename:
                raise InvalidItemError("Filename cannot be empty", {"id": self.id})
            patch["filename"] = filename
        if self.description is not None:
            patch["description"] = self.description
        if self.tags is not None:
            patch["tags"] = list(self.tags)
        return patch


class FileOperations:
    """Owner-scoped operations on stored images."""

    def __init__(
        self,
        blob_store: BlobStore,
        record_store: RecordStore,
        analyzer: ImageAnalyzer,
        *,
        concurrency: Optional[int] = None,
    ) -> None:
        self.blob_store = blob_store
        self.record_store = record_store
        self.analyzer = analyzer
        self.concurrency = concurrency

    async def get_file(self, owner_id: str, file_id: str) -> ImageRecord:
        record = await self.record_store.find_by_id(file_id, owner_id)
        if record is None:
            raise NotFoundError(details={"id": file_id})
        return record

    async def list_files(self, owner_id: str, query: RecordQuery) -> RecordPage:
        page = await self.record_store.list_records(owner_id, query)
        logger.info(
            "files_listed owner=%s total=%s page=%s returned=%s", owner_id, page.total, page.page, len(page.records)
        )
        return page

    async def get_stats(self, owner_id: str) -> Dict[str, Any]:
        """Summarize status, file type and storage use across all of the owner's records."""
        page = await self.record_store.list_records(owner_id, RecordQuery(per_page=None))
        status_distribution: Dict[str, int] = {}
        type_distribution: Dict[str, int] = {}
        total_bytes = 0
        for record in page.records:
            status_distribution[record.status] = status_distribution.get(record.status, 0) + 1
            kind = record.mime_type.split("/")[0] if record.mime_type else "unknown"
            type_distribution[kind] = type_distribution.get(kind, 0) + 1
            total_bytes += record.file_size or 0

        total_mb = round(total_bytes / (1024 * 1024), 2)
        total_gb = round(total_bytes / (1024 * 1024 * 1024), 2)
        return {
            "total_files": len(page.records),
            "files_with_ai_analysis": sum(1 for record in page.records if record.has_ai_analysis),
            "status_distribution": status_distribution,
            "file_type_distribution": type_distribution,
            "storage_usage": {
                "total_bytes": total_bytes,
                "total_mb": total_mb,
                "total_gb": total_gb,
                "human_readable": f"{total_gb} GB" if total_gb > 1 else f"{total_mb} MB",
            },
            "timestamp": utc_now_iso(),
        }

    async def update_file(self, owner_id: str, update: FileUpdate) -> Dict[str, Any]:
        patch = update.to_patch()
        await self.get_file(owner_id, update.id or "")
        updated = await self.record_store.update(update.id or "", owner_id, patch)
        return updated.to_dict()

    async def delete_file(self, owner_id: str, file_id: str) -> Dict[str, Any]:
        """Delete the blob, then the record."""
        record = await self.get_file(owner_id, file_id)
        await self.blob_store.delete(record.file_path)
        await self.record_store.delete(record.id, owner_id)
        logger.info("file_deleted owner=%s id=%s filename=%s", owner_id, record.id, record.filename)
        return {"id": record.id, "filename": record.filename}

    async def analyze_file(self, owner_id: str, file_id: str, tag_style: str = "neutral") -> Dict[str, Any]:
        """Re-run AI analysis for an existing record against a fresh locator."""
        record = await self.get_file(owner_id, file_id)
        if not record.is_image:
            raise InvalidItemError("File is not an image", {"id": file_id})

        fresh_url = await self.blob_store.public_url_of(record.file_path)
        try:
            analysis = await self.analyzer.analyze(fresh_url, tag_style)
        except Exception as exc:
            try:
                await self.record_store.update(record.id, owner_id, {"status": "failed", "updated_at": utc_now_iso()})
            except Exception as update_exc:
                logger.warning("Could not flag record %s as failed: %s", record.id, update_exc)
            if isinstance(exc, ExternalServiceError):
                raise
            raise ExternalServiceError("AI", str(exc)) from exc

        updated = await self.record_store.update(
            record.id,
            owner_id,
            {
                "description": analysis.description,
                "tags": analysis.tags,
                "public_url": fresh_url,
                "status": "completed",
                "updated_at": utc_now_iso(),
            },
        )
        logger.info("file_analyzed owner=%s id=%s tag_style=%s", owner_id, record.id, analysis.tag_style)
        return updated.to_dict()

    async def bulk_update(self, owner_id: str, updates: Sequence[FileUpdate]) -> BatchOutcome:
        operation = as_unit_operation(
            lambda update: self.update_file(owner_id, update),
            item_ref=lambda update: update.id,
            operation_name="bulk_update",
        )
        return await run_bulk(updates, operation, concurrency=self.concurrency)

    async def bulk_delete(self, owner_id: str, file_ids: Sequence[str]) -> BatchOutcome:
        operation = as_unit_operation(
            lambda file_id: self.delete_file(owner_id, file_id),
            item_ref=lambda file_id: file_id,
            operation_name="bulk_delete",
        )
        return await run_bulk(file_ids, operation, concurrency=self.concurrency)

    async def bulk_regenerate(self, owner_id: str, file_ids: Sequence[str], tag_style: str = "neutral") -> BatchOutcome:
        operation = as_unit_operation(
            lambda file_id: self.analyze_file(owner_id, file_id, tag_style),
            item_ref=lambda file_id: file_id,
            operation_name="bulk_regenerate",
        )
        return await run_bulk(file_ids, operation, concurrency=self.concurrency)
