"""Supabase client helpers for storage, metadata persistence and auth."""

from __future__ import annotations

import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any, Dict, Optional

from supabase import Client, create_client

from collaborators import StoredObject, run_blocking
from errors import ConfigurationError, ExternalServiceError, NotFoundError
from records import ImageRecord, RecordPage, RecordQuery
from utils.filenames import generate_storage_path

logger = logging.getLogger(__name__)


@dataclass
class SupabaseConfig:
    url: str
    key: str
    bucket: str = "uploads"
    table: str = "uploaded_files"


class SupabaseService:
    """Owns the Supabase client and verifies user access tokens.

    The SDK is blocking, so every call is dispatched to `executor`.
    """

    def __init__(
        self,
        config: SupabaseConfig,
        executor: Optional[Executor] = None,
        client: Optional[Client] = None,
    ) -> None:
        self.config = config
        self.executor = executor
        self.client: Optional[Client] = client
        if self.client is None and config.url and config.key:
            self.client = create_client(config.url, config.key)
        self.enabled = self.client is not None

    def require_client(self) -> Client:
        if not self.enabled or not self.client:
            raise ConfigurationError("Supabase is not configured.")
        return self.client

    def _verify_sync(self, credential: str) -> Optional[str]:
        client = self.require_client()
        try:
            response = client.auth.get_user(credential)
        except Exception as exc:
            logger.info("Token verification rejected: %s", exc)
            return None
        user = getattr(response, "user", None) if response else None
        return str(user.id) if user and getattr(user, "id", None) else None

    async def verify(self, credential: str) -> Optional[str]:
        """Return the owner id for a valid access token, else None."""
        if not credential:
            return None
        return await run_blocking(self.executor, self._verify_sync, credential)

    def health_snapshot(self) -> Dict[str, Any]:
        """Return non-sensitive service readiness flags."""
        return {
            "supabase_enabled": self.enabled,
            "bucket": self.config.bucket,
            "table": self.config.table,
        }


class SupabaseBlobStore:
    """Blob store backed by a Supabase storage bucket."""

    def __init__(self, service: SupabaseService) -> None:
        self.service = service

    def _bucket(self) -> Any:
        return self.service.require_client().storage.from_(self.service.config.bucket)

    def _put_sync(self, owner_id: str, filename: str, data: bytes, content_type: str) -> StoredObject:
        bucket = self._bucket()
        path = generate_storage_path(filename, owner_id)
        try:
            bucket.upload(
                path=path,
                file=data,
                file_options={"content-type": content_type, "cache-control": "3600", "upsert": "false"},
            )
        except Exception as exc:
            raise ExternalServiceError("Storage", f"upload failed for {path}: {exc}") from exc
        return StoredObject(path=path, public_url=bucket.get_public_url(path))

    async def put(self, owner_id: str, filename: str, data: bytes, content_type: str) -> StoredObject:
        return await run_blocking(self.service.executor, self._put_sync, owner_id, filename, data, content_type)

    def _delete_sync(self, path: str) -> None:
        try:
            self._bucket().remove([path])
        except Exception as exc:
            raise ExternalServiceError("Storage", f"delete failed for {path}: {exc}") from exc

    async def delete(self, path: str) -> None:
        await run_blocking(self.service.executor, self._delete_sync, path)

    async def public_url_of(self, path: str) -> str:
        return self._bucket().get_public_url(path)


class SupabaseRecordStore:
    """Record store on the records table. Every query is filtered by owner."""

    def __init__(self, service: SupabaseService) -> None:
        self.service = service

    def _table(self) -> Any:
        return self.service.require_client().table(self.service.config.table)

    def _create_sync(self, owner_id: str, metadata: Dict[str, Any]) -> ImageRecord:
        row = dict(metadata)
        row["user_id"] = owner_id
        try:
            response = self._table().insert(row).execute()
        except Exception as exc:
            raise ExternalServiceError("Database", f"insert failed: {exc}") from exc
        if not response.data:
            raise ExternalServiceError("Database", "insert returned no record.")
        return ImageRecord.from_row(response.data[0])

    async def create(self, owner_id: str, metadata: Dict[str, Any]) -> ImageRecord:
        return await run_blocking(self.service.executor, self._create_sync, owner_id, metadata)

    def _find_sync(self, record_id: str, owner_id: str) -> Optional[ImageRecord]:
        try:
            response = (
                self._table().select("*").eq("id", record_id).eq("user_id", owner_id).limit(1).execute()
            )
        except Exception as exc:
            raise ExternalServiceError("Database", f"lookup failed: {exc}") from exc
        if not response.data:
            return None
        return ImageRecord.from_row(response.data[0])

    async def find_by_id(self, record_id: str, owner_id: str) -> Optional[ImageRecord]:
        return await run_blocking(self.service.executor, self._find_sync, record_id, owner_id)

    def _update_sync(self, record_id: str, owner_id: str, patch: Dict[str, Any]) -> ImageRecord:
        try:
            response = self._table().update(patch).eq("id", record_id).eq("user_id", owner_id).execute()
        except Exception as exc:
            raise ExternalServiceError("Database", f"update failed: {exc}") from exc
        if not response.data:
            raise NotFoundError(details={"id": record_id})
        return ImageRecord.from_row(response.data[0])

    async def update(self, record_id: str, owner_id: str, patch: Dict[str, Any]) -> ImageRecord:
        return await run_blocking(self.service.executor, self._update_sync, record_id, owner_id, patch)

    def _delete_sync(self, record_id: str, owner_id: str) -> None:
        try:
            response = self._table().delete().eq("id", record_id).eq("user_id", owner_id).execute()
        except Exception as exc:
            raise ExternalServiceError("Database", f"delete failed: {exc}") from exc
        if not response.data:
            raise NotFoundError(details={"id": record_id})

    async def delete(self, record_id: str, owner_id: str) -> None:
        await run_blocking(self.service.executor, self._delete_sync, record_id, owner_id)

    def _list_sync(self, owner_id: str, query: RecordQuery) -> RecordPage:
        request = self._table().select("*", count="exact").eq("user_id", owner_id)
        if query.status:
            request = request.eq("status", query.status)
        if query.images_only:
            request = request.like("mime_type", "image/%")
        request = request.order(query.sort_by, desc=query.descending)
        # Search runs on the fetched rows, so only plain listings are paged server-side.
        paged = query.per_page is not None and not query.search
        if paged:
            request = request.range(query.offset, query.offset + query.per_page - 1)
        try:
            response = request.execute()
        except Exception as exc:
            raise ExternalServiceError("Database", f"list failed: {exc}") from exc

        records = [ImageRecord.from_row(row) for row in response.data or []]
        if paged:
            total = response.count if response.count is not None else len(records)
            return RecordPage(records, total, query.page, query.per_page)
        if query.search:
            records = [record for record in records if query.matches(record)]
        total = len(records)
        if query.per_page is not None:
            records = records[query.offset:query.offset + query.per_page]
        return RecordPage(records, total, query.page, query.per_page)

    async def list_records(self, owner_id: str, query: RecordQuery) -> RecordPage:
        return await run_blocking(self.service.executor, self._list_sync, owner_id, query)
