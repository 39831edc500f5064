"""AWS helpers: S3 blob storage and PostgreSQL image records."""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import Executor
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import boto3
import psycopg2
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from psycopg2 import sql
from psycopg2.extras import RealDictCursor

from collaborators import StoredObject, run_blocking
from errors import ConfigurationError, ExternalServiceError, NotFoundError
from records import ImageRecord, RecordPage, RecordQuery, utc_now_iso
from utils.filenames import generate_storage_path

logger = logging.getLogger(__name__)

RECORD_COLUMNS = (
    "filename",
    "file_path",
    "file_size",
    "mime_type",
    "public_url",
    "status",
    "description",
    "tags",
    "uploaded_at",
    "updated_at",
)


class AWSService:
    """Thin wrapper for the S3 client and PostgreSQL connections."""

    def __init__(
        self,
        *,
        region: Optional[str],
        uploads_bucket: str,
        database_url: str,
        table: str = "uploaded_files",
        url_expires_seconds: int = 3600,
        executor: Optional[Executor] = None,
        s3_client: Optional[Any] = None,
        connect_timeout_seconds: int = 8,
        statement_timeout_ms: int = 15000,
    ) -> None:
        self.region = region
        self.uploads_bucket = uploads_bucket
        self.database_url = database_url
        self.table = table
        self.url_expires_seconds = url_expires_seconds
        self.executor = executor
        self.connect_timeout_seconds = connect_timeout_seconds
        self.statement_timeout_ms = statement_timeout_ms

        self.s3_client: Optional[Any] = s3_client
        if self.s3_client is None and self.uploads_bucket:
            self.s3_client = boto3.client(
                "s3",
                region_name=self.region,
                config=Config(
                    retries={"max_attempts": 2, "mode": "standard"},
                    connect_timeout=3,
                    read_timeout=12,
                ),
            )

        self.s3_enabled = bool(self.s3_client and self.uploads_bucket)
        self.db_enabled = bool(self.database_url)

    @contextmanager
    def db_connection(self) -> Iterator[psycopg2.extensions.connection]:
        """Create and yield a PostgreSQL connection."""
        if not self.db_enabled:
            raise ConfigurationError("DATABASE_URL is not configured.")

        conn = psycopg2.connect(
            self.database_url,
            connect_timeout=self.connect_timeout_seconds,
            options=f"-c statement_timeout={self.statement_timeout_ms}",
        )
        try:
            yield conn
        finally:
            conn.close()

    def require_s3(self) -> Any:
        if not self.s3_enabled:
            raise ConfigurationError("S3 uploads bucket is not configured.")
        return self.s3_client

    def health_snapshot(self) -> Dict[str, Any]:
        """Return non-sensitive service readiness flags."""
        return {
            "s3_enabled": self.s3_enabled,
            "db_enabled": self.db_enabled,
            "uploads_bucket": self.uploads_bucket or None,
            "region": self.region,
        }


class S3BlobStore:
    """Blob store on the S3 uploads bucket; locators are presigned GET URLs."""

    def __init__(self, service: AWSService) -> None:
        self.service = service

    def _put_sync(self, owner_id: str, filename: str, data: bytes, content_type: str) -> StoredObject:
        s3 = self.service.require_s3()
        path = generate_storage_path(filename, owner_id)
        try:
            s3.put_object(
                Bucket=self.service.uploads_bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
                CacheControl="max-age=3600",
            )
        except (BotoCoreError, ClientError) as exc:
            raise ExternalServiceError("Storage", f"S3 upload failed for key={path}: {exc}") from exc
        return StoredObject(path=path, public_url=self._presign_sync(path))

    async def put(self, owner_id: str, filename: str, data: bytes, content_type: str) -> StoredObject:
        return await run_blocking(self.service.executor, self._put_sync, owner_id, filename, data, content_type)

    def _delete_sync(self, path: str) -> None:
        s3 = self.service.require_s3()
        try:
            s3.delete_object(Bucket=self.service.uploads_bucket, Key=path)
        except (BotoCoreError, ClientError) as exc:
            raise ExternalServiceError("Storage", f"S3 delete failed for key={path}: {exc}") from exc

    async def delete(self, path: str) -> None:
        await run_blocking(self.service.executor, self._delete_sync, path)

    def _presign_sync(self, path: str) -> str:
        s3 = self.service.require_s3()
        try:
            return s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.service.uploads_bucket, "Key": path},
                ExpiresIn=self.service.url_expires_seconds,
            )
        except (BotoCoreError, ClientError) as exc:
            raise ExternalServiceError("Storage", f"could not sign URL for key={path}: {exc}") from exc

    async def public_url_of(self, path: str) -> str:
        return await run_blocking(self.service.executor, self._presign_sync, path)


class PostgresRecordStore:
    """Record store on PostgreSQL. Every statement is filtered by owner."""

    def __init__(self, service: AWSService) -> None:
        self.service = service

    def _execute_returning(self, query: sql.Composable, params: tuple) -> Optional[Dict[str, Any]]:
        with self.service.db_connection() as conn:
            try:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(query, params)
                    row = cur.fetchone()
                conn.commit()
            except psycopg2.Error as exc:
                conn.rollback()
                raise ExternalServiceError("Database", str(exc).strip()) from exc
        return dict(row) if row else None

    def _create_sync(self, owner_id: str, metadata: Dict[str, Any]) -> ImageRecord:
        row = {column: metadata[column] for column in RECORD_COLUMNS if column in metadata}
        row.setdefault("uploaded_at", utc_now_iso())
        row["id"] = str(uuid.uuid4())
        row["user_id"] = owner_id

        columns = list(row.keys())
        query = sql.SQL("INSERT INTO {table} ({columns}) VALUES ({values}) RETURNING *").format(
            table=sql.Identifier(self.service.table),
            columns=sql.SQL(", ").join(sql.Identifier(column) for column in columns),
            values=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        created = self._execute_returning(query, tuple(row[column] for column in columns))
        if not created:
            raise ExternalServiceError("Database", "insert returned no record.")
        return ImageRecord.from_row(created)

    async def create(self, owner_id: str, metadata: Dict[str, Any]) -> ImageRecord:
        return await run_blocking(self.service.executor, self._create_sync, owner_id, metadata)

    def _find_sync(self, record_id: str, owner_id: str) -> Optional[ImageRecord]:
        query = sql.SQL("SELECT * FROM {table} WHERE id::text = %s AND user_id::text = %s LIMIT 1").format(
            table=sql.Identifier(self.service.table)
        )
        with self.service.db_connection() as conn:
            try:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(query, (record_id, owner_id))
                    row = cur.fetchone()
            except psycopg2.Error as exc:
                raise ExternalServiceError("Database", str(exc).strip()) from exc
        return ImageRecord.from_row(dict(row)) if row else None

    async def find_by_id(self, record_id: str, owner_id: str) -> Optional[ImageRecord]:
        return await run_blocking(self.service.executor, self._find_sync, record_id, owner_id)

    def _update_sync(self, record_id: str, owner_id: str, patch: Dict[str, Any]) -> ImageRecord:
        changes = {column: patch[column] for column in RECORD_COLUMNS if column in patch}
        if not changes:
            raise ValueError("Update patch has no known columns.")

        query = sql.SQL(
            "UPDATE {table} SET {assignments} WHERE id::text = %s AND user_id::text = %s RETURNING *"
        ).format(
            table=sql.Identifier(self.service.table),
            assignments=sql.SQL(", ").join(
                sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder()) for column in changes
            ),
        )
        updated = self._execute_returning(query, (*changes.values(), record_id, owner_id))
        if not updated:
            raise NotFoundError(details={"id": record_id})
        return ImageRecord.from_row(updated)

    async def update(self, record_id: str, owner_id: str, patch: Dict[str, Any]) -> ImageRecord:
        return await run_blocking(self.service.executor, self._update_sync, record_id, owner_id, patch)

    def _delete_sync(self, record_id: str, owner_id: str) -> None:
        query = sql.SQL("DELETE FROM {table} WHERE id::text = %s AND user_id::text = %s RETURNING id").format(
            table=sql.Identifier(self.service.table)
        )
        if not self._execute_returning(query, (record_id, owner_id)):
            raise NotFoundError(details={"id": record_id})

    async def delete(self, record_id: str, owner_id: str) -> None:
        await run_blocking(self.service.executor, self._delete_sync, record_id, owner_id)

    def _list_sync(self, owner_id: str, query: RecordQuery) -> RecordPage:
        conditions = [sql.SQL("user_id::text = %s")]
        params: List[Any] = [owner_id]
        if query.status:
            conditions.append(sql.SQL("status = %s"))
            params.append(query.status)
        if query.images_only:
            conditions.append(sql.SQL("mime_type LIKE 'image/%%'"))
        if query.search:
            conditions.append(
                sql.SQL(
                    "(filename ILIKE %s OR description ILIKE %s"
                    " OR EXISTS (SELECT 1 FROM unnest(tags) AS tag WHERE tag ILIKE %s))"
                )
            )
            pattern = f"%{query.search}%"
            params.extend([pattern, pattern, pattern])
        where = sql.SQL(" AND ").join(conditions)
        table = sql.Identifier(self.service.table)

        count_query = sql.SQL("SELECT COUNT(*) AS total FROM {table} WHERE {where}").format(table=table, where=where)
        rows_query = sql.SQL("SELECT * FROM {table} WHERE {where} ORDER BY {column} {direction}").format(
            table=table,
            where=where,
            column=sql.Identifier(query.sort_by),
            direction=sql.SQL("DESC" if query.descending else "ASC"),
        )
        row_params = list(params)
        if query.per_page is not None:
            rows_query = rows_query + sql.SQL(" LIMIT %s OFFSET %s")
            row_params.extend([query.per_page, query.offset])

        with self.service.db_connection() as conn:
            try:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(count_query, tuple(params))
                    total = cur.fetchone()["total"]
                    cur.execute(rows_query, tuple(row_params))
                    rows = cur.fetchall()
            except psycopg2.Error as exc:
                raise ExternalServiceError("Database", str(exc).strip()) from exc
        records = [ImageRecord.from_row(dict(row)) for row in rows]
        return RecordPage(records, int(total), query.page, query.per_page)

    async def list_records(self, owner_id: str, query: RecordQuery) -> RecordPage:
        return await run_blocking(self.service.executor, self._list_sync, owner_id, query)
