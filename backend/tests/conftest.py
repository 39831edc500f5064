import asyncio
import os
import uuid
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

# Keep external integrations disabled before app modules are imported.
for _name in ("SUPABASE_URL", "SUPABASE_KEY", "OPENAI_API_KEY", "DATABASE_URL", "S3_UPLOADS_BUCKET"):
    os.environ[_name] = ""
os.environ.setdefault("STORAGE_BACKEND", "supabase")

from collaborators import AnalysisResult, StoredObject  # noqa: E402
from errors import ExternalServiceError, NotFoundError  # noqa: E402
from records import ImageRecord, RecordPage, RecordQuery, utc_now_iso  # noqa: E402
from services import assemble_services  # noqa: E402
from settings import Settings  # noqa: E402
from utils.filenames import generate_storage_path  # noqa: E402

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class InMemoryBlobStore:
    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.fail_filenames: Set[str] = set()
        self.deleted: List[str] = []

    async def put(self, owner_id: str, filename: str, data: bytes, content_type: str) -> StoredObject:
        if filename in self.fail_filenames:
            raise ExternalServiceError("Storage", f"upload rejected for {filename}")
        path = generate_storage_path(filename, owner_id)
        self.objects[path] = data
        return StoredObject(path=path, public_url=f"https://blobs.test/{path}?name={filename}")

    async def delete(self, path: str) -> None:
        self.objects.pop(path, None)
        self.deleted.append(path)

    async def public_url_of(self, path: str) -> str:
        return f"https://blobs.test/{path}?fresh=1"


class InMemoryRecordStore:
    """Owner-scoped record store; foreign records behave exactly like missing ones."""

    def __init__(self) -> None:
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.updates: List[Tuple[str, Dict[str, Any]]] = []

    def seed(self, owner_id: str, filename: str = "seed.png", **fields: Any) -> ImageRecord:
        record_id = uuid.uuid4().hex
        row = {
            "id": record_id,
            "user_id": owner_id,
            "filename": filename,
            "file_path": f"images/{owner_id}/{record_id}.png",
            "file_size": len(PNG_BYTES),
            "mime_type": "image/png",
            "public_url": f"https://blobs.test/{record_id}",
            "status": "completed",
            "uploaded_at": utc_now_iso(),
        }
        row.update(fields)
        self.rows[record_id] = row
        return ImageRecord.from_row(row)

    def _owned(self, record_id: str, owner_id: str) -> Optional[Dict[str, Any]]:
        row = self.rows.get(record_id)
        if row is None or row["user_id"] != owner_id:
            return None
        return row

    async def create(self, owner_id: str, metadata: Dict[str, Any]) -> ImageRecord:
        row = dict(metadata, id=uuid.uuid4().hex, user_id=owner_id)
        self.rows[row["id"]] = row
        return ImageRecord.from_row(row)

    async def find_by_id(self, record_id: str, owner_id: str) -> Optional[ImageRecord]:
        row = self._owned(record_id, owner_id)
        return ImageRecord.from_row(row) if row else None

    async def update(self, record_id: str, owner_id: str, patch: Dict[str, Any]) -> ImageRecord:
        row = self._owned(record_id, owner_id)
        if row is None:
            raise NotFoundError(details={"id": record_id})
        row.update(patch)
        self.updates.append((record_id, dict(patch)))
        return ImageRecord.from_row(row)

    async def delete(self, record_id: str, owner_id: str) -> None:
        if self._owned(record_id, owner_id) is None:
            raise NotFoundError(details={"id": record_id})
        del self.rows[record_id]

    async def list_records(self, owner_id: str, query: RecordQuery) -> RecordPage:
        owned = [ImageRecord.from_row(row) for row in self.rows.values() if row["user_id"] == owner_id]
        matching = [record for record in owned if query.matches(record)]
        present = [record for record in matching if getattr(record, query.sort_by) is not None]
        missing = [record for record in matching if getattr(record, query.sort_by) is None]
        present.sort(key=lambda record: getattr(record, query.sort_by), reverse=query.descending)
        ordered = present + missing
        if query.per_page is not None:
            ordered = ordered[query.offset:query.offset + query.per_page]
        return RecordPage(ordered, len(matching), query.page, query.per_page)


class FakeAnalyzer:
    """Analyzer that fails for URLs containing any marker in `fail_markers`."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.fail_markers: Set[str] = set()
        self.calls: List[Tuple[str, str]] = []

    async def analyze(self, image_url: str, style_hint: str = "neutral") -> AnalysisResult:
        self.calls.append((image_url, style_hint))
        if self.delay:
            await asyncio.sleep(self.delay)
        if any(marker in image_url for marker in self.fail_markers):
            raise ExternalServiceError("AI", "model unavailable")
        return AnalysisResult(description="A test image.", tags=["test", "image"], tag_style=style_hint)


class FakeIdentity:
    def __init__(self, tokens: Dict[str, str]) -> None:
        self.tokens = tokens

    async def verify(self, credential: str) -> Optional[str]:
        return self.tokens.get(credential)


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def record_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def analyzer() -> FakeAnalyzer:
    return FakeAnalyzer()


@pytest.fixture
def identity() -> FakeIdentity:
    return FakeIdentity({"token-alice": "alice", "token-bob": "bob"})


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        bulk_concurrency=4,
        session_grace_seconds=0.05,
        session_unclaimed_seconds=0.2,
        sse_keepalive_seconds=5.0,
    )


@pytest.fixture
def app_services(test_settings, blob_store, record_store, analyzer, identity):
    return assemble_services(
        test_settings,
        blob_store=blob_store,
        record_store=record_store,
        analyzer=analyzer,
        identity=identity,
    )
