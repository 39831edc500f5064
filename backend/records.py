"""Image record model shared by the record stores and the API."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


@dataclass
class ImageRecord:
    id: str
    filename: str
    file_path: str
    user_id: str
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    public_url: Optional[str] = None
    status: str = "uploaded"
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    uploaded_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ImageRecord":
        """Build a record from a database row."""
        return cls(
            id=str(row["id"]),
            filename=row.get("filename") or "",
            file_path=row.get("file_path") or "",
            user_id=str(row.get("user_id") or ""),
            file_size=row.get("file_size"),
            mime_type=row.get("mime_type"),
            public_url=row.get("public_url"),
            status=row.get("status") or "uploaded",
            description=row.get("description"),
            tags=list(row.get("tags") or []),
            uploaded_at=_as_iso(row.get("uploaded_at")),
            updated_at=_as_iso(row.get("updated_at")),
        )

    @property
    def is_image(self) -> bool:
        return bool(self.mime_type and self.mime_type.startswith("image/"))

    @property
    def has_ai_analysis(self) -> bool:
        return bool(self.description or self.tags)

    def to_dict(self) -> Dict[str, Any]:
        """Return the API representation with computed fields."""
        return {
            "id": self.id,
            "filename": self.filename,
            "file_path": self.file_path,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "public_url": self.public_url,
            "user_id": self.user_id,
            "status": self.status,
            "description": self.description,
            "tags": list(self.tags),
            "uploaded_at": self.uploaded_at,
            "updated_at": self.updated_at,
            "is_image": self.is_image,
            "has_ai_analysis": self.has_ai_analysis,
            "file_size_mb": round(self.file_size / (1024 * 1024), 2) if self.file_size else None,
        }


SORTABLE_COLUMNS = ("uploaded_at", "updated_at", "filename", "file_size", "status")


def matches_search(record: ImageRecord, term: str) -> bool:
    """Case-insensitive substring match on filename, description or any tag."""
    needle = term.lower()
    if needle in record.filename.lower():
        return True
    if record.description and needle in record.description.lower():
        return True
    return any(needle in str(tag).lower() for tag in record.tags)


@dataclass(frozen=True)
class RecordQuery:
    """Filters, ordering and paging for listing one owner's records.

    `per_page=None` returns every matching record on a single page.
    """

    status: Optional[str] = None
    images_only: bool = False
    search: Optional[str] = None
    sort_by: str = "uploaded_at"
    descending: bool = True
    page: int = 1
    per_page: Optional[int] = 20

    def __post_init__(self) -> None:
        if self.sort_by not in SORTABLE_COLUMNS:
            raise ValueError(f"sort_by must be one of {', '.join(SORTABLE_COLUMNS)}")
        if self.page < 1:
            raise ValueError("page must be at least 1")
        if self.per_page is not None and self.per_page < 1:
            raise ValueError("per_page must be at least 1")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page if self.per_page else 0

    def matches(self, record: ImageRecord) -> bool:
        if self.status and record.status != self.status:
            return False
        if self.images_only and not record.is_image:
            return False
        if self.search and not matches_search(record, self.search):
            return False
        return True


@dataclass(frozen=True)
class RecordPage:
    records: List[ImageRecord]
    total: int
    page: int = 1
    per_page: Optional[int] = None

    @property
    def total_pages(self) -> int:
        if not self.per_page:
            return 1 if self.total else 0
        return math.ceil(self.total / self.per_page)

    def pagination(self) -> Dict[str, Any]:
        total_pages = self.total_pages
        has_next = self.page < total_pages
        has_prev = self.page > 1
        return {
            "current_page": self.page,
            "per_page": self.per_page or self.total,
            "total_items": self.total,
            "total_pages": total_pages,
            "has_next_page": has_next,
            "has_prev_page": has_prev,
            "next_page": self.page + 1 if has_next else None,
            "prev_page": self.page - 1 if has_prev else None,
        }
