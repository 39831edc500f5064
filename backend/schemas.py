"""Request bodies for the file management endpoints."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class FileUpdateBody(BaseModel):
    filename: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None


class BulkFileUpdateItem(FileUpdateBody):
    # Optional here so a missing id fails only its own item.
    id: Optional[str] = None


class BulkUpdateRequest(BaseModel):
    files: List[BulkFileUpdateItem] = Field(default_factory=list)


class BulkIdsRequest(BaseModel):
    ids: List[str] = Field(default_factory=list)


class BulkRegenerateRequest(BulkIdsRequest):
    tag_style: str = "neutral"


class AnalyzeRequest(BaseModel):
    tag_style: str = "neutral"
