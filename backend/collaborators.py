"""Interfaces of the external collaborators consumed by the bulk pipelines."""

from __future__ import annotations

import asyncio
import functools
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

from records import ImageRecord, RecordPage, RecordQuery

R = TypeVar("R")


@dataclass(frozen=True)
class StoredObject:
    path: str
    public_url: str


@dataclass(frozen=True)
class AnalysisResult:
    description: str
    tags: List[str] = field(default_factory=list)
    tag_style: str = "neutral"


class BlobStore(Protocol):
    async def put(
        self, owner_id: str, filename: str, data: bytes, content_type: str
    ) -> StoredObject: ...

    async def delete(self, path: str) -> None: ...

    async def public_url_of(self, path: str) -> str: ...


class RecordStore(Protocol):
    async def create(self, owner_id: str, metadata: Dict[str, Any]) -> ImageRecord: ...

    async def find_by_id(self, record_id: str, owner_id: str) -> Optional[ImageRecord]: ...

    async def update(self, record_id: str, owner_id: str, patch: Dict[str, Any]) -> ImageRecord: ...

    async def delete(self, record_id: str, owner_id: str) -> None: ...

    async def list_records(self, owner_id: str, query: RecordQuery) -> RecordPage: ...


class ImageAnalyzer(Protocol):
    async def analyze(self, image_url: str, style_hint: str = "neutral") -> AnalysisResult: ...


class IdentityVerifier(Protocol):
    async def verify(self, credential: str) -> Optional[str]: ...


async def run_blocking(executor: Optional[Executor], func: Callable[..., R], *args: Any, **kwargs: Any) -> R:
    """Run a blocking SDK call on `executor` without stalling the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, functools.partial(func, *args, **kwargs))
