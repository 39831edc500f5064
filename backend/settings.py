"""Environment-driven settings for the Caption Studio backend."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _read_int_env(name: str, default: int, min_value: int, max_value: int) -> int:
    """Return bounded integer env value with safe fallback."""
    raw = (os.getenv(name, str(default)) or "").strip()
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r. Using default=%s", name, raw, default)
        return default
    return max(min_value, min(max_value, value))


def _read_float_env(name: str, default: float, min_value: float, max_value: float) -> float:
    """Return bounded float env value with safe fallback."""
    raw = (os.getenv(name, str(default)) or "").strip()
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid number for %s=%r. Using default=%s", name, raw, default)
        return default
    return max(min_value, min(max_value, value))


def _read_list_env(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default).strip()
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    storage_backend: str = "supabase"

    supabase_url: str = ""
    supabase_key: str = ""
    supabase_bucket: str = "uploads"
    records_table: str = "uploaded_files"

    aws_region: Optional[str] = None
    s3_uploads_bucket: str = ""
    s3_url_expires_seconds: int = 3600
    database_url: str = ""

    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_timeout_seconds: float = 60.0
    openai_max_retries: int = 2
    openai_max_tokens: int = 500

    bulk_concurrency: int = 8
    blocking_io_workers: int = 16

    max_upload_files: int = 10
    max_update_items: int = 50
    max_delete_items: int = 100
    max_regenerate_items: int = 20
    max_file_size_mb: int = 10

    session_grace_seconds: float = 30.0
    session_unclaimed_seconds: float = 300.0
    sse_keepalive_seconds: float = 15.0

    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
    allowed_origin_regex: Optional[str] = None
    log_level: str = "INFO"

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


def load_settings() -> Settings:
    """Build settings from the process environment (after loading `.env`)."""
    load_dotenv()

    storage_backend = os.getenv("STORAGE_BACKEND", "supabase").strip().lower()
    if storage_backend not in {"supabase", "aws"}:
        logger.warning("Unknown STORAGE_BACKEND=%r. Using supabase.", storage_backend)
        storage_backend = "supabase"

    allowed_origins = _read_list_env("ALLOWED_ORIGINS", "*") or ["*"]
    origin_regex = os.getenv("ALLOWED_ORIGIN_REGEX", "").strip()
    grace_seconds = _read_float_env("SESSION_GRACE_SECONDS", 30.0, min_value=1.0, max_value=3600.0)

    return Settings(
        storage_backend=storage_backend,
        supabase_url=os.getenv("SUPABASE_URL", "").strip(),
        supabase_key=(os.getenv("SUPABASE_KEY", "") or os.getenv("SUPABASE_SERVICE_KEY", "")).strip(),
        supabase_bucket=os.getenv("SUPABASE_BUCKET", "uploads").strip() or "uploads",
        records_table=os.getenv("RECORDS_TABLE", "uploaded_files").strip() or "uploaded_files",
        aws_region=os.getenv("AWS_REGION", "").strip() or None,
        s3_uploads_bucket=os.getenv("S3_UPLOADS_BUCKET", "").strip(),
        s3_url_expires_seconds=_read_int_env("S3_URL_EXPIRES_SECONDS", 3600, min_value=60, max_value=604800),
        database_url=os.getenv("DATABASE_URL", "").strip(),
        openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini",
        openai_timeout_seconds=_read_float_env("OPENAI_TIMEOUT_SECONDS", 60.0, min_value=1.0, max_value=600.0),
        openai_max_retries=_read_int_env("OPENAI_MAX_RETRIES", 2, min_value=0, max_value=10),
        openai_max_tokens=_read_int_env("OPENAI_MAX_TOKENS", 500, min_value=50, max_value=4000),
        bulk_concurrency=_read_int_env("BULK_CONCURRENCY", 8, min_value=1, max_value=100),
        blocking_io_workers=_read_int_env("BLOCKING_IO_WORKERS", 16, min_value=1, max_value=128),
        max_upload_files=_read_int_env("MAX_UPLOAD_FILES", 10, min_value=1, max_value=100),
        max_update_items=_read_int_env("MAX_UPDATE_ITEMS", 50, min_value=1, max_value=500),
        max_delete_items=_read_int_env("MAX_DELETE_ITEMS", 100, min_value=1, max_value=1000),
        max_regenerate_items=_read_int_env("MAX_REGENERATE_ITEMS", 20, min_value=1, max_value=200),
        max_file_size_mb=_read_int_env("MAX_FILE_SIZE_MB", 10, min_value=1, max_value=100),
        session_grace_seconds=grace_seconds,
        # Unclaimed retention never undercuts the grace period.
        session_unclaimed_seconds=max(
            grace_seconds,
            _read_float_env("SESSION_UNCLAIMED_SECONDS", 300.0, min_value=1.0, max_value=86400.0),
        ),
        sse_keepalive_seconds=_read_float_env("SSE_KEEPALIVE_SECONDS", 15.0, min_value=1.0, max_value=300.0),
        allowed_origins=allowed_origins,
        allowed_origin_regex=None if allowed_origins == ["*"] else (origin_regex or None),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
