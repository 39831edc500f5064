"""Filename sanitization and storage key helpers."""

from __future__ import annotations

import re
import secrets
import time
import uuid
from pathlib import PurePosixPath

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


def sanitize_filename(filename: str) -> str:
    """Sanitize filename for safer storage keys."""
    basename = re.sub(r"^.*[\\/]", "", filename or "")
    clean_name = _UNSAFE_CHARS.sub("_", basename)
    return clean_name or f"image_{uuid.uuid4().hex}.jpg"


def file_extension(filename: str) -> str:
    """Return the lowercase extension of a sanitized name, without the dot."""
    suffix = PurePosixPath(sanitize_filename(filename)).suffix
    return suffix[1:].lower() if suffix else "bin"


def generate_storage_path(filename: str, owner_id: str) -> str:
    """Return a collision-resistant object key scoped under the owner.

    Shape: ``images/<owner>/<epoch-ms>-<random6>.<ext>``.
    """
    timestamp = int(time.time() * 1000)
    token = secrets.token_hex(3)
    safe_owner = _UNSAFE_CHARS.sub("_", owner_id) or "anonymous"
    return f"images/{safe_owner}/{timestamp}-{token}.{file_extension(filename)}"
