"""Domain errors and the per-unit error descriptor."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

NOT_FOUND_MESSAGE = "File not found or access denied"


class CaptionStudioError(Exception):
    """Base class for errors raised by Caption Studio services."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(CaptionStudioError):
    """Record missing or owned by someone else. The two cases are indistinguishable."""

    code = "NOT_FOUND"

    def __init__(self, message: str = NOT_FOUND_MESSAGE, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)


class InvalidItemError(CaptionStudioError):
    code = "INVALID_ITEM"


class ConfigurationError(CaptionStudioError):
    code = "SERVICE_UNAVAILABLE"


class ExternalServiceError(CaptionStudioError):
    """A collaborator (storage, database, AI) failed."""

    code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, service: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"{service}: {message}", details)
        self.service = service


@dataclass(frozen=True)
class UnitError:
    """Error descriptor attached to a failed unit outcome."""

    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException, **details: Any) -> "UnitError":
        if isinstance(exc, CaptionStudioError):
            merged = dict(exc.details)
            merged.update(details)
            return cls(code=exc.code, message=exc.message, details=merged)
        return cls(code="INTERNAL_ERROR", message=str(exc) or exc.__class__.__name__, details=dict(details))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload
