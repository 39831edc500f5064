"""Caption Studio backend service."""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from bulk_engine import BatchOutcome, OutcomeStatus
from errors import (
    CaptionStudioError,
    ConfigurationError,
    ExternalServiceError,
    InvalidItemError,
    NotFoundError,
)
from file_operations import FileUpdate
from records import RecordPage, RecordQuery
from schemas import AnalyzeRequest, BulkIdsRequest, BulkRegenerateRequest, BulkUpdateRequest, FileUpdateBody
from services import AppServices, build_services
from settings import Settings, load_settings
from upload_pipeline import UploadItem
from utils.filenames import sanitize_filename

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/pjpeg",
    "image/png",
    "image/webp",
    "image/gif",
}
EXTENSION_TO_CONTENT_TYPE = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".jfif": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
}

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")

REQUEST_ID_HEADER = "X-Request-ID"
HTTP_ERROR_CODE_MAP = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    413: "FILE_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
    503: "SERVICE_UNAVAILABLE",
}
DOMAIN_ERROR_STATUS = (
    (NotFoundError, 404),
    (InvalidItemError, 400),
    (ConfigurationError, 503),
    (ExternalServiceError, 503),
)
OUTCOME_STATUS_CODES = {
    OutcomeStatus.SUCCESS: 200,
    OutcomeStatus.PARTIAL: 207,
    OutcomeStatus.FAILURE: 400,
}


def current_request_id() -> str:
    """Return current request ID from context."""
    request_id = (request_id_ctx.get() or "").strip()
    return request_id or "unknown"


def build_error_payload(
    *,
    code: str,
    message: str,
    request_id: str | None = None,
    details: Dict[str, Any] | None = None,
) -> Dict[str, Any]:
    """Build structured error response payload."""
    error: Dict[str, Any] = {
        "code": code,
        "message": message,
        "request_id": request_id or current_request_id(),
    }
    if details is not None:
        error["details"] = details
    return {"error": error}


def resolve_content_type(upload: UploadFile, filename: str) -> Optional[str]:
    """Resolve content type from request metadata or filename extension."""
    content_type = (upload.content_type or "").strip().lower()
    if content_type in ALLOWED_IMAGE_TYPES:
        return content_type

    inferred = EXTENSION_TO_CONTENT_TYPE.get(Path(filename).suffix.lower())
    if inferred in ALLOWED_IMAGE_TYPES:
        return inferred

    return None


async def read_upload_items(files: List[UploadFile], max_file_size_bytes: int) -> List[UploadItem]:
    """Read every upload once and reject the request if any file is unusable."""
    items: List[UploadItem] = []
    rejected: List[Dict[str, str]] = []

    for index, upload in enumerate(files, start=1):
        filename = sanitize_filename(upload.filename or "unnamed_image")
        content_type = resolve_content_type(upload, filename)
        if not content_type:
            rejected.append({"filename": filename, "reason": "unsupported_file_type"})
            continue

        raw_bytes = await upload.read()
        if not raw_bytes:
            rejected.append({"filename": filename, "reason": "empty_file"})
            continue
        if len(raw_bytes) > max_file_size_bytes:
            rejected.append({"filename": filename, "reason": "file_too_large"})
            continue

        items.append(
            UploadItem(item_ref=f"file-{index}", filename=filename, content_type=content_type, data=raw_bytes)
        )

    if rejected:
        logger.warning("upload_rejected count=%s files=%s", len(rejected), rejected)
        raise HTTPException(
            status_code=400,
            detail={"message": "Some files cannot be processed.", "rejected": rejected},
        )
    return items


def validate_batch_size(count: int, limit: int, noun: str) -> None:
    """Reject empty or oversized batches before any work starts."""
    if count == 0:
        raise HTTPException(status_code=400, detail=f"No {noun} provided.")
    if count > limit:
        raise HTTPException(status_code=400, detail=f"Maximum {limit} {noun} allowed per request.")


def bulk_response(outcome: BatchOutcome, *, action: str, result_key: str) -> JSONResponse:
    """Render a batch outcome with the status code of its success class."""
    status = outcome.status
    body = {
        "success": bool(outcome.succeeded),
        "status": status.value,
        "message": f"{len(outcome.succeeded)} of {outcome.total_requested} files {action} successfully",
        "data": {
            result_key: [unit.result for unit in outcome.succeeded],
            "errors": [{"id": unit.item_ref, "error": unit.error.to_dict()} for unit in outcome.failed if unit.error],
            "total_succeeded": len(outcome.succeeded),
            "total_failed": len(outcome.failed),
            "total_requested": outcome.total_requested,
            "processing_time_seconds": round(outcome.elapsed_seconds, 2),
        },
        "request_id": current_request_id(),
    }
    return JSONResponse(status_code=OUTCOME_STATUS_CODES[status], content=body)


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization.removeprefix("Bearer ").strip() or None


async def _verify_owner(services: AppServices, token: Optional[str]) -> str:
    if not token:
        raise HTTPException(status_code=401, detail="No authentication token provided.")
    owner_id = await services.identity.verify(token)
    if not owner_id:
        raise HTTPException(status_code=401, detail="Invalid or expired token.")
    return owner_id


async def require_owner(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> str:
    """Resolve the authenticated owner id from the bearer token."""
    owner_id = await _verify_owner(get_services(request), _bearer_token(authorization))
    request.state.owner_id = owner_id
    return owner_id


router = APIRouter()


@router.get("/")
@router.get("/api")
def root(request: Request) -> Dict[str, Any]:
    """Health endpoint with non-sensitive service status."""
    settings = get_settings(request)
    return {
        "message": "Caption Studio backend is running.",
        "service": get_services(request).health_snapshot(),
        "limits": {
            "max_upload_files": settings.max_upload_files,
            "max_update_items": settings.max_update_items,
            "max_delete_items": settings.max_delete_items,
            "max_regenerate_items": settings.max_regenerate_items,
            "max_file_size_mb": settings.max_file_size_mb,
            "bulk_concurrency": settings.bulk_concurrency,
        },
    }


@router.post("/api/upload/upload-and-analyze")
async def upload_and_analyze(
    request: Request,
    image: UploadFile = File(...),
    tag_style: str = Form("neutral"),
    owner_id: str = Depends(require_owner),
) -> Dict[str, Any]:
    """Upload one image and analyze it before responding."""
    services = get_services(request)
    items = await read_upload_items([image], get_settings(request).max_file_size_bytes)
    outcome = await services.pipeline.run(items[0], owner_id, tag_style=tag_style)
    if not outcome.success and outcome.error:
        detail: Dict[str, Any] = {"message": outcome.error.message, "unit_error": outcome.error.to_dict()}
        record_id = outcome.error.details.get("record_id")
        if record_id:
            try:
                record = await services.record_store.find_by_id(record_id, owner_id)
            except Exception as exc:
                logger.warning("failed_record_lookup record_id=%s error=%s", record_id, exc)
                record = None
            if record is not None:
                detail["record"] = record.to_dict()
        raise HTTPException(status_code=503, detail=detail)
    return {
        "success": True,
        "message": "Image uploaded and analyzed successfully",
        "data": outcome.result,
        "request_id": current_request_id(),
    }


@router.post("/api/upload/bulk-upload-and-analyze", status_code=202)
async def bulk_upload_and_analyze(
    request: Request,
    images: List[UploadFile] = File(...),
    tag_style: str = Form("neutral"),
    owner_id: str = Depends(require_owner),
) -> Dict[str, Any]:
    """Start a bulk upload in the background and return its progress session."""
    settings = get_settings(request)
    validate_batch_size(len(images), settings.max_upload_files, "images")
    items = await read_upload_items(images, settings.max_file_size_bytes)

    session = get_services(request).uploads.start(owner_id, items, tag_style=tag_style)
    return {
        "success": True,
        "message": f"Processing {session.total} images",
        "data": {
            "session_id": session.session_id,
            "total_files": session.total,
            "status": "processing",
            "progress_endpoint": f"/api/upload/progress/{session.session_id}",
        },
        "request_id": current_request_id(),
    }


@router.get("/api/upload/progress/{session_id}")
async def upload_progress(
    request: Request,
    session_id: str,
    token: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
) -> StreamingResponse:
    """Stream progress events for a bulk upload session.

    Browsers' EventSource cannot send headers, so the access token may come
    in the `token` query parameter.
    """
    services = get_services(request)
    owner_id = await _verify_owner(services, token or _bearer_token(authorization))

    subscription = services.broadcaster.subscribe(session_id, owner_id)
    if subscription is None:
        raise HTTPException(status_code=404, detail="Upload session not found.")

    return StreamingResponse(
        services.broadcaster.event_stream(subscription, get_settings(request).sse_keepalive_seconds),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@router.post("/api/upload/analyze/{file_id}")
@router.post("/api/files/{file_id}/regenerate")
async def analyze_file(
    request: Request,
    file_id: str,
    body: Optional[AnalyzeRequest] = Body(default=None),
    owner_id: str = Depends(require_owner),
) -> Dict[str, Any]:
    """Run AI analysis again for an existing image."""
    tag_style = body.tag_style if body else "neutral"
    record = await get_services(request).files.analyze_file(owner_id, file_id, tag_style)
    return {
        "success": True,
        "message": "Image analyzed successfully",
        "data": record,
        "request_id": current_request_id(),
    }


def build_record_query(**fields: Any) -> RecordQuery:
    sort_order = fields.pop("sort_order", "desc")
    if sort_order not in ("asc", "desc"):
        raise InvalidItemError("sort_order must be asc or desc", {"sort_order": sort_order})
    try:
        return RecordQuery(descending=sort_order == "desc", **fields)
    except ValueError as exc:
        raise InvalidItemError(str(exc)) from exc


def list_response(page: RecordPage, **extra: Any) -> Dict[str, Any]:
    return {
        "success": True,
        "data": [record.to_dict() for record in page.records],
        "pagination": page.pagination(),
        **extra,
        "request_id": current_request_id(),
    }


@router.get("/api/files")
async def list_files(
    request: Request,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    status: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None),
    sort_by: str = Query(default="uploaded_at"),
    sort_order: str = Query(default="desc"),
    owner_id: str = Depends(require_owner),
) -> Dict[str, Any]:
    """List the caller's records, newest first unless asked otherwise."""
    query = build_record_query(
        status=status or None,
        search=search or None,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        per_page=per_page,
    )
    result = await get_services(request).files.list_files(owner_id, query)
    return list_response(
        result,
        filters={"status": status or "all", "search": search, "sort_by": sort_by, "sort_order": sort_order},
        summary={
            "total_files": result.total,
            "page_count": len(result.records),
            "files_with_ai": sum(1 for record in result.records if record.has_ai_analysis),
            "image_files": sum(1 for record in result.records if record.is_image),
        },
    )


@router.get("/api/files/images")
async def list_images(
    request: Request,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    sort_by: str = Query(default="uploaded_at"),
    sort_order: str = Query(default="desc"),
    owner_id: str = Depends(require_owner),
) -> Dict[str, Any]:
    query = build_record_query(images_only=True, sort_by=sort_by, sort_order=sort_order, page=page, per_page=per_page)
    result = await get_services(request).files.list_files(owner_id, query)
    return list_response(
        result,
        summary={
            "total_images": result.total,
            "page_count": len(result.records),
            "images_with_ai": sum(1 for record in result.records if record.has_ai_analysis),
        },
    )


@router.get("/api/files/search")
async def search_files(
    request: Request,
    q: Optional[str] = Query(default=None),
    file_type: Optional[str] = Query(default=None, alias="type"),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    owner_id: str = Depends(require_owner),
) -> Dict[str, Any]:
    """Match the query against filename, description and tags."""
    term = (q or "").strip()
    if not term:
        raise InvalidItemError("Search query (q) parameter is required")
    query = build_record_query(search=term, images_only=file_type == "image", page=page, per_page=per_page)
    result = await get_services(request).files.list_files(owner_id, query)
    return list_response(
        result,
        search={"query": term, "type_filter": file_type or "all", "results_found": result.total},
    )


@router.get("/api/files/stats")
async def file_stats(request: Request, owner_id: str = Depends(require_owner)) -> Dict[str, Any]:
    stats = await get_services(request).files.get_stats(owner_id)
    return {"success": True, "data": stats, "request_id": current_request_id()}


@router.get("/api/files/{file_id}")
async def get_file(request: Request, file_id: str, owner_id: str = Depends(require_owner)) -> Dict[str, Any]:
    record = await get_services(request).files.get_file(owner_id, file_id)
    return {"success": True, "data": record.to_dict(), "request_id": current_request_id()}


@router.patch("/api/files/{file_id}")
async def update_file(
    request: Request,
    file_id: str,
    body: FileUpdateBody,
    owner_id: str = Depends(require_owner),
) -> Dict[str, Any]:
    update = FileUpdate(id=file_id, filename=body.filename, description=body.description, tags=body.tags)
    record = await get_services(request).files.update_file(owner_id, update)
    return {
        "success": True,
        "message": "File metadata updated successfully",
        "data": record,
        "request_id": current_request_id(),
    }


@router.delete("/api/files/{file_id}")
async def delete_file(request: Request, file_id: str, owner_id: str = Depends(require_owner)) -> Dict[str, Any]:
    deleted = await get_services(request).files.delete_file(owner_id, file_id)
    return {
        "success": True,
        "message": "File deleted successfully",
        "data": deleted,
        "request_id": current_request_id(),
    }


@router.patch("/api/files")
async def bulk_update_files(
    request: Request,
    body: BulkUpdateRequest,
    owner_id: str = Depends(require_owner),
) -> JSONResponse:
    validate_batch_size(len(body.files), get_settings(request).max_update_items, "files")
    updates = [
        FileUpdate(id=item.id, filename=item.filename, description=item.description, tags=item.tags)
        for item in body.files
    ]
    outcome = await get_services(request).files.bulk_update(owner_id, updates)
    return bulk_response(outcome, action="updated", result_key="updated")


@router.delete("/api/files")
async def bulk_delete_files(
    request: Request,
    body: BulkIdsRequest,
    owner_id: str = Depends(require_owner),
) -> JSONResponse:
    validate_batch_size(len(body.ids), get_settings(request).max_delete_items, "files")
    outcome = await get_services(request).files.bulk_delete(owner_id, body.ids)
    return bulk_response(outcome, action="deleted", result_key="deleted")


@router.post("/api/files/regenerate")
async def bulk_regenerate_files(
    request: Request,
    body: BulkRegenerateRequest,
    owner_id: str = Depends(require_owner),
) -> JSONResponse:
    validate_batch_size(len(body.ids), get_settings(request).max_regenerate_items, "files")
    outcome = await get_services(request).files.bulk_regenerate(owner_id, body.ids, body.tag_style)
    return bulk_response(outcome, action="regenerated", result_key="regenerated")


async def request_context_middleware(request: Request, call_next: Callable[[Request], Any]) -> Any:
    """Attach request IDs and log requests."""
    request_id = (request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex).strip()[:128]
    context_token = request_id_ctx.set(request_id)
    request.state.request_id = request_id

    started_at = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        status_code = response.status_code
        return response
    finally:
        duration_ms = (time.perf_counter() - started_at) * 1000
        logger.info(
            "request_id=%s method=%s path=%s status=%s duration_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            status_code,
            duration_ms,
        )
        request_id_ctx.reset(context_token)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return structured payloads for HTTP errors."""
    request_id = getattr(request.state, "request_id", current_request_id())
    error_code = HTTP_ERROR_CODE_MAP.get(exc.status_code, "HTTP_ERROR")

    if isinstance(exc.detail, str):
        message = exc.detail
        details: Dict[str, Any] = {"status_code": exc.status_code}
    elif isinstance(exc.detail, dict):
        details = dict(exc.detail)
        message = str(details.get("message") or details.get("detail") or "Request failed.")
        details.setdefault("status_code", exc.status_code)
    else:
        message = str(exc.detail)
        details = {"status_code": exc.status_code}

    response = JSONResponse(
        status_code=exc.status_code,
        content=build_error_payload(code=error_code, message=message, request_id=request_id, details=details),
    )
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def domain_exception_handler(request: Request, exc: CaptionStudioError) -> JSONResponse:
    """Map service errors raised by single-item endpoints to HTTP responses."""
    request_id = getattr(request.state, "request_id", current_request_id())
    status_code = next((code for kind, code in DOMAIN_ERROR_STATUS if isinstance(exc, kind)), 500)
    if status_code >= 500:
        logger.warning("request_id=%s path=%s service_error=%s", request_id, request.url.path, exc.message)

    response = JSONResponse(
        status_code=status_code,
        content=build_error_payload(
            code=exc.code,
            message=exc.message,
            request_id=request_id,
            details=dict(exc.details) or None,
        ),
    )
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return structured payloads for validation errors."""
    request_id = getattr(request.state, "request_id", current_request_id())
    response = JSONResponse(
        status_code=422,
        content=build_error_payload(
            code="VALIDATION_ERROR",
            message="Request validation failed.",
            request_id=request_id,
            details={"status_code": 422, "errors": exc.errors()},
        ),
    )
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all error handler for consistent API error responses."""
    request_id = getattr(request.state, "request_id", current_request_id())
    logger.exception("Unhandled exception request_id=%s path=%s", request_id, request.url.path)

    response = JSONResponse(
        status_code=500,
        content=build_error_payload(code="INTERNAL_ERROR", message="Internal server error.", request_id=request_id),
    )
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def create_app(settings: Settings | None = None, services: AppServices | None = None) -> FastAPI:
    """Build the FastAPI application.

    `services` defaults to the production collaborators selected by
    `settings`; tests pass in-memory ones.
    """
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level)
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.services.aclose()

    app = FastAPI(title="Caption Studio", version="2.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_origin_regex=settings.allowed_origin_regex,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(request_context_middleware)

    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(CaptionStudioError, domain_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
