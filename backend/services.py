"""Service container wiring collaborators, sessions and bulk operations."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from aws_client import AWSService, PostgresRecordStore, S3BlobStore
from collaborators import BlobStore, IdentityVerifier, ImageAnalyzer, RecordStore
from file_operations import FileOperations
from openai_client import OpenAIImageAnalyzer
from progress_broadcaster import ProgressBroadcaster
from progress_sessions import SessionRegistry
from settings import Settings
from supabase_client import SupabaseBlobStore, SupabaseConfig, SupabaseRecordStore, SupabaseService
from upload_jobs import BulkUploadCoordinator
from upload_pipeline import UploadPipeline

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    blob_store: BlobStore
    record_store: RecordStore
    analyzer: ImageAnalyzer
    identity: IdentityVerifier
    registry: SessionRegistry
    broadcaster: ProgressBroadcaster
    pipeline: UploadPipeline
    uploads: BulkUploadCoordinator
    files: FileOperations
    executor: Optional[ThreadPoolExecutor] = None
    health_checks: Dict[str, Callable[[], Dict[str, Any]]] = field(default_factory=dict)

    def health_snapshot(self) -> Dict[str, Any]:
        snapshot: Dict[str, Any] = {name: check() for name, check in self.health_checks.items()}
        snapshot["active_sessions"] = len(self.registry)
        return snapshot

    async def aclose(self) -> None:
        await self.registry.shutdown()
        if self.executor is not None:
            self.executor.shutdown(wait=False, cancel_futures=True)


def assemble_services(
    settings: Settings,
    *,
    blob_store: BlobStore,
    record_store: RecordStore,
    analyzer: ImageAnalyzer,
    identity: IdentityVerifier,
    executor: Optional[ThreadPoolExecutor] = None,
    health_checks: Optional[Dict[str, Callable[[], Dict[str, Any]]]] = None,
) -> AppServices:
    """Wire the bulk machinery on top of the given collaborators."""
    registry = SessionRegistry(
        grace_seconds=settings.session_grace_seconds,
        unclaimed_seconds=settings.session_unclaimed_seconds,
    )
    broadcaster = ProgressBroadcaster(registry)
    pipeline = UploadPipeline(blob_store, record_store, analyzer)
    return AppServices(
        blob_store=blob_store,
        record_store=record_store,
        analyzer=analyzer,
        identity=identity,
        registry=registry,
        broadcaster=broadcaster,
        pipeline=pipeline,
        uploads=BulkUploadCoordinator(pipeline, registry, broadcaster, concurrency=settings.bulk_concurrency),
        files=FileOperations(blob_store, record_store, analyzer, concurrency=settings.bulk_concurrency),
        executor=executor,
        health_checks=dict(health_checks or {}),
    )


def build_services(settings: Settings) -> AppServices:
    """Create the production collaborators selected by `settings`."""
    executor = ThreadPoolExecutor(max_workers=settings.blocking_io_workers, thread_name_prefix="blocking-io")

    supabase_service = SupabaseService(
        SupabaseConfig(
            url=settings.supabase_url,
            key=settings.supabase_key,
            bucket=settings.supabase_bucket,
            table=settings.records_table,
        ),
        executor=executor,
    )
    analyzer = OpenAIImageAnalyzer(
        settings.openai_api_key,
        model=settings.openai_model,
        max_tokens=settings.openai_max_tokens,
        timeout_seconds=settings.openai_timeout_seconds,
        max_retries=settings.openai_max_retries,
        executor=executor,
    )
    health_checks: Dict[str, Callable[[], Dict[str, Any]]] = {
        "supabase": supabase_service.health_snapshot,
        "openai": analyzer.health_snapshot,
    }

    blob_store: BlobStore
    record_store: RecordStore
    if settings.storage_backend == "aws":
        aws_service = AWSService(
            region=settings.aws_region,
            uploads_bucket=settings.s3_uploads_bucket,
            database_url=settings.database_url,
            table=settings.records_table,
            url_expires_seconds=settings.s3_url_expires_seconds,
            executor=executor,
        )
        blob_store = S3BlobStore(aws_service)
        record_store = PostgresRecordStore(aws_service)
        health_checks["aws"] = aws_service.health_snapshot
    else:
        blob_store = SupabaseBlobStore(supabase_service)
        record_store = SupabaseRecordStore(supabase_service)

    logger.info(
        "services_built storage_backend=%s supabase_enabled=%s openai_enabled=%s",
        settings.storage_backend,
        supabase_service.enabled,
        analyzer.enabled,
    )
    return assemble_services(
        settings,
        blob_store=blob_store,
        record_store=record_store,
        analyzer=analyzer,
        identity=supabase_service,
        executor=executor,
        health_checks=health_checks,
    )
