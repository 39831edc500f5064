"""Bulk upload batches that report live progress through a session."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from bulk_engine import BatchOutcome, EscapedUnitError, UnitOutcome, run_bulk
from errors import UnitError
from progress_broadcaster import ProgressBroadcaster
from progress_sessions import ProgressSession, SessionRegistry
from upload_pipeline import InvalidTransitionError, Stage, UploadItem, UploadPipeline

logger = logging.getLogger(__name__)


class BulkUploadCoordinator:
    """Starts bulk uploads in the background and answers with a session id first."""

    def __init__(
        self,
        pipeline: UploadPipeline,
        registry: SessionRegistry,
        broadcaster: ProgressBroadcaster,
        *,
        concurrency: Optional[int] = None,
    ) -> None:
        self.pipeline = pipeline
        self.registry = registry
        self.broadcaster = broadcaster
        self.concurrency = concurrency

    def start(self, owner_id: str, items: Sequence[UploadItem], tag_style: str = "neutral") -> ProgressSession:
        """Open a session and launch the batch without waiting for any file."""
        if not items:
            raise ValueError("A bulk upload needs at least one file.")
        session = self.registry.create(owner_id, [(item.item_ref, item.filename) for item in items])
        self.registry.launch(session, self.run(session, owner_id, list(items), tag_style))
        return session

    async def run(
        self, session: ProgressSession, owner_id: str, items: List[UploadItem], tag_style: str
    ) -> BatchOutcome:
        listener = self._safe_listener(session.session_id)

        async def upload_one(item: UploadItem) -> UnitOutcome:
            return await self.pipeline.run(item, owner_id, tag_style=tag_style, listener=listener)

        try:
            outcome = await run_bulk(items, upload_one, concurrency=self.concurrency)
        except EscapedUnitError as exc:
            logger.error("bulk_upload_aborted session_id=%s error=%s", session.session_id, exc)
            outcome = self._abort(session, exc, exc.outcomes)
        except Exception as exc:
            logger.exception("bulk_upload_aborted session_id=%s", session.session_id)
            outcome = self._abort(session, exc)

        self.broadcaster.complete(session.session_id, outcome)
        return outcome

    def _safe_listener(self, session_id: str) -> Any:
        listener = self.broadcaster.stage_listener(session_id)

        def guarded(item_ref: str, stage: Stage, result: Any = None, error: Optional[str] = None) -> None:
            try:
                listener(item_ref, stage, result, error)
            except InvalidTransitionError as exc:
                # A file the abort path already failed.
                logger.warning("stage_update_rejected session_id=%s error=%s", session_id, exc)

        return guarded

    def _abort(
        self,
        session: ProgressSession,
        exc: Exception,
        settled: Optional[Sequence[Optional[UnitOutcome]]] = None,
    ) -> BatchOutcome:
        """Fail the files whose unit never settled and build the outcome.

        Every sibling has finished by the time this runs, so settled outcomes
        are reported as they are and only the raising units become failures.
        """
        message = f"Upload batch aborted: {exc}"
        listener = self.broadcaster.stage_listener(session.session_id)
        known: Dict[Optional[str], UnitOutcome] = {
            outcome.item_ref: outcome for outcome in settled or () if outcome is not None
        }
        outcomes: List[UnitOutcome] = []
        with session.lock:
            for progress in list(session.files.values()):
                if not progress.stage.is_terminal:
                    listener(progress.item_ref, Stage.FAILED, None, message)
                if progress.item_ref in known:
                    outcomes.append(known[progress.item_ref])
                elif progress.stage is Stage.COMPLETED:
                    outcomes.append(UnitOutcome.ok(progress.item_ref, progress.result))
                else:
                    error = UnitError(code="BATCH_ABORTED", message=progress.error or message)
                    outcomes.append(UnitOutcome.failed(progress.item_ref, error))
        return BatchOutcome.from_outcomes(outcomes, session.elapsed_seconds)
