"""In-memory registry of live upload progress sessions.

A session is created per bulk upload, mutated while its files move through
the upload stages, flagged terminal once every file is terminal and evicted
after a grace period. Eviction waits for the `complete` frame to reach at
least one subscriber, bounded by the unclaimed retention window.

All mutation of a session happens while holding `session.lock`; the
registry map has its own lock, so different sessions never contend.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Dict, List, Optional, Sequence, Set, Tuple, TypeVar

from bulk_engine import BatchOutcome
from records import utc_now_iso
from upload_pipeline import FileProgress, Stage

if TYPE_CHECKING:
    from progress_broadcaster import Subscription

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProgressSession:
    """Aggregate state of one in-flight bulk upload plus its subscribers."""

    def __init__(self, session_id: str, owner_id: str, files: Sequence[Tuple[str, str]]) -> None:
        self.session_id = session_id
        self.owner_id = owner_id
        self.total = len(files)
        self.started_at = utc_now_iso()
        self.files: Dict[str, FileProgress] = {
            item_ref: FileProgress(item_ref=item_ref, filename=filename) for item_ref, filename in files
        }
        self.subscribers: Set["Subscription"] = set()
        self.terminal = False
        self.terminal_at: Optional[float] = None
        self.outcome: Optional[BatchOutcome] = None
        self.task: Optional[asyncio.Task] = None
        self.eviction_task: Optional[asyncio.Task] = None
        self.complete_delivered = asyncio.Event()
        self.lock = threading.RLock()
        self._started_perf = time.perf_counter()

    @property
    def all_files_terminal(self) -> bool:
        return all(progress.stage.is_terminal for progress in self.files.values())

    @property
    def elapsed_seconds(self) -> float:
        return time.perf_counter() - self._started_perf

    def snapshot(self) -> Dict[str, Any]:
        """Return the aggregate progress state."""
        with self.lock:
            completed = sum(1 for p in self.files.values() if p.stage is Stage.COMPLETED)
            failed = sum(1 for p in self.files.values() if p.stage is Stage.FAILED)
            done = completed + failed
            return {
                "session_id": self.session_id,
                "total": self.total,
                "completed": completed,
                "failed": failed,
                "processing": self.total - done,
                "percentage": round(done / self.total * 100) if self.total else 100,
                "started_at": self.started_at,
                "terminal": self.terminal,
                "files": [progress.to_dict() for progress in self.files.values()],
            }

    def complete_payload(self) -> Dict[str, Any]:
        """Final snapshot merged with the full batch outcome."""
        with self.lock:
            if self.outcome is None:
                raise RuntimeError(f"Session {self.session_id} has no outcome yet.")
            payload = self.snapshot()
            payload["duration"] = round(self.outcome.elapsed_seconds, 2)
            payload["outcome"] = self.outcome.to_dict()
            return payload

    def mark_complete_delivered(self) -> None:
        self.complete_delivered.set()

    def close_subscribers(self) -> None:
        with self.lock:
            subscribers = list(self.subscribers)
            self.subscribers.clear()
        for subscription in subscribers:
            subscription.close()


class SessionRegistry:
    """Owns every live `ProgressSession`, keyed by an opaque session id."""

    def __init__(self, grace_seconds: float = 30.0, unclaimed_seconds: float = 300.0) -> None:
        self.grace_seconds = grace_seconds
        self.unclaimed_seconds = max(unclaimed_seconds, grace_seconds)
        self._sessions: Dict[str, ProgressSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def _stale_sessions_unlocked(self) -> List[ProgressSession]:
        cutoff = time.monotonic() - self.unclaimed_seconds
        stale = [
            session
            for session in self._sessions.values()
            if session.terminal and session.terminal_at is not None and session.terminal_at < cutoff
        ]
        for session in stale:
            self._sessions.pop(session.session_id, None)
        return stale

    def create(self, owner_id: str, files: Sequence[Tuple[str, str]]) -> ProgressSession:
        """Register a new session for `files` given as (item_ref, filename) pairs."""
        session = ProgressSession(uuid.uuid4().hex, owner_id, files)
        with self._lock:
            stale = self._stale_sessions_unlocked()
            self._sessions[session.session_id] = session
        for old in stale:
            old.close_subscribers()
            logger.info("session_evicted session_id=%s reason=stale", old.session_id)
        logger.info("session_created session_id=%s owner=%s total=%s", session.session_id, owner_id, session.total)
        return session

    def get(self, session_id: str, owner_id: Optional[str] = None) -> Optional[ProgressSession]:
        """Look a session up. Unknown, evicted and foreign sessions are all a miss."""
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            return None
        if owner_id is not None and session.owner_id != owner_id:
            return None
        return session

    def touch(self, session_id: str, mutation: Callable[[ProgressSession], T]) -> Optional[T]:
        """Apply `mutation` to a live session under its lock. Returns None on a miss."""
        session = self.get(session_id)
        if session is None:
            return None
        with session.lock:
            return mutation(session)

    def launch(self, session: ProgressSession, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Start the session's batch as a background task owned by the session."""
        task = asyncio.get_running_loop().create_task(coro, name=f"progress-session-{session.session_id}")
        session.task = task
        task.add_done_callback(lambda finished: self._log_task_result(session, finished))
        return task

    def _log_task_result(self, session: ProgressSession, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("session_task_cancelled session_id=%s", session.session_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "session_task_crashed session_id=%s error=%s",
                session.session_id,
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    def mark_terminal_and_schedule_eviction(self, session_id: str, outcome: BatchOutcome) -> bool:
        """Flip the session to terminal once. Returns True only for the flipping call."""
        session = self.get(session_id)
        if session is None:
            return False
        with session.lock:
            if session.terminal:
                return False
            if not session.all_files_terminal:
                raise RuntimeError(f"Session {session_id} still has files in flight.")
            session.terminal = True
            session.terminal_at = time.monotonic()
            session.outcome = outcome
        session.eviction_task = asyncio.get_running_loop().create_task(
            self._evict_later(session), name=f"evict-session-{session_id}"
        )
        logger.info(
            "session_terminal session_id=%s succeeded=%s failed=%s",
            session_id,
            len(outcome.succeeded),
            len(outcome.failed),
        )
        return True

    async def _evict_later(self, session: ProgressSession) -> None:
        await asyncio.sleep(self.grace_seconds)
        if not session.complete_delivered.is_set():
            remaining = self.unclaimed_seconds - self.grace_seconds
            if remaining > 0:
                try:
                    await asyncio.wait_for(session.complete_delivered.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    logger.info("session_unclaimed session_id=%s", session.session_id)
        self.evict(session.session_id)

    def evict(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return
        session.close_subscribers()
        logger.info("session_evicted session_id=%s", session_id)

    async def shutdown(self) -> None:
        """Cancel batch tasks and eviction timers, then drop every session."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()

        pending = []
        for session in sessions:
            for task in (session.task, session.eviction_task):
                if task is not None and not task.done():
                    task.cancel()
                    pending.append(task)
            session.close_subscribers()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("session_registry_shutdown sessions=%s", len(sessions))
