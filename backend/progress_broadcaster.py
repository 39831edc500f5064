"""Server-sent progress events for bulk upload sessions.

Subscribers get a `connected` frame with the full current snapshot on
attach, a `progress` frame for every stage transition of any file, and
exactly one `complete` frame carrying the batch outcome. A subscriber that
joins a terminal session still waiting for eviction gets the `complete`
frame replayed right after `connected`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from bulk_engine import BatchOutcome
from progress_sessions import ProgressSession, SessionRegistry
from upload_pipeline import Stage, StageListener

logger = logging.getLogger(__name__)

EVENT_CONNECTED = "connected"
EVENT_PROGRESS = "progress"
EVENT_COMPLETE = "complete"


def format_sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


class Subscription:
    """Push channel owned by one connected client."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.queue: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
        self.closed = False

    def deliver(self, event: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        self.queue.put_nowait(event)
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Wakes the stream so it can finish.
        self.queue.put_nowait(None)


class ProgressBroadcaster:
    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry

    def subscribe(self, session_id: str, owner_id: Optional[str] = None) -> Optional[Subscription]:
        """Attach a new subscriber, or return None when the session is unknown."""
        session = self.registry.get(session_id, owner_id)
        if session is None:
            return None

        subscription = Subscription(session_id)
        with session.lock:
            session.subscribers.add(subscription)
            subscription.deliver({"type": EVENT_CONNECTED, "data": session.snapshot()})
            if session.terminal:
                subscription.deliver({"type": EVENT_COMPLETE, "data": session.complete_payload()})
            count = len(session.subscribers)
        logger.info("subscriber_attached session_id=%s subscribers=%s", session_id, count)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.closed = True
        session = self.registry.get(subscription.session_id)
        if session is None:
            return
        with session.lock:
            session.subscribers.discard(subscription)
            count = len(session.subscribers)
        logger.info("subscriber_detached session_id=%s subscribers=%s", subscription.session_id, count)

    def _fan_out(self, session: ProgressSession, event: Dict[str, Any]) -> int:
        delivered = 0
        for subscription in list(session.subscribers):
            if subscription.deliver(event):
                delivered += 1
        return delivered

    def stage_listener(self, session_id: str) -> StageListener:
        """Return a listener that records a file's stage change and broadcasts it."""

        def apply(session: ProgressSession, item_ref: str, stage: Stage, result: Any, error: Optional[str]) -> bool:
            session.files[item_ref].advance(stage, result=result, error=error)
            self._fan_out(session, {"type": EVENT_PROGRESS, "data": session.snapshot()})
            return True

        def listener(item_ref: str, stage: Stage, result: Any = None, error: Optional[str] = None) -> None:
            applied = self.registry.touch(
                session_id, lambda session: apply(session, item_ref, stage, result, error)
            )
            if applied is None:
                logger.warning("stage_update_dropped session_id=%s item_ref=%s", session_id, item_ref)

        return listener

    def complete(self, session_id: str, outcome: BatchOutcome) -> bool:
        """Mark the session terminal and broadcast the single `complete` frame."""
        session = self.registry.get(session_id)
        if session is None:
            return False
        with session.lock:
            if not self.registry.mark_terminal_and_schedule_eviction(session_id, outcome):
                return False
            delivered = self._fan_out(session, {"type": EVENT_COMPLETE, "data": session.complete_payload()})
        logger.info("session_complete_broadcast session_id=%s subscribers=%s", session_id, delivered)
        return True

    async def event_stream(self, subscription: Subscription, keepalive_seconds: float = 15.0) -> AsyncIterator[str]:
        """Yield SSE frames until the `complete` frame or the channel closes."""
        try:
            while True:
                try:
                    event = await asyncio.wait_for(subscription.queue.get(), timeout=keepalive_seconds)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if event is None:
                    break
                yield format_sse(event)
                if event.get("type") == EVENT_COMPLETE:
                    # Resumed only after the frame was handed to the transport.
                    session = self.registry.get(subscription.session_id)
                    if session is not None:
                        session.mark_complete_delivered()
                    break
        finally:
            self.unsubscribe(subscription)
