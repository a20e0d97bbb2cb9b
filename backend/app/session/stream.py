from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator

from app.copilot.models import CopilotSession
from app.db.copilot_store import CopilotStore
from app.session.cursor import StreamCursor, cursor_for_event, filter_events_after_cursor, parse_event_cursor
from app.session.lifecycle import SessionLifecycleManager
from app.system_metrics import decrement_metric, increment_metric, observe_stream_duration
from core.config import COPILOT_STREAM_EVENT_LIMIT, COPILOT_STREAM_POLL_SEC
from core.logger import log_event
from core.state import CopilotSessionStatus

logger = logging.getLogger("app.session.stream")


class CancellationToken:
    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, float(timeout)))
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class StreamMessage:
    event: str
    payload: dict = field(default_factory=dict)
    cursor: str | None = None

    def encode(self) -> str:
        lines = [f"event: {self.event}"]
        if self.cursor:
            lines.append(f"id: {self.cursor}")
        data = json.dumps({"type": self.event, "payload": self.payload}, ensure_ascii=False, default=str)
        lines.append(f"data: {data}")
        return "\n".join(lines) + "\n\n"


def _terminal_session_payload(session_id: str, last_seen: CopilotSession | None) -> dict:
    payload = last_seen.to_dict() if last_seen is not None else {"id": session_id}
    payload["status"] = CopilotSessionStatus.EXPIRED.value
    return payload


class StreamSessionServer:
    """Polls one session and yields deltas.

    Message order per iteration: optional ``snapshot`` (first pass without a
    cursor), then ``copilot_event`` per new event, then ``session``. The
    stream ends after the session leaves ``active`` or the token is cancelled.
    """

    def __init__(
        self,
        store: CopilotStore,
        lifecycle: SessionLifecycleManager,
        poll_interval_sec: float = COPILOT_STREAM_POLL_SEC,
        event_limit: int = COPILOT_STREAM_EVENT_LIMIT,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.poll_interval_sec = max(0.0, float(poll_interval_sec))
        self.event_limit = max(1, int(event_limit))

    async def run(
        self,
        session_id: str,
        cursor: StreamCursor | str | None,
        cancel: CancellationToken,
    ) -> AsyncIterator[StreamMessage]:
        current_cursor = cursor if isinstance(cursor, StreamCursor) else parse_event_cursor(cursor)
        snapshot_sent = current_cursor is not None
        last_seen: CopilotSession | None = None
        started = time.monotonic()
        reason = "cancelled"

        increment_metric("stream_connections_active")
        log_event("stream", "stream_connected", session_id, resumed=current_cursor is not None)
        try:
            yield StreamMessage("connected", {"sessionId": session_id})

            while not cancel.cancelled:
                session = await self.store.get_session(session_id)
                if session is None:
                    reason = "session_missing"
                    yield StreamMessage("session", _terminal_session_payload(session_id, last_seen))
                    break

                if self.lifecycle.is_heartbeat_expired(session):
                    session = await self.lifecycle.expire_if_stale(session)
                    if not session.is_active:
                        reason = "session_expired"
                        yield StreamMessage("session", session.to_dict())
                        break
                last_seen = session

                events = await self.store.list_events(
                    session_id,
                    created_at_gte=current_cursor.created_at if current_cursor else None,
                    limit=self.event_limit,
                )

                if not snapshot_sent:
                    snapshot_sent = True
                    if events:
                        last = events[-1]
                        current_cursor = StreamCursor(created_at=last.created_at, id=last.id)
                    token = current_cursor.token() if current_cursor else None
                    yield StreamMessage(
                        "snapshot",
                        {
                            "session": session.to_dict(),
                            "events": [event.to_dict() for event in events],
                            "cursor": token,
                        },
                        cursor=token,
                    )
                else:
                    for event in filter_events_after_cursor(events, current_cursor):
                        current_cursor = StreamCursor(created_at=event.created_at, id=event.id)
                        yield StreamMessage("copilot_event", event.to_dict(), cursor=cursor_for_event(event))

                yield StreamMessage("session", session.to_dict())

                if not session.is_active:
                    reason = f"session_{session.status}"
                    break

                if await cancel.wait(self.poll_interval_sec):
                    break
        finally:
            decrement_metric("stream_connections_active")
            increment_metric("stream_disconnects_total")
            observe_stream_duration(time.monotonic() - started)
            log_event("stream", "stream_closed", session_id, reason=reason)
