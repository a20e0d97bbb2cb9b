from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from app.copilot.consent import grant_consent_metadata, revoke_consent_metadata
from app.copilot.models import CopilotSession, parse_iso, to_iso, utc_now
from app.db.copilot_store import CopilotStore
from app.system_metrics import increment_metric
from core.config import COPILOT_HEARTBEAT_TIMEOUT_SEC
from core.logger import log_event
from core.state import CopilotSessionStatus

logger = logging.getLogger("app.session.lifecycle")

HEARTBEAT_TIMEOUT_REASON = "heartbeat_timeout"


def with_heartbeat_metadata(metadata: dict[str, Any] | None, at_iso: str) -> dict[str, Any]:
    return {
        **(metadata if isinstance(metadata, dict) else {}),
        "last_heartbeat_at": at_iso,
    }


def elapsed_usage(started_at: str, now: datetime) -> tuple[int, int]:
    """(elapsed seconds, billed minutes). Minutes round up with a floor of one."""
    started = parse_iso(started_at) or now
    elapsed_seconds = int(max(0.0, (now - started).total_seconds()))
    elapsed_minutes = max(1, math.ceil(elapsed_seconds / 60))
    return elapsed_seconds, elapsed_minutes


@dataclass
class StopResult:
    session: CopilotSession
    already_stopped: bool = False


@dataclass
class HeartbeatResult:
    # alive | expired | already_closed
    state: str
    session: CopilotSession
    heartbeat_at: str | None = None


class SessionLifecycleManager:
    """Owns session status transitions.

    ``active`` moves to ``stopped`` or ``expired`` exactly once; every status
    write is conditional on the row still being active, so a stop racing an
    expiry resolves to whichever write lands first.
    """

    def __init__(
        self,
        store: CopilotStore,
        heartbeat_timeout_sec: float = COPILOT_HEARTBEAT_TIMEOUT_SEC,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.heartbeat_timeout_sec = float(heartbeat_timeout_sec)
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def heartbeat_at(self, session: CopilotSession) -> datetime | None:
        metadata = session.metadata or {}
        raw = metadata.get("last_heartbeat_at")
        if not isinstance(raw, str):
            raw = metadata.get("created_at")
        if not isinstance(raw, str):
            raw = session.started_at
        return parse_iso(raw) or parse_iso(session.started_at)

    def is_heartbeat_expired(self, session: CopilotSession, now: datetime | None = None) -> bool:
        if not session.is_active:
            return False
        last_seen = self.heartbeat_at(session)
        if last_seen is None:
            return False
        current = now or self.now()
        return (current - last_seen).total_seconds() > self.heartbeat_timeout_sec

    async def expire_if_stale(self, session: CopilotSession, now: datetime | None = None) -> CopilotSession:
        current = now or self.now()
        if not self.is_heartbeat_expired(session, current):
            return session

        now_iso = to_iso(current)
        metadata = with_heartbeat_metadata(session.metadata, now_iso)
        metadata["expired_reason"] = HEARTBEAT_TIMEOUT_REASON
        updated = await self.store.update_session(
            session.id,
            {
                "status": CopilotSessionStatus.EXPIRED.value,
                "stopped_at": now_iso,
                "metadata": metadata,
            },
            expected_status=CopilotSessionStatus.ACTIVE.value,
        )
        if updated is not None:
            increment_metric("sessions_expired_heartbeat")
            log_event("lifecycle", "session_expired", session.id, reason=HEARTBEAT_TIMEOUT_REASON)
            return updated

        # Lost the race to another writer; report what is stored now.
        latest = await self.store.get_session(session.id)
        logger.info("expire_if_stale lost race | session_id=%s", session.id)
        return latest or session

    async def start(self, user_id: str, title: str | None = None, metadata: dict | None = None) -> CopilotSession:
        now_iso = to_iso(self.now())
        prepared = grant_consent_metadata(with_heartbeat_metadata(metadata, now_iso), now_iso)
        session = await self.store.create_session(user_id, title, prepared)
        log_event("lifecycle", "session_started", session.id, mode=session.mode)
        return session

    async def stop(self, session: CopilotSession) -> StopResult:
        if not session.is_active:
            return StopResult(session=session, already_stopped=True)

        current = self.now()
        now_iso = to_iso(current)
        elapsed_seconds, billed_minutes = elapsed_usage(session.started_at, current)
        metadata = revoke_consent_metadata(session.metadata, now_iso)
        metadata["requested_minutes"] = billed_minutes

        updated = await self.store.update_session(
            session.id,
            {
                "status": CopilotSessionStatus.STOPPED.value,
                "stopped_at": now_iso,
                "duration_seconds": elapsed_seconds,
                "consumed_minutes": billed_minutes,
                "metadata": metadata,
            },
            expected_status=CopilotSessionStatus.ACTIVE.value,
        )
        if updated is None:
            latest = await self.store.get_session(session.id)
            return StopResult(session=latest or session, already_stopped=True)

        log_event(
            "lifecycle",
            "session_stopped",
            session.id,
            duration_seconds=elapsed_seconds,
            consumed_minutes=billed_minutes,
        )
        return StopResult(session=updated)

    async def heartbeat(self, session: CopilotSession) -> HeartbeatResult:
        if not session.is_active:
            return HeartbeatResult(state="already_closed", session=session)

        current = self.now()
        if self.is_heartbeat_expired(session, current):
            expired = await self.expire_if_stale(session, current)
            return HeartbeatResult(state="expired", session=expired)

        now_iso = to_iso(current)
        updated = await self.store.update_session(
            session.id,
            {"metadata": with_heartbeat_metadata(session.metadata, now_iso)},
            expected_status=CopilotSessionStatus.ACTIVE.value,
        )
        if updated is None:
            latest = await self.store.get_session(session.id)
            return HeartbeatResult(state="already_closed", session=latest or session)
        return HeartbeatResult(state="alive", session=updated, heartbeat_at=now_iso)

    async def touch(self, session: CopilotSession) -> CopilotSession | None:
        """Refresh the heartbeat after client activity; None when no longer active."""
        now_iso = to_iso(self.now())
        return await self.store.update_session(
            session.id,
            {"metadata": with_heartbeat_metadata(session.metadata, now_iso)},
            expected_status=CopilotSessionStatus.ACTIVE.value,
        )

    @staticmethod
    def can_delete(session: CopilotSession) -> bool:
        return not session.is_active
