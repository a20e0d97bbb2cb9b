from __future__ import annotations

import logging
from dataclasses import dataclass, field

from app.copilot.consent import check_ingest_consent
from app.copilot.latency import LatencyStage, LatencyTracker, log_latency_metrics, new_timing_key
from app.copilot.models import CopilotEvent, CopilotSession
from app.copilot.responses import CopilotAPIError, session_expired_error
from app.copilot.security import SanitizedText, sanitize_copilot_text
from app.copilot.suggestion import SuggestionOrchestrator, should_auto_suggest
from app.db.copilot_store import CopilotStore, CopilotStoreError
from app.session.lifecycle import HEARTBEAT_TIMEOUT_REASON, SessionLifecycleManager
from app.system_metrics import increment_metric
from core.logger import log_event
from core.state import CopilotEventType, CopilotSessionStatus, TranscriptKind

logger = logging.getLogger("app.copilot.ingest")

# Recent transcript rows scanned when de-duplicating re-sent interim chunks.
TRANSCRIPT_DEDUPE_WINDOW = 40


@dataclass
class IngestResult:
    event: CopilotEvent
    suggestion: CopilotEvent | None = None
    blocked: bool = False
    redactions: list[str] = field(default_factory=list)
    latency: dict = field(default_factory=dict)

    def to_payload(self) -> dict:
        return {
            "event": self.event.to_dict(),
            "suggestion": self.suggestion.to_dict() if self.suggestion else None,
            "blocked": self.blocked,
            "redactions": list(self.redactions),
            "latency": dict(self.latency),
        }


@dataclass
class TranscriptChunk:
    text: str
    speaker: str = "interviewer"
    is_final: bool = True
    interim_id: str | None = None
    client_timestamp: str | None = None
    auto_suggest: bool | None = None

    @property
    def kind(self) -> str:
        return TranscriptKind.FINAL.value if self.is_final else TranscriptKind.INTERIM.value


@dataclass
class TranscriptBatchResult:
    events: list[CopilotEvent] = field(default_factory=list)
    suggestions: list[CopilotEvent] = field(default_factory=list)
    rejected: int = 0

    @property
    def accepted(self) -> int:
        return len(self.events)

    def to_payload(self) -> dict:
        return {
            "events": [event.to_dict() for event in self.events],
            "suggestions": [suggestion.to_dict() for suggestion in self.suggestions],
            "accepted": self.accepted,
            "rejected": self.rejected,
        }


def _expired_error(session: CopilotSession) -> CopilotAPIError:
    reason = (session.metadata or {}).get("expired_reason") or HEARTBEAT_TIMEOUT_REASON
    return session_expired_error(session.id, session.stopped_at, str(reason))


def _matches_chunk(event: CopilotEvent, chunk: TranscriptChunk, text: str) -> bool:
    if event.event_type != CopilotEventType.TRANSCRIPT.value:
        return False
    payload = event.payload or {}
    return (
        payload.get("speaker") == chunk.speaker
        and payload.get("text") == text
        and payload.get("transcript_kind") == chunk.kind
        and payload.get("interim_id") == chunk.interim_id
    )


class CopilotIngestService:
    """Validate, persist and optionally answer transcript/system events."""

    def __init__(
        self,
        store: CopilotStore,
        lifecycle: SessionLifecycleManager,
        orchestrator: SuggestionOrchestrator,
        tracker: LatencyTracker,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.orchestrator = orchestrator
        self.tracker = tracker

    async def _ensure_live(self, session: CopilotSession) -> CopilotSession:
        if session.is_active and self.lifecycle.is_heartbeat_expired(session):
            session = await self.lifecycle.expire_if_stale(session)

        if session.status == CopilotSessionStatus.EXPIRED.value:
            raise _expired_error(session)

        decision = check_ingest_consent(session)
        if not decision.allowed:
            reason = decision.reason or "consent_required"
            if reason == "session_not_active":
                raise CopilotAPIError(409, reason)
            raise CopilotAPIError(403, reason)
        return session

    async def _touch(self, session: CopilotSession, request_id: str) -> CopilotSession:
        # The event is already stored; a failed heartbeat write must not turn it into an error.
        try:
            touched = await self.lifecycle.touch(session)
        except CopilotStoreError as exc:
            log_event(
                "ingest",
                "heartbeat_touch_failed",
                session.id,
                level=logging.WARNING,
                request_id=request_id,
                error_class=type(exc).__name__,
            )
            return session
        return touched if touched is not None else session

    @staticmethod
    def _record_ingest(
        session: CopilotSession,
        event: CopilotEvent,
        cleaned: SanitizedText,
        request_id: str,
    ) -> None:
        increment_metric("ingest_events_total")
        if cleaned.has_prompt_injection:
            increment_metric("ingest_blocked_injection")
            log_event("ingest", "prompt_injection_blocked", session.id, request_id=request_id, event_id=event.id)

    async def ingest(
        self,
        session: CopilotSession,
        event_type: str,
        speaker: str,
        text: str,
        auto_suggest: bool | None,
        request_id: str,
    ) -> IngestResult:
        timing_key = new_timing_key()
        with self.tracker.track(timing_key, session.id, request_id=request_id):
            self.tracker.start_stage(timing_key, LatencyStage.INGEST)
            try:
                session = await self._ensure_live(session)

                with self.tracker.stage(timing_key, LatencyStage.TRANSCRIPT_PARSE):
                    cleaned = sanitize_copilot_text(text)

                payload = {
                    "speaker": speaker,
                    "text": cleaned.sanitized,
                    "mode": session.mode,
                    "security": cleaned.security_payload(),
                }
                event = await self.store.append_event(session.id, session.user_id, event_type, payload)
            finally:
                self.tracker.end_stage(timing_key, LatencyStage.INGEST)

            self._record_ingest(session, event, cleaned, request_id)
            session = await self._touch(session, request_id)

            suggestion = None
            if should_auto_suggest(auto_suggest, event_type, speaker, cleaned.has_prompt_injection):
                suggestion = await self.orchestrator.generate(
                    session,
                    event,
                    request_id=request_id,
                    timing_key=timing_key,
                )

            with self.tracker.stage(timing_key, LatencyStage.DELIVERY):
                result = IngestResult(
                    event=event,
                    suggestion=suggestion,
                    blocked=cleaned.has_prompt_injection,
                    redactions=list(cleaned.redactions),
                )

            timings = self.tracker.get_timings(timing_key)
            if timings is not None:
                result.latency = timings.to_metadata()["latency"]
                log_latency_metrics(
                    timings,
                    event_type=event_type,
                    suggested=suggestion is not None,
                    blocked=result.blocked,
                )
            return result

    async def ingest_transcript_batch(
        self,
        session: CopilotSession,
        chunks: list[TranscriptChunk],
        request_id: str,
    ) -> TranscriptBatchResult:
        """Persist a batch of speech-to-text chunks.

        Interim chunks re-sent with the same ``interim_id`` and text resolve to
        the already stored row instead of a new one. Only final interviewer
        chunks trigger a suggestion.
        """
        session = await self._ensure_live(session)
        mode = session.mode
        result = TranscriptBatchResult()

        recent = await self.store.list_events(
            session.id,
            event_type=CopilotEventType.TRANSCRIPT.value,
            limit=TRANSCRIPT_DEDUPE_WINDOW,
            newest_first=True,
        )

        for chunk in chunks:
            cleaned = sanitize_copilot_text(chunk.text)
            if not cleaned.sanitized.strip():
                result.rejected += 1
                continue

            if chunk.interim_id:
                duplicate = next((event for event in recent if _matches_chunk(event, chunk, cleaned.sanitized)), None)
                if duplicate is not None:
                    result.events.append(duplicate)
                    continue

            payload = {
                "speaker": chunk.speaker,
                "text": cleaned.sanitized,
                "mode": mode,
                "transcript_kind": chunk.kind,
                "interim_id": chunk.interim_id,
                "client_timestamp": chunk.client_timestamp,
                "security": cleaned.security_payload(),
            }
            event = await self.store.append_event(
                session.id,
                session.user_id,
                CopilotEventType.TRANSCRIPT.value,
                payload,
            )
            result.events.append(event)
            recent.insert(0, event)
            self._record_ingest(session, event, cleaned, request_id)

            wants_suggestion = chunk.is_final and should_auto_suggest(
                chunk.auto_suggest,
                CopilotEventType.TRANSCRIPT.value,
                chunk.speaker,
                cleaned.has_prompt_injection,
            )
            if not wants_suggestion:
                continue
            suggestion = await self.orchestrator.generate(session, event, request_id=request_id)
            if suggestion is not None:
                result.suggestions.append(suggestion)

        if not result.events:
            raise CopilotAPIError(400, "no_valid_chunks", extra={"accepted": 0, "rejected": result.rejected})

        await self._touch(session, request_id)
        log_event(
            "ingest",
            "transcript_batch",
            session.id,
            request_id=request_id,
            accepted=result.accepted,
            rejected=result.rejected,
            suggestions=len(result.suggestions),
        )
        return result
