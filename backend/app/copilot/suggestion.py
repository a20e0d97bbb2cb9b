from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from app.copilot.consent import is_consent_valid_at
from app.copilot.latency import LatencyStage, LatencyTracker
from app.copilot.models import CopilotEvent, CopilotSession, utc_now
from app.copilot.security import FILTERED_INJECTION_MARKER
from app.db.copilot_store import CopilotStore
from app.router.engine import LLMUnavailableError, select_options
from app.router.fallback import FallbackChain
from app.system_metrics import increment_metric
from core.config import COPILOT_SUGGESTION_CONTEXT_EVENTS
from core.logger import log_event
from core.state import CopilotEventType, Speaker

logger = logging.getLogger("app.copilot.suggestion")

FALLBACK_SUGGESTION_TEXT = (
    "Suggestion generation is temporarily unavailable. Try rephrasing the question in one short sentence."
)

SYSTEM_PROMPT = (
    "You are an interview copilot. Return practical interview guidance only. "
    "Never invent user experience details not in context. Keep output concise and immediately usable."
)

_MODE_HINTS = {
    "coding": "Focus on technical reasoning, constraints, edge cases, and complexity.",
    "phone": "Focus on concise and clear phone-screen style responses.",
    "video": "Focus on structured, confident video-interview responses.",
}
_DEFAULT_MODE_HINT = "Focus on behavioral interview responses."

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class SuggestionParseError(ValueError):
    pass


@dataclass
class ParsedSuggestion:
    short_answer: str
    talking_points: list[str] = field(default_factory=list)
    follow_up: str | None = None
    complexity: str | None = None
    edge_cases: list[str] = field(default_factory=list)
    checklist: list[str] = field(default_factory=list)

    def structured(self) -> dict:
        data: dict[str, Any] = {
            "short_answer": self.short_answer,
            "talking_points": list(self.talking_points),
        }
        if self.follow_up:
            data["follow_up"] = self.follow_up
        if self.complexity:
            data["complexity"] = self.complexity
        if self.edge_cases:
            data["edge_cases"] = list(self.edge_cases)
        if self.checklist:
            data["checklist"] = list(self.checklist)
        return data


def should_auto_suggest(auto_suggest: bool | None, event_type: str, speaker: str, has_prompt_injection: bool) -> bool:
    return (
        auto_suggest is not False
        and event_type == CopilotEventType.TRANSCRIPT.value
        and speaker == Speaker.INTERVIEWER.value
        and not has_prompt_injection
    )


def _event_line(event: CopilotEvent) -> str:
    payload = event.payload or {}
    speaker = payload.get("speaker") if isinstance(payload.get("speaker"), str) else "unknown"
    security = payload.get("security") if isinstance(payload.get("security"), dict) else {}
    if security.get("prompt_injection"):
        text = FILTERED_INJECTION_MARKER
    else:
        text = payload.get("text") if isinstance(payload.get("text"), str) else ""
    return f"{speaker}: {text}"


def render_transcript(events: list[CopilotEvent]) -> str:
    return "\n".join(_event_line(event) for event in events)


def build_suggestion_prompt(mode: str, transcript_text: str, latest_question: str) -> list[dict]:
    mode_hint = _MODE_HINTS.get(mode, _DEFAULT_MODE_HINT)
    coding_fields = ""
    if mode == "coding":
        coding_fields = (
            ',\n  "complexity": "time/space complexity summary in one short line",'
            '\n  "edge_cases": ["edge case 1", "edge case 2"],'
            '\n  "checklist": ["step 1", "step 2", "step 3"]'
        )

    user_prompt = (
        f"Interview mode: {mode}\n{mode_hint}\n\n"
        f"Recent transcript:\n{transcript_text}\n\n"
        f"Latest interviewer question:\n{latest_question}\n\n"
        "Return JSON with this exact shape:\n"
        "{\n"
        '  "short_answer": "<= 90 words",\n'
        '  "talking_points": ["bullet1", "bullet2", "bullet3"],\n'
        '  "follow_up": "one short clarifying follow-up user can ask if needed"'
        f"{coding_fields}\n"
        "}"
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]


def _as_string(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_string_list(value: Any, max_items: int = 6) -> list[str]:
    if not isinstance(value, list):
        return []
    items = [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return items[:max_items]


def parse_suggestion_content(content: str, mode: str) -> ParsedSuggestion:
    raw = _CODE_FENCE.sub("", str(content or "").strip())
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise SuggestionParseError("suggestion output is not JSON") from exc
    if not isinstance(parsed, dict):
        raise SuggestionParseError("suggestion output is not a JSON object")

    short_answer = _as_string(parsed.get("short_answer"))
    if short_answer is None:
        raise SuggestionParseError("suggestion output has no short_answer")

    is_coding = mode == "coding"
    return ParsedSuggestion(
        short_answer=short_answer,
        talking_points=_as_string_list(parsed.get("talking_points")),
        follow_up=_as_string(parsed.get("follow_up")),
        complexity=_as_string(parsed.get("complexity")) if is_coding else None,
        edge_cases=_as_string_list(parsed.get("edge_cases"), 8) if is_coding else [],
        checklist=_as_string_list(parsed.get("checklist"), 10) if is_coding else [],
    )


def _failure_code(exc: Exception) -> str:
    if isinstance(exc, SuggestionParseError):
        return "malformed_output"
    if isinstance(exc, LLMUnavailableError):
        return "llm_unavailable"
    return "llm_failed"


class SuggestionOrchestrator:
    def __init__(
        self,
        store: CopilotStore,
        llm: FallbackChain,
        tracker: LatencyTracker | None = None,
        context_events: int = COPILOT_SUGGESTION_CONTEXT_EVENTS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.llm = llm
        self.tracker = tracker
        self.context_events = max(1, int(context_events))
        self._clock = clock

    def _start(self, timing_key: str | None, stage: LatencyStage) -> None:
        if self.tracker is not None and timing_key:
            self.tracker.start_stage(timing_key, stage)

    def _end(self, timing_key: str | None, stage: LatencyStage) -> None:
        if self.tracker is not None and timing_key:
            self.tracker.end_stage(timing_key, stage)

    async def _recent_transcript(self, session_id: str) -> list[CopilotEvent]:
        newest_first = await self.store.list_events(
            session_id,
            event_type=CopilotEventType.TRANSCRIPT.value,
            limit=self.context_events,
            newest_first=True,
        )
        return list(reversed(newest_first))

    async def generate(
        self,
        session: CopilotSession,
        source_event: CopilotEvent,
        request_id: str | None = None,
        timing_key: str | None = None,
    ) -> CopilotEvent | None:
        """Generate and persist a suggestion for ``source_event``.

        ``timing_key`` names the latency tracker entry to record stages on.

        Returns the persisted suggestion (or the fallback suggestion when the
        model path fails), or None when consent was revoked in the meantime or
        nothing could be persisted. Never raises.
        """
        requested_at = self._clock()
        mode = session.mode
        latest_question = str((source_event.payload or {}).get("text") or "")
        speaker = str((source_event.payload or {}).get("speaker") or Speaker.INTERVIEWER.value)

        try:
            self._start(timing_key, LatencyStage.CONTEXT_RETRIEVAL)
            try:
                context = await self._recent_transcript(session.id)
            finally:
                self._end(timing_key, LatencyStage.CONTEXT_RETRIEVAL)

            transcript_text = render_transcript(context) or f"{speaker}: {latest_question}"
            messages = build_suggestion_prompt(mode, transcript_text, latest_question)

            self._start(timing_key, LatencyStage.LLM_INFERENCE)
            try:
                result = await self.llm.complete(messages, select_options("suggestion"))
            finally:
                self._end(timing_key, LatencyStage.LLM_INFERENCE)

            parsed = parse_suggestion_content(result.content, mode)
        except Exception as exc:
            code = _failure_code(exc)
            log_event(
                "suggestion",
                "suggestion_fallback",
                session.id,
                level=logging.WARNING,
                request_id=request_id,
                error=code,
                detail=str(exc)[:200],
            )
            return await self._persist_fallback(
                session, source_event, mode, code, requested_at, request_id, timing_key
            )

        payload = {
            "category": "answer",
            "text": parsed.short_answer,
            "based_on_event_id": source_event.id,
            "mode": mode,
            "talking_points": parsed.talking_points,
            "structured": parsed.structured(),
            "provider": result.provider,
        }
        if parsed.follow_up:
            payload["follow_up"] = parsed.follow_up

        persisted = await self._persist(session, payload, requested_at, request_id, timing_key)
        if persisted is not None:
            increment_metric("suggestions_generated")
        return persisted

    async def _persist_fallback(
        self,
        session: CopilotSession,
        source_event: CopilotEvent,
        mode: str,
        code: str,
        requested_at: datetime,
        request_id: str | None,
        timing_key: str | None = None,
    ) -> CopilotEvent | None:
        payload = {
            "category": "system",
            "text": FALLBACK_SUGGESTION_TEXT,
            "based_on_event_id": source_event.id,
            "mode": mode,
            "error": code,
        }
        persisted = await self._persist(session, payload, requested_at, request_id, timing_key)
        if persisted is not None:
            increment_metric("suggestions_fallback")
        return persisted

    async def _persist(
        self,
        session: CopilotSession,
        payload: dict,
        requested_at: datetime,
        request_id: str | None,
        timing_key: str | None = None,
    ) -> CopilotEvent | None:
        self._start(timing_key, LatencyStage.SUGGESTION_PERSIST)
        try:
            latest = await self.store.get_session(session.id)
            if latest is None or not is_consent_valid_at(latest, requested_at):
                log_event("suggestion", "suggestion_dropped_consent", session.id, request_id=request_id)
                return None
            return await self.store.append_event(
                session.id,
                session.user_id,
                CopilotEventType.SUGGESTION.value,
                payload,
            )
        except Exception as exc:
            logger.warning("suggestion persist failed | session_id=%s err=%s", session.id, exc)
            return None
        finally:
            self._end(timing_key, LatencyStage.SUGGESTION_PERSIST)
