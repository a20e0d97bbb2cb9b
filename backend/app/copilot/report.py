from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Literal

from pydantic import BaseModel, Field

from app.copilot.models import CopilotEvent, CopilotSession
from app.copilot.responses import CopilotAPIError
from app.copilot.security import text_for_model
from app.db.copilot_store import CopilotStore
from app.router.engine import select_options
from app.router.fallback import FallbackChain
from core.config import COPILOT_SUMMARY_EVENT_LIMIT
from core.logger import log_event

logger = logging.getLogger("app.copilot.report")

REPORT_SUMMARY_TYPE = "mock_interview_report"
LEGACY_SUMMARY_TYPE = "final"
MIN_LIST_ITEMS = 3
MAX_LIST_ITEMS = 6

HiringSignal = Literal["strong_no_hire", "no_hire", "lean_no_hire", "lean_hire", "hire", "strong_hire"]
HIRING_SIGNALS = ("strong_no_hire", "no_hire", "lean_no_hire", "lean_hire", "hire", "strong_hire")
RUBRIC_DIMENSIONS = (
    "communication",
    "technical_accuracy",
    "problem_solving",
    "structure",
    "ownership",
    "role_fit",
)

DEFAULT_OVERALL_SCORE = 64
DEFAULT_HIRING_SIGNAL = "lean_no_hire"
DEFAULT_SUMMARY = (
    "Candidate stayed engaged and showed baseline competency, with room to improve depth and structure."
)

FALLBACK_STRENGTHS = [
    "Stayed engaged and completed the full mock interview.",
    "Responded to every interviewer prompt without long stalls.",
    "Kept a professional and collaborative tone throughout.",
]
FALLBACK_WEAKNESSES = [
    "Answers need tighter structure and stronger role-specific examples.",
    "Impact statements lacked measurable outcomes.",
    "Trade-offs and alternatives were rarely made explicit.",
]
FALLBACK_NEXT_STEPS = [
    "Practice concise STAR responses and measurable outcomes for core role questions.",
    "Prepare two quantified stories for each key requirement of the role.",
    "Rehearse 60-90 second answers that lead with the conclusion.",
]
FALLBACK_RECOMMENDATIONS = {
    "communication": "Tighten verbal structure and reduce filler.",
    "technical_accuracy": "Use more precise terminology and validation details.",
    "problem_solving": "Make reasoning explicit and compare alternatives.",
    "structure": "Lead with an answer, then support with 2-3 points.",
    "ownership": "Quantify personal impact and decision-making scope.",
    "role_fit": "Map examples directly to job requirements.",
}

_PRIORITY_PREFIX = re.compile(r"^\s*P\d+\s*[:.)-]\s*", re.IGNORECASE)

SUMMARY_SYSTEM_PROMPT = (
    "Summarize interview sessions for candidate coaching. "
    "Be specific, concise, and actionable. Return JSON only."
)


class ReportDimension(BaseModel):
    score: int = Field(ge=1, le=5)
    evidence: str = ""
    recommendation: str = ""


class ReportRubric(BaseModel):
    communication: ReportDimension
    technical_accuracy: ReportDimension
    problem_solving: ReportDimension
    structure: ReportDimension
    ownership: ReportDimension
    role_fit: ReportDimension


class MockInterviewReport(BaseModel):
    version: Literal["v1"] = "v1"
    mode: str = "general"
    overall_score: int = Field(ge=0, le=100)
    hiring_signal: HiringSignal
    summary: str = ""
    strengths: list[str] = Field(min_length=MIN_LIST_ITEMS)
    weaknesses: list[str] = Field(min_length=MIN_LIST_ITEMS)
    next_steps: list[str] = Field(min_length=MIN_LIST_ITEMS)
    rubric: ReportRubric


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _clamp_round(value: Any, low: int, high: int, default: int) -> int:
    if not _is_number(value):
        return default
    return int(max(low, min(high, round(value))))


def _normalize_dimension(raw: Any, name: str) -> dict:
    data = raw if isinstance(raw, dict) else {}
    recommendation = data.get("recommendation")
    return {
        "score": _clamp_round(data.get("score"), 1, 5, 3),
        "evidence": data.get("evidence") if isinstance(data.get("evidence"), str) else "",
        "recommendation": (
            recommendation
            if isinstance(recommendation, str) and recommendation.strip()
            else FALLBACK_RECOMMENDATIONS[name]
        ),
    }


def _dedupe_key(text: str) -> str:
    return " ".join(text.lower().split())


def _normalize_list(raw: Any, pool: list[str], strip_priority: bool = False) -> list[str]:
    items: list[str] = []
    seen: set[str] = set()

    def _add(value: Any) -> None:
        if not isinstance(value, str):
            return
        text = value.strip()
        if strip_priority:
            text = _PRIORITY_PREFIX.sub("", text).strip()
        key = _dedupe_key(text)
        if not text or key in seen:
            return
        seen.add(key)
        items.append(text)

    for value in raw if isinstance(raw, list) else []:
        _add(value)
    for value in pool:
        if len(items) >= MIN_LIST_ITEMS:
            break
        _add(value)
    return items[:MAX_LIST_ITEMS]


def _label_priorities(steps: list[str]) -> list[str]:
    return [f"P{index}: {step}" for index, step in enumerate(steps, start=1)]


def fallback_report(mode: str) -> MockInterviewReport:
    return normalize_report({}, mode)


def normalize_report(raw: Any, mode: str) -> MockInterviewReport:
    """Coerce arbitrary model output into a structurally valid report.

    Missing, mistyped or out-of-range fields fall back to defaults; list
    sections are de-duplicated and backfilled to at least three items, and
    next steps are labelled ``P1:``, ``P2:`` ... in priority order.
    """
    data = raw if isinstance(raw, dict) else {}
    rubric = data.get("rubric") if isinstance(data.get("rubric"), dict) else {}
    summary = data.get("summary")
    hiring_signal = data.get("hiring_signal")

    normalized = {
        "version": "v1",
        "mode": str(mode or "general"),
        "overall_score": _clamp_round(data.get("overall_score"), 0, 100, DEFAULT_OVERALL_SCORE),
        "hiring_signal": hiring_signal if hiring_signal in HIRING_SIGNALS else DEFAULT_HIRING_SIGNAL,
        "summary": summary.strip() if isinstance(summary, str) and summary.strip() else DEFAULT_SUMMARY,
        "strengths": _normalize_list(data.get("strengths"), FALLBACK_STRENGTHS),
        "weaknesses": _normalize_list(data.get("weaknesses"), FALLBACK_WEAKNESSES),
        "next_steps": _label_priorities(
            _normalize_list(data.get("next_steps"), FALLBACK_NEXT_STEPS, strip_priority=True)
        ),
        "rubric": {name: _normalize_dimension(rubric.get(name), name) for name in RUBRIC_DIMENSIONS},
    }
    return MockInterviewReport.model_validate(normalized)


def report_to_legacy_payload(report: MockInterviewReport) -> dict:
    return {
        "mode": report.mode,
        "strengths": list(report.strengths),
        "weaknesses": list(report.weaknesses),
        "next_steps": list(report.next_steps),
        "report": report.model_dump(),
    }


def compact_session_transcript(events: list[CopilotEvent]) -> str:
    lines: list[str] = []
    for event in events:
        payload = event.payload or {}
        raw_text = payload.get("text") if isinstance(payload.get("text"), str) else ""
        speaker = payload.get("speaker") if isinstance(payload.get("speaker"), str) else event.event_type
        lines.append(f"[{speaker}] {text_for_model(raw_text)}")
    return "\n".join(lines)


def build_summary_prompt(mode: str, transcript: str) -> list[dict]:
    rubric_keys = ", ".join(RUBRIC_DIMENSIONS)
    return [
        {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                f"Mode: {mode}\n\nSession log:\n{transcript}\n\n"
                "Return JSON with keys: summary (string), strengths (string[]), weaknesses (string[]), "
                "next_steps (string[] in priority order), overall_score (0-100), "
                f"hiring_signal (one of {', '.join(HIRING_SIGNALS)}), "
                f"rubric (object with keys {rubric_keys}; each {{score 1-5, evidence, recommendation}})."
            ),
        },
    ]


class SummaryService:
    def __init__(self, store: CopilotStore, llm: FallbackChain, event_limit: int = COPILOT_SUMMARY_EVENT_LIMIT):
        self.store = store
        self.llm = llm
        self.event_limit = max(1, int(event_limit))

    async def summarize(self, session: CopilotSession, request_id: str) -> dict:
        events = await self.store.list_events(session.id, limit=self.event_limit)
        if not events:
            raise CopilotAPIError(400, "no_events", extra={"message": "No session events to summarize"})

        mode = session.mode
        transcript = compact_session_transcript(events)
        try:
            result = await self.llm.complete(build_summary_prompt(mode, transcript), select_options("summary"))
            report = normalize_report(json.loads(result.content), mode)
            source = "llm"
        except Exception as exc:
            report = fallback_report(mode)
            source = "fallback"
            log_event(
                "summary",
                "summary_fallback",
                session.id,
                level=logging.WARNING,
                request_id=request_id,
                error_type=type(exc).__name__,
            )

        payload = report_to_legacy_payload(report)
        payload["source"] = source
        saved = await self.store.upsert_summary(
            session.id,
            session.user_id,
            REPORT_SUMMARY_TYPE,
            report.summary,
            payload,
        )
        log_event(
            "summary",
            "summary_saved",
            session.id,
            request_id=request_id,
            source=source,
            events=len(events),
            overall_score=report.overall_score,
        )
        return {"summary": saved, "report": report.model_dump()}

    async def get_report(self, session: CopilotSession) -> dict:
        for summary_type in (REPORT_SUMMARY_TYPE, LEGACY_SUMMARY_TYPE):
            row = await self.store.get_summary(session.id, summary_type)
            payload = (row or {}).get("payload")
            if not isinstance(payload, dict):
                continue
            if payload.get("report") or payload.get("rubric") or payload.get("overall_score"):
                report = normalize_report(payload.get("report") or payload, session.mode)
                return {"report": report.model_dump(), "summary": row}
        raise CopilotAPIError(404, "report_not_found")
