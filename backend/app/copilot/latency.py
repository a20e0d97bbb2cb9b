from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from threading import Lock
from typing import Iterator

from app.system_metrics import observe_latency_ms
from core.logger import log_event

logger = logging.getLogger("app.copilot.latency")


class LatencyStage(str, Enum):
    INGEST = "ingest"
    TRANSCRIPT_PARSE = "transcript_parse"
    SUGGESTION_PERSIST = "suggestion_persist"
    CONTEXT_RETRIEVAL = "context_retrieval"
    LLM_INFERENCE = "llm_inference"
    DELIVERY = "delivery"


@dataclass
class StageTiming:
    stage: LatencyStage
    started_at_ms: float
    ended_at_ms: float | None = None

    @property
    def duration_ms(self) -> float | None:
        if self.ended_at_ms is None:
            return None
        return max(0.0, self.ended_at_ms - self.started_at_ms)

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value,
            "duration_ms": round(self.duration_ms, 2) if self.duration_ms is not None else None,
        }


@dataclass
class LatencyTimings:
    request_id: str
    session_id: str
    stages: list[StageTiming] = field(default_factory=list)
    total_latency_ms: float = 0.0

    def stage_durations(self) -> dict[str, float]:
        durations: dict[str, float] = {}
        for item in self.stages:
            if item.duration_ms is not None:
                durations[item.stage.value] = round(item.duration_ms, 2)
        return durations

    def to_metadata(self) -> dict:
        return {
            "latency": {
                "request_id": self.request_id,
                "session_id": self.session_id,
                "stages": self.stage_durations(),
                "total_ms": round(self.total_latency_ms, 2),
            }
        }


def _now_ms() -> float:
    return time.perf_counter() * 1000.0


def new_timing_key() -> str:
    return uuid.uuid4().hex


class LatencyTracker:
    """Per-request stage timings, owned by the app and cleared on every exit path.

    Entries are keyed by a server-generated timing key; the client-supplied
    request id is only carried along as the reported correlation id.
    """

    def __init__(self, clock_ms=_now_ms):
        self._lock = Lock()
        self._clock_ms = clock_ms
        self._timings: dict[str, LatencyTimings] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._timings)

    def start(self, key: str, session_id: str, request_id: str | None = None) -> None:
        with self._lock:
            self._timings[key] = LatencyTimings(request_id=request_id or key, session_id=session_id)

    def start_stage(self, key: str, stage: LatencyStage) -> StageTiming | None:
        with self._lock:
            timings = self._timings.get(key)
            if timings is None:
                logger.debug("start_stage on unknown key | key=%s stage=%s", key, stage)
                return None
            item = StageTiming(stage=LatencyStage(stage), started_at_ms=self._clock_ms())
            timings.stages.append(item)
            return replace(item)

    def end_stage(self, key: str, stage: LatencyStage) -> StageTiming | None:
        with self._lock:
            timings = self._timings.get(key)
            if timings is None:
                return None
            target = LatencyStage(stage)
            for item in timings.stages:
                if item.stage == target and item.ended_at_ms is None:
                    item.ended_at_ms = self._clock_ms()
                    return replace(item)
            return None

    def get_timings(self, key: str) -> LatencyTimings | None:
        with self._lock:
            timings = self._timings.get(key)
            if timings is None:
                return None
            completed = [replace(item) for item in timings.stages if item.ended_at_ms is not None]

        total = 0.0
        if completed:
            first_start = min(item.started_at_ms for item in completed)
            last_end = max(float(item.ended_at_ms) for item in completed)
            total = max(0.0, last_end - first_start)

        return LatencyTimings(
            request_id=timings.request_id,
            session_id=timings.session_id,
            stages=completed,
            total_latency_ms=total,
        )

    def clear(self, key: str) -> None:
        with self._lock:
            self._timings.pop(key, None)

    @contextmanager
    def stage(self, key: str, stage: LatencyStage) -> Iterator[None]:
        self.start_stage(key, stage)
        try:
            yield
        finally:
            self.end_stage(key, stage)

    @contextmanager
    def track(self, key: str, session_id: str, request_id: str | None = None) -> Iterator[None]:
        self.start(key, session_id, request_id=request_id)
        try:
            yield
        finally:
            self.clear(key)


def log_latency_metrics(timings: LatencyTimings, **extra) -> dict:
    fields = {f"{stage}_ms": value for stage, value in timings.stage_durations().items()}
    fields.update(extra)
    observe_latency_ms(timings.total_latency_ms)
    return log_event(
        "copilot",
        "copilot_latency",
        timings.session_id,
        request_id=timings.request_id,
        total_ms=round(timings.total_latency_ms, 2),
        **fields,
    )
