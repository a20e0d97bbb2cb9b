from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from app.copilot.history import CopilotDataService
from app.copilot.ingest import CopilotIngestService
from app.copilot.latency import LatencyTracker
from app.copilot.models import utc_now
from app.copilot.report import SummaryService
from app.copilot.suggestion import SuggestionOrchestrator
from app.db.copilot_store import CopilotStore, build_copilot_store
from app.rate_limit import RateLimiterBackend, build_rate_limiter
from app.router.fallback import FallbackChain, build_provider_chain
from app.session.lifecycle import SessionLifecycleManager
from app.session.stream import StreamSessionServer
from core.config import COPILOT_HEARTBEAT_TIMEOUT_SEC, COPILOT_STREAM_POLL_SEC


@dataclass
class CopilotServices:
    store: CopilotStore
    llm: FallbackChain
    tracker: LatencyTracker
    lifecycle: SessionLifecycleManager
    orchestrator: SuggestionOrchestrator
    ingest: CopilotIngestService
    summaries: SummaryService
    stream: StreamSessionServer
    data: CopilotDataService
    rate_limiter: RateLimiterBackend
    clock: Callable[[], datetime] = utc_now

    @classmethod
    def build(
        cls,
        store: CopilotStore | None = None,
        llm: FallbackChain | None = None,
        rate_limiter: RateLimiterBackend | None = None,
        clock: Callable[[], datetime] = utc_now,
        heartbeat_timeout_sec: float = COPILOT_HEARTBEAT_TIMEOUT_SEC,
        poll_interval_sec: float = COPILOT_STREAM_POLL_SEC,
    ) -> "CopilotServices":
        store = store if store is not None else build_copilot_store()
        llm = llm if llm is not None else build_provider_chain()
        tracker = LatencyTracker()
        lifecycle = SessionLifecycleManager(store, heartbeat_timeout_sec=heartbeat_timeout_sec, clock=clock)
        orchestrator = SuggestionOrchestrator(store, llm, tracker=tracker, clock=clock)
        return cls(
            store=store,
            llm=llm,
            tracker=tracker,
            lifecycle=lifecycle,
            orchestrator=orchestrator,
            ingest=CopilotIngestService(store, lifecycle, orchestrator, tracker),
            summaries=SummaryService(store, llm),
            stream=StreamSessionServer(store, lifecycle, poll_interval_sec=poll_interval_sec),
            data=CopilotDataService(store, clock=clock),
            rate_limiter=rate_limiter if rate_limiter is not None else build_rate_limiter(),
            clock=clock,
        )

    async def aclose(self) -> None:
        await self.store.aclose()
