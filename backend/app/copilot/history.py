from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping

from app.copilot.models import CopilotSession, parse_iso, to_iso, utc_now
from app.copilot.responses import CopilotAPIError
from app.db.copilot_store import CopilotStore, DeletedCounts, SessionFilters
from core.logger import log_event
from core.state import CopilotSessionStatus

logger = logging.getLogger("app.copilot.history")

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 30
PURGE_CONFIRMATION = "DELETE ALL COPILOT DATA"


@dataclass
class HistoryQuery:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    status: str | None = None
    mode: str | None = None
    created_from: str | None = None
    created_to: str | None = None

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def filters(self) -> SessionFilters:
        return SessionFilters(
            status=self.status,
            mode=self.mode,
            created_from=self.created_from,
            created_to=self.created_to,
        )

    def filters_payload(self) -> dict:
        return {
            "status": self.status,
            "mode": self.mode,
            "from": self.created_from,
            "to": self.created_to,
        }


def _optional_string(value: Any, max_length: int = 64) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text[:max_length] if text else None


def _positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed >= 1 else fallback


def parse_history_query(params: Mapping[str, Any]) -> HistoryQuery:
    return HistoryQuery(
        page=_positive_int(params.get("page"), 1),
        page_size=min(MAX_PAGE_SIZE, _positive_int(params.get("pageSize"), DEFAULT_PAGE_SIZE)),
        status=_optional_string(params.get("status"), 24),
        mode=_optional_string(params.get("mode"), 24),
        created_from=_optional_string(params.get("from")),
        created_to=_optional_string(params.get("to")),
    )


def is_iso_date(value: str | None) -> bool:
    return bool(value) and parse_iso(value) is not None


def compute_usage_aggregate(sessions: list[CopilotSession]) -> dict:
    return {
        "total_duration_seconds": sum(int(session.duration_seconds or 0) for session in sessions),
        "total_consumed_minutes": sum(int(session.consumed_minutes or 0) for session in sessions),
    }


class CopilotDataService:
    """Per-user views over stored copilot data: history, export and purge."""

    def __init__(self, store: CopilotStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self._clock = clock

    async def history(self, user_id: str, query: HistoryQuery) -> dict:
        if (query.created_from and not is_iso_date(query.created_from)) or (
            query.created_to and not is_iso_date(query.created_to)
        ):
            raise CopilotAPIError(400, "invalid_date_filter")

        filters = query.filters()
        sessions, total = await self.store.list_sessions(
            user_id,
            filters,
            offset=query.offset,
            limit=query.page_size,
        )
        all_matching, _ = await self.store.list_sessions(user_id, filters)

        summaries_by_session: dict[str, list[dict]] = defaultdict(list)
        for row in await self.store.list_summaries(user_id, [session.id for session in sessions]):
            summaries_by_session[str(row.get("session_id"))].append(
                {
                    "summary_type": row.get("summary_type"),
                    "content": row.get("content"),
                    "created_at": row.get("created_at"),
                    "updated_at": row.get("updated_at"),
                }
            )

        return {
            "sessions": [
                {**session.to_dict(), "copilot_summaries": summaries_by_session.get(session.id, [])}
                for session in sessions
            ],
            "pagination": {
                "page": query.page,
                "pageSize": query.page_size,
                "total": total,
                "totalPages": max(1, math.ceil(total / query.page_size)),
            },
            "filters": query.filters_payload(),
            "usage": compute_usage_aggregate(all_matching),
        }

    async def export(self, user_id: str) -> dict:
        sessions, _ = await self.store.list_sessions(user_id)
        events = await self.store.list_user_events(user_id)
        summaries = await self.store.list_summaries(user_id)
        return {
            "exported_at": to_iso(self._clock()),
            "user_id": user_id,
            "sessions": [session.to_dict() for session in reversed(sessions)],
            "events": [event.to_dict() for event in events],
            "summaries": summaries,
        }

    async def purge(self, user_id: str) -> DeletedCounts:
        _, active = await self.store.list_sessions(
            user_id,
            SessionFilters(status=CopilotSessionStatus.ACTIVE.value),
            limit=0,
        )
        if active > 0:
            raise CopilotAPIError(
                409,
                "session_active",
                extra={"message": "Stop active sessions before deleting all copilot data."},
            )
        deleted = await self.store.delete_user_data(user_id)
        log_event("history", "copilot_data_purged", "", user_id=user_id, **deleted.to_dict())
        return deleted
