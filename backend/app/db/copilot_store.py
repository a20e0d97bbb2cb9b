from __future__ import annotations

import asyncio
import copy
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import httpx

from app.copilot.models import CopilotEvent, CopilotSession, parse_iso, to_iso, utc_now
from core.config import COPILOT_STORE_BACKEND, SUPABASE_SERVICE_KEY, SUPABASE_TIMEOUT_SEC, SUPABASE_URL
from core.state import CopilotSessionStatus

logger = logging.getLogger("app.db.copilot_store")

_SESSION_COLUMNS = (
    "id,user_id,status,title,started_at,stopped_at,duration_seconds,"
    "consumed_minutes,created_at,updated_at,metadata"
)
_EVENT_COLUMNS = "id,session_id,user_id,event_type,payload,created_at"
_SESSION_FIELDS = {
    "status",
    "title",
    "started_at",
    "stopped_at",
    "duration_seconds",
    "consumed_minutes",
    "metadata",
}


class CopilotStoreError(RuntimeError):
    pass


@dataclass
class SessionFilters:
    status: str | None = None
    mode: str | None = None
    created_from: str | None = None
    created_to: str | None = None


@dataclass
class DeletedCounts:
    events: int = 0
    summaries: int = 0
    sessions: int = 0

    def to_dict(self) -> dict:
        return {"events": self.events, "summaries": self.summaries, "sessions": self.sessions}


class CopilotStore(Protocol):
    async def create_session(self, user_id: str, title: str | None, metadata: dict) -> CopilotSession:
        ...

    async def get_session(self, session_id: str) -> CopilotSession | None:
        ...

    async def update_session(
        self,
        session_id: str,
        updates: dict,
        expected_status: str | None = CopilotSessionStatus.ACTIVE.value,
    ) -> CopilotSession | None:
        ...

    async def delete_session(self, session_id: str) -> bool:
        ...

    async def append_event(self, session_id: str, user_id: str, event_type: str, payload: dict) -> CopilotEvent:
        ...

    async def list_events(
        self,
        session_id: str,
        event_type: str | None = None,
        created_at_gte: str | None = None,
        limit: int = 300,
        newest_first: bool = False,
    ) -> list[CopilotEvent]:
        ...

    async def upsert_summary(
        self,
        session_id: str,
        user_id: str,
        summary_type: str,
        content: str,
        payload: dict,
    ) -> dict:
        ...

    async def get_summary(self, session_id: str, summary_type: str) -> dict | None:
        ...

    async def list_summaries(self, user_id: str, session_ids: list[str] | None = None) -> list[dict]:
        ...

    async def list_sessions(
        self,
        user_id: str,
        filters: SessionFilters | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[list[CopilotSession], int]:
        ...

    async def list_user_events(self, user_id: str) -> list[CopilotEvent]:
        ...

    async def delete_user_data(self, user_id: str) -> DeletedCounts:
        ...

    async def delete_before(self, events_before: str, summaries_before: str, sessions_before: str) -> DeletedCounts:
        ...

    async def aclose(self) -> None:
        ...


_CLOSED_STATUSES = {CopilotSessionStatus.STOPPED.value, CopilotSessionStatus.EXPIRED.value}


def _row_sort_key(row: dict) -> tuple:
    created = parse_iso(row.get("created_at")) or datetime.min.replace(tzinfo=timezone.utc)
    return (created, str(row.get("id") or ""))


def _created_before(row: dict, cutoff: datetime | None) -> bool:
    created = parse_iso(row.get("created_at"))
    return cutoff is not None and created is not None and created < cutoff


def _session_matches(row: dict, filters: SessionFilters) -> bool:
    if filters.status and row.get("status") != filters.status:
        return False
    if filters.mode and (row.get("metadata") or {}).get("mode") != filters.mode:
        return False
    created = parse_iso(row.get("created_at"))
    lower = parse_iso(filters.created_from) if filters.created_from else None
    upper = parse_iso(filters.created_to) if filters.created_to else None
    if lower is not None and (created is None or created < lower):
        return False
    if upper is not None and (created is None or created > upper):
        return False
    return True


def _content_range_total(header: str | None, fallback: int) -> int:
    # PostgREST: "0-29/123" or "*/0"
    total = str(header or "").rpartition("/")[2]
    return int(total) if total.isdigit() else fallback


def _new_id() -> str:
    return str(uuid.uuid4())


class LocalCopilotStore:
    """In-process store. Rows are deep-copied in and out."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._lock = asyncio.Lock()
        self._clock = clock
        self._sessions: dict[str, dict] = {}
        self._events: dict[str, list[dict]] = {}
        self._summaries: dict[tuple[str, str], dict] = {}

    async def create_session(self, user_id: str, title: str | None, metadata: dict) -> CopilotSession:
        now_iso = to_iso(self._clock())
        row = {
            "id": _new_id(),
            "user_id": str(user_id),
            "status": CopilotSessionStatus.ACTIVE.value,
            "title": title,
            "started_at": now_iso,
            "stopped_at": None,
            "duration_seconds": 0,
            "consumed_minutes": 0,
            "created_at": now_iso,
            "updated_at": now_iso,
            "metadata": copy.deepcopy(metadata or {}),
        }
        async with self._lock:
            self._sessions[row["id"]] = row
            self._events.setdefault(row["id"], [])
            return CopilotSession.from_row(copy.deepcopy(row))

    async def get_session(self, session_id: str) -> CopilotSession | None:
        async with self._lock:
            row = self._sessions.get(session_id)
            if row is None:
                return None
            return CopilotSession.from_row(copy.deepcopy(row))

    async def update_session(
        self,
        session_id: str,
        updates: dict,
        expected_status: str | None = CopilotSessionStatus.ACTIVE.value,
    ) -> CopilotSession | None:
        async with self._lock:
            row = self._sessions.get(session_id)
            if row is None:
                return None
            if expected_status is not None and row.get("status") != expected_status:
                return None
            for key, value in (updates or {}).items():
                if key in _SESSION_FIELDS:
                    row[key] = copy.deepcopy(value)
            row["updated_at"] = to_iso(self._clock())
            return CopilotSession.from_row(copy.deepcopy(row))

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock:
            row = self._sessions.get(session_id)
            if row is None or row.get("status") == CopilotSessionStatus.ACTIVE.value:
                return False
            self._sessions.pop(session_id, None)
            self._events.pop(session_id, None)
            for key in [key for key in self._summaries if key[0] == session_id]:
                self._summaries.pop(key, None)
            return True

    async def append_event(self, session_id: str, user_id: str, event_type: str, payload: dict) -> CopilotEvent:
        row = {
            "id": _new_id(),
            "session_id": session_id,
            "user_id": str(user_id),
            "event_type": str(event_type),
            "payload": copy.deepcopy(payload or {}),
            "created_at": to_iso(self._clock()),
        }
        async with self._lock:
            if session_id not in self._sessions:
                raise CopilotStoreError(f"session not found: {session_id}")
            self._events.setdefault(session_id, []).append(row)
            return CopilotEvent.from_row(copy.deepcopy(row))

    async def list_events(
        self,
        session_id: str,
        event_type: str | None = None,
        created_at_gte: str | None = None,
        limit: int = 300,
        newest_first: bool = False,
    ) -> list[CopilotEvent]:
        lower_bound = parse_iso(created_at_gte) if created_at_gte else None
        async with self._lock:
            rows = [copy.deepcopy(row) for row in self._events.get(session_id, [])]

        events = [CopilotEvent.from_row(row) for row in rows]
        if event_type:
            events = [event for event in events if event.event_type == event_type]
        if lower_bound is not None:
            events = [event for event in events if (parse_iso(event.created_at) or lower_bound) >= lower_bound]
        events.sort(key=lambda event: event.sort_key(), reverse=newest_first)
        return events[: max(0, int(limit))]

    async def upsert_summary(
        self,
        session_id: str,
        user_id: str,
        summary_type: str,
        content: str,
        payload: dict,
    ) -> dict:
        now_iso = to_iso(self._clock())
        key = (session_id, summary_type)
        async with self._lock:
            existing = self._summaries.get(key)
            row = {
                "id": existing["id"] if existing else _new_id(),
                "session_id": session_id,
                "user_id": str(user_id),
                "summary_type": summary_type,
                "content": content,
                "payload": copy.deepcopy(payload or {}),
                "created_at": existing["created_at"] if existing else now_iso,
                "updated_at": now_iso,
            }
            self._summaries[key] = row
            return copy.deepcopy(row)

    async def get_summary(self, session_id: str, summary_type: str) -> dict | None:
        async with self._lock:
            row = self._summaries.get((session_id, summary_type))
            return copy.deepcopy(row) if row else None

    async def list_summaries(self, user_id: str, session_ids: list[str] | None = None) -> list[dict]:
        wanted = set(session_ids) if session_ids is not None else None
        async with self._lock:
            rows = [
                copy.deepcopy(row)
                for row in self._summaries.values()
                if row.get("user_id") == user_id and (wanted is None or row.get("session_id") in wanted)
            ]
        rows.sort(key=_row_sort_key)
        return rows

    async def list_sessions(
        self,
        user_id: str,
        filters: SessionFilters | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[list[CopilotSession], int]:
        filters = filters or SessionFilters()
        async with self._lock:
            rows = [copy.deepcopy(row) for row in self._sessions.values() if row.get("user_id") == user_id]

        matched = [row for row in rows if _session_matches(row, filters)]
        matched.sort(key=_row_sort_key, reverse=True)
        start = max(0, int(offset))
        page = matched[start:] if limit is None else matched[start : start + max(0, int(limit))]
        return [CopilotSession.from_row(row) for row in page], len(matched)

    async def list_user_events(self, user_id: str) -> list[CopilotEvent]:
        async with self._lock:
            rows = [
                copy.deepcopy(row)
                for events in self._events.values()
                for row in events
                if row.get("user_id") == user_id
            ]
        events = [CopilotEvent.from_row(row) for row in rows]
        events.sort(key=lambda event: event.sort_key())
        return events

    async def delete_user_data(self, user_id: str) -> DeletedCounts:
        counts = DeletedCounts()
        async with self._lock:
            for session_id in list(self._events):
                kept = [row for row in self._events[session_id] if row.get("user_id") != user_id]
                counts.events += len(self._events[session_id]) - len(kept)
                self._events[session_id] = kept
            for key in [key for key, row in self._summaries.items() if row.get("user_id") == user_id]:
                self._summaries.pop(key, None)
                counts.summaries += 1
            for session_id in [key for key, row in self._sessions.items() if row.get("user_id") == user_id]:
                self._sessions.pop(session_id, None)
                self._events.pop(session_id, None)
                counts.sessions += 1
        return counts

    async def delete_before(self, events_before: str, summaries_before: str, sessions_before: str) -> DeletedCounts:
        events_cutoff = parse_iso(events_before)
        summaries_cutoff = parse_iso(summaries_before)
        sessions_cutoff = parse_iso(sessions_before)
        counts = DeletedCounts()
        async with self._lock:
            for session_id in list(self._events):
                kept = [row for row in self._events[session_id] if not _created_before(row, events_cutoff)]
                counts.events += len(self._events[session_id]) - len(kept)
                self._events[session_id] = kept
            for key in [key for key, row in self._summaries.items() if _created_before(row, summaries_cutoff)]:
                self._summaries.pop(key, None)
                counts.summaries += 1
            for session_id, row in list(self._sessions.items()):
                if row.get("status") not in _CLOSED_STATUSES or not _created_before(row, sessions_cutoff):
                    continue
                # Mirrors the ON DELETE CASCADE on the relational tables.
                self._sessions.pop(session_id, None)
                counts.events += len(self._events.pop(session_id, []))
                for key in [key for key in self._summaries if key[0] == session_id]:
                    self._summaries.pop(key, None)
                    counts.summaries += 1
                counts.sessions += 1
        return counts

    async def aclose(self) -> None:
        return None


class SupabaseCopilotStore:
    """PostgREST-backed store.

    Tables:
    - copilot_sessions
    - copilot_events
    - copilot_summaries (unique on session_id, summary_type)
    """

    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout_sec: float = SUPABASE_TIMEOUT_SEC,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not base_url or not service_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY are required for the supabase copilot store")
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout_sec,
            transport=transport,
        )

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("supabase request failed | method=%s path=%s err=%s", method, path, exc)
            raise CopilotStoreError(f"supabase request failed: {exc}") from exc

        if response.status_code >= 400:
            logger.warning(
                "supabase error response | method=%s path=%s status=%s body=%s",
                method,
                path,
                response.status_code,
                response.text[:300],
            )
            raise CopilotStoreError(f"supabase returned {response.status_code}")
        return response

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        response = await self._send(method, path, **kwargs)
        if not response.content:
            return None
        return response.json()

    @staticmethod
    def _first(rows: Any) -> dict | None:
        if isinstance(rows, list) and rows:
            return rows[0] if isinstance(rows[0], dict) else None
        return None

    async def create_session(self, user_id: str, title: str | None, metadata: dict) -> CopilotSession:
        now_iso = to_iso(utc_now())
        rows = await self._request(
            "POST",
            "/copilot_sessions",
            params={"select": _SESSION_COLUMNS},
            headers={"Prefer": "return=representation"},
            json={
                "user_id": user_id,
                "title": title,
                "status": CopilotSessionStatus.ACTIVE.value,
                "started_at": now_iso,
                "metadata": metadata or {},
            },
        )
        row = self._first(rows)
        if row is None:
            raise CopilotStoreError("session insert returned no row")
        return CopilotSession.from_row(row)

    async def get_session(self, session_id: str) -> CopilotSession | None:
        rows = await self._request(
            "GET",
            "/copilot_sessions",
            params={"select": _SESSION_COLUMNS, "id": f"eq.{session_id}", "limit": "1"},
        )
        row = self._first(rows)
        return CopilotSession.from_row(row) if row else None

    async def update_session(
        self,
        session_id: str,
        updates: dict,
        expected_status: str | None = CopilotSessionStatus.ACTIVE.value,
    ) -> CopilotSession | None:
        params = {"select": _SESSION_COLUMNS, "id": f"eq.{session_id}"}
        if expected_status is not None:
            params["status"] = f"eq.{expected_status}"
        body = {key: value for key, value in (updates or {}).items() if key in _SESSION_FIELDS}
        body["updated_at"] = to_iso(utc_now())
        rows = await self._request(
            "PATCH",
            "/copilot_sessions",
            params=params,
            headers={"Prefer": "return=representation"},
            json=body,
        )
        row = self._first(rows)
        return CopilotSession.from_row(row) if row else None

    async def delete_session(self, session_id: str) -> bool:
        # Events and summaries cascade at the database level.
        rows = await self._request(
            "DELETE",
            "/copilot_sessions",
            params={
                "id": f"eq.{session_id}",
                "status": f"neq.{CopilotSessionStatus.ACTIVE.value}",
                "select": "id",
            },
            headers={"Prefer": "return=representation"},
        )
        return bool(self._first(rows))

    async def append_event(self, session_id: str, user_id: str, event_type: str, payload: dict) -> CopilotEvent:
        rows = await self._request(
            "POST",
            "/copilot_events",
            params={"select": _EVENT_COLUMNS},
            headers={"Prefer": "return=representation"},
            json={
                "session_id": session_id,
                "user_id": user_id,
                "event_type": event_type,
                "payload": payload or {},
            },
        )
        row = self._first(rows)
        if row is None:
            raise CopilotStoreError("event insert returned no row")
        return CopilotEvent.from_row(row)

    async def list_events(
        self,
        session_id: str,
        event_type: str | None = None,
        created_at_gte: str | None = None,
        limit: int = 300,
        newest_first: bool = False,
    ) -> list[CopilotEvent]:
        direction = "desc" if newest_first else "asc"
        params: list[tuple[str, str]] = [
            ("select", _EVENT_COLUMNS),
            ("session_id", f"eq.{session_id}"),
            ("order", f"created_at.{direction},id.{direction}"),
            ("limit", str(max(0, int(limit)))),
        ]
        if event_type:
            params.append(("event_type", f"eq.{event_type}"))
        if created_at_gte:
            params.append(("created_at", f"gte.{created_at_gte}"))
        rows = await self._request("GET", "/copilot_events", params=params)
        return [CopilotEvent.from_row(row) for row in rows or [] if isinstance(row, dict)]

    async def upsert_summary(
        self,
        session_id: str,
        user_id: str,
        summary_type: str,
        content: str,
        payload: dict,
    ) -> dict:
        rows = await self._request(
            "POST",
            "/copilot_summaries",
            params={"on_conflict": "session_id,summary_type"},
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
            json={
                "session_id": session_id,
                "user_id": user_id,
                "summary_type": summary_type,
                "content": content,
                "payload": payload or {},
            },
        )
        row = self._first(rows)
        if row is None:
            raise CopilotStoreError("summary upsert returned no row")
        return row

    async def get_summary(self, session_id: str, summary_type: str) -> dict | None:
        rows = await self._request(
            "GET",
            "/copilot_summaries",
            params={
                "select": "*",
                "session_id": f"eq.{session_id}",
                "summary_type": f"eq.{summary_type}",
                "limit": "1",
            },
        )
        return self._first(rows)

    async def list_summaries(self, user_id: str, session_ids: list[str] | None = None) -> list[dict]:
        if session_ids is not None and not session_ids:
            return []
        params: list[tuple[str, str]] = [
            ("select", "*"),
            ("user_id", f"eq.{user_id}"),
            ("order", "created_at.asc,id.asc"),
        ]
        if session_ids is not None:
            params.append(("session_id", f"in.({','.join(session_ids)})"))
        rows = await self._request("GET", "/copilot_summaries", params=params)
        return [row for row in rows or [] if isinstance(row, dict)]

    async def list_sessions(
        self,
        user_id: str,
        filters: SessionFilters | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[list[CopilotSession], int]:
        filters = filters or SessionFilters()
        params: list[tuple[str, str]] = [
            ("select", _SESSION_COLUMNS),
            ("user_id", f"eq.{user_id}"),
            ("order", "created_at.desc,id.desc"),
            ("offset", str(max(0, int(offset)))),
        ]
        if limit is not None:
            params.append(("limit", str(max(0, int(limit)))))
        if filters.status:
            params.append(("status", f"eq.{filters.status}"))
        if filters.mode:
            params.append(("metadata", f"cs.{json.dumps({'mode': filters.mode})}"))
        if filters.created_from:
            params.append(("created_at", f"gte.{filters.created_from}"))
        if filters.created_to:
            params.append(("created_at", f"lte.{filters.created_to}"))

        response = await self._send("GET", "/copilot_sessions", params=params, headers={"Prefer": "count=exact"})
        rows = response.json() if response.content else []
        sessions = [CopilotSession.from_row(row) for row in rows or [] if isinstance(row, dict)]
        return sessions, _content_range_total(response.headers.get("content-range"), len(sessions))

    async def list_user_events(self, user_id: str) -> list[CopilotEvent]:
        rows = await self._request(
            "GET",
            "/copilot_events",
            params={"select": _EVENT_COLUMNS, "user_id": f"eq.{user_id}", "order": "created_at.asc,id.asc"},
        )
        return [CopilotEvent.from_row(row) for row in rows or [] if isinstance(row, dict)]

    async def _delete_count(self, path: str, params: list[tuple[str, str]]) -> int:
        rows = await self._request(
            "DELETE",
            path,
            params=[*params, ("select", "id")],
            headers={"Prefer": "return=representation"},
        )
        return len(rows) if isinstance(rows, list) else 0

    async def delete_user_data(self, user_id: str) -> DeletedCounts:
        scope = [("user_id", f"eq.{user_id}")]
        # Children first so the counts are not hidden by the cascade.
        return DeletedCounts(
            events=await self._delete_count("/copilot_events", scope),
            summaries=await self._delete_count("/copilot_summaries", scope),
            sessions=await self._delete_count("/copilot_sessions", scope),
        )

    async def delete_before(self, events_before: str, summaries_before: str, sessions_before: str) -> DeletedCounts:
        closed = ",".join(sorted(_CLOSED_STATUSES))
        return DeletedCounts(
            events=await self._delete_count("/copilot_events", [("created_at", f"lt.{events_before}")]),
            summaries=await self._delete_count("/copilot_summaries", [("created_at", f"lt.{summaries_before}")]),
            sessions=await self._delete_count(
                "/copilot_sessions",
                [("status", f"in.({closed})"), ("created_at", f"lt.{sessions_before}")],
            ),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def build_copilot_store() -> CopilotStore:
    if COPILOT_STORE_BACKEND == "supabase":
        logger.info("copilot store backend=supabase")
        return SupabaseCopilotStore(SUPABASE_URL, SUPABASE_SERVICE_KEY)
    if COPILOT_STORE_BACKEND != "local":
        logger.warning("unknown COPILOT_STORE_BACKEND=%s; using local store", COPILOT_STORE_BACKEND)
    return LocalCopilotStore()
