from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from core.state import CopilotSessionStatus

_FRACTION = re.compile(r"(\d{2}:\d{2}:\d{2})\.(\d+)")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _normalize_fraction(match: re.Match) -> str:
    return f"{match.group(1)}.{match.group(2)[:6].ljust(6, '0')}"


def parse_iso(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime, or None.

    Postgres trims trailing zeros from fractional seconds (``.12345``), which
    ``datetime.fromisoformat`` only accepts from Python 3.11 on, so the
    fraction is padded to microseconds first.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z") or raw.endswith("z"):
            raw = raw[:-1] + "+00:00"
        raw = _FRACTION.sub(_normalize_fraction, raw, count=1)
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class CopilotSession:
    id: str
    user_id: str
    status: str = CopilotSessionStatus.ACTIVE.value
    title: str | None = None
    started_at: str = ""
    stopped_at: str | None = None
    duration_seconds: int = 0
    consumed_minutes: int = 0
    created_at: str = ""
    updated_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == CopilotSessionStatus.ACTIVE.value

    @property
    def mode(self) -> str:
        value = (self.metadata or {}).get("mode")
        return value if isinstance(value, str) and value.strip() else "general"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status,
            "title": self.title,
            "started_at": self.started_at,
            "stopped_at": self.stopped_at,
            "duration_seconds": self.duration_seconds,
            "consumed_minutes": self.consumed_minutes,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "metadata": copy.deepcopy(self.metadata or {}),
        }

    @classmethod
    def from_row(cls, row: dict) -> "CopilotSession":
        metadata = row.get("metadata")
        return cls(
            id=str(row.get("id") or ""),
            user_id=str(row.get("user_id") or ""),
            status=str(row.get("status") or CopilotSessionStatus.ACTIVE.value),
            title=row.get("title"),
            started_at=str(row.get("started_at") or ""),
            stopped_at=row.get("stopped_at"),
            duration_seconds=int(row.get("duration_seconds") or 0),
            consumed_minutes=int(row.get("consumed_minutes") or 0),
            created_at=str(row.get("created_at") or ""),
            updated_at=str(row.get("updated_at") or ""),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )


@dataclass
class CopilotEvent:
    id: str
    session_id: str
    user_id: str
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""

    def sort_key(self) -> tuple:
        return (parse_iso(self.created_at) or datetime.min.replace(tzinfo=timezone.utc), self.id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "event_type": self.event_type,
            "payload": copy.deepcopy(self.payload or {}),
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: dict) -> "CopilotEvent":
        payload = row.get("payload")
        return cls(
            id=str(row.get("id") or ""),
            session_id=str(row.get("session_id") or ""),
            user_id=str(row.get("user_id") or ""),
            event_type=str(row.get("event_type") or ""),
            payload=dict(payload) if isinstance(payload, dict) else {},
            created_at=str(row.get("created_at") or ""),
        )
