from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, TypeVar

from app.copilot.models import CopilotEvent, parse_iso

_SEPARATOR = "::"

T = TypeVar("T", CopilotEvent, dict)


@dataclass(frozen=True)
class StreamCursor:
    created_at: str
    id: str

    @property
    def created_at_dt(self) -> datetime:
        parsed = parse_iso(self.created_at)
        if parsed is None:
            raise ValueError(f"invalid cursor timestamp: {self.created_at!r}")
        return parsed

    def token(self) -> str:
        return build_event_cursor(self.created_at, self.id)


def build_event_cursor(created_at: str, event_id: str) -> str:
    raw = f"{created_at}{_SEPARATOR}{event_id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _decode_token(raw: str) -> str | None:
    padded = raw + "=" * (-len(raw) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None


def parse_event_cursor(raw: str | None) -> StreamCursor | None:
    """Lenient: anything malformed reads as "no cursor"."""
    value = str(raw or "").strip()
    if not value:
        return None

    # Plain "created_at::id" is accepted as well as the encoded form.
    decoded = value if _SEPARATOR in value else _decode_token(value)
    if not decoded:
        return None

    parts = decoded.split(_SEPARATOR)
    if len(parts) != 2:
        return None
    created_at, event_id = parts[0].strip(), parts[1].strip()
    if not created_at or not event_id:
        return None
    if parse_iso(created_at) is None:
        return None
    return StreamCursor(created_at=created_at, id=event_id)


def cursor_for_event(event: CopilotEvent | dict) -> str:
    created_at, event_id = _row_fields(event)
    return build_event_cursor(created_at, event_id)


def _row_fields(row: CopilotEvent | dict) -> tuple[str, str]:
    if isinstance(row, CopilotEvent):
        return row.created_at, row.id
    return str(row.get("created_at") or ""), str(row.get("id") or "")


def is_event_after_cursor(row: CopilotEvent | dict, cursor: StreamCursor) -> bool:
    created_at, event_id = _row_fields(row)
    row_ts = parse_iso(created_at)
    if row_ts is None:
        return False
    cursor_ts = cursor.created_at_dt
    if row_ts > cursor_ts:
        return True
    if row_ts < cursor_ts:
        return False
    return event_id > cursor.id


def filter_events_after_cursor(rows: Iterable[T], cursor: StreamCursor | None) -> list[T]:
    items = list(rows)
    if cursor is None:
        return items
    return [row for row in items if is_event_after_cursor(row, cursor)]
