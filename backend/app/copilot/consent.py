"""Consent gate for copilot ingestion.

Consent lives as flat metadata on the session row:

- ``consent_status``: ``granted | revoked | pending | expired``
- ``consent_granted_at``: ISO timestamp of the grant
- ``consent_revoked_at``: ISO timestamp of the revoke, if any

Sessions created before consent was recorded read as ``pending``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.copilot.models import CopilotSession, parse_iso
from core.state import ConsentStatus

_KNOWN_CONSENT = {status.value for status in ConsentStatus}


@dataclass(frozen=True)
class ConsentDecision:
    allowed: bool
    reason: str | None = None


def get_consent_status(session: CopilotSession) -> ConsentStatus:
    raw = (session.metadata or {}).get("consent_status")
    if isinstance(raw, str) and raw in _KNOWN_CONSENT:
        return ConsentStatus(raw)
    return ConsentStatus.PENDING


def check_ingest_consent(session: CopilotSession) -> ConsentDecision:
    # Session status is checked before consent.
    if not session.is_active:
        return ConsentDecision(allowed=False, reason="session_not_active")

    consent = get_consent_status(session)
    if consent == ConsentStatus.GRANTED:
        return ConsentDecision(allowed=True)
    if consent == ConsentStatus.PENDING:
        return ConsentDecision(allowed=False, reason="consent_pending")
    if consent == ConsentStatus.REVOKED:
        return ConsentDecision(allowed=False, reason="consent_revoked")
    if consent == ConsentStatus.EXPIRED:
        return ConsentDecision(allowed=False, reason="consent_expired")
    return ConsentDecision(allowed=False, reason="consent_required")


def grant_consent_metadata(existing: dict[str, Any] | None, at_iso: str) -> dict[str, Any]:
    return {
        **(existing if isinstance(existing, dict) else {}),
        "consent_status": ConsentStatus.GRANTED.value,
        "consent_granted_at": at_iso,
    }


def revoke_consent_metadata(existing: dict[str, Any] | None, at_iso: str) -> dict[str, Any]:
    return {
        **(existing if isinstance(existing, dict) else {}),
        "consent_status": ConsentStatus.REVOKED.value,
        "consent_revoked_at": at_iso,
    }


def is_consent_valid_at(session: CopilotSession, action_at: datetime | str) -> bool:
    """True only if consent is granted and the action happened strictly before any revoke.

    Guards actions queued against a stale "granted" snapshot: a revoke at T1
    invalidates anything stamped at T1 or later.
    """
    if get_consent_status(session) != ConsentStatus.GRANTED:
        return False

    revoked_at = parse_iso((session.metadata or {}).get("consent_revoked_at"))
    if revoked_at is None:
        return True

    action_ts = parse_iso(action_at)
    if action_ts is None:
        return False
    return action_ts < revoked_at
