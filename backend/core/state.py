# backend/core/state.py

from enum import Enum


class CopilotSessionStatus(str, Enum):
    ACTIVE = "active"
    STOPPED = "stopped"
    EXPIRED = "expired"


class CopilotEventType(str, Enum):
    TRANSCRIPT = "transcript"
    SYSTEM = "system"
    SUGGESTION = "suggestion"


class ConsentStatus(str, Enum):
    PENDING = "pending"
    GRANTED = "granted"
    REVOKED = "revoked"
    EXPIRED = "expired"


class Speaker(str, Enum):
    INTERVIEWER = "interviewer"
    CANDIDATE = "candidate"
    SYSTEM = "system"


class TranscriptKind(str, Enum):
    FINAL = "final"
    INTERIM = "interim"
