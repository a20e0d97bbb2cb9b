from __future__ import annotations

import re
from dataclasses import dataclass, field

MAX_SANITIZED_CHARS = 4000
FILTERED_INJECTION_MARKER = "[FILTERED_PROMPT_INJECTION_CONTENT]"

_CONTROL_CHARS = re.compile(r"[\u0000-\u0008\u000B\u000C\u000E-\u001F\u007F]")

# Most specific patterns first so an SSN is never swallowed by the phone rule.
_REDACTION_RULES: list[tuple[str, re.Pattern, str]] = [
    ("email", re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE), "[REDACTED_EMAIL]"),
    ("ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[REDACTED_SSN]"),
    ("api_key", re.compile(r"\b(?:sk|pk)_[A-Za-z0-9]{16,}\b"), "[REDACTED_API_KEY]"),
    ("bearer", re.compile(r"\bBearer\s+[A-Za-z0-9._-]{16,}\b", re.IGNORECASE), "Bearer [REDACTED_TOKEN]"),
    ("credit_card", re.compile(r"\b(?:\d[ -]?){13,16}\b"), "[REDACTED_CARD]"),
    (
        "phone",
        re.compile(r"(?<!\w)(?:\+?\d{1,3}[\s.-]?)?(?:\(?\d{2,4}\)?[\s.-]?)\d{3,4}[\s.-]?\d{3,4}\b"),
        "[REDACTED_PHONE]",
    ),
]

_PROMPT_INJECTION_PATTERNS: list[re.Pattern] = [
    re.compile(r"ignore\s+(?:all\s+)?(?:previous|prior)\s+instructions?", re.IGNORECASE),
    re.compile(r"reveal\s+(?:the\s+)?(?:system|developer)\s+prompt", re.IGNORECASE),
    re.compile(r"you\s+are\s+now\s+", re.IGNORECASE),
    re.compile(r"act\s+as\s+", re.IGNORECASE),
    re.compile(r"jailbreak|do\s+anything\s+now|\bdan\b", re.IGNORECASE),
    re.compile(r"bypass\s+(?:guardrails|safety|policy)", re.IGNORECASE),
    re.compile(r"tool\s+call|function\s+call", re.IGNORECASE),
]


@dataclass
class SanitizedText:
    sanitized: str
    redactions: list[str] = field(default_factory=list)
    has_prompt_injection: bool = False

    def security_payload(self) -> dict:
        return {
            "redactions": list(self.redactions),
            "prompt_injection": self.has_prompt_injection,
        }


def sanitize_copilot_text(text: str) -> SanitizedText:
    sanitized = _CONTROL_CHARS.sub("", str(text or "")).strip()
    redactions: list[str] = []

    for name, pattern, replacement in _REDACTION_RULES:
        sanitized, count = pattern.subn(replacement, sanitized)
        if count and name not in redactions:
            redactions.append(name)

    has_prompt_injection = any(pattern.search(sanitized) for pattern in _PROMPT_INJECTION_PATTERNS)

    if len(sanitized) > MAX_SANITIZED_CHARS:
        sanitized = f"{sanitized[:MAX_SANITIZED_CHARS]}…"

    return SanitizedText(
        sanitized=sanitized,
        redactions=redactions,
        has_prompt_injection=has_prompt_injection,
    )


def text_for_model(text: str) -> str:
    """Sanitized text safe to forward to a model, or the filtered marker."""
    cleaned = sanitize_copilot_text(text)
    if cleaned.has_prompt_injection:
        return FILTERED_INJECTION_MARKER
    return cleaned.sanitized
