from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse

SESSION_EXPIRED_MESSAGE = "Session expired due to inactivity. Start a new session to continue."


class CopilotAPIError(Exception):
    """Raised anywhere in a request; rendered as ``{"ok": false, "error": code, ...}``."""

    def __init__(
        self,
        status_code: int,
        code: str,
        extra: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(code)
        self.status_code = int(status_code)
        self.code = str(code)
        self.extra = dict(extra or {})
        self.headers = dict(headers or {})

    def to_payload(self) -> dict[str, Any]:
        body: dict[str, Any] = {"ok": False, "error": self.code}
        body.update(self.extra)
        return body


def error_response(exc: CopilotAPIError) -> JSONResponse:
    return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=exc.headers or None)


def copilot_ok(payload: dict[str, Any], status_code: int = 200) -> JSONResponse:
    body = {"ok": True, "data": payload}
    body.update(payload)
    return JSONResponse(body, status_code=status_code)


def session_expired_error(session_id: str, stopped_at: str | None, reason: str = "heartbeat_timeout") -> CopilotAPIError:
    return CopilotAPIError(
        409,
        "session_expired",
        extra={
            "code": "session_expired",
            "state": "expired",
            "message": SESSION_EXPIRED_MESSAGE,
            "expired_reason": reason,
            "session": {
                "id": session_id,
                "status": "expired",
                "stopped_at": stopped_at,
            },
        },
    )


def rate_limited(retry_after: int) -> CopilotAPIError:
    return CopilotAPIError(429, "rate_limited", headers={"Retry-After": str(max(1, int(retry_after)))})


def internal_error(request_id: str) -> CopilotAPIError:
    return CopilotAPIError(500, "internal_error", extra={"request_id": request_id})
