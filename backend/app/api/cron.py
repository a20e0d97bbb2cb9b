from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, Request

from app.api.copilot import get_request_id, get_services
from app.copilot.responses import CopilotAPIError, copilot_ok, internal_error
from app.copilot.retention import run_retention_sweep
from app.copilot.services import CopilotServices
from core import config
from core.logger import log_event

logger = logging.getLogger("app.api.cron")

router = APIRouter(prefix="/api/cron", tags=["cron"])

_FALSE_VALUES = {"0", "false", "no", "off"}


def _presented_secret(request: Request) -> str:
    header = str(request.headers.get("x-cron-secret") or "").strip()
    if header:
        return header
    auth = str(request.headers.get("authorization") or "").strip()
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return ""


def require_cron_secret(request: Request) -> None:
    expected = config.COPILOT_CRON_SECRET
    if not expected:
        raise CopilotAPIError(403, "cron_disabled")
    if not hmac.compare_digest(_presented_secret(request), expected):
        raise CopilotAPIError(401, "unauthorized")


def _dry_run(request: Request) -> bool:
    raw = str(request.query_params.get("dryRun") or "").strip().lower()
    return raw not in _FALSE_VALUES


@router.get("/retention", dependencies=[Depends(require_cron_secret)])
@router.post("/retention", dependencies=[Depends(require_cron_secret)])
async def retention_sweep(request: Request, services: CopilotServices = Depends(get_services)):
    request_id = get_request_id(request)
    dry_run = _dry_run(request)
    try:
        result = await run_retention_sweep(services.store, now=services.clock(), dry_run=dry_run)
    except Exception as exc:
        log_event(
            "cron",
            "retention_failed",
            "",
            level=logging.ERROR,
            request_id=request_id,
            error_class=type(exc).__name__,
        )
        raise internal_error(request_id) from exc
    return copilot_ok(result.to_dict())
