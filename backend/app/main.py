from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import asyncio
import logging
import os

from app.api.copilot import router as copilot_router
from app.api.cron import router as cron_router
from app.copilot.responses import CopilotAPIError, error_response
from app.copilot.retention import run_retention_sweep
from app.copilot.services import CopilotServices
from app.system_metrics import get_metrics_snapshot
from core.config import (
    COPILOT_HEARTBEAT_TIMEOUT_SEC,
    COPILOT_RETENTION_SWEEP_ENABLED,
    COPILOT_RETENTION_SWEEP_INTERVAL_SEC,
    COPILOT_STORE_BACKEND,
    LLM_PROVIDER_CHAIN,
    QA_MODE,
)

logger = logging.getLogger("app.main")


def _get_allowed_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:3001",
            "http://127.0.0.1:3001",
        ]
    return [item.strip() for item in raw.split(",") if item.strip()]


def _validation_details(exc: RequestValidationError) -> list[dict]:
    details = []
    for item in exc.errors():
        details.append(
            {
                "loc": [str(part) for part in item.get("loc", ())],
                "msg": str(item.get("msg") or ""),
                "type": str(item.get("type") or ""),
            }
        )
    return details


async def _retention_sweep_loop(app: FastAPI):
    while True:
        await asyncio.sleep(COPILOT_RETENTION_SWEEP_INTERVAL_SEC)
        try:
            result = await run_retention_sweep(app.state.copilot.store, dry_run=False)
        except Exception:
            logger.exception("[SYSTEM] retention sweep failed")
            continue
        logger.info("[SYSTEM] retention sweep deleted=%s", result.deleted.to_dict())


def create_app(services: CopilotServices | None = None) -> FastAPI:
    app = FastAPI(title="Interview Copilot API")
    app.state.copilot = services if services is not None else CopilotServices.build()

    allowed_origins = _get_allowed_origins()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=False,
    )

    @app.exception_handler(CopilotAPIError)
    async def copilot_error_handler(request: Request, exc: CopilotAPIError):
        return error_response(exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            {"ok": False, "error": str(exc.detail)},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            {"ok": False, "error": "invalid_body", "extra": _validation_details(exc)},
            status_code=400,
        )

    @app.on_event("startup")
    async def startup_banner():
        if QA_MODE:
            logger.info("[SYSTEM] QA_MODE ENABLED")
        logger.info("[SYSTEM] CORS allow_origins=%s", allowed_origins)
        logger.info(
            "[SYSTEM] copilot store=%s providers=%s heartbeat_timeout_sec=%s",
            COPILOT_STORE_BACKEND,
            LLM_PROVIDER_CHAIN,
            COPILOT_HEARTBEAT_TIMEOUT_SEC,
        )

        if COPILOT_RETENTION_SWEEP_ENABLED:
            app.state.retention_task = asyncio.create_task(_retention_sweep_loop(app))
            logger.info("[SYSTEM] retention sweep every %ss", COPILOT_RETENTION_SWEEP_INTERVAL_SEC)

    @app.on_event("shutdown")
    async def shutdown_handler():
        task = getattr(app.state, "retention_task", None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            finally:
                app.state.retention_task = None
        await app.state.copilot.aclose()
        logger.info("[SYSTEM] shutdown complete")

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok", "service": "backend"}

    @app.get("/api/system/metrics")
    async def system_metrics():
        return get_metrics_snapshot(extra={"latency_requests_in_flight": len(app.state.copilot.tracker)})

    app.include_router(copilot_router)
    app.include_router(cron_router)
    return app


app = create_app()
