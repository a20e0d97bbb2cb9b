from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from typing import Iterator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response, StreamingResponse

from app.auth import get_user_id_async
from app.copilot.history import PURGE_CONFIRMATION, parse_history_query
from app.copilot.ingest import TranscriptChunk
from app.copilot.models import CopilotSession, to_iso
from app.copilot.responses import (
    CopilotAPIError,
    copilot_ok,
    internal_error,
    rate_limited,
    session_expired_error,
)
from app.copilot.services import CopilotServices
from app.rate_limit import RATE_LIMIT_WINDOW_SEC, ROUTE_LIMITS, USER_ROUTE_LIMITS, request_identity
from app.schemas import (
    IngestEventRequest,
    PurgeRequest,
    StartSessionRequest,
    StopSessionRequest,
    TranscriptBatchRequest,
)
from app.session.stream import CancellationToken
from core.logger import log_event

logger = logging.getLogger("app.api.copilot")

router = APIRouter(prefix="/api/copilot", tags=["copilot"])

DISCONNECT_CHECK_SEC = 0.5


def get_services(request: Request) -> CopilotServices:
    return request.app.state.copilot


def get_request_id(request: Request) -> str:
    return str(request.headers.get("x-request-id") or "").strip() or str(uuid.uuid4())


def rate_limit(route: str):
    limit = ROUTE_LIMITS[route]

    async def _check(request: Request, services: CopilotServices = Depends(get_services)) -> None:
        key = f"copilot:{route}:{request_identity(request)}"
        decision = await services.rate_limiter.hit(key, limit, RATE_LIMIT_WINDOW_SEC)
        if not decision.allowed:
            raise rate_limited(decision.retry_after)

    return _check


async def _enforce_user_limit(services: CopilotServices, route: str, user_id: str) -> None:
    # Per-user budget is looser than per-IP so shared NATs are not the bottleneck.
    decision = await services.rate_limiter.hit(
        f"copilot:{route}:user:{user_id}",
        USER_ROUTE_LIMITS.get(route, ROUTE_LIMITS[route] * 2),
        RATE_LIMIT_WINDOW_SEC,
    )
    if not decision.allowed:
        raise rate_limited(decision.retry_after)


@contextlib.contextmanager
def _route_errors(route: str, request_id: str, session_id: str = "") -> Iterator[None]:
    try:
        yield
    except (CopilotAPIError, HTTPException):
        raise
    except Exception as exc:
        log_event(
            "api",
            "route_error",
            session_id,
            level=logging.ERROR,
            route=route,
            request_id=request_id,
            error_class=type(exc).__name__,
            detail=str(exc)[:300],
        )
        raise internal_error(request_id) from exc


async def _owned_session(
    services: CopilotServices,
    session_id: str,
    user_id: str,
    expire_stale: bool = False,
) -> CopilotSession:
    session = await services.store.get_session(session_id)
    # Other owners get the same 404 as a missing row.
    if session is None or session.user_id != user_id:
        raise CopilotAPIError(404, "session_not_found")
    if expire_stale:
        session = await services.lifecycle.expire_if_stale(session)
    return session


@router.post("/sessions/start", dependencies=[Depends(rate_limit("start"))])
async def start_session(
    body: StartSessionRequest,
    request: Request,
    user_id: str = Depends(get_user_id_async),
    services: CopilotServices = Depends(get_services),
):
    request_id = get_request_id(request)
    with _route_errors("start", request_id):
        session = await services.lifecycle.start(user_id, title=body.title, metadata=body.metadata)
        return copilot_ok({"session": session.to_dict()}, status_code=201)


@router.post("/sessions/stop", dependencies=[Depends(rate_limit("stop"))])
async def stop_session(
    body: StopSessionRequest,
    request: Request,
    user_id: str = Depends(get_user_id_async),
    services: CopilotServices = Depends(get_services),
):
    request_id = get_request_id(request)
    with _route_errors("stop", request_id, body.sessionId):
        # A stale session is closed as expired first, so the idle tail is never billed.
        session = await _owned_session(services, body.sessionId, user_id, expire_stale=True)
        result = await services.lifecycle.stop(session)
        return copilot_ok(
            {
                "session": result.session.to_dict(),
                "usage": {
                    "elapsed_seconds": result.session.duration_seconds,
                    "billed_minutes": result.session.consumed_minutes,
                    "already_stopped": result.already_stopped,
                },
            }
        )


@router.get("/sessions/history", dependencies=[Depends(rate_limit("history"))])
async def session_history(
    request: Request,
    user_id: str = Depends(get_user_id_async),
    services: CopilotServices = Depends(get_services),
):
    request_id = get_request_id(request)
    with _route_errors("history", request_id):
        await _enforce_user_limit(services, "history", user_id)
        query = parse_history_query(request.query_params)
        return copilot_ok(await services.data.history(user_id, query))


@router.get("/sessions/export", dependencies=[Depends(rate_limit("export"))])
async def export_sessions(
    request: Request,
    user_id: str = Depends(get_user_id_async),
    services: CopilotServices = Depends(get_services),
):
    request_id = get_request_id(request)
    with _route_errors("export", request_id):
        await _enforce_user_limit(services, "export", user_id)
        payload = await services.data.export(user_id)

    filename = f"copilot-data-export-{payload['exported_at'][:10]}.json"
    return Response(
        json.dumps(payload, indent=2, ensure_ascii=False),
        media_type="application/json; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-store",
        },
    )


@router.delete("/sessions/purge", dependencies=[Depends(rate_limit("purge"))])
@router.post("/sessions/purge", dependencies=[Depends(rate_limit("purge"))])
async def purge_sessions(
    request: Request,
    body: PurgeRequest | None = None,
    user_id: str = Depends(get_user_id_async),
    services: CopilotServices = Depends(get_services),
):
    request_id = get_request_id(request)
    if body is None or body.confirmation != PURGE_CONFIRMATION:
        raise CopilotAPIError(400, "invalid_confirmation")
    with _route_errors("purge", request_id):
        await _enforce_user_limit(services, "purge", user_id)
        deleted = await services.data.purge(user_id)
        return copilot_ok({"deleted": deleted.to_dict()})


@router.get("/sessions/{session_id}", dependencies=[Depends(rate_limit("get"))])
async def get_session(
    session_id: str,
    request: Request,
    user_id: str = Depends(get_user_id_async),
    services: CopilotServices = Depends(get_services),
):
    request_id = get_request_id(request)
    with _route_errors("get", request_id, session_id):
        await _enforce_user_limit(services, "get", user_id)
        session = await _owned_session(services, session_id, user_id, expire_stale=True)
        events = await services.store.list_events(session_id, limit=services.stream.event_limit)
        summaries = await services.store.list_summaries(user_id, [session_id])
        return copilot_ok(
            {
                "session": session.to_dict(),
                "events": [event.to_dict() for event in events],
                "summaries": summaries,
            }
        )


@router.delete("/sessions/{session_id}", dependencies=[Depends(rate_limit("delete"))])
async def delete_session(
    session_id: str,
    request: Request,
    user_id: str = Depends(get_user_id_async),
    services: CopilotServices = Depends(get_services),
):
    request_id = get_request_id(request)
    with _route_errors("delete", request_id, session_id):
        session = await _owned_session(services, session_id, user_id, expire_stale=True)
        if not services.lifecycle.can_delete(session):
            raise CopilotAPIError(409, "session_active")
        if not await services.store.delete_session(session_id):
            raise CopilotAPIError(409, "session_active")
        log_event("api", "session_deleted", session_id, request_id=request_id)
        return copilot_ok({"deleted": True, "id": session_id})


@router.post("/sessions/{session_id}/heartbeat", dependencies=[Depends(rate_limit("heartbeat"))])
async def heartbeat(
    session_id: str,
    request: Request,
    user_id: str = Depends(get_user_id_async),
    services: CopilotServices = Depends(get_services),
):
    request_id = get_request_id(request)
    with _route_errors("heartbeat", request_id, session_id):
        session = await _owned_session(services, session_id, user_id)
        result = await services.lifecycle.heartbeat(session)
        if result.state == "expired":
            reason = (result.session.metadata or {}).get("expired_reason") or "heartbeat_timeout"
            raise session_expired_error(result.session.id, result.session.stopped_at, str(reason))
        if result.state == "already_closed":
            return copilot_ok({"state": "already_closed", "session": result.session.to_dict()})
        return copilot_ok({"state": "alive", "heartbeat_at": result.heartbeat_at})


@router.post("/sessions/{session_id}/events", dependencies=[Depends(rate_limit("events"))])
async def ingest_event(
    session_id: str,
    body: IngestEventRequest,
    request: Request,
    user_id: str = Depends(get_user_id_async),
    services: CopilotServices = Depends(get_services),
):
    request_id = get_request_id(request)
    with _route_errors("events", request_id, session_id):
        session = await _owned_session(services, session_id, user_id)
        result = await services.ingest.ingest(
            session,
            event_type=body.eventType,
            speaker=body.speaker,
            text=body.text,
            auto_suggest=body.autoSuggest,
            request_id=request_id,
        )
        return copilot_ok(result.to_payload(), status_code=201)


@router.post("/sessions/{session_id}/transcript", dependencies=[Depends(rate_limit("transcript"))])
async def ingest_transcript(
    session_id: str,
    body: TranscriptBatchRequest,
    request: Request,
    user_id: str = Depends(get_user_id_async),
    services: CopilotServices = Depends(get_services),
):
    request_id = get_request_id(request)
    with _route_errors("transcript", request_id, session_id):
        await _enforce_user_limit(services, "transcript", user_id)
        session = await _owned_session(services, session_id, user_id)
        chunks = [
            TranscriptChunk(
                text=chunk.text,
                speaker=chunk.speaker,
                is_final=chunk.isFinal,
                interim_id=chunk.interimId,
                client_timestamp=to_iso(chunk.clientTimestamp) if chunk.clientTimestamp else None,
                auto_suggest=chunk.autoSuggest,
            )
            for chunk in body.chunks
        ]
        result = await services.ingest.ingest_transcript_batch(session, chunks, request_id=request_id)
        return copilot_ok(result.to_payload(), status_code=201)


@router.post("/sessions/{session_id}/summarize", dependencies=[Depends(rate_limit("summarize"))])
async def summarize_session(
    session_id: str,
    request: Request,
    user_id: str = Depends(get_user_id_async),
    services: CopilotServices = Depends(get_services),
):
    request_id = get_request_id(request)
    with _route_errors("summarize", request_id, session_id):
        session = await _owned_session(services, session_id, user_id, expire_stale=True)
        payload = await services.summaries.summarize(session, request_id)
        return copilot_ok(payload)


@router.get("/sessions/{session_id}/report", dependencies=[Depends(rate_limit("report"))])
async def get_report(
    session_id: str,
    request: Request,
    user_id: str = Depends(get_user_id_async),
    services: CopilotServices = Depends(get_services),
):
    request_id = get_request_id(request)
    with _route_errors("report", request_id, session_id):
        await _enforce_user_limit(services, "report", user_id)
        session = await _owned_session(services, session_id, user_id, expire_stale=True)
        return copilot_ok(await services.summaries.get_report(session))


async def _watch_disconnect(request: Request, cancel: CancellationToken) -> None:
    while not cancel.cancelled:
        if await request.is_disconnected():
            cancel.cancel()
            return
        await cancel.wait(DISCONNECT_CHECK_SEC)


async def _event_source(request: Request, services: CopilotServices, session_id: str, cursor: str | None):
    cancel = CancellationToken()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    messages = services.stream.run(session_id, cursor, cancel)
    try:
        async for message in messages:
            yield message.encode()
    finally:
        cancel.cancel()
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
        await messages.aclose()


@router.get("/sessions/{session_id}/stream", dependencies=[Depends(rate_limit("stream"))])
async def stream_session(
    session_id: str,
    request: Request,
    cursor: str | None = None,
    user_id: str = Depends(get_user_id_async),
    services: CopilotServices = Depends(get_services),
):
    request_id = get_request_id(request)
    with _route_errors("stream", request_id, session_id):
        await _owned_session(services, session_id, user_id)
        resume_from = request.headers.get("last-event-id") or cursor

    return StreamingResponse(
        _event_source(request, services, session_id, resume_from),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
