import pytest

from app.copilot.models import CopilotSession
from app.session.lifecycle import SessionLifecycleManager, elapsed_usage


def _manager(store, clock, timeout=60):
    return SessionLifecycleManager(store, heartbeat_timeout_sec=timeout, clock=clock)


def test_heartbeat_at_fallback_chain(store, clock):
    manager = _manager(store, clock)
    base = {"id": "s", "user_id": "u", "started_at": "2025-03-01T10:00:00+00:00"}

    with_heartbeat = CopilotSession(
        **base,
        metadata={"last_heartbeat_at": "2025-03-01T11:00:00Z", "created_at": "2025-03-01T10:30:00Z"},
    )
    assert manager.heartbeat_at(with_heartbeat).hour == 11

    with_created = CopilotSession(**base, metadata={"created_at": "2025-03-01T10:30:00Z"})
    assert manager.heartbeat_at(with_created).minute == 30

    bare = CopilotSession(**base)
    assert manager.heartbeat_at(bare).hour == 10

    unparseable = CopilotSession(**base, metadata={"last_heartbeat_at": "soon"})
    assert manager.heartbeat_at(unparseable).hour == 10


@pytest.mark.asyncio
async def test_start_grants_consent_and_stamps_heartbeat(store, clock):
    manager = _manager(store, clock)
    session = await manager.start("u-1", title="Mock", metadata={"mode": "coding"})

    assert session.status == "active"
    assert session.mode == "coding"
    assert session.metadata["consent_status"] == "granted"
    assert session.metadata["last_heartbeat_at"] == session.started_at
    assert manager.is_heartbeat_expired(session) is False


@pytest.mark.asyncio
async def test_heartbeat_expiry_is_strictly_greater_than_timeout(store, clock):
    manager = _manager(store, clock)
    session = await manager.start("u-1")

    clock.advance(60)
    assert manager.is_heartbeat_expired(session) is False
    clock.advance(1)
    assert manager.is_heartbeat_expired(session) is True


@pytest.mark.asyncio
async def test_expire_if_stale_marks_expired_once(store, clock):
    manager = _manager(store, clock)
    session = await manager.start("u-1")
    clock.advance(120)

    expired = await manager.expire_if_stale(session)
    assert expired.status == "expired"
    assert expired.stopped_at is not None
    assert expired.metadata["expired_reason"] == "heartbeat_timeout"

    # stale snapshot; the stored row must not be rewritten
    again = await manager.expire_if_stale(session)
    assert again.status == "expired"
    assert again.stopped_at == expired.stopped_at


@pytest.mark.asyncio
async def test_stop_after_expiry_does_not_revert_status(store, clock):
    manager = _manager(store, clock)
    session = await manager.start("u-1")
    clock.advance(120)
    await manager.expire_if_stale(session)

    result = await manager.stop(session)
    assert result.already_stopped is True
    assert result.session.status == "expired"


@pytest.mark.asyncio
async def test_stop_records_usage_and_revokes_consent(store, clock):
    manager = _manager(store, clock)
    session = await manager.start("u-1")
    clock.advance(30)
    await manager.heartbeat(session)
    clock.advance(45)

    result = await manager.stop(session)
    assert result.already_stopped is False
    assert result.session.status == "stopped"
    assert result.session.duration_seconds == 75
    assert result.session.consumed_minutes == 2
    assert result.session.metadata["consent_status"] == "revoked"
    assert result.session.metadata["consent_revoked_at"] == result.session.stopped_at

    second = await manager.stop(result.session)
    assert second.already_stopped is True


@pytest.mark.asyncio
async def test_heartbeat_states(store, clock):
    manager = _manager(store, clock)
    session = await manager.start("u-1")

    clock.advance(10)
    alive = await manager.heartbeat(session)
    assert alive.state == "alive"
    assert alive.session.metadata["last_heartbeat_at"] == alive.heartbeat_at

    clock.advance(61)
    expired = await manager.heartbeat(alive.session)
    assert expired.state == "expired"
    assert expired.session.status == "expired"

    closed = await manager.heartbeat(expired.session)
    assert closed.state == "already_closed"


def test_elapsed_usage_rounds_minutes_up_with_floor(clock):
    started = "2025-03-01T12:00:00+00:00"
    assert elapsed_usage(started, clock()) == (0, 1)
    assert elapsed_usage(started, clock.advance(61)) == (61, 2)
