import pytest

from app.copilot.retention import RetentionPolicy, build_retention_cutoffs, run_retention_sweep
from core import config

CRON = {"x-cron-secret": "s3cret"}


def test_cutoffs_follow_policy(clock):
    cutoffs = build_retention_cutoffs(clock(), RetentionPolicy(events_days=30, summaries_days=90, sessions_days=90))

    assert cutoffs.events_before == "2025-01-30T12:00:00+00:00"
    assert cutoffs.summaries_before == "2024-12-01T12:00:00+00:00"
    assert cutoffs.sessions_before == "2024-12-01T12:00:00+00:00"


@pytest.mark.asyncio
async def test_dry_run_deletes_nothing(store, clock):
    session = await store.create_session("u-1", None, {})
    await store.append_event(session.id, "u-1", "transcript", {"text": "old"})
    clock.advance(31 * 86400)

    result = await run_retention_sweep(store, now=clock())

    assert result.dry_run is True
    assert result.deleted.to_dict() == {"events": 0, "summaries": 0, "sessions": 0}
    assert len(await store.list_events(session.id)) == 1


@pytest.mark.asyncio
async def test_sweep_expires_events_before_sessions(store, clock):
    session = await store.create_session("u-1", None, {})
    await store.append_event(session.id, "u-1", "transcript", {"text": "old"})
    await store.upsert_summary(session.id, "u-1", "final", "c", {})
    await store.update_session(session.id, {"status": "stopped"})
    clock.advance(31 * 86400)

    result = await run_retention_sweep(store, now=clock(), dry_run=False)

    assert result.to_dict()["deleted"] == {"events": 1, "summaries": 0, "sessions": 0}
    assert await store.get_summary(session.id, "final") is not None

    clock.advance(60 * 86400)
    result = await run_retention_sweep(store, now=clock(), dry_run=False)
    assert result.to_dict()["deleted"] == {"events": 0, "summaries": 1, "sessions": 1}
    assert await store.get_session(session.id) is None


def test_cron_route_disabled_without_secret(client, monkeypatch):
    monkeypatch.setattr(config, "COPILOT_CRON_SECRET", "")
    response = client.post("/api/cron/retention", headers=CRON)
    assert response.status_code == 403
    assert response.json() == {"ok": False, "error": "cron_disabled"}


def test_cron_route_rejects_wrong_secret(client, monkeypatch):
    monkeypatch.setattr(config, "COPILOT_CRON_SECRET", "s3cret")
    response = client.post("/api/cron/retention", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_cron_route_defaults_to_dry_run(client, services, clock, monkeypatch):
    monkeypatch.setattr(config, "COPILOT_CRON_SECRET", "s3cret")
    session = await services.store.create_session("u-1", None, {})
    await services.store.append_event(session.id, "u-1", "transcript", {"text": "old"})
    clock.advance(31 * 86400)

    dry = client.get("/api/cron/retention", headers=CRON).json()
    assert dry["dry_run"] is True
    assert dry["deleted"]["events"] == 0

    live = client.post("/api/cron/retention?dryRun=false", headers={"Authorization": "Bearer s3cret"}).json()
    assert live["dry_run"] is False
    assert live["deleted"]["events"] == 1
    assert live["cutoffs"]["events_before"] == "2025-03-02T12:00:00+00:00"
