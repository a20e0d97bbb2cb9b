import base64
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("ALLOW_UNVERIFIED_JWT_DEV", "true")
    monkeypatch.setenv("QA_MODE", "true")
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


class FakeProvider:
    model = "fake-model"

    def __init__(self, name: str = "fake", responses: list | None = None, available: bool = True):
        self.name = name
        self.responses = list(responses or [])
        self.available = available
        self.calls: list[list[dict]] = []

    def is_available(self) -> bool:
        return self.available

    async def complete(self, messages, options):
        self.calls.append(messages)
        item = self.responses.pop(0) if self.responses else RuntimeError("no scripted response")
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider_factory():
    return FakeProvider


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def store(clock):
    from app.db.copilot_store import LocalCopilotStore

    return LocalCopilotStore(clock=clock)


@pytest.fixture
def services(store, provider, clock):
    from app.copilot.services import CopilotServices
    from app.rate_limit import RateLimiter
    from app.router.fallback import FallbackChain

    return CopilotServices.build(
        store=store,
        llm=FallbackChain([provider], timeout_sec=2.0, retries=0, backoff_sec=0.0),
        rate_limiter=RateLimiter(),
        clock=clock,
        heartbeat_timeout_sec=60,
        poll_interval_sec=0.01,
    )


@pytest.fixture
def client(services):
    from fastapi import HTTPException, Request
    from fastapi.testclient import TestClient

    from app.auth import get_user_id_async
    from app.main import create_app

    async def _header_user(request: Request) -> str:
        auth = request.headers.get("Authorization") or ""
        if not auth.startswith("Bearer ") or not auth[7:].strip():
            raise HTTPException(401, "unauthorized")
        return auth[7:].strip()

    app = create_app(services)
    app.dependency_overrides[get_user_id_async] = _header_user
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def dev_jwt_token() -> str:
    def _enc(obj: dict) -> str:
        raw = json.dumps(obj, separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")

    header = _enc({"alg": "none", "typ": "JWT"})
    payload = _enc({"sub": "pytest-user", "iat": 0})
    return f"{header}.{payload}."
