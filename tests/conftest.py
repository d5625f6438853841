"""Shared fixtures for the relay test suite."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from relay.auth.tokens import CredentialManager
from relay.db.session import Store
from relay.domain.models import EngineConfig
from relay.services.queue import JobQueue


# ---------------------------------------------------------------------------
# Ensure we never hit real OAuth providers during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    for key in [
        "YOUTUBE_CLIENT_ID",
        "YOUTUBE_CLIENT_SECRET",
        "YOUTUBE_REDIRECT_URI",
        "FACEBOOK_APP_ID",
        "FACEBOOK_APP_SECRET",
        "FACEBOOK_REDIRECT_URI",
        "TIKTOK_CLIENT_KEY",
        "TIKTOK_CLIENT_SECRET",
        "TIKTOK_REDIRECT_URI",
        "EXECUTOR_COMMAND",
    ]:
        monkeypatch.delenv(key, raising=False)


class FakeClock:
    """A settable UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}"


@pytest.fixture
async def store(db_url):
    store = Store(db_url)
    await store.create_all()
    yield store
    await store.dispose()


@pytest.fixture
def config():
    return EngineConfig(poll_interval_ms=10, max_retries=3, retention_days=7)


@pytest.fixture
def queue(store, config, clock):
    return JobQueue(store, config, clock=clock)


@pytest.fixture
def credentials(store, config, clock):
    return CredentialManager(store, config, clock=clock)


@pytest.fixture
def token_endpoint():
    """
    Records outbound OAuth calls and answers them from `responses`,
    a list of httpx.Response objects consumed in order.
    """

    class Endpoint:
        def __init__(self):
            self.requests: list[httpx.Request] = []
            self.responses: list[httpx.Response] = []

        def handler(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            if not self.responses:
                return httpx.Response(500, text="no response queued")
            return self.responses.pop(0)

    return Endpoint()


@pytest.fixture
async def http_client(token_endpoint):
    client = httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint.handler))
    yield client
    await client.aclose()
