import os

# Required settings must exist before playback_bff.config is imported (it builds Settings at import time).
os.environ.setdefault("SPOTIFY_CLIENT_ID", "test-client-id")
os.environ.setdefault("SPOTIFY_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("SPOTIFY_REDIRECT_URI", "http://localhost:8888/callback")

from urllib.parse import parse_qs

import httpx
import pytest
from fastapi.testclient import TestClient

from playback_bff.config import Settings
from playback_bff.main import build_services, create_app
from playback_bff.session_registry import SessionRegistry

ACCOUNTS_BASE_URL = "https://accounts.example.test"
API_BASE_URL = "https://api.example.test/v1"
START_TIME = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeSpotify:
    """
    Scripted stand-in for the accounts service and the Web API.
    Queued responses are consumed in order; the last queued API response
    for a route keeps being returned once the queue is down to one entry.
    """

    def __init__(self):
        self.requests = []
        self.token_responses = []
        self.api_responses = {}
        self.issued = 0

    def queue_token(self, *responses):
        self.token_responses.extend(responses)

    def route(self, method: str, path: str, *responses):
        self.api_responses[(method, "/v1" + path)] = list(responses)

    def token_requests(self):
        return [r for r in self.requests if r.url.path == "/api/token"]

    def api_requests(self, path=None):
        return [
            r for r in self.requests
            if r.url.host == "api.example.test" and (path is None or r.url.path == "/v1" + path)
        ]

    def _default_token_response(self, request: httpx.Request) -> httpx.Response:
        self.issued += 1
        form = parse_qs(request.content.decode())
        body = {"access_token": f"access-{self.issued}", "token_type": "Bearer", "expires_in": 3600}
        if form.get("grant_type") == ["authorization_code"]:
            body["refresh_token"] = "refresh-1"
        return httpx.Response(200, json=body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/api/token":
            entry = self.token_responses.pop(0) if self.token_responses else None
            if entry is None:
                return self._default_token_response(request)
        else:
            queue = self.api_responses.get((request.method, request.url.path))
            if not queue:
                return httpx.Response(404, json={"error": {"status": 404, "message": "Not found"}})
            entry = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(entry, Exception):
            raise entry
        return entry


def make_settings(**overrides) -> Settings:
    values = dict(
        SPOTIFY_CLIENT_ID="test-client-id",
        SPOTIFY_CLIENT_SECRET="test-client-secret",
        SPOTIFY_REDIRECT_URI="http://localhost:8888/callback",
        SPOTIFY_ACCOUNTS_BASE_URL=ACCOUNTS_BASE_URL,
        SPOTIFY_API_BASE_URL=API_BASE_URL,
        SESSION_STORE_PATH=None,
        SINGLE_USER_MODE=False,
    )
    values.update(overrides)
    return Settings(**values)


def authorize(registry: SessionRegistry, access_token="access-0", refresh_token="refresh-0", expires_in=3600):
    session = registry.create()
    return registry.update_tokens(session.session_id, access_token=access_token,
                                  expires_in=expires_in, refresh_token=refresh_token)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def fake_sleep():
    return FakeSleep()


@pytest.fixture()
def spotify():
    return FakeSpotify()


@pytest.fixture()
def make_services(spotify, clock, fake_sleep):
    def _make(**setting_overrides):
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(spotify.handler))
        return build_services(make_settings(**setting_overrides), http_client=http_client,
                              clock=clock, sleep=fake_sleep)
    return _make


@pytest.fixture()
def services(make_services):
    return make_services()


@pytest.fixture()
def client(services):
    with TestClient(create_app(services=services)) as c:
        yield c
