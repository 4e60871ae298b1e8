"""Shared fixtures and utilities for Mirim OAuth tests."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from mirim_oauth.config import ClientConfig
from mirim_oauth.storage import MemoryStorage
from mirim_oauth.store import TokenStore
from mirim_oauth.surface import AuthorizationSurface, SurfaceHandle, SurfaceMessage
from mirim_oauth.tokens import TokenPair

SERVER_URL = "https://auth.test"
REDIRECT_URI = "http://localhost:3000/callback"


# ============================================================================
# Fake authorization surface
# ============================================================================


class FakeHandle(SurfaceHandle):
    """Scriptable surface handle."""

    def __init__(self, url: str):
        super().__init__()
        self.url = url
        self.location: str | None = None
        self.is_closed = False
        self.close_calls = 0

    @property
    def issued_state(self) -> str:
        return parse_qs(urlparse(self.url).query)["state"][0]

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def closed(self) -> bool:
        return self.is_closed

    def current_location(self) -> str | None:
        return self.location

    def close(self) -> None:
        self.close_calls += 1
        self.is_closed = True

    def deliver(self, data: Any, origin: str | None = "http://localhost:3000") -> None:
        self.post_message(SurfaceMessage(data=data, origin=origin))


class FakeSurface(AuthorizationSurface):
    """Surface whose behaviour is scripted per test.

    ``script`` is called with each opened handle right after open() returns
    (on the next loop iterations), so listeners are already attached.
    """

    def __init__(
        self,
        script: Callable[[FakeHandle], None] | None = None,
        blocked: bool = False,
        delay: float = 0.01,
    ):
        self.script = script
        self.blocked = blocked
        self.delay = delay
        self.handles: list[FakeHandle] = []

    @property
    def last(self) -> FakeHandle:
        return self.handles[-1]

    async def open(self, url: str) -> SurfaceHandle | None:
        if self.blocked:
            return None
        handle = FakeHandle(url)
        self.handles.append(handle)
        if self.script is not None:
            asyncio.get_running_loop().call_later(self.delay, self.script, handle)
        return handle


def approve(code: str = "abc") -> Callable[[FakeHandle], None]:
    """Script: the surface posts back the code with the issued state."""

    def script(handle: FakeHandle) -> None:
        handle.deliver({"type": "oauth_callback", "code": code, "state": handle.issued_state})

    return script


# ============================================================================
# Fake authorization server
# ============================================================================


def envelope(data: Any, status: int = 200, message: str | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"status": status, "data": data}
    if message:
        body["message"] = message
    return body


class FakeAuthServer:
    """Routes requests for the Mirim endpoints and records them.

    Each route maps to an (HTTP status, body) pair; a dict body is sent as
    JSON, a str body as text.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], tuple[int, Any]] = {
            ("POST", "/api/v1/oauth/token"): (
                200,
                envelope({"access_token": "T1", "refresh_token": "R1", "expires_in": 3600}),
            ),
            ("POST", "/api/v1/auth/refresh"): (
                200,
                envelope({"access_token": "T2", "refresh_token": "R2", "expires_in": 3600}),
            ),
            ("GET", "/api/v1/user"): (200, envelope({"id": 1, "email": "a@b.com"})),
        }
        self.requests: list[httpx.Request] = []
        self.latency = 0.0

    def set(self, method: str, path: str, status: int, body: Any) -> None:
        self.routes[(method, path)] = (status, body)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.latency:
            await asyncio.sleep(self.latency)

        status, body = self.routes.get((request.method, request.url.path), (404, "Not Found"))
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(
        client_id="test-client-id",
        client_secret="test-client-secret",
        redirect_uri=REDIRECT_URI,
        scopes="openid profile email",
        server_url=SERVER_URL,
        callback_timeout=2,
        login_attempts=1,
        retry_delay=0,
    )


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def token_store(storage: MemoryStorage) -> TokenStore:
    return TokenStore(storage)


@pytest.fixture
def server() -> FakeAuthServer:
    return FakeAuthServer()


def make_tokens(
    access_token: str = "T0",
    refresh_token: str = "R0",
    expires_in: int = 3600,
    age: float = 0,
) -> TokenPair:
    """Token pair issued ``age`` seconds ago."""
    return TokenPair(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=expires_in,
        issued_at=datetime.now(timezone.utc) - timedelta(seconds=age),
    )


def expired_tokens(access_token: str = "OLD", refresh_token: str = "R0") -> TokenPair:
    return make_tokens(access_token, refresh_token, expires_in=60, age=3600)


