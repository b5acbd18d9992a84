"""Shared fixtures for keyway tests."""

from __future__ import annotations

import asyncio
from urllib.parse import urlencode

import pytest
from aiohttp import web
from aiohttp.test_utils import make_mocked_request

from keyway.authenticator import Authenticator
from keyway.codec import JSONSession
from keyway.config import KeywaySettings
from keyway.errors import ProviderExchangeError, ProviderProfileError
from keyway.provider import Params, Provider, Session, UserRecord
from keyway.providers.faux import FauxProvider
from keyway.registry import ProviderRegistry
from keyway.store import CookieSessionStore, MemorySessionStore


class StubSession(JSONSession):
    access_token: str = ""

    async def authorize(self, provider: Provider, params: Params) -> str:
        code = params.get("code")
        if not code or code == "bad":
            raise ProviderExchangeError(provider.name, "invalid_grant")
        if getattr(provider, "delay", 0):
            await asyncio.sleep(provider.delay)
        self.access_token = f"token-{code}"
        return self.access_token


class StubProvider(Provider):
    """OAuth2-like test provider: fetch_user needs an exchanged token."""

    def __init__(self, name: str = "stub", delay: float = 0.0):
        super().__init__(name)
        self.delay = delay

    async def begin_auth(self, state: str) -> StubSession:
        query = urlencode({"client_id": "stub-client", "state": state})
        return StubSession(auth_url=f"https://stub.example.com/authorize?{query}")

    async def fetch_user(self, session: Session) -> UserRecord:
        if not isinstance(session, StubSession) or not session.access_token:
            raise ProviderProfileError(self.name, "cannot get user information without access token")
        return UserRecord(
            provider=self.name,
            user_id="42",
            name="Stub User",
            access_token=session.access_token,
        )

    def unmarshal_session(self, data: str) -> StubSession:
        return StubSession.unmarshal(data)


@pytest.fixture
def settings():
    return KeywaySettings(secret_key="test-secret-key", cookie_secure=False)


@pytest.fixture
def registry():
    return ProviderRegistry(FauxProvider(), StubProvider())


@pytest.fixture
def memory_store(settings):
    return MemorySessionStore(settings=settings)


@pytest.fixture
def cookie_store(settings):
    return CookieSessionStore(settings=settings)


@pytest.fixture
def authenticator(registry, memory_store, settings):
    return Authenticator(registry, memory_store, settings=settings)


def cookie_header(response: web.StreamResponse) -> dict[str, str]:
    """Cookie header a browser would send back after ``response``."""
    cookies = "; ".join(
        f"{name}={morsel.value}" for name, morsel in response.cookies.items() if morsel.value
    )
    return {"Cookie": cookies} if cookies else {}


@pytest.fixture
def next_request():
    """Build the browser's next request, carrying cookies set by ``response``."""

    def build(path: str, response: web.StreamResponse | None = None, method: str = "GET"):
        headers = cookie_header(response) if response is not None else {}
        return make_mocked_request(method, path, headers=headers)

    return build
