"""Tests for the authentication orchestrator."""

from __future__ import annotations

import warnings

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer, make_mocked_request
from prometheus_client import REGISTRY

from keyway.authenticator import AUTHORIZED_KEY, PROVIDER_KEY, SESSION_KEY, Authenticator
from keyway.codec import encode_session, pack
from keyway.config import KeywaySettings
from keyway.errors import (
    NoProviderSelectedError,
    NoSessionError,
    ProviderExchangeError,
    ProviderNotFoundError,
    SessionDecodeError,
    StateMismatchError,
)
from keyway.providers.faux import FauxSession
from keyway.registry import ProviderRegistry
from keyway.resolvers import with_provider
from keyway.state import state_from_auth_url
from keyway.store import SESSIONS_KEY, MemorySessionStore

from conftest import StubProvider


async def begin(authenticator, next_request, provider="stub"):
    """Run Begin and return (response, state)."""
    request = next_request(f"/auth?provider={provider}")
    response = web.Response()
    url = await authenticator.get_auth_url(request, response)
    return response, state_from_auth_url(url)


class TestBegin:
    """Tests for starting an attempt."""

    @pytest.mark.asyncio
    async def test_faux_redirect_url(self, authenticator, next_request):
        """Test Begin stores a session whose URL points at the faux endpoint."""
        request = next_request("/auth?provider=faux")
        response = web.Response()

        url = await authenticator.get_auth_url(request, response)

        assert "http://example.com/auth/" in url
        record = await authenticator.store.get(request, authenticator.settings.session_name)
        assert SESSION_KEY in record.values
        assert record.values[PROVIDER_KEY] == "faux"

    @pytest.mark.asyncio
    async def test_begin_auth_handler_redirects(self, authenticator, next_request):
        """Test the handler answers with a 307 to the authorize URL."""
        request = next_request("/auth?provider=faux")

        response = await authenticator.begin_auth_handler(request)

        assert response.status == 307
        location = response.headers["Location"]
        assert location.startswith("http://example.com/auth/")
        assert "Temporary Redirect" in response.text
        assert authenticator.settings.session_name in response.cookies

    @pytest.mark.asyncio
    async def test_begin_auth_handler_unknown_provider(self, authenticator, next_request):
        """Test an unknown provider yields a 400 and touches no session."""
        request = next_request("/auth?provider=nope")

        response = await authenticator.begin_auth_handler(request)

        assert response.status == 400
        assert "no provider for nope exists" in response.text
        assert not response.cookies
        assert SESSIONS_KEY not in request
        assert await authenticator.store.count() == 0

    @pytest.mark.asyncio
    async def test_unknown_provider_raises(self, authenticator, next_request):
        """Test get_auth_url raises ProviderNotFoundError for unknown names."""
        with pytest.raises(ProviderNotFoundError) as exc_info:
            await authenticator.get_auth_url(next_request("/auth?provider=nope"), web.Response())
        assert exc_info.value.name == "nope"

    @pytest.mark.asyncio
    async def test_no_provider_selected(self, authenticator, next_request):
        """Test a request without any provider hint."""
        with pytest.raises(NoProviderSelectedError, match="you must select a provider"):
            await authenticator.get_auth_url(next_request("/auth"), web.Response())

    @pytest.mark.asyncio
    async def test_alternate_query_spelling(self, authenticator, next_request):
        """Test the ':provider' query parameter is accepted."""
        url = await authenticator.get_auth_url(next_request("/auth?:provider=faux"), web.Response())
        assert "http://example.com/auth/" in url

    @pytest.mark.asyncio
    async def test_context_provider(self, authenticator, next_request):
        """Test a provider attached to the request context is used."""
        request = with_provider(next_request("/auth"), "faux")
        url = await authenticator.get_auth_url(request, web.Response())
        assert "http://example.com/auth/" in url

    @pytest.mark.asyncio
    async def test_states_differ_per_attempt(self, authenticator, next_request):
        """Test every Begin generates a fresh state."""
        _, first = await begin(authenticator, next_request)
        _, second = await begin(authenticator, next_request)
        assert first and second
        assert first != second

    @pytest.mark.asyncio
    async def test_custom_state_generator(self, registry, memory_store, settings, next_request):
        """Test an injected state generator is used."""
        authenticator = Authenticator(
            registry, memory_store, settings=settings, state_generator=lambda: "fixed-state"
        )
        _, state = await begin(authenticator, next_request)
        assert state == "fixed-state"

    @pytest.mark.asyncio
    async def test_begin_replaces_authorized_session(self, authenticator, next_request):
        """Test a new Begin drops a previously authorized session."""
        response, state = await begin(authenticator, next_request)
        callback = next_request(f"/cb?provider=stub&code=abc&state={state}", response)
        callback_response = web.Response()
        await authenticator.authorize(callback, callback_response)

        again = next_request("/auth?provider=stub", callback_response)
        await authenticator.get_auth_url(again, web.Response())

        record = await authenticator.store.get(again, authenticator.settings.session_name)
        assert AUTHORIZED_KEY not in record.values
        assert SESSION_KEY in record.values

    @pytest.mark.asyncio
    async def test_begin_counts_metric(self, authenticator, next_request):
        """Test Begin increments the per-provider counter."""
        labels = {"provider": "stub"}
        before = REGISTRY.get_sample_value("keyway_auth_begin_total", labels) or 0
        await begin(authenticator, next_request)
        assert REGISTRY.get_sample_value("keyway_auth_begin_total", labels) == before + 1


class TestCompleteUserAuth:
    """Tests for finishing an attempt in one call."""

    @pytest.mark.asyncio
    async def test_faux_stored_session(self, authenticator, next_request):
        """Test a pre-stored faux session yields its user."""
        request = next_request("/auth/callback?provider=faux")
        record = await authenticator.store.get(request, authenticator.settings.session_name)
        record.values[SESSION_KEY] = encode_session(
            FauxSession(name="Homer Simpson", email="homer@example.com")
        )

        user = await authenticator.complete_user_auth(request, web.Response())

        assert user.name == "Homer Simpson"
        assert user.email == "homer@example.com"
        assert user.provider == "faux"

    @pytest.mark.asyncio
    async def test_faux_session_with_exported_names(self, authenticator, next_request):
        """Test a stored payload using exported field names yields its user."""
        request = next_request("/auth/callback?provider=faux")
        record = await authenticator.store.get(request, authenticator.settings.session_name)
        record.values[SESSION_KEY] = pack('{"Name":"Homer Simpson","Email":"homer@example.com"}')

        user = await authenticator.complete_user_auth(request, web.Response())

        assert user.name == "Homer Simpson"
        assert user.email == "homer@example.com"

    @pytest.mark.asyncio
    async def test_request_storage_uses_typed_keys(self, authenticator, next_request):
        """Test the flow stores nothing on the request under plain string keys."""
        with warnings.catch_warnings():
            warnings.simplefilter("error", web.NotAppKeyWarning)
            response, state = await begin(authenticator, next_request)
            callback = with_provider(
                next_request(f"/auth/callback?code=abc&state={state}", response), "stub"
            )
            user = await authenticator.complete_user_auth(callback, web.Response())

        assert user.access_token == "token-abc"

    @pytest.mark.asyncio
    async def test_full_flow(self, authenticator, next_request):
        """Test Begin then callback exchanges the code and fetches the user."""
        response, state = await begin(authenticator, next_request)
        callback = next_request(f"/auth/callback?provider=stub&code=abc&state={state}", response)

        user = await authenticator.complete_user_auth(callback, web.Response())

        assert user.user_id == "42"
        assert user.access_token == "token-abc"

    @pytest.mark.asyncio
    async def test_slot_cleared_after_success(self, authenticator, next_request):
        """Test the callback is single use."""
        response, state = await begin(authenticator, next_request)
        callback = next_request(f"/auth/callback?provider=stub&code=abc&state={state}", response)
        callback_response = web.Response()

        await authenticator.complete_user_auth(callback, callback_response)

        record = await authenticator.store.get(callback, authenticator.settings.session_name)
        assert record.values == {}
        assert await authenticator.store.count() == 0

    @pytest.mark.asyncio
    async def test_replayed_callback_rejected(self, authenticator, next_request):
        """Test a second callback with the same cookie and code fails."""
        response, state = await begin(authenticator, next_request)
        path = f"/auth/callback?provider=stub&code=abc&state={state}"

        await authenticator.complete_user_auth(next_request(path, response), web.Response())

        with pytest.raises(NoSessionError):
            await authenticator.complete_user_auth(next_request(path, response), web.Response())

    @pytest.mark.asyncio
    async def test_no_session(self, authenticator, next_request):
        """Test a callback without a stored session."""
        request = next_request("/auth/callback?provider=stub&code=abc")
        with pytest.raises(NoSessionError):
            await authenticator.complete_user_auth(request, web.Response())

    @pytest.mark.asyncio
    async def test_state_mismatch(self, authenticator, next_request):
        """Test a forged state is rejected and the attempt dropped."""
        response, _ = await begin(authenticator, next_request)
        callback = next_request("/auth/callback?provider=stub&code=abc&state=forged", response)

        with pytest.raises(StateMismatchError):
            await authenticator.complete_user_auth(callback, web.Response())

        record = await authenticator.store.get(callback, authenticator.settings.session_name)
        assert record.values == {}

    @pytest.mark.asyncio
    async def test_state_mismatch_is_no_session(self):
        """Test hosts catching NoSessionError also catch state errors."""
        assert issubclass(StateMismatchError, NoSessionError)
        assert issubclass(SessionDecodeError, NoSessionError)

    @pytest.mark.asyncio
    async def test_exchange_failure_clears_slot(self, authenticator, next_request):
        """Test a rejected code leaves nothing resumable."""
        response, state = await begin(authenticator, next_request)
        path = f"/auth/callback?provider=stub&code=bad&state={state}"

        with pytest.raises(ProviderExchangeError):
            await authenticator.complete_user_auth(next_request(path, response), web.Response())

        retry = next_request(f"/auth/callback?provider=stub&code=abc&state={state}", response)
        with pytest.raises(NoSessionError):
            await authenticator.complete_user_auth(retry, web.Response())

    @pytest.mark.asyncio
    async def test_exchange_timeout(self, memory_store, next_request):
        """Test a slow provider surfaces as ProviderExchangeError."""
        settings = KeywaySettings(secret_key="k", cookie_secure=False, provider_timeout=0.05)

        authenticator = Authenticator(
            ProviderRegistry(StubProvider(delay=1.0)), memory_store, settings=settings
        )
        response, state = await begin(authenticator, next_request)
        callback = next_request(f"/auth/callback?provider=stub&code=abc&state={state}", response)

        with pytest.raises(ProviderExchangeError, match="timed out"):
            await authenticator.complete_user_auth(callback, web.Response())

        assert await memory_store.count() == 0

    @pytest.mark.asyncio
    async def test_wrong_provider_for_slot(self, authenticator, next_request):
        """Test a callback naming another provider finds no session."""
        response, state = await begin(authenticator, next_request, provider="stub")
        callback = next_request(f"/auth/callback?provider=faux&state={state}", response)

        with pytest.raises(NoSessionError):
            await authenticator.complete_user_auth(callback, web.Response())

        record = await authenticator.store.get(callback, authenticator.settings.session_name)
        assert record.values[PROVIDER_KEY] == "stub"
        assert SESSION_KEY in record.values

    @pytest.mark.asyncio
    async def test_wrong_provider_keeps_attempt_usable(self, authenticator, next_request):
        """Test the owner's callback still succeeds after another provider's callback."""
        response, state = await begin(authenticator, next_request, provider="stub")

        stray = next_request(f"/auth/callback?provider=faux&state={state}", response)
        stray_response = web.Response()
        with pytest.raises(NoSessionError):
            await authenticator.authorize(stray, stray_response)
        assert authenticator.settings.session_name not in stray_response.cookies

        callback = next_request(f"/auth/callback?provider=stub&code=abc&state={state}", response)
        user = await authenticator.complete_user_auth(callback, web.Response())
        assert user.access_token == "token-abc"

    @pytest.mark.asyncio
    async def test_provider_from_stored_session(self, authenticator, next_request):
        """Test the provider name falls back to the slot owner."""
        response, state = await begin(authenticator, next_request)
        callback = next_request(f"/auth/callback?code=abc&state={state}", response)

        user = await authenticator.complete_user_auth(callback, web.Response())

        assert user.provider == "stub"

    @pytest.mark.asyncio
    async def test_corrupt_session(self, authenticator, next_request):
        """Test a corrupt stored value raises SessionDecodeError."""
        request = next_request("/auth/callback?provider=stub&code=abc")
        record = await authenticator.store.get(request, authenticator.settings.session_name)
        record.values[SESSION_KEY] = "gz:AAAA"

        with pytest.raises(SessionDecodeError):
            await authenticator.complete_user_auth(request, web.Response())

    @pytest.mark.asyncio
    async def test_unknown_provider_never_touches_store(self, authenticator, next_request):
        """Test resolution errors happen before any store access."""
        request = next_request("/auth/callback?provider=nope&code=abc")
        with pytest.raises(ProviderNotFoundError):
            await authenticator.complete_user_auth(request, web.Response())
        assert SESSIONS_KEY not in request


class TestAuthorizeAndFetch:
    """Tests for the two-step callback API."""

    @pytest.mark.asyncio
    async def test_authorize_then_fetch(self, authenticator, next_request):
        """Test authorize persists a session fetch_user can use."""
        response, state = await begin(authenticator, next_request)
        callback = next_request(f"/cb?provider=stub&code=xyz&state={state}", response)
        callback_response = web.Response()

        session = await authenticator.authorize(callback, callback_response)
        assert session.access_token == "token-xyz"

        later = next_request("/me?provider=stub", callback_response)
        user = await authenticator.fetch_user(later)
        assert user.access_token == "token-xyz"

        # fetch_user does not consume the slot
        user = await authenticator.fetch_user(later)
        assert user.name == "Stub User"

    @pytest.mark.asyncio
    async def test_authorize_replay(self, authenticator, next_request):
        """Test the pending session is consumed by the first authorize."""
        response, state = await begin(authenticator, next_request)
        callback = next_request(f"/cb?provider=stub&code=xyz&state={state}", response)
        callback_response = web.Response()
        await authenticator.authorize(callback, callback_response)

        replay = next_request(f"/cb?provider=stub&code=xyz&state={state}", callback_response)
        with pytest.raises(NoSessionError):
            await authenticator.authorize(replay, web.Response())

    @pytest.mark.asyncio
    async def test_fetch_without_authorize(self, authenticator, next_request):
        """Test fetch_user before any exchange."""
        response, _ = await begin(authenticator, next_request)
        with pytest.raises(NoSessionError):
            await authenticator.fetch_user(next_request("/me?provider=stub", response))

    @pytest.mark.asyncio
    async def test_form_post_callback(self, authenticator):
        """Test a form_post callback carries code and state in the body."""

        async def callback(request: web.Request) -> web.StreamResponse:
            response = web.Response()
            try:
                user = await authenticator.complete_user_auth(request, response)
            except NoSessionError as e:
                return web.Response(status=401, text=str(e))
            response.text = user.access_token
            return response

        app = web.Application()
        app.router.add_get("/auth/{provider}", authenticator.begin_auth_handler)
        app.router.add_post("/auth/{provider}/callback", callback)

        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/auth/stub", allow_redirects=False)
            assert resp.status == 307
            state = state_from_auth_url(resp.headers["Location"])

            resp = await client.post("/auth/stub/callback", data={"code": "posted", "state": state})
            assert resp.status == 200
            assert await resp.text() == "token-posted"


class TestCheck:
    """Tests for the resume-or-begin convenience."""

    @pytest.mark.asyncio
    async def test_check_begins_when_empty(self, authenticator, next_request):
        """Test check starts a new attempt without a stored session."""
        outcome = await authenticator.check(next_request("/?provider=stub"), web.Response())

        assert outcome.allowed is False
        assert outcome.redirect_url.startswith("https://stub.example.com/authorize")

    @pytest.mark.asyncio
    async def test_check_resumes_authorized(self, authenticator, next_request):
        """Test check returns the user of an authorized session."""
        response, state = await begin(authenticator, next_request)
        callback_response = web.Response()
        await authenticator.authorize(
            next_request(f"/cb?provider=stub&code=abc&state={state}", response), callback_response
        )

        outcome = await authenticator.check(next_request("/", callback_response), web.Response())

        assert outcome.allowed is True
        assert outcome.user.access_token == "token-abc"

    @pytest.mark.asyncio
    async def test_check_resumes_fetchable_pending_session(self, authenticator, next_request):
        """Test check uses an in-flight session the provider can already fetch with."""
        response = web.Response()
        await authenticator.get_auth_url(next_request("/auth?provider=faux"), response)

        outcome = await authenticator.check(next_request("/?provider=faux", response), web.Response())

        assert outcome.allowed is True
        assert outcome.user.provider == "faux"
        assert outcome.redirect_url is None

    @pytest.mark.asyncio
    async def test_check_begins_when_pending_session_not_fetchable(self, authenticator, next_request):
        """Test check starts over when the in-flight session has no token yet."""
        response, _ = await begin(authenticator, next_request)

        outcome = await authenticator.check(next_request("/?provider=stub", response), web.Response())

        assert outcome.allowed is False
        assert outcome.redirect_url.startswith("https://stub.example.com/authorize")


class TestLogout:
    """Tests for logout."""

    @pytest.mark.asyncio
    async def test_logout_idempotent(self, authenticator, next_request):
        """Test logout on an empty slot is harmless."""
        request = next_request("/logout")
        await authenticator.logout(request, web.Response())
        await authenticator.logout(request, web.Response())

    @pytest.mark.asyncio
    async def test_logout_clears_slot(self, authenticator, next_request):
        """Test logout removes the stored attempt."""
        response, _ = await begin(authenticator, next_request)
        assert await authenticator.store.count() == 1

        request = next_request("/logout", response)
        await authenticator.logout(request, web.Response())

        assert await authenticator.store.count() == 0
        with pytest.raises(NoSessionError):
            await authenticator.fetch_user(next_request("/me?provider=stub", response))

    @pytest.mark.asyncio
    async def test_logout_handler(self, registry, memory_store, settings):
        """Test the handler redirects to the configured location."""
        authenticator = Authenticator(
            registry, memory_store, settings=settings, logout_redirect="/goodbye"
        )
        response = await authenticator.logout_handler(make_mocked_request("GET", "/logout"))

        assert response.status == 302
        assert response.headers["Location"] == "/goodbye"


class TestCookieStoreFlow:
    """End-to-end flow with the signed cookie store."""

    @pytest.mark.asyncio
    async def test_full_flow_with_cookie_store(self, registry, cookie_store, settings, next_request):
        """Test the attempt survives the redirect in a signed cookie."""
        authenticator = Authenticator(registry, cookie_store, settings=settings)
        response, state = await begin(authenticator, next_request)

        callback = next_request(f"/cb?provider=stub&code=abc&state={state}", response)
        callback_response = web.Response()
        user = await authenticator.complete_user_auth(callback, callback_response)

        assert user.access_token == "token-abc"
        morsel = callback_response.cookies[settings.session_name]
        assert morsel.value == ""

    @pytest.mark.asyncio
    async def test_uncompressed_sessions(self, registry, next_request):
        """Test the flow with compression disabled."""
        settings = KeywaySettings(secret_key="k", cookie_secure=False, compress_sessions=False)
        store = MemorySessionStore(settings=settings)
        authenticator = Authenticator(registry, store, settings=settings)

        response, state = await begin(authenticator, next_request)
        callback = next_request(f"/cb?provider=stub&code=abc&state={state}", response)
        record = await store.get(callback, settings.session_name)
        assert record.values[SESSION_KEY].startswith("{")

        user = await authenticator.complete_user_auth(callback, web.Response())
        assert user.access_token == "token-abc"
