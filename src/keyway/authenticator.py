"""Authentication orchestrator for aiohttp requests.

This module provides the Authenticator class that drives the
begin/callback flow against any registered provider:

- Resolving the provider name from the request
- Starting an attempt (begin_auth) with a fresh CSRF state
- Persisting the provider session in the host's session store
- Validating the state and exchanging the grant on callback
- Fetching the normalized user record
- Logging out

Slot layout (one record per host session, named ``settings.session_name``):

    SESSION_KEY     packed in-flight session waiting for its callback
    AUTHORIZED_KEY  packed session after a successful exchange
    PROVIDER_KEY    name of the provider that owns the slot

A new begin replaces whatever the slot held. A callback consumes the
in-flight session before the exchange runs, so a replayed or half-finished
callback finds nothing and raises NoSessionError.
"""

from __future__ import annotations

import asyncio
import html
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar

import structlog
from aiohttp import hdrs, web

from keyway.codec import decode_session, encode_session
from keyway.config import KeywaySettings, get_settings
from keyway.errors import (
    NoProviderSelectedError,
    NoSessionError,
    ProviderError,
    ProviderExchangeError,
    ProviderNotFoundError,
    ProviderProfileError,
    SessionDecodeError,
    StateMismatchError,
)
from keyway.metrics import (
    AUTH_BEGINS,
    AUTH_COMPLETIONS,
    PROVIDER_CALL_SECONDS,
    SESSION_DECODE_FAILURES,
)
from keyway.provider import Provider, Session, UserRecord
from keyway.registry import ProviderRegistry
from keyway.resolvers import DEFAULT_RESOLVERS, Resolver, resolve_provider_name
from keyway.state import FORM_PARAMS_KEY, extract_state, generate_state, validate_state
from keyway.store import SessionRecord, SessionStore

logger = structlog.get_logger()

SESSION_KEY = "session"
AUTHORIZED_KEY = "authorized"
PROVIDER_KEY = "provider"

T = TypeVar("T")


@dataclass
class AuthOutcome:
    """Result of ``Authenticator.check``.

    Either the stored session produced a user, or a new attempt was
    started and the caller should redirect to ``redirect_url``.
    """

    allowed: bool
    reason: str
    user: UserRecord | None = None
    redirect_url: str | None = None


class Authenticator:
    """Provider-agnostic OAuth1/OAuth2/OIDC flow driver.

    The authenticator holds no per-request state. The registry is shared
    read-only; everything about an attempt lives in the session store.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: SessionStore,
        settings: KeywaySettings | None = None,
        resolvers: Sequence[Resolver] | None = None,
        state_generator: Callable[[], str] | None = None,
        logout_redirect: str = "/",
    ):
        """Initialize the authenticator.

        Args:
            registry: Providers available to this application
            store: Session store for the auth slot
            settings: Settings (global settings if omitted)
            resolvers: Provider name resolvers, tried in order
            state_generator: Factory for CSRF state tokens
            logout_redirect: Where logout_handler sends the browser
        """
        self.registry = registry
        self.store = store
        self.settings = settings or get_settings()
        self.resolvers = tuple(resolvers) if resolvers is not None else DEFAULT_RESOLVERS
        self._state_generator = state_generator or (
            lambda: generate_state(self.settings.state_bytes)
        )
        self.logout_redirect = logout_redirect

    # Provider resolution

    async def resolve_provider_name(self, request: web.Request) -> str:
        """Resolve the provider name for this request.

        Raises:
            NoProviderSelectedError: If no resolver produced a name.
        """
        return await resolve_provider_name(request, self, self.resolvers)

    async def stored_provider_name(self, request: web.Request) -> str | None:
        """Name of the registered provider owning this request's slot, if any."""
        record = await self._record(request)
        name = record.values.get(PROVIDER_KEY)
        if name and name in self.registry:
            return name
        return None

    async def provider_for_request(self, request: web.Request) -> Provider:
        """Resolve and look up the provider for this request.

        Raises:
            NoProviderSelectedError: If no provider name is found.
            ProviderNotFoundError: If the name is not registered.
        """
        name = await self.resolve_provider_name(request)
        return self.registry.lookup(name)

    # Begin

    async def get_auth_url(self, request: web.Request, response: web.StreamResponse) -> str:
        """Start an attempt with the requested provider.

        Stores the new session in the slot (replacing any previous attempt)
        and returns the URL the user should be sent to.
        """
        provider = await self.provider_for_request(request)
        return await self.begin(request, response, provider)

    async def begin(
        self,
        request: web.Request,
        response: web.StreamResponse,
        provider: Provider,
    ) -> str:
        state = self._state_generator()
        session = await self._bounded(
            provider.begin_auth(state), provider, "begin_auth", ProviderExchangeError
        )
        url = session.get_auth_url()

        record = await self._record(request)
        record.clear()
        record.values[SESSION_KEY] = encode_session(session, self.settings.compress_sessions)
        record.values[PROVIDER_KEY] = provider.name
        await self.store.save(request, response, record)

        AUTH_BEGINS.labels(provider=provider.name).inc()
        logger.info("Authentication started", provider=provider.name)
        return url

    async def begin_auth_handler(self, request: web.Request) -> web.StreamResponse:
        """aiohttp handler that redirects to the provider's authorize URL."""
        response = web.Response(status=307)
        try:
            url = await self.get_auth_url(request, response)
        except (NoProviderSelectedError, ProviderNotFoundError) as e:
            return web.Response(status=400, text=str(e))
        except ProviderError as e:
            logger.warning("Could not start authentication", provider=e.provider, error=e.detail)
            return web.Response(status=502, text=f"Sign-in with {e.provider} failed")

        response.headers[hdrs.LOCATION] = url
        response.content_type = "text/html"
        response.text = f'<a href="{html.escape(url)}">Temporary Redirect</a>.\n'
        return response

    # Callback

    async def authorize(self, request: web.Request, response: web.StreamResponse) -> Session:
        """Exchange the callback grant and keep the authorized session.

        Any failure leaves the slot empty, so a failed attempt cannot be
        resumed and has to start over.

        Raises:
            NoSessionError: No in-flight session (expired, replayed, wrong provider).
            SessionDecodeError: The stored session is corrupt.
            StateMismatchError: The callback state does not match.
            ProviderExchangeError: The provider rejected the exchange.
        """
        provider = await self.provider_for_request(request)
        params = await self.callback_params(request)
        try:
            session = await self._load(request, provider, SESSION_KEY)
            self._check_state(request, provider, session)
        except NoSessionError:
            if await self._owns_slot(request, provider):
                await self._discard(request, response)
            raise
        return await self._exchange(request, response, provider, session, params)

    async def fetch_user(self, request: web.Request) -> UserRecord:
        """Fetch the user with the authorized session stored for this request.

        Failures leave the slot untouched, so this can be retried.

        Raises:
            NoSessionError: Nothing has been authorized for this provider.
            ProviderProfileError: The profile fetch failed.
        """
        provider = await self.provider_for_request(request)
        session = await self._load(request, provider, AUTHORIZED_KEY)
        return await self._fetch(provider, session)

    async def complete_user_auth(
        self,
        request: web.Request,
        response: web.StreamResponse,
    ) -> UserRecord:
        """Finish the attempt in one call and return the user.

        The stored session is tried first; if the provider can already
        fetch the user with it, no exchange happens. Otherwise the grant is
        exchanged and the user fetched. The slot is cleared afterwards in
        every case, so the callback is single use. A slot owned by another
        provider is left untouched.
        """
        provider = await self.provider_for_request(request)
        params = await self.callback_params(request)
        owned = await self._owns_slot(request, provider)
        try:
            session = await self._load(request, provider, SESSION_KEY)
            self._check_state(request, provider, session)

            user = await self._try_resume(provider, session)
            if user is not None:
                AUTH_COMPLETIONS.labels(provider=provider.name, outcome="resumed").inc()
                return user

            await self._exchange(request, response, provider, session, params)
            user = await self._fetch(provider, session)
            AUTH_COMPLETIONS.labels(provider=provider.name, outcome="success").inc()
            logger.info("Authentication completed", provider=provider.name)
            return user
        finally:
            # Another provider's attempt is left alone.
            if owned:
                await self.logout(request, response)

    async def check(self, request: web.Request, response: web.StreamResponse) -> AuthOutcome:
        """Return the user for a stored session that still works, or begin a new attempt.

        The authorized session is tried first, then the in-flight one.
        """
        provider = await self.provider_for_request(request)
        for key in (AUTHORIZED_KEY, SESSION_KEY):
            try:
                session = await self._load(request, provider, key)
            except NoSessionError:
                continue
            user = await self._try_resume(provider, session)
            if user is not None:
                logger.debug("Resumed stored session", provider=provider.name)
                return AuthOutcome(allowed=True, reason="Valid session", user=user)

        url = await self.begin(request, response, provider)
        return AuthOutcome(allowed=False, reason="Authentication required", redirect_url=url)

    async def callback_params(self, request: web.Request) -> dict[str, str]:
        """Callback parameters: the query string plus, for a POST, its form body.

        Form fields win over query parameters of the same name.
        """
        params = dict(request.query)
        if request.method != "POST":
            return params

        cached = request.get(FORM_PARAMS_KEY)
        if cached is None:
            form = await request.post()
            cached = {key: value for key, value in form.items() if isinstance(value, str)}
            request[FORM_PARAMS_KEY] = cached
        params.update(cached)
        return params

    # Logout

    async def logout(self, request: web.Request, response: web.StreamResponse) -> None:
        """Clear the slot. Safe to call when it is already empty."""
        record = await self._record(request)
        record.clear()
        await self.store.save(request, response, record)

    async def logout_handler(self, request: web.Request) -> web.StreamResponse:
        """aiohttp handler that clears the slot and redirects."""
        response = web.Response(status=302, headers={hdrs.LOCATION: self.logout_redirect})
        await self.logout(request, response)
        return response

    # Internals

    async def _record(self, request: web.Request) -> SessionRecord:
        return await self.store.get(request, self.settings.session_name)

    async def _owns_slot(self, request: web.Request, provider: Provider) -> bool:
        owner = (await self._record(request)).values.get(PROVIDER_KEY)
        return not owner or owner == provider.name

    async def _discard(self, request: web.Request, response: web.StreamResponse) -> None:
        record = await self._record(request)
        if record.values:
            record.clear()
            await self.store.save(request, response, record)

    async def _load(self, request: web.Request, provider: Provider, key: str) -> Session:
        record = await self._record(request)
        data = record.values.get(key)
        if data is None:
            raise NoSessionError()

        owner = record.values.get(PROVIDER_KEY)
        if owner and owner != provider.name:
            logger.debug("Stored session belongs to another provider", provider=provider.name, owner=owner)
            raise NoSessionError()

        try:
            return decode_session(provider, data)
        except SessionDecodeError as e:
            SESSION_DECODE_FAILURES.labels(provider=provider.name).inc()
            logger.warning("Stored session could not be decoded", provider=provider.name, error=str(e))
            raise

    def _check_state(self, request: web.Request, provider: Provider, session: Session) -> None:
        try:
            validate_state(session, extract_state(request))
        except StateMismatchError:
            AUTH_COMPLETIONS.labels(provider=provider.name, outcome="state_mismatch").inc()
            logger.warning("Callback state mismatch", provider=provider.name)
            raise

    async def _exchange(
        self,
        request: web.Request,
        response: web.StreamResponse,
        provider: Provider,
        session: Session,
        params: dict[str, str],
    ) -> Session:
        # Slot is empty while the exchange runs.
        record = await self._record(request)
        record.clear()
        await self.store.save(request, response, record)

        try:
            await self._bounded(
                session.authorize(provider, params), provider, "authorize", ProviderExchangeError
            )
        except Exception as e:
            AUTH_COMPLETIONS.labels(provider=provider.name, outcome="exchange_failed").inc()
            logger.warning(
                "Grant exchange failed",
                provider=provider.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        record.values[AUTHORIZED_KEY] = encode_session(session, self.settings.compress_sessions)
        record.values[PROVIDER_KEY] = provider.name
        await self.store.save(request, response, record)
        return session

    async def _fetch(self, provider: Provider, session: Session) -> UserRecord:
        try:
            return await self._bounded(
                provider.fetch_user(session), provider, "fetch_user", ProviderProfileError
            )
        except ProviderProfileError as e:
            AUTH_COMPLETIONS.labels(provider=provider.name, outcome="profile_failed").inc()
            logger.warning("Profile fetch failed", provider=provider.name, error=e.detail)
            raise

    async def _try_resume(self, provider: Provider, session: Session) -> UserRecord | None:
        try:
            return await self._bounded(
                provider.fetch_user(session), provider, "fetch_user", ProviderProfileError
            )
        except ProviderProfileError:
            return None

    async def _bounded(
        self,
        call: Awaitable[T],
        provider: Provider,
        operation: str,
        error: type[ProviderError],
    ) -> T:
        timeout = self.settings.provider_timeout
        start = time.perf_counter()
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except TimeoutError as e:
            raise error(provider.name, f"{operation} timed out after {timeout}s") from e
        finally:
            PROVIDER_CALL_SECONDS.labels(provider=provider.name, operation=operation).observe(
                time.perf_counter() - start
            )
