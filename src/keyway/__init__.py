"""Provider-agnostic OAuth1/OAuth2/OIDC authentication for aiohttp apps.

keyway drives the redirect/callback flow against any registered identity
provider. Provider-specific details (token formats, profile shapes,
OAuth1 versus OAuth2) live behind the Provider and Session interfaces,
so one orchestration path serves every provider.

Example usage:

    from aiohttp import web
    from keyway import (
        Authenticator,
        CookieSessionStore,
        KeywaySettings,
        NoSessionError,
        ProviderRegistry,
    )
    from keyway.providers import GitHubProvider

    settings = KeywaySettings(secret_key="...")
    registry = ProviderRegistry(
        GitHubProvider("client-id", "client-secret", "https://app.example.com/auth/github/callback"),
    )
    auth = Authenticator(registry, CookieSessionStore(settings=settings), settings=settings)

    async def callback(request: web.Request) -> web.StreamResponse:
        response = web.Response(status=302, headers={"Location": "/"})
        try:
            user = await auth.complete_user_auth(request, response)
        except NoSessionError:
            raise web.HTTPFound(f"/auth/{request.match_info['provider']}")
        ...
        return response

    app = web.Application()
    app.router.add_get("/auth/{provider}", auth.begin_auth_handler)
    app.router.add_get("/auth/{provider}/callback", callback)
    app.router.add_get("/logout", auth.logout_handler)
"""

from keyway.authenticator import (
    AUTHORIZED_KEY,
    PROVIDER_KEY,
    SESSION_KEY,
    AuthOutcome,
    Authenticator,
)
from keyway.codec import JSONSession, decode_session, encode_session, pack, unpack
from keyway.config import (
    KeywaySettings,
    ProviderConfig,
    clear_settings,
    get_settings,
    load_providers,
)
from keyway.errors import (
    AuthURLNotSetError,
    KeywayError,
    NoProviderSelectedError,
    NoSessionError,
    ProviderError,
    ProviderExchangeError,
    ProviderNotFoundError,
    ProviderProfileError,
    RefreshNotSupportedError,
    SessionDecodeError,
    SessionStoreError,
    StateMismatchError,
)
from keyway.provider import Provider, Session, Token, UserRecord
from keyway.registry import ProviderRegistry
from keyway.resolvers import DEFAULT_RESOLVERS, with_provider
from keyway.state import generate_state, validate_state
from keyway.store import CookieSessionStore, MemorySessionStore, SessionRecord, SessionStore

__version__ = "0.1.0"

__all__ = [
    # Orchestrator
    "AUTHORIZED_KEY",
    "PROVIDER_KEY",
    "SESSION_KEY",
    "AuthOutcome",
    "Authenticator",
    # Contracts
    "Provider",
    "Session",
    "Token",
    "UserRecord",
    "ProviderRegistry",
    # Codec and state
    "JSONSession",
    "decode_session",
    "encode_session",
    "pack",
    "unpack",
    "generate_state",
    "validate_state",
    # Stores
    "CookieSessionStore",
    "MemorySessionStore",
    "SessionRecord",
    "SessionStore",
    # Resolvers
    "DEFAULT_RESOLVERS",
    "with_provider",
    # Config
    "KeywaySettings",
    "ProviderConfig",
    "clear_settings",
    "get_settings",
    "load_providers",
    # Errors
    "AuthURLNotSetError",
    "KeywayError",
    "NoProviderSelectedError",
    "NoSessionError",
    "ProviderError",
    "ProviderExchangeError",
    "ProviderNotFoundError",
    "ProviderProfileError",
    "RefreshNotSupportedError",
    "SessionDecodeError",
    "SessionStoreError",
    "StateMismatchError",
]
