"""Provider name resolution.

The provider name for a request is taken from the first resolver in an
ordered list that returns a non-empty value. The default order is:

1. ``?provider=`` query parameter
2. ``?:provider=`` query parameter
3. ``{provider}`` route parameter (aiohttp match_info)
4. a request-scoped value set with ``with_provider``
5. the provider that owns the session already stored for this request

Hosts with a different routing layer pass their own list to the
Authenticator.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING

from aiohttp import web

from keyway.errors import NoProviderSelectedError

if TYPE_CHECKING:
    from keyway.authenticator import Authenticator

Resolver = Callable[[web.Request, "Authenticator"], Awaitable[str | None]]

PROVIDER_CONTEXT_KEY = web.RequestKey("keyway.provider", str)


def query_param(key: str = "provider") -> Resolver:
    async def resolve(request: web.Request, authenticator: Authenticator) -> str | None:
        return request.query.get(key) or None

    return resolve


def route_param(key: str = "provider") -> Resolver:
    async def resolve(request: web.Request, authenticator: Authenticator) -> str | None:
        return request.match_info.get(key) or None

    return resolve


def context_value(key: web.RequestKey[str] = PROVIDER_CONTEXT_KEY) -> Resolver:
    async def resolve(request: web.Request, authenticator: Authenticator) -> str | None:
        value = request.get(key)
        return value if isinstance(value, str) and value else None

    return resolve


async def stored_session(request: web.Request, authenticator: Authenticator) -> str | None:
    """Name of the registered provider that owns this request's stored session."""
    return await authenticator.stored_provider_name(request)


DEFAULT_RESOLVERS: tuple[Resolver, ...] = (
    query_param("provider"),
    query_param(":provider"),
    route_param("provider"),
    context_value(PROVIDER_CONTEXT_KEY),
    stored_session,
)


def with_provider(request: web.Request, name: str) -> web.Request:
    """Attach a provider name to the request for ``context_value``."""
    request[PROVIDER_CONTEXT_KEY] = name
    return request


async def resolve_provider_name(
    request: web.Request,
    authenticator: Authenticator,
    resolvers: Sequence[Resolver] = DEFAULT_RESOLVERS,
) -> str:
    """Run the resolvers in order and return the first name found.

    Raises:
        NoProviderSelectedError: If no resolver produced a name.
    """
    for resolver in resolvers:
        name = await resolver(request, authenticator)
        if name:
            return name
    raise NoProviderSelectedError()
