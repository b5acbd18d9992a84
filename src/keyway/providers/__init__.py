"""Reference provider adapters.

Provides the provider implementations shipped with keyway and factory
functions to build them from configuration:

- faux: offline test provider
- oauth2: generic OAuth 2.0 authorization-code provider
- github: GitHub (OAuth2)
- oidc / google: OpenID Connect with discovery
- oauth1 / twitter: three-legged OAuth 1.0a
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from keyway.config import ProviderConfig
from keyway.provider import Provider
from keyway.providers.faux import FauxProvider, FauxSession
from keyway.providers.github import GitHubProvider
from keyway.providers.oauth1 import OAuth1Provider, OAuth1Session, TwitterProvider
from keyway.providers.oauth2 import OAuth2Provider, OAuth2Session
from keyway.providers.oidc import OIDCProvider, OIDCSession, create_google_provider
from keyway.registry import ProviderRegistry

ProviderFactory = Callable[[ProviderConfig, float], Provider]


def _faux(config: ProviderConfig, timeout: float) -> Provider:
    return FauxProvider(name=config.name)


def _oauth2(config: ProviderConfig, timeout: float) -> Provider:
    return OAuth2Provider(
        config.client_id,
        config.client_secret,
        config.callback_url,
        authorize_url=config.authorize_url or "",
        token_url=config.token_url or "",
        profile_url=config.profile_url,
        scopes=config.scopes,
        name=config.name,
        timeout=timeout,
    )


def _github(config: ProviderConfig, timeout: float) -> Provider:
    return GitHubProvider(
        config.client_id,
        config.client_secret,
        config.callback_url,
        scopes=config.scopes or None,
        name=config.name,
        timeout=timeout,
    )


def _oidc(config: ProviderConfig, timeout: float) -> Provider:
    return OIDCProvider(
        config.client_id,
        config.client_secret,
        config.callback_url,
        issuer_url=config.issuer_url,
        authorize_url=config.authorize_url,
        token_url=config.token_url,
        userinfo_url=config.profile_url,
        scopes=config.scopes or None,
        name=config.name,
        timeout=timeout,
    )


def _google(config: ProviderConfig, timeout: float) -> Provider:
    return create_google_provider(
        config.client_id,
        config.client_secret,
        config.callback_url,
        scopes=config.scopes or None,
        name=config.name,
        timeout=timeout,
    )


def _oauth1(config: ProviderConfig, timeout: float) -> Provider:
    return OAuth1Provider(
        config.client_id,
        config.client_secret,
        config.callback_url,
        request_token_url=config.request_token_url or "",
        authorize_url=config.authorize_url or "",
        token_url=config.token_url or "",
        profile_url=config.profile_url,
        name=config.name,
        timeout=timeout,
    )


def _twitter(config: ProviderConfig, timeout: float) -> Provider:
    return TwitterProvider(
        config.client_id,
        config.client_secret,
        config.callback_url,
        name=config.name,
        timeout=timeout,
    )


PROVIDER_TYPES: dict[str, ProviderFactory] = {
    "faux": _faux,
    "oauth2": _oauth2,
    "github": _github,
    "oidc": _oidc,
    "google": _google,
    "oauth1": _oauth1,
    "twitter": _twitter,
}


def create_provider(config: ProviderConfig, timeout: float = 30.0) -> Provider:
    """Build a provider from its configuration entry.

    Args:
        config: Provider configuration
        timeout: HTTP timeout for the provider's network calls (seconds)

    Returns:
        The configured provider, named ``config.name``

    Raises:
        ValueError: If the provider type is unknown
    """
    factory = PROVIDER_TYPES.get(config.type)
    if factory is None:
        supported = ", ".join(f"'{name}'" for name in sorted(PROVIDER_TYPES))
        raise ValueError(f"Unknown provider type: {config.type}. Supported: {supported}")
    return factory(config, timeout)


def build_registry(configs: Iterable[ProviderConfig], timeout: float = 30.0) -> ProviderRegistry:
    """Create a registry holding one provider per configuration entry."""
    registry = ProviderRegistry()
    for config in configs:
        registry.register(create_provider(config, timeout))
    return registry


__all__ = [
    "PROVIDER_TYPES",
    "FauxProvider",
    "FauxSession",
    "GitHubProvider",
    "OAuth1Provider",
    "OAuth1Session",
    "OAuth2Provider",
    "OAuth2Session",
    "OIDCProvider",
    "OIDCSession",
    "TwitterProvider",
    "build_registry",
    "create_google_provider",
    "create_provider",
]
