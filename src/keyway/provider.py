"""Provider and Session contracts.

Every identity service adapter implements ``Provider`` and produces a
matching ``Session``. The orchestrator only talks to these two interfaces,
so OAuth1, OAuth2 and OpenID Connect adapters all share one flow.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from keyway.errors import RefreshNotSupportedError

Params = Mapping[str, str]


def _epoch_to_datetime(value: float | int | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(float(value), UTC)


@dataclass(frozen=True)
class UserRecord:
    """Normalized profile and token data for an authenticated user.

    A fresh record is built for every successful fetch_user call. All the
    provider's raw profile data is kept in ``raw_data``.
    """

    provider: str
    user_id: str = ""
    email: str = ""
    name: str = ""
    first_name: str = ""
    last_name: str = ""
    nick_name: str = ""
    description: str = ""
    avatar_url: str = ""
    location: str = ""
    access_token: str = ""
    access_token_secret: str = ""
    refresh_token: str = ""
    expires_at: datetime | None = None
    id_token: str = ""
    raw_data: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "raw_data", MappingProxyType(dict(self.raw_data)))


@dataclass(frozen=True)
class Token:
    """Access token returned by a refresh."""

    access_token: str
    refresh_token: str = ""
    token_type: str = "Bearer"
    expires_at: datetime | None = None

    @classmethod
    def from_mapping(cls, token: Mapping[str, Any]) -> Token:
        """Build from an authlib OAuth2Token (or any token dict)."""
        return cls(
            access_token=token.get("access_token", ""),
            refresh_token=token.get("refresh_token") or "",
            token_type=token.get("token_type") or "Bearer",
            expires_at=_epoch_to_datetime(token.get("expires_at")),
        )


class Session(ABC):
    """Per-attempt state kept between the redirect out and the callback in."""

    @abstractmethod
    def get_auth_url(self) -> str:
        """Return the provider authorize URL.

        Raises:
            AuthURLNotSetError: If begin_auth has not populated the URL.
        """
        ...

    @abstractmethod
    async def authorize(self, provider: Provider, params: Params) -> str:
        """Exchange the callback grant for an access token.

        Mutates the session in place and returns the access token.

        Args:
            provider: The already-resolved provider that created this session.
            params: Callback query (or form) parameters.

        Raises:
            ProviderExchangeError: If the provider rejects the exchange.
        """
        ...

    @abstractmethod
    def marshal(self) -> str:
        """Serialize to a string the paired unmarshal_session can read."""
        ...


class Provider(ABC):
    """Adapter for one identity service.

    The name is mutable so the same backing service can be registered
    twice (for example two GitHub apps) under different names.
    """

    def __init__(self, name: str) -> None:
        self._name = name

    @property
    def name(self) -> str:
        """Registry key for this provider."""
        return self._name

    @name.setter
    def name(self, value: str) -> None:
        self._name = value

    @abstractmethod
    async def begin_auth(self, state: str) -> Session:
        """Start an attempt and return a session holding the authorize URL."""
        ...

    @abstractmethod
    async def fetch_user(self, session: Session) -> UserRecord:
        """Fetch the user's profile with an authorized session.

        Raises:
            ProviderProfileError: If the profile cannot be fetched.
        """
        ...

    @abstractmethod
    def unmarshal_session(self, data: str) -> Session:
        """Rebuild a session from ``Session.marshal`` output.

        Raises:
            SessionDecodeError: If the data is malformed.
        """
        ...

    def refresh_token_available(self) -> bool:
        return False

    async def refresh_token(self, refresh_token: str) -> Token:
        raise RefreshNotSupportedError(self.name)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
