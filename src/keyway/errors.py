"""Error types raised by the keyway authentication core.

Every orchestrator operation either returns a result or raises one of
these. The host maps them to HTTP status codes and user-facing pages:

- NoProviderSelectedError / ProviderNotFoundError: render a provider picker
- NoSessionError (and its subclasses): restart the login flow
- ProviderError subclasses: show "sign-in with X failed"
- AuthURLNotSetError: integration bug, fail the request
"""

from __future__ import annotations


class KeywayError(Exception):
    """Base class for all keyway errors."""


class NoProviderSelectedError(KeywayError):
    """No provider name could be resolved from the request."""

    def __init__(self, message: str = "you must select a provider") -> None:
        super().__init__(message)


class ProviderNotFoundError(KeywayError, LookupError):
    """The resolved provider name has no registered provider."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"no provider for {name} exists")


class NoSessionError(KeywayError):
    """No usable stored session for this request.

    Raised when the slot is empty, expired, already consumed by a previous
    callback, or owned by a different provider.
    """

    def __init__(self, message: str = "could not find a matching session for this request") -> None:
        super().__init__(message)


class SessionDecodeError(NoSessionError):
    """Stored session data is malformed or has been tampered with."""


class StateMismatchError(NoSessionError):
    """Callback state does not match the state sent to the provider."""

    def __init__(self, message: str = "state token mismatch") -> None:
        super().__init__(message)


class AuthURLNotSetError(KeywayError):
    """A session was asked for its authorize URL before begin_auth set one."""

    def __init__(self, message: str = "an auth URL has not been set") -> None:
        super().__init__(message)


class ProviderError(KeywayError):
    """A third-party provider call failed.

    Attributes:
        provider: Name of the provider that failed.
        detail: The provider's own error detail. Log it, don't render it.
    """

    def __init__(self, provider: str, detail: str) -> None:
        self.provider = provider
        self.detail = detail
        super().__init__(f"{provider}: {detail}")


class ProviderExchangeError(ProviderError):
    """The provider rejected the grant exchange."""


class ProviderProfileError(ProviderError):
    """The provider profile fetch failed."""


class RefreshNotSupportedError(ProviderError):
    """The provider does not issue refresh tokens."""

    def __init__(self, provider: str) -> None:
        super().__init__(provider, f"refresh token is not provided by {provider}")


class SessionStoreError(KeywayError):
    """The session store could not persist a record."""
