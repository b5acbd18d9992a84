"""Generic OAuth 2.0 authorization-code provider.

Works with any provider that exposes authorize, token and profile
endpoints. Uses PKCE (S256) by default. Subclasses override
``user_from_profile`` to map a provider's profile shape, and
``extra_authorize_params`` to add provider-specific parameters.
"""

from __future__ import annotations

import secrets
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.oauth2.rfc7636 import create_s256_code_challenge
from pydantic import Field

from keyway.codec import JSONSession
from keyway.errors import ProviderExchangeError, ProviderProfileError
from keyway.provider import Params, Provider, Session, Token, UserRecord

# Errors authlib/httpx raise for a failed or malformed provider response.
CLIENT_ERRORS = (AuthlibBaseError, httpx.HTTPError, ValueError)


class OAuth2Session(JSONSession):
    """Session for an authorization-code flow."""

    code_verifier: str = ""
    access_token: str = ""
    refresh_token: str = ""
    token_type: str = ""
    expires_at: float | None = None
    id_token: str = Field(default="", alias="IDToken")

    async def authorize(self, provider: Provider, params: Params) -> str:
        if not isinstance(provider, OAuth2Provider):
            raise ProviderExchangeError(provider.name, "session does not belong to an OAuth2 provider")

        error = params.get("error")
        if error:
            raise ProviderExchangeError(provider.name, params.get("error_description") or error)
        code = params.get("code")
        if not code:
            raise ProviderExchangeError(provider.name, "missing authorization code")

        token = await provider.exchange_code(code, self)
        self.apply_token(token)
        return self.access_token

    def apply_token(self, token: Mapping[str, Any]) -> None:
        self.access_token = token.get("access_token") or ""
        self.refresh_token = token.get("refresh_token") or self.refresh_token
        self.token_type = token.get("token_type") or "Bearer"
        expires_at = token.get("expires_at")
        self.expires_at = float(expires_at) if expires_at else None
        self.id_token = token.get("id_token") or ""

    def token(self) -> dict[str, Any]:
        """Token dict in the shape authlib clients expect."""
        token: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type or "Bearer",
        }
        if self.refresh_token:
            token["refresh_token"] = self.refresh_token
        if self.expires_at:
            token["expires_at"] = self.expires_at
        return token

    @property
    def expires_at_datetime(self) -> datetime | None:
        if not self.expires_at:
            return None
        return datetime.fromtimestamp(self.expires_at, UTC)


class OAuth2Provider(Provider):
    """OAuth 2.0 provider configured with explicit endpoints."""

    session_class: type[OAuth2Session] = OAuth2Session

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        callback_url: str,
        *,
        authorize_url: str,
        token_url: str,
        profile_url: str | None = None,
        scopes: Sequence[str] = (),
        name: str = "oauth2",
        use_pkce: bool = True,
        auth_params: Mapping[str, str] | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the provider.

        Args:
            client_id: OAuth client ID
            client_secret: OAuth client secret
            callback_url: Redirect URI registered with the provider
            authorize_url: Authorization endpoint
            token_url: Token endpoint
            profile_url: Endpoint returning the user's profile as JSON
            scopes: Scopes to request
            name: Registry name
            use_pkce: Send a PKCE S256 challenge
            auth_params: Extra query parameters for the authorize URL
            timeout: HTTP timeout for token and profile calls (seconds)
        """
        super().__init__(name)
        self.client_id = client_id
        self.client_secret = client_secret
        self.callback_url = callback_url
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.profile_url = profile_url
        self.scopes = list(scopes)
        self.use_pkce = use_pkce
        self.auth_params = dict(auth_params or {})
        self.timeout = timeout

    def client(self, **kwargs: Any) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=" ".join(self.scopes) or None,
            redirect_uri=self.callback_url,
            timeout=self.timeout,
            **kwargs,
        )

    def extra_authorize_params(self, session: OAuth2Session) -> dict[str, str]:
        return {}

    async def begin_auth(self, state: str) -> OAuth2Session:
        session = self.session_class()
        params = dict(self.auth_params)
        if self.use_pkce:
            session.code_verifier = secrets.token_urlsafe(64)
            params["code_challenge"] = create_s256_code_challenge(session.code_verifier)
            params["code_challenge_method"] = "S256"
        params.update(self.extra_authorize_params(session))

        async with self.client() as client:
            url, _ = client.create_authorization_url(self.authorize_url, state=state, **params)
        session.auth_url = url
        return session

    async def exchange_code(self, code: str, session: OAuth2Session) -> dict[str, Any]:
        """Trade an authorization code for a token.

        Raises:
            ProviderExchangeError: If the token endpoint rejects the code.
        """
        kwargs = {"code": code}
        if session.code_verifier:
            kwargs["code_verifier"] = session.code_verifier
        try:
            async with self.client() as client:
                token = await client.fetch_token(self.token_url, **kwargs)
        except CLIENT_ERRORS as e:
            raise ProviderExchangeError(self.name, str(e)) from e
        if not token.get("access_token"):
            raise ProviderExchangeError(self.name, "token response has no access_token")
        return dict(token)

    async def fetch_user(self, session: Session) -> UserRecord:
        if not isinstance(session, OAuth2Session) or not session.access_token:
            raise ProviderProfileError(self.name, "cannot get user information without access token")
        raw = await self.fetch_profile(session)
        return self.user_from_profile(raw, session)

    async def fetch_profile(self, session: OAuth2Session) -> dict[str, Any]:
        if not self.profile_url:
            raise ProviderProfileError(self.name, "no profile endpoint configured")
        return await self.get_json(self.profile_url, session)

    async def get_json(self, url: str, session: OAuth2Session) -> Any:
        """GET a JSON resource with the session's access token."""
        try:
            async with self.client(token=session.token()) as client:
                response = await client.get(url, headers={"Accept": "application/json"})
                response.raise_for_status()
                return response.json()
        except CLIENT_ERRORS as e:
            raise ProviderProfileError(self.name, str(e)) from e

    def user_from_profile(self, raw: Mapping[str, Any], session: OAuth2Session) -> UserRecord:
        """Map a profile payload onto a UserRecord.

        The default understands the common OIDC claim names and a few
        widespread alternatives (login, avatar_url, bio).
        """
        if not isinstance(raw, Mapping):
            raise ProviderProfileError(self.name, "profile response is not a JSON object")
        user_id = raw.get("sub") or raw.get("id") or ""
        return UserRecord(
            provider=self.name,
            user_id=str(user_id),
            email=raw.get("email") or "",
            name=raw.get("name") or "",
            first_name=raw.get("given_name") or "",
            last_name=raw.get("family_name") or "",
            nick_name=raw.get("preferred_username") or raw.get("nickname") or raw.get("login") or "",
            description=raw.get("bio") or "",
            avatar_url=raw.get("picture") or raw.get("avatar_url") or "",
            location=raw.get("locale") or raw.get("location") or "",
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            expires_at=session.expires_at_datetime,
            id_token=session.id_token,
            raw_data=raw,
        )

    def unmarshal_session(self, data: str) -> OAuth2Session:
        return self.session_class.unmarshal(data)

    def refresh_token_available(self) -> bool:
        return True

    async def refresh_token(self, refresh_token: str) -> Token:
        try:
            async with self.client() as client:
                token = await client.refresh_token(self.token_url, refresh_token=refresh_token)
        except CLIENT_ERRORS as e:
            raise ProviderExchangeError(self.name, str(e)) from e
        return Token.from_mapping(token)
