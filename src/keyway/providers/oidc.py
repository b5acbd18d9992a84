"""OpenID Connect provider.

Supports any OIDC-compliant identity provider (Google, Okta, Auth0,
Keycloak, Azure AD, etc.):

- Endpoint discovery from ``{issuer}/.well-known/openid-configuration``
- A nonce per attempt, stored in the session
- ID token signature and claim validation against the provider JWKS
- Userinfo endpoint fallback when no usable ID token is available
"""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import Sequence
from typing import Any

import httpx
import structlog
from authlib.jose import JsonWebKey, KeySet, jwt
from authlib.jose.errors import JoseError
from authlib.oidc.discovery import get_well_known_url

from keyway.errors import ProviderExchangeError, ProviderProfileError
from keyway.provider import Session, UserRecord
from keyway.providers.oauth2 import CLIENT_ERRORS, OAuth2Provider, OAuth2Session

logger = structlog.get_logger()

GOOGLE_ISSUER = "https://accounts.google.com"
DEFAULT_SCOPES = ["openid", "email", "profile"]


class OIDCSession(OAuth2Session):
    nonce: str = ""


class OIDCProvider(OAuth2Provider):
    """OAuth2 authorization-code flow with OpenID Connect ID tokens."""

    session_class = OIDCSession

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        callback_url: str,
        *,
        issuer_url: str | None = None,
        authorize_url: str | None = None,
        token_url: str | None = None,
        userinfo_url: str | None = None,
        scopes: Sequence[str] | None = None,
        name: str = "oidc",
        timeout: float = 30.0,
    ) -> None:
        """Initialize the provider.

        Either ``issuer_url`` (for discovery) or ``authorize_url`` plus
        ``token_url`` must be given. Explicit endpoints win over discovered
        ones.

        Raises:
            ValueError: If neither an issuer nor manual endpoints are set.
        """
        if not issuer_url and not (authorize_url and token_url):
            raise ValueError("OIDC provider requires issuer_url or authorize_url + token_url")
        super().__init__(
            client_id,
            client_secret,
            callback_url,
            authorize_url=authorize_url or "",
            token_url=token_url or "",
            profile_url=userinfo_url,
            scopes=scopes if scopes is not None else DEFAULT_SCOPES,
            name=name,
            timeout=timeout,
        )
        self.issuer_url = issuer_url
        self.metadata: dict[str, Any] = {}
        self._jwks: KeySet | None = None
        self._discovered = issuer_url is None
        self._discovery_lock = asyncio.Lock()

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout)

    async def discover(self) -> None:
        """Fetch provider metadata and signing keys once.

        Raises:
            ProviderExchangeError: If discovery or the JWKS fetch fails.
        """
        if self._discovered:
            return
        async with self._discovery_lock:
            if self._discovered:
                return
            url = get_well_known_url(self.issuer_url, external=True)
            try:
                async with self.http_client() as client:
                    response = await client.get(url)
                    response.raise_for_status()
                    metadata = response.json()

                    jwks = None
                    jwks_uri = metadata.get("jwks_uri")
                    if jwks_uri:
                        jwks_response = await client.get(jwks_uri)
                        jwks_response.raise_for_status()
                        jwks = JsonWebKey.import_key_set(jwks_response.json())
            except (*CLIENT_ERRORS, JoseError) as e:
                raise ProviderExchangeError(self.name, f"discovery failed: {e}") from e

            self.metadata = metadata
            self._jwks = jwks
            self.authorize_url = self.authorize_url or metadata.get("authorization_endpoint", "")
            self.token_url = self.token_url or metadata.get("token_endpoint", "")
            self.profile_url = self.profile_url or metadata.get("userinfo_endpoint")
            self._discovered = True

            logger.info(
                "OIDC provider discovered",
                provider=self.name,
                issuer=self.issuer_url,
                has_jwks=jwks is not None,
            )

    def extra_authorize_params(self, session: OAuth2Session) -> dict[str, str]:
        if not isinstance(session, OIDCSession):
            return {}
        session.nonce = secrets.token_urlsafe(16)
        return {"nonce": session.nonce}

    async def begin_auth(self, state: str) -> OAuth2Session:
        await self.discover()
        return await super().begin_auth(state)

    async def exchange_code(self, code: str, session: OAuth2Session) -> dict[str, Any]:
        await self.discover()
        return await super().exchange_code(code, session)

    async def fetch_user(self, session: Session) -> UserRecord:
        if not isinstance(session, OAuth2Session) or not session.access_token:
            raise ProviderProfileError(self.name, "cannot get user information without access token")
        await self._discover_for_profile()

        if session.id_token and self._jwks is not None:
            try:
                claims = self.validate_id_token(session.id_token, getattr(session, "nonce", ""))
            except ValueError as e:
                logger.warning("ID token rejected, using userinfo", provider=self.name, error=str(e))
            else:
                if claims.get("email"):
                    return self.user_from_profile(claims, session)

        return await super().fetch_user(session)

    def validate_id_token(self, id_token: str, nonce: str) -> dict[str, Any]:
        """Verify an ID token's signature and claims.

        Raises:
            ValueError: If the token is invalid, the nonce does not match,
                or the email is explicitly unverified.
        """
        try:
            claims = jwt.decode(
                id_token,
                self._jwks,
                claims_options={
                    "iss": {"essential": True, "value": self.issuer_url},
                    "aud": {"essential": True, "value": self.client_id},
                    "exp": {"essential": True},
                },
            )
            claims.validate()
        except JoseError as e:
            raise ValueError(f"invalid ID token: {e}") from e

        if nonce:
            token_nonce = claims.get("nonce")
            if not token_nonce or not secrets.compare_digest(token_nonce, nonce):
                raise ValueError("nonce mismatch in ID token")
        if claims.get("email") and claims.get("email_verified") is False:
            raise ValueError("email not verified")
        return dict(claims)

    async def _discover_for_profile(self) -> None:
        try:
            await self.discover()
        except ProviderExchangeError as e:
            raise ProviderProfileError(self.name, e.detail) from e


def create_google_provider(
    client_id: str,
    client_secret: str,
    callback_url: str,
    scopes: Sequence[str] | None = None,
    name: str = "google",
    timeout: float = 30.0,
) -> OIDCProvider:
    """Create an OIDC provider for Google sign-in."""
    return OIDCProvider(
        client_id,
        client_secret,
        callback_url,
        issuer_url=GOOGLE_ISSUER,
        scopes=scopes,
        name=name,
        timeout=timeout,
    )
