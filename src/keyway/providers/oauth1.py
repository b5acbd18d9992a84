"""Three-legged OAuth 1.0a providers.

The request token is fetched during begin_auth and kept in the session;
the callback's ``oauth_verifier`` is then exchanged for an access token.
OAuth1 has no ``state`` parameter, so authorize URLs carry none and the
state check is skipped for these sessions.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.httpx_client import AsyncOAuth1Client

from keyway.codec import JSONSession
from keyway.errors import ProviderExchangeError, ProviderProfileError
from keyway.provider import Params, Provider, Session, UserRecord

CLIENT_ERRORS = (AuthlibBaseError, httpx.HTTPError, ValueError, KeyError)

TWITTER_REQUEST_TOKEN_URL = "https://api.twitter.com/oauth/request_token"
TWITTER_AUTHORIZE_URL = "https://api.twitter.com/oauth/authorize"
TWITTER_AUTHENTICATE_URL = "https://api.twitter.com/oauth/authenticate"
TWITTER_TOKEN_URL = "https://api.twitter.com/oauth/access_token"
TWITTER_PROFILE_URL = "https://api.twitter.com/1.1/account/verify_credentials.json"


class OAuth1Session(JSONSession):
    request_token: str = ""
    request_token_secret: str = ""
    access_token: str = ""
    access_token_secret: str = ""

    async def authorize(self, provider: Provider, params: Params) -> str:
        if not isinstance(provider, OAuth1Provider):
            raise ProviderExchangeError(provider.name, "session does not belong to an OAuth1 provider")
        verifier = params.get("oauth_verifier")
        if not verifier:
            raise ProviderExchangeError(provider.name, "missing oauth_verifier")

        token = await provider.exchange_verifier(self, verifier)
        self.access_token = token.get("oauth_token") or ""
        self.access_token_secret = token.get("oauth_token_secret") or ""
        if not self.access_token:
            raise ProviderExchangeError(provider.name, "access token response has no oauth_token")
        return self.access_token


class OAuth1Provider(Provider):
    """OAuth 1.0a provider configured with explicit endpoints."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        callback_url: str,
        *,
        request_token_url: str,
        authorize_url: str,
        token_url: str,
        profile_url: str | None = None,
        profile_params: Mapping[str, str] | None = None,
        name: str = "oauth1",
        timeout: float = 30.0,
    ) -> None:
        super().__init__(name)
        self.client_id = client_id
        self.client_secret = client_secret
        self.callback_url = callback_url
        self.request_token_url = request_token_url
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.profile_url = profile_url
        self.profile_params = dict(profile_params or {})
        self.timeout = timeout

    def client(self, **kwargs: Any) -> AsyncOAuth1Client:
        return AsyncOAuth1Client(
            self.client_id,
            self.client_secret,
            timeout=self.timeout,
            **kwargs,
        )

    async def begin_auth(self, state: str) -> OAuth1Session:
        """Fetch a request token and build the authorize URL.

        ``state`` is ignored; OAuth 1.0a has no equivalent.

        Raises:
            ProviderExchangeError: If the request token call fails.
        """
        try:
            async with self.client(redirect_uri=self.callback_url) as client:
                token = await client.fetch_request_token(self.request_token_url)
                url = client.create_authorization_url(
                    self.authorize_url, request_token=token["oauth_token"]
                )
        except CLIENT_ERRORS as e:
            raise ProviderExchangeError(self.name, f"request token failed: {e}") from e

        return OAuth1Session(
            auth_url=url,
            request_token=token["oauth_token"],
            request_token_secret=token.get("oauth_token_secret") or "",
        )

    async def exchange_verifier(self, session: OAuth1Session, verifier: str) -> dict[str, Any]:
        try:
            async with self.client(
                token=session.request_token,
                token_secret=session.request_token_secret,
            ) as client:
                token = await client.fetch_access_token(self.token_url, verifier=verifier)
        except CLIENT_ERRORS as e:
            raise ProviderExchangeError(self.name, str(e)) from e
        return dict(token)

    async def fetch_user(self, session: Session) -> UserRecord:
        if not isinstance(session, OAuth1Session) or not session.access_token:
            raise ProviderProfileError(self.name, "cannot get user information without access token")
        if not self.profile_url:
            raise ProviderProfileError(self.name, "no profile endpoint configured")

        try:
            async with self.client(
                token=session.access_token,
                token_secret=session.access_token_secret,
            ) as client:
                response = await client.get(self.profile_url, params=self.profile_params)
                response.raise_for_status()
                raw = response.json()
        except CLIENT_ERRORS as e:
            raise ProviderProfileError(self.name, str(e)) from e

        if not isinstance(raw, dict):
            raise ProviderProfileError(self.name, "profile response is not a JSON object")
        return self.user_from_profile(raw, session)

    def user_from_profile(self, raw: Mapping[str, Any], session: OAuth1Session) -> UserRecord:
        user_id = raw.get("id_str") or raw.get("id") or ""
        return UserRecord(
            provider=self.name,
            user_id=str(user_id),
            email=raw.get("email") or "",
            name=raw.get("name") or "",
            access_token=session.access_token,
            access_token_secret=session.access_token_secret,
            raw_data=raw,
        )

    def unmarshal_session(self, data: str) -> OAuth1Session:
        return OAuth1Session.unmarshal(data)


class TwitterProvider(OAuth1Provider):
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        callback_url: str,
        name: str = "twitter",
        authenticate: bool = False,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the provider.

        Args:
            authenticate: Use /oauth/authenticate, which skips the consent
                screen for users who already authorized the app.
        """
        super().__init__(
            client_id,
            client_secret,
            callback_url,
            request_token_url=TWITTER_REQUEST_TOKEN_URL,
            authorize_url=TWITTER_AUTHENTICATE_URL if authenticate else TWITTER_AUTHORIZE_URL,
            token_url=TWITTER_TOKEN_URL,
            profile_url=TWITTER_PROFILE_URL,
            profile_params={"include_entities": "false", "skip_status": "true", "include_email": "true"},
            name=name,
            timeout=timeout,
        )

    def user_from_profile(self, raw: Mapping[str, Any], session: OAuth1Session) -> UserRecord:
        return UserRecord(
            provider=self.name,
            user_id=raw.get("id_str") or "",
            email=raw.get("email") or "",
            name=raw.get("name") or "",
            nick_name=raw.get("screen_name") or "",
            description=raw.get("description") or "",
            avatar_url=raw.get("profile_image_url") or "",
            location=raw.get("location") or "",
            access_token=session.access_token,
            access_token_secret=session.access_token_secret,
            raw_data=raw,
        )
