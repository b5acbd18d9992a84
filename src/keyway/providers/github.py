"""GitHub OAuth App / GitHub App user authentication.

GitHub speaks plain OAuth2 (no OIDC), issues tokens that do not expire,
and only includes the email in /user when the user made it public. When
it is missing the verified primary address is read from /user/emails.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import structlog

from keyway.errors import ProviderProfileError, RefreshNotSupportedError
from keyway.provider import Token, UserRecord
from keyway.providers.oauth2 import OAuth2Provider, OAuth2Session

logger = structlog.get_logger()

AUTH_URL = "https://github.com/login/oauth/authorize"
TOKEN_URL = "https://github.com/login/oauth/access_token"
PROFILE_URL = "https://api.github.com/user"
EMAIL_URL = "https://api.github.com/user/emails"


class GitHubProvider(OAuth2Provider):
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        callback_url: str,
        scopes: Sequence[str] | None = None,
        name: str = "github",
        timeout: float = 30.0,
    ) -> None:
        super().__init__(
            client_id,
            client_secret,
            callback_url,
            authorize_url=AUTH_URL,
            token_url=TOKEN_URL,
            profile_url=PROFILE_URL,
            scopes=scopes if scopes is not None else ["user:email"],
            name=name,
            use_pkce=False,
            timeout=timeout,
        )

    async def fetch_profile(self, session: OAuth2Session) -> dict[str, Any]:
        raw = await super().fetch_profile(session)
        if isinstance(raw, dict) and not raw.get("email") and "user:email" in self.scopes:
            email = await self.primary_email(session)
            if email:
                raw = {**raw, "email": email}
        return raw

    async def primary_email(self, session: OAuth2Session) -> str:
        """Verified primary address from /user/emails, or "" if none."""
        try:
            emails = await self.get_json(EMAIL_URL, session)
        except ProviderProfileError as e:
            logger.debug("Could not read GitHub emails", provider=self.name, error=e.detail)
            return ""
        if not isinstance(emails, list):
            return ""
        for entry in emails:
            if isinstance(entry, dict) and entry.get("primary") and entry.get("verified"):
                return entry.get("email") or ""
        return ""

    def user_from_profile(self, raw: Mapping[str, Any], session: OAuth2Session) -> UserRecord:
        if not isinstance(raw, Mapping):
            raise ProviderProfileError(self.name, "profile response is not a JSON object")
        user_id = raw.get("id")
        return UserRecord(
            provider=self.name,
            user_id=str(user_id) if user_id is not None else "",
            email=raw.get("email") or "",
            name=raw.get("name") or "",
            nick_name=raw.get("login") or "",
            description=raw.get("bio") or "",
            avatar_url=raw.get("avatar_url") or "",
            location=raw.get("location") or "",
            access_token=session.access_token,
            raw_data=raw,
        )

    def refresh_token_available(self) -> bool:
        return False

    async def refresh_token(self, refresh_token: str) -> Token:
        raise RefreshNotSupportedError(self.name)
