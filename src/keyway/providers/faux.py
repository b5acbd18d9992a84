"""Faux provider used for testing the orchestration flow.

It never talks to the network: begin_auth returns a fixed example.com URL
and fetch_user echoes whatever the session holds.
"""

from __future__ import annotations

from urllib.parse import urlencode

from keyway.codec import JSONSession
from keyway.errors import ProviderProfileError
from keyway.provider import Params, Provider, Session, UserRecord

AUTH_URL = "http://example.com/auth/"


class FauxSession(JSONSession):
    name: str = ""
    email: str = ""
    access_token: str = ""

    async def authorize(self, provider: Provider, params: Params) -> str:
        self.access_token = params.get("code") or "faux-access-token"
        return self.access_token


class FauxProvider(Provider):
    def __init__(self, name: str = "faux") -> None:
        super().__init__(name)

    async def begin_auth(self, state: str) -> FauxSession:
        query = urlencode({"client_id": self.name, "response_type": "code", "state": state})
        return FauxSession(auth_url=f"{AUTH_URL}?{query}")

    async def fetch_user(self, session: Session) -> UserRecord:
        if not isinstance(session, FauxSession):
            raise ProviderProfileError(self.name, f"unexpected session type {type(session).__name__}")
        return UserRecord(
            provider=self.name,
            name=session.name,
            email=session.email,
            access_token=session.access_token,
        )

    def unmarshal_session(self, data: str) -> FauxSession:
        return FauxSession.unmarshal(data)
