"""Session store adapters.

The orchestrator needs very little from the host's session storage: get a
named record for a request, and save it back onto the response. Two
backends are provided:

- MemorySessionStore: server-side values keyed by a random session-id cookie,
  with expiry and a background cleanup task.
- CookieSessionStore: values carried in an HMAC-SHA256 signed cookie.

Records are cached on the aiohttp request, so a get after a save in the
same request sees the saved values.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import structlog
from aiohttp import web

from keyway.config import KeywaySettings, get_settings
from keyway.errors import SessionStoreError

logger = structlog.get_logger()

# Request-scoped cache of loaded records.
SESSIONS_KEY = web.RequestKey("keyway.sessions", dict[str, "SessionRecord"])

# Browsers drop cookies above this size.
MAX_COOKIE_SIZE = 4096


@dataclass
class SessionRecord:
    """A named, mutable bag of string values for one request identity."""

    name: str
    values: dict[str, str] = field(default_factory=dict)
    is_new: bool = True
    max_age: int | None = None
    session_id: str | None = None

    def clear(self) -> None:
        """Drop all values. Saving an empty record deletes it from the store."""
        self.values.clear()


class SessionStore(ABC):
    """Keyed, persistent session storage supplied to the orchestrator.

    Implementations must guarantee that a save followed by a get for the
    same request identity returns the saved values, and that different
    identities never observe each other's records.
    """

    def __init__(self, settings: KeywaySettings | None = None) -> None:
        self.settings = settings or get_settings()

    async def get(self, request: web.Request, name: str) -> SessionRecord:
        """Return the record ``name`` for this request, loading it once."""
        cache = request.get(SESSIONS_KEY)
        if cache is None:
            cache = {}
            request[SESSIONS_KEY] = cache
        record = cache.get(name)
        if record is None:
            record = await self.load(request, name)
            cache[name] = record
        return record

    @abstractmethod
    async def load(self, request: web.Request, name: str) -> SessionRecord:
        """Read the record from the backing medium."""
        ...

    @abstractmethod
    async def save(
        self,
        request: web.Request,
        response: web.StreamResponse,
        record: SessionRecord,
    ) -> None:
        """Persist the record, or delete it when it has no values.

        Raises:
            SessionStoreError: If the record cannot be persisted.
        """
        ...

    def _max_age(self, record: SessionRecord) -> int:
        return record.max_age or self.settings.session_max_age

    def _delete_cookie(self, response: web.StreamResponse, name: str) -> None:
        response.del_cookie(
            name,
            path=self.settings.cookie_path,
            domain=self.settings.cookie_domain,
        )


@dataclass
class _Entry:
    values: dict[str, str]
    expires_at: float

    @property
    def is_expired(self) -> bool:
        return time.time() > self.expires_at


class MemorySessionStore(SessionStore):
    """In-memory server-side store with expiration cleanup.

    Only a random session id travels in the cookie. Thread-safe via an
    asyncio lock for concurrent access.
    """

    def __init__(
        self,
        settings: KeywaySettings | None = None,
        cleanup_interval: float = 300.0,
    ) -> None:
        """Initialize the store.

        Args:
            settings: Cookie and lifetime settings (global settings if omitted)
            cleanup_interval: How often to purge expired entries, in seconds
        """
        super().__init__(settings)
        self._entries: dict[str, _Entry] = {}
        self._cleanup_interval = cleanup_interval
        self._cleanup_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        """Start the background cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        """Stop the background cleanup task."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def load(self, request: web.Request, name: str) -> SessionRecord:
        session_id = request.cookies.get(name)
        if not session_id:
            return SessionRecord(name=name)

        async with self._lock:
            entry = self._entries.get(session_id)
            if entry is not None and entry.is_expired:
                del self._entries[session_id]
                entry = None

        if entry is None:
            return SessionRecord(name=name)
        return SessionRecord(
            name=name,
            values=dict(entry.values),
            is_new=False,
            session_id=session_id,
        )

    async def save(
        self,
        request: web.Request,
        response: web.StreamResponse,
        record: SessionRecord,
    ) -> None:
        if not record.values:
            if record.session_id:
                async with self._lock:
                    self._entries.pop(record.session_id, None)
            self._delete_cookie(response, record.name)
            return

        session_id = record.session_id or secrets.token_urlsafe(32)
        max_age = self._max_age(record)
        async with self._lock:
            self._entries[session_id] = _Entry(
                values=dict(record.values),
                expires_at=time.time() + max_age,
            )

        record.session_id = session_id
        record.is_new = False
        response.set_cookie(record.name, session_id, max_age=max_age, **self.settings.cookie_kwargs())

    async def count(self) -> int:
        """Get the current number of stored records."""
        async with self._lock:
            return len(self._entries)

    async def _cleanup_loop(self) -> None:
        """Background task to remove expired entries."""
        while True:
            try:
                await asyncio.sleep(self._cleanup_interval)
                await self._cleanup_expired()
            except asyncio.CancelledError:
                break

    async def _cleanup_expired(self) -> int:
        """Remove all expired entries.

        Returns:
            Number of entries removed
        """
        removed = 0
        async with self._lock:
            expired = [sid for sid, entry in self._entries.items() if entry.is_expired]
            for sid in expired:
                del self._entries[sid]
                removed += 1
        return removed


class CookieSessionStore(SessionStore):
    """Client-side store: values live in a signed cookie.

    Cookie format: ``<base64url(json values)>|<timestamp>|<base64url(hmac)>``.
    The HMAC-SHA256 covers the cookie name, payload and timestamp, so a
    cookie cannot be edited or moved to another name. A cookie that fails
    verification is treated as absent and logged as a possible tamper attempt.
    """

    def __init__(
        self,
        secret_key: bytes | str | None = None,
        settings: KeywaySettings | None = None,
    ) -> None:
        super().__init__(settings)
        key = secret_key or self.settings.secret_key
        if not key:
            raise ValueError("CookieSessionStore requires a secret_key (or KEYWAY_SECRET_KEY)")
        self._key = key.encode("utf-8") if isinstance(key, str) else key

    def _sign(self, name: str, payload: str, timestamp: int) -> bytes:
        data = f"{name}|{payload}|{timestamp}".encode()
        return hmac.new(self._key, data, hashlib.sha256).digest()

    def encode(self, name: str, values: dict[str, str], timestamp: int | None = None) -> str:
        """Encode and sign values for the cookie ``name``."""
        timestamp = int(time.time()) if timestamp is None else timestamp
        body = json.dumps(values, separators=(",", ":"), sort_keys=True).encode("utf-8")
        payload = base64.urlsafe_b64encode(body).decode("ascii")
        signature = base64.urlsafe_b64encode(self._sign(name, payload, timestamp)).decode("ascii")
        return f"{payload}|{timestamp}|{signature}"

    def decode(self, name: str, cookie: str, max_age: int) -> dict[str, str] | None:
        """Verify and decode a cookie value. Returns None if it is not acceptable."""
        parts = cookie.split("|")
        if len(parts) != 3:
            logger.warning("Rejected session cookie", cookie=name, reason="malformed")
            return None
        payload, timestamp_str, signature_b64 = parts

        try:
            timestamp = int(timestamp_str)
            signature = base64.urlsafe_b64decode(signature_b64.encode("ascii"))
        except (ValueError, binascii.Error):
            logger.warning("Rejected session cookie", cookie=name, reason="malformed")
            return None

        if not hmac.compare_digest(self._sign(name, payload, timestamp), signature):
            logger.warning("Rejected session cookie", cookie=name, reason="signature mismatch")
            return None

        age = int(time.time()) - timestamp
        if age > max_age:
            logger.debug("Expired session cookie", cookie=name, age=age)
            return None

        try:
            values = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
        except (ValueError, binascii.Error):
            logger.warning("Rejected session cookie", cookie=name, reason="bad payload")
            return None
        if not isinstance(values, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in values.items()
        ):
            logger.warning("Rejected session cookie", cookie=name, reason="bad payload")
            return None
        return values

    async def load(self, request: web.Request, name: str) -> SessionRecord:
        cookie = request.cookies.get(name)
        if not cookie:
            return SessionRecord(name=name)
        values = self.decode(name, cookie, self.settings.session_max_age)
        if values is None:
            return SessionRecord(name=name)
        return SessionRecord(name=name, values=values, is_new=False)

    async def save(
        self,
        request: web.Request,
        response: web.StreamResponse,
        record: SessionRecord,
    ) -> None:
        if not record.values:
            self._delete_cookie(response, record.name)
            return

        encoded = self.encode(record.name, record.values)
        if len(encoded) > MAX_COOKIE_SIZE:
            raise SessionStoreError(
                f"session cookie {record.name!r} is {len(encoded)} bytes, "
                f"above the {MAX_COOKIE_SIZE} byte limit"
            )
        max_age = self._max_age(record)
        response.set_cookie(record.name, encoded, max_age=max_age, **self.settings.cookie_kwargs())
        record.is_new = False
