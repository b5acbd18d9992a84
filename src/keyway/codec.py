"""Session serialization.

Sessions are marshalled to JSON by their provider and the result is packed
(optionally gzipped) into the session store slot. The orchestrator never
looks inside a session; it only calls marshal/unmarshal through the
Provider and Session contracts.

Slot value format:
    gz:<base64url(gzip(json))>   when compression is enabled
    <json>                       otherwise
"""

from __future__ import annotations

import base64
import gzip
import zlib
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_pascal

from keyway.errors import AuthURLNotSetError, KeywayError, SessionDecodeError
from keyway.provider import Provider, Session

GZIP_PREFIX = "gz:"


class JSONSession(BaseModel, Session):
    """Session base class whose marshal format is its JSON field set.

    Subclasses declare their fields (auth_url, tokens, provider-specific
    extras) and implement ``authorize``. Round-trips through
    ``marshal``/``unmarshal`` are exact, including zero values.

    The JSON keys are the exported field names (``AuthURL``,
    ``AccessToken``, ``Name``...), so a payload such as
    ``{"Name":"Homer Simpson","Email":"homer@example.com"}`` decodes
    into a faux session. Snake-case keys are accepted on input too.
    """

    model_config = ConfigDict(extra="ignore", alias_generator=to_pascal, populate_by_name=True)

    auth_url: str = Field(default="", alias="AuthURL")

    def get_auth_url(self) -> str:
        if not self.auth_url:
            raise AuthURLNotSetError()
        return self.auth_url

    def marshal(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def unmarshal(cls, data: str) -> Self:
        """Rebuild a session from ``marshal`` output.

        Raises:
            SessionDecodeError: If the data is not valid JSON for this session.
        """
        try:
            return cls.model_validate_json(data)
        except ValidationError as e:
            raise SessionDecodeError(
                f"invalid {cls.__name__} data: {e.error_count()} validation error(s)"
            ) from e

    def __str__(self) -> str:
        return self.marshal()


def pack(data: str, compress: bool = True) -> str:
    """Prepare marshalled session data for the store slot."""
    if not compress:
        return data
    raw = gzip.compress(data.encode("utf-8"))
    return GZIP_PREFIX + base64.urlsafe_b64encode(raw).decode("ascii")


def unpack(data: str) -> str:
    """Reverse ``pack``. Uncompressed values pass through unchanged.

    Raises:
        SessionDecodeError: If a compressed value is corrupt.
    """
    if not data.startswith(GZIP_PREFIX):
        return data
    try:
        raw = base64.urlsafe_b64decode(data[len(GZIP_PREFIX):].encode("ascii"))
        return gzip.decompress(raw).decode("utf-8")
    except (ValueError, OSError, EOFError, zlib.error) as e:
        raise SessionDecodeError(f"invalid packed session: {e}") from e


def encode_session(session: Session, compress: bool = True) -> str:
    return pack(session.marshal(), compress=compress)


def decode_session(provider: Provider, data: str) -> Session:
    """Unpack a slot value and let the provider rebuild its session.

    Raises:
        SessionDecodeError: If the data cannot be decoded by this provider.
    """
    try:
        return provider.unmarshal_session(unpack(data))
    except KeywayError:
        raise
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        raise SessionDecodeError(f"invalid session data for {provider.name}: {e}") from e
