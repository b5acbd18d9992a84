"""CSRF state tokens.

A fresh state is generated for every begin, embedded by the provider in the
authorize URL, round-tripped by the provider, and checked on the callback
against the state found in the stored session's authorize URL.
"""

from __future__ import annotations

import secrets
from urllib.parse import parse_qs, urlparse

from aiohttp import web

from keyway.errors import AuthURLNotSetError, StateMismatchError
from keyway.provider import Session

DEFAULT_STATE_BYTES = 64

# Form-post callback params are parsed once and kept on the request.
FORM_PARAMS_KEY = web.RequestKey("keyway.form_params", dict[str, str])


def generate_state(nbytes: int = DEFAULT_STATE_BYTES) -> str:
    """Return a random, URL-safe state token."""
    return secrets.token_urlsafe(nbytes)


def extract_state(request: web.Request) -> str:
    """Return the ``state`` value the provider sent back, unchanged.

    Form-post params win over the query string once the callback body
    has been parsed.
    """
    form = request.get(FORM_PARAMS_KEY)
    if form and form.get("state"):
        return form["state"]
    return request.query.get("state", "")


def state_from_auth_url(url: str) -> str:
    values = parse_qs(urlparse(url).query).get("state")
    return values[0] if values else ""


def validate_state(session: Session, received: str) -> None:
    """Check a callback state against the one sent to the provider.

    Sessions without an authorize URL, or whose URL carries no state
    (OAuth1 providers without state support), are not checked.

    Raises:
        StateMismatchError: If the states differ.
    """
    try:
        expected = state_from_auth_url(session.get_auth_url())
    except AuthURLNotSetError:
        return
    if not expected:
        return
    if not secrets.compare_digest(expected.encode(), received.encode()):
        raise StateMismatchError()
