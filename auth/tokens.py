"""
Signed tokens — bearer session tokens and OAuth ``state`` values.

Both are base64-encoded JSON payloads (``user_id`` + expiry) signed with
HMAC-SHA256.  They differ only in secret and lifetime:

* session tokens: ``config.jwt_secret`` / ``config.jwt_expiry_seconds``
* OAuth state:    ``config.oauth_state_secret`` / ``config.oauth_state_ttl_seconds``
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Optional

from config.settings import config


class InvalidTokenError(ValueError):
    """Token is malformed, forged or expired."""


def _sign(user_id: str, secret: str, ttl_seconds: int) -> str:
    payload = {"user_id": user_id, "exp": int(time.time()) + ttl_seconds}
    raw = json.dumps(payload, separators=(",", ":")).encode()
    sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    return urlsafe_b64encode(raw).decode() + "." + sig


def _verify(token: str, secret: str) -> str:
    parts = token.split(".", 1)
    if len(parts) != 2:
        raise InvalidTokenError("bad format")
    try:
        raw = urlsafe_b64decode(parts[0])
    except ValueError as exc:
        raise InvalidTokenError("bad encoding") from exc
    expected_sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(parts[1], expected_sig):
        raise InvalidTokenError("bad signature")
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise InvalidTokenError("bad payload") from exc
    if payload.get("exp", 0) < time.time():
        raise InvalidTokenError("expired")
    user_id = payload.get("user_id")
    if not user_id:
        raise InvalidTokenError("missing user_id")
    return str(user_id)


def create_token(user_id: str, *, ttl_seconds: Optional[int] = None) -> str:
    """Create a bearer token for ``user_id``."""
    return _sign(user_id, config.jwt_secret, ttl_seconds or config.jwt_expiry_seconds)


def verify_token(token: str) -> str:
    """Return the ``user_id`` inside a bearer token.  Raises ``InvalidTokenError``."""
    return _verify(token, config.jwt_secret)


def create_state(user_id: str) -> str:
    """Create the OAuth ``state`` value that carries ``user_id`` through the redirect."""
    return _sign(user_id, config.oauth_state_secret, config.oauth_state_ttl_seconds)


def verify_state(state: str) -> str:
    """Return the ``user_id`` inside an OAuth state.  Raises ``InvalidTokenError``."""
    return _verify(state, config.oauth_state_secret)
