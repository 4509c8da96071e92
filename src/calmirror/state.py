"""Signed OAuth ``state`` values binding a callback to its user and purpose."""

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from typing import Callable, Optional

from pydantic import ValidationError

from .models import CALENDAR_PURPOSE, StateToken


class InvalidStateError(ValueError):
    """State value is malformed, forged or expired."""


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


class StateTokenCodec:
    """Encodes ``{user_id, purpose}`` as ``<payload>.<hmac>``.

    The payload is URL-safe base64 JSON; the signature is HMAC-SHA256 over the
    encoded payload. Decoding checks the signature before looking at the
    payload and rejects values older than ``ttl_seconds``. Purpose checking is
    left to the caller so cross-purpose replay can be reported separately.
    """

    def __init__(self, secret: str, ttl_seconds: int = 600,
                 clock: Optional[Callable[[], float]] = None):
        if not secret:
            raise ValueError("State secret must not be empty")
        self._secret = secret.encode()
        self.ttl_seconds = ttl_seconds
        self.clock = clock or time.time

    def _sign(self, payload: str) -> str:
        return hmac.new(self._secret, payload.encode(), hashlib.sha256).hexdigest()

    def encode(self, user_id: str, purpose: str = CALENDAR_PURPOSE) -> str:
        token = StateToken(
            user_id=user_id,
            purpose=purpose,
            issued_at=int(self.clock()),
            nonce=secrets.token_urlsafe(8),
        )
        payload = _b64encode(json.dumps(token.model_dump(), separators=(",", ":")).encode())
        return f"{payload}.{self._sign(payload)}"

    def decode(self, state: str) -> StateToken:
        payload, sep, signature = state.partition(".")
        if not sep or not payload or not signature:
            raise InvalidStateError("State value is malformed")
        if not hmac.compare_digest(signature, self._sign(payload)):
            raise InvalidStateError("State signature mismatch")

        try:
            token = StateToken(**json.loads(_b64decode(payload)))
        except (binascii.Error, ValueError, TypeError, ValidationError) as e:
            raise InvalidStateError(f"State payload unreadable: {type(e).__name__}")

        if self.clock() - token.issued_at > self.ttl_seconds:
            raise InvalidStateError("State value expired")
        return token
