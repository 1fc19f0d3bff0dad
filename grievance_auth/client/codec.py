"""
Token Codec
===========

Client-side reading of the local token. The payload is decoded for expiry
display and routing only; the backend checks the signature.
"""

import base64
import binascii
import json
import time
from typing import Optional

from pydantic import ValidationError

from ..errors import MalformedToken, MissingClaims
from ..models import LocalToken

EXPIRY_WARNING_MS = 5 * 60 * 1000


def decode(token: str) -> LocalToken:
    """
    Decode the payload segment of a local token without verifying it.

    Raises:
        MalformedToken: Not three segments, bad base64url or non-object JSON
        MissingClaims: ``id`` or ``role`` absent or empty
    """
    if not isinstance(token, str):
        raise MalformedToken()

    parts = token.split(".")
    if len(parts) != 3:
        raise MalformedToken()

    segment = parts[1].replace("-", "+").replace("_", "/")
    segment += "=" * (-len(segment) % 4)

    try:
        payload = json.loads(base64.b64decode(segment, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise MalformedToken()

    if not isinstance(payload, dict):
        raise MalformedToken()

    if not payload.get("id") or not payload.get("role"):
        raise MissingClaims()

    try:
        return LocalToken.model_validate(payload)
    except ValidationError:
        raise MalformedToken()


def _now_ms(now: Optional[float]) -> float:
    return (time.time() if now is None else now) * 1000


def is_expiring_soon(
    token: LocalToken,
    threshold_ms: int = EXPIRY_WARNING_MS,
    now: Optional[float] = None,
) -> bool:
    """
    True when less than ``threshold_ms`` remains before expiry.

    Args:
        token: Decoded token
        threshold_ms: Warning window in milliseconds
        now: Current time as epoch seconds (defaults to the wall clock)
    """
    if token.expiry is None:
        return False
    return token.expiry * 1000 - _now_ms(now) < threshold_ms


def is_expired(token: LocalToken, now: Optional[float] = None) -> bool:
    """True once the expiry instant has been reached."""
    if token.expiry is None:
        return False
    return token.expiry * 1000 <= _now_ms(now)


__all__ = [
    "EXPIRY_WARNING_MS",
    "decode",
    "is_expiring_soon",
    "is_expired",
]
