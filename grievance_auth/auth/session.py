"""
Local Token Module
==================

Handles creation and verification of the locally issued session token that
accompanies the identity provider session. Supports HS256 (default) and
RS256 algorithms.

The token carries the application claims the provider knows nothing about:
the local user id, the role and, for officials, the jurisdiction. It is
valid for exactly 24 hours from the moment it is minted and is never
re-issued with a longer window; /api/auth/refresh mints a fresh one.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from ..config import Settings, get_settings
from ..errors import AuthErrorCode, AuthRejected
from ..models import JURISDICTION_LEVELS, Principal, Role
from .directory import CompositeUserDirectory

logger = logging.getLogger(__name__)


LOCAL_TOKEN_LIFETIME = timedelta(hours=24)


# =============================================================================
# Exceptions
# =============================================================================

class LocalTokenError(Exception):
    """Raised when a local token cannot be minted."""
    pass


# =============================================================================
# Token Creation
# =============================================================================

def jurisdiction_claims(principal: Principal) -> Dict[str, str]:
    """
    Jurisdiction claims for a principal.

    Only officials carry them: the department plus a single jurisdiction
    level. When a record holds several levels the most specific one
    (taluk, then district, then division) is used.
    """
    if principal.role is not Role.OFFICIAL:
        return {}

    claims: Dict[str, str] = {}
    if principal.department:
        claims["department"] = principal.department

    levels = [level for level in JURISDICTION_LEVELS if getattr(principal, level)]
    if len(levels) > 1:
        logger.warning(
            f"Official {principal.id} has several jurisdiction levels; using {levels[0]}",
            extra={"levels": levels},
        )
    if levels:
        claims[levels[0]] = getattr(principal, levels[0])

    return claims


def create_local_token(
    principal: Principal,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Mint a local token for a principal.

    Args:
        principal: The authenticated user
        settings: Settings override (defaults to the process settings)
        now: Mint time override, for tests

    Returns:
        Encoded JWT string

    Raises:
        LocalTokenError: If the signing key is missing or encoding fails
    """
    settings = settings or get_settings()
    issued_at = now or datetime.now(timezone.utc)

    payload: Dict[str, Any] = {
        "id": principal.id,
        "role": principal.role.value,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + LOCAL_TOKEN_LIFETIME).timestamp()),
        "iss": settings.LOCAL_TOKEN_ISSUER,
    }
    payload.update(jurisdiction_claims(principal))

    try:
        token = jwt.encode(
            payload,
            _get_signing_key(settings),
            algorithm=_get_algorithm(settings),
        )
    except LocalTokenError:
        raise
    except Exception as e:
        logger.error(f"Failed to create local token: {e}", exc_info=True)
        raise LocalTokenError(f"Failed to create local token: {str(e)}") from e

    logger.debug(
        f"Created local token for user {principal.id}",
        extra={"user_id": principal.id, "role": principal.role.value},
    )
    return token


# =============================================================================
# Token Verification
# =============================================================================

def verify_local_token(token: str, settings: Optional[Settings] = None) -> Dict[str, Any]:
    """
    Verify signature, expiry and issuer of a local token.

    Returns:
        Decoded claims with ``id`` as string and ``role`` lowercased

    Raises:
        AuthRejected: TOKEN_EXPIRED for an expired signature,
                      INVALID_TOKEN for any other failure
    """
    settings = settings or get_settings()

    if not token:
        raise AuthRejected(AuthErrorCode.TOKEN_MISSING, "No authentication token provided")

    try:
        decoded = jwt.decode(
            token,
            _get_verification_key(settings),
            algorithms=[_get_algorithm(settings)],
            issuer=settings.LOCAL_TOKEN_ISSUER,
            options={"require": ["exp", "id", "role"]},
        )
    except ExpiredSignatureError:
        logger.warning("Local token expired")
        raise AuthRejected(AuthErrorCode.TOKEN_EXPIRED, "Token has expired")
    except InvalidTokenError as e:
        logger.warning(f"Invalid local token: {e}")
        raise AuthRejected(AuthErrorCode.INVALID_TOKEN, "Invalid token")
    except LocalTokenError as e:
        logger.error(f"Local token verification misconfigured: {e}")
        raise AuthRejected(AuthErrorCode.INVALID_TOKEN, "Invalid token")

    decoded["id"] = str(decoded["id"])
    decoded["role"] = str(decoded["role"]).lower()
    return decoded


async def resolve_local_principal(
    claims: Dict[str, Any],
    directory: CompositeUserDirectory,
) -> Principal:
    """
    Look up the user named by verified claims in the directory of its role.

    Raises:
        AuthRejected: INVALID_ROLE if the role has no directory,
                      USER_NOT_FOUND if the id is unknown
    """
    role_directory = directory.for_role(claims.get("role", ""))
    if role_directory is None:
        raise AuthRejected(AuthErrorCode.INVALID_ROLE, "Invalid user role")

    principal = await role_directory.find_by_id(claims["id"])
    if principal is None:
        raise AuthRejected(AuthErrorCode.USER_NOT_FOUND, "User not found")

    return principal


# =============================================================================
# Helper Functions
# =============================================================================

def extract_bearer_token(authorization: Optional[str]) -> str:
    """
    Extract Bearer token from Authorization header.

    Raises:
        AuthRejected: TOKEN_MISSING if the header is absent or not Bearer
    """
    if not authorization:
        raise AuthRejected(AuthErrorCode.TOKEN_MISSING, "No authentication token provided")

    parts = authorization.split()

    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthRejected(AuthErrorCode.TOKEN_MISSING, "No authentication token provided")

    return parts[1]


def _get_algorithm(settings: Settings) -> str:
    """Determine which JWT algorithm to use based on configuration."""
    return "RS256" if settings.USE_RS256_JWT else settings.LOCAL_TOKEN_ALGORITHM


def _get_signing_key(settings: Settings) -> str:
    """Get the appropriate signing key based on algorithm."""
    if settings.USE_RS256_JWT:
        if not settings.JWT_PRIVATE_KEY:
            raise LocalTokenError("RS256 enabled but JWT_PRIVATE_KEY not configured")
        return settings.JWT_PRIVATE_KEY
    return settings.LOCAL_TOKEN_SECRET


def _get_verification_key(settings: Settings) -> str:
    """Get the appropriate verification key based on algorithm."""
    if settings.USE_RS256_JWT:
        if not settings.JWT_PUBLIC_KEY:
            raise LocalTokenError("RS256 enabled but JWT_PUBLIC_KEY not configured")
        return settings.JWT_PUBLIC_KEY
    return settings.LOCAL_TOKEN_SECRET


__all__ = [
    "LOCAL_TOKEN_LIFETIME",
    "LocalTokenError",
    "jurisdiction_claims",
    "create_local_token",
    "verify_local_token",
    "resolve_local_principal",
    "extract_bearer_token",
]
