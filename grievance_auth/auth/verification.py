"""
Request Verification
====================

FastAPI dependencies that authenticate incoming requests.

Two independent paths exist:

Provider token (get_current_principal):
    1. Require ``Authorization: Bearer <token>``      -> TOKEN_MISSING
    2. Validate the token with the identity provider  -> INVALID_TOKEN
    3. Resolve the local user by the verified email,
       petitioner, then official, then admin          -> USER_NOT_FOUND
    4. Attach the normalized Principal to request.state

Local token (get_local_principal):
    Verify the locally minted token's signature and expiry without a
    provider round trip, then load the user from the directory implied by
    the token's role. Used by /api/auth/verify and by endpoints reached
    through the client's authenticated request pipeline.
"""

import logging
from typing import Optional

from fastapi import Header, Request

from ..errors import AuthErrorCode, AuthRejected, ProviderAuthError
from ..models import Principal
from ..provider import IdentityProvider
from .directory import CompositeUserDirectory
from .session import extract_bearer_token, resolve_local_principal, verify_local_token

logger = logging.getLogger(__name__)


async def verify_provider_token(
    token: str,
    provider: IdentityProvider,
    directory: CompositeUserDirectory,
) -> Principal:
    """
    Authenticate a provider access token and resolve its Principal.

    Raises:
        AuthRejected: INVALID_TOKEN or USER_NOT_FOUND
    """
    try:
        provider_user = await provider.get_user(token)
    except ProviderAuthError as e:
        logger.error(f"Provider token verification failed: {e.message}")
        raise AuthRejected(AuthErrorCode.INVALID_TOKEN, "Invalid or expired token")

    if provider_user is None or not provider_user.email:
        logger.warning("Provider did not accept the token")
        raise AuthRejected(AuthErrorCode.INVALID_TOKEN, "Invalid or expired token")

    principal = await directory.find_by_email(provider_user.email)
    if principal is None:
        logger.warning(f"User not found in any directory: {provider_user.email}")
        raise AuthRejected(AuthErrorCode.USER_NOT_FOUND, "User not found")

    principal = principal.model_copy(update={"supabase_id": provider_user.id})
    logger.info(
        f"Authentication successful for user: {principal.email}",
        extra={"user_id": principal.id, "role": principal.role.value},
    )
    return principal


# =============================================================================
# FastAPI Dependencies
# =============================================================================

def get_provider(request: Request) -> IdentityProvider:
    return request.app.state.provider


def get_directory(request: Request) -> CompositeUserDirectory:
    return request.app.state.directory


async def get_current_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Principal:
    """
    Dependency for endpoints called with the identity provider token.

    Usage in routes:
        @router.get("/protected")
        async def protected(principal: Principal = Depends(get_current_principal)):
            return principal.to_wire()
    """
    token = extract_bearer_token(authorization)
    principal = await verify_provider_token(
        token,
        provider=get_provider(request),
        directory=get_directory(request),
    )
    request.state.principal = principal
    return principal


async def get_local_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Principal:
    """Dependency for endpoints called with the local token."""
    token = extract_bearer_token(authorization)
    claims = verify_local_token(token, settings=request.app.state.settings)
    principal = await resolve_local_principal(claims, get_directory(request))
    request.state.principal = principal
    request.state.token_claims = claims
    return principal


__all__ = [
    "verify_provider_token",
    "get_current_principal",
    "get_local_principal",
    "get_provider",
    "get_directory",
]
