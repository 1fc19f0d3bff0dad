"""
Authentication routes for login, registration and token management.

Login is role specific: each of the three endpoints checks the credentials
with the identity provider, then looks the user up in that role's directory
and mints a local token carrying the role and jurisdiction claims. The
response hands the browser both credentials: the local token and the
provider's access/refresh tokens.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse

from ..errors import AuthErrorCode, AuthRejected, ProviderAuthError
from ..models import (
    JURISDICTION_LEVELS,
    LoginRequest,
    LoginResponse,
    Principal,
    RefreshResponse,
    RegisterRequest,
    Role,
    UserRecord,
)
from .session import (
    LocalTokenError,
    create_local_token,
    extract_bearer_token,
    resolve_local_principal,
    verify_local_token,
)
from .verification import (
    get_current_principal,
    get_directory,
    get_local_principal,
    get_provider,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/api/auth",
    tags=["authentication"],
)

users_router = APIRouter(
    prefix="/api/users",
    tags=["users"],
)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _persist_directory(directory) -> None:
    """Write a registration back to the seed file; the in-memory insert stands either way."""
    try:
        directory.save()
    except OSError as e:
        logger.error(f"Could not write user directory to its seed file: {e}")


# =============================================================================
# Login Endpoints
# =============================================================================

async def _login(role: Role, body: LoginRequest, request: Request) -> JSONResponse:
    """
    Shared login flow for the three role endpoints.

    1. Validate that email and password are present
    2. Check the credentials with the identity provider
    3. Find the user in the directory of the requested role
    4. Mint the local token and return both credentials
    """
    logger.info(f"{role.display} login attempt", extra={"email": body.email})

    if not body.email or not body.password:
        logger.info("Login rejected: missing required fields")
        return _error(status.HTTP_400_BAD_REQUEST, "Email and password are required")

    try:
        session = await get_provider(request).sign_in(body.email, body.password)
    except ProviderAuthError as e:
        logger.info(f"Provider authentication failed: {e.message}")
        return _error(status.HTTP_401_UNAUTHORIZED, "Invalid credentials")

    if not session.has_tokens:
        return _error(status.HTTP_401_UNAUTHORIZED, "Invalid credentials")

    role_directory = get_directory(request).for_role(role)
    principal = await role_directory.find_by_email(body.email) if role_directory else None
    if principal is None:
        logger.info(f"{role.display} not found in directory: {body.email}")
        return _error(status.HTTP_401_UNAUTHORIZED, "User not found")

    principal = principal.model_copy(update={"supabase_id": session.provider_user_id})

    try:
        token = create_local_token(principal, settings=request.app.state.settings)
    except LocalTokenError:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

    logger.info(f"{role.display} logged in successfully: {principal.email}")

    response = LoginResponse(
        token=token,
        refresh_token=session.refresh_token,
        access_token=session.access_token,
        user=principal.to_wire(),
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content=response.model_dump(by_alias=True))


@auth_router.post("/petitioner/login")
async def login_petitioner(body: LoginRequest, request: Request):
    return await _login(Role.PETITIONER, body, request)


@auth_router.post("/official/login")
async def login_official(body: LoginRequest, request: Request):
    return await _login(Role.OFFICIAL, body, request)


@auth_router.post("/admin/login")
async def login_admin(body: LoginRequest, request: Request):
    return await _login(Role.ADMIN, body, request)


# =============================================================================
# Registration
# =============================================================================

@auth_router.post("/petitioner/register", status_code=status.HTTP_201_CREATED)
async def register_petitioner(body: RegisterRequest, request: Request):
    """
    Petitioner self-registration.

    Creates the provider account first, then the directory record linked
    to it by provider id. The email must not exist in any directory, since
    provider-token verification resolves users across all of them.
    """
    missing = {
        field: f"{field.capitalize()} is required"
        for field in ("name", "email", "password")
        if not getattr(body, field)
    }
    if missing:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "message": "Please provide all required fields",
                "errors": missing,
            },
        )

    directory = get_directory(request)
    if await directory.find_by_email(body.email) is not None:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "message": "User already exists with this email"},
        )

    try:
        session = await get_provider(request).sign_up(
            body.email,
            body.password,
            metadata={"name": body.name, "role": Role.PETITIONER.value},
        )
    except ProviderAuthError as e:
        logger.error(f"Provider registration error: {e.message}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "message": e.message or "Registration with authentication service failed",
            },
        )

    record = UserRecord(
        email=body.email,
        name=body.name,
        phone=body.phone,
        address=body.address,
        supabase_id=session.provider_user_id,
    )
    principal = directory.for_role(Role.PETITIONER).add(record)
    _persist_directory(directory)

    # Both credentials or neither: no local token while the provider
    # account awaits email confirmation
    token = None
    if session.has_tokens:
        token = create_local_token(principal, settings=request.app.state.settings)

    logger.info(
        f"Petitioner registered: {principal.email}",
        extra={"user_id": principal.id, "confirmation_pending": token is None},
    )

    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={
            "success": True,
            "message": "Registration successful",
            "data": {
                "token": token,
                "refreshToken": session.refresh_token,
                "accessToken": session.access_token,
                "user": principal.to_wire(),
            },
        },
    )


# =============================================================================
# Local Token Endpoints
# =============================================================================

@auth_router.post("/refresh", response_model=RefreshResponse)
async def refresh_token(
    request: Request,
    authorization: Optional[str] = Header(None),
):
    """
    Mint a new local token from a still-valid one.

    Any signature/expiry failure is reported as REFRESH_FAILED; a missing
    header, unknown role or unknown user keep their own codes.
    """
    token = extract_bearer_token(authorization)

    try:
        claims = verify_local_token(token, settings=request.app.state.settings)
    except AuthRejected as e:
        logger.info(f"Token refresh rejected: {e.code.value}")
        raise AuthRejected(AuthErrorCode.REFRESH_FAILED, "Failed to refresh token")

    principal = await resolve_local_principal(claims, get_directory(request))
    new_token = create_local_token(principal, settings=request.app.state.settings)

    user = {
        "id": principal.id,
        "name": principal.display_name,
        "email": principal.email,
        "role": claims["role"],
    }
    for field in ("department",) + JURISDICTION_LEVELS:
        if claims.get(field):
            user[field] = claims[field]

    return RefreshResponse(token=new_token, user=user)


@auth_router.get("/verify")
async def verify_token(principal: Principal = Depends(get_local_principal)):
    """Validate a local token and echo the normalized principal."""
    return {
        "success": True,
        "user": {
            "id": principal.id,
            "email": principal.email,
            "role": principal.role.value,
            "name": principal.display_name,
        },
    }


# =============================================================================
# Provider Token Endpoints
# =============================================================================

@auth_router.get("/me")
async def get_me(principal: Principal = Depends(get_current_principal)):
    """Current user, without contact details."""
    return principal.model_dump(
        by_alias=True,
        exclude_none=True,
        mode="json",
        exclude={"phone"},
    )


@users_router.get("/profile")
async def get_profile(principal: Principal = Depends(get_current_principal)):
    """Full profile, used by the client to bootstrap a missing cached user."""
    return principal.to_wire()
