"""
Error Taxonomy
==============

Closed error kinds for both halves of the authentication core.

Server side:
    AuthErrorCode values travel on the wire as the ``code`` field of a
    401 body (``{"message": ..., "code": ...}``). AuthRejected is the
    exception the verification layer raises to produce one.

Client side:
    SessionError and its subclasses are raised by the token codec, the
    session manager and the authenticated request pipeline. Each carries
    a SessionErrorKind so callers can branch without string matching.
"""

from enum import Enum
from typing import Optional

from fastapi import HTTPException, status


SESSION_EXPIRED_MESSAGE = "Session expired. Please log in again."


# =============================================================================
# Server-side codes
# =============================================================================

class AuthErrorCode(str, Enum):
    """Wire codes returned by the backend on authentication failure."""

    TOKEN_MISSING = "TOKEN_MISSING"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    INVALID_ROLE = "INVALID_ROLE"
    REFRESH_FAILED = "REFRESH_FAILED"


class AuthRejected(HTTPException):
    """
    Request rejected by the verification layer.

    Subclasses HTTPException so FastAPI still answers 401 if the dedicated
    handler is not installed; with the handler the body becomes
    ``{"message": detail, "code": code}``.
    """

    def __init__(self, code: AuthErrorCode, message: str):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=message,
            headers={"WWW-Authenticate": "Bearer"},
        )
        self.code = code

    @property
    def message(self) -> str:
        return self.detail

    def to_dict(self) -> dict:
        return {"message": self.detail, "code": self.code.value}


class ProviderAuthError(Exception):
    """Identity provider call failed or was refused."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


# =============================================================================
# Client-side kinds
# =============================================================================

class SessionErrorKind(str, Enum):
    MALFORMED_TOKEN = "MALFORMED_TOKEN"
    MISSING_CLAIMS = "MISSING_CLAIMS"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    LOGIN_FAILED = "LOGIN_FAILED"
    REQUEST_FAILED = "REQUEST_FAILED"
    REGISTRATION_FAILED = "REGISTRATION_FAILED"


class SessionError(Exception):
    """Base class for client session errors."""

    kind: SessionErrorKind = SessionErrorKind.REQUEST_FAILED
    default_message = "An error occurred"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return self.kind.value


class MalformedToken(SessionError):
    kind = SessionErrorKind.MALFORMED_TOKEN
    default_message = "Invalid token format"


class MissingClaims(SessionError):
    kind = SessionErrorKind.MISSING_CLAIMS
    default_message = "Invalid token payload"


class Unauthenticated(SessionError):
    kind = SessionErrorKind.UNAUTHENTICATED
    default_message = "No authentication token found"


class SessionExpired(SessionError):
    kind = SessionErrorKind.SESSION_EXPIRED
    default_message = SESSION_EXPIRED_MESSAGE


class LoginFailed(SessionError):
    kind = SessionErrorKind.LOGIN_FAILED
    default_message = "Login failed"

    @property
    def reason(self) -> str:
        return self.message


class RegistrationFailed(SessionError):
    kind = SessionErrorKind.REGISTRATION_FAILED
    default_message = "Registration failed"


class RequestFailed(SessionError):
    kind = SessionErrorKind.REQUEST_FAILED

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


__all__ = [
    "SESSION_EXPIRED_MESSAGE",
    "AuthErrorCode",
    "AuthRejected",
    "ProviderAuthError",
    "SessionErrorKind",
    "SessionError",
    "MalformedToken",
    "MissingClaims",
    "Unauthenticated",
    "SessionExpired",
    "LoginFailed",
    "RegistrationFailed",
    "RequestFailed",
]
