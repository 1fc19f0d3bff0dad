"""
Data Models Module

This module defines Pydantic models shared by the backend and the client
session library.

Models are organized by functional area:
- Identity models (roles, principals, stored user records)
- Token models (local token claims, identity provider sessions)
- Client session models (session store snapshot)
- Wire models (login/registration requests, token responses, errors)

Python attributes are snake_case; wire aliases keep the camelCase names the
browser client and the backend exchange (firstName, refreshToken, ...).
"""

import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import jwt
from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# Identity Models
# ============================================================================

class Role(str, Enum):
    """Application roles. Stored lowercase; title-cased only for display."""

    PETITIONER = "petitioner"
    OFFICIAL = "official"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Any) -> "Role":
        """
        Parse a role name case-insensitively.

        Raises:
            ValueError: If the value is blank or not a known role
        """
        if isinstance(value, Role):
            return value
        normalized = str(value or "").strip().lower()
        if not normalized:
            raise ValueError("Role must not be blank")
        return cls(normalized)

    @property
    def display(self) -> str:
        return display_role(self.value)


def display_role(role: str) -> str:
    """Re-case a role for display: first letter upper, rest lower."""
    if not role:
        return role
    return role[0].upper() + role[1:].lower()


JURISDICTION_LEVELS = ("taluk", "district", "division")


class Principal(BaseModel):
    """Authenticated identity and its authorization-relevant attributes."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Stable local user identifier")
    role: Role = Field(..., description="Application role")
    email: str = Field(..., description="User email address")
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    name: Optional[str] = Field(None, description="Full name for users registered with a single name field")
    phone: Optional[str] = None
    supabase_id: Optional[str] = Field(None, alias="supabaseId", description="Identity provider user id")
    department: Optional[str] = None
    taluk: Optional[str] = None
    district: Optional[str] = None
    division: Optional[str] = None

    @field_validator("role", mode="before")
    @classmethod
    def normalize_role(cls, v: Any) -> Role:
        return Role.parse(v)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)

    @property
    def display_name(self) -> str:
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}".strip()
        if self.name:
            return self.name
        return self.email.split("@")[0]

    def to_wire(self, display: bool = False) -> Dict[str, Any]:
        """
        Serialize with wire aliases, dropping unset fields.

        Args:
            display: Title-case the role as the browser client caches it
        """
        data = self.model_dump(by_alias=True, exclude_none=True, mode="json")
        if display:
            data["role"] = self.role.display
        return data


class UserRecord(BaseModel):
    """A user row held by one of the role-specific user directories."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    email: str
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    supabase_id: Optional[str] = Field(None, alias="supabaseId")
    department: Optional[str] = None
    taluk: Optional[str] = None
    district: Optional[str] = None
    division: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)

    def to_principal(self, role: Role) -> Principal:
        data = self.model_dump(exclude={"address"})
        data["role"] = role
        return Principal.model_validate(data)


# ============================================================================
# Token Models
# ============================================================================

class LocalToken(BaseModel):
    """
    Claims of the locally minted session token.

    Decoded client-side for expiry display only; the signature is checked
    by the backend.
    """

    model_config = ConfigDict(populate_by_name=True)

    subject_id: str = Field(..., alias="id")
    role: str
    expiry: Optional[float] = Field(None, alias="exp", description="Expiry as epoch seconds")
    department: Optional[str] = None
    taluk: Optional[str] = None
    district: Optional[str] = None
    division: Optional[str] = None

    @field_validator("role", mode="before")
    @classmethod
    def lowercase_role(cls, v: Any) -> str:
        return str(v).lower()

    @field_validator("subject_id", mode="before")
    @classmethod
    def coerce_subject(cls, v: Any) -> str:
        return str(v)


class ProviderUser(BaseModel):
    """User object returned by the identity provider."""

    model_config = ConfigDict(extra="ignore")

    id: str
    email: Optional[str] = None
    user_metadata: Dict[str, Any] = Field(default_factory=dict)


class ProviderSession(BaseModel):
    """Identity provider session: access token, refresh token and user."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = Field(None, description="Access token expiry as epoch seconds")
    user: Optional[ProviderUser] = None

    @property
    def provider_user_id(self) -> Optional[str]:
        return self.user.id if self.user else None

    @property
    def has_tokens(self) -> bool:
        return bool(self.access_token)

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        current = time.time() if now is None else now
        return self.expires_at <= current

    @classmethod
    def from_tokens(
        cls,
        access_token: str,
        refresh_token: Optional[str] = None,
    ) -> "ProviderSession":
        """
        Rebuild a session from persisted tokens.

        Expiry and user id are read from the unverified access token when it
        is a JWT; otherwise they stay unset.
        """
        expires_at = None
        user = None
        try:
            claims = jwt.decode(access_token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            claims = {}

        if isinstance(claims.get("exp"), (int, float)):
            expires_at = float(claims["exp"])
        if claims.get("sub"):
            user = ProviderUser(id=str(claims["sub"]), email=claims.get("email"))

        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            user=user,
        )


# ============================================================================
# Client Session Models
# ============================================================================

class SessionSnapshot(BaseModel):
    """
    What the client persists across reloads.

    ``user`` is the cached profile JSON with its role display-cased.
    """

    token: str = Field(..., description="Local token")
    refresh_token: Optional[str] = Field(None, description="Identity provider refresh token")
    user: Dict[str, Any] = Field(..., description="Cached principal profile")
    access_token: Optional[str] = Field(None, description="Identity provider access token")

    @property
    def principal(self) -> Principal:
        return Principal.model_validate(self.user)


# ============================================================================
# Wire Models
# ============================================================================

class LoginRequest(BaseModel):
    """Body of the three role-specific login endpoints."""

    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = None
    password: Optional[str] = None
    department: Optional[str] = None
    employee_id: Optional[str] = Field(None, alias="employeeId")
    admin_id: Optional[str] = Field(None, alias="adminId")


class RegisterRequest(BaseModel):
    """Petitioner self-registration body."""

    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class LoginResponse(BaseModel):
    """Response model returned on successful login."""

    model_config = ConfigDict(populate_by_name=True)

    message: str = "Login successful"
    token: str = Field(..., description="Local token")
    refresh_token: Optional[str] = Field(None, alias="refreshToken")
    access_token: Optional[str] = Field(None, alias="accessToken")
    user: Dict[str, Any]


class RefreshResponse(BaseModel):
    token: str
    user: Dict[str, Any]


class ErrorResponse(BaseModel):
    """Standardized authentication error body."""

    message: str = Field(..., description="Human-readable error message")
    code: str = Field(..., description="Error code")


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
