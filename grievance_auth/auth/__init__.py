"""
Authentication Package

This package holds the server half of the dual-credential scheme: the
identity provider's session tokens paired with a locally issued token that
carries role and jurisdiction claims.

Key responsibilities:
- Role-specific login and petitioner registration
- Local token minting, verification and refresh
- Provider token verification and Principal resolution
- Role-specific user directories

Modules:
- routes: Public authentication endpoints (/api/auth/*, /api/users/profile)
- verification: FastAPI dependencies authenticating incoming requests
- session: Local token creation and validation logic
- directory: User directories and the composite email lookup

The login flow:
1. Client posts credentials to /api/auth/<role>/login
2. Backend checks them with the identity provider
3. Backend finds the user in that role's directory
4. Backend returns the local token plus the provider tokens
5. Client sends the local token on subsequent API requests
"""

from .routes import auth_router, users_router

__all__ = [
    "auth_router",
    "users_router",
]
