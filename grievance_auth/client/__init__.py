"""
Client Session Package

Keeps the browser-side half of the dual-credential session: the local
token and cached profile in a SessionStore, the provider session in the
IdentityProvider adapter, and the state machine tying them together.

Modules:
- codec: Local token payload decoding and expiry checks
- store: Memory and file backed session stores
- manager: SessionManager state machine (login, logout, expiry, events)
- fetch: Authenticated request pipeline with one refresh-and-retry
"""

from .fetch import AuthenticatedFetcher
from .manager import LoginResult, SessionManager, SessionState, build_session_manager, get_redirect_path
from .store import FileSessionStore, MemorySessionStore, SessionStore

__all__ = [
    "AuthenticatedFetcher",
    "LoginResult",
    "SessionManager",
    "SessionState",
    "build_session_manager",
    "get_redirect_path",
    "FileSessionStore",
    "MemorySessionStore",
    "SessionStore",
]
