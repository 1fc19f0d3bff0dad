"""
Session Manager
===============

Client-side state machine for the dual-credential session.

States:
    INITIALIZING -> AUTHENTICATED | ANONYMOUS
    AUTHENTICATED -> ANONYMOUS        logout or detected expiry
    ANONYMOUS -> AUTHENTICATED        login

``expiry_warning`` is derived: set while the local token has less than
EXPIRY_WARNING_SECONDS left.

Every mutation of the store and of the in-memory state happens under a
single asyncio.Lock. Identity provider notifications arrive on their own
tasks, take the same lock and decide from the current state, so a late
or repeated event cannot undo newer state.
"""

import asyncio
import logging
import re
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ValidationError

from ..config import ClientSettings, get_client_settings
from ..errors import LoginFailed, ProviderAuthError, RegistrationFailed, SessionError
from ..models import (
    Principal,
    ProviderSession,
    Role,
    SessionSnapshot,
    display_role,
)
from ..provider import AuthChangeEvent, IdentityProvider
from .codec import decode, is_expired, is_expiring_soon
from .fetch import AuthenticatedFetcher, json_body
from .store import FileSessionStore, MemorySessionStore, SessionStore

logger = logging.getLogger(__name__)

PROFILE_PATH = "/api/users/profile"
REGISTER_PATH = "/api/auth/petitioner/register"

LOGIN_PATHS = {
    Role.ADMIN: "/api/auth/admin/login",
    Role.OFFICIAL: "/api/auth/official/login",
    Role.PETITIONER: "/api/auth/petitioner/login",
}


class SessionState(str, Enum):
    INITIALIZING = "INITIALIZING"
    AUTHENTICATED = "AUTHENTICATED"
    ANONYMOUS = "ANONYMOUS"


class LoginResult(BaseModel):
    """Outcome of a successful login: who, where to go, and the raw body."""

    principal: Principal
    redirect_path: str
    payload: Dict[str, Any]


# =============================================================================
# Routing Helpers
# =============================================================================

def login_role(department: Optional[str] = None, admin_id: Optional[str] = None) -> Role:
    """Admin id wins over department; neither means petitioner."""
    if admin_id:
        return Role.ADMIN
    if department:
        return Role.OFFICIAL
    return Role.PETITIONER


def department_slug(department: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", department.strip().lower()).strip("-")


def get_redirect_path(role: Any, department: Optional[str] = None) -> str:
    """
    Landing page for a role.

    Officials land on their department's dashboard when one is known.
    Unknown roles go back to the login page.
    """
    try:
        parsed = Role.parse(role)
    except ValueError:
        return "/login"

    if parsed is Role.ADMIN:
        return "/admin/dashboard"
    if parsed is Role.OFFICIAL:
        slug = department_slug(department) if department else ""
        return f"/official/{slug}/dashboard" if slug else "/official/dashboard"
    return "/petitioner/dashboard"


def display_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a user profile with its role display-cased."""
    data = dict(user)
    if data.get("role"):
        data["role"] = display_role(str(data["role"]))
    return data


# =============================================================================
# Session Manager
# =============================================================================

class SessionManager:
    """
    Orchestrates login, logout, expiry monitoring and provider events.

    Args:
        provider: Identity provider adapter holding the provider session
        store: Session store (in-memory when omitted)
        settings: Client settings (environment when omitted)
        http_client: Client for backend calls; created and owned otherwise
        owns_provider: Close the provider adapter in aclose()
    """

    def __init__(
        self,
        provider: IdentityProvider,
        store: Optional[SessionStore] = None,
        settings: Optional[ClientSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        owns_provider: bool = False,
    ):
        self.settings = settings or get_client_settings()
        self.provider = provider
        self.store = store if store is not None else MemorySessionStore()
        self.state = SessionState.INITIALIZING
        self.principal: Optional[Principal] = None
        self.expiry_warning = False

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self.settings.REQUEST_TIMEOUT_SECONDS)
        self._owns_provider = owns_provider
        self._state_lock: Optional[asyncio.Lock] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._fetcher = AuthenticatedFetcher(self)
        self._unsubscribe = provider.on_auth_state_change(self._on_auth_state_change)

    @property
    def http_client(self) -> httpx.AsyncClient:
        return self._client

    @property
    def _lock(self) -> asyncio.Lock:
        # Created on first use so it belongs to the loop that runs the manager
        if self._state_lock is None:
            self._state_lock = asyncio.Lock()
        return self._state_lock

    @property
    def is_authenticated(self) -> bool:
        return self.state is SessionState.AUTHENTICATED

    def url(self, path: str) -> str:
        """Resolve a path against the backend origin unless already absolute."""
        if path.startswith(("http://", "https://")):
            return path
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.settings.api_base_url_str}{path}"

    # =========================================================================
    # Bootstrap
    # =========================================================================

    async def initialize(self) -> SessionState:
        """
        Resolve the starting state from the provider session.

        Never raises: any failure leaves the manager ANONYMOUS.
        """
        async with self._lock:
            try:
                session = await self.provider.get_session()
                if session is None:
                    self.store.clear()
                    self._reset()
                    logger.info("No provider session; starting anonymous")
                    return self.state

                snapshot = self.store.load()
                if snapshot is not None:
                    self.principal = snapshot.principal
                    self._update_warning(snapshot.token)
                    self.state = SessionState.AUTHENTICATED
                    return self.state

                # Provider session without a cached profile: the profile is
                # held in memory only since there is no local token to pair it with.
                user = await self._fetch_profile(session.access_token)
                if user is None:
                    self._reset()
                else:
                    self.principal = Principal.model_validate(user)
                    self.state = SessionState.AUTHENTICATED
            except Exception:
                logger.error("Session initialization failed; starting anonymous", exc_info=True)
                self._reset()

            return self.state

    # =========================================================================
    # Login / Registration / Logout
    # =========================================================================

    async def login(
        self,
        email: str,
        password: str,
        department: Optional[str] = None,
        employee_id: Optional[str] = None,
        admin_id: Optional[str] = None,
    ) -> LoginResult:
        """
        Log in through the role-specific backend endpoint.

        Raises:
            LoginFailed: On a non-2xx response, a response without a token,
                         or a transport error. The store is left untouched.
        """
        role = login_role(department, admin_id)
        body: Dict[str, Any] = {"email": email, "password": password}
        if department:
            body["department"] = department
        if employee_id:
            body["employeeId"] = employee_id
        if admin_id:
            body["adminId"] = admin_id

        logger.info(f"Attempting {role.value} login", extra={"email": email})

        try:
            response = await self._client.post(self.url(LOGIN_PATHS[role]), json=body)
        except httpx.HTTPError as e:
            logger.error(f"Login request failed: {e}")
            raise LoginFailed(str(e) or None) from e

        data = json_body(response) or {}
        if not response.is_success:
            raise LoginFailed(data.get("error") or data.get("message") or "Login failed")
        if not data.get("token"):
            raise LoginFailed("No token received from server")

        try:
            return await self._establish(data)
        except ValidationError as e:
            raise LoginFailed("Invalid user data received from server") from e

    async def register(
        self,
        name: str,
        email: str,
        password: str,
        phone: Optional[str] = None,
        address: Optional[str] = None,
    ) -> Optional[LoginResult]:
        """
        Register a petitioner; signs in when the backend returns a token.

        Raises:
            RegistrationFailed: On a non-2xx response or a transport error
        """
        body: Dict[str, Any] = {"name": name, "email": email, "password": password}
        if phone:
            body["phone"] = phone
        if address:
            body["address"] = address

        try:
            response = await self._client.post(self.url(REGISTER_PATH), json=body)
        except httpx.HTTPError as e:
            raise RegistrationFailed(str(e) or None) from e

        payload = json_body(response) or {}
        if not response.is_success:
            raise RegistrationFailed(payload.get("message") or payload.get("error"))

        data = payload.get("data") or {}
        if not data.get("token"):
            logger.info("Registration accepted without a session token")
            return None

        try:
            return await self._establish(data)
        except ValidationError as e:
            raise RegistrationFailed("Invalid user data received from server") from e

    async def logout(self) -> None:
        """Sign out everywhere. Never raises."""
        try:
            await self.provider.sign_out()
        except Exception:
            logger.warning("Provider sign-out raised during logout", exc_info=True)

        async with self._lock:
            self._clear()
        logger.info("Logged out")

    async def _establish(self, data: Dict[str, Any]) -> LoginResult:
        """Persist a token response and adopt the provider session."""
        user = display_user(data.get("user") or {})
        principal = Principal.model_validate(user)
        snapshot = SessionSnapshot(
            token=data["token"],
            refresh_token=data.get("refreshToken"),
            access_token=data.get("accessToken"),
            user=user,
        )

        async with self._lock:
            self.store.save(snapshot)
            self.principal = principal
            self._update_warning(snapshot.token)
            self.state = SessionState.AUTHENTICATED

        if snapshot.access_token:
            try:
                await self.provider.set_session(
                    ProviderSession.from_tokens(snapshot.access_token, snapshot.refresh_token)
                )
            except ProviderAuthError as e:
                logger.warning(f"Provider session not adopted: {e.message}")

        redirect_path = get_redirect_path(principal.role, principal.department)
        logger.info(
            f"Logged in as {principal.role.value}",
            extra={"user_id": principal.id, "redirect_path": redirect_path},
        )
        return LoginResult(principal=principal, redirect_path=redirect_path, payload=data)

    # =========================================================================
    # Expiry
    # =========================================================================

    async def check_expiration(self, now: Optional[float] = None) -> None:
        """Log out on an unusable or expired token, else update the warning."""
        async with self._lock:
            snapshot = self.store.load()
            if snapshot is None:
                return
            try:
                token = decode(snapshot.token)
            except SessionError as e:
                logger.info(f"Stored token unreadable: {e.message}")
            else:
                if not is_expired(token, now=now):
                    self.expiry_warning = is_expiring_soon(
                        token, threshold_ms=self._warning_ms, now=now
                    )
                    return
                logger.info("Local token expired")

        await self.logout()

    async def refresh_expiry_warning(self) -> None:
        async with self._lock:
            snapshot = self.store.load()
            if snapshot is not None:
                self._update_warning(snapshot.token)

    def start_expiry_monitor(self, interval: Optional[float] = None) -> asyncio.Task:
        """Run check_expiration() periodically on a background task."""
        if self._monitor_task is not None and not self._monitor_task.done():
            return self._monitor_task

        period = interval or self.settings.EXPIRY_CHECK_INTERVAL_SECONDS
        self._monitor_task = asyncio.get_running_loop().create_task(self._run_monitor(period))
        return self._monitor_task

    async def stop_expiry_monitor(self) -> None:
        task, self._monitor_task = self._monitor_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run_monitor(self, period: float) -> None:
        while True:
            await asyncio.sleep(period)
            try:
                await self.check_expiration()
            except Exception:
                logger.error("Expiry check failed", exc_info=True)

    # =========================================================================
    # Profile
    # =========================================================================

    async def refresh_user(self, access_token: Optional[str] = None) -> Optional[Principal]:
        """
        Re-fetch the profile and update the cached user.

        Uses the given provider access token, else the stored or current one.
        Returns None when no token is available or the fetch fails.
        """
        token = access_token
        if not token:
            snapshot = self.store.load()
            session = self.provider.current_session
            token = (snapshot.access_token if snapshot else None) or (
                session.access_token if session else None
            )
        if not token:
            return None

        try:
            user = await self._fetch_profile(token)
            principal = Principal.model_validate(user) if user else None
        except (httpx.HTTPError, ValidationError) as e:
            logger.error(f"Error refreshing user data: {e}")
            return None
        if principal is None:
            return None

        async with self._lock:
            snapshot = self.store.load()
            if snapshot is not None:
                self.store.save(snapshot.model_copy(update={"user": user}))
            self.principal = principal
            self.state = SessionState.AUTHENTICATED
        return principal

    async def update_user(self, data: Dict[str, Any]) -> Principal:
        """
        Merge fields into the cached user.

        Raises:
            ValidationError: If the merged profile is not a valid principal
        """
        async with self._lock:
            snapshot = self.store.load()
            if snapshot is not None:
                current = snapshot.user
            elif self.principal is not None:
                current = self.principal.to_wire(display=True)
            else:
                current = {}

            user = display_user({**current, **data})
            principal = Principal.model_validate(user)
            if snapshot is not None:
                self.store.save(snapshot.model_copy(update={"user": user}))
            self.principal = principal
            return principal

    async def _fetch_profile(self, access_token: Optional[str]) -> Optional[Dict[str, Any]]:
        if not access_token:
            return None

        response = await self._client.get(
            self.url(PROFILE_PATH),
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if not response.is_success:
            logger.info(f"Profile fetch returned {response.status_code}")
            return None

        data = json_body(response)
        if not data or not data.get("role"):
            return None
        return display_user(data)

    # =========================================================================
    # Authenticated Requests
    # =========================================================================

    async def fetch(self, path: str, method: str = "GET", **kwargs: Any) -> httpx.Response:
        return await self._fetcher.fetch(path, method, **kwargs)

    async def apply_refreshed_token(self, token: str, user: Optional[Dict[str, Any]] = None) -> None:
        """Store a token returned by /api/auth/refresh, merging its user."""
        async with self._lock:
            snapshot = self.store.load()
            if snapshot is None:
                return

            merged = display_user({**snapshot.user, **(user or {})})
            self.store.save(snapshot.model_copy(update={"token": token, "user": merged}))
            try:
                self.principal = Principal.model_validate(merged)
            except ValidationError:
                logger.warning("Refreshed user profile is incomplete; keeping cached principal")
            self._update_warning(token)

    # =========================================================================
    # Provider Events
    # =========================================================================

    async def _on_auth_state_change(
        self,
        event: AuthChangeEvent,
        session: Optional[ProviderSession],
    ) -> None:
        logger.debug(f"Auth state changed: {event.value}")

        async with self._lock:
            if event is AuthChangeEvent.SIGNED_OUT:
                if self.provider.current_session is not None:
                    logger.debug("Ignoring stale SIGNED_OUT; provider holds a session")
                    return
                self._clear()

            elif event is AuthChangeEvent.TOKEN_REFRESHED:
                snapshot = self.store.load()
                if snapshot is None or session is None or not session.access_token:
                    return
                update = {"access_token": session.access_token}
                if session.refresh_token:
                    update["refresh_token"] = session.refresh_token
                self.store.save(snapshot.model_copy(update=update))

            elif event is AuthChangeEvent.SIGNED_IN:
                snapshot = self.store.load()
                if snapshot is None:
                    return
                try:
                    self.principal = snapshot.principal
                except ValidationError:
                    logger.warning("Cached user profile is invalid; not restoring it")
                    return
                self.state = SessionState.AUTHENTICATED

    # =========================================================================
    # Internal State
    # =========================================================================

    @property
    def _warning_ms(self) -> int:
        return self.settings.EXPIRY_WARNING_SECONDS * 1000

    def _update_warning(self, token: str) -> None:
        try:
            self.expiry_warning = is_expiring_soon(decode(token), threshold_ms=self._warning_ms)
        except SessionError:
            self.expiry_warning = False

    def _reset(self) -> None:
        self.principal = None
        self.expiry_warning = False
        self.state = SessionState.ANONYMOUS

    def _clear(self) -> None:
        try:
            self.store.clear()
        except OSError as e:
            logger.error(f"Failed to clear session store: {e}")
        self._reset()

    async def aclose(self) -> None:
        await self.stop_expiry_monitor()
        await self.provider.drain_notifications()
        self._unsubscribe()
        if self._owns_provider:
            await self.provider.aclose()
        if self._owns_client:
            await self._client.aclose()


def build_session_manager(
    settings: Optional[ClientSettings] = None,
    store: Optional[SessionStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    provider_client: Optional[httpx.AsyncClient] = None,
) -> SessionManager:
    """
    Create a SessionManager wired to the configured store and provider.

    The provider adapter starts from the tokens already in the store, so
    initialize() can detect a session that survived a restart.
    """
    settings = settings or get_client_settings()
    if store is None:
        store = FileSessionStore(settings.SESSION_FILE) if settings.SESSION_FILE else MemorySessionStore()

    snapshot = store.load()
    session = None
    if snapshot is not None and snapshot.access_token:
        session = ProviderSession.from_tokens(snapshot.access_token, snapshot.refresh_token)

    provider = IdentityProvider(
        settings.SUPABASE_URL,
        settings.SUPABASE_ANON_KEY,
        http_client=provider_client,
        session=session,
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
    )
    return SessionManager(
        provider,
        store=store,
        settings=settings,
        http_client=http_client,
        owns_provider=True,
    )


__all__ = [
    "SessionState",
    "LoginResult",
    "SessionManager",
    "build_session_manager",
    "get_redirect_path",
    "login_role",
    "display_user",
]
