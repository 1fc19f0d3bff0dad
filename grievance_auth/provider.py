"""
Identity Provider Adapter
=========================

Async wrapper around the Supabase Auth client (``supabase_auth``).

The backend uses it to check credentials (sign_in, sign_up) and to validate
incoming provider tokens (get_user). The client session library uses it to
hold the provider session, sign out, and listen for auth state changes.

The SDK notifies subscribers synchronously from inside the call that changed
the session. Those notifications are re-dispatched here on their own asyncio
tasks so async listeners never run inside the producing call.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx
from supabase_auth import AsyncGoTrueClient, AsyncMemoryStorage
from supabase_auth.errors import AuthApiError, AuthError
from supabase_auth.types import Session, User

from .errors import ProviderAuthError
from .models import ProviderSession, ProviderUser

logger = logging.getLogger(__name__)


class AuthChangeEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


AuthStateCallback = Callable[[AuthChangeEvent, Optional[ProviderSession]], Awaitable[None]]

# SDK events outside this set (USER_UPDATED, PASSWORD_RECOVERY, ...) are ignored
_SDK_EVENTS = {event.value: event for event in AuthChangeEvent}

_SDK_ERRORS = (AuthError, httpx.HTTPError)


class IdentityProvider:
    """
    Supabase Auth client holding at most one current session.

    Args:
        base_url: Provider project URL (e.g., https://xyz.supabase.co)
        api_key: Project API key, sent as the ``apikey`` header
        http_client: Optional shared client; one is created (and owned) otherwise
        session: Session restored from storage, if any. It is handed to the
                 SDK on the first get_session() or sign_out().
        timeout: Per-request timeout in seconds for an owned client
        persist_session: Keep the signed-in session and emit notifications.
                         The backend shares one adapter across requests and
                         turns this off.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        session: Optional[ProviderSession] = None,
        timeout: float = 10.0,
        persist_session: bool = True,
    ):
        self._persist_session = persist_session
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._auth = AsyncGoTrueClient(
            url=f"{base_url.rstrip('/')}/auth/v1",
            headers={"apikey": api_key, "Authorization": f"Bearer {api_key}"},
            storage=AsyncMemoryStorage(),
            auto_refresh_token=False,
            persist_session=persist_session,
            http_client=self._client,
        )
        self._session = session if persist_session else None
        self._restored = self._session
        self._adopting: Optional[str] = None
        self._listeners: List[AuthStateCallback] = []
        self._pending: Set[asyncio.Task] = set()
        self._subscription = self._auth.on_auth_state_change(self._on_sdk_event)

    # =========================================================================
    # Session Lifecycle
    # =========================================================================

    @property
    def current_session(self) -> Optional[ProviderSession]:
        return self._session

    async def sign_in(self, email: str, password: str) -> ProviderSession:
        """
        Sign in with email and password.

        Raises:
            ProviderAuthError: If the provider rejects the credentials or
                               cannot be reached
        """
        try:
            response = await self._auth.sign_in_with_password({"email": email, "password": password})
        except _SDK_ERRORS as e:
            raise _provider_error(e) from e

        session = _to_session(response.session)
        if session is None or not session.has_tokens:
            raise ProviderAuthError("Identity provider returned no session")
        logger.debug("Provider sign-in succeeded", extra={"provider_user_id": session.provider_user_id})
        return session

    async def sign_up(
        self,
        email: str,
        password: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProviderSession:
        """
        Register a new provider account.

        When the project requires email confirmation the returned session
        carries the user but no tokens.

        Raises:
            ProviderAuthError: If registration is refused
        """
        try:
            response = await self._auth.sign_up(
                {"email": email, "password": password, "options": {"data": metadata or {}}}
            )
        except _SDK_ERRORS as e:
            raise _provider_error(e) from e

        session = _to_session(response.session)
        if session is not None:
            return session
        return ProviderSession(user=_to_user(response.user))

    async def sign_out(self) -> None:
        """
        Sign out of the provider.

        Best effort: provider failures are logged and the local session is
        dropped regardless. SIGNED_OUT is always emitted.
        """
        restored, self._restored = self._restored, None
        try:
            if restored is not None and restored.access_token:
                await self._auth.admin.sign_out(restored.access_token)
            await self._auth.sign_out()
        except _SDK_ERRORS as e:
            logger.warning(f"Provider sign-out failed: {e}")
            # The SDK skips its local cleanup when the revoke call itself fails
            await self._auth._remove_session()
            self._on_sdk_event(AuthChangeEvent.SIGNED_OUT.value, None)
        self._session = None

    async def get_session(self) -> Optional[ProviderSession]:
        """
        Return the current session, refreshing it first if it has expired.

        Returns None when there is no session or the refresh fails.
        """
        if self._restored is not None:
            restored, self._restored = self._restored, None
            try:
                await self.set_session(restored)
            except ProviderAuthError as e:
                logger.info(f"Stored provider session could not be restored: {e.message}")
                self._session = None
                return None

        try:
            current = await self._auth.get_session()
        except _SDK_ERRORS as e:
            logger.info(f"Provider session refresh failed: {e}")
            await self._auth._remove_session()
            self._session = None
            return None

        session = _to_session(current)
        if self._persist_session:
            self._session = session
        return session

    async def set_session(self, session: ProviderSession) -> None:
        """
        Adopt a session issued elsewhere (e.g., by the backend login).

        The SDK checks the access token with the provider, refreshing it
        first when it has expired. Adoption is announced as SIGNED_IN.

        Raises:
            ProviderAuthError: If either token is missing, the access token is
                               not a JWT, or the provider refuses the session
        """
        if not session.access_token or not session.refresh_token:
            raise ProviderAuthError("Both provider tokens are required to adopt a session")
        if session.access_token.count(".") != 2:
            raise ProviderAuthError("Provider access token is not a JWT")

        previous = self._session
        if self._persist_session:
            self._session = session
        self._restored = None
        self._adopting = session.access_token
        try:
            await self._auth.set_session(session.access_token, session.refresh_token)
        except (AuthError, httpx.HTTPError, ValueError) as e:
            self._session = previous
            raise _provider_error(e) from e
        finally:
            self._adopting = None

    async def refresh_session(self, refresh_token: Optional[str] = None) -> ProviderSession:
        """
        Exchange a refresh token for a new session.

        Raises:
            ProviderAuthError: If no refresh token is available or the
                               provider refuses it
        """
        token = refresh_token or (self._session.refresh_token if self._session else None)
        if not token:
            raise ProviderAuthError("No refresh token available")

        try:
            response = await self._auth.refresh_session(token)
        except _SDK_ERRORS as e:
            raise _provider_error(e) from e

        session = _to_session(response.session)
        if session is None:
            raise ProviderAuthError("Identity provider returned no session")
        return session

    async def get_user(self, token: str) -> Optional[ProviderUser]:
        """
        Resolve the provider user that owns an access token.

        Returns:
            The user, or None if the provider does not accept the token

        Raises:
            ProviderAuthError: If the provider cannot be reached
        """
        try:
            response = await self._auth.get_user(token)
        except AuthApiError as e:
            logger.debug(f"Provider rejected token with status {e.status}")
            return None
        except _SDK_ERRORS as e:
            raise ProviderAuthError(f"Identity provider unreachable: {_message(e)}") from e

        user = response.user if response else None
        if user is None or not user.id:
            return None
        return _to_user(user)

    # =========================================================================
    # Auth State Notifications
    # =========================================================================

    def on_auth_state_change(self, callback: AuthStateCallback) -> Callable[[], None]:
        """
        Register an async listener for auth state changes.

        Returns:
            A function that removes the listener
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def drain_notifications(self) -> None:
        """Wait until every dispatched notification has been handled."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain_notifications()
        self._subscription.unsubscribe()
        if self._owns_client:
            await self._client.aclose()

    def _on_sdk_event(self, event: str, session: Optional[Session]) -> None:
        if not self._persist_session:
            return
        mapped = _SDK_EVENTS.get(str(event))
        if mapped is None:
            logger.debug(f"Ignoring provider event {event}")
            return

        converted = _to_session(session)
        # set_session() reports TOKEN_REFRESHED even when the token was kept as is
        if (
            mapped is AuthChangeEvent.TOKEN_REFRESHED
            and converted is not None
            and converted.access_token == self._adopting
        ):
            mapped = AuthChangeEvent.SIGNED_IN

        self._session = converted
        self._notify(mapped, converted)

    def _notify(self, event: AuthChangeEvent, session: Optional[ProviderSession]) -> None:
        if not self._listeners:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop; dropping {event.value} notification")
            return

        for listener in list(self._listeners):
            task = loop.create_task(self._dispatch(listener, event, session))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _dispatch(
        self,
        listener: AuthStateCallback,
        event: AuthChangeEvent,
        session: Optional[ProviderSession],
    ) -> None:
        try:
            await listener(event, session)
        except Exception:
            logger.error(f"Auth state listener failed for {event.value}", exc_info=True)


# =============================================================================
# SDK Conversions
# =============================================================================

def _to_user(user: Optional[User]) -> Optional[ProviderUser]:
    if user is None:
        return None
    return ProviderUser(id=user.id, email=user.email, user_metadata=user.user_metadata or {})


def _to_session(session: Optional[Session]) -> Optional[ProviderSession]:
    if session is None:
        return None
    return ProviderSession(
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        expires_at=float(session.expires_at) if session.expires_at else None,
        user=_to_user(session.user),
    )


def _message(error: Exception) -> str:
    return getattr(error, "message", None) or str(error) or error.__class__.__name__


def _provider_error(error: Exception) -> ProviderAuthError:
    """Map an SDK or transport failure onto ProviderAuthError."""
    if isinstance(error, AuthApiError):
        return ProviderAuthError(_message(error), status_code=error.status)
    if isinstance(error, AuthError):
        status_code = getattr(error, "status", None) or None
        if status_code is None:
            return ProviderAuthError(f"Identity provider unreachable: {_message(error)}")
        return ProviderAuthError(_message(error), status_code=status_code)
    if isinstance(error, httpx.HTTPError):
        return ProviderAuthError(f"Identity provider unreachable: {error}")
    return ProviderAuthError(_message(error) or "Identity provider request failed")


__all__ = [
    "AuthChangeEvent",
    "AuthStateCallback",
    "IdentityProvider",
]
