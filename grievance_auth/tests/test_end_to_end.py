"""
End-to-End Tests

The client SessionManager talks to the real FastAPI app over
httpx.ASGITransport; both sides share the GoTrue emulator.
"""

import time

import httpx
import pytest

from grievance_auth.client.manager import SessionManager, SessionState, build_session_manager
from grievance_auth.client.store import FileSessionStore, MemorySessionStore
from grievance_auth.errors import LoginFailed, SessionExpired, Unauthenticated
from grievance_auth.models import SessionSnapshot
from grievance_auth.provider import IdentityProvider

from .conftest import ANON_KEY, API_BASE_URL, PASSWORD, SUPABASE_URL, local_token


@pytest.fixture
def backend_client(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=API_BASE_URL)


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def manager(client_settings, provider_client, backend_client, store):
    provider = IdentityProvider(SUPABASE_URL, ANON_KEY, http_client=provider_client)
    return SessionManager(provider, store=store, settings=client_settings, http_client=backend_client)


@pytest.mark.asyncio
async def test_petitioner_session_lifecycle(manager, store, gotrue):
    result = await manager.login("priya@example.com", PASSWORD)

    assert result.redirect_path == "/petitioner/dashboard"
    snapshot = store.load()
    assert snapshot.user["role"] == "Petitioner"
    assert snapshot.access_token in gotrue.access_tokens
    assert manager.provider.current_session.access_token == snapshot.access_token

    response = await manager.fetch("/api/auth/verify")
    assert response.json()["user"]["name"] == "Priya Raman"

    principal = await manager.refresh_user()
    assert principal.phone == "9000000001"
    assert store.load().user["supabaseId"] == gotrue.users["priya@example.com"]["id"]

    await manager.logout()
    await manager.provider.drain_notifications()
    assert store.load() is None
    assert ("POST", "/auth/v1/logout") in gotrue.calls


@pytest.mark.asyncio
@pytest.mark.parametrize("remaining,warning", [(200, True), (400, False)])
async def test_expiry_warning_after_login(manager, store, remaining, warning):
    await manager.login("priya@example.com", PASSWORD)
    snapshot = store.load()
    store.save(snapshot.model_copy(update={"token": local_token(expires_in=remaining)}))

    await manager.check_expiration()

    assert manager.expiry_warning is warning
    assert manager.is_authenticated


@pytest.mark.asyncio
async def test_official_login_routes_to_department(manager, store):
    result = await manager.login("kumar@example.com", PASSWORD, department="Public Works", employee_id="E-17")

    assert result.redirect_path == "/official/public-works/dashboard"
    assert store.load().user["role"] == "Official"


@pytest.mark.asyncio
async def test_wrong_role_endpoint_is_rejected(manager, store):
    with pytest.raises(LoginFailed) as exc_info:
        await manager.login("priya@example.com", PASSWORD, admin_id="A1")

    assert exc_info.value.reason == "User not found"
    assert store.load() is None


@pytest.mark.asyncio
async def test_wrong_password(manager):
    with pytest.raises(LoginFailed) as exc_info:
        await manager.login("priya@example.com", "not-the-password")

    assert exc_info.value.reason == "Invalid credentials"


@pytest.mark.asyncio
async def test_rejected_token_fails_refresh_and_logs_out(manager, store):
    store.save(
        SessionSnapshot(
            token=local_token(secret="some-other-signing-secret-0123456789"),
            user={"id": "p-1", "email": "priya@example.com", "role": "Petitioner"},
        )
    )

    with pytest.raises(SessionExpired):
        await manager.fetch("/api/auth/verify")

    assert store.load() is None
    assert manager.state is SessionState.ANONYMOUS


@pytest.mark.asyncio
async def test_registration_signs_in(manager, store):
    result = await manager.register("Anu Devi", "anu@example.com", PASSWORD, phone="9000000002")

    assert result.redirect_path == "/petitioner/dashboard"
    response = await manager.fetch("/api/auth/verify")
    assert response.json()["user"]["name"] == "Anu Devi"

    await manager.logout()
    relogin = await manager.login("anu@example.com", PASSWORD)
    assert relogin.principal.name == "Anu Devi"


@pytest.mark.asyncio
async def test_registration_awaiting_confirmation_stays_signed_out(manager, store, gotrue):
    gotrue.confirm_signups = True

    assert await manager.register("Anu Devi", "anu@example.com", PASSWORD) is None

    assert store.load() is None
    assert not manager.is_authenticated
    assert manager.provider.current_session is None
    with pytest.raises(Unauthenticated):
        await manager.fetch("/api/auth/verify")


@pytest.mark.asyncio
async def test_session_survives_restart(tmp_path, client_settings, provider_client, backend_client):
    settings = client_settings.model_copy(update={"SESSION_FILE": str(tmp_path / "session.json")})

    first = build_session_manager(settings=settings, http_client=backend_client, provider_client=provider_client)
    await first.login("priya@example.com", PASSWORD)
    await first.aclose()

    second = build_session_manager(settings=settings, http_client=backend_client, provider_client=provider_client)
    assert isinstance(second.store, FileSessionStore)
    assert await second.initialize() is SessionState.AUTHENTICATED
    assert second.principal.id == "p-1"

    await second.check_expiration(now=time.time() + 2 * 24 * 60 * 60)
    assert second.store.load() is None
    await second.aclose()
