"""
Shared fixtures: settings, seeded user directories, a GoTrue emulator for
the identity provider, and a scripted backend for client pipeline tests.
"""

import json
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from grievance_auth.auth.directory import build_directory
from grievance_auth.config import ClientSettings, Settings
from grievance_auth.main import create_app
from grievance_auth.provider import IdentityProvider

SUPABASE_URL = "https://project.supabase.co"
ANON_KEY = "anon-key-for-tests"
LOCAL_SECRET = "test-local-token-secret-0123456789abcdef"
API_BASE_URL = "http://backend.test"
PASSWORD = "correct-horse-battery"

SEED = {
    "petitioners": [
        {
            "id": "p-1",
            "email": "priya@example.com",
            "firstName": "Priya",
            "lastName": "Raman",
            "phone": "9000000001",
            "address": "12 Temple Street",
        },
    ],
    "officials": [
        {
            "id": "o-1",
            "email": "kumar@example.com",
            "name": "Officer Kumar",
            "department": "Public Works",
            "taluk": "Melur",
            "district": "Madurai",
        },
    ],
    "admins": [
        {"id": "a-1", "email": "admin@example.com", "name": "Site Admin"},
    ],
}


# ============================================================================
# Token Helpers
# ============================================================================

def make_jwt(payload: Dict[str, Any], secret: str = "any-signing-key-0123456789abcdef") -> str:
    """Signed JWT with an arbitrary payload, for client-side decoding tests."""
    return jwt.encode(payload, secret, algorithm="HS256")


def local_token(
    user_id: str = "p-1",
    role: str = "petitioner",
    expires_in: float = 3600,
    secret: str = LOCAL_SECRET,
    **claims: Any,
) -> str:
    """Local token signed like the backend's, expiring ``expires_in`` seconds from now."""
    now = int(time.time())
    payload = {
        "id": user_id,
        "role": role,
        "iat": now,
        "exp": now + expires_in,
        "iss": "grievance-portal",
    }
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


# ============================================================================
# GoTrue Emulator
# ============================================================================

class FakeGoTrue:
    """
    In-process stand-in for the identity provider's REST API.

    Mount with ``httpx.MockTransport(fake.handler)``. Every request is
    recorded in ``calls`` as ``(method, path)``. With ``confirm_signups``
    set, signup answers with the bare user object and no tokens, as a
    project requiring email confirmation does.
    """

    def __init__(self):
        self.users: Dict[str, Dict[str, Any]] = {}
        self.access_tokens: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, str] = {}
        self.calls: List[Tuple[str, str]] = []
        self.fail_logout = False
        self.down = False
        self.confirm_signups = False

    def add_user(self, email: str, password: str = PASSWORD) -> Dict[str, Any]:
        user = {"id": uuid.uuid4().hex, "email": email, "password": password, "user_metadata": {}}
        self.users[email.lower()] = user
        return user

    def issue(self, email: str, expires_in: int = 3600) -> Dict[str, Any]:
        user = self.users[email.lower()]
        access = jwt.encode(
            {"sub": user["id"], "email": email, "exp": int(time.time()) + expires_in, "jti": uuid.uuid4().hex},
            "provider-secret-0123456789abcdef",
            algorithm="HS256",
        )
        refresh = uuid.uuid4().hex
        self.access_tokens[access] = email.lower()
        self.refresh_tokens[refresh] = email.lower()
        return {
            "access_token": access,
            "refresh_token": refresh,
            "token_type": "bearer",
            "expires_in": expires_in,
            "user": self._public(user),
        }

    @staticmethod
    def _public(user: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": user["id"],
            "aud": "authenticated",
            "role": "authenticated",
            "email": user["email"],
            "app_metadata": {"provider": "email"},
            "user_metadata": user["user_metadata"],
            "created_at": "2025-01-01T00:00:00Z",
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))

        if self.down:
            raise httpx.ConnectError("provider unreachable", request=request)
        if request.headers.get("apikey") != ANON_KEY:
            return httpx.Response(401, json={"message": "Invalid API key"})

        if path == "/auth/v1/token":
            body = json.loads(request.content)
            grant = request.url.params.get("grant_type")
            if grant == "password":
                user = self.users.get(str(body.get("email", "")).lower())
                if user is None or user["password"] != body.get("password"):
                    return httpx.Response(
                        400,
                        json={"error": "invalid_grant", "error_description": "Invalid login credentials"},
                    )
                return httpx.Response(200, json=self.issue(user["email"]))
            if grant == "refresh_token":
                email = self.refresh_tokens.pop(body.get("refresh_token"), None)
                if email is None:
                    return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Invalid Refresh Token"})
                return httpx.Response(200, json=self.issue(email))

        if path == "/auth/v1/signup":
            body = json.loads(request.content)
            if str(body["email"]).lower() in self.users:
                return httpx.Response(422, json={"code": 422, "msg": "User already registered"})
            user = self.add_user(body["email"], body["password"])
            user["user_metadata"] = body.get("data") or {}
            if self.confirm_signups:
                return httpx.Response(200, json=self._public(user))
            return httpx.Response(200, json=self.issue(user["email"]))

        if path == "/auth/v1/logout":
            if self.fail_logout:
                return httpx.Response(500, json={"msg": "logout failed"})
            return httpx.Response(204)

        if path == "/auth/v1/user":
            token = request.headers.get("authorization", "").removeprefix("Bearer ")
            email = self.access_tokens.get(token)
            if email is None:
                return httpx.Response(401, json={"msg": "invalid JWT"})
            return httpx.Response(200, json=self._public(self.users[email]))

        return httpx.Response(404, json={"msg": "not found"})


# ============================================================================
# Scripted Backend
# ============================================================================

class ScriptedBackend:
    """
    Backend double for pipeline tests.

    ``on`` scripts ``(status, json_body)`` pairs (or exceptions to raise)
    served in order, the last one repeating. ``on_call`` installs a
    handler taking the request.
    """

    def __init__(self):
        self.responses: Dict[Tuple[str, str], Any] = {}
        self.requests: List[httpx.Request] = []

    def on(self, method: str, path: str, *responses: Any) -> None:
        self.responses[(method, path)] = list(responses)

    def on_call(self, method: str, path: str, fn: Callable[[httpx.Request], httpx.Response]) -> None:
        self.responses[(method, path)] = fn

    def sent(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        scripted = self.responses.get((request.method, request.url.path))
        if scripted is None:
            return httpx.Response(404, json={"message": "Not found"})
        if callable(scripted):
            return scripted(request)
        step = scripted.pop(0) if len(scripted) > 1 else scripted[0]
        if isinstance(step, Exception):
            raise step
        status_code, body = step
        if body is None:
            return httpx.Response(status_code)
        return httpx.Response(status_code, json=body)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        SUPABASE_URL=SUPABASE_URL,
        SUPABASE_ANON_KEY=ANON_KEY,
        LOCAL_TOKEN_SECRET=LOCAL_SECRET,
        LOG_LEVEL="DEBUG",
        _env_file=None,
    )


@pytest.fixture
def client_settings() -> ClientSettings:
    return ClientSettings(
        API_BASE_URL=API_BASE_URL,
        SUPABASE_URL=SUPABASE_URL,
        SUPABASE_ANON_KEY=ANON_KEY,
        _env_file=None,
    )


@pytest.fixture
def directory():
    return build_directory(SEED)


@pytest.fixture
def gotrue() -> FakeGoTrue:
    fake = FakeGoTrue()
    for role_key in ("petitioners", "officials", "admins"):
        for record in SEED[role_key]:
            fake.add_user(record["email"])
    fake.add_user("stranger@example.com")
    return fake


@pytest.fixture
def provider_client(gotrue) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(gotrue.handler))


@pytest.fixture
def server_provider(provider_client) -> IdentityProvider:
    return IdentityProvider(SUPABASE_URL, ANON_KEY, http_client=provider_client, persist_session=False)


@pytest.fixture
def app(settings, server_provider, directory):
    return create_app(settings=settings, provider=server_provider, directory=directory)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


def provider_token_for(gotrue: FakeGoTrue, email: str) -> str:
    return gotrue.issue(email)["access_token"]


def bearer(token: Optional[str]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
