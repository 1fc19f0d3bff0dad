"""
Authenticated Request Pipeline
==============================

Sends backend requests with the local token and handles session failures.

Flow:
1. Require a stored session                          -> Unauthenticated
2. Reject a token that cannot be decoded or expired  -> SessionExpired
3. Resolve relative paths against API_BASE_URL
4. Attach ``Authorization: Bearer <token>`` and, unless the body is
   multipart or raw bytes, ``Content-Type: application/json``
5. On 401, call /api/auth/refresh once and re-issue the request once
6. Classify the final response

Every session-invalidating outcome logs the user out before raising.
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

import httpx

from ..errors import RequestFailed, SessionError, SessionExpired, Unauthenticated
from .codec import decode, is_expired

if TYPE_CHECKING:
    from .manager import SessionManager

logger = logging.getLogger(__name__)

REFRESH_PATH = "/api/auth/refresh"

# Error codes in a response body that mean the session is gone
SESSION_INVALID_CODES = frozenset({
    "TOKEN_EXPIRED",
    "TOKEN_INVALID",
    "TOKEN_MISSING",
    "USER_NOT_FOUND",
    "INVALID_TOKEN",
})


def build_headers(
    token: str,
    overrides: Optional[Dict[str, str]] = None,
    json_body: bool = True,
) -> Dict[str, str]:
    """
    Default request headers, with caller overrides applied last.

    Args:
        token: Local token for the Authorization header
        overrides: Caller-supplied headers
        json_body: Send ``Content-Type: application/json``; False for
                   multipart and binary bodies so the transport sets it
    """
    headers = {"Authorization": f"Bearer {token}"}
    if json_body:
        headers["Content-Type"] = "application/json"
    if overrides:
        headers.update(overrides)
    return headers


def json_body(response: httpx.Response) -> Optional[Dict[str, Any]]:
    """Response body as a dict, or None when it is not a JSON object."""
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class AuthenticatedFetcher:
    """
    Request pipeline bound to a SessionManager.

    Performs at most one refresh-and-retry per call; concurrent calls that
    each see a 401 refresh independently.
    """

    def __init__(self, manager: "SessionManager"):
        self.manager = manager

    async def fetch(
        self,
        path: str,
        method: str = "GET",
        *,
        json: Any = None,
        data: Any = None,
        files: Any = None,
        content: Any = None,
        params: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Send an authenticated request.

        Returns:
            The successful response

        Raises:
            Unauthenticated: No stored session
            SessionExpired: Token unusable, refresh failed, or the backend
                            reported a session-invalidating code
            RequestFailed: Any other non-2xx response or a transport error
        """
        manager = self.manager

        snapshot = manager.store.load()
        if snapshot is None:
            await manager.logout()
            raise Unauthenticated()

        try:
            expired = is_expired(decode(snapshot.token))
        except SessionError as e:
            logger.info(f"Stored token rejected before request: {e.message}")
            expired = True
        if expired:
            await manager.logout()
            raise SessionExpired()

        url = manager.url(path)
        send_json = files is None and not isinstance(content, (bytes, bytearray))
        request = dict(json=json, data=data, files=files, content=content, params=params)

        response = await self._send(
            method, url, build_headers(snapshot.token, headers, send_json), **request
        )

        if response.status_code == 401:
            new_token = await self._refresh(snapshot.token)
            response = await self._send(
                method, url, build_headers(new_token, headers, send_json), **request
            )

        return await self._classify(response)

    async def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        **request: Any,
    ) -> httpx.Response:
        try:
            return await self.manager.http_client.request(method, url, headers=headers, **request)
        except httpx.TimeoutException as e:
            logger.error(f"Request timed out: {method} {url}")
            raise RequestFailed("Request timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"Request failed: {method} {url}: {e}")
            raise RequestFailed(str(e) or "Request failed") from e

    async def _refresh(self, token: str) -> str:
        """Exchange the current local token for a new one, or log out."""
        manager = self.manager

        try:
            response = await manager.http_client.post(
                manager.url(REFRESH_PATH),
                headers=build_headers(token),
            )
        except httpx.HTTPError as e:
            logger.warning(f"Token refresh request failed: {e}")
            await manager.logout()
            raise SessionExpired() from e

        body = json_body(response) or {}
        new_token = body.get("token") if response.is_success else None
        if not new_token:
            logger.info(f"Token refresh rejected with status {response.status_code}")
            await manager.logout()
            raise SessionExpired()

        await manager.apply_refreshed_token(new_token, body.get("user"))
        logger.info("Local token refreshed")
        return new_token

    async def _classify(self, response: httpx.Response) -> httpx.Response:
        manager = self.manager

        if response.is_success:
            await manager.refresh_expiry_warning()
            return response

        body = json_body(response)
        if body is None:
            raise RequestFailed(
                response.reason_phrase or "An error occurred",
                status_code=response.status_code,
            )

        if body.get("code") in SESSION_INVALID_CODES:
            logger.info(f"Backend reported {body['code']}; ending session")
            await manager.logout()
            raise SessionExpired()

        raise RequestFailed(
            body.get("message") or body.get("error") or "An error occurred",
            status_code=response.status_code,
        )


__all__ = [
    "REFRESH_PATH",
    "SESSION_INVALID_CODES",
    "AuthenticatedFetcher",
    "build_headers",
    "json_body",
]
