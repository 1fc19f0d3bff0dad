"""
Session Store
=============

Persists the client session across reloads under four keys:

    token         local token
    refreshToken  identity provider refresh token
    accessToken   identity provider access token
    user          cached principal profile, as a JSON string

The keys are written and removed as one unit: a reader never sees a user
without a token or a token without a user.
"""

import json
import logging
import pathlib
from typing import Dict, Optional, Protocol, Union

from ..models import SessionSnapshot

logger = logging.getLogger(__name__)

TOKEN_KEY = "token"
REFRESH_TOKEN_KEY = "refreshToken"
ACCESS_TOKEN_KEY = "accessToken"
USER_KEY = "user"


class SessionStore(Protocol):
    def load(self) -> Optional[SessionSnapshot]:
        ...

    def save(self, snapshot: SessionSnapshot) -> None:
        ...

    def clear(self) -> None:
        ...


class KeyValueSessionStore:
    """
    Maps a SessionSnapshot onto string keys.

    Subclasses provide ``_read`` and ``_write``; ``_write`` must replace the
    whole key set in one step (``None`` removes every key).
    """

    def _read(self) -> Dict[str, str]:
        raise NotImplementedError

    def _write(self, values: Optional[Dict[str, str]]) -> None:
        raise NotImplementedError

    def load(self) -> Optional[SessionSnapshot]:
        values = self._read()
        token = values.get(TOKEN_KEY)
        raw_user = values.get(USER_KEY)
        if not token or not raw_user:
            return None

        try:
            user = json.loads(raw_user)
        except ValueError:
            logger.warning("Stored user profile is not valid JSON; treating session as absent")
            return None
        if not isinstance(user, dict):
            logger.warning("Stored user profile is not an object; treating session as absent")
            return None

        return SessionSnapshot(
            token=token,
            refresh_token=values.get(REFRESH_TOKEN_KEY),
            access_token=values.get(ACCESS_TOKEN_KEY),
            user=user,
        )

    def save(self, snapshot: SessionSnapshot) -> None:
        values = {
            TOKEN_KEY: snapshot.token,
            USER_KEY: json.dumps(snapshot.user),
        }
        if snapshot.refresh_token:
            values[REFRESH_TOKEN_KEY] = snapshot.refresh_token
        if snapshot.access_token:
            values[ACCESS_TOKEN_KEY] = snapshot.access_token
        self._write(values)

    def clear(self) -> None:
        self._write(None)


class MemorySessionStore(KeyValueSessionStore):
    """Process-local store; each write swaps in a new dict."""

    def __init__(self):
        self._values: Dict[str, str] = {}

    def _read(self) -> Dict[str, str]:
        return self._values

    def _write(self, values: Optional[Dict[str, str]]) -> None:
        self._values = dict(values) if values else {}


class FileSessionStore(KeyValueSessionStore):
    """
    Durable store backed by a JSON file.

    Writes go to a sibling temp file which then replaces the target, so the
    file always holds either the old or the new key set.
    """

    def __init__(self, path: Union[str, pathlib.Path]):
        self.path = pathlib.Path(path)

    def _read(self) -> Dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}

        try:
            data = json.loads(raw) if raw else {}
        except ValueError:
            logger.warning(f"Session file {self.path} is corrupt; ignoring it")
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items() if v is not None}

    def _write(self, values: Optional[Dict[str, str]]) -> None:
        if not values:
            self.path.unlink(missing_ok=True)
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(values, indent=2), encoding="utf-8")
        tmp_path.replace(self.path)


__all__ = [
    "SessionStore",
    "KeyValueSessionStore",
    "MemorySessionStore",
    "FileSessionStore",
]
