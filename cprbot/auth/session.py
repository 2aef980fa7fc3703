"""Session/token providers — the login boundary.

Interactive broker login happens outside the bot; it leaves an access
token behind.  The engine only asks "is there a token right now?" and
treats ``None`` as "not logged in".
"""

import json
import logging
import pathlib
from typing import Optional, Protocol, runtime_checkable

logger = logging.getLogger("cprbot")


@runtime_checkable
class SessionProvider(Protocol):
    """Interface every token source must satisfy."""

    def current_access_token(self) -> Optional[str]:
        """Return the active access token, or ``None`` if not logged in."""
        ...


class StaticTokenProvider:
    """Serves a fixed token (e.g. from ``KITE_ACCESS_TOKEN``)."""

    def __init__(self, token: Optional[str]) -> None:
        self._token = token or None

    def current_access_token(self) -> Optional[str]:
        return self._token


class FileTokenProvider:
    """Reads ``{"access_token": "..."}`` from a JSON file on every call.

    The login tool rewrites the file each morning, so the file is never
    cached.  A missing or malformed file means "not logged in".
    """

    def __init__(self, path: str | pathlib.Path) -> None:
        self._path = pathlib.Path(path)

    @property
    def path(self) -> pathlib.Path:
        return self._path

    def current_access_token(self) -> Optional[str]:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable token file %s: %s", self._path, exc)
            return None
        token = data.get("access_token") if isinstance(data, dict) else None
        return token or None


class ChainedTokenProvider:
    """Returns the first token any of *providers* yields."""

    def __init__(self, *providers: SessionProvider) -> None:
        self._providers = providers

    def current_access_token(self) -> Optional[str]:
        for provider in self._providers:
            token = provider.current_access_token()
            if token:
                return token
        return None
