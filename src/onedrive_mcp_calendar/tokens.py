"""Bearer token sources.

Tokens are obtained and refreshed outside this package; a source only hands
out whatever token is current at the time of the request.
"""

from __future__ import annotations

import json
import os
from typing import Protocol, runtime_checkable

from .errors import AuthError


@runtime_checkable
class TokenSource(Protocol):
    """Supplies the bearer token for the next request."""

    def current_token(self) -> str: ...


class StaticTokenSource:
    def __init__(self, token: str):
        self._token = token

    def current_token(self) -> str:
        if not self._token:
            raise AuthError("No access token configured")
        return self._token


class EnvTokenSource:
    """Reads the token from an environment variable on every call."""

    def __init__(self, env_var: str):
        self._env_var = env_var

    def current_token(self) -> str:
        token = os.environ.get(self._env_var, "").strip()
        if not token:
            raise AuthError(f"Access token not set ({self._env_var})")
        return token


class FileTokenSource:
    """Reads the token from a file on every call.

    The file holds either the raw token or a JSON object with an
    ``access_token`` key.
    """

    def __init__(self, path: str):
        self._path = path

    def current_token(self) -> str:
        if not os.path.isfile(self._path):
            raise AuthError(f"Token file not found: {self._path}")
        with open(self._path, "r") as f:
            content = f.read().strip()

        token = content
        if content.startswith("{"):
            try:
                token = str(json.loads(content).get("access_token", "")).strip()
            except json.JSONDecodeError as exc:
                raise AuthError(f"Token file is not valid JSON: {self._path}") from exc
        if not token:
            raise AuthError(f"Token file is empty: {self._path}")
        return token
