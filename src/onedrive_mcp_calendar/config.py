"""YAML configuration loading for the calendar store."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .store import (
    DEFAULT_BASE_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    DEFAULT_PATH,
    RemoteEventStore,
)

logger = logging.getLogger("onedrive-mcp-calendar")

CONFIG_PATH = os.environ.get("CALENDAR_CONFIG", "/config/calendar_store.yaml")

VALID_TYPES = {"onedrive", "memory"}
DEFAULT_ENDPOINT = "https://graph.microsoft.com/v1.0"
DEFAULT_TOKEN_ENV = "ONEDRIVE_ACCESS_TOKEN"


@dataclass
class StoreSettings:
    """Where the calendar document lives and how writes are retried."""

    type: str = "onedrive"  # onedrive, memory
    endpoint: str = DEFAULT_ENDPOINT
    path: str = DEFAULT_PATH
    token_env: str | None = DEFAULT_TOKEN_ENV
    token_file: str | None = None
    timeout: float = 10.0
    conditional_writes: bool = True
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY


def _number(section: dict[str, Any], key: str, default: float, name: str) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{name}' must be a number, got {value!r}")
    return float(value)


def load_config() -> StoreSettings:
    """Load and validate calendar_store.yaml.

    Returns defaults if the file does not exist.
    """
    path = CONFIG_PATH
    if not os.path.isfile(path):
        logger.warning("Config file not found: %s, using defaults", path)
        return StoreSettings()

    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a mapping")

    storage = raw.get("storage") or {}
    retry = raw.get("retry") or {}
    if not isinstance(storage, dict) or not isinstance(retry, dict):
        raise ValueError("'storage' and 'retry' must be mappings")

    store_type = str(storage.get("type", "onedrive")).strip().lower()
    if store_type not in VALID_TYPES:
        raise ValueError(f"Unknown storage type '{store_type}'. Must be one of: {VALID_TYPES}")

    doc_path = str(storage.get("path", DEFAULT_PATH)).strip().strip("/")
    if not doc_path:
        raise ValueError("'storage.path' must not be empty")

    timeout = _number(storage, "timeout", 10.0, "storage.timeout")
    if timeout <= 0:
        raise ValueError("'storage.timeout' must be positive")

    max_attempts = retry.get("max_attempts", DEFAULT_MAX_ATTEMPTS)
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
        raise ValueError(f"'retry.max_attempts' must be an integer >= 1, got {max_attempts!r}")

    base_delay = _number(retry, "base_delay", DEFAULT_BASE_DELAY, "retry.base_delay")
    max_delay = _number(retry, "max_delay", DEFAULT_MAX_DELAY, "retry.max_delay")
    if base_delay < 0 or max_delay < 0:
        raise ValueError("Retry delays must not be negative")
    if max_delay < base_delay:
        raise ValueError("'retry.max_delay' must be >= 'retry.base_delay'")

    token_env = storage.get("token_env")
    token_file = storage.get("token_file")
    if store_type == "onedrive":
        if not token_env and not token_file:
            raise ValueError("Storage 'onedrive' requires 'token_env' or 'token_file'")
        # Tokens are refreshed externally; a missing one only fails on first request.
        if token_env and not os.environ.get(token_env):
            logger.warning("Env var '%s' not set", token_env)

    return StoreSettings(
        type=store_type,
        endpoint=str(storage.get("endpoint", DEFAULT_ENDPOINT)),
        path=doc_path,
        token_env=token_env,
        token_file=token_file,
        timeout=timeout,
        conditional_writes=bool(storage.get("conditional_writes", True)),
        max_attempts=max_attempts,
        base_delay=base_delay,
        max_delay=max_delay,
    )


def build_store(settings: StoreSettings) -> RemoteEventStore:
    """Create the backend and store described by the settings."""
    if settings.type == "memory":
        from .backends.memory import InMemoryBackend
        backend = InMemoryBackend(conditional_writes=settings.conditional_writes)
    elif settings.type == "onedrive":
        from .backends.graph import GraphDriveBackend
        from .tokens import EnvTokenSource, FileTokenSource
        if settings.token_file:
            tokens = FileTokenSource(settings.token_file)
        else:
            tokens = EnvTokenSource(settings.token_env or DEFAULT_TOKEN_ENV)
        backend = GraphDriveBackend(
            tokens,
            endpoint=settings.endpoint,
            timeout=settings.timeout,
            conditional_writes=settings.conditional_writes,
        )
    else:
        raise ValueError(f"Unknown storage type: {settings.type}")

    return RemoteEventStore(
        backend,
        path=settings.path,
        max_attempts=settings.max_attempts,
        base_delay=settings.base_delay,
        max_delay=settings.max_delay,
    )
