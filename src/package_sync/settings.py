"""
Settings for the package sync core.

The host owns persistence of user preferences; this module reads them
through a small key/value ``SettingsStore`` interface. Two stores are
provided: an in-memory one and a JSON file laid out like
``config_secrets.json`` (``{"github": {"api_token": ...}}``).
"""

import hashlib
import json
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from src.common.file_utils import atomic_write_text
from src.logging_config import get_logger

logger = get_logger(__name__)

HOUR_IN_SECONDS = 3600

TOKEN_KEY = 'github.api_token'
CACHE_DURATION_KEY = 'cache.duration_hours'
TOKEN_PLACEHOLDER = 'YOUR_GITHUB_PERSONAL_ACCESS_TOKEN'
TOKEN_ENV_VAR = 'GITHUB_TOKEN'

DEFAULT_CACHE_DURATION_HOURS = 12
RESULTS_PER_PAGE = 10


class SettingsStore(ABC):
    """Host key/value settings interface. Keys are dotted paths."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...


class MemorySettingsStore(SettingsStore):
    """Settings kept in a dict; used by tests and embedded hosts."""

    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self._values = dict(values or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value


class JsonSettingsStore(SettingsStore):
    """
    Settings persisted as nested JSON.

    ``get('github.api_token')`` reads ``data['github']['api_token']``.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read settings file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        node: Any = self._load()
        for part in key.split('.'):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            node = data
            parts = key.split('.')
            for part in parts[:-1]:
                child = node.get(part)
                if not isinstance(child, dict):
                    child = {}
                    node[part] = child
                node = child
            node[parts[-1]] = value
            atomic_write_text(self.path, json.dumps(data, indent=2))


def token_fingerprint(token: Optional[str]) -> str:
    """Short, non-reversible identifier for a token, safe for cache keys and logs."""
    if not token:
        return 'anon'
    return hashlib.sha256(token.encode('utf-8')).hexdigest()[:12]


def _clean_token(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or value == TOKEN_PLACEHOLDER:
        return None
    return value


@dataclass
class SyncSettings:
    """Resolved configuration for one service instance."""

    access_token: Optional[str] = None
    cache_duration_hours: int = DEFAULT_CACHE_DURATION_HOURS
    results_per_page: int = RESULTS_PER_PAGE
    api_base_url: str = 'https://api.github.com'
    html_base_url: str = 'https://github.com'
    user_agent: str = 'hub2wp-package-sync/1.0'
    request_timeout: float = 15
    scrape_timeout: float = 10
    download_timeout: float = 300
    stale_after: int = 12 * HOUR_IN_SECONDS
    rate_limit_cooldown: int = HOUR_IN_SECONDS
    plugins_dir: str = 'plugins'
    themes_dir: str = 'themes'
    default_topic: str = 'wordpress-plugin'

    @property
    def cache_ttl(self) -> int:
        """Cache lifetime in seconds."""
        return max(1, self.cache_duration_hours) * HOUR_IN_SECONDS

    @classmethod
    def from_store(cls, store: SettingsStore, **overrides: Any) -> 'SyncSettings':
        """
        Build settings from the host store.

        The ``GITHUB_TOKEN`` environment variable takes precedence over the
        stored token. A missing or invalid cache duration falls back to the
        default of 12 hours; values below one hour are raised to one.
        """
        token = _clean_token(os.environ.get(TOKEN_ENV_VAR)) or _clean_token(store.get(TOKEN_KEY))

        raw_duration = store.get(CACHE_DURATION_KEY, DEFAULT_CACHE_DURATION_HOURS)
        try:
            duration = int(raw_duration)
        except (TypeError, ValueError):
            logger.warning(f"Invalid cache duration {raw_duration!r}, using {DEFAULT_CACHE_DURATION_HOURS}h")
            duration = DEFAULT_CACHE_DURATION_HOURS
        duration = max(1, duration)

        settings = cls(access_token=token, cache_duration_hours=duration)
        for name, value in overrides.items():
            if not hasattr(settings, name):
                raise TypeError(f"Unknown setting: {name}")
            setattr(settings, name, value)
        return settings


def save_access_token(store: SettingsStore, token: Optional[str]) -> None:
    """Persist (or clear, with an empty value) the GitHub access token."""
    store.set(TOKEN_KEY, (token or '').strip())


def save_cache_duration(store: SettingsStore, hours: int) -> None:
    """Persist the cache-duration preference in hours (minimum 1)."""
    store.set(CACHE_DURATION_KEY, max(1, abs(int(hours))))
