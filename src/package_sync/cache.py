"""
TTL cache for expensive GitHub lookups.

Entries live in a mutable mapping (a plain dict by default, or a store the
host shares with other subsystems). Keys are namespaced with a prefix so
``clear_all`` can remove everything this core created without touching
anything else in the mapping. Expiry is only checked on read.
"""

import threading
import time
from typing import Any, Callable, MutableMapping, Optional, Tuple

from src.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_PREFIX = 'pkgsync_'
DEFAULT_TTL = 3600


class TTLCache:
    """Key/value cache with a per-entry expiry time."""

    def __init__(self, default_ttl: int = DEFAULT_TTL, storage: Optional[MutableMapping[str, Any]] = None,
                 prefix: str = DEFAULT_PREFIX, clock: Callable[[], float] = time.time):
        """
        Args:
            default_ttl: Lifetime in seconds used when ``set`` gets no ttl
            storage: Backing mapping; a private dict when omitted
            prefix: Namespace prepended to every key
            clock: Time source, injectable for tests
        """
        self.default_ttl = default_ttl
        self.prefix = prefix
        self._storage = storage if storage is not None else {}
        self._clock = clock
        self._lock = threading.RLock()

    def _full_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Tuple[Any, bool]:
        """
        Look up ``key``.

        Returns:
            ``(value, True)`` on a hit, ``(None, False)`` on a miss. An expired
            entry counts as a miss and is deleted.
        """
        full_key = self._full_key(key)
        with self._lock:
            entry = self._storage.get(full_key)
            if entry is None:
                logger.debug(f"Cache miss: {key}")
                return None, False

            expires_at, value = entry
            if self._clock() >= expires_at:
                logger.debug(f"Cache entry expired: {key}")
                self._storage.pop(full_key, None)
                return None, False

            logger.debug(f"Cache hit: {key}")
            return value, True

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store ``value`` under ``key``, replacing any existing entry."""
        if ttl is None or ttl <= 0:
            ttl = self.default_ttl
        with self._lock:
            self._storage[self._full_key(key)] = (self._clock() + ttl, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._storage.pop(self._full_key(key), None)

    def clear_all(self) -> int:
        """
        Remove every entry created by this cache.

        Returns:
            Number of entries removed
        """
        with self._lock:
            keys = [k for k in list(self._storage.keys()) if isinstance(k, str) and k.startswith(self.prefix)]
            for k in keys:
                self._storage.pop(k, None)
        logger.info(f"Cleared {len(keys)} cached entries")
        return len(keys)

    def __contains__(self, key: str) -> bool:
        return self.get(key)[1]
