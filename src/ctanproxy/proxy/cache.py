"""Cache planes: the URL-keyed edge cache, versioned object-store keys and
the background task set used for detached write-backs."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, Generic, Optional, Set, Tuple, TypeVar

from yarl import URL

from ..common.logging_utils import extra_context
from ..constants import Constants
from .tds import rules_fingerprint

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_AGE = re.compile(r"max-age=(\d+)")


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with TTL."""

    value: T
    expires_at: float
    created_at: float = field(default_factory=time.time)

    def is_expired(self) -> bool:
        """Check if this entry has expired."""
        return time.time() > self.expires_at


def cache_control_for(key: str) -> str:
    """Cache-Control value for an object key.

    JSON manifests change when upstream registries change and get a short
    window; everything else is invalidated through the version parameter
    and is treated as immutable.
    """
    if key.endswith(".json"):
        return Constants.SHORT_CACHE_CONTROL
    return Constants.IMMUTABLE_CACHE_CONTROL


def max_age_of(headers: Dict[str, str], default: int = 0) -> int:
    """Extract ``max-age`` seconds from a Cache-Control header."""
    match = _MAX_AGE.search(headers.get("Cache-Control", ""))
    return int(match.group(1)) if match else default


class CacheKeys:
    """Builds cache keys from the configured version epochs.

    The processed-package namespace normally uses the manual epoch as-is.
    With ``derive`` set, a fingerprint of the TDS classification rules is
    appended so a rule change produces fresh keys even without a bump.
    """

    def __init__(
        self,
        edge_version: str = Constants.EDGE_CACHE_VERSION,
        ctan_version: str = Constants.CTAN_CACHE_VERSION,
        derive: bool = False,
    ):
        self.edge_version = edge_version
        self.ctan_version = f"{ctan_version}-{rules_fingerprint()}" if derive else ctan_version

    @classmethod
    def from_config(cls, config: Any) -> "CacheKeys":
        return cls(
            edge_version=config.edge_cache_version,
            ctan_version=config.ctan_cache_version,
            derive=config.derive_cache_version,
        )

    def processed(self, name: str) -> str:
        return f"{Constants.CTAN_CACHE_PREFIX}/{self.ctan_version}/{name}.json"

    def raw_archive(self, name: str) -> str:
        return f"{Constants.TEXLIVE_CACHE_PREFIX}/{name}.tar.xz"

    def edge(self, url: URL) -> str:
        """Request URL with the edge version injected as a query parameter."""
        return str(url.update_query({Constants.EDGE_CACHE_PARAM: self.edge_version}))


class EdgeCache:
    """Short-lived response cache keyed by versioned request URL.

    Byte-bounded; oldest entries are evicted first. Entry lifetime comes
    from the cached response's own ``max-age``.
    """

    def __init__(self, max_bytes: int = Constants.EDGE_CACHE_MAX_BYTES, max_entries: int = 1000):
        self._cache: Dict[str, CacheEntry[bytes]] = {}
        self._headers_cache: Dict[str, Dict[str, str]] = {}
        self._max_entries = max_entries
        self._max_bytes = max_bytes
        self._current_bytes = 0
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[Tuple[bytes, Dict[str, str]]]:
        """Get a cached response.

        Args:
            key: Versioned request URL.

        Returns:
            Tuple of (body bytes, headers dict) or None if not found/expired.
        """
        entry = self._cache.get(key)
        if entry is None or entry.is_expired():
            if entry is not None:
                self._remove_entry(key)
            self._misses += 1
            return None
        self._hits += 1
        return entry.value, dict(self._headers_cache.get(key, {}))

    async def put(self, key: str, body: bytes, headers: Dict[str, str]) -> None:
        """Cache a response for its declared ``max-age``.

        Responses without a positive max-age, or larger than a tenth of the
        byte limit, are not cached.
        """
        ttl = max_age_of(headers)
        body_size = len(body)
        if ttl <= 0 or body_size > self._max_bytes // 10:
            return

        if key in self._cache:
            self._remove_entry(key)
        while self._current_bytes + body_size > self._max_bytes and self._cache:
            self._evict_oldest(1)

        self._cache[key] = CacheEntry(value=bytes(body), expires_at=time.time() + ttl)
        self._headers_cache[key] = dict(headers)
        self._current_bytes += body_size

        if len(self._cache) > self._max_entries:
            self._evict_oldest(max(1, self._max_entries // 10))

    def clear(self) -> None:
        """Clear all cached responses."""
        self._cache.clear()
        self._headers_cache.clear()
        self._current_bytes = 0

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        expired_count = sum(1 for e in self._cache.values() if e.is_expired())
        return {
            "total_entries": len(self._cache),
            "expired_entries": expired_count,
            "current_bytes": self._current_bytes,
            "max_bytes": self._max_bytes,
            "hits": self._hits,
            "misses": self._misses,
        }

    def _remove_entry(self, key: str) -> None:
        entry = self._cache.pop(key, None)
        self._headers_cache.pop(key, None)
        if entry:
            self._current_bytes -= len(entry.value)

    def _evict_oldest(self, count: int) -> None:
        sorted_keys = sorted(self._cache, key=lambda k: self._cache[k].created_at)
        for key in sorted_keys[:count]:
            self._remove_entry(key)


class BackgroundTasks:
    """Detached tasks that outlive the response that spawned them.

    Best effort: failures are logged and never reach the client. The set
    holds strong references until each task finishes, and ``drain`` lets
    shutdown (and tests) wait for pending work.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0

    def spawn(self, coro: Awaitable[Any], name: str = "background") -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, name))
        return task

    def _on_done(self, task: asyncio.Task, name: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failures += 1
            logger.warning(
                "Background task %s failed: %s",
                name,
                exc,
                extra=extra_context(event="background_failure", component="cache", task=name),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every task spawned so far (and any they spawn)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
