"""
Key-value backing store for rate-limit counters, brute-force counters and
server-side sessions.

Two implementations share one async interface: an in-process store for a
single instance and tests, and a Redis store when several workers must see
the same counters.
"""

import json
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from storefront.settings import Settings

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class CounterState:
    """Counter value and seconds left before the window expires."""

    count: int
    ttl_remaining: float


class KeyValueStore(ABC):
    """Async key-value store with per-key expiry."""

    @abstractmethod
    async def increment(
        self, key: str, ttl_seconds: int, *, refresh_ttl: bool = False
    ) -> CounterState:
        """Atomically add one to ``key``.

        An absent or expired key starts at 1 with a fresh ``ttl_seconds``
        window. With ``refresh_ttl`` every increment restarts the window
        (sliding); otherwise the window is fixed at creation.
        """

    @abstractmethod
    async def get_counter(self, key: str) -> CounterState | None:
        """Current counter state, or None when absent or expired."""

    @abstractmethod
    async def get_json(self, key: str) -> Any | None:
        """Decoded JSON value, or None when absent or expired."""

    @abstractmethod
    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Store a JSON-serialisable value with expiry."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove a key. Returns True if something was removed."""

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Remove every key starting with ``prefix``. Returns the count removed."""

    async def health_check(self) -> bool:
        """True when the backend is reachable."""
        return True

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""


@dataclass(slots=True)
class _Entry:
    value: Any
    expires_at: float


class MemoryKeyValueStore(KeyValueStore):
    """In-process store.

    An entry lives until its window has been exceeded: at exactly
    ``expires_at`` it still counts. Reads treat expired entries as absent,
    and writes sweep the whole map at most once per ``cleanup_interval``
    seconds so keys that are never touched again do not accumulate.
    """

    def __init__(self, clock: Clock = time.monotonic, cleanup_interval: float = 60.0) -> None:
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self.cleanup_interval = cleanup_interval
        self._last_cleanup = clock()

    def _live(self, key: str, now: float) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at < now:
            del self._entries[key]
            return None
        return entry

    def _purge_expired(self, now: float) -> int:
        doomed = [key for key, entry in self._entries.items() if entry.expires_at < now]
        for key in doomed:
            del self._entries[key]
        self._last_cleanup = now
        if doomed:
            logger.debug("store.expired_purged", count=len(doomed), remaining=len(self._entries))
        return len(doomed)

    def _maybe_cleanup(self, now: float) -> None:
        if now - self._last_cleanup >= self.cleanup_interval:
            self._purge_expired(now)

    def purge_expired(self) -> int:
        """Drop every expired entry now. Returns the count removed."""
        with self._lock:
            return self._purge_expired(self._clock())

    @property
    def held(self) -> int:
        """Entries physically held, expired or not."""
        with self._lock:
            return len(self._entries)

    async def increment(
        self, key: str, ttl_seconds: int, *, refresh_ttl: bool = False
    ) -> CounterState:
        with self._lock:
            now = self._clock()
            self._maybe_cleanup(now)
            entry = self._live(key, now)
            if entry is None:
                entry = _Entry(value=1, expires_at=now + ttl_seconds)
                self._entries[key] = entry
            else:
                entry.value = int(entry.value) + 1
                if refresh_ttl:
                    entry.expires_at = now + ttl_seconds
            return CounterState(count=entry.value, ttl_remaining=entry.expires_at - now)

    async def get_counter(self, key: str) -> CounterState | None:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                return None
            return CounterState(count=int(entry.value), ttl_remaining=entry.expires_at - now)

    async def get_json(self, key: str) -> Any | None:
        with self._lock:
            entry = self._live(key, self._clock())
            if entry is None:
                return None
            raw = entry.value
        return json.loads(raw)

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        raw = json.dumps(value)
        with self._lock:
            now = self._clock()
            self._maybe_cleanup(now)
            self._entries[key] = _Entry(value=raw, expires_at=now + ttl_seconds)

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    async def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for entry in self._entries.values() if entry.expires_at >= now)


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store. Counters use INCR so concurrent workers never lose a hit."""

    def __init__(
        self,
        client: "Redis[Any]",
        key_prefix: str = "storefront",
        *,
        owns_client: bool = False,
    ) -> None:
        self._client = client
        self._owns_client = owns_client
        self._prefix = f"{key_prefix}:" if key_prefix else ""

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def increment(
        self, key: str, ttl_seconds: int, *, refresh_ttl: bool = False
    ) -> CounterState:
        full_key = self._key(key)
        ttl_ms = ttl_seconds * 1000
        async with self._client.pipeline(transaction=True) as pipe:
            if refresh_ttl:
                pipe.incr(full_key)
                pipe.pexpire(full_key, ttl_ms)
                pipe.pttl(full_key)
                count, _, pttl = await pipe.execute()
            else:
                # Creates the key with its window only if it does not exist yet.
                pipe.set(full_key, 0, nx=True, px=ttl_ms)
                pipe.incr(full_key)
                pipe.pttl(full_key)
                _, count, pttl = await pipe.execute()
        return CounterState(count=int(count), ttl_remaining=_pttl_seconds(pttl, ttl_seconds))

    async def get_counter(self, key: str) -> CounterState | None:
        full_key = self._key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.get(full_key)
            pipe.pttl(full_key)
            value, pttl = await pipe.execute()
        if value is None:
            return None
        return CounterState(count=int(value), ttl_remaining=_pttl_seconds(pttl, 0))

    async def get_json(self, key: str) -> Any | None:
        raw = await self._client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self._client.set(self._key(key), json.dumps(value), px=ttl_seconds * 1000)

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(self._key(key)))

    async def delete_prefix(self, prefix: str) -> int:
        keys = [k async for k in self._client.scan_iter(match=f"{self._key(prefix)}*")]
        if not keys:
            return 0
        return int(await self._client.delete(*keys))

    async def health_check(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.error("redis.health_check_failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _pttl_seconds(pttl: int | None, fallback: float) -> float:
    # PTTL returns -1 (no expiry) or -2 (missing) for keys without a live window.
    if pttl is None or pttl < 0:
        return float(fallback)
    return pttl / 1000.0


def build_store(settings: Settings, redis_client: "Redis[Any] | None" = None) -> KeyValueStore:
    """Pick the store implementation for the configured deployment."""
    if settings.redis.enabled:
        owns_client = redis_client is None
        if redis_client is None:
            redis_client = Redis.from_url(
                settings.redis.redis_url,
                decode_responses=True,
                max_connections=settings.redis.max_connections,
            )
        logger.info("store.initialized", backend="redis", key_prefix=settings.redis.key_prefix)
        return RedisKeyValueStore(
            redis_client, key_prefix=settings.redis.key_prefix, owns_client=owns_client
        )

    logger.info("store.initialized", backend="memory")
    return MemoryKeyValueStore()


__all__ = [
    "CounterState",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "RedisKeyValueStore",
    "build_store",
]
