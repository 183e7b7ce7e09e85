"""Key-value cache with TTL, circuit breaker, and optional compression.

The cache is an optimization only: every failure degrades to a miss (reads)
or ``False`` (writes) and never propagates into the search path.
"""

import hashlib
import json
import logging
import re
import time
import zlib
from collections import OrderedDict
from typing import Any, Callable, Optional, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from keeper.core.config import CacheConfig

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

_RAW_PREFIX = b"j:"
_ZLIB_PREFIX = b"z:"
_MIN_COMPRESS_BYTES = 100


# ── Contract ─────────────────────────────────────────────────────────


class CacheClient(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(
        self, key: str, value: Any, ttl: Optional[int] = None, compress: bool = False
    ) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def exists(self, key: str) -> bool: ...


# ── Key Builders ─────────────────────────────────────────────────────


_SPACE_RE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    """Lowercase and collapse whitespace."""
    return _SPACE_RE.sub(" ", query.lower()).strip()


def _digest(*parts: object) -> str:
    blob = "\x1f".join(str(p) for p in parts).encode()
    return hashlib.sha256(blob).hexdigest()[:24]


def search_key(source: str, query: str, max_results: int, mode: str = "search", **extra) -> str:
    """Cache key for a search result envelope."""
    extras = [f"{k}={extra[k]}" for k in sorted(extra) if extra[k] is not None]
    digest = _digest(normalize_query(query), *extras)
    return f"search:{source}:{mode}:{max_results}:{digest}"


def book_key(source: str, original_id: str) -> str:
    return f"book:{source}:{original_id}"


def recommendation_key(prompt: str, max_recommendations: int, exclude: list[str] | None = None) -> str:
    excluded = ",".join(sorted(normalize_query(e) for e in exclude or []))
    return f"ai:recs:{_digest(normalize_query(prompt), max_recommendations, excluded)}"


# ── Serialization ────────────────────────────────────────────────────


def encode_value(value: Any, compress: bool = False, threshold: int = 1024) -> bytes:
    """JSON-encode, zlib-compressing large payloads."""
    data = json.dumps(value, separators=(",", ":"), sort_keys=True).encode()
    if (compress or len(data) > threshold) and len(data) > _MIN_COMPRESS_BYTES:
        return _ZLIB_PREFIX + zlib.compress(data)
    return _RAW_PREFIX + data


def decode_value(raw: bytes) -> Any:
    if isinstance(raw, str):
        raw = raw.encode()
    if raw.startswith(_ZLIB_PREFIX):
        return json.loads(zlib.decompress(raw[len(_ZLIB_PREFIX):]))
    if raw.startswith(_RAW_PREFIX):
        return json.loads(raw[len(_RAW_PREFIX):])
    return json.loads(raw)


# ── Circuit Breaker ──────────────────────────────────────────────────


class CircuitBreaker:
    """Consecutive-failure circuit breaker with an injectable clock.

    Opens after ``threshold`` consecutive failures. While open, ``allow()``
    returns False until ``reset_timeout`` seconds have passed; then it
    half-opens and lets trial calls through. A trial success closes the
    circuit, a trial failure re-opens it for another cooldown.
    """

    def __init__(
        self,
        threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Clock = time.monotonic,
        name: str = "cache",
    ):
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock
        self.failure_count = 0
        self.opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self.opened_at is None:
            return "closed"
        if self._clock() - self.opened_at >= self.reset_timeout:
            return "half-open"
        return "open"

    def allow(self) -> bool:
        return self.state != "open"

    def record_success(self) -> None:
        if self.opened_at is not None:
            logger.info("%s circuit breaker closed", self.name)
        self.failure_count = 0
        self.opened_at = None

    def record_failure(self) -> None:
        self.failure_count += 1
        half_open = self.opened_at is not None
        if half_open or self.failure_count >= self.threshold:
            self.opened_at = self._clock()
            logger.warning(
                "%s circuit breaker opened after %d consecutive failures",
                self.name,
                self.failure_count,
            )


# ── Redis ────────────────────────────────────────────────────────────


class RedisCache:
    """Redis-backed cache guarded by a circuit breaker."""

    def __init__(
        self,
        client: redis.Redis,
        breaker: CircuitBreaker | None = None,
        compression_threshold: int = 1024,
    ):
        self._client = client
        self.breaker = breaker or CircuitBreaker(name="redis")
        self.compression_threshold = compression_threshold

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisCache":
        return cls(redis.from_url(url, decode_responses=False), **kwargs)

    async def get(self, key: str) -> Optional[Any]:
        if not self.breaker.allow():
            return None
        try:
            raw = await self._client.get(key)
        except (RedisError, OSError) as exc:
            self.breaker.record_failure()
            logger.warning("Redis GET failed for %s: %s", key, exc)
            return None
        self.breaker.record_success()
        if raw is None:
            return None
        try:
            return decode_value(raw)
        except (ValueError, zlib.error) as exc:
            logger.warning("Dropping undecodable cache entry %s: %s", key, exc)
            return None

    async def set(
        self, key: str, value: Any, ttl: Optional[int] = None, compress: bool = False
    ) -> bool:
        if not self.breaker.allow():
            return False
        try:
            payload = encode_value(value, compress, self.compression_threshold)
        except (TypeError, ValueError) as exc:
            logger.warning("Value for %s is not serializable: %s", key, exc)
            return False
        try:
            if ttl:
                await self._client.setex(key, ttl, payload)
            else:
                await self._client.set(key, payload)
        except (RedisError, OSError) as exc:
            self.breaker.record_failure()
            logger.warning("Redis SET failed for %s: %s", key, exc)
            return False
        self.breaker.record_success()
        return True

    async def delete(self, key: str) -> bool:
        if not self.breaker.allow():
            return False
        try:
            removed = await self._client.delete(key)
        except (RedisError, OSError) as exc:
            self.breaker.record_failure()
            logger.warning("Redis DELETE failed for %s: %s", key, exc)
            return False
        self.breaker.record_success()
        return removed > 0

    async def exists(self, key: str) -> bool:
        if not self.breaker.allow():
            return False
        try:
            count = await self._client.exists(key)
        except (RedisError, OSError) as exc:
            self.breaker.record_failure()
            logger.warning("Redis EXISTS failed for %s: %s", key, exc)
            return False
        self.breaker.record_success()
        return count > 0

    async def close(self) -> None:
        await self._client.aclose()


# ── In-Memory ────────────────────────────────────────────────────────


class MemoryCache:
    """Process-local cache for development and tests.

    Expired entries are swept on every write. Past ``max_entries`` the
    least recently used entries are evicted.
    """

    def __init__(self, clock: Clock = time.monotonic, default_ttl: int = 900, max_entries: int = 1000):
        self._clock = clock
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._entries: OrderedDict[str, tuple[bytes, float]] = OrderedDict()

    def _sweep(self) -> None:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted %s from in-memory cache", evicted)

    def _live(self, key: str) -> Optional[bytes]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        payload, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return payload

    async def get(self, key: str) -> Optional[Any]:
        payload = self._live(key)
        return None if payload is None else decode_value(payload)

    async def set(
        self, key: str, value: Any, ttl: Optional[int] = None, compress: bool = False
    ) -> bool:
        try:
            payload = encode_value(value, compress)
        except (TypeError, ValueError) as exc:
            logger.warning("Value for %s is not serializable: %s", key, exc)
            return False
        self._entries[key] = (payload, self._clock() + (ttl or self._default_ttl))
        self._entries.move_to_end(key)
        self._sweep()
        return True

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    def __len__(self) -> int:
        return len(self._entries)


def build_cache(config: CacheConfig, clock: Clock = time.monotonic) -> CacheClient:
    """Redis when a URL is configured, otherwise in-memory."""
    if config.redis_url:
        logger.info("Using Redis cache")
        breaker = CircuitBreaker(
            threshold=config.circuit_threshold,
            reset_timeout=config.circuit_reset_timeout,
            clock=clock,
            name="redis",
        )
        return RedisCache.from_url(
            config.redis_url,
            breaker=breaker,
            compression_threshold=config.compression_threshold,
        )
    logger.info("No REDIS_URL configured, using in-memory cache")
    return MemoryCache(clock=clock, max_entries=config.memory_max_entries)
