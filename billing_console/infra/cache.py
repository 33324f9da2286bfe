"""TTL-keyed cache service injected into resolvers and adapters."""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from functools import lru_cache
from typing import Any, Protocol

from redis import Redis

from billing_console.infra.config import CACHE_BACKEND, CACHE_TTL_SECONDS, REDIS_URL


class TtlCache(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear_prefix(self, prefix: str) -> None: ...


class MemoryTtlCache:
    def __init__(
        self,
        *,
        default_ttl_seconds: int = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ttl = self._default_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear_prefix(self, prefix: str) -> None:
        with self._lock:
            for key in [item for item in self._entries if item.startswith(prefix)]:
                del self._entries[key]


class RedisTtlCache:
    """Values are stored as JSON, so callers cache plain JSON-compatible data."""

    def __init__(
        self,
        client: Redis,
        *,
        namespace: str = "billing-console",
        default_ttl_seconds: int = CACHE_TTL_SECONDS,
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._default_ttl_seconds = default_ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def get(self, key: str) -> Any | None:
        raw = self._client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ttl = self._default_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._client.set(self._key(key), json.dumps(value), ex=max(ttl, 1))

    def delete(self, key: str) -> None:
        self._client.delete(self._key(key))

    def clear_prefix(self, prefix: str) -> None:
        keys = list(self._client.scan_iter(match=f"{self._key(prefix)}*"))
        if keys:
            self._client.delete(*keys)


def cached(cache: TtlCache, key: str, loader: Callable[[], Any], ttl_seconds: int | None = None) -> Any:
    value = cache.get(key)
    if value is not None:
        return value
    value = loader()
    if value is not None:
        cache.set(key, value, ttl_seconds)
    return value


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except Exception:
        return False


def build_cache(backend: str | None = None) -> TtlCache:
    selected = (backend or CACHE_BACKEND).strip().lower()
    if selected == "redis":
        return RedisTtlCache(get_redis())
    if selected == "memory":
        return MemoryTtlCache()
    raise ValueError(f"unsupported cache backend: {selected}")


@lru_cache(maxsize=1)
def get_cache() -> TtlCache:
    return build_cache()
