from __future__ import annotations

import asyncio
import inspect
import json
import logging
import threading
import typing
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Callable

from reminder_service.config import settings
from reminder_service.core.time_provider import default_time_provider
from reminder_service.metrics import record_cache_event


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return default_time_provider.utcnow()


def cache_key(prefix: str, identifier: str | int | None = None) -> str:
    if identifier is None or identifier == '':
        return prefix
    return f"{prefix}:{identifier}"


def _normalize_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ('1', 'true', 'yes', 'y', 'on')


class CacheBackend:
    def get(self, key: str) -> Any | None:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: int) -> None:
        raise NotImplementedError

    def add(self, key: str, value: Any, ttl: int) -> bool:
        """Set only when absent. Returns whether the value was stored."""
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def delete_prefix(self, prefix: str) -> None:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError


class MemoryCacheBackend(CacheBackend):
    def __init__(self, sweep_interval_seconds: int = 60) -> None:
        self._lock = threading.Lock()
        self._store: dict[str, tuple[datetime, Any]] = {}
        self._sweep_interval = timedelta(seconds=max(1, int(sweep_interval_seconds)))
        self._next_sweep_at: datetime | None = None

    def _sweep_locked(self, now: datetime) -> int:
        expired = [key for key, (expires_at, _) in self._store.items() if now >= expires_at]
        for key in expired:
            self._store.pop(key, None)
        self._next_sweep_at = now + self._sweep_interval
        return len(expired)

    def _maybe_sweep_locked(self, now: datetime) -> None:
        # Writes drive the sweep; keys carrying a session start are never read again after expiry.
        if self._next_sweep_at is None:
            self._next_sweep_at = now + self._sweep_interval
        elif now >= self._next_sweep_at:
            removed = self._sweep_locked(now)
            if removed:
                logger.debug('memory_cache_sweep removed=%s remaining=%s', removed, len(self._store))

    def purge_expired(self) -> int:
        with self._lock:
            return self._sweep_locked(_utc_now())

    def _live_value(self, key: str) -> Any | None:
        item = self._store.get(key)
        if not item:
            return None
        expires_at, value = item
        if _utc_now() >= expires_at:
            self._store.pop(key, None)
            return None
        return value

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._live_value(key)

    def set(self, key: str, value: Any, ttl: int) -> None:
        now = _utc_now()
        expires_at = now + timedelta(seconds=max(1, int(ttl)))
        with self._lock:
            self._maybe_sweep_locked(now)
            self._store[key] = (expires_at, value)

    def add(self, key: str, value: Any, ttl: int) -> bool:
        now = _utc_now()
        expires_at = now + timedelta(seconds=max(1, int(ttl)))
        with self._lock:
            self._maybe_sweep_locked(now)
            if self._live_value(key) is not None:
                return False
            self._store[key] = (expires_at, value)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def delete_prefix(self, prefix: str) -> None:
        with self._lock:
            keys = [key for key in self._store.keys() if key.startswith(prefix)]
            for key in keys:
                self._store.pop(key, None)

    def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        with self._lock:
            now = _utc_now()
            return sum(1 for expires_at, _ in self._store.values() if now < expires_at)


class RedisCacheBackend(CacheBackend):
    def __init__(self, redis_url: str) -> None:
        import redis

        self._client = redis.Redis.from_url(redis_url, decode_responses=True)

    def get(self, key: str) -> Any | None:
        raw = self._client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    def set(self, key: str, value: Any, ttl: int) -> None:
        payload = json.dumps(value, default=str)
        self._client.setex(key, max(1, int(ttl)), payload)

    def add(self, key: str, value: Any, ttl: int) -> bool:
        payload = json.dumps(value, default=str)
        return bool(self._client.set(key, payload, nx=True, ex=max(1, int(ttl))))

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def delete_prefix(self, prefix: str) -> None:
        cursor = 0
        pattern = f"{prefix}*"
        while True:
            cursor, keys = self._client.scan(cursor=cursor, match=pattern, count=200)
            if keys:
                self._client.delete(*keys)
            if cursor == 0:
                break

    def ping(self) -> bool:
        return bool(self._client.ping())


@dataclass
class CacheManager:
    backend: CacheBackend

    def get_cached(self, key: str) -> Any | None:
        value = self.backend.get(key)
        if value is not None:
            record_cache_event('cache_hit')
            logger.debug('cache hit: %s', key)
        else:
            record_cache_event('cache_miss')
            logger.debug('cache miss: %s', key)
        return value

    def set_cached(self, key: str, value: Any, ttl: int | None = None) -> None:
        ttl_value = ttl if ttl is not None else settings.default_cache_ttl
        self.backend.set(key, value, ttl_value)
        logger.debug('cache set: %s ttl=%s', key, ttl_value)

    def invalidate(self, key: str) -> None:
        self.backend.delete(key)
        record_cache_event('cache_invalidate')
        logger.debug('cache invalidate: %s', key)

    def invalidate_prefix(self, prefix: str) -> None:
        self.backend.delete_prefix(prefix)
        record_cache_event('cache_invalidate')
        logger.debug('cache invalidate prefix: %s', prefix)


def build_cache_backend(backend_name: str | None = None, redis_url: str | None = None) -> CacheBackend:
    name = (backend_name if backend_name is not None else settings.cache_backend or '').strip().lower()
    url = redis_url if redis_url is not None else settings.cache_redis_url
    if name == 'redis' and url:
        try:
            return RedisCacheBackend(url)
        except Exception:
            logger.exception('redis_cache_init_failed_falling_back_to_memory')
    return MemoryCacheBackend()


cache = CacheManager(backend=build_cache_backend())


def _resolved_signature(func: Callable[..., Any]) -> inspect.Signature:
    """
    FastAPI resolves string annotations using the callable's globals, so the
    wrapper has to carry the endpoint's signature with annotations already
    evaluated or `from __future__ import annotations` modules break.
    """

    sig = inspect.signature(func)
    try:
        hints = typing.get_type_hints(func, globalns=getattr(func, '__globals__', None))
    except Exception:
        return sig

    parameters = [
        param.replace(annotation=hints[name]) if name in hints else param
        for name, param in sig.parameters.items()
    ]
    return_annotation = hints.get('return', sig.return_annotation)
    return sig.replace(parameters=parameters, return_annotation=return_annotation)


def cached_view(
    ttl: int | None = None,
    key_builder: Callable[..., str] | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        if asyncio.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                if _normalize_bool(kwargs.get('bypass_cache')):
                    record_cache_event('cache_bypass')
                    return await func(*args, **kwargs)
                key = key_builder(*args, **kwargs) if key_builder else None
                if key:
                    cached = cache.get_cached(key)
                    if cached is not None:
                        return cached
                result = await func(*args, **kwargs)
                if key:
                    cache.set_cached(key, result, ttl)
                return result

            async_wrapper.__signature__ = _resolved_signature(func)  # type: ignore[attr-defined]
            return async_wrapper

        @wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            if _normalize_bool(kwargs.get('bypass_cache')):
                record_cache_event('cache_bypass')
                return func(*args, **kwargs)
            key = key_builder(*args, **kwargs) if key_builder else None
            if key:
                cached = cache.get_cached(key)
                if cached is not None:
                    return cached
            result = func(*args, **kwargs)
            if key:
                cache.set_cached(key, result, ttl)
            return result

        sync_wrapper.__signature__ = _resolved_signature(func)  # type: ignore[attr-defined]
        return sync_wrapper

    return decorator
