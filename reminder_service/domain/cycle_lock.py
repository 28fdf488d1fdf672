from __future__ import annotations

import logging
import uuid

from reminder_service.cache import CacheBackend, cache_key


logger = logging.getLogger(__name__)
_KEY_PREFIX = 'reminder_cycle_lock'


def _lock_key(tier: str) -> str:
    return cache_key(_KEY_PREFIX, tier)


def acquire_cycle_lock(backend: CacheBackend, tier: str, *, ttl_seconds: int = 900) -> str | None:
    """Cross-process guard so two workers never run the same tier cycle at once.

    Returns the lock token, or None when another holder has it. Backend errors propagate.
    """
    key = _lock_key(tier)
    token = uuid.uuid4().hex
    return token if backend.add(key, token, max(1, int(ttl_seconds))) else None


def release_cycle_lock(backend: CacheBackend, tier: str, token: str | None) -> None:
    if not token:
        return
    key = _lock_key(tier)
    try:
        current = backend.get(key)
        if current is None:
            return
        if str(current) == str(token):
            backend.delete(key)
    except Exception:
        logger.warning('cycle_lock_release_failed key=%s', key, exc_info=True)
