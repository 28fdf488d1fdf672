from __future__ import annotations

from collections import defaultdict, deque
from datetime import datetime, timedelta
import threading

from reminder_service.core.time_provider import default_time_provider


_LOCK = threading.Lock()
_EVENTS: dict[str, deque[datetime]] = defaultdict(deque)
_RETENTION = timedelta(hours=25)


def _event_name(name: str) -> str:
    return str(name or '').strip().lower()


def record_observability_event(name: str, *, at: datetime | None = None, amount: int = 1) -> None:
    event = _event_name(name)
    if not event or amount <= 0:
        return
    now = at or default_time_provider.utcnow()
    with _LOCK:
        bucket = _EVENTS[event]
        bucket.extend([now] * int(amount))
        cutoff = now - _RETENTION
        while bucket and bucket[0] < cutoff:
            bucket.popleft()


def count_observability_events(name: str, *, window_hours: int = 24, now: datetime | None = None) -> int:
    event = _event_name(name)
    if not event:
        return 0
    current = now or default_time_provider.utcnow()
    cutoff = current - timedelta(hours=max(1, int(window_hours or 24)))
    with _LOCK:
        bucket = _EVENTS.get(event)
        if not bucket:
            return 0
        return sum(1 for at in bucket if at >= cutoff)


def clear_observability_events() -> None:
    with _LOCK:
        _EVENTS.clear()
