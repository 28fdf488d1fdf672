from __future__ import annotations

import logging
from datetime import datetime

from reminder_service.cache import CacheBackend, cache_key
from reminder_service.core.tiers import ReminderTier


logger = logging.getLogger(__name__)
_KEY_PREFIX = 'reminder_sent'


class TrackerUnavailableError(RuntimeError):
    pass


def reminder_key(student_id: int, session_id: int, tier: ReminderTier, scheduled_start: datetime) -> str:
    # The start time is part of the key so a rescheduled session is tracked afresh.
    slot = scheduled_start.strftime('%Y%m%d%H%M')
    return cache_key(_KEY_PREFIX, f'{int(student_id)}:{int(session_id)}:{tier.value}:{slot}')


class NotificationTracker:
    """Marker store recording which (student, session, tier) reminders went out."""

    def has_fired(self, student_id: int, session_id: int, tier: ReminderTier, scheduled_start: datetime) -> bool:
        raise NotImplementedError

    def mark_fired(
        self,
        student_id: int,
        session_id: int,
        tier: ReminderTier,
        scheduled_start: datetime,
        ttl_seconds: int,
    ) -> None:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError


class CacheNotificationTracker(NotificationTracker):
    def __init__(self, backend: CacheBackend) -> None:
        self.backend = backend

    def has_fired(self, student_id: int, session_id: int, tier: ReminderTier, scheduled_start: datetime) -> bool:
        key = reminder_key(student_id, session_id, tier, scheduled_start)
        try:
            return self.backend.get(key) is not None
        except Exception as exc:
            raise TrackerUnavailableError(f'has_fired failed for {key}') from exc

    def mark_fired(
        self,
        student_id: int,
        session_id: int,
        tier: ReminderTier,
        scheduled_start: datetime,
        ttl_seconds: int,
    ) -> None:
        key = reminder_key(student_id, session_id, tier, scheduled_start)
        try:
            # An existing marker keeps its original expiry.
            self.backend.add(key, True, max(1, int(ttl_seconds)))
        except Exception as exc:
            raise TrackerUnavailableError(f'mark_fired failed for {key}') from exc

    def ping(self) -> bool:
        try:
            return bool(self.backend.ping())
        except Exception:
            logger.warning('notification_tracker_ping_failed', exc_info=True)
            return False

    def clear(self) -> None:
        self.backend.delete_prefix(_KEY_PREFIX)
