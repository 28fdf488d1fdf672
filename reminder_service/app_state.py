from __future__ import annotations

from dataclasses import dataclass

from reminder_service.cache import CacheBackend, cache
from reminder_service.config import settings
from reminder_service.core.tiers import ReminderTier, TierConfig, load_tier_table
from reminder_service.db import SessionLocal
from reminder_service.domain.notification_tracker import CacheNotificationTracker, NotificationTracker
from reminder_service.domain.reminder_dispatcher import ReminderDispatcher
from reminder_service.services.email_service import EmailSender, build_email_sender


@dataclass
class AppContext:
    tiers: dict[ReminderTier, TierConfig]
    backend: CacheBackend
    tracker: NotificationTracker
    sender: EmailSender
    dispatcher: ReminderDispatcher


_ctx: AppContext | None = None


def build_context() -> AppContext:
    tiers = load_tier_table(settings)
    backend = cache.backend
    tracker = CacheNotificationTracker(backend)
    sender = build_email_sender()
    dispatcher = ReminderDispatcher(
        SessionLocal,
        tracker,
        sender,
        tiers,
        max_concurrency=settings.reminder_max_concurrency,
        marker_ttl_seconds=settings.reminder_marker_ttl_minutes * 60,
        lock_backend=backend,
        enabled=settings.reminders_enabled,
    )
    return AppContext(tiers=tiers, backend=backend, tracker=tracker, sender=sender, dispatcher=dispatcher)


def set_context(ctx: AppContext | None) -> None:
    global _ctx
    _ctx = ctx


def get_context() -> AppContext:
    if _ctx is None:
        set_context(build_context())
    return _ctx
