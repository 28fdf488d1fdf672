from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session

from reminder_service.cache import CacheBackend
from reminder_service.core.tiers import ReminderTier, TierConfig, due_window, window_end
from reminder_service.core.time_provider import TimeProvider, default_time_provider
from reminder_service.domain.cycle_lock import acquire_cycle_lock, release_cycle_lock
from reminder_service.domain.notification_tracker import NotificationTracker, TrackerUnavailableError, reminder_key
from reminder_service.domain.tier_runtime import TierRuntime
from reminder_service.metrics import record_reminder_event
from reminder_service.models import Batch, LiveSession, SessionStatus, User
from reminder_service.services.email_service import EmailSender
from reminder_service.services.observability_counters import record_observability_event
from reminder_service.services.reminder_content import build_reminder_context, session_title
from reminder_service.services.session_store import active_enrollees, find_due_sessions, get_session


logger = logging.getLogger(__name__)

EXECUTED_STATUSES = ('completed', 'failed')


@dataclass
class CycleResult:
    tier: ReminderTier
    status: str
    sessions: int = 0
    sent: int = 0
    failed: int = 0
    unconfirmed: int = 0
    already_sent: int = 0
    skipped: int = 0
    expired: int = 0
    error: str | None = None

    @property
    def executed(self) -> bool:
        return self.status in EXECUTED_STATUSES

    def as_dict(self) -> dict:
        payload = asdict(self)
        payload['tier'] = self.tier.value
        return payload


@dataclass
class _Delivery:
    key: str
    tier: TierConfig
    session_id: int
    student_id: int
    recipient: str
    scheduled_start: datetime
    context: dict
    expires_at: datetime | None


@dataclass
class _Collected:
    deliveries: list[_Delivery] = field(default_factory=list)
    already_sent: int = 0
    skipped: int = 0


class ReminderDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        tracker: NotificationTracker,
        sender: EmailSender,
        tiers: dict[ReminderTier, TierConfig],
        *,
        time_provider: TimeProvider = default_time_provider,
        max_concurrency: int = 5,
        marker_ttl_seconds: int = 11520 * 60,
        lock_backend: CacheBackend | None = None,
        enabled: bool = True,
    ) -> None:
        self.session_factory = session_factory
        self.tracker = tracker
        self.sender = sender
        self.tiers = dict(tiers)
        self.time_provider = time_provider
        self.max_concurrency = max(1, int(max_concurrency))
        self.marker_ttl_seconds = max(1, int(marker_ttl_seconds))
        self.lock_backend = lock_backend
        self.enabled = enabled
        self.runtimes: dict[ReminderTier, TierRuntime] = {tier: TierRuntime(tier=tier) for tier in self.tiers}

    def _now(self) -> datetime:
        return self.time_provider.utcnow()

    def runtime(self, tier: ReminderTier) -> TierRuntime:
        return self.runtimes[tier]

    def pause(self, tier: ReminderTier) -> None:
        self.runtimes[tier].paused = True
        logger.info('reminder_tier_paused tier=%s', tier.value)

    def resume(self, tier: ReminderTier) -> None:
        self.runtimes[tier].paused = False
        logger.info('reminder_tier_resumed tier=%s', tier.value)

    def is_paused(self, tier: ReminderTier) -> bool:
        return self.runtimes[tier].paused

    def run_cycle(self, tier: ReminderTier) -> CycleResult:
        config = self.tiers[tier]
        runtime = self.runtimes[tier]
        if not self.enabled:
            return CycleResult(tier=tier, status='disabled')
        if runtime.paused:
            logger.info('reminder_cycle_skipped_paused tier=%s', tier.value)
            return CycleResult(tier=tier, status='paused')

        started = self._now()
        if not runtime.try_begin(started):
            logger.info('reminder_cycle_skipped_overlap tier=%s', tier.value)
            return CycleResult(tier=tier, status='already_running')

        lock_token = None
        if self.lock_backend is not None:
            try:
                lock_token = acquire_cycle_lock(
                    self.lock_backend,
                    tier.value,
                    ttl_seconds=max(60, config.poll_minutes * 120),
                )
            except Exception:
                logger.warning('reminder_cycle_lock_unavailable tier=%s running_unguarded', tier.value, exc_info=True)
            else:
                if lock_token is None:
                    runtime.abandon()
                    logger.info('reminder_cycle_skipped_locked tier=%s', tier.value)
                    return CycleResult(tier=tier, status='locked')

        result = CycleResult(tier=tier, status='completed')
        try:
            self._execute(config, runtime, started, result)
        except Exception as exc:
            result.status = 'failed'
            result.error = f'{type(exc).__name__}: {exc}'
            logger.warning('reminder_cycle_failed tier=%s error=%s', tier.value, result.error, exc_info=True)
            record_observability_event(f'reminder_cycle_failed:{tier.value}', at=started)
        finally:
            if self.lock_backend is not None:
                release_cycle_lock(self.lock_backend, tier.value, lock_token)
            runtime.finish(self._now(), error=result.error)

        logger.info(
            'reminder_cycle_complete tier=%s status=%s sessions=%s sent=%s failed=%s unconfirmed=%s already_sent=%s skipped=%s expired=%s',
            tier.value,
            result.status,
            result.sessions,
            result.sent,
            result.failed,
            result.unconfirmed,
            result.already_sent,
            result.skipped,
            result.expired,
        )
        return result

    def _execute(self, config: TierConfig, runtime: TierRuntime, now: datetime, result: CycleResult) -> None:
        result.expired = self._expire_stale(config, runtime, now)

        window_start, window_stop = due_window(config, now)
        db = self.session_factory()
        try:
            sessions = find_due_sessions(db, window_start, window_stop, now=now)
            result.sessions = len(sessions)
            if not sessions:
                return
            enrollees = active_enrollees(db, {session.batch_id for session in sessions})
            collected = _Collected()
            for session in sessions:
                self._collect(collected, session, enrollees.get(session.batch_id, []), config, now, track_expiry=True)
        finally:
            db.close()

        result.already_sent = collected.already_sent
        result.skipped = collected.skipped
        runtime.increment('skipped', collected.skipped)
        record_reminder_event('reminder_skipped', config.tier.value, collected.skipped)
        self._dispatch(collected.deliveries, runtime, result)

    def _expire_stale(self, config: TierConfig, runtime: TierRuntime, now: datetime) -> int:
        expired = runtime.pop_expired(now)
        for key, context in expired:
            logger.warning(
                'reminder_missed tier=%s session_id=%s student_id=%s key=%s',
                config.tier.value,
                context.get('session_id'),
                context.get('student_id'),
                key,
            )
        if expired:
            runtime.increment('expired', len(expired))
            record_reminder_event('reminder_expired', config.tier.value, len(expired))
            record_observability_event('reminder_missed', at=now, amount=len(expired))
            record_observability_event(f'reminder_missed:{config.tier.value}', at=now, amount=len(expired))
        return len(expired)

    def _collect(
        self,
        collected: _Collected,
        session: LiveSession,
        students: list[User],
        config: TierConfig,
        now: datetime,
        *,
        track_expiry: bool,
        respect_markers: bool = True,
    ) -> None:
        if session.scheduled_start is None or session.batch is None:
            logger.warning('reminder_session_malformed session_id=%s batch_id=%s', session.id, session.batch_id)
            collected.skipped += len(students)
            return

        expires_at = window_end(config, session.scheduled_start) if track_expiry else None
        for student in students:
            if not student.email:
                logger.warning(
                    'reminder_skipped_missing_email tier=%s session_id=%s student_id=%s',
                    config.tier.value,
                    session.id,
                    student.id,
                )
                collected.skipped += 1
                continue
            if student.email_notifications is False:
                collected.skipped += 1
                continue

            if respect_markers and self._has_fired(student.id, session, config.tier):
                # Sent elsewhere (another worker, or a mark that timed out after storing).
                self.runtimes[config.tier].confirm(
                    reminder_key(student.id, session.id, config.tier, session.scheduled_start)
                )
                collected.already_sent += 1
                continue

            try:
                context = build_reminder_context(session, student, config, now=now)
            except Exception:
                logger.warning(
                    'reminder_context_failed tier=%s session_id=%s student_id=%s',
                    config.tier.value,
                    session.id,
                    student.id,
                    exc_info=True,
                )
                collected.skipped += 1
                continue

            collected.deliveries.append(
                _Delivery(
                    key=reminder_key(student.id, session.id, config.tier, session.scheduled_start),
                    tier=config,
                    session_id=int(session.id),
                    student_id=int(student.id),
                    recipient=student.email,
                    scheduled_start=session.scheduled_start,
                    context=context,
                    expires_at=expires_at,
                )
            )

    def _has_fired(self, student_id: int, session: LiveSession, tier: ReminderTier) -> bool:
        try:
            return self.tracker.has_fired(student_id, session.id, tier, session.scheduled_start)
        except TrackerUnavailableError:
            # Unknown state: send anyway, a duplicate is preferred over a dropped reminder.
            logger.warning(
                'reminder_tracker_check_failed tier=%s session_id=%s student_id=%s',
                tier.value,
                session.id,
                student_id,
                exc_info=True,
            )
            return False

    def _dispatch(self, deliveries: list[_Delivery], runtime: TierRuntime, result: CycleResult) -> None:
        if not deliveries:
            return
        workers = min(self.max_concurrency, len(deliveries))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f'reminder-{runtime.tier.value}') as pool:
            outcomes = list(pool.map(lambda delivery: self._deliver(delivery, runtime), deliveries))

        sent = outcomes.count('sent')
        failed = outcomes.count('failed')
        unconfirmed = outcomes.count('unconfirmed')
        result.sent += sent
        result.failed += failed
        result.unconfirmed += unconfirmed
        tier = runtime.tier.value
        runtime.increment('sent', sent)
        runtime.increment('failed', failed)
        runtime.increment('unconfirmed', unconfirmed)
        record_reminder_event('reminder_sent', tier, sent)
        record_reminder_event('reminder_failed', tier, failed)

    def _deliver(self, delivery: _Delivery, runtime: TierRuntime) -> str:
        tier = delivery.tier.tier
        pending_context = {'session_id': delivery.session_id, 'student_id': delivery.student_id}
        try:
            ok = self.sender.send(delivery.recipient, tier, delivery.context)
        except Exception:
            logger.warning(
                'reminder_send_error tier=%s session_id=%s student_id=%s',
                tier.value,
                delivery.session_id,
                delivery.student_id,
                exc_info=True,
            )
            ok = False

        if not ok:
            logger.warning(
                'reminder_send_failed tier=%s session_id=%s student_id=%s',
                tier.value,
                delivery.session_id,
                delivery.student_id,
            )
            if delivery.expires_at is not None:
                runtime.note_unconfirmed(delivery.key, delivery.expires_at, pending_context)
            return 'failed'

        try:
            self.tracker.mark_fired(
                delivery.student_id,
                delivery.session_id,
                tier,
                delivery.scheduled_start,
                self.marker_ttl_seconds,
            )
        except TrackerUnavailableError:
            logger.warning(
                'reminder_mark_failed tier=%s session_id=%s student_id=%s will_retry=true',
                tier.value,
                delivery.session_id,
                delivery.student_id,
                exc_info=True,
            )
            if delivery.expires_at is not None:
                runtime.note_unconfirmed(delivery.key, delivery.expires_at, pending_context)
            return 'unconfirmed'

        runtime.confirm(delivery.key)
        logger.info(
            'reminder_sent tier=%s session_id=%s student_id=%s',
            tier.value,
            delivery.session_id,
            delivery.student_id,
        )
        return 'sent'

    def force_send(self, session_id: int, tier: ReminderTier, *, respect_markers: bool = True) -> dict:
        config = self.tiers[tier]
        now = self._now()
        db = self.session_factory()
        try:
            session = get_session(db, session_id)
            if session is None:
                raise LookupError(f'Session {session_id} not found')
            if session.status == SessionStatus.CANCELLED.value:
                raise ValueError('Session is cancelled')
            if session.scheduled_start is None or session.scheduled_start <= now:
                raise ValueError('Session has already started')
            students = active_enrollees(db, [session.batch_id]).get(session.batch_id, [])
            if not students:
                raise ValueError('No active enrollments found for this session')
            collected = _Collected()
            self._collect(collected, session, students, config, now, track_expiry=False, respect_markers=respect_markers)
            title = session_title(session)
        finally:
            db.close()

        result = CycleResult(tier=tier, status='completed', sessions=1)
        result.already_sent = collected.already_sent
        result.skipped = collected.skipped
        self._dispatch(collected.deliveries, self.runtimes[tier], result)
        logger.info(
            'reminder_force_send tier=%s session_id=%s sent=%s failed=%s already_sent=%s',
            tier.value,
            session_id,
            result.sent,
            result.failed,
            result.already_sent,
        )
        return {
            'session_id': int(session_id),
            'session_title': title,
            'tier': tier.value,
            'reminder_interval': config.label,
            'recipients': len(students),
            'sent': result.sent,
            'failed': result.failed,
            'unconfirmed': result.unconfirmed,
            'already_sent': result.already_sent,
            'skipped': result.skipped,
            'triggered_at': now,
        }

    def send_test(self, recipient: str, tier: ReminderTier) -> bool:
        config = self.tiers[tier]
        now = self._now()
        sample_batch = Batch(name='Sample Batch', code='SAMPLE')
        sample = LiveSession(
            id=0,
            title='Sample Live Session',
            description='This is a test reminder.',
            scheduled_start=now + config.lead,
            duration_minutes=60,
            meeting_url='https://example.com/join',
            meeting_id='000 000 000',
            meeting_password='sample',
        )
        sample.batch = sample_batch
        student = User(id=0, full_name='Test Recipient', email=recipient, timezone='UTC')
        context = build_reminder_context(sample, student, config, now=now)
        try:
            ok = self.sender.send(recipient, tier, context)
        except Exception:
            logger.warning('reminder_test_send_error tier=%s recipient=%s', tier.value, recipient, exc_info=True)
            return False
        logger.info('reminder_test_sent tier=%s recipient=%s ok=%s', tier.value, recipient, ok)
        return bool(ok)

    def upcoming_reminder_times(self, start: datetime, now: datetime) -> list[dict]:
        """Reminder tiers still ahead of `now` for a session starting at `start`."""
        rows = []
        for config in sorted(self.tiers.values(), key=lambda cfg: -cfg.lead_minutes):
            send_at = start - config.lead
            if send_at + config.half_window >= now:
                rows.append({'tier': config.tier.value, 'interval': config.label, 'send_at': send_at})
        return rows
