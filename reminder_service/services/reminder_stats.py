from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import text
from sqlalchemy.orm import Session

from reminder_service.app_state import AppContext
from reminder_service.config import settings
from reminder_service.metrics import timed_service
from reminder_service.services.observability_counters import count_observability_events
from reminder_service.services.reminder_content import format_time_until, instructor_for, session_title
from reminder_service.services.session_store import (
    count_active_enrollments,
    count_remindable_batches,
    find_upcoming_sessions,
)


logger = logging.getLogger(__name__)


def _database_reachable(db: Session) -> bool:
    try:
        db.execute(text('SELECT 1'))
        return True
    except Exception:
        logger.warning('reminder_health_database_unreachable', exc_info=True)
        return False


def _classify_health(payload: dict) -> str:
    checks = payload['checks']
    if checks['database'] != 'connected' or checks['tracker'] != 'reachable':
        return 'degraded'
    threshold = max(1, int(settings.reminder_health_failure_threshold))
    if any(tier['consecutive_failures'] >= threshold for tier in payload['tiers']):
        return 'degraded'
    return 'healthy'


def get_health(ctx: AppContext, db: Session, *, now: datetime) -> dict:
    dispatcher = ctx.dispatcher
    tiers = []
    for tier in ctx.tiers:
        snapshot = dispatcher.runtime(tier).snapshot()
        tiers.append(
            {
                'tier': tier.value,
                'state': snapshot['state'],
                'paused': snapshot['paused'],
                'last_cycle_started_at': snapshot['last_cycle_started_at'],
                'last_cycle_finished_at': snapshot['last_cycle_finished_at'],
                'last_success_at': snapshot['last_success_at'],
                'consecutive_failures': snapshot['consecutive_failures'],
                'last_error': snapshot['last_error'],
            }
        )
    payload = {
        'service': 'session-reminder',
        'timestamp': now,
        'enabled': dispatcher.enabled,
        'checks': {
            'database': 'connected' if _database_reachable(db) else 'error',
            'tracker': 'reachable' if ctx.tracker.ping() else 'unreachable',
            'email_service': 'enabled' if ctx.sender.is_configured() else 'disabled',
        },
        'tiers': tiers,
        'missed_reminders_24h': count_observability_events('reminder_missed', now=now),
    }
    payload['status'] = _classify_health(payload)
    return payload


@timed_service('reminder_stats')
def get_stats(ctx: AppContext, db: Session, *, now: datetime) -> dict:
    dispatcher = ctx.dispatcher
    per_tier = {}
    totals = {'sent': 0, 'failed': 0, 'expired': 0, 'skipped': 0, 'unconfirmed': 0, 'pending': 0}
    for tier in ctx.tiers:
        snapshot = dispatcher.runtime(tier).snapshot()
        counters = dict(snapshot['counters'])
        counters['pending'] = snapshot['pending']
        counters['missed_24h'] = count_observability_events(f'reminder_missed:{tier.value}', now=now)
        per_tier[tier.value] = {
            'counters': counters,
            'paused': snapshot['paused'],
            'cycles_run': snapshot['cycles_run'],
            'last_cycle_finished_at': snapshot['last_cycle_finished_at'],
        }
        for name in totals:
            totals[name] += int(counters.get(name, 0))

    return {
        'totals': totals,
        'tiers': per_tier,
        'intervals': [cfg.as_dict() for cfg in ctx.tiers.values()],
        'marker_ttl_minutes': settings.reminder_marker_ttl_minutes,
        'system': get_system_stats(db, now=now),
        'timestamp': now,
    }


def get_system_stats(db: Session, *, now: datetime) -> dict:
    sessions = find_upcoming_sessions(db, now, now + timedelta(days=7))
    enrollment_counts = count_active_enrollments(db, {session.batch_id for session in sessions})
    return {
        'active_batches_with_sessions': count_remindable_batches(db),
        'upcoming_sessions_next_week': len(sessions),
        'students_to_notify': sum(enrollment_counts.get(session.batch_id, 0) for session in sessions),
    }


@timed_service('reminder_upcoming')
def get_upcoming(ctx: AppContext, db: Session, *, now: datetime, days_ahead: int = 7, limit: int = 50) -> dict:
    end = now + timedelta(days=max(1, int(days_ahead)))
    sessions = find_upcoming_sessions(db, now, end)
    enrollment_counts = count_active_enrollments(db, {session.batch_id for session in sessions})
    rows = []
    for session in sessions:
        instructor = instructor_for(session)
        rows.append(
            {
                'session_id': session.id,
                'batch_id': session.batch_id,
                'batch_name': session.batch.name,
                'batch_code': session.batch.code,
                'session_title': session_title(session),
                'scheduled_start': session.scheduled_start,
                'duration_minutes': int(session.duration_minutes or 60),
                'instructor': instructor.full_name if instructor else None,
                'enrolled_students': enrollment_counts.get(session.batch_id, 0),
                'has_meeting_link': bool(session.meeting_url),
                'time_until_session': format_time_until(session.scheduled_start, now),
                'reminders_to_send': ctx.dispatcher.upcoming_reminder_times(session.scheduled_start, now),
            }
        )
    limited = rows[: max(0, int(limit))]
    return {
        'sessions': limited,
        'count': len(limited),
        'total_upcoming': len(rows),
        'search_period': {'from': now, 'to': end, 'days_ahead': int(days_ahead)},
    }
