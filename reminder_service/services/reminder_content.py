from __future__ import annotations

import logging
from datetime import datetime, timedelta
from urllib.parse import urlencode
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from reminder_service.config import settings
from reminder_service.core.tiers import ReminderTier, TierConfig, lead_label
from reminder_service.core.time_provider import from_utc_naive
from reminder_service.models import LiveSession, User


logger = logging.getLogger(__name__)

CALENDAR_BASE_URL = 'https://calendar.google.com/calendar/render'


def _ordinal(day: int) -> str:
    if 11 <= day % 100 <= 13:
        suffix = 'th'
    else:
        suffix = {1: 'st', 2: 'nd', 3: 'rd'}.get(day % 10, 'th')
    return f'{day}{suffix}'


def _clock(value: datetime) -> str:
    return value.strftime('%I:%M %p').lstrip('0')


def format_long_date(value: datetime) -> str:
    return f"{value.strftime('%A, %B')} {_ordinal(value.day)}, {value.year}"


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'}"


def format_time_until(start: datetime, now: datetime) -> str:
    remaining = max(timedelta(0), start - now)
    days = remaining.days
    hours, rest = divmod(remaining.seconds, 3600)
    minutes = rest // 60
    if days > 0:
        return f"{_plural(days, 'day')} and {_plural(hours, 'hour')}"
    if hours > 0:
        return f"{_plural(hours, 'hour')} and {_plural(minutes, 'minute')}"
    return _plural(minutes, 'minute')


def resolve_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or 'UTC')
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning('reminder_unknown_timezone timezone=%s falling_back=UTC', name)
        return ZoneInfo('UTC')


def build_subject(tier: TierConfig, batch_name: str, local_start: datetime) -> str:
    when = f"{local_start.strftime('%b')} {_ordinal(local_start.day)} at {_clock(local_start)}"
    if tier.tier == ReminderTier.WEEK:
        return f'Upcoming Session Next Week - {batch_name} on {when}'
    if tier.tier == ReminderTier.DAY:
        return f'Session Tomorrow - {batch_name} on {when}'
    if tier.tier == ReminderTier.HOURS:
        return f'Session Starting Soon - {batch_name} in {lead_label(tier.lead_minutes).title()}'
    if tier.tier == ReminderTier.MINUTES:
        return f'Join Now - {batch_name} Session Starting in {lead_label(tier.lead_minutes).title()}'
    return f'Session Reminder - {batch_name} on {when}'


def calendar_url(title: str, start_utc: datetime, end_utc: datetime, session: LiveSession) -> str:
    details = (
        f'Join your {title}.\n\n'
        f"Meeting URL: {session.meeting_url or 'TBD'}\n"
        f"Meeting ID: {session.meeting_id or 'TBD'}\n"
        f"Password: {session.meeting_password or 'TBD'}"
    )
    dates = f"{start_utc.strftime('%Y%m%dT%H%M%SZ')}/{end_utc.strftime('%Y%m%dT%H%M%SZ')}"
    query = urlencode({'action': 'TEMPLATE', 'text': title, 'dates': dates, 'details': details})
    return f'{CALENDAR_BASE_URL}?{query}'


def session_title(session: LiveSession) -> str:
    batch_name = session.batch.name if session.batch else 'Live'
    return session.title or f'{batch_name} Session'


def instructor_for(session: LiveSession) -> User | None:
    if session.instructor is not None:
        return session.instructor
    return session.batch.instructor if session.batch else None


def build_reminder_context(
    session: LiveSession,
    student: User,
    tier: TierConfig,
    *,
    now: datetime,
) -> dict:
    """Template context for one student. `now` and the session start are naive UTC."""
    zone = resolve_zone(student.timezone)
    start_utc = from_utc_naive(session.scheduled_start)
    end_utc = start_utc + timedelta(minutes=int(session.duration_minutes or 60))
    local_start = start_utc.astimezone(zone)
    local_end = end_utc.astimezone(zone)
    batch = session.batch
    batch_name = batch.name if batch else ''
    instructor = instructor_for(session)
    title = session_title(session)
    dashboard_url = f"{settings.frontend_base_url.rstrip('/')}/dashboard"

    context = {
        'student_name': student.full_name or 'there',
        'email': student.email,
        'session_title': title,
        'session_description': session.description or '',
        'session_date': format_long_date(local_start),
        'session_time': _clock(local_start),
        'session_end_time': _clock(local_end),
        'session_duration': int(session.duration_minutes or 60),
        'timezone': zone.key,
        'batch_name': batch_name,
        'batch_code': batch.code if batch else '',
        'instructor_name': instructor.full_name if instructor and instructor.full_name else 'TBD',
        'reminder_tier': tier.tier.value,
        'reminder_interval': tier.label,
        'is_urgent': tier.is_urgent,
        'time_until_session': format_time_until(session.scheduled_start, now),
        'dashboard_url': dashboard_url,
        'calendar_url': calendar_url(title, start_utc, end_utc, session),
        'join_url': dashboard_url + '/sessions',
        'support_email': settings.support_email,
        'current_year': now.year,
        'subject': build_subject(tier, batch_name, local_start),
    }
    if tier.is_urgent:
        context.update(
            {
                'join_url': session.meeting_url or context['join_url'],
                'meeting_url': session.meeting_url,
                'meeting_id': session.meeting_id,
                'meeting_password': session.meeting_password,
            }
        )
    return context
