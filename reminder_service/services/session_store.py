from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Iterable

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from reminder_service.models import (
    REMINDABLE_BATCH_STATUSES,
    Batch,
    Enrollment,
    EnrollmentStatus,
    LiveSession,
    SessionStatus,
    User,
)


def _schedulable_sessions(db: Session):
    return (
        db.query(LiveSession)
        .join(Batch, Batch.id == LiveSession.batch_id)
        .options(
            joinedload(LiveSession.batch).joinedload(Batch.instructor),
            joinedload(LiveSession.instructor),
        )
        .filter(
            LiveSession.status == SessionStatus.SCHEDULED.value,
            LiveSession.scheduled_start.is_not(None),
            func.lower(Batch.status).in_(REMINDABLE_BATCH_STATUSES),
        )
    )


def find_due_sessions(db: Session, window_start: datetime, window_end: datetime, *, now: datetime) -> list[LiveSession]:
    """Sessions starting inside [window_start, window_end] and still in the future."""
    return (
        _schedulable_sessions(db)
        .filter(
            LiveSession.scheduled_start >= window_start,
            LiveSession.scheduled_start <= window_end,
            LiveSession.scheduled_start > now,
        )
        .order_by(LiveSession.scheduled_start.asc(), LiveSession.id.asc())
        .all()
    )


def find_upcoming_sessions(db: Session, start: datetime, end: datetime) -> list[LiveSession]:
    return (
        _schedulable_sessions(db)
        .filter(LiveSession.scheduled_start > start, LiveSession.scheduled_start < end)
        .order_by(LiveSession.scheduled_start.asc(), LiveSession.id.asc())
        .all()
    )


def get_session(db: Session, session_id: int) -> LiveSession | None:
    return (
        db.query(LiveSession)
        .options(
            joinedload(LiveSession.batch).joinedload(Batch.instructor),
            joinedload(LiveSession.instructor),
        )
        .filter(LiveSession.id == int(session_id))
        .first()
    )


def active_enrollees(db: Session, batch_ids: Iterable[int]) -> dict[int, list[User]]:
    """One query for all batches, students ordered by enrollment."""
    ids = sorted({int(batch_id) for batch_id in batch_ids})
    if not ids:
        return {}
    rows = (
        db.query(Enrollment.batch_id, User)
        .join(User, User.id == Enrollment.student_id)
        .filter(
            Enrollment.batch_id.in_(ids),
            Enrollment.status == EnrollmentStatus.ACTIVE.value,
        )
        .order_by(Enrollment.batch_id.asc(), Enrollment.id.asc())
        .all()
    )
    by_batch: dict[int, list[User]] = defaultdict(list)
    for batch_id, student in rows:
        by_batch[int(batch_id)].append(student)
    return dict(by_batch)


def count_active_enrollments(db: Session, batch_ids: Iterable[int]) -> dict[int, int]:
    ids = sorted({int(batch_id) for batch_id in batch_ids})
    if not ids:
        return {}
    rows = (
        db.query(Enrollment.batch_id, func.count(Enrollment.id))
        .filter(
            Enrollment.batch_id.in_(ids),
            Enrollment.status == EnrollmentStatus.ACTIVE.value,
        )
        .group_by(Enrollment.batch_id)
        .all()
    )
    return {int(batch_id): int(count) for batch_id, count in rows}


def count_remindable_batches(db: Session) -> int:
    return int(
        db.query(func.count(func.distinct(Batch.id)))
        .select_from(Batch)
        .join(LiveSession, LiveSession.batch_id == Batch.id)
        .filter(func.lower(Batch.status).in_(REMINDABLE_BATCH_STATUSES))
        .scalar()
        or 0
    )
