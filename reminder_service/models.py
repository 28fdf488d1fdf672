from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reminder_service.db import Base


class Role(str, Enum):
    ADMIN = 'admin'
    INSTRUCTOR = 'instructor'
    STUDENT = 'student'


class BatchStatus(str, Enum):
    ACTIVE = 'active'
    UPCOMING = 'upcoming'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class SessionStatus(str, Enum):
    SCHEDULED = 'scheduled'
    CANCELLED = 'cancelled'
    COMPLETED = 'completed'


class EnrollmentStatus(str, Enum):
    ACTIVE = 'active'
    EXPIRED = 'expired'
    CANCELLED = 'cancelled'


REMINDABLE_BATCH_STATUSES = (BatchStatus.ACTIVE.value, BatchStatus.UPCOMING.value)


class User(Base):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    full_name: Mapped[str] = mapped_column(String(180), default='')
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    role: Mapped[str] = mapped_column(String(20), default=Role.STUDENT.value, index=True)
    timezone: Mapped[str] = mapped_column(String(60), default='UTC')
    email_notifications: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    enrollments: Mapped[list['Enrollment']] = relationship('Enrollment', back_populates='student')


class Batch(Base):
    __tablename__ = 'batches'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(180))
    code: Mapped[str] = mapped_column(String(60), default='', index=True)
    status: Mapped[str] = mapped_column(String(20), default=BatchStatus.ACTIVE.value, index=True)
    instructor_id: Mapped[int | None] = mapped_column(ForeignKey('users.id'), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    instructor: Mapped['User | None'] = relationship('User')
    sessions: Mapped[list['LiveSession']] = relationship('LiveSession', back_populates='batch')
    enrollments: Mapped[list['Enrollment']] = relationship('Enrollment', back_populates='batch', order_by='Enrollment.id')


class LiveSession(Base):
    __tablename__ = 'live_sessions'
    __table_args__ = (
        Index('ix_live_sessions_status_start', 'status', 'scheduled_start'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey('batches.id'), index=True)
    title: Mapped[str] = mapped_column(String(255), default='')
    description: Mapped[str] = mapped_column(Text, default='')
    scheduled_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60)
    meeting_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    meeting_id: Mapped[str | None] = mapped_column(String(60), nullable=True)
    meeting_password: Mapped[str | None] = mapped_column(String(60), nullable=True)
    instructor_id: Mapped[int | None] = mapped_column(ForeignKey('users.id'), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), default=SessionStatus.SCHEDULED.value, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    batch: Mapped['Batch'] = relationship('Batch', back_populates='sessions')
    instructor: Mapped['User | None'] = relationship('User')

    def reschedule(self, new_start: datetime) -> None:
        if self.status == SessionStatus.CANCELLED.value:
            raise ValueError('Cancelled sessions cannot be rescheduled')
        self.scheduled_start = new_start
        self.version = int(self.version or 1) + 1


class Enrollment(Base):
    __tablename__ = 'enrollments'
    __table_args__ = (
        UniqueConstraint('student_id', 'batch_id', name='uq_enrollments_student_batch'),
        Index('ix_enrollments_batch_status', 'batch_id', 'status'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey('batches.id'), index=True)
    status: Mapped[str] = mapped_column(String(20), default=EnrollmentStatus.ACTIVE.value, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    student: Mapped['User'] = relationship('User', back_populates='enrollments')
    batch: Mapped['Batch'] = relationship('Batch', back_populates='enrollments')
