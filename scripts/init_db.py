from datetime import timedelta
from pathlib import Path
import sys


# Ensure imports work when running this file directly: `python scripts/init_db.py`.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from reminder_service.core.time_provider import default_time_provider
from reminder_service.db import Base, SessionLocal, engine
from reminder_service.models import Batch, Enrollment, LiveSession, Role, User


# Each offset lands inside one reminder tier's due window at seeding time.
SESSION_OFFSETS = [
    ('Kick-off', timedelta(days=7, minutes=5)),
    ('Week 1 Review', timedelta(days=1, minutes=5)),
    ('Live Coding', timedelta(hours=2, minutes=3)),
    ('Office Hours', timedelta(minutes=31)),
]

STUDENTS = [
    ('Aarav Shah', 'aarav@example.com', 'Asia/Kolkata'),
    ('Diya Menon', 'diya@example.com', 'Asia/Kolkata'),
    ('Liam Carter', 'liam@example.com', 'Europe/London'),
]


Base.metadata.create_all(bind=engine)

db = SessionLocal()
try:
    if not db.query(Batch).first():
        instructor = User(full_name='Priya Nair', email='priya@example.com', role=Role.INSTRUCTOR.value)
        db.add(instructor)
        db.flush()

        batch = Batch(name='Python Foundations', code='PY-101', instructor_id=instructor.id)
        db.add(batch)
        db.flush()

        students = [User(full_name=name, email=email, timezone=tz) for name, email, tz in STUDENTS]
        db.add_all(students)
        db.flush()
        db.add_all([Enrollment(student_id=s.id, batch_id=batch.id) for s in students])

        now = default_time_provider.utcnow().replace(second=0, microsecond=0)
        for idx, (title, offset) in enumerate(SESSION_OFFSETS, start=1):
            db.add(
                LiveSession(
                    batch_id=batch.id,
                    title=title,
                    scheduled_start=now + offset,
                    duration_minutes=90,
                    meeting_url=f'https://zoom.us/j/90000000{idx}',
                    meeting_id=f'900 000 00{idx}',
                    meeting_password='learn',
                )
            )
        db.commit()
finally:
    db.close()

print('DB initialized with sample data.')
