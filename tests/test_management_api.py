import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from reminder_service.app_state import AppContext
from reminder_service.cache import MemoryCacheBackend, cache
from reminder_service.config import settings
from reminder_service.core.tiers import DEFAULT_TIER_TABLE, ReminderTier
from reminder_service.core.time_provider import TimeProvider
from reminder_service.db import Base, get_db
from reminder_service.domain.notification_tracker import CacheNotificationTracker
from reminder_service.domain.reminder_dispatcher import ReminderDispatcher
from reminder_service.main import app
from reminder_service.models import Batch, Enrollment, LiveSession, User
from reminder_service.routers.session_reminders import get_app_context
from reminder_service.services.email_service import EmailSender
from reminder_service.services.observability_counters import clear_observability_events


NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
PREFIX = '/api/v1/session-reminders'


class _FixedClock(TimeProvider):
    def now(self) -> datetime:
        return NOW


class _RecordingSender(EmailSender):
    name = 'recording'

    def __init__(self):
        self.sent = []

    def is_configured(self) -> bool:
        return True

    def send(self, recipient, tier, context) -> bool:
        self.sent.append((recipient, tier.value))
        return True


class ManagementApiTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_management_api.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        db = self._session_factory()
        try:
            clear_observability_events()
            for table in (Enrollment, LiveSession, Batch, User):
                db.query(table).delete()
            db.commit()
        finally:
            db.close()
        cache.invalidate_prefix('reminder_upcoming')

        backend = MemoryCacheBackend()
        self.sender = _RecordingSender()
        tracker = CacheNotificationTracker(backend)
        dispatcher = ReminderDispatcher(
            self._session_factory,
            tracker,
            self.sender,
            DEFAULT_TIER_TABLE,
            time_provider=_FixedClock(),
            lock_backend=backend,
        )
        self.ctx = AppContext(
            tiers=DEFAULT_TIER_TABLE,
            backend=backend,
            tracker=tracker,
            sender=self.sender,
            dispatcher=dispatcher,
        )

        def _override_db():
            db = self._session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_app_context] = lambda: self.ctx
        app.dependency_overrides[get_db] = _override_db
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()

    def _seed(self, minutes_ahead, *, students=2):
        db = self._session_factory()
        try:
            batch = Batch(name='Python Foundations', code='PY-101')
            db.add(batch)
            db.flush()
            learners = [User(full_name=f'Student {idx}', email=f'student{idx}@example.com') for idx in range(students)]
            db.add_all(learners)
            db.flush()
            db.add_all([Enrollment(student_id=learner.id, batch_id=batch.id) for learner in learners])
            session = LiveSession(
                batch_id=batch.id,
                title='Live Coding',
                scheduled_start=NOW.replace(tzinfo=None) + timedelta(minutes=minutes_ahead),
                meeting_url='https://zoom.us/j/900000001',
            )
            db.add(session)
            db.commit()
            return session.id
        finally:
            db.close()

    def test_root_and_liveness(self):
        self.assertEqual(self.client.get('/').json()['status'], 'ok')
        self.assertEqual(self.client.get('/health').json(), {'status': 'ok'})

    def test_health_reports_healthy(self):
        res = self.client.get(f'{PREFIX}/health')
        self.assertEqual(res.status_code, 200)
        payload = res.json()
        self.assertEqual(payload['status'], 'healthy')
        self.assertEqual(payload['checks']['database'], 'connected')
        self.assertEqual(payload['checks']['tracker'], 'reachable')
        self.assertEqual(payload['missed_reminders_24h'], 0)
        self.assertEqual([row['tier'] for row in payload['tiers']], ['week', 'day', 'hours', 'minutes'])

    def test_health_returns_503_when_degraded(self):
        self.ctx.dispatcher.runtime(ReminderTier.HOURS).consecutive_failures = 5
        res = self.client.get(f'{PREFIX}/health')
        self.assertEqual(res.status_code, 503)
        self.assertEqual(res.json()['status'], 'degraded')

    def test_stats_after_cycle(self):
        self._seed(121)
        run = self.client.post(f'{PREFIX}/tiers/hours/run')
        self.assertEqual(run.status_code, 200)
        self.assertEqual(run.json()['status'], 'completed')
        self.assertEqual(run.json()['sent'], 2)

        stats = self.client.get(f'{PREFIX}/stats').json()
        self.assertEqual(stats['totals']['sent'], 2)
        self.assertEqual(stats['tiers']['hours']['cycles_run'], 1)
        self.assertEqual(stats['system']['upcoming_sessions_next_week'], 1)
        self.assertEqual(stats['system']['students_to_notify'], 2)
        self.assertEqual(len(stats['intervals']), 4)

    def test_upcoming_lists_pending_reminders(self):
        session_id = self._seed(180)
        res = self.client.get(f'{PREFIX}/upcoming', params={'days_ahead': 2})
        self.assertEqual(res.status_code, 200)
        payload = res.json()
        self.assertEqual(payload['count'], 1)
        row = payload['sessions'][0]
        self.assertEqual(row['session_id'], session_id)
        self.assertEqual(row['enrolled_students'], 2)
        self.assertTrue(row['has_meeting_link'])
        self.assertEqual([item['tier'] for item in row['reminders_to_send']], ['hours', 'minutes'])

    def test_upcoming_is_cached_until_bypassed(self):
        self.client.get(f'{PREFIX}/upcoming')
        self._seed(180)
        cached = self.client.get(f'{PREFIX}/upcoming').json()
        fresh = self.client.get(f'{PREFIX}/upcoming', params={'bypass_cache': True}).json()
        self.assertEqual(cached['count'], 0)
        self.assertEqual(fresh['count'], 1)

    def test_upcoming_validates_query(self):
        self.assertEqual(self.client.get(f'{PREFIX}/upcoming', params={'days_ahead': 0}).status_code, 422)
        self.assertEqual(self.client.get(f'{PREFIX}/upcoming', params={'limit': 1000}).status_code, 422)

    def test_trigger_sends_and_reports(self):
        session_id = self._seed(600)
        res = self.client.post(f'{PREFIX}/trigger', json={'session_id': session_id, 'tier': 'day'})
        self.assertEqual(res.status_code, 200)
        payload = res.json()
        self.assertEqual(payload['sent'], 2)
        self.assertEqual(payload['reminder_interval'], '1 day')
        self.assertEqual(self.sender.sent, [('student0@example.com', 'day'), ('student1@example.com', 'day')])

        again = self.client.post(f'{PREFIX}/trigger', json={'session_id': session_id, 'tier': 'day'}).json()
        self.assertEqual(again['already_sent'], 2)

    def test_trigger_errors(self):
        self.assertEqual(self.client.post(f'{PREFIX}/trigger', json={'session_id': 999, 'tier': 'day'}).status_code, 404)
        started = self._seed(-10)
        self.assertEqual(self.client.post(f'{PREFIX}/trigger', json={'session_id': started, 'tier': 'day'}).status_code, 400)
        self.assertEqual(self.client.post(f'{PREFIX}/trigger', json={'session_id': started, 'tier': 'monthly'}).status_code, 422)

    def test_send_test_reminder(self):
        res = self.client.post(f'{PREFIX}/test', json={'email': 'qa@example.com'})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json(), {'email': 'qa@example.com', 'tier': 'hours', 'delivered': True})
        self.assertEqual(self.sender.sent, [('qa@example.com', 'hours')])
        self.assertEqual(self.client.post(f'{PREFIX}/test', json={'email': 'not-an-email'}).status_code, 422)

    def test_pause_resume_and_run(self):
        self._seed(121)
        paused = self.client.post(f'{PREFIX}/tiers/hours/pause')
        self.assertEqual(paused.json(), {'tier': 'hours', 'paused': True, 'state': 'idle'})
        self.assertEqual(self.client.post(f'{PREFIX}/tiers/hours/run').json()['status'], 'paused')
        self.assertEqual(self.sender.sent, [])

        resumed = self.client.post(f'{PREFIX}/tiers/HOURS/resume')
        self.assertFalse(resumed.json()['paused'])
        self.assertEqual(self.client.post(f'{PREFIX}/tiers/hours/run').json()['sent'], 2)

    def test_unknown_tier_returns_404(self):
        res = self.client.post(f'{PREFIX}/tiers/fortnight/pause')
        self.assertEqual(res.status_code, 404)
        self.assertIn('valid_tiers', res.json()['detail'])

    def test_admin_token_required_when_configured(self):
        with patch.object(settings, 'admin_api_token', 'secret-token'):
            self.assertEqual(self.client.get(f'{PREFIX}/stats').status_code, 401)
            wrong = self.client.get(f'{PREFIX}/stats', headers={'Authorization': 'Bearer nope'})
            self.assertEqual(wrong.status_code, 401)
            ok = self.client.get(f'{PREFIX}/stats', headers={'Authorization': 'Bearer secret-token'})
            self.assertEqual(ok.status_code, 200)
            self.assertEqual(self.client.post(f'{PREFIX}/tiers/hours/pause').status_code, 401)
        self.assertFalse(self.ctx.dispatcher.is_paused(ReminderTier.HOURS))


if __name__ == '__main__':
    unittest.main()
