import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

from reminder_service.config import settings
from reminder_service.core.tiers import DEFAULT_TIER_TABLE, ReminderTier, TierConfig
from reminder_service.models import Batch, LiveSession, User
from reminder_service.services.email_service import LogEmailSender, SmtpEmailSender, build_email_sender, render_reminder
from reminder_service.services.reminder_content import (
    build_reminder_context,
    build_subject,
    format_long_date,
    format_time_until,
    resolve_zone,
)


START = datetime(2026, 3, 9, 9, 30)


def _session(**overrides):
    batch = Batch(name='Python Foundations', code='PY-101')
    batch.instructor = User(full_name='Priya Nair', email='priya@example.com')
    fields = {
        'id': 11,
        'title': 'Live Coding',
        'description': 'Bring your laptop.',
        'scheduled_start': START,
        'duration_minutes': 90,
        'meeting_url': 'https://zoom.us/j/900000001',
        'meeting_id': '900 000 001',
        'meeting_password': 'learn',
    }
    fields.update(overrides)
    session = LiveSession(**fields)
    session.batch = batch
    return session


def _student(tz='Asia/Kolkata'):
    return User(id=5, full_name='Aarav Shah', email='aarav@example.com', timezone=tz)


class ReminderContentTests(unittest.TestCase):
    def test_week_context_is_informational(self):
        config = DEFAULT_TIER_TABLE[ReminderTier.WEEK]
        context = build_reminder_context(_session(), _student(), config, now=START - timedelta(days=7))

        self.assertFalse(context['is_urgent'])
        self.assertEqual(context['session_date'], 'Monday, March 9th, 2026')
        self.assertEqual(context['session_time'], '3:00 PM')
        self.assertEqual(context['session_end_time'], '4:30 PM')
        self.assertEqual(context['timezone'], 'Asia/Kolkata')
        self.assertEqual(context['instructor_name'], 'Priya Nair')
        self.assertEqual(context['reminder_interval'], '1 week')
        self.assertEqual(context['time_until_session'], '7 days and 0 hours')
        self.assertEqual(context['subject'], 'Upcoming Session Next Week - Python Foundations on Mar 9th at 3:00 PM')
        self.assertEqual(context['join_url'], f"{settings.frontend_base_url.rstrip('/')}/dashboard/sessions")
        self.assertNotIn('meeting_password', context)
        self.assertIn('dates=20260309T093000Z%2F20260309T110000Z', context['calendar_url'])

    def test_urgent_context_carries_meeting_details(self):
        config = DEFAULT_TIER_TABLE[ReminderTier.HOURS]
        context = build_reminder_context(_session(), _student(), config, now=START - timedelta(minutes=121))

        self.assertTrue(context['is_urgent'])
        self.assertEqual(context['join_url'], 'https://zoom.us/j/900000001')
        self.assertEqual(context['meeting_id'], '900 000 001')
        self.assertEqual(context['meeting_password'], 'learn')
        self.assertEqual(context['time_until_session'], '2 hours and 1 minute')
        self.assertEqual(context['subject'], 'Session Starting Soon - Python Foundations in 2 Hours')

    def test_urgent_context_without_meeting_link_falls_back_to_dashboard(self):
        config = DEFAULT_TIER_TABLE[ReminderTier.MINUTES]
        context = build_reminder_context(_session(meeting_url=None), _student(), config, now=START - timedelta(minutes=30))
        self.assertTrue(context['join_url'].endswith('/dashboard/sessions'))
        self.assertEqual(context['subject'], 'Join Now - Python Foundations Session Starting in 30 Minutes')

    def test_session_instructor_overrides_batch_instructor(self):
        session = _session()
        session.instructor = User(full_name='Guest Speaker')
        config = DEFAULT_TIER_TABLE[ReminderTier.DAY]
        context = build_reminder_context(session, _student(), config, now=START - timedelta(days=1))
        self.assertEqual(context['instructor_name'], 'Guest Speaker')

    def test_unknown_timezone_falls_back_to_utc(self):
        self.assertEqual(resolve_zone('Mars/Olympus').key, 'UTC')
        config = DEFAULT_TIER_TABLE[ReminderTier.DAY]
        context = build_reminder_context(_session(), _student('Mars/Olympus'), config, now=START - timedelta(days=1))
        self.assertEqual(context['session_time'], '9:30 AM')
        self.assertEqual(context['subject'], 'Session Tomorrow - Python Foundations on Mar 9th at 9:30 AM')

    def test_formatting_helpers(self):
        self.assertEqual(format_long_date(datetime(2026, 3, 22)), 'Sunday, March 22nd, 2026')
        self.assertEqual(format_long_date(datetime(2026, 3, 11)), 'Wednesday, March 11th, 2026')
        self.assertEqual(format_time_until(START, START - timedelta(minutes=1)), '1 minute')
        self.assertEqual(format_time_until(START, START + timedelta(minutes=5)), '0 minutes')
        self.assertEqual(format_time_until(START, START - timedelta(days=1, hours=2)), '1 day and 2 hours')

    def test_subject_for_day_tier(self):
        subject = build_subject(DEFAULT_TIER_TABLE[ReminderTier.DAY], 'Data Science', datetime(2026, 4, 1, 18, 5))
        self.assertEqual(subject, 'Session Tomorrow - Data Science on Apr 1st at 6:05 PM')

    def test_urgent_subjects_follow_configured_lead(self):
        local_start = datetime(2026, 4, 1, 18, 5)
        cases = (
            (TierConfig(ReminderTier.HOURS, 180, 10, 5, '3 hours'), 'Session Starting Soon - Data Science in 3 Hours'),
            (TierConfig(ReminderTier.HOURS, 90, 10, 5, '90 minutes'), 'Session Starting Soon - Data Science in 90 Minutes'),
            (TierConfig(ReminderTier.MINUTES, 15, 4, 1, '15 minutes'), 'Join Now - Data Science Session Starting in 15 Minutes'),
            (TierConfig(ReminderTier.HOURS, 60, 10, 5, '1 hour'), 'Session Starting Soon - Data Science in 1 Hour'),
        )
        for config, expected in cases:
            with self.subTest(lead=config.lead_minutes):
                self.assertEqual(build_subject(config, 'Data Science', local_start), expected)


class ReminderRenderingTests(unittest.TestCase):
    def test_informational_body_links_calendar(self):
        config = DEFAULT_TIER_TABLE[ReminderTier.DAY]
        context = build_reminder_context(_session(), _student(), config, now=START - timedelta(days=1))
        text_body, html_body = render_reminder(context)
        self.assertIn('Add to calendar:', text_body)
        self.assertNotIn('Password:', text_body)
        self.assertIn('Open dashboard', html_body)

    def test_urgent_body_contains_join_details(self):
        config = DEFAULT_TIER_TABLE[ReminderTier.MINUTES]
        context = build_reminder_context(_session(), _student(), config, now=START - timedelta(minutes=30))
        text_body, html_body = render_reminder(context)
        self.assertIn('Join: https://zoom.us/j/900000001', text_body)
        self.assertIn('Password: learn', text_body)
        self.assertIn('href="https://zoom.us/j/900000001"', html_body)

    def test_html_body_escapes_user_text(self):
        config = DEFAULT_TIER_TABLE[ReminderTier.DAY]
        session = _session(description='<script>alert(1)</script>')
        context = build_reminder_context(session, _student(), config, now=START - timedelta(days=1))
        text_body, html_body = render_reminder(context)
        self.assertIn('<script>alert(1)</script>', text_body)
        self.assertNotIn('<script>', html_body)
        self.assertIn('&lt;script&gt;', html_body)


class EmailSenderTests(unittest.TestCase):
    def _context(self):
        config = DEFAULT_TIER_TABLE[ReminderTier.HOURS]
        return build_reminder_context(_session(), _student(), config, now=START - timedelta(minutes=120))

    def _sender(self, **kwargs):
        options = {'username': 'mailer', 'password': 'secret', 'sender': 'no-reply@example.com'}
        options.update(kwargs)
        return SmtpEmailSender('smtp.example.com', 587, **options)

    def test_build_message_has_text_and_html_parts(self):
        message = self._sender().build_message('aarav@example.com', self._context())
        self.assertEqual(message['To'], 'aarav@example.com')
        self.assertEqual(message['From'], 'no-reply@example.com')
        self.assertEqual(message['Subject'], 'Session Starting Soon - Python Foundations in 2 Hours')
        self.assertIn('Join: https://zoom.us/j/900000001', message.get_body(preferencelist=('plain',)).get_content())
        self.assertIn('Join the session', message.get_body(preferencelist=('html',)).get_content())

    def test_send_uses_starttls_and_login(self):
        with patch('reminder_service.services.email_service.smtplib.SMTP') as smtp_cls:
            ok = self._sender().send('aarav@example.com', ReminderTier.HOURS, self._context())
        self.assertTrue(ok)
        smtp_cls.assert_called_once_with('smtp.example.com', 587, timeout=15)
        server = smtp_cls.return_value.__enter__.return_value
        server.starttls.assert_called_once_with()
        server.login.assert_called_once_with('mailer', 'secret')
        server.send_message.assert_called_once()

    def test_send_without_tls_or_credentials(self):
        with patch('reminder_service.services.email_service.smtplib.SMTP') as smtp_cls:
            ok = self._sender(username='', use_tls=False).send('aarav@example.com', ReminderTier.HOURS, self._context())
        self.assertTrue(ok)
        server = smtp_cls.return_value.__enter__.return_value
        server.starttls.assert_not_called()
        server.login.assert_not_called()

    def test_connection_failure_reports_false(self):
        with patch('reminder_service.services.email_service.smtplib.SMTP', side_effect=OSError('refused')):
            ok = self._sender().send('aarav@example.com', ReminderTier.HOURS, self._context())
        self.assertFalse(ok)

    def test_log_sender_used_when_email_disabled(self):
        with patch.object(settings, 'email_enabled', False):
            sender = build_email_sender()
        self.assertIsInstance(sender, LogEmailSender)
        self.assertFalse(sender.is_configured())
        self.assertTrue(sender.send('aarav@example.com', ReminderTier.HOURS, self._context()))

    def test_smtp_sender_used_when_email_enabled(self):
        with patch.object(settings, 'email_enabled', True), patch.object(settings, 'smtp_host', 'smtp.example.com'):
            sender = build_email_sender()
        self.assertIsInstance(sender, SmtpEmailSender)
        self.assertTrue(sender.is_configured())


if __name__ == '__main__':
    unittest.main()
