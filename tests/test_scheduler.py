import unittest
from datetime import timedelta
from unittest.mock import MagicMock, patch

from reminder_service.app_state import AppContext, set_context
from reminder_service.config import settings
from reminder_service.core.tiers import DEFAULT_TIER_TABLE, ReminderTier
from reminder_service.domain.reminder_dispatcher import CycleResult
from reminder_service.scheduler import job_id, register_jobs, reminder_cycle_job, scheduler, start_scheduler


class SchedulerTests(unittest.TestCase):
    def setUp(self):
        self.dispatcher = MagicMock()
        self.dispatcher.run_cycle.return_value = CycleResult(tier=ReminderTier.HOURS, status='completed')
        set_context(
            AppContext(
                tiers=DEFAULT_TIER_TABLE,
                backend=MagicMock(),
                tracker=MagicMock(),
                sender=MagicMock(),
                dispatcher=self.dispatcher,
            )
        )

    def tearDown(self):
        scheduler.remove_all_jobs()
        set_context(None)

    def test_one_job_per_tier_at_its_poll_period(self):
        registered = register_jobs()
        self.assertEqual(registered, [job_id(tier) for tier in DEFAULT_TIER_TABLE])

        jobs = {job.id: job for job in scheduler.get_jobs()}
        for tier, config in DEFAULT_TIER_TABLE.items():
            with self.subTest(tier=tier.value):
                job = jobs[job_id(tier)]
                self.assertEqual(job.trigger.interval, timedelta(minutes=config.poll_minutes))
                self.assertEqual(job.max_instances, 1)
                self.assertTrue(job.coalesce)
                self.assertEqual(job.args, (tier.value,))

    def test_job_runs_dispatcher_cycle(self):
        reminder_cycle_job('hours')
        self.dispatcher.run_cycle.assert_called_once_with(ReminderTier.HOURS)

    def test_disabled_service_does_not_start_scheduler(self):
        with patch.object(settings, 'reminders_enabled', False):
            start_scheduler()
        self.assertFalse(scheduler.running)
        self.assertEqual(scheduler.get_jobs(), [])

    def test_job_ids(self):
        self.assertEqual(job_id(ReminderTier.MINUTES), 'session_reminders_minutes')


if __name__ == '__main__':
    unittest.main()
