import logging

from apscheduler.schedulers.background import BackgroundScheduler

from reminder_service.app_state import get_context
from reminder_service.config import settings
from reminder_service.core.tiers import ReminderTier
from reminder_service.metrics import run_timed_job


scheduler = BackgroundScheduler(timezone='UTC')
logger = logging.getLogger(__name__)

JOB_PREFIX = 'session_reminders'


def job_id(tier: ReminderTier) -> str:
    return f'{JOB_PREFIX}_{tier.value}'


def reminder_cycle_job(tier_value: str) -> None:
    tier = ReminderTier(tier_value)
    dispatcher = get_context().dispatcher
    run_timed_job(job_id(tier), lambda: dispatcher.run_cycle(tier))


def register_jobs() -> list[str]:
    registered = []
    for tier, config in get_context().tiers.items():
        scheduler.add_job(
            reminder_cycle_job,
            'interval',
            minutes=config.poll_minutes,
            args=[tier.value],
            id=job_id(tier),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        registered.append(job_id(tier))
    return registered


def start_scheduler():
    if not settings.reminders_enabled:
        logger.info('session_reminders_disabled scheduler_not_started')
        return
    jobs = register_jobs()
    if not scheduler.running:
        scheduler.start()
    logger.info('session_reminder_scheduler_started jobs=%s', ','.join(jobs))


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
