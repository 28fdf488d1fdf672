import sys

import httpx
from sqlalchemy import text

from reminder_service.app_state import get_context
from reminder_service.config import settings
from reminder_service.db import engine
from reminder_service.scheduler import job_id, scheduler, start_scheduler, stop_scheduler


GREEN = '\033[32m'
RED = '\033[31m'
RESET = '\033[0m'


def run_check(name, fn):
    try:
        message = fn() or ''
        suffix = f' - {message}' if message else ''
        print(f'{GREEN}PASS{RESET} {name}{suffix}')
        return True
    except Exception as exc:
        print(f'{RED}FAIL{RESET} {name} - {exc}')
        return False


def check_db_connectivity():
    with engine.connect() as conn:
        conn.execute(text('SELECT 1'))
    return 'connect ok'


def check_tier_table():
    tiers = get_context().tiers
    return ', '.join(f'{cfg.tier.value}={cfg.lead_minutes}m/±{cfg.tolerance_minutes / 2:g}m/every {cfg.poll_minutes}m' for cfg in tiers.values())


def check_tracker_reachable():
    if not get_context().tracker.ping():
        raise RuntimeError(f'tracker backend {settings.cache_backend!r} unreachable')
    return f'backend={settings.cache_backend}'


def check_email_config():
    if not settings.email_enabled:
        return 'email disabled, reminders are logged only'
    missing = [
        key
        for key, value in {'SMTP_HOST': settings.smtp_host, 'EMAIL_FROM': settings.email_from}.items()
        if not str(value).strip()
    ]
    if missing:
        raise RuntimeError(f'Missing env vars: {", ".join(missing)}')
    return f'smtp={settings.smtp_host}:{settings.smtp_port}'


def check_scheduler_jobs_registered():
    if not settings.reminders_enabled:
        return 'reminders disabled'
    start_scheduler()
    try:
        registered = {job.id for job in scheduler.get_jobs()}
        expected = {job_id(tier) for tier in get_context().tiers}
        missing = sorted(expected - registered)
        if missing:
            raise RuntimeError(f'Missing jobs: {missing}')
        return f'jobs={sorted(registered)}'
    finally:
        stop_scheduler()


def check_running_service(base_url):
    headers = {}
    if settings.admin_api_token:
        headers['Authorization'] = f'Bearer {settings.admin_api_token}'
    res = httpx.get(f"{base_url.rstrip('/')}/api/v1/session-reminders/health", headers=headers, timeout=8)
    payload = res.json()
    if res.status_code != 200:
        raise RuntimeError(f"HTTP {res.status_code}: status={payload.get('status')} checks={payload.get('checks')}")
    return f"status={payload.get('status')} missed_24h={payload.get('missed_reminders_24h')}"


def main():
    checks = [
        ('Database connectivity', check_db_connectivity),
        ('Tier table valid', check_tier_table),
        ('Notification tracker reachable', check_tracker_reachable),
        ('Email configuration', check_email_config),
        ('Scheduler jobs registered', check_scheduler_jobs_registered),
    ]
    if len(sys.argv) > 1:
        base_url = sys.argv[1]
        checks.append(('Running service health endpoint', lambda: check_running_service(base_url)))

    all_ok = True
    for name, fn in checks:
        all_ok = run_check(name, fn) and all_ok

    if not all_ok:
        sys.exit(1)
    sys.exit(0)


if __name__ == '__main__':
    main()
