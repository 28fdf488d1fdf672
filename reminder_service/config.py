from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    app_name: str = 'Session Reminder Service'
    app_env: str = 'local'
    app_timezone: str = 'UTC'
    database_url: str = 'sqlite:///./reminders.db'

    reminders_enabled: bool = True
    reminder_marker_ttl_minutes: int = 11520
    reminder_max_concurrency: int = 5
    reminder_health_failure_threshold: int = 3

    reminder_week_lead_minutes: int = 10080
    reminder_week_tolerance_minutes: int = 30
    reminder_week_poll_minutes: int = 15
    reminder_day_lead_minutes: int = 1440
    reminder_day_tolerance_minutes: int = 30
    reminder_day_poll_minutes: int = 15
    reminder_hours_lead_minutes: int = 120
    reminder_hours_tolerance_minutes: int = 10
    reminder_hours_poll_minutes: int = 5
    reminder_minutes_lead_minutes: int = 30
    reminder_minutes_tolerance_minutes: int = 4
    reminder_minutes_poll_minutes: int = 1

    cache_backend: str = 'memory'
    cache_redis_url: str | None = None
    default_cache_ttl: int = 60

    email_enabled: bool = False
    smtp_host: str = 'localhost'
    smtp_port: int = 587
    smtp_username: str = ''
    smtp_password: str = ''
    smtp_use_tls: bool = True
    smtp_timeout_seconds: int = 15
    email_from: str = 'no-reply@example.com'

    frontend_base_url: str = 'http://localhost:3000'
    support_email: str = 'support@example.com'
    admin_api_token: str = ''

    db_slow_query_ms: int = 100
    metrics_slow_ms: int = 200


settings = Settings()
