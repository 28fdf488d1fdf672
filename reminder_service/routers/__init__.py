from reminder_service.routers import session_reminders

__all__ = ['session_reminders']
