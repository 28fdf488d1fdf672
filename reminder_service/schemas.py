from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


TierName = Literal['week', 'day', 'hours', 'minutes']


class TriggerReminderRequest(BaseModel):
    session_id: int = Field(gt=0)
    tier: TierName
    respect_markers: bool = True


class TriggerReminderResponse(BaseModel):
    session_id: int
    session_title: str
    tier: str
    reminder_interval: str
    recipients: int
    sent: int
    failed: int
    unconfirmed: int
    already_sent: int
    skipped: int
    triggered_at: datetime


class SendTestReminderRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255, pattern=r'^[^@\s]+@[^@\s]+$')
    tier: TierName = 'hours'


class SendTestReminderResponse(BaseModel):
    email: str
    tier: str
    delivered: bool


class TierStateResponse(BaseModel):
    tier: str
    paused: bool
    state: str


class CycleResultResponse(BaseModel):
    tier: str
    status: str
    sessions: int = 0
    sent: int = 0
    failed: int = 0
    unconfirmed: int = 0
    already_sent: int = 0
    skipped: int = 0
    expired: int = 0
    error: str | None = None
