from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum


class ReminderTier(str, Enum):
    WEEK = 'week'
    DAY = 'day'
    HOURS = 'hours'
    MINUTES = 'minutes'


URGENT_TIERS = frozenset({ReminderTier.HOURS, ReminderTier.MINUTES})


@dataclass(frozen=True)
class TierConfig:
    tier: ReminderTier
    lead_minutes: int
    tolerance_minutes: int
    poll_minutes: int
    label: str

    def __post_init__(self) -> None:
        if self.poll_minutes <= 0:
            raise ValueError(f'{self.tier.value}: poll period must be positive')
        if self.tolerance_minutes < 2 * self.poll_minutes:
            raise ValueError(
                f'{self.tier.value}: tolerance window {self.tolerance_minutes}m must be at least '
                f'twice the poll period {self.poll_minutes}m'
            )
        if self.lead_minutes * 2 <= self.tolerance_minutes:
            raise ValueError(f'{self.tier.value}: lead time must exceed half the tolerance window')

    @property
    def lead(self) -> timedelta:
        return timedelta(minutes=self.lead_minutes)

    @property
    def half_window(self) -> timedelta:
        return timedelta(minutes=self.tolerance_minutes) / 2

    @property
    def is_urgent(self) -> bool:
        return self.tier in URGENT_TIERS

    def as_dict(self) -> dict:
        return {
            'tier': self.tier.value,
            'label': self.label,
            'lead_minutes': self.lead_minutes,
            'tolerance_minutes': self.tolerance_minutes,
            'poll_minutes': self.poll_minutes,
        }


def lead_label(lead_minutes: int) -> str:
    """Largest whole unit for a lead time: 10080 -> '1 week', 120 -> '2 hours', 90 -> '90 minutes'."""
    for unit, size in (('week', 10080), ('day', 1440), ('hour', 60)):
        if lead_minutes >= size and lead_minutes % size == 0:
            count = lead_minutes // size
            return f"{count} {unit}{'' if count == 1 else 's'}"
    return f"{lead_minutes} minute{'' if lead_minutes == 1 else 's'}"


DEFAULT_TIER_TABLE: dict[ReminderTier, TierConfig] = {
    ReminderTier.WEEK: TierConfig(ReminderTier.WEEK, 10080, 30, 15, '1 week'),
    ReminderTier.DAY: TierConfig(ReminderTier.DAY, 1440, 30, 15, '1 day'),
    ReminderTier.HOURS: TierConfig(ReminderTier.HOURS, 120, 10, 5, '2 hours'),
    ReminderTier.MINUTES: TierConfig(ReminderTier.MINUTES, 30, 4, 1, '30 minutes'),
}


def _validate_exclusive(table: dict[ReminderTier, TierConfig]) -> None:
    ordered = sorted(table.values(), key=lambda cfg: cfg.lead_minutes)
    for shorter, longer in zip(ordered, ordered[1:]):
        if shorter.lead + shorter.half_window >= longer.lead - longer.half_window:
            raise ValueError(f'tier windows overlap: {shorter.tier.value} and {longer.tier.value}')


def load_tier_table(config=None) -> dict[ReminderTier, TierConfig]:
    """Build the tier table, applying REMINDER_<TIER>_* overrides from settings."""
    if config is None:
        from reminder_service.config import settings as config

    table: dict[ReminderTier, TierConfig] = {}
    for tier, default in DEFAULT_TIER_TABLE.items():
        prefix = f'reminder_{tier.value}'
        lead_minutes = int(getattr(config, f'{prefix}_lead_minutes', default.lead_minutes))
        table[tier] = TierConfig(
            tier=tier,
            lead_minutes=lead_minutes,
            tolerance_minutes=int(getattr(config, f'{prefix}_tolerance_minutes', default.tolerance_minutes)),
            poll_minutes=int(getattr(config, f'{prefix}_poll_minutes', default.poll_minutes)),
            label=lead_label(lead_minutes),
        )
    _validate_exclusive(table)
    return table


def parse_tier(value: str) -> ReminderTier:
    raw = (value or '').strip().lower()
    for tier in ReminderTier:
        if raw == tier.value:
            return tier
    raise ValueError(f'Unknown reminder tier: {value!r}')


# Interval matching. All datetimes must share one convention (naive UTC in this service).

def is_due(config: TierConfig, now: datetime, start: datetime) -> bool:
    if start <= now:
        return False
    offset = start - now
    return config.lead - config.half_window <= offset <= config.lead + config.half_window


def due_tiers(table: dict[ReminderTier, TierConfig], now: datetime, start: datetime) -> list[ReminderTier]:
    return [tier for tier, cfg in table.items() if is_due(cfg, now, start)]


def due_window(config: TierConfig, now: datetime) -> tuple[datetime, datetime]:
    """Earliest and latest session start, inclusive, for which the tier is due at `now`."""
    return now + config.lead - config.half_window, now + config.lead + config.half_window


def window_end(config: TierConfig, start: datetime) -> datetime:
    """Last instant at which the tier may still fire for a session starting at `start`."""
    return start - config.lead + config.half_window
