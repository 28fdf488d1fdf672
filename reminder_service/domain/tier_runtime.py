from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from reminder_service.core.tiers import ReminderTier


class CycleState(str, Enum):
    IDLE = 'idle'
    RUNNING = 'running'


COUNTER_NAMES = ('sent', 'failed', 'expired', 'skipped', 'unconfirmed')


@dataclass
class TierRuntime:
    """Per-tier state token plus the counters the management API reports."""

    tier: ReminderTier
    state: CycleState = CycleState.IDLE
    paused: bool = False
    cycles_run: int = 0
    consecutive_failures: int = 0
    last_cycle_started_at: datetime | None = None
    last_cycle_finished_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None
    counters: dict[str, int] = field(default_factory=lambda: {name: 0 for name in COUNTER_NAMES})
    # reminder key -> (window end, context for logging) for sends not yet confirmed
    unconfirmed: dict[str, tuple[datetime, dict]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def try_begin(self, now: datetime) -> bool:
        with self._lock:
            if self.state == CycleState.RUNNING:
                return False
            self.state = CycleState.RUNNING
            self.last_cycle_started_at = now
            return True

    def abandon(self) -> None:
        """Return to idle without recording a cycle."""
        with self._lock:
            self.state = CycleState.IDLE

    def finish(self, now: datetime, *, error: str | None = None) -> None:
        with self._lock:
            self.state = CycleState.IDLE
            self.cycles_run += 1
            self.last_cycle_finished_at = now
            if error:
                self.consecutive_failures += 1
                self.last_error = error
            else:
                self.consecutive_failures = 0
                self.last_success_at = now

    def increment(self, name: str, amount: int = 1) -> None:
        if amount <= 0:
            return
        with self._lock:
            self.counters[name] = self.counters.get(name, 0) + amount

    def note_unconfirmed(self, key: str, expires_at: datetime, context: dict) -> None:
        with self._lock:
            self.unconfirmed[key] = (expires_at, context)

    def confirm(self, key: str) -> None:
        with self._lock:
            self.unconfirmed.pop(key, None)

    def pop_expired(self, now: datetime) -> list[tuple[str, dict]]:
        with self._lock:
            expired = [(key, ctx) for key, (expires_at, ctx) in self.unconfirmed.items() if expires_at < now]
            for key, _ in expired:
                self.unconfirmed.pop(key, None)
            return expired

    def snapshot(self) -> dict:
        with self._lock:
            return {
                'tier': self.tier.value,
                'state': self.state.value,
                'paused': self.paused,
                'cycles_run': self.cycles_run,
                'consecutive_failures': self.consecutive_failures,
                'last_cycle_started_at': self.last_cycle_started_at,
                'last_cycle_finished_at': self.last_cycle_finished_at,
                'last_success_at': self.last_success_at,
                'last_error': self.last_error,
                'counters': dict(self.counters),
                'pending': len(self.unconfirmed),
            }
