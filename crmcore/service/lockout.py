"""Brute-force lockout as a pure state transition.

Nothing here reads storage or the wall clock; callers pass the current
state and ``now`` and persist whatever comes back.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

MAX_FAILED_ATTEMPTS = 5
LOCKOUT_DURATION = timedelta(minutes=30)


@dataclass(frozen=True)
class LockoutState:
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None


@dataclass(frozen=True)
class LockoutPolicy:
    max_failed_attempts: int = MAX_FAILED_ATTEMPTS
    lockout_duration: timedelta = LOCKOUT_DURATION

    def remaining_lockout(self, state: LockoutState, now: datetime) -> Optional[timedelta]:
        """Time left on an active lockout, or None when the account may try."""
        if state.locked_until is not None and state.locked_until > now:
            return state.locked_until - now
        return None

    def register_failure(self, state: LockoutState, now: datetime) -> LockoutState:
        attempts = state.failed_attempts + 1
        locked_until = state.locked_until if self.remaining_lockout(state, now) else None
        if attempts >= self.max_failed_attempts:
            locked_until = now + self.lockout_duration
        return LockoutState(failed_attempts=attempts, locked_until=locked_until)

    def register_success(self, state: LockoutState) -> LockoutState:
        return LockoutState()


def remaining_minutes(remaining: timedelta) -> int:
    """Whole minutes left, rounded up so a user is never told ``0``."""
    return max(1, math.ceil(remaining.total_seconds() / 60))
