"""
Retry bookkeeping shared by the transcription pipeline and the reminder
dispatcher. Plain data only: callers persist the state and whatever loop
picks the row up again decides when to retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class RetryState:
    attempt: int
    max_attempts: int
    next_attempt_at: Optional[datetime] = None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff: timedelta = timedelta(minutes=5)

    def state_for(self, attempt: int) -> RetryState:
        return RetryState(attempt=attempt, max_attempts=self.max_attempts)

    def after_failure(self, state: RetryState, now: datetime) -> RetryState:
        """Record one failed attempt. ``next_attempt_at`` is None once exhausted."""
        attempt = state.attempt + 1
        if attempt >= self.max_attempts:
            return RetryState(attempt=attempt, max_attempts=self.max_attempts)
        return RetryState(
            attempt=attempt,
            max_attempts=self.max_attempts,
            next_attempt_at=now + self.backoff,
        )
