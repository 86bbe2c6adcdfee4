from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class LoginState:
    login_attempts: int = 0
    lock_until: Optional[datetime] = None


class LockoutPolicy:
    """Failed-login counter with a timed lock.

    Pure state transitions; callers persist the returned ``LoginState`` through
    the store's atomic ``modify_*`` primitive.
    """

    def __init__(self, max_attempts: int = 5, lock_duration: timedelta = timedelta(hours=2)):
        if max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        self.max_attempts = max_attempts
        self.lock_duration = lock_duration

    def is_locked(self, state: LoginState, now: datetime) -> bool:
        return state.lock_until is not None and state.lock_until > now

    def register_failure(self, state: LoginState, now: datetime) -> LoginState:
        if self.is_locked(state, now):
            return state
        attempts = state.login_attempts
        if state.lock_until is not None:
            # previous lock has lapsed; start a fresh window
            attempts = 0
        attempts += 1
        lock_until = now + self.lock_duration if attempts >= self.max_attempts else None
        return LoginState(login_attempts=attempts, lock_until=lock_until)

    def register_success(self) -> LoginState:
        return LoginState(login_attempts=0, lock_until=None)

    def remaining_lock_minutes(self, state: LoginState, now: datetime) -> int:
        if not self.is_locked(state, now):
            return 0
        return math.ceil((state.lock_until - now).total_seconds() / 60)

    def attempts_remaining(self, state: LoginState) -> int:
        return max(0, self.max_attempts - state.login_attempts)
