"""In-memory user directory suitable for tests and local development."""
from __future__ import annotations

from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Iterable

from ..exceptions import NotFoundError
from ..usage.periods import is_within_limit
from .models import UsageCounter, User


class InMemoryUserDirectory:
    """Lock-guarded store whose conditional updates mirror the SQL ones."""

    def __init__(self, users: Iterable[User] = ()) -> None:
        self._lock = Lock()
        self._users: Dict[str, User] = {user.user_id: user for user in users}

    def add_user(self, user: User) -> User:
        with self._lock:
            self._users[user.user_id] = user
        return user

    def get_user(self, user_id: str) -> User:
        with self._lock:
            user = self._users.get(user_id)
        if user is None:
            raise NotFoundError(f"User not found: {user_id}")
        return user

    def save_user(self, user: User) -> User:
        with self._lock:
            stored = self._users.get(user.user_id)
            if stored is None:
                raise NotFoundError(f"User not found: {user.user_id}")
            updated = user.model_copy(
                update={"usage": stored.usage, "updated_at": datetime.now(timezone.utc)}
            )
            self._users[user.user_id] = updated
            return updated

    def increment_usage(self, user_id: str, counter: UsageCounter, *, limit: int) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return False
            current = user.usage.count_for(counter)
            if not is_within_limit(limit, current):
                return False
            usage = user.usage.model_copy(update={counter.value: current + 1})
            self._users[user_id] = user.model_copy(update={"usage": usage})
            return True

    def reset_usage(
        self,
        user_id: str,
        *,
        observed_reset_date: datetime,
        reset_at: datetime,
    ) -> bool:
        with self._lock:
            user = self._users.get(user_id)
            if user is None or user.usage.last_reset_date != observed_reset_date:
                return False
            usage = user.usage.model_copy(
                update={
                    "resume_analysis_count": 0,
                    "interview_sessions_count": 0,
                    "last_reset_date": reset_at,
                }
            )
            self._users[user_id] = user.model_copy(update={"usage": usage})
            return True
