from __future__ import annotations

"""Per-user, per-day generation counters.

The increment is the guard: ``increment_if_below_limit`` checks the ceiling
and commits the new count under one lock, so concurrent requests from the
same user can never both pass at ``limit - 1``. Counts are never refunded.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime
from threading import RLock
from typing import Dict, Optional, Protocol, Tuple

LOG = logging.getLogger("scriptgen.usage")


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    new_count: int


def day_bucket(now: Optional[datetime] = None) -> date:
    """Calendar day (UTC) a generation is counted against."""

    return (now or datetime.now(UTC)).astimezone(UTC).date()


class UsageGuard(Protocol):
    def get_count(self, user_id: str, day: date) -> int: ...

    def increment_if_below_limit(self, user_id: str, day: date, limit: int) -> UsageDecision: ...


class InMemoryUsageStore:
    def __init__(self) -> None:
        self._counts: Dict[Tuple[str, date], int] = {}
        self._lock = RLock()

    def get_count(self, user_id: str, day: date) -> int:
        with self._lock:
            return self._counts.get((user_id, day), 0)

    def increment_if_below_limit(self, user_id: str, day: date, limit: int) -> UsageDecision:
        with self._lock:
            key = (user_id, day)
            current = self._counts.get(key, 0)
            if current >= limit:
                LOG.info(
                    "usage_limit_reached",
                    extra={"user_id": user_id, "day": day.isoformat(), "count": current, "limit": limit},
                )
                return UsageDecision(allowed=False, new_count=current)
            self._counts[key] = current + 1
            return UsageDecision(allowed=True, new_count=current + 1)


_store: UsageGuard | None = None


def get_usage_store() -> UsageGuard:
    global _store
    if _store is None:
        _store = InMemoryUsageStore()
    return _store


def reset_usage_store() -> None:
    """Drop the process-wide store (useful for tests)."""

    global _store
    _store = None
