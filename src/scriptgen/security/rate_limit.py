from __future__ import annotations

"""In-memory registry of generation requests that are still streaming."""

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import RLock
from typing import Dict

PROMPT_KEY_LENGTH = 50


@dataclass
class _InFlightEntry:
    started_at: datetime
    expires_at: datetime


_IN_FLIGHT: Dict[str, _InFlightEntry] = {}
_LOCK = RLock()


class DuplicateRequest(Exception):
    def __init__(self, key: str) -> None:
        super().__init__("A similar request is already being processed")
        self.key = key


def request_key(user_id: str, prompt: str, interaction_timestamp: str) -> str:
    return f"{user_id}-{prompt[:PROMPT_KEY_LENGTH]}-{interaction_timestamp}"


def acquire_in_flight(key: str) -> None:
    """Register ``key`` as streaming.

    Raises:
        DuplicateRequest if an unexpired entry for the same key exists.
    """

    ttl = _env_int("SCRIPTGEN_IN_FLIGHT_TTL_SECONDS", 300)
    now = datetime.now(timezone.utc)
    with _LOCK:
        entry = _IN_FLIGHT.get(key)
        if entry and entry.expires_at > now:
            raise DuplicateRequest(key)
        _IN_FLIGHT[key] = _InFlightEntry(started_at=now, expires_at=now + timedelta(seconds=ttl))


def release_in_flight(key: str) -> None:
    with _LOCK:
        _IN_FLIGHT.pop(key, None)


def is_in_flight(key: str) -> bool:
    with _LOCK:
        entry = _IN_FLIGHT.get(key)
        return bool(entry and entry.expires_at > datetime.now(timezone.utc))


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def reset_in_flight() -> None:
    """Clear in-memory entries (useful for tests)."""

    with _LOCK:
        _IN_FLIGHT.clear()
