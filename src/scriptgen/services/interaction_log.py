from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from ..core.state_machine import Transition

_logger = logging.getLogger("scriptgen.interaction")

STAGE_CLIENT = "client"
STAGE_STATE_MACHINE = "stateMachine"
STAGE_SERVER_ROUTE = "serverRoute"


@dataclass
class InteractionEntry:
    interaction_id: str
    stage: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""


# Rolling buffer of recent entries for diagnostics (best-effort only)
_RECENT: List[InteractionEntry] = []
_MAX_BUFFER = 200


def log_interaction(
    interaction_id: Optional[str],
    stage: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
) -> None:
    """Record one step of an interaction chain (client, state machine or server route)."""

    entry = InteractionEntry(
        interaction_id=interaction_id or "unknown",
        stage=stage,
        message=message,
        data=dict(data or {}),
        timestamp=datetime.now(UTC).isoformat().replace("+00:00", "Z"),
    )
    _RECENT.append(entry)
    if len(_RECENT) > _MAX_BUFFER:
        del _RECENT[0 : len(_RECENT) - _MAX_BUFFER]

    try:
        _logger.info(
            "interaction_event",
            extra={
                "interaction_id": entry.interaction_id,
                "interaction_stage": stage,
                "interaction_message": message,
                "interaction_data": entry.data,
            },
        )
    except Exception:
        # Logging failures should not surface to callers
        pass


def list_recent_interactions(limit: int = 50, interaction_id: Optional[str] = None) -> List[InteractionEntry]:
    if limit <= 0:
        return []
    entries = _RECENT if interaction_id is None else [e for e in _RECENT if e.interaction_id == interaction_id]
    return list(entries[-limit:])


def reset_interactions() -> None:
    """Clear the in-memory buffer (useful for tests)."""

    _RECENT.clear()


class InteractionLogListener:
    """Transition listener that mirrors state machine activity into the interaction log."""

    def __call__(self, transition: Transition) -> None:
        session = transition.session
        ev = transition.event
        data: Dict[str, Any] = {
            "event": ev.type.value,
            "from": transition.previous.value,
            "to": transition.current.value,
        }
        # Deltas are frequent; keep the payload small.
        if "delta" in ev.payload:
            data["delta_length"] = len(str(ev.payload.get("delta") or ""))
        if session.script_id:
            data["script_id"] = session.script_id
        if session.error:
            data["error"] = session.error
        message = (
            f"Transition {transition.previous.value} -> {transition.current.value}"
            if transition.changed
            else f"Handled {ev.type.value} in {transition.current.value}"
        )
        log_interaction(session.interaction_id, STAGE_STATE_MACHINE, message, data)
