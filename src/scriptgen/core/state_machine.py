from __future__ import annotations

"""Generation session state machine.

idle -> thinkingDraft -> generatingDraft -> complete -> {saving|installing} -> idle

Transitions are a pure function of (state, event); events a state does not
list are ignored. Observers are plain callables injected at construction and
are notified after every handled event without being able to block or fail
the transition.
"""

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..domain.session_models import GenerationSession

LOG = logging.getLogger("scriptgen.machine")


class GenerationState(str, Enum):
    IDLE = "idle"
    THINKING_DRAFT = "thinkingDraft"
    GENERATING_DRAFT = "generatingDraft"
    COMPLETE = "complete"
    SAVING = "saving"
    INSTALLING = "installing"


ACTIVE_STATES = frozenset({GenerationState.THINKING_DRAFT, GenerationState.GENERATING_DRAFT})


class EventType(str, Enum):
    SET_PROMPT = "SET_PROMPT"
    SET_USAGE = "SET_USAGE"
    SET_LUCKY_REQUEST = "SET_LUCKY_REQUEST"
    FROM_SUGGESTION = "FROM_SUGGESTION"
    GENERATE_DRAFT = "GENERATE_DRAFT"
    START_STREAMING_DRAFT = "START_STREAMING_DRAFT"
    CANCEL_GENERATION = "CANCEL_GENERATION"
    UPDATE_EDITABLE_SCRIPT = "UPDATE_EDITABLE_SCRIPT"
    APPEND_REASONING = "APPEND_REASONING"
    SET_ERROR = "SET_ERROR"
    CLEAR_ERROR = "CLEAR_ERROR"
    SET_SCRIPT_ID = "SET_SCRIPT_ID"
    COMPLETE_GENERATION = "COMPLETE_GENERATION"
    SAVE_SCRIPT = "SAVE_SCRIPT"
    SAVE_AND_INSTALL = "SAVE_AND_INSTALL"
    PERSIST_DONE = "PERSIST_DONE"
    PERSIST_FAILED = "PERSIST_FAILED"
    RESET = "RESET"


@dataclass(frozen=True)
class MachineEvent:
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)


def event(event_type: EventType | str, **payload: Any) -> MachineEvent:
    return MachineEvent(type=EventType(event_type), payload=payload)


@dataclass(frozen=True)
class Transition:
    previous: GenerationState
    current: GenerationState
    event: MachineEvent
    session: GenerationSession

    @property
    def changed(self) -> bool:
        return self.previous != self.current


TransitionListener = Callable[[Transition], Any]
Handler = Callable[[GenerationSession, MachineEvent], Optional[GenerationState]]


# ----------------------------------------------------------------------
# Actions. Each mutates the session and returns the target state, or None
# to stay in the current one.
# ----------------------------------------------------------------------
def _set_prompt(session: GenerationSession, ev: MachineEvent) -> None:
    session.prompt_text = str(ev.get("prompt", ""))
    session.is_from_suggestion = False


def _set_usage(session: GenerationSession, ev: MachineEvent) -> None:
    session.usage_count = int(ev.get("count", session.usage_count))
    session.usage_limit = int(ev.get("limit", session.usage_limit))


def _set_lucky_request(session: GenerationSession, ev: MachineEvent) -> None:
    session.lucky_request_id = ev.get("request_id")


def _from_suggestion(session: GenerationSession, ev: MachineEvent) -> None:
    session.is_from_suggestion = bool(ev.get("value", False))


def _generate_draft(session: GenerationSession, ev: MachineEvent) -> GenerationState:
    session.clear_attempt()
    session.interaction_id = str(ev.get("timestamp") or uuid.uuid4().hex)
    session.request_id = str(ev.get("request_id") or uuid.uuid4())
    return GenerationState.THINKING_DRAFT


def _start_streaming(session: GenerationSession, ev: MachineEvent) -> GenerationState:
    return GenerationState.GENERATING_DRAFT


def _to_idle(session: GenerationSession, ev: MachineEvent) -> GenerationState:
    return GenerationState.IDLE


def _append_delta(session: GenerationSession, ev: MachineEvent) -> None:
    delta = ev.get("delta")
    if delta:
        session.accumulated_content += str(delta)
    elif ev.get("script") is not None:
        LOG.debug("machine_replace_ignored_while_streaming", extra={"request_id": session.request_id})


def _edit_script(session: GenerationSession, ev: MachineEvent) -> None:
    script = ev.get("script")
    if script is not None:
        session.accumulated_content = str(script)
    elif ev.get("delta"):
        session.accumulated_content += str(ev.get("delta"))


def _append_reasoning(session: GenerationSession, ev: MachineEvent) -> None:
    text = str(ev.get("text") or "")
    if not text:
        return
    session.reasoning_text = f"{session.reasoning_text}\n\n{text}" if session.reasoning_text else text


def _set_error(session: GenerationSession, ev: MachineEvent) -> None:
    session.error = str(ev.get("error") or "Unknown error")
    session.error_kind = ev.get("kind")
    session.notice = ev.get("notice") or session.error


def _clear_error(session: GenerationSession, ev: MachineEvent) -> None:
    session.error = None
    session.error_kind = None
    session.notice = None


def _set_script_id(session: GenerationSession, ev: MachineEvent) -> None:
    script_id = ev.get("script_id")
    if not script_id:
        return
    if session.script_id is not None:
        if session.script_id != script_id:
            LOG.warning(
                "machine_script_id_reassign_ignored",
                extra={"current": session.script_id, "received": script_id},
            )
        return
    session.script_id = str(script_id)


def _complete(session: GenerationSession, ev: MachineEvent) -> GenerationState:
    session.finalized_content = session.accumulated_content
    return GenerationState.COMPLETE


def _save(session: GenerationSession, ev: MachineEvent) -> GenerationState:
    _clear_error(session, ev)
    return GenerationState.SAVING


def _save_and_install(session: GenerationSession, ev: MachineEvent) -> GenerationState:
    _clear_error(session, ev)
    return GenerationState.INSTALLING


def _persist_failed(session: GenerationSession, ev: MachineEvent) -> GenerationState:
    _set_error(session, ev)
    return GenerationState.COMPLETE


# Events accepted in every state.
GLOBAL_HANDLERS: Dict[EventType, Handler] = {
    EventType.SET_USAGE: _set_usage,
    EventType.RESET: _to_idle,
}

TRANSITIONS: Dict[GenerationState, Dict[EventType, Handler]] = {
    GenerationState.IDLE: {
        EventType.SET_PROMPT: _set_prompt,
        EventType.SET_LUCKY_REQUEST: _set_lucky_request,
        EventType.FROM_SUGGESTION: _from_suggestion,
        EventType.GENERATE_DRAFT: _generate_draft,
    },
    GenerationState.THINKING_DRAFT: {
        EventType.START_STREAMING_DRAFT: _start_streaming,
        EventType.SET_ERROR: _set_error,
        EventType.CLEAR_ERROR: _clear_error,
        EventType.CANCEL_GENERATION: _to_idle,
    },
    GenerationState.GENERATING_DRAFT: {
        EventType.UPDATE_EDITABLE_SCRIPT: _append_delta,
        EventType.APPEND_REASONING: _append_reasoning,
        EventType.SET_ERROR: _set_error,
        EventType.CLEAR_ERROR: _clear_error,
        EventType.SET_SCRIPT_ID: _set_script_id,
        EventType.COMPLETE_GENERATION: _complete,
        EventType.CANCEL_GENERATION: _to_idle,
    },
    GenerationState.COMPLETE: {
        EventType.UPDATE_EDITABLE_SCRIPT: _edit_script,
        EventType.CLEAR_ERROR: _clear_error,
        EventType.SAVE_SCRIPT: _save,
        EventType.SAVE_AND_INSTALL: _save_and_install,
    },
    GenerationState.SAVING: {
        EventType.PERSIST_DONE: _to_idle,
        EventType.PERSIST_FAILED: _persist_failed,
    },
    GenerationState.INSTALLING: {
        EventType.PERSIST_DONE: _to_idle,
        EventType.PERSIST_FAILED: _persist_failed,
    },
}


def resolve_handler(state: GenerationState, event_type: EventType) -> Optional[Handler]:
    handler = TRANSITIONS.get(state, {}).get(event_type)
    if handler is None:
        handler = GLOBAL_HANDLERS.get(event_type)
    return handler


def accepts(state: GenerationState, event_type: EventType) -> bool:
    return resolve_handler(state, event_type) is not None


def apply_event(
    state: GenerationState, session: GenerationSession, ev: MachineEvent
) -> Tuple[GenerationState, bool]:
    """Apply ``ev`` to ``session`` in place. Returns (next_state, handled)."""

    handler = resolve_handler(state, ev.type)
    if handler is None:
        return state, False
    target = handler(session, ev) or state
    # Entering idle (or resetting while there) starts from a clean slate.
    if target == GenerationState.IDLE and (state != GenerationState.IDLE or ev.type == EventType.RESET):
        session.clear_all()
    return target, True


class ScriptGenerationMachine:
    """Stateful wrapper around :func:`apply_event` with observer ports."""

    def __init__(
        self,
        listeners: Iterable[TransitionListener] = (),
        session: Optional[GenerationSession] = None,
    ) -> None:
        self._state = GenerationState.IDLE
        self._session = session or GenerationSession()
        self._listeners: List[TransitionListener] = list(listeners)

    @property
    def state(self) -> GenerationState:
        return self._state

    @property
    def session(self) -> GenerationSession:
        return self._session

    @property
    def active(self) -> bool:
        return self._state in ACTIVE_STATES

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def send(self, ev: MachineEvent | EventType | str, **payload: Any) -> bool:
        if not isinstance(ev, MachineEvent):
            ev = event(ev, **payload)
        previous = self._state
        self._state, handled = apply_event(previous, self._session, ev)
        if not handled:
            LOG.debug("machine_event_ignored", extra={"state": previous.value, "event": ev.type.value})
            return False
        self._notify(Transition(previous=previous, current=self._state, event=ev, session=self._session.snapshot()))
        return True

    def _notify(self, transition: Transition) -> None:
        for listener in self._listeners:
            try:
                result = listener(transition)
                if inspect.isawaitable(result):
                    _fire_and_forget(result)
            except Exception:
                LOG.exception("machine_listener_failed", extra={"event": transition.event.type.value})


def _fire_and_forget(awaitable: Any) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        LOG.debug("machine_listener_dropped_no_loop")
        return
    task = loop.create_task(_guard(awaitable))
    _BACKGROUND.add(task)
    task.add_done_callback(_BACKGROUND.discard)


async def _guard(awaitable: Any) -> None:
    try:
        await awaitable
    except Exception:
        LOG.exception("machine_listener_failed")


_BACKGROUND: set = set()
