"""Async driver that wires a streaming engine into the generation state machine.

The orchestrator owns one machine, one cancellation controller and at most
one running stream. Stream callbacks become machine events; callbacks from a
token that has been cancelled or superseded are dropped, so a stale stream
can never write into a newer session.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Optional

from ..core.errors import GenerationError, NetworkError, ServerError
from ..core.state_machine import (
    EventType,
    GenerationState,
    ScriptGenerationMachine,
    TransitionListener,
)
from ..domain.session_models import GenerationSession
from .cancellation import CancellationController, CancellationToken
from .interaction_log import STAGE_CLIENT, InteractionLogListener, log_interaction
from .persistence import ScriptPersistence
from .providers import StreamCallbacks, StreamingEngine

LOG = logging.getLogger("scriptgen.orchestrator")


class GenerationOrchestrator:
    def __init__(
        self,
        engine: StreamingEngine,
        *,
        persistence: Optional[ScriptPersistence] = None,
        listeners: Optional[Iterable[TransitionListener]] = None,
        controller: Optional[CancellationController] = None,
    ) -> None:
        self.engine = engine
        self.persistence = persistence
        if listeners is None:
            listeners = (InteractionLogListener(),)
        self.machine = ScriptGenerationMachine(listeners=listeners)
        self.controller = controller or CancellationController()
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    @property
    def state(self) -> GenerationState:
        return self.machine.state

    @property
    def session(self) -> GenerationSession:
        return self.machine.session

    # ------------------------------------------------------------------
    # Idle-phase inputs
    # ------------------------------------------------------------------
    def set_prompt(self, prompt: str) -> bool:
        return self.machine.send(EventType.SET_PROMPT, prompt=prompt)

    def set_lucky_request(self, request_id: Optional[str]) -> bool:
        return self.machine.send(EventType.SET_LUCKY_REQUEST, request_id=request_id)

    def set_from_suggestion(self, value: bool = True) -> bool:
        return self.machine.send(EventType.FROM_SUGGESTION, value=value)

    def set_usage(self, count: int, limit: int) -> bool:
        return self.machine.send(EventType.SET_USAGE, count=count, limit=limit)

    async def refresh_usage(self) -> GenerationSession:
        usage = await self.engine.fetch_usage()
        self.set_usage(usage["count"], usage["limit"])
        return self.session

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    def start(
        self,
        prompt: Optional[str] = None,
        *,
        timestamp: Optional[str] = None,
        lucky_request_id: Optional[str] = None,
    ) -> asyncio.Task:
        """Begin a new session and return the task running its stream.

        Any live stream is cancelled first. Must be called from a running loop.
        """

        if self.state in (GenerationState.SAVING, GenerationState.INSTALLING):
            raise RuntimeError(f"Cannot start a generation while {self.state.value}")
        session = self.session
        text = prompt if prompt is not None else session.prompt_text
        if not text or not text.strip():
            raise ValueError("Prompt is required")
        lucky = lucky_request_id if lucky_request_id is not None else session.lucky_request_id
        from_suggestion = session.is_from_suggestion

        token = self.controller.begin()
        if self.state != GenerationState.IDLE:
            # Prior attempt (streaming or finished) is discarded before the new one begins.
            self.machine.send(EventType.CANCEL_GENERATION)
            self.machine.send(EventType.RESET)
        self.machine.send(EventType.SET_PROMPT, prompt=text)
        if lucky:
            self.machine.send(EventType.SET_LUCKY_REQUEST, request_id=lucky)
        if from_suggestion:
            self.machine.send(EventType.FROM_SUGGESTION, value=True)
        self.machine.send(EventType.GENERATE_DRAFT, timestamp=timestamp)
        token.request_id = self.session.request_id
        interaction_id = self.session.interaction_id
        log_interaction(
            interaction_id,
            STAGE_CLIENT,
            "Generating draft",
            {"provider": self.engine.config.name, "request_id": token.request_id, "lucky": bool(lucky)},
        )

        task = asyncio.get_running_loop().create_task(
            self.engine.stream(
                text,
                token,
                self._callbacks(token),
                lucky_request_id=lucky,
                interaction_id=interaction_id,
            )
        )
        token.bind(task)
        task.add_done_callback(lambda _t: self.controller.release(token))
        self._task = task
        return task

    async def generate(
        self,
        prompt: Optional[str] = None,
        *,
        timestamp: Optional[str] = None,
        lucky_request_id: Optional[str] = None,
    ) -> GenerationSession:
        """Run a whole session and return the resulting session snapshot."""

        self.start(prompt, timestamp=timestamp, lucky_request_id=lucky_request_id)
        await self.wait()
        return self.session.snapshot()

    async def wait(self) -> None:
        """Wait for the current stream to end. Cancellation is not an error here."""

        task = self._task
        if task is None:
            return
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()  # type: ignore[misc]

    def cancel(self) -> bool:
        """Abort the live stream, if any, and return the machine to idle."""

        cancelled = self.controller.cancel("user")
        self.machine.send(EventType.CANCEL_GENERATION)
        return cancelled

    def reset(self) -> bool:
        self.controller.cancel("reset")
        return self.machine.send(EventType.RESET)

    def edit(self, script: str) -> bool:
        """Replace the script text after completion (manual editing)."""

        return self.machine.send(EventType.UPDATE_EDITABLE_SCRIPT, script=script)

    def clear_error(self) -> bool:
        return self.machine.send(EventType.CLEAR_ERROR)

    def _callbacks(self, token: CancellationToken) -> StreamCallbacks:
        def guarded(fn: Callable[..., Any]) -> Callable[..., None]:
            def inner(*args: Any) -> None:
                if token.cancelled or self.controller.current is not token:
                    LOG.debug("stale_stream_callback_dropped", extra={"token_id": token.token_id})
                    return
                fn(*args)

            return inner

        def on_error(exc: GenerationError) -> None:
            log_interaction(
                self.session.interaction_id,
                STAGE_CLIENT,
                "Generation failed",
                {"kind": exc.kind.value, "status_code": exc.status_code, "error": str(exc)},
            )
            self.machine.send(EventType.SET_ERROR, error=str(exc), kind=exc.kind.value, notice=exc.user_message)

        def on_complete(content: str) -> None:
            log_interaction(
                self.session.interaction_id,
                STAGE_CLIENT,
                "Generation complete",
                {"script_id": self.session.script_id, "content_length": len(content)},
            )
            self.machine.send(EventType.COMPLETE_GENERATION)

        return StreamCallbacks(
            on_start_streaming=guarded(lambda: self.machine.send(EventType.START_STREAMING_DRAFT)),
            on_script_id=guarded(lambda sid: self.machine.send(EventType.SET_SCRIPT_ID, script_id=sid)),
            on_chunk=guarded(lambda delta: self.machine.send(EventType.UPDATE_EDITABLE_SCRIPT, delta=delta)),
            on_reasoning=guarded(lambda text: self.machine.send(EventType.APPEND_REASONING, text=text)),
            on_error=guarded(on_error),
            on_complete=guarded(on_complete),
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    async def save(self) -> bool:
        return await self._persist(EventType.SAVE_SCRIPT, install=False)

    async def save_and_install(self) -> bool:
        return await self._persist(EventType.SAVE_AND_INSTALL, install=True)

    async def _persist(self, event_type: EventType, *, install: bool) -> bool:
        if self.persistence is None:
            raise RuntimeError("No persistence collaborator configured")
        if not self.machine.send(event_type):
            return False
        session = self.session
        if session.script_id is None:
            LOG.warning("persist_without_script_id", extra={"request_id": session.request_id})
        try:
            script_id = await self.persistence.save(
                script_id=session.script_id,
                content=session.accumulated_content,
                prompt=session.prompt_text,
            )
            if install:
                await self.persistence.install(script_id=script_id)
        except GenerationError as exc:
            self._persist_failed(exc)
            return False
        except asyncio.CancelledError:
            self._persist_failed(NetworkError("Save was interrupted"))
            raise
        except Exception as exc:
            LOG.exception("persist_failed_unexpected", extra={"script_id": session.script_id})
            self._persist_failed(ServerError(str(exc) or exc.__class__.__name__))
            return False
        self.machine.send(EventType.PERSIST_DONE)
        return True

    def _persist_failed(self, exc: GenerationError) -> None:
        self.machine.send(
            EventType.PERSIST_FAILED,
            error=str(exc),
            kind=exc.kind.value,
            notice=exc.user_message,
        )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    async def aclose(self) -> None:
        self.controller.close()
        if self._task is not None:
            await asyncio.wait({self._task})
        self._task = None

    async def __aenter__(self) -> "GenerationOrchestrator":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
