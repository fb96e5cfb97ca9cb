from __future__ import annotations

import asyncio
from typing import List

import httpx
import pytest

from src.scriptgen.core.errors import NetworkError
from src.scriptgen.core.state_machine import EventType, GenerationState, Transition
from src.scriptgen.services.interaction_log import list_recent_interactions
from src.scriptgen.services.orchestrator import GenerationOrchestrator
from src.scriptgen.services.persistence import InMemoryScriptPersistence
from src.scriptgen.services.providers import build_engine
from tests.utils import FrameStream, mock_client


HAPPY_FRAMES = ["__SCRIPT_ID__s-42__SCRIPT_ID__", "import os\n", "print(os.listdir('.'))"]


class TransitionLog:
    def __init__(self) -> None:
        self.transitions: List[Transition] = []

    def __call__(self, transition: Transition) -> None:
        self.transitions.append(transition)

    @property
    def states(self) -> List[GenerationState]:
        out: List[GenerationState] = []
        for t in self.transitions:
            if not out or out[-1] != t.current:
                out.append(t.current)
        return out

    def deltas(self) -> List[str]:
        return [
            t.event.get("delta")
            for t in self.transitions
            if t.event.type == EventType.UPDATE_EDITABLE_SCRIPT and t.event.get("delta")
        ]


def _orchestrator(handler, *, persistence=None, listeners=None, provider="ai-gateway"):
    engine = build_engine(provider, base_url="http://testserver", client=mock_client(handler))
    return GenerationOrchestrator(engine, persistence=persistence, listeners=listeners)


@pytest.mark.asyncio
async def test_happy_path_reaches_complete():
    log = TransitionLog()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=FrameStream(HAPPY_FRAMES))

    orch = _orchestrator(handler, listeners=[log])
    session = await orch.generate("List files in a folder", timestamp="1700000000000")

    assert orch.state == GenerationState.COMPLETE
    assert session.script_id == "s-42"
    assert session.finalized_content == "import os\nprint(os.listdir('.'))"
    assert session.interaction_id == "1700000000000"
    assert session.error is None
    assert log.states == [
        GenerationState.IDLE,
        GenerationState.THINKING_DRAFT,
        GenerationState.GENERATING_DRAFT,
        GenerationState.COMPLETE,
    ]


@pytest.mark.asyncio
async def test_default_listener_writes_interaction_log():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=FrameStream(HAPPY_FRAMES))

    orch = _orchestrator(handler)
    await orch.generate("List files", timestamp="ix-1")
    entries = list_recent_interactions(100, interaction_id="ix-1")
    stages = {e.stage for e in entries}
    assert {"client", "stateMachine"} <= stages
    assert any(e.message == "Generation complete" for e in entries)


@pytest.mark.asyncio
async def test_mid_stream_abort_returns_to_idle_silently():
    log = TransitionLog()
    first_delta = asyncio.Event()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            stream=FrameStream(["__SCRIPT_ID__s-1__SCRIPT_ID__", "echo one\n", "echo two\n"], hang_after=2),
        )

    def watcher(transition: Transition) -> None:
        if transition.event.type == EventType.UPDATE_EDITABLE_SCRIPT:
            first_delta.set()

    orch = _orchestrator(handler, listeners=[log, watcher])
    orch.start("List files in a folder")
    await asyncio.wait_for(first_delta.wait(), timeout=1)
    delivered = len(log.deltas())
    assert delivered == 1

    assert orch.cancel() is True
    await asyncio.wait_for(orch.wait(), timeout=1)

    assert orch.state == GenerationState.IDLE
    assert orch.session.error is None
    assert orch.session.accumulated_content == ""
    assert len(log.deltas()) == delivered
    # second cancel is a no-op
    assert orch.cancel() is False


@pytest.mark.asyncio
async def test_rate_limit_before_streaming_is_recorded():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"detail": "Daily limit exceeded"})

    orch = _orchestrator(handler)
    session = await orch.generate("List files")
    assert orch.state == GenerationState.THINKING_DRAFT
    assert session.error == "Daily limit exceeded"
    assert session.error_kind == "rate_limit"
    assert session.notice == "Daily generation limit reached. Try again later."
    assert not session.needs_sign_in


@pytest.mark.asyncio
async def test_unauthorized_asks_for_sign_in():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="Unauthorized")

    orch = _orchestrator(handler, provider="openrouter")
    session = await orch.generate("List files")
    assert session.needs_sign_in


@pytest.mark.asyncio
async def test_stream_failure_keeps_streamed_content():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=FrameStream(["__SCRIPT_ID__s-9__SCRIPT_ID__", "partial"], fail_after=2))

    orch = _orchestrator(handler)
    session = await orch.generate("List files")
    assert orch.state == GenerationState.GENERATING_DRAFT
    assert session.accumulated_content == "partial"
    assert session.error_kind == "network"
    assert session.finalized_content is None


@pytest.mark.asyncio
async def test_new_generation_supersedes_live_stream():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(200, stream=FrameStream(["__SCRIPT_ID__old__SCRIPT_ID__stale"], hang_after=1))
        return httpx.Response(200, stream=FrameStream(["__SCRIPT_ID__new__SCRIPT_ID__", "fresh"]))

    orch = _orchestrator(handler)
    first = orch.start("first prompt")
    await asyncio.sleep(0.05)
    first_token = orch.controller.current
    second = orch.start("second prompt")
    await asyncio.wait({first, second}, timeout=1)

    assert first_token is not None and first_token.cancelled
    assert first_token.reason == "superseded"
    assert orch.state == GenerationState.COMPLETE
    assert orch.session.script_id == "new"
    assert orch.session.finalized_content == "fresh"
    assert orch.session.prompt_text == "second prompt"


@pytest.mark.asyncio
async def test_generate_from_complete_starts_fresh_session():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=FrameStream(HAPPY_FRAMES))

    orch = _orchestrator(handler)
    first = await orch.generate("one")
    second = await orch.generate("two")
    assert orch.state == GenerationState.COMPLETE
    assert second.request_id != first.request_id
    assert second.accumulated_content == first.accumulated_content


@pytest.mark.asyncio
async def test_start_requires_prompt():
    orch = _orchestrator(lambda request: httpx.Response(200, text=""))
    with pytest.raises(ValueError):
        orch.start("   ")


@pytest.mark.asyncio
async def test_save_persists_and_returns_to_idle():
    persistence = InMemoryScriptPersistence()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=FrameStream(HAPPY_FRAMES))

    orch = _orchestrator(handler, persistence=persistence)
    await orch.generate("List files")
    orch.edit("print('edited')")
    assert await orch.save() is True
    assert orch.state == GenerationState.IDLE
    assert persistence.saved["s-42"]["content"] == "print('edited')"
    assert persistence.installed == []


@pytest.mark.asyncio
async def test_save_and_install():
    persistence = InMemoryScriptPersistence()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=FrameStream(HAPPY_FRAMES))

    orch = _orchestrator(handler, persistence=persistence)
    await orch.generate("List files")
    assert await orch.save_and_install() is True
    assert persistence.installed == ["s-42"]


@pytest.mark.asyncio
async def test_save_failure_returns_to_complete_without_losing_content():
    class FailingPersistence(InMemoryScriptPersistence):
        async def save(self, **kwargs):
            raise NetworkError("offline")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=FrameStream(HAPPY_FRAMES))

    orch = _orchestrator(handler, persistence=FailingPersistence())
    await orch.generate("List files")
    assert await orch.save() is False
    assert orch.state == GenerationState.COMPLETE
    assert orch.session.error == "offline"
    assert orch.session.accumulated_content == "import os\nprint(os.listdir('.'))"


@pytest.mark.asyncio
async def test_unexpected_save_error_does_not_wedge_machine():
    class BrokenPersistence(InMemoryScriptPersistence):
        async def save(self, **kwargs):
            raise httpx.InvalidURL("bad save url")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=FrameStream(HAPPY_FRAMES))

    orch = _orchestrator(handler, persistence=BrokenPersistence())
    await orch.generate("List files")
    assert await orch.save_and_install() is False
    assert orch.state == GenerationState.COMPLETE
    assert orch.session.error == "bad save url"
    assert orch.session.error_kind == "server"
    assert orch.session.notice == "Something went wrong while generating. Please try again."
    # the machine accepts a retry
    orch.persistence = InMemoryScriptPersistence()
    assert await orch.save() is True
    assert orch.state == GenerationState.IDLE


@pytest.mark.asyncio
async def test_cancelled_save_returns_to_complete_and_propagates():
    class InterruptedPersistence(InMemoryScriptPersistence):
        async def save(self, **kwargs):
            raise asyncio.CancelledError()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=FrameStream(HAPPY_FRAMES))

    orch = _orchestrator(handler, persistence=InterruptedPersistence())
    await orch.generate("List files")
    with pytest.raises(asyncio.CancelledError):
        await orch.save()
    assert orch.state == GenerationState.COMPLETE
    assert orch.session.error_kind == "network"
    assert orch.session.accumulated_content == "import os\nprint(os.listdir('.'))"


@pytest.mark.asyncio
async def test_save_outside_complete_is_ignored():
    orch = _orchestrator(lambda request: httpx.Response(200, text=""), persistence=InMemoryScriptPersistence())
    assert await orch.save() is False
    assert orch.state == GenerationState.IDLE


@pytest.mark.asyncio
async def test_refresh_usage_mirrors_server_counter():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"count": 7, "limit": 100})

    orch = _orchestrator(handler)
    session = await orch.refresh_usage()
    assert (session.usage_count, session.usage_limit) == (7, 100)


@pytest.mark.asyncio
async def test_context_exit_cancels_running_stream():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=FrameStream(["__SCRIPT_ID__x__SCRIPT_ID__"], hang_after=1))

    async with _orchestrator(handler) as orch:
        task = orch.start("List files")
        await asyncio.sleep(0.05)
        token = orch.controller.current
    assert task.done()
    assert token is not None and token.reason == "teardown"
