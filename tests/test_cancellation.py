from __future__ import annotations

import asyncio

import pytest

from src.scriptgen.services.cancellation import CancellationController, CancellationToken


def test_cancel_is_idempotent():
    calls = []
    token = CancellationToken(request_id="r-1")
    token.on_cancel(calls.append)
    assert token.cancel("user") is True
    assert token.cancel("user") is False
    assert token.cancelled
    assert token.reason == "user"
    assert calls == ["user"]


def test_cancel_after_finish_is_noop():
    token = CancellationToken()
    token.mark_finished()
    assert token.cancel() is False
    assert not token.cancelled
    assert token.finished


def test_failing_cancel_callback_is_contained():
    token = CancellationToken()

    def broken(_reason):
        raise RuntimeError("nope")

    later = []
    token.on_cancel(broken)
    token.on_cancel(later.append)
    assert token.cancel("teardown")
    assert later == ["teardown"]


def test_begin_supersedes_previous_token():
    controller = CancellationController()
    first = controller.begin("a")
    second = controller.begin("b")
    assert first.cancelled and first.reason == "superseded"
    assert second.active
    assert controller.current is second


def test_release_clears_current_and_disarms_token():
    controller = CancellationController()
    token = controller.begin()
    controller.release(token)
    assert controller.current is None
    assert controller.cancel() is False
    assert not token.cancelled


def test_release_of_stale_token_keeps_current():
    controller = CancellationController()
    old = controller.begin()
    new = controller.begin()
    controller.release(old)
    assert controller.current is new


def test_close_cancels_live_token():
    controller = CancellationController()
    token = controller.begin()
    controller.close()
    assert token.cancelled and token.reason == "teardown"
    assert controller.current is None
    controller.close()


@pytest.mark.asyncio
async def test_cancel_interrupts_bound_task():
    token = CancellationToken()
    task = asyncio.create_task(asyncio.Event().wait())
    token.bind(task)
    await asyncio.sleep(0)
    token.cancel()
    await asyncio.wait({task}, timeout=1)
    assert task.cancelled()


@pytest.mark.asyncio
async def test_cancel_from_inside_bound_task_does_not_cancel_it():
    token = CancellationToken()

    async def body():
        token.cancel("self")
        await asyncio.sleep(0)
        return "finished"

    task = asyncio.create_task(body())
    token.bind(task)
    assert await task == "finished"
    assert token.cancelled
