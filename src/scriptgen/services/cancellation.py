from __future__ import annotations

"""Cancellation tokens for in-flight generation streams.

One token exists per GENERATE_DRAFT. The controller keeps at most one live
token per client context: beginning a new session cancels the previous one.
"""

import asyncio
import logging
import uuid
from typing import Callable, List, Optional

LOG = logging.getLogger("scriptgen.stream")


class CancellationToken:
    def __init__(self, request_id: Optional[str] = None) -> None:
        self.token_id = uuid.uuid4().hex
        self.request_id = request_id
        self.reason: Optional[str] = None
        self._cancelled = False
        self._finished = False
        self._task: Optional[asyncio.Task] = None
        self._callbacks: List[Callable[[str], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def active(self) -> bool:
        return not (self._cancelled or self._finished)

    def bind(self, task: asyncio.Task) -> None:
        """Attach the task running the read loop so cancel() can interrupt a pending read."""
        self._task = task

    def on_cancel(self, callback: Callable[[str], None]) -> None:
        self._callbacks.append(callback)

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel the token. Returns False (and does nothing) if it was already settled."""

        if not self.active:
            return False
        self._cancelled = True
        self.reason = reason
        LOG.info(
            "generation_cancelled",
            extra={"token_id": self.token_id, "request_id": self.request_id, "reason": reason},
        )
        task = self._task
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()
        for callback in self._callbacks:
            try:
                callback(reason)
            except Exception:
                LOG.exception("cancel_callback_failed")
        return True

    def mark_finished(self) -> None:
        if self.active:
            self._finished = True


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class CancellationController:
    """Owns the current token for one client context."""

    def __init__(self) -> None:
        self._current: Optional[CancellationToken] = None

    @property
    def current(self) -> Optional[CancellationToken]:
        return self._current

    def begin(self, request_id: Optional[str] = None) -> CancellationToken:
        """Create the token for a new session, superseding any live one."""

        self.cancel("superseded")
        token = CancellationToken(request_id=request_id)
        self._current = token
        return token

    def cancel(self, reason: str = "cancelled") -> bool:
        token = self._current
        if token is None:
            return False
        return token.cancel(reason)

    def release(self, token: CancellationToken) -> None:
        """Mark a token's stream as finished; later cancels become no-ops."""

        token.mark_finished()
        if self._current is token:
            self._current = None

    def close(self) -> None:
        """Context teardown: cancel whatever is still running."""

        self.cancel("teardown")
        self._current = None
