from __future__ import annotations

from typing import Dict, Iterable, List, Optional

import httpx


def auth_headers(
    user_id: str = "user-1",
    *,
    roles: Optional[List[str]] = None,
    timestamp: Optional[str] = "1700000000000",
) -> Dict[str, str]:
    """Bearer headers for ``user_id`` plus the interaction correlation header."""
    from src.scriptgen.security.auth import User, create_access_token

    token = create_access_token(User(user_id=user_id, username=user_id.title(), roles=roles or []))
    headers = {"Authorization": f"Bearer {token}"}
    if timestamp is not None:
        headers["Interaction-Timestamp"] = timestamp
    return headers


def split_script_id(body: str) -> tuple[str, str]:
    """Return (script_id, rest) from a raw generation response body."""
    from src.scriptgen.domain.stream_events import SCRIPT_ID_SENTINEL

    assert body.startswith(SCRIPT_ID_SENTINEL), body[:40]
    end = body.index(SCRIPT_ID_SENTINEL, len(SCRIPT_ID_SENTINEL))
    return body[len(SCRIPT_ID_SENTINEL) : end], body[end + len(SCRIPT_ID_SENTINEL) :]


class FrameStream(httpx.AsyncByteStream):
    """Response body that yields the given text frames one by one.

    If ``hang_after`` is set, the stream blocks forever once that many frames
    have been delivered, like a stalled upstream.
    """

    def __init__(self, frames: Iterable[str], *, hang_after: Optional[int] = None, fail_after: Optional[int] = None) -> None:
        self.frames = list(frames)
        self.hang_after = hang_after
        self.fail_after = fail_after
        self.closed = False

    async def __aiter__(self):
        import asyncio

        for index, frame in enumerate(self.frames):
            if self.hang_after is not None and index >= self.hang_after:
                await asyncio.Event().wait()
            if self.fail_after is not None and index >= self.fail_after:
                raise httpx.ReadError("connection reset")
            yield frame.encode("utf-8")
        if self.hang_after is not None and self.hang_after >= len(self.frames):
            await asyncio.Event().wait()
        if self.fail_after is not None and self.fail_after >= len(self.frames):
            raise httpx.ReadError("connection reset")

    async def aclose(self) -> None:
        self.closed = True


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
