"""Incremental demultiplexer for the generation stream wire protocol.

A generation response body carries three logical channels on one ordered
text stream:

- an identifier bracketed by ``__SCRIPT_ID__`` sentinels (at most once),
- zero or more ``<reasoning>...</reasoning>`` blocks (tag name configurable),
- the visible script content (everything else).

Frames arrive at arbitrary boundaries, so a sentinel or a tag may be split
anywhere, including mid tag-name. The demultiplexer only releases text as
content once it can no longer turn into part of a sentinel or an opening
tag; anything still ambiguous is held back until a later frame settles it
or the stream completes. As a result the identifier, the reasoning and the
concatenated deltas are the same for every partition of the same stream.

Only undelivered text is rescanned on each frame, which keeps the per-frame
cost bounded by the held-back tail instead of the whole session buffer.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional

from ..core.errors import GenerationError
from ..domain.stream_events import (
    SCRIPT_ID_SENTINEL,
    CompleteEvent,
    ContentDeltaEvent,
    ErrorEvent,
    ReasoningEvent,
    ScriptIdEvent,
    StreamEvent,
)

LOG = logging.getLogger("scriptgen.stream")

_SCRIPT_ID_RE = re.compile(re.escape(SCRIPT_ID_SENTINEL) + r"(.+?)" + re.escape(SCRIPT_ID_SENTINEL))

REASONING_SEPARATOR = "\n\n"


def _partial_suffix_len(text: str, token: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``token``."""

    upper = min(len(text), len(token) - 1)
    for size in range(upper, 0, -1):
        if token.startswith(text[-size:]):
            return size
    return 0


class StreamDemultiplexer:
    """Splits one session's frames into identifier, reasoning and content events.

    One instance per session; not safe for concurrent use.
    """

    def __init__(self, tag_name: str = "reasoning") -> None:
        if not tag_name or not re.fullmatch(r"[A-Za-z][\w\-]*", tag_name):
            raise ValueError(f"Invalid reasoning tag name: {tag_name!r}")
        self.tag_name = tag_name
        self._open_tag = f"<{tag_name}>"
        self._close_tag = f"</{tag_name}>"
        self._pending = ""
        self._delivered: List[str] = []
        self._reasoning: List[str] = []
        self._script_id: Optional[str] = None
        self._frames = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def script_id(self) -> Optional[str]:
        return self._script_id

    @property
    def content(self) -> str:
        """Visible content delivered so far."""
        return "".join(self._delivered)

    @property
    def reasoning(self) -> str:
        return REASONING_SEPARATOR.join(self._reasoning)

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------
    def feed(self, frame: str) -> List[StreamEvent]:
        """Consume one frame and return the events it completes, in order."""

        if self._closed:
            LOG.debug("stream_frame_after_close", extra={"frame_size": len(frame)})
            return []
        if not frame:
            return []
        self._frames += 1
        self._pending += frame
        return self._drain(final=False)

    def finish(self) -> List[StreamEvent]:
        """Flush held-back text and terminate the session with ``complete``."""

        if self._closed:
            return []
        events = self._drain(final=True)
        self._closed = True
        if self._script_id is None:
            # Persistence cannot be linked without an id; the session itself proceeds.
            LOG.warning(
                "stream_missing_script_id",
                extra={"frames": self._frames, "content_length": len(self.content)},
            )
        events.append(CompleteEvent(content=self.content, script_id=self._script_id))
        return events

    def fail(self, error: GenerationError) -> List[StreamEvent]:
        """Terminate the session with ``error``; nothing is delivered afterwards."""

        if self._closed:
            return []
        self._closed = True
        self._pending = ""
        LOG.info("stream_failed", extra={"kind": error.kind.value, "err": str(error)})
        return [ErrorEvent(error=error)]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _drain(self, final: bool) -> List[StreamEvent]:
        events: List[StreamEvent] = []

        limit = len(self._pending)
        if self._script_id is None:
            match = _SCRIPT_ID_RE.search(self._pending)
            if match:
                self._script_id = match.group(1)
                self._pending = self._pending[: match.start()] + self._pending[match.end():]
                limit = len(self._pending)
                events.append(ScriptIdEvent(script_id=self._script_id))
            elif not final:
                start = self._pending.find(SCRIPT_ID_SENTINEL)
                if start != -1:
                    limit = start
                else:
                    limit -= _partial_suffix_len(self._pending, SCRIPT_ID_SENTINEL)

        # Everything before ``limit`` is settled with respect to the sentinel.
        region = self._pending[:limit]
        rest = self._pending[limit:]
        cursor = 0
        while True:
            start = region.find(self._open_tag, cursor)
            if start == -1:
                tail = region[cursor:]
                hold = 0 if final else _partial_suffix_len(tail, self._open_tag)
                self._emit_delta(tail[: len(tail) - hold], events)
                cursor = len(region) - hold
                break
            end = region.find(self._close_tag, start + len(self._open_tag))
            if end == -1:
                self._emit_delta(region[cursor:start], events)
                cursor = start
                if final:
                    # Unterminated block at end of stream is plain content.
                    self._emit_delta(region[start:], events)
                    cursor = len(region)
                break
            self._emit_delta(region[cursor:start], events)
            text = region[start + len(self._open_tag): end]
            self._reasoning.append(text)
            events.append(ReasoningEvent(text=text))
            cursor = end + len(self._close_tag)

        self._pending = region[cursor:] + rest
        return events

    def _emit_delta(self, text: str, events: List[StreamEvent]) -> None:
        if not text:
            return
        self._delivered.append(text)
        events.append(ContentDeltaEvent(delta=text))
