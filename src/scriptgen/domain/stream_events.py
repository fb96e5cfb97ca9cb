from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from ..core.errors import GenerationError

SCRIPT_ID_SENTINEL = "__SCRIPT_ID__"


@dataclass(frozen=True)
class ScriptIdEvent:
    script_id: str


@dataclass(frozen=True)
class ReasoningEvent:
    text: str


@dataclass(frozen=True)
class ContentDeltaEvent:
    delta: str


@dataclass(frozen=True)
class ErrorEvent:
    error: GenerationError


@dataclass(frozen=True)
class CompleteEvent:
    content: str
    script_id: str | None = None


StreamEvent = Union[ScriptIdEvent, ReasoningEvent, ContentDeltaEvent, ErrorEvent, CompleteEvent]


def encode_script_id(script_id: str) -> str:
    """Wire form of the identifier segment sent ahead of the content."""

    return f"{SCRIPT_ID_SENTINEL}{script_id}{SCRIPT_ID_SENTINEL}"
