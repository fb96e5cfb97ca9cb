from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

from ..config import DEFAULT_DAILY_LIMIT


@dataclass
class GenerationSession:
    """Client-side view of one generation attempt and its surrounding UI state."""

    prompt_text: str = ""
    interaction_id: Optional[str] = None
    request_id: Optional[str] = None
    lucky_request_id: Optional[str] = None
    is_from_suggestion: bool = False
    script_id: Optional[str] = None
    accumulated_content: str = ""
    reasoning_text: str = ""
    finalized_content: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    notice: Optional[str] = None
    usage_count: int = 0
    usage_limit: int = DEFAULT_DAILY_LIMIT

    def snapshot(self) -> "GenerationSession":
        return replace(self)

    def clear_attempt(self) -> None:
        """Drop everything tied to a generation attempt; keep prompt and usage mirror."""

        self.interaction_id = None
        self.request_id = None
        self.script_id = None
        self.accumulated_content = ""
        self.reasoning_text = ""
        self.finalized_content = None
        self.error = None
        self.error_kind = None
        self.notice = None

    def clear_all(self) -> None:
        self.clear_attempt()
        self.prompt_text = ""
        self.lucky_request_id = None
        self.is_from_suggestion = False

    @property
    def needs_sign_in(self) -> bool:
        return self.error_kind == "unauthorized"
