from __future__ import annotations

"""Runtime configuration for the generation service and its client.

Env vars:
- SCRIPTGEN_DRAFT_PROVIDER (default | openrouter | ai-gateway; default ai-gateway)
- SCRIPTGEN_EXTRACT_REASONING (default 0)
- SCRIPTGEN_REASONING_TAG (default reasoning)
- SCRIPTGEN_BASE_URL (client base URL, default http://localhost:8000)
- SCRIPTGEN_DAILY_LIMIT / SCRIPTGEN_SPONSOR_DAILY_LIMIT (24 / 100)
- CLI_API_KEY (shared secret for non-interactive callers)
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_DAILY_LIMIT = 24
DEFAULT_SPONSOR_DAILY_LIMIT = 100


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_flag(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    draft_provider: str = "ai-gateway"
    extract_reasoning: bool = False
    reasoning_tag: str = "reasoning"
    base_url: str = "http://localhost:8000"
    daily_limit: int = DEFAULT_DAILY_LIMIT
    sponsor_daily_limit: int = DEFAULT_SPONSOR_DAILY_LIMIT
    cli_api_key: Optional[str] = None

    @staticmethod
    def from_env(env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = env if env is not None else os.environ
        return Settings(
            draft_provider=(env.get("SCRIPTGEN_DRAFT_PROVIDER") or "ai-gateway").strip().lower(),
            extract_reasoning=_env_flag(env, "SCRIPTGEN_EXTRACT_REASONING"),
            reasoning_tag=(env.get("SCRIPTGEN_REASONING_TAG") or "reasoning").strip(),
            base_url=(env.get("SCRIPTGEN_BASE_URL") or "http://localhost:8000").rstrip("/"),
            daily_limit=_env_int(env, "SCRIPTGEN_DAILY_LIMIT", DEFAULT_DAILY_LIMIT),
            sponsor_daily_limit=_env_int(env, "SCRIPTGEN_SPONSOR_DAILY_LIMIT", DEFAULT_SPONSOR_DAILY_LIMIT),
            cli_api_key=env.get("CLI_API_KEY") or None,
        )

    def limit_for(self, roles: list[str]) -> int:
        if "sponsor" in roles:
            return self.sponsor_daily_limit
        return self.daily_limit
