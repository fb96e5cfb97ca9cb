"""Routing helpers for selecting the upstream model backend of a route.

Each generation route maps to one hosted backend. The router resolves the
backend's key, model and base URL from the environment without touching
the network, so the selection policy stays unit-testable. ``SCRIPTGEN_MOCK_LLM``
swaps every route onto the keyless mock backend.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional


@dataclass(frozen=True)
class BackendSelection:
    """Resolved details of the backend that should serve a route."""

    name: str
    model: str
    api_key: Optional[str]
    base_url: Optional[str]
    fallback_model: Optional[str] = None

    @property
    def is_mock(self) -> bool:
        return self.name == "mock"


class BackendNotConfigured(RuntimeError):
    pass


class ModelRouter:
    """Maps generation routes onto upstream model backends."""

    BACKEND_CONFIG: Dict[str, Dict[str, Optional[str] | bool]] = {
        "gemini": {
            "label": "Gemini",
            "api_key_env": "GEMINI_API_KEY",
            "base_url_env": "GEMINI_BASE_URL",
            "model_env": "GEMINI_MODEL",
            "default_model": "gemini-2.0-flash",
            "default_base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
        },
        "openrouter": {
            "label": "OpenRouter",
            "api_key_env": "OPENROUTER_API_KEY",
            "base_url_env": "OPENROUTER_BASE_URL",
            "model_env": "OPENROUTER_DEFAULT_MODEL",
            "fallback_model_env": "OPENROUTER_FALLBACK_MODEL",
            "default_base_url": "https://openrouter.ai/api/v1",
        },
        "gateway": {
            "label": "AI Gateway",
            "api_key_env": "AI_GATEWAY_API_KEY",
            "base_url_env": "AI_GATEWAY_BASE_URL",
            "model_env": "DEFAULT_AI_SDK_MODEL",
            "default_base_url": "https://ai-gateway.vercel.sh/v1",
        },
        "mock": {
            "label": "Mock",
            "model_env": "SCRIPTGEN_MOCK_MODEL",
            "default_model": "mock-script",
            "requires_api_key": False,
        },
    }

    ROUTING_POLICY: Dict[str, str] = {
        "default": "gemini",
        "openrouter": "openrouter",
        "ai-gateway": "gateway",
    }

    def __init__(self, env: Optional[Mapping[str, str]] = None) -> None:
        self._env = env if env is not None else os.environ
        self._mock = (self._env.get("SCRIPTGEN_MOCK_LLM") or "").strip().lower() in ("1", "true", "yes")

    def backend_for(self, route: str) -> str:
        if self._mock:
            return "mock"
        try:
            return self.ROUTING_POLICY[route]
        except KeyError:
            raise BackendNotConfigured(f"Unknown generation route: {route}") from None

    def select_backend(self, route: str) -> BackendSelection:
        """Return the backend serving ``route``.

        Raises
        ------
        BackendNotConfigured
            If the backend's API key or model is missing from the environment.
        """

        name = self.backend_for(route)
        cfg = self.BACKEND_CONFIG[name]
        label = cfg.get("label") or name
        api_key_env = cfg.get("api_key_env")
        api_key = self._env.get(api_key_env) if api_key_env else None
        if cfg.get("requires_api_key", True) and not api_key:
            raise BackendNotConfigured(f"{label} API key not configured")
        model = self._env.get(cfg.get("model_env") or "") or cfg.get("default_model")
        if not model:
            raise BackendNotConfigured(f"{label} model not configured")
        base_url_env = cfg.get("base_url_env")
        base_url = (self._env.get(base_url_env) if base_url_env else None) or cfg.get("default_base_url")
        fallback_env = cfg.get("fallback_model_env")
        return BackendSelection(
            name=name,
            model=str(model),
            api_key=api_key,
            base_url=str(base_url) if base_url else None,
            fallback_model=(self._env.get(fallback_env) or None) if fallback_env else None,
        )

    def maybe_select_backend(self, route: str) -> Optional[BackendSelection]:
        """Like :meth:`select_backend` but returns ``None`` on failure."""

        try:
            return self.select_backend(route)
        except BackendNotConfigured:
            return None
