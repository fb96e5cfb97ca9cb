from __future__ import annotations

import json
import logging
import os
import re
import time
from typing import Iterator, List, Optional, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .model_router import BackendSelection

LOG = logging.getLogger("scriptgen.llm")

_STREAM_TIMEOUT = (
    int(os.getenv("SCRIPTGEN_LLM_CONNECT_TIMEOUT", "5")),
    int(os.getenv("SCRIPTGEN_LLM_READ_TIMEOUT", "180")),
)


class LLMStreamError(RuntimeError):
    pass


class TokenStreamer(Protocol):
    def stream(self, prompt: str) -> Iterator[str]: ...


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "GET"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class ChatCompletionsClient:
    """Streams tokens from an OpenAI-compatible ``/chat/completions`` endpoint.

    Used for every hosted backend (Gemini's compatibility endpoint, OpenRouter
    and the AI gateway). If the primary model fails before producing any
    token, the backend's fallback model is tried once.
    """

    def __init__(self, selection: BackendSelection, session: Optional[requests.Session] = None) -> None:
        if not selection.base_url:
            raise ValueError(f"Backend {selection.name} has no base URL")
        self.selection = selection
        self.base_url = selection.base_url.rstrip("/")
        self._session = session or _build_session()

    def _models(self) -> List[str]:
        models = [self.selection.model]
        fallback = self.selection.fallback_model
        if fallback and fallback != self.selection.model:
            models.append(fallback)
        return models

    def stream(self, prompt: str) -> Iterator[str]:
        last_exc: Optional[Exception] = None
        for model in self._models():
            emitted = False
            try:
                for token in self._stream_model(model, prompt):
                    emitted = True
                    yield token
                return
            except requests.exceptions.RequestException as exc:
                if emitted:
                    raise LLMStreamError(f"Stream from {model} interrupted: {exc}") from exc
                LOG.warning(
                    "llm_stream_failed",
                    extra={"backend": self.selection.name, "model": model, "err": str(exc)},
                )
                last_exc = exc
        raise LLMStreamError(f"No model of backend {self.selection.name} produced a stream: {last_exc}")

    def _stream_model(self, model: str, prompt: str) -> Iterator[str]:
        LOG.debug(
            "llm_stream",
            extra={"backend": self.selection.name, "model": model, "base_url": self.base_url},
        )
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": True,
        }
        headers = {"Authorization": f"Bearer {self.selection.api_key}"}
        with self._session.post(
            f"{self.base_url}/chat/completions",
            json=payload,
            headers=headers,
            timeout=_STREAM_TIMEOUT,
            stream=True,
        ) as resp:
            resp.raise_for_status()
            for raw_line in resp.iter_lines():
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                if not line.startswith("data: "):
                    continue
                data = line[6:].strip()
                if data == "[DONE]":
                    break
                try:
                    parsed = json.loads(data)
                except json.JSONDecodeError:
                    continue
                delta = (parsed.get("choices") or [{}])[0].get("delta") or {}
                token = delta.get("content") or ""
                if token:
                    yield token


MOCK_SCRIPT = """```typescript
import { readdir } from "node:fs/promises"

export async function listFiles(dir: string = "."): Promise<string[]> {
  try {
    const entries = await readdir(dir, { withFileTypes: true })
    return entries.filter(entry => entry.isFile()).map(entry => entry.name)
  } catch (error) {
    console.error(`Could not read ${dir}:`, error instanceof Error ? error.message : error)
    return []
  }
}

const files = await listFiles(process.argv[2])
console.log(files.join("\\n"))
```
"""

_REASONING_REQUEST_RE = re.compile(r"inside <([A-Za-z][\w\-]*)>\.\.\.</\1> XML tags")


class MockLLMClient:
    """Deterministic keyless backend that streams a canned script in small chunks."""

    def __init__(self, chunk_size: Optional[int] = None, delay_ms: Optional[int] = None) -> None:
        self.chunk_size = chunk_size or int(os.getenv("SCRIPTGEN_MOCK_CHUNK_SIZE", "16"))
        self.delay_ms = delay_ms if delay_ms is not None else int(os.getenv("SCRIPTGEN_MOCK_DELAY_MS", "0"))

    def stream(self, prompt: str) -> Iterator[str]:
        body = MOCK_SCRIPT
        match = _REASONING_REQUEST_RE.search(prompt)
        if match:
            tag = match.group(1)
            body = f"<{tag}>Read the directory, keep regular files, print one per line.</{tag}>" + body
        for start in range(0, len(body), self.chunk_size):
            if self.delay_ms:
                time.sleep(self.delay_ms / 1000.0)
            yield body[start : start + self.chunk_size]


def build_llm_client(selection: BackendSelection) -> TokenStreamer:
    if selection.is_mock:
        return MockLLMClient()
    return ChatCompletionsClient(selection)
