from __future__ import annotations

import json
from typing import List

import pytest
import requests

from src.scriptgen.services.llm_client import (
    MOCK_SCRIPT,
    ChatCompletionsClient,
    LLMStreamError,
    MockLLMClient,
    build_llm_client,
)
from src.scriptgen.services.model_router import BackendSelection
from src.scriptgen.services.prompts import enhance_prompt_with_reasoning_request


def _sse(*tokens: str) -> List[bytes]:
    lines = [b": keep-alive", b""]
    for token in tokens:
        lines.append(("data: " + json.dumps({"choices": [{"delta": {"content": token}}]})).encode())
        lines.append(b"")
    lines.append(b"data: [DONE]")
    return lines


class FakeResponse:
    def __init__(self, lines=None, status_code=200, fail_after=None):
        self.lines = lines or []
        self.status_code = status_code
        self.fail_after = fail_after

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")

    def iter_lines(self):
        for index, line in enumerate(self.lines):
            if self.fail_after is not None and index >= self.fail_after:
                raise requests.exceptions.ChunkedEncodingError("reset")
            yield line


class FakeSession:
    def __init__(self, responses):
        self.responses = dict(responses)
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None, stream=False):
        self.calls.append({"url": url, "json": json, "headers": headers})
        return self.responses[json["model"]]


SELECTION = BackendSelection(
    name="openrouter",
    model="primary",
    api_key="k",
    base_url="https://openrouter.example/api/v1/",
    fallback_model="backup",
)


def test_streams_content_deltas():
    session = FakeSession({"primary": FakeResponse(_sse("const ", "a = 1"))})
    tokens = list(ChatCompletionsClient(SELECTION, session=session).stream("hi"))
    assert tokens == ["const ", "a = 1"]
    call = session.calls[0]
    assert call["url"] == "https://openrouter.example/api/v1/chat/completions"
    assert call["headers"]["Authorization"] == "Bearer k"
    assert call["json"]["stream"] is True
    assert call["json"]["messages"] == [{"role": "user", "content": "hi"}]


def test_fallback_model_used_when_primary_fails_first():
    session = FakeSession({"primary": FakeResponse(status_code=503), "backup": FakeResponse(_sse("ok"))})
    assert list(ChatCompletionsClient(SELECTION, session=session).stream("hi")) == ["ok"]
    assert [c["json"]["model"] for c in session.calls] == ["primary", "backup"]


def test_failure_after_tokens_is_not_retried():
    lines = _sse("one", "two")
    session = FakeSession({"primary": FakeResponse(lines, fail_after=4), "backup": FakeResponse(_sse("x"))})
    stream = ChatCompletionsClient(SELECTION, session=session).stream("hi")
    assert next(stream) == "one"
    with pytest.raises(LLMStreamError):
        list(stream)
    assert len(session.calls) == 1


def test_all_models_failing_raises():
    session = FakeSession({"primary": FakeResponse(status_code=500), "backup": FakeResponse(status_code=500)})
    with pytest.raises(LLMStreamError):
        list(ChatCompletionsClient(SELECTION, session=session).stream("hi"))


def test_mock_client_streams_canned_script_in_chunks():
    chunks = list(MockLLMClient(chunk_size=10).stream("anything"))
    assert "".join(chunks) == MOCK_SCRIPT
    assert all(len(c) <= 10 for c in chunks)


def test_mock_client_answers_reasoning_request_with_tag():
    prompt = enhance_prompt_with_reasoning_request("List files", "think")
    body = "".join(MockLLMClient().stream(prompt))
    assert body.startswith("<think>")
    assert body.endswith(MOCK_SCRIPT)


def test_factory_picks_client_by_backend():
    mock = BackendSelection(name="mock", model="mock-script", api_key=None, base_url=None)
    assert isinstance(build_llm_client(mock), MockLLMClient)
    assert isinstance(build_llm_client(SELECTION), ChatCompletionsClient)
