"""Provider adapters for the streaming generation endpoints.

Every provider speaks the same wire protocol, so one streaming engine does
all the work; a provider only contributes its endpoint, extra headers and
request flags. Selection is a pure lookup on a configuration value.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from ..core.errors import GenerationError, NetworkError, error_for_status
from ..domain.stream_events import (
    CompleteEvent,
    ContentDeltaEvent,
    ErrorEvent,
    ReasoningEvent,
    ScriptIdEvent,
    StreamEvent,
)
from .cancellation import CancellationToken
from .demux import StreamDemultiplexer

LOG = logging.getLogger("scriptgen.stream")

INTERACTION_HEADER = "Interaction-Timestamp"
CLI_KEY_HEADER = "X-CLI-API-Key"
DEFAULT_TIMEOUT = httpx.Timeout(180.0, connect=5.0)


@dataclass(frozen=True)
class ProviderConfig:
    """Network details for one generation backend."""

    name: str
    endpoint: str
    extra_headers: Mapping[str, str] = field(default_factory=dict)
    tag_name: str = "reasoning"
    request_reasoning: bool = False


PROVIDERS: Dict[str, ProviderConfig] = {
    # Internal default model.
    "default": ProviderConfig(name="default", endpoint="/api/generate-draft"),
    # External router; asks the model for tagged reasoning.
    "openrouter": ProviderConfig(
        name="openrouter",
        endpoint="/api/generate-openrouter",
        request_reasoning=True,
    ),
    # Gateway abstraction over several hosted models.
    "ai-gateway": ProviderConfig(name="ai-gateway", endpoint="/api/generate-ai-gateway"),
}


def select_provider(name: str, *, extract_reasoning: Optional[bool] = None, tag_name: Optional[str] = None) -> ProviderConfig:
    """Return the provider configured under ``name``.

    ``extract_reasoning`` and ``tag_name`` override the provider defaults
    without changing which endpoint is used.
    """

    key = (name or "").strip().lower()
    try:
        config = PROVIDERS[key]
    except KeyError:
        raise ValueError(f"Unknown draft provider: {name!r}") from None
    overrides: Dict[str, Any] = {}
    if extract_reasoning is not None and key != "default":
        overrides["request_reasoning"] = extract_reasoning
    if tag_name:
        overrides["tag_name"] = tag_name
    if not overrides:
        return config
    return ProviderConfig(
        name=config.name,
        endpoint=config.endpoint,
        extra_headers=config.extra_headers,
        tag_name=overrides.get("tag_name", config.tag_name),
        request_reasoning=overrides.get("request_reasoning", config.request_reasoning),
    )


@dataclass
class StreamCallbacks:
    on_start_streaming: Optional[Callable[[], None]] = None
    on_script_id: Optional[Callable[[str], None]] = None
    on_chunk: Optional[Callable[[str], None]] = None
    on_reasoning: Optional[Callable[[str], None]] = None
    on_error: Optional[Callable[[GenerationError], None]] = None
    on_complete: Optional[Callable[[str], None]] = None


def _error_detail(response: httpx.Response) -> Optional[str]:
    try:
        data = response.json()
    except ValueError:
        text = (response.text or "").strip()
        return text or None
    if isinstance(data, dict):
        for key in ("detail", "details", "error", "message"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    return None


class StreamingEngine:
    """Runs one generation request and feeds the body through a demultiplexer."""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        cli_api_key: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
    ) -> None:
        self.config = config
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._cli_api_key = cli_api_key
        self._access_token = access_token
        self._timeout = timeout

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.config.endpoint}"

    def _headers(self, interaction_id: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if interaction_id:
            headers[INTERACTION_HEADER] = interaction_id
        if self._cli_api_key:
            headers[CLI_KEY_HEADER] = self._cli_api_key
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        headers.update(self.config.extra_headers)
        return headers

    def _body(self, prompt: str, lucky_request_id: Optional[str]) -> Dict[str, Any]:
        body: Dict[str, Any] = {"prompt": prompt, "luckyRequestId": lucky_request_id}
        if self.config.request_reasoning:
            body["extractReasoning"] = True
            body["reasoningTag"] = self.config.tag_name
        return body

    async def stream(
        self,
        prompt: str,
        signal: CancellationToken,
        callbacks: Optional[StreamCallbacks] = None,
        *,
        lucky_request_id: Optional[str] = None,
        interaction_id: Optional[str] = None,
    ) -> None:
        """Stream one generation. Never raises for network/provider failures.

        Failures are reported once through ``on_error``; a cancelled ``signal``
        ends the read loop silently.
        """

        callbacks = callbacks or StreamCallbacks()
        if signal.cancelled:
            return
        demux = StreamDemultiplexer(tag_name=self.config.tag_name)
        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        LOG.info(
            "stream_start",
            extra={"provider": self.config.name, "url": self.url, "interaction_id": interaction_id},
        )
        try:
            async with client.stream(
                "POST",
                self.url,
                json=self._body(prompt, lucky_request_id),
                headers=self._headers(interaction_id),
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    raise error_for_status(response.status_code, _error_detail(response))
                if signal.cancelled:
                    return
                if callbacks.on_start_streaming:
                    callbacks.on_start_streaming()
                await self._read_loop(response, demux, signal, callbacks)
        except asyncio.CancelledError:
            if signal.cancelled:
                LOG.info("stream_aborted", extra={"provider": self.config.name, "reason": signal.reason})
                return
            raise
        except GenerationError as exc:
            if signal.cancelled:
                return
            self._dispatch(demux.fail(exc), callbacks)
        except httpx.HTTPError as exc:
            if signal.cancelled:
                return
            self._dispatch(demux.fail(NetworkError(str(exc) or exc.__class__.__name__)), callbacks)
        finally:
            if owns_client:
                await client.aclose()

    async def _read_loop(
        self,
        response: httpx.Response,
        demux: StreamDemultiplexer,
        signal: CancellationToken,
        callbacks: StreamCallbacks,
    ) -> None:
        frames = response.aiter_text()
        try:
            while True:
                if signal.cancelled:
                    return
                try:
                    frame = await anext(frames)
                except StopAsyncIteration:
                    break
                if signal.cancelled:
                    return
                LOG.debug("stream_frame", extra={"provider": self.config.name, "frame_size": len(frame)})
                self._dispatch(demux.feed(frame), callbacks, signal)
        finally:
            await frames.aclose()
        if signal.cancelled:
            return
        self._dispatch(demux.finish(), callbacks)
        LOG.info(
            "stream_complete",
            extra={
                "provider": self.config.name,
                "script_id": demux.script_id,
                "content_length": len(demux.content),
            },
        )

    async def fetch_usage(self) -> Dict[str, int]:
        """Read the caller's usage counter from ``GET /api/usage``."""

        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await client.get(f"{self.base_url}/api/usage", headers=self._headers(None))
        except httpx.HTTPError as exc:
            raise NetworkError(str(exc) or exc.__class__.__name__) from exc
        finally:
            if owns_client:
                await client.aclose()
        if response.status_code != 200:
            raise error_for_status(response.status_code, _error_detail(response))
        data = response.json()
        return {"count": int(data.get("count", 0)), "limit": int(data.get("limit", 0))}

    @staticmethod
    def _dispatch(
        events: List[StreamEvent],
        callbacks: StreamCallbacks,
        signal: Optional[CancellationToken] = None,
    ) -> None:
        for ev in events:
            if signal is not None and signal.cancelled:
                return
            if isinstance(ev, ScriptIdEvent):
                if callbacks.on_script_id:
                    callbacks.on_script_id(ev.script_id)
            elif isinstance(ev, ReasoningEvent):
                if callbacks.on_reasoning:
                    callbacks.on_reasoning(ev.text)
            elif isinstance(ev, ContentDeltaEvent):
                if callbacks.on_chunk:
                    callbacks.on_chunk(ev.delta)
            elif isinstance(ev, ErrorEvent):
                if callbacks.on_error:
                    callbacks.on_error(ev.error)
            elif isinstance(ev, CompleteEvent):
                if callbacks.on_complete:
                    callbacks.on_complete(ev.content)


def build_engine(
    provider_name: str,
    *,
    base_url: str,
    client: Optional[httpx.AsyncClient] = None,
    cli_api_key: Optional[str] = None,
    access_token: Optional[str] = None,
    extract_reasoning: Optional[bool] = None,
    tag_name: Optional[str] = None,
) -> StreamingEngine:
    config = select_provider(provider_name, extract_reasoning=extract_reasoning, tag_name=tag_name)
    return StreamingEngine(
        config,
        base_url=base_url,
        client=client,
        cli_api_key=cli_api_key,
        access_token=access_token,
    )
