from __future__ import annotations

"""Streaming generation routes.

All three routes share one handler: they differ only in which upstream
backend serves them. Every pre-stream check fails with an HTTP error before
any model call is made; once the stream starts, the body is the wire
protocol (identifier sentinel first, then raw model tokens).
"""

import logging
import uuid
from typing import Any, Dict, Iterator, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from ...config import Settings
from ...domain.script_models import GenerateRequest, ScriptStatus
from ...domain.stream_events import encode_script_id
from ...infrastructure.script_store import get_script_store
from ...infrastructure.usage_store import day_bucket, get_usage_store
from ...observability.metrics import record_generation, record_rejection
from ...security.auth import CLI_USER_ID, User, get_current_user
from ...security.rate_limit import DuplicateRequest, acquire_in_flight, release_in_flight, request_key
from ...services.interaction_log import STAGE_SERVER_ROUTE, log_interaction
from ...services.llm_client import TokenStreamer, build_llm_client
from ...services.model_router import BackendNotConfigured, ModelRouter
from ...services.prompts import build_draft_prompt, clean_code_fences, enhance_prompt_with_reasoning_request

LOG = logging.getLogger("scriptgen.api")

router = APIRouter(tags=["generate"])

ROUTE_PATHS: Dict[str, str] = {
    "default": "/generate-draft",
    "openrouter": "/generate-openrouter",
    "ai-gateway": "/generate-ai-gateway",
}

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}


def _user_info(user: User) -> Dict[str, Any]:
    if user.user_id == CLI_USER_ID:
        return {"type": "cli", "id": user.user_id, "username": "CLI Tool"}
    return {"type": "web", "id": user.user_id, "username": user.username or "Unknown"}


async def _read_body(request: Request) -> GenerateRequest:
    try:
        raw = await request.json()
    except ValueError:
        raw = {}
    if not isinstance(raw, dict):
        raw = {}
    try:
        return GenerateRequest.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid request body") from exc


def _stream_body(
    *,
    route: str,
    llm: TokenStreamer,
    prompt: str,
    script_id: str,
    key: str,
    interaction_id: str,
    request_id: str,
) -> Iterator[str]:
    store = get_script_store()
    chunks: List[str] = []
    outcome = "error"
    try:
        yield encode_script_id(script_id)
        store.update_script(script_id, status=ScriptStatus.IN_PROGRESS)
        for token in llm.stream(prompt):
            chunks.append(token)
            yield token
        store.update_script(
            script_id,
            status=ScriptStatus.COMPLETED,
            content=clean_code_fences("".join(chunks)),
        )
        outcome = "completed"
        log_interaction(
            interaction_id,
            STAGE_SERVER_ROUTE,
            "Stream completed",
            {"request_id": request_id, "script_id": script_id, "chunks": len(chunks)},
        )
    except GeneratorExit:
        outcome = "aborted"
        store.update_script(script_id, status=ScriptStatus.ERROR, error="Client disconnected")
        log_interaction(interaction_id, STAGE_SERVER_ROUTE, "Stream aborted by client", {"request_id": request_id})
        raise
    except Exception as exc:
        store.update_script(script_id, status=ScriptStatus.ERROR, error=str(exc))
        LOG.exception("generation_stream_failed", extra={"request_id": request_id, "script_id": script_id})
        log_interaction(
            interaction_id,
            STAGE_SERVER_ROUTE,
            "Stream failed",
            {"request_id": request_id, "error": str(exc)},
        )
        raise
    finally:
        release_in_flight(key)
        record_generation(route, outcome)


def _make_handler(route: str):
    async def generate(
        request: Request,
        user: User = Depends(get_current_user),
        interaction_timestamp: Optional[str] = Header(default=None, alias="Interaction-Timestamp"),
    ) -> StreamingResponse:
        request_id = uuid.uuid4().hex[:8]
        interaction_id = interaction_timestamp or "unknown"
        log_interaction(
            interaction_id,
            STAGE_SERVER_ROUTE,
            f"Started {ROUTE_PATHS[route]} route",
            {"request_id": request_id, "user_id": user.user_id},
        )
        if not interaction_timestamp:
            record_rejection("validation")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing interaction timestamp")

        body = await _read_body(request)
        prompt = (body.prompt or "").strip()
        if not prompt:
            record_rejection("validation")
            log_interaction(interaction_id, STAGE_SERVER_ROUTE, "Missing prompt", {"request_id": request_id})
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing prompt")

        key = request_key(user.user_id, prompt, interaction_timestamp)
        try:
            acquire_in_flight(key)
        except DuplicateRequest:
            record_rejection("duplicate")
            log_interaction(interaction_id, STAGE_SERVER_ROUTE, "Duplicate request rejected", {"request_id": request_id})
            raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="A similar request is already being processed")

        try:
            settings = Settings.from_env()
            try:
                selection = ModelRouter().select_backend(route)
            except BackendNotConfigured as exc:
                LOG.error("generation_backend_missing", extra={"route": route, "err": str(exc)})
                raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

            limit = settings.limit_for(user.roles)
            decision = get_usage_store().increment_if_below_limit(user.user_id, day_bucket(), limit)
            if not decision.allowed:
                record_rejection("daily_limit")
                log_interaction(
                    interaction_id,
                    STAGE_SERVER_ROUTE,
                    "Daily limit exceeded",
                    {"request_id": request_id, "count": decision.new_count, "limit": limit},
                )
                raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Daily limit exceeded")

            record = get_script_store().create_script(user.user_id, prompt, provider=route)
            draft_prompt = build_draft_prompt(prompt, _user_info(user))
            if body.extract_reasoning:
                draft_prompt = enhance_prompt_with_reasoning_request(draft_prompt, body.reasoning_tag or settings.reasoning_tag)
            llm = build_llm_client(selection)
        except Exception:
            release_in_flight(key)
            raise

        LOG.info(
            "generation_started",
            extra={
                "route": route,
                "backend": selection.name,
                "model": selection.model,
                "script_id": record.id,
                "usage_count": decision.new_count,
                "lucky": bool(body.lucky_request_id),
                "extract_reasoning": body.extract_reasoning,
            },
        )
        return StreamingResponse(
            _stream_body(
                route=route,
                llm=llm,
                prompt=draft_prompt,
                script_id=record.id,
                key=key,
                interaction_id=interaction_id,
                request_id=request_id,
            ),
            media_type="text/plain; charset=utf-8",
            headers=STREAM_HEADERS,
        )

    generate.__name__ = f"generate_{route.replace('-', '_')}"
    return generate


for _route, _path in ROUTE_PATHS.items():
    router.add_api_route(_path, _make_handler(_route), methods=["POST"], response_class=StreamingResponse)
