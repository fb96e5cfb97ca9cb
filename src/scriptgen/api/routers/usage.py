from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ...config import Settings
from ...domain.script_models import UsageStatus
from ...infrastructure.usage_store import day_bucket, get_usage_store
from ...security.auth import User, get_current_user
from ...services.interaction_log import InteractionEntry, list_recent_interactions

router = APIRouter(tags=["usage"])


class InteractionRecentResponse(BaseModel):
    entries: List[InteractionEntry]


@router.get("/usage", response_model=UsageStatus)
def get_usage(user: User = Depends(get_current_user)) -> UsageStatus:
    settings = Settings.from_env()
    count = get_usage_store().get_count(user.user_id, day_bucket())
    return UsageStatus(count=count, limit=settings.limit_for(user.roles))


@router.get("/interactions/recent", response_model=InteractionRecentResponse)
def recent_interactions(
    limit: int = 25,
    interaction_id: str | None = None,
    _: User = Depends(get_current_user),
) -> InteractionRecentResponse:
    return InteractionRecentResponse(entries=list_recent_interactions(limit, interaction_id))
