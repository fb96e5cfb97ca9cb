from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ScriptStatus(str, Enum):
    DRAFT = "DRAFT"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class GenerateRequest(BaseModel):
    prompt: Optional[str] = None
    lucky_request_id: Optional[str] = Field(default=None, alias="luckyRequestId")
    extract_reasoning: bool = Field(default=False, alias="extractReasoning")
    reasoning_tag: Optional[str] = Field(default=None, alias="reasoningTag", pattern=r"^[A-Za-z][\w\-]*$")

    model_config = {"populate_by_name": True}


class ScriptRecord(BaseModel):
    id: str
    content: str = ""
    status: ScriptStatus = ScriptStatus.DRAFT
    prompt: str
    owner_id: str
    provider: Optional[str] = None
    error: Optional[str] = None
    created_at: str
    updated_at: str


class UsageStatus(BaseModel):
    count: int
    limit: int
