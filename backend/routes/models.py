"""Pydantic request/response models for API endpoints."""

from typing import Literal

from pydantic import BaseModel, Field


class ChatBody(BaseModel):
    message: str
    session_id: str | None = None
    expected_version: int | None = None
    # Only used when session_id is omitted and a new session starts.
    vignette_id: str | None = None
    difficulty: str | None = None
    user_id: str = "anonymous"


class EndSessionBody(BaseModel):
    expected_version: int | None = None
    reason: str = "ended_by_user"


class NarrateBody(BaseModel):
    type: Literal["opening_line", "closing_line", "context_brief"]


class UpdateSettings(BaseModel):
    anthropic_base_url: str | None = None
    gemini_base_url: str | None = None
    llm_timeout: float | None = Field(default=None, gt=0)
    history_window: int | None = Field(default=None, ge=1)
    generation_retries: int | None = Field(default=None, ge=0)
