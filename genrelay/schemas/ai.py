from typing import Literal

from pydantic import BaseModel, Field


# ---- Generate ----

class ChatMessageIn(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str = Field(..., min_length=1, max_length=8000)


class GenerateRequest(BaseModel):
    chat_id: str = Field(..., alias="chatId", min_length=1, max_length=100)
    messages: list[ChatMessageIn] = Field(..., min_length=1)
    model: str = Field(..., min_length=1, max_length=100)
    web_search: bool = Field(False, alias="webSearch")

    class Config:
        populate_by_name = True
        extra = "ignore"


class AbortRequest(BaseModel):
    save_partial: bool = Field(False, alias="savePartial")

    class Config:
        populate_by_name = True


class AbortResponse(BaseModel):
    aborted: bool
    generation_id: str = Field(..., serialization_alias="generationId")


# ---- Usage (counts only, never money) ----

class ActionUsage(BaseModel):
    used: int
    limit: int | None = Field(None, description="None = unlimited")
    remaining: int | None = None


class UsageResponse(BaseModel):
    plan_id: str = Field(..., serialization_alias="planId")
    actions: dict[str, ActionUsage]
