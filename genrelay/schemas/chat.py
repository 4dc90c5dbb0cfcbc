from datetime import datetime

from pydantic import BaseModel, Field


class ChatCreateRequest(BaseModel):
    title: str | None = Field(None, max_length=200)
    model: str | None = Field(None, max_length=100)


class MessageCreateRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=8000)


class SourceOut(BaseModel):
    title: str
    url: str
    description: str = ""


class MessageOut(BaseModel):
    id: str
    role: str  # "user" | "assistant" | "system"
    content: str
    model_id: str | None = None
    sources: list[SourceOut] = []
    created_at: datetime | None = None


class ChatOut(BaseModel):
    id: str
    title: str
    model_id: str | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ChatDetailOut(ChatOut):
    messages: list[MessageOut] = []
