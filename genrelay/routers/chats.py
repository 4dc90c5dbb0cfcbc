"""
Chat store endpoints (owner-scoped):
- POST /api/chats: create a chat
- GET /api/chats/{id}: chat with messages, sources split out of assistant content
- POST /api/chats/{id}/messages: append the user's message before calling /api/ai/generate
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from genrelay.auth import get_current_user
from genrelay.core.state import AppState
from genrelay.database import get_db
from genrelay.models.user import User
from genrelay.routers.ai import get_app_state
from genrelay.schemas.chat import ChatCreateRequest, ChatDetailOut, ChatOut, MessageCreateRequest, MessageOut
from genrelay.services.chat_service import ChatNotFound

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chats", tags=["chats"])


@router.post("", response_model=ChatOut, status_code=status.HTTP_201_CREATED)
async def create_chat(
    body: ChatCreateRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    state: AppState = Depends(get_app_state),
):
    model_id = None
    if body.model:
        model = state.catalog.resolve(body.model)
        if model is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown model '{body.model}'")
        model_id = model.key
    return await state.chats.create_chat(db, user.id, title=body.title, model_id=model_id)


@router.get("/{chat_id}", response_model=ChatDetailOut)
async def get_chat(
    chat_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    state: AppState = Depends(get_app_state),
):
    try:
        chat, messages = await state.chats.get_chat_with_history(db, user.id, chat_id)
    except ChatNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    return ChatDetailOut(
        id=chat.id,
        title=chat.title,
        model_id=chat.model_id,
        created_at=chat.created_at,
        updated_at=chat.updated_at,
        messages=[MessageOut(**m) for m in messages],
    )


@router.post("/{chat_id}/messages", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def add_user_message(
    chat_id: str,
    body: MessageCreateRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    state: AppState = Depends(get_app_state),
):
    try:
        message = await state.chats.save_user_message(db, user.id, chat_id, body.content)
    except ChatNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    return MessageOut(**message)
