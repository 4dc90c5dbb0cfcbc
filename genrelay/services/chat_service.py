"""
Chat store operations behind /api/chats: create a chat, append the user's
message, reload history. DB is the source of truth.
- Ownership: every read/write is scoped to chat.user_id == current user;
  a chat owned by someone else is indistinguishable from a missing one.
- User content is sanitized before it is stored.
- Saved assistant content carries a [WEB_SOURCES] marker; history splits it
  back into `sources`.
"""
import asyncio
import logging

from sqlalchemy.orm import Session

from genrelay.models.chat import Chat
from genrelay.repositories.chat_repository import ChatRepository
from genrelay.services.input_security import sanitize_input
from genrelay.services.web_search import parse_sources_marker

logger = logging.getLogger(__name__)


class ChatNotFound(Exception):
    """No chat with that id belongs to the caller."""


class ChatService:
    def __init__(self, repository: ChatRepository | None = None, history_limit: int = 200):
        self._repo = repository or ChatRepository()
        self._limit = history_limit

    async def create_chat(self, db: Session, user_id: str, *, title: str | None = None, model_id: str | None = None) -> Chat:
        loop = asyncio.get_event_loop()
        title = sanitize_input(title).strip() if title else None
        chat = await loop.run_in_executor(
            None,
            lambda: self._repo.create_chat(db, user_id, title=title or None, model_id=model_id),
        )
        logger.info("Chat %s created for user=%s", chat.id, user_id)
        return chat

    async def save_user_message(self, db: Session, user_id: str, chat_id: str, content: str) -> dict:
        """Append a user message to an owned chat. Raises ChatNotFound."""
        loop = asyncio.get_event_loop()

        def _do():
            chat = self._repo.get_chat_for_owner(db, chat_id, user_id)
            if chat is None:
                raise ChatNotFound(chat_id)
            return self._repo.save_message(db, chat.id, "user", sanitize_input(content))

        msg = await loop.run_in_executor(None, _do)
        return self._message_dict(msg)

    async def get_chat_with_history(self, db: Session, user_id: str, chat_id: str) -> tuple[Chat, list[dict]]:
        """Owned chat plus messages oldest-first. Raises ChatNotFound."""
        loop = asyncio.get_event_loop()

        def _do():
            chat = self._repo.get_chat_for_owner(db, chat_id, user_id)
            if chat is None:
                raise ChatNotFound(chat_id)
            return chat, self._repo.list_messages(db, chat.id, self._limit)

        chat, rows = await loop.run_in_executor(None, _do)
        return chat, [self._message_dict(r) for r in rows]

    @staticmethod
    def _message_dict(msg) -> dict:
        content, sources = parse_sources_marker(msg.content)
        return {
            "id": msg.id,
            "role": msg.role,
            "content": content,
            "model_id": msg.model_id,
            "sources": [s.to_dict() for s in sources],
            "created_at": msg.created_at,
        }
