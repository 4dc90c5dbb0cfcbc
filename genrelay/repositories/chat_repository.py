"""
Chat persistence: Chat + Message + UsageCostRecord. DB as source of truth.
All operations are sync (used from sync endpoints or run_in_executor from async).
Ownership: chat.user_id == current user; every lookup by id takes the owner.
"""
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from genrelay.models.chat import Chat, DEFAULT_CHAT_TITLE
from genrelay.models.message import Message
from genrelay.models.usage_cost_record import UsageCostRecord
from genrelay.models.user import User


def get_chat_for_owner(db: Session, chat_id: str, user_id: str) -> Chat | None:
    """The chat if it exists and belongs to user_id, else None (no distinction)."""
    return db.query(Chat).filter(Chat.id == chat_id, Chat.user_id == user_id).first()


def create_chat(db: Session, user_id: str, *, title: str | None = None, model_id: str | None = None) -> Chat:
    chat = Chat(user_id=user_id, title=title or DEFAULT_CHAT_TITLE, model_id=model_id)
    db.add(chat)
    db.commit()
    db.refresh(chat)
    return chat


def save_message(
    db: Session,
    chat_id: str,
    role: str,
    content: str,
    *,
    model_id: str | None = None,
) -> Message:
    """Persist one message and bump the chat's updated_at. Caller commits via this function."""
    msg = Message(chat_id=chat_id, role=role, content=content, model_id=model_id)
    db.add(msg)
    db.query(Chat).filter(Chat.id == chat_id).update(
        {Chat.updated_at: datetime.utcnow()}, synchronize_session=False
    )
    db.commit()
    db.refresh(msg)
    return msg


def list_messages(db: Session, chat_id: str, limit: int = 200) -> list[Message]:
    """Messages in a chat, oldest first."""
    return (
        db.query(Message)
        .filter(Message.chat_id == chat_id)
        .order_by(Message.created_at, Message.id)
        .limit(limit)
        .all()
    )


def count_messages(db: Session, chat_id: str) -> int:
    return db.query(func.count(Message.id)).filter(Message.chat_id == chat_id).scalar() or 0


def update_title(db: Session, chat_id: str, title: str) -> None:
    db.query(Chat).filter(Chat.id == chat_id).update({Chat.title: title}, synchronize_session=False)
    db.commit()


def insert_usage_cost_record(
    db: Session,
    *,
    user_id: str,
    chat_id: str | None,
    action: str,
    model_key: str | None,
    input_tokens: int,
    output_tokens: int,
    estimated_cost_usd: float,
    cost_usd: float,
    is_partial: bool = False,
) -> UsageCostRecord:
    record = UsageCostRecord(
        user_id=user_id,
        chat_id=chat_id,
        action=action,
        model_key=model_key,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        estimated_cost_usd=estimated_cost_usd,
        cost_usd=cost_usd,
        is_partial=is_partial,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def record_activity(db: Session, user_id: str, messages: int = 1) -> None:
    db.query(User).filter(User.id == user_id).update(
        {
            User.last_active_at: datetime.utcnow(),
            User.total_messages: User.total_messages + messages,
        },
        synchronize_session=False,
    )
    db.commit()


class ChatRepository:
    """Thin wrapper for dependency injection; delegates to module functions."""

    @staticmethod
    def get_chat_for_owner(db: Session, chat_id: str, user_id: str) -> Chat | None:
        return get_chat_for_owner(db, chat_id, user_id)

    @staticmethod
    def create_chat(db: Session, user_id: str, *, title: str | None = None, model_id: str | None = None) -> Chat:
        return create_chat(db, user_id, title=title, model_id=model_id)

    @staticmethod
    def save_message(db: Session, chat_id: str, role: str, content: str, *, model_id: str | None = None) -> Message:
        return save_message(db, chat_id, role, content, model_id=model_id)

    @staticmethod
    def list_messages(db: Session, chat_id: str, limit: int = 200) -> list[Message]:
        return list_messages(db, chat_id, limit)

    @staticmethod
    def count_messages(db: Session, chat_id: str) -> int:
        return count_messages(db, chat_id)

    @staticmethod
    def update_title(db: Session, chat_id: str, title: str) -> None:
        return update_title(db, chat_id, title)

    @staticmethod
    def insert_usage_cost_record(db: Session, **fields) -> UsageCostRecord:
        return insert_usage_cost_record(db, **fields)

    @staticmethod
    def record_activity(db: Session, user_id: str, messages: int = 1) -> None:
        return record_activity(db, user_id, messages)
