"""A chat thread owned by one user. Messages are appended in order and never edited."""
import uuid
from datetime import datetime

from sqlalchemy import Column, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from genrelay.database import Base

DEFAULT_CHAT_TITLE = "New chat"


class Chat(Base):
    __tablename__ = "chats"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False, default=DEFAULT_CHAT_TITLE)
    model_id = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Messages ordered by created_at for correct ordering
    messages = relationship(
        "Message",
        back_populates="chat",
        order_by="Message.created_at",
        lazy="select",
    )
