"""
Activity tracking: last_active_at and message counter per user.
Fire-and-forget (spawned after a completed generation). Best effort: a failure
is logged and dropped, nothing depends on these columns being exact.
"""
import asyncio
import logging
from collections.abc import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from genrelay.repositories.chat_repository import ChatRepository

logger = logging.getLogger(__name__)


async def track_activity(session_factory: Callable[[], Session], user_id: str, messages: int = 1) -> None:
    loop = asyncio.get_event_loop()

    def _do():
        db = session_factory()
        try:
            ChatRepository.record_activity(db, user_id, messages)
        finally:
            db.close()

    try:
        await loop.run_in_executor(None, _do)
    except SQLAlchemyError as e:
        logger.warning("Activity update failed for user=%s: %s", user_id, e)
