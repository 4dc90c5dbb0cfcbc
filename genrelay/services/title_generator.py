"""Short chat titles from the opening message. Falls back to the first words on any failure."""
import asyncio
import logging

from genrelay.models.chat import DEFAULT_CHAT_TITLE
from genrelay.services.model_backends import ModelBackend, ModelBackendError
from genrelay.services.model_catalog import ModelDefinition

logger = logging.getLogger(__name__)

TITLE_PROMPT = (
    "Create a short title (3-6 words) for this conversation. "
    "Only respond with the title, no quotes or extra text."
)
TITLE_MAX_CHARS = 100
FALLBACK_WORDS = 5
FALLBACK_MAX_CHARS = 50


def fallback_title(first_message: str) -> str:
    words = (first_message or "").split()[:FALLBACK_WORDS]
    title = " ".join(words)
    if not title:
        return DEFAULT_CHAT_TITLE
    if len(title) > FALLBACK_MAX_CHARS:
        title = title[:FALLBACK_MAX_CHARS].rstrip() + "..."
    return title


class TitleGenerator:
    def __init__(self, backend: ModelBackend, model: ModelDefinition | None, *, timeout_seconds: float = 15.0):
        self._backend = backend
        self._model = model
        self._timeout = timeout_seconds

    async def _ask(self, first_message: str) -> str:
        parts: list[str] = []
        messages = [
            {"role": "system", "content": TITLE_PROMPT},
            {"role": "user", "content": first_message},
        ]
        async for fragment in self._backend.stream(messages, self._model):
            parts.append(fragment)
        return "".join(parts)

    async def generate(self, first_message: str) -> str:
        if self._model is None:
            return fallback_title(first_message)
        try:
            raw = await asyncio.wait_for(self._ask(first_message), timeout=self._timeout)
        except (ModelBackendError, asyncio.TimeoutError) as e:
            logger.warning("Title generation failed, using fallback: %s", e)
            return fallback_title(first_message)
        title = raw.strip().strip("\"'").strip()
        if not title:
            return fallback_title(first_message)
        return title[:TITLE_MAX_CHARS]
