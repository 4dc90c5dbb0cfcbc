"""
Inference relay: forwards a backend's text fragments as they arrive and keeps
the full reply.

States: IDLE -> CONNECTING -> STREAMING -> COMPLETED | FAILED | ABORTED.
- CONNECTING -> STREAMING on the first non-empty fragment.
- End of stream with no fragment at all is FAILED (empty response).
- No fragment within idle_timeout is FAILED with RelayTimeout.
- abort() or closing the fragments() generator (client went away) is ABORTED.

The backend runs in its own task feeding a queue; on any exit that task is
cancelled, which closes the provider connection.
"""
import asyncio
import contextlib
import enum
import json
import logging
from collections.abc import AsyncIterator

from genrelay.services.model_backends import ModelBackend
from genrelay.services.model_catalog import ModelDefinition

logger = logging.getLogger(__name__)

_END = object()
_ABORT = object()


class RelayState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({RelayState.COMPLETED, RelayState.FAILED, RelayState.ABORTED})


class RelayError(Exception):
    """The backend failed or produced nothing."""


class RelayTimeout(RelayError):
    """No fragment arrived within the idle timeout."""


def _sse_message(payload: dict) -> str:
    """Proper SSE format: data: {json}\\n\\n"""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def sse_event(event_type: str, **fields) -> str:
    return _sse_message({"type": event_type, **fields})


class InferenceRelay:
    def __init__(
        self,
        backend: ModelBackend,
        messages: list[dict],
        model: ModelDefinition,
        *,
        idle_timeout: float = 60.0,
    ):
        self._backend = backend
        self._messages = messages
        self._model = model
        self._idle_timeout = idle_timeout
        self._parts: list[str] = []
        self._queue: asyncio.Queue | None = None
        self._abort_requested = False
        self.state = RelayState.IDLE

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def abort(self) -> None:
        """Stop forwarding; the consumer sees the fragments() generator end."""
        if self.finished:
            return
        self._abort_requested = True
        if self._queue is not None:
            self._queue.put_nowait(_ABORT)

    async def _produce(self, queue: asyncio.Queue) -> None:
        try:
            async for fragment in self._backend.stream(self._messages, self._model):
                if fragment:
                    queue.put_nowait(fragment)
            queue.put_nowait(_END)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            queue.put_nowait(e)

    async def fragments(self) -> AsyncIterator[str]:
        """
        Yield fragments in backend order. Raises RelayTimeout / RelayError on
        failure; returns normally on completion or abort (check .state).
        """
        if self.state is not RelayState.IDLE:
            raise RuntimeError("relay already started")
        self.state = RelayState.CONNECTING
        queue: asyncio.Queue = asyncio.Queue()
        self._queue = queue
        if self._abort_requested:
            self.state = RelayState.ABORTED
            return
        producer = asyncio.create_task(self._produce(queue))
        try:
            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=self._idle_timeout)
                except asyncio.TimeoutError:
                    self.state = RelayState.FAILED
                    raise RelayTimeout(
                        f"{self._model.key} sent nothing for {self._idle_timeout:g}s"
                    ) from None
                if item is _ABORT or self._abort_requested:
                    self.state = RelayState.ABORTED
                    return
                if item is _END:
                    if not self._parts:
                        self.state = RelayState.FAILED
                        raise RelayError(f"{self._model.key} returned an empty response")
                    self.state = RelayState.COMPLETED
                    return
                if isinstance(item, Exception):
                    self.state = RelayState.FAILED
                    raise RelayError(str(item) or type(item).__name__) from item
                self.state = RelayState.STREAMING
                self._parts.append(item)
                yield item
        finally:
            if not self.finished:
                # Consumer closed the generator (client disconnect)
                self.state = RelayState.ABORTED
            if not producer.done():
                producer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await producer
