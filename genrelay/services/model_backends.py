"""
Model backends: (messages, model) -> async sequence of text fragments.

- OpenAICompatibleBackend: chat/completions with stream=true over httpx
  (BytePlus ModelArk, OpenRouter and anything else speaking that dialect).
- GeminiBackend: google-genai client on Vertex AI. The SDK stream is
  synchronous, so it runs on a worker thread that feeds an asyncio queue.
- BackendRouter: dispatches on the catalog entry's provider.

Closing the async generator (client abort, timeout) closes the provider
connection: the httpx stream context exits, or the Gemini thread is told to stop.
"""
import asyncio
import json
import logging
import threading
from collections.abc import AsyncIterator, Iterator, Mapping
from pathlib import Path

import httpx

from genrelay.config import Settings
from genrelay.services.model_catalog import ModelDefinition

logger = logging.getLogger(__name__)

_END = object()


class ModelBackendError(Exception):
    """The provider failed before or during the stream."""


class ModelBackend:
    def stream(self, messages: list[dict], model: ModelDefinition) -> AsyncIterator[str]:
        raise NotImplementedError


class OpenAICompatibleBackend(ModelBackend):
    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        api_key: str = "",
        *,
        timeout_seconds: float = 120.0,
        max_tokens: int = 4096,
    ):
        self._http = http
        self._url = f"{base_url.rstrip('/')}/chat/completions"
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._max_tokens = max_tokens

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        if self._api_key:
            headers["authorization"] = f"Bearer {self._api_key}"
        return headers

    async def stream(self, messages: list[dict], model: ModelDefinition) -> AsyncIterator[str]:
        body = {
            "model": model.provider_model_id,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "stream": True,
        }
        if self._max_tokens:
            body["max_tokens"] = self._max_tokens
        try:
            async with self._http.stream(
                "POST", self._url, json=body, headers=self._headers(), timeout=self._timeout
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise ModelBackendError(f"{model.key} returned HTTP {response.status_code}")
                async for raw_line in response.aiter_lines():
                    line = raw_line.strip() if raw_line else ""
                    if not line.startswith("data:"):
                        continue
                    data = line.split(":", 1)[1].strip()
                    if data == "[DONE]":
                        return
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    if not isinstance(event, dict):
                        continue
                    if event.get("error"):
                        err = event["error"]
                        message = err.get("message") if isinstance(err, dict) else str(err)
                        raise ModelBackendError(message or "Provider error")
                    choices = event.get("choices")
                    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
                        continue
                    delta = choices[0].get("delta")
                    content = delta.get("content") if isinstance(delta, dict) else None
                    if isinstance(content, str) and content:
                        yield content
        except httpx.TimeoutException as e:
            raise ModelBackendError(f"{model.key} timed out") from e
        except httpx.HTTPError as e:
            raise ModelBackendError(f"{model.key} connection failed: {e}") from e


class GeminiBackend(ModelBackend):
    def __init__(self, settings: Settings):
        self._settings = settings
        # Lazy client to avoid import/credentials errors at startup
        self._client = None

    def _get_client(self):
        if self._client is not None:
            return self._client
        try:
            from google import genai
            from google.oauth2 import service_account
        except ImportError as e:
            raise ModelBackendError(
                "Google GenAI not installed. pip install google-genai google-auth"
            ) from e

        if not self._settings.vertex_project_id:
            raise ModelBackendError("vertex_project_id is not configured")

        credentials = None
        if self._settings.vertex_credentials_path:
            path = Path(self._settings.vertex_credentials_path)
            if path.is_file():
                credentials = service_account.Credentials.from_service_account_file(
                    str(path),
                    scopes=["https://www.googleapis.com/auth/cloud-platform"],
                )

        self._client = genai.Client(
            vertexai=True,
            project=self._settings.vertex_project_id,
            location=self._settings.vertex_location,
            credentials=credentials,
        )
        return self._client

    def _iter_text(self, messages: list[dict], model: ModelDefinition) -> Iterator[str]:
        """Sync Gemini stream. Yields text deltas as they arrive."""
        client = self._get_client()
        from google.genai import types
        from google.genai.types import GenerateContentConfig

        system_parts: list[str] = []
        contents = []
        for m in messages:
            content = (m.get("content") or "").strip()
            if not content:
                continue
            if m["role"] == "system":
                system_parts.append(content)
            elif m["role"] == "user":
                contents.append(types.Content(role="user", parts=[types.Part.from_text(text=content)]))
            else:
                contents.append(types.Content(role="model", parts=[types.Part.from_text(text=content)]))

        stream = client.models.generate_content_stream(
            model=model.provider_model_id,
            contents=contents,
            config=GenerateContentConfig(
                system_instruction="\n\n".join(system_parts) or None,
                temperature=0.7,
                max_output_tokens=self._settings.max_output_tokens,
            ),
        )
        for chunk in stream:
            if not chunk:
                continue
            text = getattr(chunk, "text", None)
            if text:
                yield text
                continue
            if chunk.candidates:
                c = chunk.candidates[0]
                if c.content and c.content.parts:
                    text = getattr(c.content.parts[0], "text", None)
                    if text:
                        yield text

    async def stream(self, messages: list[dict], model: ModelDefinition) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()

        def _produce() -> None:
            # Runs in a worker thread; hands items to the loop with call_soon_threadsafe
            try:
                for delta in self._iter_text(messages, model):
                    if stop.is_set():
                        return
                    loop.call_soon_threadsafe(queue.put_nowait, delta)
                loop.call_soon_threadsafe(queue.put_nowait, _END)
            except Exception as e:
                logger.exception("Gemini stream producer failed")
                if not stop.is_set():
                    loop.call_soon_threadsafe(queue.put_nowait, e)

        loop.run_in_executor(None, _produce)
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    return
                if isinstance(item, ModelBackendError):
                    raise item
                if isinstance(item, Exception):
                    raise ModelBackendError(f"{model.key} stream failed") from item
                yield item
        finally:
            stop.set()


class BackendRouter(ModelBackend):
    def __init__(self, backends: Mapping[str, ModelBackend]):
        self._backends = dict(backends)

    def stream(self, messages: list[dict], model: ModelDefinition) -> AsyncIterator[str]:
        backend = self._backends.get(model.provider)
        if backend is None:
            raise ModelBackendError(f"No backend configured for provider {model.provider}")
        return backend.stream(messages, model)
