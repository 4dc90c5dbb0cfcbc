"""
Process-scoped state. Built once in the FastAPI lifespan (build_app_state),
stored on app.state.genrelay, torn down by aclose() on shutdown. Components
get what they need from here instead of module globals.
"""
import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any

import httpx

from genrelay.config import Settings
from genrelay.core.counter_store import CounterStore, RedisCounterStore
from genrelay.core.redis import build_counter_store
from genrelay.database import SessionLocal
from genrelay.services.budget_gate import BudgetGate
from genrelay.services.chat_service import ChatService
from genrelay.services.generation_pipeline import GenerationHandle, GenerationPipeline
from genrelay.services.model_backends import (
    BackendRouter,
    GeminiBackend,
    ModelBackend,
    OpenAICompatibleBackend,
)
from genrelay.services.model_catalog import PROVIDER_GEMINI, PROVIDER_OPENAI_COMPAT, ModelCatalog
from genrelay.services.plans import PLAN_LIMITS, PlanLimits
from genrelay.services.rate_limiter import RateLimiter
from genrelay.services.title_generator import TitleGenerator
from genrelay.services.usage_ledger import UsageLedger
from genrelay.services.web_search import SearchAugmenter, SearchClient, SearxngSearchClient

logger = logging.getLogger(__name__)


@dataclass
class AppState:
    settings: Settings
    store: CounterStore
    http: httpx.AsyncClient | None
    backend: ModelBackend
    search: SearchAugmenter
    catalog: ModelCatalog
    plans: dict[str, PlanLimits]
    rate_limiter: RateLimiter
    budget_gate: BudgetGate
    ledger: UsageLedger
    chats: ChatService
    pipeline: GenerationPipeline | None = None
    generations: dict[str, GenerationHandle] = field(default_factory=dict)
    tasks: set[asyncio.Task] = field(default_factory=set)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run a best-effort background task; failures are logged, never raised."""
        task = asyncio.get_event_loop().create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self.tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for background tasks started so far."""
        while self.tasks:
            await asyncio.gather(*list(self.tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for handle in list(self.generations.values()):
            if handle.relay is not None:
                handle.relay.abort()
        await self.drain()
        if self.http is not None:
            await self.http.aclose()
        await self.store.close()


def assemble_app_state(
    settings: Settings,
    *,
    store: CounterStore,
    backend: ModelBackend,
    search_client: SearchClient,
    http: httpx.AsyncClient | None = None,
    catalog: ModelCatalog | None = None,
    plans: dict[str, PlanLimits] | None = None,
    session_factory=SessionLocal,
) -> AppState:
    """Wire components from already-built collaborators."""
    catalog = catalog or ModelCatalog()
    plans = dict(plans or PLAN_LIMITS)
    budget_gate = BudgetGate(store, plans, hold_ttl_seconds=settings.budget_hold_ttl_seconds)
    titles = TitleGenerator(backend, catalog.resolve(settings.title_model))
    state = AppState(
        settings=settings,
        store=store,
        http=http,
        backend=backend,
        search=SearchAugmenter(search_client, settings.search_max_results),
        catalog=catalog,
        plans=plans,
        rate_limiter=RateLimiter(store, fail_open=settings.rate_limit_fail_open),
        budget_gate=budget_gate,
        ledger=UsageLedger(budget_gate, titles, session_factory),
        chats=ChatService(),
    )
    state.pipeline = GenerationPipeline(
        settings=settings,
        catalog=catalog,
        rate_limiter=state.rate_limiter,
        budget_gate=budget_gate,
        search=state.search,
        backend=backend,
        ledger=state.ledger,
        generations=state.generations,
        spawn=state.spawn,
        session_factory=session_factory,
    )
    return state


async def build_app_state(settings: Settings) -> AppState:
    store = await build_counter_store(settings)
    if not isinstance(store, RedisCounterStore):
        logger.info("Using in-process counters; limits are per worker")
    http = httpx.AsyncClient(timeout=httpx.Timeout(settings.provider_timeout_seconds, connect=10.0))
    backend = BackendRouter(
        {
            PROVIDER_OPENAI_COMPAT: OpenAICompatibleBackend(
                http,
                settings.openai_base_url,
                settings.openai_api_key,
                timeout_seconds=settings.provider_timeout_seconds,
                max_tokens=settings.max_output_tokens,
            ),
            PROVIDER_GEMINI: GeminiBackend(settings),
        }
    )
    search_client = SearxngSearchClient(
        http,
        settings.searxng_url,
        max_results=settings.search_max_results,
        timeout_seconds=settings.search_timeout_seconds,
        language=settings.search_language,
    )
    return assemble_app_state(settings, store=store, backend=backend, search_client=search_client, http=http)
