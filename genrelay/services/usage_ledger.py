"""
Usage ledger: runs once after a generation completes (or is aborted with a
partial save). Steps, each on its own:

  (a) save the assistant message (text + sources marker)
  (b) estimate input/output tokens and the actual cost
  (c) commit the budget reservation with that cost
  (d) write the internal UsageCostRecord
  (e) on a chat's first exchange, generate and save a title

A failing step is logged with full context and never stops the others; (e)
failing never undoes (a)-(d). DB work runs in the default executor on a fresh
session, since the request's session may already be closed by the time the
stream finishes.
"""
import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from genrelay.core.counter_store import CounterStoreError
from genrelay.models.chat import DEFAULT_CHAT_TITLE
from genrelay.repositories.chat_repository import ChatRepository
from genrelay.services.budget_gate import BudgetGate, Reservation
from genrelay.services.model_catalog import (
    ModelDefinition,
    chat_cost_usd,
    estimate_messages_tokens,
    estimate_tokens,
)
from genrelay.services.title_generator import TitleGenerator
from genrelay.services.web_search import SearchResult, format_sources_marker

logger = logging.getLogger(__name__)

# user + assistant
FIRST_EXCHANGE_MAX_MESSAGES = 2


@dataclass
class LedgerEntry:
    """Everything the ledger needs about one finished generation."""
    user_id: str
    chat_id: str
    model: ModelDefinition
    input_messages: list[dict]
    reservation: Reservation | None
    estimated_cost: float = 0.0


@dataclass
class LedgerOutcome:
    message_id: str | None = None
    title: str | None = None
    cost_usd: float = 0.0
    errors: list[str] = field(default_factory=list)

    @property
    def saved(self) -> bool:
        return self.message_id is not None


class UsageLedger:
    def __init__(
        self,
        budget_gate: BudgetGate,
        title_generator: TitleGenerator,
        session_factory: Callable[[], Session],
        repository: ChatRepository | None = None,
    ):
        self._gate = budget_gate
        self._titles = title_generator
        self._session_factory = session_factory
        self._repo = repository or ChatRepository()

    async def _run_db(self, fn):
        loop = asyncio.get_event_loop()

        def _do():
            db = self._session_factory()
            try:
                return fn(db)
            finally:
                db.close()

        return await loop.run_in_executor(None, _do)

    async def settle(
        self,
        entry: LedgerEntry,
        text: str,
        sources: list[SearchResult] | None = None,
        *,
        partial: bool = False,
    ) -> LedgerOutcome:
        outcome = LedgerOutcome()
        ctx = f"user={entry.user_id} chat={entry.chat_id} model={entry.model.key} partial={partial}"

        # (a) assistant message
        content = text + format_sources_marker(sources or [])
        try:
            msg = await self._run_db(
                lambda db: self._repo.save_message(
                    db, entry.chat_id, "assistant", content, model_id=entry.model.key
                )
            )
            outcome.message_id = msg.id
        except Exception:
            logger.exception("Ledger: failed to save assistant message (%s)", ctx)
            outcome.errors.append("message")

        # (b) tokens and cost
        input_tokens = estimate_messages_tokens(m["content"] for m in entry.input_messages)
        output_tokens = estimate_tokens(text)
        cost = chat_cost_usd(entry.model, input_tokens, output_tokens)
        outcome.cost_usd = cost

        # (c) settle the reservation
        if entry.reservation is not None:
            try:
                await self._gate.commit(entry.reservation, cost)
            except CounterStoreError:
                logger.exception(
                    "Ledger: failed to commit usage (%s cost=%.6f estimated=%.6f)",
                    ctx, cost, entry.estimated_cost,
                )
                outcome.errors.append("budget")

        # (d) internal cost record
        try:
            await self._run_db(
                lambda db: self._repo.insert_usage_cost_record(
                    db,
                    user_id=entry.user_id,
                    chat_id=entry.chat_id,
                    action="chat",
                    model_key=entry.model.key,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    estimated_cost_usd=entry.estimated_cost,
                    cost_usd=cost,
                    is_partial=partial,
                )
            )
        except Exception:
            logger.exception("Ledger: failed to write cost record (%s cost=%.6f)", ctx, cost)
            outcome.errors.append("cost_record")

        # (e) title on first exchange
        if outcome.saved and not partial:
            try:
                outcome.title = await self._maybe_title(entry)
            except Exception:
                logger.exception("Ledger: title generation failed (%s)", ctx)
                outcome.errors.append("title")

        return outcome

    async def _maybe_title(self, entry: LedgerEntry) -> str | None:
        def _is_first_exchange(db: Session) -> bool:
            chat = self._repo.get_chat_for_owner(db, entry.chat_id, entry.user_id)
            if chat is None or chat.title != DEFAULT_CHAT_TITLE:
                return False
            return self._repo.count_messages(db, entry.chat_id) <= FIRST_EXCHANGE_MAX_MESSAGES

        if not await self._run_db(_is_first_exchange):
            return None
        first_user = next((m["content"] for m in entry.input_messages if m["role"] == "user"), "")
        title = await self._titles.generate(first_user)
        await self._run_db(lambda db: self._repo.update_title(db, entry.chat_id, title))
        return title
