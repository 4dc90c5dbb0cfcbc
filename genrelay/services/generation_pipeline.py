"""
Generation pipeline: one request's lifecycle from admission to the last SSE event.

admit() runs before any byte is sent and raises RejectionError subclasses
(the router turns them into HTTP errors):
    rate limit (429) -> content type / body (415, 400) -> chat ownership (404)
    -> plan / quota / ceiling (403); counter store down (503).
Nothing reaches a model backend unless admit() returns.

stream() yields SSE lines tagged by type:
    search_results? -> chunk* -> (title? -> done) | error
The ledger runs at most once per generation, and only on completion or an
explicit abort with savePartial, and finishes even if the client disconnects
mid-settlement. Reservations the ledger does not own are released when the
stream ends, however it ends.
"""
import asyncio
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from pydantic import ValidationError
from sqlalchemy.orm import Session

from genrelay.config import Settings
from genrelay.core.counter_store import CounterStoreError
from genrelay.models.user import User
from genrelay.repositories.chat_repository import ChatRepository
from genrelay.schemas.ai import GenerateRequest
from genrelay.services.activity import track_activity
from genrelay.services.budget_gate import BudgetAction, BudgetDecision, BudgetGate, Reservation
from genrelay.services.inference_relay import InferenceRelay, RelayError, RelayState, RelayTimeout, sse_event
from genrelay.services.input_security import sanitize_messages
from genrelay.services.model_backends import ModelBackend
from genrelay.services.model_catalog import ModelCatalog, ModelDefinition, chat_cost_usd, estimate_messages_tokens
from genrelay.services.plans import Identity, resolve_plan_id, rate_limit_spec
from genrelay.services.rate_limiter import RateLimitAction, RateLimiter, rate_limit_key
from genrelay.services.usage_ledger import LedgerEntry, LedgerOutcome, UsageLedger
from genrelay.services.web_search import (
    SearchAugmenter,
    SearchProviderError,
    SearchResult,
    format_search_context,
)

logger = logging.getLogger(__name__)

ERROR_UNAVAILABLE = "AI service temporarily unavailable. Please try again."
ERROR_TIMEOUT = "The model took too long to respond. Please try again."
ERROR_NOT_SAVED = "The response could not be saved. Please try again."

# Admitted generations whose response body never started (client left before
# the first send) are dropped from the registry after this long.
UNSTARTED_HANDLE_TTL_SECONDS = 120.0


# ---------- Rejections ----------


class RejectionError(Exception):
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        headers: dict[str, str] | None = None,
        plan_id: str | None = None,
        reason: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.headers = headers or {}
        self.plan_id = plan_id
        self.reason = reason
        self.retry_after = retry_after

    def detail(self) -> dict:
        body: dict = {"error": self.message}
        if self.plan_id is not None:
            body["planId"] = self.plan_id
        if self.reason is not None:
            body["reason"] = self.reason
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        return body


class InvalidRequestError(RejectionError):
    status_code = 400


class UnsupportedMediaTypeError(RejectionError):
    status_code = 415


class ChatNotFoundError(RejectionError):
    status_code = 404


class PlanDeniedError(RejectionError):
    status_code = 403


class RateLimitedError(RejectionError):
    status_code = 429


class AdmissionUnavailableError(RejectionError):
    status_code = 503


# ---------- Generation state ----------


@dataclass
class Admission:
    generation_id: str
    identity: Identity
    chat_id: str
    model: ModelDefinition
    messages: list[dict]
    query: str
    estimated_cost: float
    chat_reservation: Reservation
    search_reservation: Reservation | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class GenerationHandle:
    """Registry entry for an in-flight generation; the abort endpoint flips it."""
    generation_id: str
    user_id: str
    relay: InferenceRelay | None = None
    abort_requested: bool = False
    save_partial: bool = False
    ledger_ran: bool = False
    started: bool = False
    admitted_at: float = field(default_factory=time.monotonic)
    reservations: list[Reservation] = field(default_factory=list)


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


def _budget_rejection(decision: BudgetDecision, headers: dict[str, str]) -> PlanDeniedError:
    return PlanDeniedError(
        decision.reason or "Not allowed on your plan",
        headers=headers,
        plan_id=decision.plan_id,
        reason=decision.reason_code.value if decision.reason_code else None,
    )


class GenerationPipeline:
    def __init__(
        self,
        *,
        settings: Settings,
        catalog: ModelCatalog,
        rate_limiter: RateLimiter,
        budget_gate: BudgetGate,
        search: SearchAugmenter,
        backend: ModelBackend,
        ledger: UsageLedger,
        generations: dict[str, GenerationHandle],
        spawn,
        session_factory,
        repository: ChatRepository | None = None,
    ):
        self._settings = settings
        self._catalog = catalog
        self._rate_limiter = rate_limiter
        self._gate = budget_gate
        self._search = search
        self._backend = backend
        self._ledger = ledger
        self._generations = generations
        self._spawn = spawn
        self._session_factory = session_factory
        self._repo = repository or ChatRepository()

    # ---------- Admission ----------

    async def admit(
        self,
        db: Session,
        user: User,
        *,
        content_type: str | None,
        body: bytes,
    ) -> Admission:
        plan_id = resolve_plan_id(db, user, self._gate.plans)
        identity = Identity(user_id=user.id, plan_id=plan_id)
        plan = self._gate.plan(plan_id)

        limited = await self._rate_limiter.check(
            rate_limit_key(RateLimitAction.CHAT, user.id),
            rate_limit_spec(plan, RateLimitAction.CHAT, self._settings),
        )
        headers = limited.headers()
        if not limited.allowed:
            raise RateLimitedError(
                "Too many requests. Please slow down.",
                headers=headers,
                retry_after=round(limited.retry_after, 3),
            )

        request = self._parse(content_type, body, headers)
        model = self._catalog.resolve(request.model)
        if model is None:
            raise InvalidRequestError(f"model: unknown model '{request.model}'", headers=headers)

        if self._repo.get_chat_for_owner(db, request.chat_id, user.id) is None:
            raise ChatNotFoundError("Chat not found", headers=headers)

        messages = sanitize_messages([m.model_dump() for m in request.messages])
        if not any(m["role"] == "user" and m["content"].strip() for m in messages):
            raise InvalidRequestError("messages: at least one non-empty user message is required", headers=headers)
        query = next(m["content"] for m in reversed(messages) if m["role"] == "user" and m["content"].strip())

        input_tokens = estimate_messages_tokens(m["content"] for m in messages)
        estimated_cost = chat_cost_usd(model, input_tokens, self._settings.estimated_output_tokens)

        chat_reservation = await self._authorize(
            identity, BudgetAction.CHAT, headers, model=model, estimated_cost=estimated_cost
        )
        search_reservation = None
        if request.web_search:
            try:
                search_reservation = await self._authorize(identity, BudgetAction.SEARCH, headers)
            except RejectionError:
                await self._release(chat_reservation)
                raise

        self._expire_unstarted()
        generation_id = str(uuid.uuid4())
        headers = {**headers, "X-Generation-Id": generation_id}
        self._generations[generation_id] = GenerationHandle(
            generation_id=generation_id,
            user_id=user.id,
            reservations=[r for r in (chat_reservation, search_reservation) if r is not None],
        )
        logger.info(
            "Generation %s admitted: user=%s plan=%s chat=%s model=%s search=%s",
            generation_id, user.id, plan_id, request.chat_id, model.key, request.web_search,
        )
        return Admission(
            generation_id=generation_id,
            identity=identity,
            chat_id=request.chat_id,
            model=model,
            messages=messages,
            query=query,
            estimated_cost=estimated_cost,
            chat_reservation=chat_reservation,
            search_reservation=search_reservation,
            headers=headers,
        )

    def _parse(self, content_type: str | None, body: bytes, headers: dict[str, str]) -> GenerateRequest:
        media_type = (content_type or "").split(";", 1)[0].strip().lower()
        if media_type != "application/json":
            raise UnsupportedMediaTypeError("Content-Type must be application/json", headers=headers)
        try:
            data = json.loads(body or b"")
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidRequestError("Invalid JSON body", headers=headers) from None
        if not isinstance(data, dict):
            raise InvalidRequestError("Request body must be a JSON object", headers=headers)
        try:
            return GenerateRequest.model_validate(data)
        except ValidationError as e:
            raise InvalidRequestError(_first_error(e), headers=headers) from None

    async def _authorize(
        self,
        identity: Identity,
        action: BudgetAction,
        headers: dict[str, str],
        *,
        model: ModelDefinition | None = None,
        estimated_cost: float = 0.0,
    ) -> Reservation:
        try:
            decision = await self._gate.authorize(identity, action, model=model, estimated_cost=estimated_cost)
        except CounterStoreError as e:
            logger.error("Budget store unavailable for user=%s action=%s: %s", identity.user_id, action.value, e)
            raise AdmissionUnavailableError(
                "Usage tracking is temporarily unavailable. Please try again shortly.", headers=headers
            ) from e
        if not decision.allowed:
            logger.info(
                "Budget denied user=%s plan=%s action=%s reason=%s",
                identity.user_id, decision.plan_id, action.value,
                decision.reason_code.value if decision.reason_code else None,
            )
            raise _budget_rejection(decision, headers)
        return decision.reservation

    async def _release(self, reservation: Reservation | None) -> None:
        if reservation is None or reservation.settled:
            return
        try:
            await self._gate.release(reservation)
        except CounterStoreError as e:
            # Hold expires on its own
            logger.warning("Failed to release reservation for user=%s: %s", reservation.user_id, e)

    def _expire_unstarted(self) -> None:
        cutoff = time.monotonic() - UNSTARTED_HANDLE_TTL_SECONDS
        stale = [
            h for h in self._generations.values()
            if not h.started and h.admitted_at < cutoff
        ]
        for handle in stale:
            self._generations.pop(handle.generation_id, None)
            logger.info("Generation %s expired before streaming started", handle.generation_id)
            for reservation in handle.reservations:
                if not reservation.settled:
                    self._spawn(self._release(reservation))

    # ---------- Abort ----------

    def abort(self, generation_id: str, user_id: str, *, save_partial: bool = False) -> bool:
        """False if no such in-flight generation belongs to user_id."""
        handle = self._generations.get(generation_id)
        if handle is None or handle.user_id != user_id:
            return False
        handle.abort_requested = True
        handle.save_partial = save_partial
        if handle.relay is not None:
            handle.relay.abort()
        logger.info("Generation %s abort requested (save_partial=%s)", generation_id, save_partial)
        return True

    # ---------- Stream ----------

    async def _augment(self, admission: Admission) -> list[SearchResult]:
        """Search context for the latest user message. Never raises; empty means no augmentation."""
        reservation = admission.search_reservation
        identity = admission.identity
        limited = await self._rate_limiter.check(
            rate_limit_key(RateLimitAction.SEARCH, identity.user_id),
            rate_limit_spec(self._gate.plan(identity.plan_id), RateLimitAction.SEARCH, self._settings),
        )
        if not limited.allowed:
            logger.info("Search rate limited for user=%s; continuing without search", identity.user_id)
            await self._release(reservation)
            return []
        try:
            results = await self._search.augment(admission.query)
        except SearchProviderError as e:
            logger.warning("Web search failed for user=%s: %s", identity.user_id, e)
            await self._release(reservation)
            return []
        except Exception:
            logger.exception("Web search crashed for user=%s; continuing without search", identity.user_id)
            await self._release(reservation)
            return []
        if not results:
            await self._release(reservation)
            return []
        try:
            await self._gate.commit(reservation, 0.0)
        except CounterStoreError as e:
            logger.error("Failed to commit search usage for user=%s: %s", identity.user_id, e)
        return results

    async def _settle(
        self,
        handle: GenerationHandle,
        entry: LedgerEntry,
        text: str,
        sources: list[SearchResult],
        *,
        partial: bool = False,
    ) -> LedgerOutcome:
        """Run the ledger as its own task; cancelling the stream does not cut it short."""
        handle.ledger_ran = True
        task = self._spawn(self._ledger.settle(entry, text, sources, partial=partial))
        return await asyncio.shield(task)

    async def stream(self, admission: Admission) -> AsyncIterator[str]:
        handle = self._generations.get(admission.generation_id) or GenerationHandle(
            generation_id=admission.generation_id, user_id=admission.identity.user_id
        )
        handle.started = True
        try:
            messages = admission.messages
            sources: list[SearchResult] = []
            if admission.search_reservation is not None:
                sources = await self._augment(admission)
                if sources:
                    yield sse_event("search_results", searchResults=[r.to_dict() for r in sources])
                    messages = [{"role": "system", "content": format_search_context(sources)}, *messages]

            relay = InferenceRelay(
                self._backend,
                messages,
                admission.model,
                idle_timeout=self._settings.stream_idle_timeout_seconds,
            )
            handle.relay = relay
            if handle.abort_requested:
                relay.abort()

            try:
                async for fragment in relay.fragments():
                    yield sse_event("chunk", content=fragment)
            except RelayTimeout as e:
                logger.warning("Generation %s timed out: %s", admission.generation_id, e)
                yield sse_event("error", message=ERROR_TIMEOUT)
                return
            except RelayError as e:
                logger.warning("Generation %s failed: %s", admission.generation_id, e)
                yield sse_event("error", message=ERROR_UNAVAILABLE)
                return

            entry = LedgerEntry(
                user_id=admission.identity.user_id,
                chat_id=admission.chat_id,
                model=admission.model,
                input_messages=messages,
                reservation=admission.chat_reservation,
                estimated_cost=admission.estimated_cost,
            )
            if relay.state is RelayState.ABORTED:
                if handle.save_partial and relay.text and not handle.ledger_ran:
                    await self._settle(handle, entry, relay.text, sources, partial=True)
                return

            if handle.ledger_ran:
                return
            outcome = await self._settle(handle, entry, relay.text, sources)
            if not outcome.saved:
                yield sse_event("error", message=ERROR_NOT_SAVED)
                return
            if outcome.title:
                yield sse_event("title", title=outcome.title)
            yield sse_event("done", messageId=outcome.message_id)
            self._spawn(track_activity(self._session_factory, admission.identity.user_id))
        finally:
            self._generations.pop(admission.generation_id, None)
            # Spawned, not awaited: on client disconnect this frame is being cancelled.
            # Once the ledger has started it owns the chat reservation.
            pending = [admission.search_reservation]
            if not handle.ledger_ran:
                pending.append(admission.chat_reservation)
            unsettled = [r for r in pending if r is not None and not r.settled]
            for reservation in unsettled:
                self._spawn(self._release(reservation))
