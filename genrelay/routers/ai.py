"""
AI endpoints:
- POST /api/ai/generate: admission (rate limit, validation, ownership, plan) then SSE stream
- POST /api/ai/generations/{id}/abort: stop an in-flight generation (owner only)
- GET /api/ai/usage: plan and per-action usage for the current user (counts only)
- GET /api/ai/health: counter store status
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from genrelay.auth import get_current_user
from genrelay.core.counter_store import CounterStoreError
from genrelay.core.state import AppState
from genrelay.database import get_db
from genrelay.models.user import User
from genrelay.schemas.ai import AbortRequest, AbortResponse, UsageResponse
from genrelay.services.generation_pipeline import RejectionError
from genrelay.services.plans import Identity, resolve_plan_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai", tags=["ai"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_app_state(request: Request) -> AppState:
    return request.app.state.genrelay


# ---------- Generate (SSE) ----------


@router.post("/generate")
async def ai_generate(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    state: AppState = Depends(get_app_state),
):
    """
    Stream a model response as Server-Sent Events.
    Every rejection happens here, before the first byte; after that the status is 200
    and failures arrive as an `error` event.
    """
    body = await request.body()
    try:
        admission = await state.pipeline.admit(
            db,
            user,
            content_type=request.headers.get("content-type"),
            body=body,
        )
    except RejectionError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail(), headers=e.headers or None) from e

    return StreamingResponse(
        state.pipeline.stream(admission),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, **admission.headers},
    )


@router.post("/generations/{generation_id}/abort", response_model=AbortResponse)
async def ai_abort_generation(
    generation_id: str,
    body: AbortRequest | None = None,
    user: User = Depends(get_current_user),
    state: AppState = Depends(get_app_state),
):
    """Abort an in-flight generation. savePartial keeps the text streamed so far."""
    save_partial = body.save_partial if body else False
    if not state.pipeline.abort(generation_id, user.id, save_partial=save_partial):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Generation not found")
    return AbortResponse(aborted=True, generation_id=generation_id)


# ---------- Usage ----------


@router.get("/usage", response_model=UsageResponse)
async def ai_usage(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    state: AppState = Depends(get_app_state),
):
    """Plan and today's used/limit per action. Never includes cost figures."""
    identity = Identity(user_id=user.id, plan_id=resolve_plan_id(db, user, state.plans))
    try:
        usage = await state.budget_gate.usage(identity)
    except CounterStoreError as e:
        logger.error("Usage lookup failed for user=%s: %s", user.id, e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Usage tracking is temporarily unavailable.",
        ) from e
    return UsageResponse(plan_id=usage["plan_id"], actions=usage["actions"])


# ---------- Health ----------


@router.get("/health")
async def ai_health(state: AppState = Depends(get_app_state)):
    """Health check: counter store status. DB not checked here."""
    try:
        ok = await state.store.ping()
    except CounterStoreError as e:
        logger.warning("Counter store health ping failed: %s", e)
        return {"counterStore": state.store.name, "status": "error", "message": str(e)}
    return {"counterStore": state.store.name, "status": "ok" if ok else "error"}
