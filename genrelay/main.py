import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from genrelay.config import get_settings
from genrelay.core.state import build_app_state
from genrelay.routers import ai, chats

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    state = await build_app_state(settings)
    app.state.genrelay = state
    try:
        yield
    finally:
        await state.aclose()


app = FastAPI(title="genrelay", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Generation-Id", "Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
)

app.include_router(ai.router)
app.include_router(chats.router)


@app.get("/")
def root():
    return {"message": "genrelay", "docs": "/docs"}
