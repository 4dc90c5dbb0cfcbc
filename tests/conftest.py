import asyncio
import json
import os
from datetime import datetime, timedelta

# Settings are read once (lru_cache); point them at throwaway resources before any import
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ["SEARXNG_URL"] = ""
os.environ["SECRET_KEY"] = "test-secret"

import pytest
from fastapi.testclient import TestClient

from genrelay.auth import create_access_token
from genrelay.config import Settings
from genrelay.core.counter_store import MemoryCounterStore
from genrelay.core.state import assemble_app_state
from genrelay.database import Base, SessionLocal, engine
from genrelay.models.chat import Chat
from genrelay.models.subscription import Subscription
from genrelay.models.user import User, UserRole
from genrelay.services.model_backends import ModelBackend, ModelBackendError
from genrelay.services.plans import PLAN_LIMITS
from genrelay.services.web_search import SearchClient, SearchProviderError, SearchResult


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedBackend(ModelBackend):
    """Yields the scripted fragments; optionally fails after N of them or stalls."""

    def __init__(self, fragments=("Hello", " there", "!"), *, fail_after=None, delay=0.0, stall_after=None):
        self.fragments = list(fragments)
        self.fail_after = fail_after
        self.delay = delay
        self.stall_after = stall_after
        self.calls: list[list[dict]] = []
        self.closed = 0

    async def stream(self, messages, model):
        self.calls.append(list(messages))
        try:
            for i, fragment in enumerate(self.fragments):
                if self.fail_after is not None and i == self.fail_after:
                    raise ModelBackendError("upstream exploded")
                if self.stall_after is not None and i == self.stall_after:
                    await asyncio.sleep(3600)
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield fragment
            if self.fail_after is not None and self.fail_after >= len(self.fragments):
                raise ModelBackendError("upstream exploded")
        finally:
            self.closed += 1


class StaticSearchClient(SearchClient):
    def __init__(self, results=(), *, error: Exception | None = None):
        self.results = list(results)
        self.error = error
        self.queries: list[str] = []

    async def search(self, query):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return list(self.results)


TWO_RESULTS = [
    SearchResult(title="Python docs", url="https://docs.python.org/3/", description="Official docs"),
    SearchResult(title="PEP 8", url="https://peps.python.org/pep-0008/", description="Style guide"),
]


def parse_sse(text: str) -> list[dict]:
    events = []
    for block in text.split("\n\n"):
        block = block.strip()
        if block.startswith("data:"):
            events.append(json.loads(block[len("data:"):].strip()))
    return events


async def collect(stream) -> list[dict]:
    return parse_sse("".join([line async for line in stream]))


@pytest.fixture(autouse=True)
def tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    def _make(plan: str = "free", *, role: str = UserRole.MEMBER.value, email: str | None = None) -> User:
        user = User(email=email or f"{plan}-{os.urandom(4).hex()}@example.com", full_name="Test", role=role)
        db.add(user)
        db.commit()
        if plan not in ("free", "admin"):
            db.add(Subscription(
                user_id=user.id,
                plan_id=plan,
                current_period_end=datetime.utcnow() + timedelta(days=30),
            ))
            db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def make_chat(db):
    def _make(user: User, **fields) -> Chat:
        chat = Chat(user_id=user.id, **fields)
        db.add(chat)
        db.commit()
        db.refresh(chat)
        return chat
    return _make


@pytest.fixture
def make_state():
    def _make(backend=None, search=None, *, plans=None, store=None, **overrides):
        settings = Settings(**{"stream_idle_timeout_seconds": 5.0, **overrides})
        return assemble_app_state(
            settings,
            store=store or MemoryCounterStore(),
            backend=backend or ScriptedBackend(),
            search_client=search or StaticSearchClient(),
            plans=plans or PLAN_LIMITS,
            session_factory=SessionLocal,
        )
    return _make


@pytest.fixture
def client():
    from genrelay.main import app

    def _client(state) -> TestClient:
        app.state.genrelay = state
        return TestClient(app)
    return _client


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.email)}"}
