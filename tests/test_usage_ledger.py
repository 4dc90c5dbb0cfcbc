"""Usage ledger: each step on its own, title only on a first exchange."""
import asyncio

from sqlalchemy.exc import OperationalError

from genrelay.core.counter_store import MemoryCounterStore
from genrelay.database import SessionLocal
from genrelay.models.chat import Chat
from genrelay.models.message import Message
from genrelay.models.usage_cost_record import UsageCostRecord
from genrelay.repositories.chat_repository import ChatRepository
from genrelay.services.budget_gate import BudgetAction, BudgetGate
from genrelay.services.model_catalog import DEFAULT_MODELS
from genrelay.services.plans import PLAN_LIMITS, Identity
from genrelay.services.title_generator import TitleGenerator
from genrelay.services.usage_ledger import LedgerEntry, UsageLedger

from conftest import ScriptedBackend, TWO_RESULTS

FLASH = DEFAULT_MODELS["seed-1-6-flash"]


class BrokenTitles:
    async def generate(self, first_message):
        raise RuntimeError("title service down")


class NoSaveRepository(ChatRepository):
    @staticmethod
    def save_message(db, chat_id, role, content, *, model_id=None):
        raise OperationalError("INSERT INTO messages", {}, Exception("disk full"))


def _setup(user, titles=None, repository=None):
    gate = BudgetGate(MemoryCounterStore(), PLAN_LIMITS)
    titles = titles or TitleGenerator(ScriptedBackend(["Python ", "Questions"]), FLASH)
    return gate, UsageLedger(gate, titles, SessionLocal, repository)


def _entry(user, chat, reservation):
    return LedgerEntry(
        user_id=user.id,
        chat_id=chat.id,
        model=FLASH,
        input_messages=[{"role": "user", "content": "how do I use asyncio?"}],
        reservation=reservation,
        estimated_cost=0.0002,
    )


async def _authorize(gate, user):
    decision = await gate.authorize(Identity(user.id, "free"), BudgetAction.CHAT, FLASH, 0.0002)
    return decision.reservation


class TestLedger:
    def test_completed_generation(self, db, make_user, make_chat):
        user = make_user("free")
        chat = make_chat(user)
        gate, ledger = _setup(user)

        async def run():
            reservation = await _authorize(gate, user)
            outcome = await ledger.settle(_entry(user, chat, reservation), "Use asyncio.run.", TWO_RESULTS)
            return outcome, await gate.usage(Identity(user.id, "free"))

        outcome, usage = asyncio.run(run())
        assert outcome.saved and outcome.errors == []
        assert outcome.title == "Python Questions"
        assert usage["actions"]["chat"]["used"] == 1

        db.expire_all()
        msg = db.query(Message).filter(Message.id == outcome.message_id).one()
        assert msg.role == "assistant"
        assert msg.content.startswith("Use asyncio.run.")
        assert all(r.url in msg.content for r in TWO_RESULTS)
        record = db.query(UsageCostRecord).one()
        assert record.input_tokens == 6
        assert record.output_tokens == 4
        assert record.estimated_cost_usd == 0.0002
        assert record.cost_usd == outcome.cost_usd
        assert record.is_partial is False
        assert db.get(Chat, chat.id).title == "Python Questions"

    def test_no_title_after_first_exchange(self, db, make_user, make_chat):
        user = make_user("free")
        chat = make_chat(user, title="Already named")
        _, ledger = _setup(user)
        outcome = asyncio.run(ledger.settle(_entry(user, chat, None), "answer"))
        assert outcome.saved
        assert outcome.title is None

    def test_title_failure_keeps_everything_else(self, db, make_user, make_chat):
        user = make_user("free")
        chat = make_chat(user)
        gate, ledger = _setup(user, titles=BrokenTitles())

        async def run():
            reservation = await _authorize(gate, user)
            return await ledger.settle(_entry(user, chat, reservation), "answer"), reservation

        outcome, reservation = asyncio.run(run())
        assert outcome.saved
        assert outcome.errors == ["title"]
        assert reservation.settled
        assert db.query(UsageCostRecord).count() == 1

    def test_message_failure_does_not_stop_settlement(self, db, make_user, make_chat):
        user = make_user("free")
        chat = make_chat(user)
        gate, ledger = _setup(user, repository=NoSaveRepository())

        async def run():
            reservation = await _authorize(gate, user)
            return await ledger.settle(_entry(user, chat, reservation), "answer"), reservation

        outcome, reservation = asyncio.run(run())
        assert not outcome.saved
        assert outcome.errors == ["message"]
        assert outcome.title is None
        assert reservation.settled
        assert db.query(UsageCostRecord).count() == 1

    def test_partial_save(self, db, make_user, make_chat):
        user = make_user("free")
        chat = make_chat(user)
        _, ledger = _setup(user)
        outcome = asyncio.run(ledger.settle(_entry(user, chat, None), "half an ans", partial=True))
        assert outcome.saved
        assert outcome.title is None
        assert db.query(UsageCostRecord).one().is_partial is True
