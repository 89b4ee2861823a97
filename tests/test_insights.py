from datetime import datetime, timedelta, timezone
from decimal import Decimal

from openai import OpenAIError
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from flows import FinanceAI
from llm import LLMClient
from models import Insight
from openai_stub import OpenAIStub, reply
from schemas import ManualTransactionIn, ProfileUpdateIn
from services import InsightService, ProfileService, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_ai(stub: OpenAIStub) -> FinanceAI:
    return FinanceAI(llm=LLMClient(client=stub))


def add_expenses(session, count: int, user_id: str = "u1") -> None:
    txns = TransactionService(session, user_id)
    for day in range(1, count + 1):
        txns.apply_manual(
            ManualTransactionIn(
                description=f"Lunch {day}",
                amount=Decimal("12"),
                date=f"2025-08-{day:02d}",
                category="Food & Dining",
            )
        )


def insight_reply(summary: str = "Dining is up."):
    return reply({"summary": summary, "detailedAnalysis": "You spent more on lunch."})


def stored_count(session) -> int:
    return session.scalar(select(func.count(Insight.id)))


def test_too_little_history_returns_placeholder_without_calling_model() -> None:
    session = make_session()
    add_expenses(session, 4)
    stub = OpenAIStub()

    feed = InsightService(session, "u1", ai=make_ai(stub)).evaluate()

    assert feed.state == "no_history"
    assert feed.insights[0]["summary"] == "Not enough data to generate insights."
    assert "at least 5 transactions" in feed.insights[0]["detailed_analysis"]
    assert stub.calls == []
    assert stored_count(session) == 0


def test_first_evaluation_generates_exactly_one_insight() -> None:
    session = make_session()
    add_expenses(session, 5)
    stub = OpenAIStub([insight_reply()])
    now = datetime(2025, 8, 11, 10, 0, tzinfo=timezone.utc)

    feed = InsightService(session, "u1", ai=make_ai(stub)).evaluate(now=now)

    assert feed.state == "generated"
    assert stored_count(session) == 1
    assert feed.insights[0]["summary"] == "Dining is up."
    assert feed.insights[0]["detailed_analysis"] == "You spent more on lunch."
    prompt = stub.calls[0]["messages"][1]["content"]
    assert "Lunch 5" in prompt


def test_same_day_evaluation_is_up_to_date() -> None:
    session = make_session()
    add_expenses(session, 5)
    stub = OpenAIStub([insight_reply()])
    service = InsightService(session, "u1", ai=make_ai(stub))

    service.evaluate(now=datetime(2025, 8, 11, 8, 0, tzinfo=timezone.utc))
    feed = service.evaluate(now=datetime(2025, 8, 11, 23, 0, tzinfo=timezone.utc))

    assert feed.state == "up_to_date"
    assert len(stub.calls) == 1
    assert stored_count(session) == 1


def test_day_boundary_follows_user_timezone() -> None:
    session = make_session()
    add_expenses(session, 5)
    ProfileService(session, "u1").update(ProfileUpdateIn(timezone="Asia/Kolkata"))
    stub = OpenAIStub([insight_reply("First"), insight_reply("Second")])
    service = InsightService(session, "u1", ai=make_ai(stub))

    # 17:00 UTC is 22:30 IST on Aug 11; 19:00 UTC is 00:30 IST on Aug 12.
    service.evaluate(now=datetime(2025, 8, 11, 17, 0, tzinfo=timezone.utc))
    feed = service.evaluate(now=datetime(2025, 8, 11, 19, 0, tzinfo=timezone.utc))

    assert feed.state == "generated"
    assert [i["summary"] for i in feed.insights] == ["Second", "First"]


def test_generation_prunes_down_to_retention() -> None:
    session = make_session()
    add_expenses(session, 5)
    base = datetime(2025, 8, 1, 9, 0)
    for offset in range(8):
        session.add(
            Insight(
                user_id="u1",
                created_at=base + timedelta(days=offset),
                summary=f"Old {offset}",
                detailed_analysis="...",
            )
        )
    session.commit()
    stub = OpenAIStub([insight_reply("Fresh")])

    feed = InsightService(session, "u1", ai=make_ai(stub)).evaluate(
        now=datetime(2025, 8, 11, 9, 0, tzinfo=timezone.utc)
    )

    summaries = [i["summary"] for i in feed.insights]
    assert stored_count(session) == 7
    assert summaries[0] == "Fresh"
    assert "Old 0" not in summaries
    assert "Old 1" not in summaries
    assert summaries[-1] == "Old 2"


def test_model_failure_yields_error_feed_and_stores_nothing() -> None:
    session = make_session()
    add_expenses(session, 5)
    stub = OpenAIStub([OpenAIError("boom")])

    feed = InsightService(session, "u1", ai=make_ai(stub)).evaluate(
        now=datetime(2025, 8, 11, 9, 0, tzinfo=timezone.utc)
    )

    assert feed.state == "error"
    assert feed.insights[0]["summary"] == "Error generating insights."
    assert stored_count(session) == 0


def test_unparseable_model_output_yields_error_feed() -> None:
    session = make_session()
    add_expenses(session, 5)
    stub = OpenAIStub([reply({"headline": "missing fields"})])

    feed = InsightService(session, "u1", ai=make_ai(stub)).evaluate(
        now=datetime(2025, 8, 11, 9, 0, tzinfo=timezone.utc)
    )

    assert feed.state == "error"
    assert stored_count(session) == 0
