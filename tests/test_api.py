import pytest
from fastapi.testclient import TestClient
from openai import OpenAIError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db
from flows import FinanceAI
from llm import LLMClient
from main import app, get_ai
from openai_stub import OpenAIStub, reply


@pytest.fixture
def stub() -> OpenAIStub:
    return OpenAIStub()


@pytest.fixture
def client(stub: OpenAIStub):
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_ai] = lambda: FinanceAI(llm=LLMClient(client=stub))
    # Not used as a context manager so the audit scheduler stays off.
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_apply_expense_returns_message_and_balance(client) -> None:
    client.post("/api/users/u1/profile", json={"balance": "1000"})

    res = client.post(
        "/api/users/u1/transactions/apply",
        json={
            "is_income": False,
            "amount": "50",
            "description": "Coffee",
            "category": "Food & Dining",
            "date": "2025-08-11",
        },
    )

    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["message"] == "Expense of ₹50.00 added. Your new balance is ₹950.00."
    assert body["balance"] == 950.0
    assert body["transaction"]["description"] == "Coffee"
    assert body["transaction"]["is_income"] is False

    listing = client.get("/api/users/u1/transactions").json()
    assert [t["description"] for t in listing["items"]] == ["Coffee"]


def test_invalid_payload_is_a_400_with_field_errors(client) -> None:
    res = client.post(
        "/api/users/u1/transactions",
        json={"description": "", "amount": "-5", "date": "2025-08-11", "category": "Other"},
    )

    assert res.status_code == 400
    body = res.json()
    assert body["success"] is False
    assert body["message"] == "Invalid data provided."
    assert "description" in body["field_errors"]
    assert "amount" in body["field_errors"]


def test_categorize_applies_the_models_guess(client, stub) -> None:
    stub.queue(
        reply(
            {
                "isIncome": True,
                "category": "Salary",
                "amount": 50000,
                "date": "2025-08-01",
                "description": "August salary",
            }
        )
    )

    res = client.post(
        "/api/users/u1/transactions/categorize",
        json={"text": "Got my salary of 50000", "operation_id": "cat-1"},
    )

    body = res.json()
    assert res.status_code == 200
    assert body["message"] == (
        "Income of ₹50000.00 detected. Your balance has been updated to ₹50000.00."
    )
    assert body["categorized"]["isIncome"] is True
    assert body["transaction"] is None


def test_short_categorize_text_is_rejected(client, stub) -> None:
    res = client.post("/api/users/u1/transactions/categorize", json={"text": "hi"})

    assert res.status_code == 400
    assert stub.calls == []


def test_model_failure_is_a_502(client, stub) -> None:
    stub.queue(OpenAIError("upstream down"))

    res = client.post(
        "/api/users/u1/transactions/categorize", json={"text": "Coffee 50 today"}
    )

    assert res.status_code == 502
    assert res.json()["success"] is False
    assert client.get("/api/users/u1/transactions").json()["items"] == []


def test_unknown_transaction_is_a_404(client) -> None:
    res = client.delete("/api/users/u1/transactions/999")

    assert res.status_code == 404
    assert res.json() == {"success": False, "message": "Transaction not found"}


def test_oversized_bulk_text_is_a_413(client, stub) -> None:
    res = client.post(
        "/api/users/u1/transactions/bulk/preview", json={"text": "x" * 100_001}
    )

    assert res.status_code == 413
    assert res.json()["message"] == (
        "The provided text is too long. Please shorten it and try again."
    )
    assert stub.calls == []


def test_bulk_commit_and_analytics(client) -> None:
    res = client.post(
        "/api/users/u1/transactions/bulk/commit",
        json={
            "transactions": [
                {
                    "is_income": True,
                    "amount": "2000",
                    "description": "Paycheck",
                    "category": "Salary",
                    "date": "2025-08-01",
                    "client_id": "r1",
                },
                {
                    "is_income": False,
                    "amount": "150",
                    "description": "Dinner",
                    "category": "Food & Dining",
                    "date": "2025-08-05",
                    "client_id": "r2",
                },
                {
                    "is_income": False,
                    "amount": "50",
                    "description": "Bus",
                    "category": "Transportation",
                    "date": "2025-08-06",
                    "client_id": "r3",
                },
            ]
        },
    )
    assert res.status_code == 200
    assert res.json()["added"] == 3
    assert res.json()["balance"] == 1800.0

    params = {"period": "custom", "start": "2025-08-01", "end": "2025-08-31"}
    kpis = client.get("/api/users/u1/analytics/kpis", params=params).json()
    assert kpis["income"] == 2000.0
    assert kpis["expenses"] == 200.0
    assert kpis["net"] == 1800.0
    assert kpis["transaction_count"] == 3

    breakdown = client.get(
        "/api/users/u1/analytics/category-breakdown", params=params
    ).json()
    assert [row["category"] for row in breakdown["items"]] == [
        "Food & Dining",
        "Transportation",
    ]
    assert breakdown["items"][0]["share"] == pytest.approx(0.75)

    csv_text = client.get("/api/users/u1/transactions/export.csv").text
    assert csv_text.splitlines()[0] == "Date,Type,Amount,Category,Description"
    assert len(csv_text.splitlines()) == 4

    report = client.get("/api/users/u1/balance/verify").json()
    assert report["consistent"] is True


def test_unknown_period_is_a_400(client) -> None:
    res = client.get("/api/users/u1/analytics/kpis", params={"period": "fortnight"})

    assert res.status_code == 400
    assert res.json()["success"] is False


def test_insights_without_history(client, stub) -> None:
    body = client.get("/api/users/u1/insights").json()

    assert body["state"] == "no_history"
    assert body["success"] is True
    assert stub.calls == []


def test_profile_rejects_unknown_timezone(client) -> None:
    res = client.post("/api/users/u1/profile", json={"timezone": "Mars/Olympus"})

    assert res.status_code == 400
    assert "timezone" in res.json()["field_errors"]


def test_unrecordable_guess_is_a_502(client, stub) -> None:
    stub.queue(
        reply(
            {
                "isIncome": False,
                "category": "Other",
                "amount": 0,
                "date": "2025-08-01",
                "description": "Free sample",
            }
        )
    )

    res = client.post(
        "/api/users/u1/transactions/categorize", json={"text": "Got a free sample"}
    )

    assert res.status_code == 502
    assert client.get("/api/users/u1/profile").json()["profile"]["balance"] == 0.0


def test_ask_returns_the_models_answer(client, stub) -> None:
    stub.queue(reply({"answer": "Track your lunches."}))

    res = client.post("/api/users/u1/ask", json={"question": "Where can I save?"})

    assert res.status_code == 200
    assert res.json()["answer"] == "Track your lunches."


def test_transactions_carry_a_local_display_date(client) -> None:
    client.post("/api/users/u1/profile", json={"timezone": "Asia/Kolkata"})

    res = client.post(
        "/api/users/u1/transactions",
        json={
            "description": "Late dinner",
            "amount": "40",
            "date": "2025-08-10T20:00:00Z",
            "category": "Food & Dining",
        },
    )

    assert res.json()["transaction"]["display_date"] == "Aug 11, 2025"
    listing = client.get("/api/users/u1/transactions").json()
    assert listing["items"][0]["display_date"] == "Aug 11, 2025"


def test_categorized_amount_is_rounded_to_cents(client, stub) -> None:
    stub.queue(
        reply(
            {
                "isIncome": False,
                "category": "Groceries",
                "amount": 12.345,
                "date": "2025-08-01",
                "description": "Milk",
            }
        )
    )

    res = client.post(
        "/api/users/u1/transactions/categorize", json={"text": "Milk 12.345"}
    )

    assert res.status_code == 200
    assert res.json()["balance"] == -12.35
    assert res.json()["transaction"]["amount"] == 12.35


def test_import_prefix_is_reserved_for_bulk_import(client) -> None:
    res = client.post(
        "/api/users/u1/transactions/apply",
        json={
            "is_income": False,
            "amount": "5",
            "description": "Tea",
            "category": "Food & Dining",
            "date": "2025-08-01",
            "operation_id": "import:x",
        },
    )
    assert res.status_code == 400
    assert "operation_id" in res.json()["field_errors"]

    commit = client.post(
        "/api/users/u1/transactions/bulk/commit",
        json={
            "transactions": [
                {
                    "is_income": False,
                    "amount": "5",
                    "description": "Tea",
                    "category": "Food & Dining",
                    "date": "2025-08-01",
                    "client_id": "x",
                }
            ]
        },
    )
    assert commit.json()["added"] == 1


def test_main_serves_the_app_with_uvicorn(monkeypatch) -> None:
    import uvicorn

    import main

    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda *args, **kwargs: calls.append((args, kwargs)))

    main.main()

    assert calls[0][0] == ("main:app",)
    assert calls[0][1]["port"] == 8000
