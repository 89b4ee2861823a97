from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import StoreError
from models import Transaction, TransactionType
from schemas import BulkCommitIn, BulkTransactionIn, ProfileUpdateIn
from services import BalanceLedger, BulkImportService, ProfileService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def item(description: str, amount: str, *, is_income: bool = False, client_id=None):
    return BulkTransactionIn(
        description=description,
        amount=Decimal(amount),
        date="2025-08-05",
        category="Salary" if is_income else "Groceries",
        is_income=is_income,
        client_id=client_id,
    )


def stored(session, user_id: str = "u1") -> list[Transaction]:
    return list(
        session.scalars(
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.id)
        ).all()
    )


def test_commit_writes_every_item_and_moves_balance_once() -> None:
    session = make_session()
    ProfileService(session, "u1").update(ProfileUpdateIn(balance=Decimal("100")))

    result = BulkImportService(session, "u1").commit(
        BulkCommitIn(
            transactions=[
                item("Paycheck", "2000", is_income=True),
                item("Veggies", "12.50"),
                item("Milk", "3.25"),
            ]
        )
    )

    assert result.added == 3
    assert result.skipped == 0
    assert result.message == "3 transactions added successfully."
    rows = stored(session)
    assert [r.description for r in rows] == ["Paycheck", "Veggies", "Milk"]
    # Unlike the single-item path, imported income is kept as a row.
    assert rows[0].type == TransactionType.income
    expected = 10_000 + 200_000 - 1_250 - 325
    assert result.balance_cents == expected
    assert BalanceLedger(session, "u1").verify().is_consistent


def test_resubmitting_with_client_ids_is_a_no_op() -> None:
    session = make_session()
    service = BulkImportService(session, "u1")
    batch = BulkCommitIn(
        transactions=[
            item("Veggies", "12.50", client_id="row-1"),
            item("Milk", "3.25", client_id="row-2"),
        ]
    )

    service.commit(batch)
    again = service.commit(batch)

    assert again.added == 0
    assert again.skipped == 2
    assert again.message == "0 transactions added successfully. 2 already imported."
    assert len(stored(session)) == 2
    assert BalanceLedger(session, "u1").current_balance() == -1_575


def test_duplicate_client_id_within_one_batch_is_written_once() -> None:
    session = make_session()

    result = BulkImportService(session, "u1").commit(
        BulkCommitIn(
            transactions=[
                item("Veggies", "12.50", client_id="row-1"),
                item("Veggies", "12.50", client_id="row-1"),
            ]
        )
    )

    assert (result.added, result.skipped) == (1, 1)
    assert len(stored(session)) == 1


def test_items_without_client_id_duplicate_on_resubmit() -> None:
    session = make_session()
    service = BulkImportService(session, "u1")
    batch = BulkCommitIn(transactions=[item("Veggies", "12.50")])

    service.commit(batch)
    service.commit(batch)

    assert len(stored(session)) == 2
    assert BalanceLedger(session, "u1").current_balance() == -2_500


def test_failure_mid_import_writes_nothing_and_retry_applies_once(monkeypatch) -> None:
    session = make_session()
    ProfileService(session, "u1").update(ProfileUpdateIn(balance=Decimal("100")))
    service = BulkImportService(session, "u1")
    batch = BulkCommitIn(
        transactions=[
            item("Veggies", "12.50", client_id="row-1"),
            item("Broken row", "7", client_id="row-2"),
            item("Milk", "3.25", client_id="row-3"),
        ]
    )

    real_flush = session.flush

    def flaky_flush(*args, **kwargs):
        if any(
            isinstance(obj, Transaction) and obj.description == "Broken row"
            for obj in session.new
        ):
            raise OperationalError("INSERT INTO transactions", {}, Exception("disk I/O error"))
        return real_flush(*args, **kwargs)

    monkeypatch.setattr(session, "flush", flaky_flush)
    with pytest.raises(StoreError):
        service.commit(batch)
    monkeypatch.undo()

    assert stored(session) == []
    assert BalanceLedger(session, "u1").current_balance() == 10_000

    result = service.commit(batch)

    assert result.added == 3
    assert session.scalar(select(func.count(Transaction.id))) == 3
    assert result.balance_cents == 10_000 - 1_250 - 700 - 325
    assert BalanceLedger(session, "u1").verify().is_consistent
