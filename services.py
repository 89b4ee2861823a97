from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Iterator, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import cents_to_amount, export_transactions, format_money, to_cents
from errors import FinanceError, ServiceError, StoreError, TransactionNotFound
from flows import FinanceAI
from models import (
    BalanceEntry,
    EntryKind,
    Insight,
    Profile,
    Transaction,
    TransactionType,
)
from periods import Period
from schemas import (
    AnswerOut,
    AskIn,
    BulkCategorizeIn,
    BulkCommitIn,
    CategorizedTransaction,
    CategorizeIn,
    ManualTransactionIn,
    NewTransactionIn,
    ProfileUpdateIn,
    TransactionUpdateIn,
)
from timezones import format_in_timezone, isoformat_utc, local_date, now_in, to_utc_naive

logger = logging.getLogger(__name__)


@contextmanager
def atomic(session: Session, action: str) -> Iterator[None]:
    """Commit everything done in the block as one database transaction.

    Store failures roll the whole block back and surface as ``StoreError``;
    any other exception also rolls back and propagates unchanged.
    """
    try:
        yield
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"store_failure: action={action!r} error={exc}")
        raise StoreError(f"Error {action}: the change was not saved.") from exc
    except Exception:
        session.rollback()
        raise


def new_operation_id(prefix: str) -> str:
    return f"{prefix}:{uuid.uuid4().hex}"


def serialize_transaction(
    txn: Transaction, tz: Optional[str] = None
) -> dict[str, object]:
    return {
        "id": txn.id,
        "date": isoformat_utc(txn.occurred_at),
        "display_date": format_in_timezone(txn.occurred_at, tz, "PP"),
        "description": txn.description,
        "amount": cents_to_amount(txn.amount_cents),
        "category": txn.category,
        "type": txn.type.value,
        "is_income": txn.type == TransactionType.income,
    }


def serialize_insight(insight: Insight) -> dict[str, object]:
    return {
        "id": insight.id,
        "created_at": isoformat_utc(insight.created_at),
        "summary": insight.summary,
        "detailed_analysis": insight.detailed_analysis,
    }


@dataclass
class MutationResult:
    message: str
    balance_cents: int
    transaction: Optional[Transaction] = None
    replayed: bool = False


@dataclass
class BulkImportResult:
    added: int
    skipped: int
    balance_cents: int
    message: str


@dataclass(frozen=True)
class BalanceReport:
    user_id: str
    cached_cents: int
    ledger_cents: int

    @property
    def drift_cents(self) -> int:
        return self.cached_cents - self.ledger_cents

    @property
    def is_consistent(self) -> bool:
        return self.drift_cents == 0


@dataclass
class InsightFeed:
    state: str
    insights: list[dict[str, object]] = field(default_factory=list)


class ProfileService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> Optional[Profile]:
        return self.session.get(Profile, self.user_id)

    def get_or_create(self) -> Profile:
        profile = self.get()
        if profile is None:
            profile = Profile(id=self.user_id, balance_cents=0)
            self.session.add(profile)
            self.session.flush()
            logger.info(f"profile_created: user={self.user_id}")
        return profile

    def timezone(self) -> str:
        profile = self.get()
        if profile is not None and profile.timezone:
            return profile.timezone
        return get_settings().timezone

    def update(self, data: ProfileUpdateIn) -> Profile:
        with atomic(self.session, "updating profile"):
            profile = self.get_or_create()
            if data.display_name is not None:
                profile.display_name = data.display_name.strip()
            if data.photo_url:
                profile.photo_url = data.photo_url
            if data.timezone is not None:
                profile.timezone = data.timezone
            if data.balance is not None:
                BalanceLedger(self.session, self.user_id).set_balance(
                    to_cents(data.balance)
                )
        self.session.refresh(profile)
        return profile


class BalanceLedger:
    """Append-only balance deltas plus the cached balance on the profile.

    Methods here only stage writes; the calling service owns the commit so
    that the ledger entry, the cached balance and any transaction rows land
    in the same database transaction.
    """

    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def find(self, operation_id: str) -> Optional[BalanceEntry]:
        return self.session.scalar(
            select(BalanceEntry).where(
                BalanceEntry.user_id == self.user_id,
                BalanceEntry.operation_id == operation_id,
            )
        )

    def append(
        self,
        kind: EntryKind,
        delta_cents: int,
        *,
        operation_id: Optional[str] = None,
        transaction_id: Optional[int] = None,
    ) -> BalanceEntry:
        entry = BalanceEntry(
            user_id=self.user_id,
            operation_id=operation_id or new_operation_id(kind.value),
            transaction_id=transaction_id,
            kind=kind,
            delta_cents=delta_cents,
        )
        self.session.add(entry)
        return entry

    def apply(self, delta_cents: int) -> None:
        if not delta_cents:
            return
        self.session.flush()
        # In-database increment: concurrent writers cannot lose each other's delta.
        self.session.execute(
            update(Profile)
            .where(Profile.id == self.user_id)
            .values(balance_cents=Profile.balance_cents + delta_cents)
            .execution_options(synchronize_session=False)
        )

    def record(
        self,
        kind: EntryKind,
        delta_cents: int,
        *,
        operation_id: Optional[str] = None,
        transaction_id: Optional[int] = None,
    ) -> BalanceEntry:
        entry = self.append(
            kind,
            delta_cents,
            operation_id=operation_id,
            transaction_id=transaction_id,
        )
        self.apply(delta_cents)
        return entry

    def set_balance(self, target_cents: int) -> None:
        delta = target_cents - self.current_balance()
        if delta:
            self.record(EntryKind.adjustment, delta)

    def current_balance(self) -> int:
        value = self.session.scalar(
            select(Profile.balance_cents).where(Profile.id == self.user_id)
        )
        return int(value or 0)

    def fold(self) -> int:
        value = self.session.scalar(
            select(func.coalesce(func.sum(BalanceEntry.delta_cents), 0)).where(
                BalanceEntry.user_id == self.user_id
            )
        )
        return int(value or 0)

    def verify(self) -> BalanceReport:
        report = BalanceReport(
            user_id=self.user_id,
            cached_cents=self.current_balance(),
            ledger_cents=self.fold(),
        )
        if not report.is_consistent:
            logger.warning(
                f"balance_drift: user={self.user_id} cached={report.cached_cents} "
                f"ledger={report.ledger_cents} drift={report.drift_cents}"
            )
        return report

    def repair(self) -> BalanceReport:
        before = self.verify()
        if before.is_consistent:
            return before
        with atomic(self.session, "repairing balance"):
            self.session.execute(
                update(Profile)
                .where(Profile.id == self.user_id)
                .values(balance_cents=before.ledger_cents)
                .execution_options(synchronize_session=False)
            )
        logger.info(
            f"balance_repaired: user={self.user_id} from={before.cached_cents} "
            f"to={before.ledger_cents}"
        )
        return self.verify()


def audit_balances(session: Session, *, repair: bool = False) -> list[BalanceReport]:
    reports: list[BalanceReport] = []
    for user_id in session.scalars(select(Profile.id).order_by(Profile.id)).all():
        ledger = BalanceLedger(session, user_id)
        report = ledger.repair() if repair else ledger.verify()
        reports.append(report)
    drifted = sum(1 for r in reports if not r.is_consistent)
    logger.info(f"balance_audit: profiles={len(reports)} drifted={drifted} repair={repair}")
    return reports


class TransactionService:
    def __init__(
        self, session: Session, user_id: str, ai: Optional[FinanceAI] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.ai = ai or FinanceAI()
        self.profiles = ProfileService(session, user_id)
        self.ledger = BalanceLedger(session, user_id)
        self.symbol = get_settings().currency_symbol

    def count(self) -> int:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.user_id == self.user_id
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def list(self, limit: Optional[int] = None) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt).all())

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not txn:
            raise TransactionNotFound("Transaction not found")
        return txn

    def _replay(self, entry: BalanceEntry) -> MutationResult:
        txn = (
            self.session.get(Transaction, entry.transaction_id)
            if entry.transaction_id is not None
            else None
        )
        balance = self.ledger.current_balance()
        logger.info(
            f"operation_replayed: user={self.user_id} operation={entry.operation_id}"
        )
        return MutationResult(
            message=(
                "This transaction was already recorded. "
                f"Your balance is {format_money(balance, self.symbol)}."
            ),
            balance_cents=balance,
            transaction=txn,
            replayed=True,
        )

    def stage_row(
        self,
        *,
        txn_type: TransactionType,
        amount_cents: int,
        description: str,
        category: str,
        occurred_at: datetime,
        tz: str,
        client_id: Optional[str] = None,
    ) -> Transaction:
        txn = Transaction(
            user_id=self.user_id,
            occurred_at=to_utc_naive(occurred_at, tz),
            type=txn_type,
            amount_cents=amount_cents,
            description=description,
            category=category,
            client_id=client_id,
        )
        self.session.add(txn)
        self.session.flush()
        return txn

    def apply_new(self, data: NewTransactionIn) -> MutationResult:
        """Apply one categorized transaction.

        Income only moves the balance; it is not kept as a line item. Expenses
        are written as a transaction row. Either way the ledger entry, the row
        and the cached balance commit together.
        """
        tz = self.profiles.timezone()
        amount_cents = to_cents(data.amount)
        txn: Optional[Transaction] = None
        with atomic(self.session, "adding transaction"):
            self.profiles.get_or_create()
            if data.operation_id:
                existing = self.ledger.find(data.operation_id)
                if existing is not None:
                    return self._replay(existing)
            if data.is_income:
                self.ledger.record(
                    EntryKind.income, amount_cents, operation_id=data.operation_id
                )
            else:
                txn = self.stage_row(
                    txn_type=TransactionType.expense,
                    amount_cents=amount_cents,
                    description=data.description,
                    category=data.category,
                    occurred_at=data.date,
                    tz=tz,
                )
                self.ledger.record(
                    EntryKind.expense,
                    -amount_cents,
                    operation_id=data.operation_id,
                    transaction_id=txn.id,
                )

        balance = self.ledger.current_balance()
        amount_text = format_money(amount_cents, self.symbol)
        balance_text = format_money(balance, self.symbol)
        if data.is_income:
            message = (
                f"Income of {amount_text} detected. "
                f"Your balance has been updated to {balance_text}."
            )
        else:
            message = f"Expense of {amount_text} added. Your new balance is {balance_text}."
        logger.info(
            f"transaction_applied: user={self.user_id} income={data.is_income} "
            f"amount_cents={amount_cents} balance_cents={balance}"
        )
        return MutationResult(message=message, balance_cents=balance, transaction=txn)

    def apply_manual(self, data: ManualTransactionIn) -> MutationResult:
        tz = self.profiles.timezone()
        amount_cents = to_cents(data.amount)
        with atomic(self.session, "adding transaction"):
            self.profiles.get_or_create()
            if data.operation_id:
                existing = self.ledger.find(data.operation_id)
                if existing is not None:
                    return self._replay(existing)
            txn = self.stage_row(
                txn_type=TransactionType.expense,
                amount_cents=amount_cents,
                description=data.description,
                category=data.category,
                occurred_at=data.date,
                tz=tz,
            )
            self.ledger.record(
                EntryKind.expense,
                -amount_cents,
                operation_id=data.operation_id,
                transaction_id=txn.id,
            )
        balance = self.ledger.current_balance()
        logger.info(
            f"manual_transaction_added: user={self.user_id} txn={txn.id} "
            f"amount_cents={amount_cents} balance_cents={balance}"
        )
        return MutationResult(
            message=(
                "Transaction added successfully. "
                f"Your new balance is {format_money(balance, self.symbol)}."
            ),
            balance_cents=balance,
            transaction=txn,
        )

    def categorize_and_apply(
        self, data: CategorizeIn
    ) -> tuple[CategorizedTransaction, MutationResult]:
        guess = self.ai.categorize_transaction(
            data.text.strip(), timezone=self.profiles.timezone()
        )
        try:
            fields = NewTransactionIn(
                is_income=guess.is_income,
                amount=guess.amount,
                description=guess.description,
                category=guess.category,
                date=guess.date,
                operation_id=data.operation_id,
            )
        except PydanticValidationError as exc:
            logger.error(
                f"categorized_transaction_invalid: user={self.user_id} errors={exc.error_count()}"
            )
            raise ServiceError(
                "The AI service returned a transaction that could not be recorded."
            ) from exc
        return guess, self.apply_new(fields)

    def update(self, transaction_id: int, data: TransactionUpdateIn) -> MutationResult:
        tz = self.profiles.timezone()
        with atomic(self.session, "updating transaction"):
            txn = self.get(transaction_id)
            old_signed = txn.signed_cents
            txn.description = data.description
            txn.category = data.category
            txn.amount_cents = to_cents(data.amount)
            txn.occurred_at = to_utc_naive(data.date, tz)
            if data.is_income is not None:
                txn.type = (
                    TransactionType.income if data.is_income else TransactionType.expense
                )
            delta = txn.signed_cents - old_signed
            if delta:
                self.ledger.record(EntryKind.edit, delta, transaction_id=txn.id)
        self.session.refresh(txn)
        balance = self.ledger.current_balance()
        logger.info(
            f"transaction_updated: user={self.user_id} txn={txn.id} delta_cents={delta}"
        )
        return MutationResult(
            message="Transaction updated successfully.",
            balance_cents=balance,
            transaction=txn,
        )

    def delete(self, transaction_id: int) -> MutationResult:
        with atomic(self.session, "deleting transaction"):
            txn = self.get(transaction_id)
            delta = -txn.signed_cents
            self.session.delete(txn)
            self.ledger.record(EntryKind.delete, delta, transaction_id=transaction_id)
        balance = self.ledger.current_balance()
        logger.info(
            f"transaction_deleted: user={self.user_id} txn={transaction_id} delta_cents={delta}"
        )
        return MutationResult(message="Transaction deleted.", balance_cents=balance)

    def export_csv(self) -> str:
        return export_transactions(
            list(reversed(self.list())), timezone=self.profiles.timezone()
        )


class BulkImportService:
    def __init__(
        self, session: Session, user_id: str, ai: Optional[FinanceAI] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.ai = ai or FinanceAI()
        self.profiles = ProfileService(session, user_id)
        self.ledger = BalanceLedger(session, user_id)
        self.symbol = get_settings().currency_symbol

    def preview(self, data: BulkCategorizeIn) -> list[CategorizedTransaction]:
        return self.ai.bulk_categorize(data.text, timezone=self.profiles.timezone())

    def commit(self, data: BulkCommitIn) -> BulkImportResult:
        """Write every item and move the balance once, all in one commit.

        Items carrying a ``client_id`` that was already imported are skipped,
        so retrying a batch is safe. Items without one are always written.
        """
        tz = self.profiles.timezone()
        txns = TransactionService(self.session, self.user_id, ai=self.ai)
        added = 0
        skipped = 0
        total_income = 0
        total_expense = 0
        with atomic(self.session, "importing transactions"):
            self.profiles.get_or_create()
            seen: set[str] = set()
            for item in data.transactions:
                operation_id: Optional[str] = None
                if item.client_id:
                    operation_id = f"import:{item.client_id}"
                    if item.client_id in seen or self.ledger.find(operation_id):
                        skipped += 1
                        continue
                    seen.add(item.client_id)
                amount_cents = to_cents(item.amount)
                txn = txns.stage_row(
                    txn_type=(
                        TransactionType.income
                        if item.is_income
                        else TransactionType.expense
                    ),
                    amount_cents=amount_cents,
                    description=item.description,
                    category=item.category,
                    occurred_at=item.date,
                    tz=tz,
                    client_id=item.client_id,
                )
                self.ledger.append(
                    EntryKind.import_,
                    txn.signed_cents,
                    operation_id=operation_id,
                    transaction_id=txn.id,
                )
                if item.is_income:
                    total_income += amount_cents
                else:
                    total_expense += amount_cents
                added += 1
            self.ledger.apply(total_income - total_expense)

        balance = self.ledger.current_balance()
        logger.info(
            f"bulk_import: user={self.user_id} added={added} skipped={skipped} "
            f"income_cents={total_income} expense_cents={total_expense} "
            f"balance_cents={balance}"
        )
        message = f"{added} transactions added successfully."
        if skipped:
            message += f" {skipped} already imported."
        return BulkImportResult(
            added=added, skipped=skipped, balance_cents=balance, message=message
        )


def _prompt_transaction(txn: Transaction, tz: str) -> dict[str, object]:
    return {
        "date": local_date(txn.occurred_at, tz).isoformat(),
        "description": txn.description,
        "category": txn.category,
        "type": txn.type.value,
        "amount": txn.amount_cents / 100,
    }


def _prompt_insight(insight: Insight) -> dict[str, object]:
    return {
        "created_at": isoformat_utc(insight.created_at),
        "summary": insight.summary,
        "detailed_analysis": insight.detailed_analysis,
    }


class InsightService:
    PLACEHOLDER_SUMMARY = "Not enough data to generate insights."
    ERROR_SUMMARY = "Error generating insights."

    def __init__(
        self, session: Session, user_id: str, ai: Optional[FinanceAI] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.ai = ai or FinanceAI()
        self.profiles = ProfileService(session, user_id)
        settings = get_settings()
        self.retention = settings.insight_retention
        self.min_transactions = settings.insight_min_transactions

    def list(self) -> list[Insight]:
        stmt = (
            select(Insight)
            .where(Insight.user_id == self.user_id)
            .order_by(Insight.created_at.desc(), Insight.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def _synthetic(self, ident: str, summary: str, detail: str, now: datetime) -> dict[str, object]:
        return {
            "id": ident,
            "created_at": isoformat_utc(now),
            "summary": summary,
            "detailed_analysis": detail,
        }

    def evaluate(self, now: Optional[datetime] = None) -> InsightFeed:
        """Return the insights to show, generating today's one if it is due.

        "Today" is the calendar day in the user's timezone.
        """
        moment = now or datetime.now(timezone.utc)
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        now_utc = moment.astimezone(timezone.utc).replace(tzinfo=None)

        txns = TransactionService(self.session, self.user_id, ai=self.ai)
        transactions = txns.list()
        if len(transactions) < self.min_transactions:
            return InsightFeed(
                state="no_history",
                insights=[
                    self._synthetic(
                        "placeholder",
                        self.PLACEHOLDER_SUMMARY,
                        f"You need at least {self.min_transactions} transactions to get "
                        "your first personalized insight. Keep adding your expenses!",
                        now_utc,
                    )
                ],
            )

        tz = self.profiles.timezone()
        existing = self.list()
        today = now_in(tz, now=moment).date()
        if existing and local_date(existing[0].created_at, tz) >= today:
            return InsightFeed(
                state="up_to_date", insights=[serialize_insight(i) for i in existing]
            )

        try:
            generated = self.ai.generate_insights(
                [_prompt_transaction(t, tz) for t in transactions],
                [_prompt_insight(i) for i in existing[: self.retention]],
            )
            with atomic(self.session, "saving insight"):
                self.profiles.get_or_create()
                self.session.add(
                    Insight(
                        user_id=self.user_id,
                        created_at=now_utc,
                        summary=generated.summary,
                        detailed_analysis=generated.detailed_analysis,
                    )
                )
                self.session.flush()
                pruned = self._prune()
        except FinanceError as exc:
            logger.error(f"insight_generation_failed: user={self.user_id} error={exc}")
            return InsightFeed(
                state="error",
                insights=[
                    self._synthetic(
                        "error",
                        self.ERROR_SUMMARY,
                        "We couldn't generate your insights at this time. "
                        "Please try again later.",
                        now_utc,
                    )
                ],
            )

        logger.info(f"insight_generated: user={self.user_id} pruned={pruned}")
        return InsightFeed(
            state="generated", insights=[serialize_insight(i) for i in self.list()]
        )

    def _prune(self) -> int:
        stored = list(
            self.session.scalars(
                select(Insight)
                .where(Insight.user_id == self.user_id)
                .order_by(Insight.created_at.asc(), Insight.id.asc())
            ).all()
        )
        excess = len(stored) - self.retention
        for insight in stored[: max(excess, 0)]:
            self.session.delete(insight)
        return max(excess, 0)


class AssistantService:
    def __init__(
        self, session: Session, user_id: str, ai: Optional[FinanceAI] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.ai = ai or FinanceAI()

    def ask(self, data: AskIn) -> AnswerOut:
        tz = ProfileService(self.session, self.user_id).timezone()
        transactions = TransactionService(self.session, self.user_id, ai=self.ai).list()
        insights = InsightService(self.session, self.user_id, ai=self.ai).list()
        return self.ai.ask_question(
            data.question.strip(),
            [_prompt_transaction(t, tz) for t in transactions],
            [_prompt_insight(i) for i in insights],
        )


class MetricsService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.profiles = ProfileService(session, user_id)

    def today(self, now: Optional[datetime] = None) -> date:
        return now_in(self.profiles.timezone(), now=now).date()

    def kpis(self, period: Period) -> dict[str, int]:
        start, end = period.utc_bounds(self.profiles.timezone())
        stmt = select(
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.income,
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("income"),
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.expense,
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("expenses"),
            func.count(Transaction.id).label("count"),
        ).where(
            Transaction.user_id == self.user_id,
            Transaction.occurred_at >= start,
            Transaction.occurred_at < end,
        )
        row = self.session.execute(stmt).one()
        income = int(row.income)
        expenses = int(row.expenses)
        return {
            "income": income,
            "expenses": expenses,
            "net": income - expenses,
            "transaction_count": int(row.count),
            "balance": BalanceLedger(self.session, self.user_id).current_balance(),
        }

    def category_breakdown(self, period: Period) -> list[dict[str, object]]:
        start, end = period.utc_bounds(self.profiles.timezone())
        total_col = func.sum(Transaction.amount_cents).label("total")
        stmt = (
            select(Transaction.category, total_col)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.occurred_at >= start,
                Transaction.occurred_at < end,
            )
            .group_by(Transaction.category)
            .order_by(total_col.desc(), Transaction.category.asc())
        )
        rows = self.session.execute(stmt).all()
        grand_total = sum(int(r.total) for r in rows)
        return [
            {
                "category": r.category,
                "amount_cents": int(r.total),
                "share": (int(r.total) / grand_total) if grand_total else 0.0,
            }
            for r in rows
        ]
