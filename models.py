from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from timezones import utcnow


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class EntryKind(str, Enum):
    income = "income"
    expense = "expense"
    edit = "edit"
    delete = "delete"
    import_ = "import"
    adjustment = "adjustment"


ENTRY_KIND_ENUM = SAEnum(
    EntryKind,
    name="entrykind",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Profile(Base, TimestampMixin):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(50))
    photo_url: Mapped[Optional[str]] = mapped_column(Text)
    timezone: Mapped[Optional[str]] = mapped_column(String(64))
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="profile"
    )
    insights: Mapped[list["Insight"]] = relationship(
        "Insight", back_populates="profile"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    client_id: Mapped[Optional[str]] = mapped_column(String(128))

    profile: Mapped["Profile"] = relationship("Profile", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint("user_id", "client_id", name="uq_txn_user_client_id"),
        Index("ix_transactions_user_occurred", "user_id", "occurred_at"),
        Index("ix_transactions_user_type_occurred", "user_id", "type", "occurred_at"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )

    @property
    def signed_cents(self) -> int:
        if self.type == TransactionType.income:
            return self.amount_cents
        return -self.amount_cents


class BalanceEntry(Base):
    __tablename__ = "balance_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    operation_id: Mapped[str] = mapped_column(String(160), nullable=False)
    # Not a foreign key: entries outlive deleted transactions.
    transaction_id: Mapped[Optional[int]] = mapped_column(Integer)
    kind: Mapped[EntryKind] = mapped_column(ENTRY_KIND_ENUM, nullable=False)
    delta_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "operation_id", name="uq_entry_user_operation"),
        Index("ix_balance_entries_user_txn", "user_id", "transaction_id"),
    )


class Insight(Base):
    __tablename__ = "insights"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    detailed_analysis: Mapped[str] = mapped_column(Text, nullable=False)

    profile: Mapped["Profile"] = relationship("Profile", back_populates="insights")

    __table_args__ = (Index("ix_insights_user_created", "user_id", "created_at"),)
