from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from timezones import is_valid_timezone

CATEGORY_SUGGESTIONS: list[str] = [
    "Food & Dining",
    "Groceries",
    "Transportation",
    "Shopping",
    "Entertainment",
    "Utilities",
    "Rent",
    "Health & Fitness",
    "Travel",
    "Education",
    "Subscriptions",
    "Bills",
    "Salary",
    "Freelance",
    "Other",
]


def _coerce_datetime(value: object) -> object:
    if isinstance(value, str):
        raw = value.strip()
        if len(raw) == 10:
            return datetime.combine(date.fromisoformat(raw), time(0, 0))
        if raw.endswith("Z"):
            return raw[:-1] + "+00:00"
        return raw
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time(0, 0))
    return value


# Bulk import keys its ledger entries as "import:<client_id>".
IMPORT_OPERATION_PREFIX = "import:"


def _check_operation_id(value: Optional[str]) -> Optional[str]:
    if value is not None and value.startswith(IMPORT_OPERATION_PREFIX):
        raise ValueError(
            f"operation_id must not start with {IMPORT_OPERATION_PREFIX!r}"
        )
    return value


class TransactionFields(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    date: datetime
    category: str = Field(..., min_length=1, max_length=100)

    @field_validator("description", "category", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value: object) -> object:
        return _coerce_datetime(value)


class ManualTransactionIn(TransactionFields):
    operation_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("operation_id")
    @classmethod
    def _reserved_prefix(cls, value: Optional[str]) -> Optional[str]:
        return _check_operation_id(value)


class NewTransactionIn(TransactionFields):
    is_income: bool
    operation_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("operation_id")
    @classmethod
    def _reserved_prefix(cls, value: Optional[str]) -> Optional[str]:
        return _check_operation_id(value)


class TransactionUpdateIn(TransactionFields):
    is_income: Optional[bool] = None


class BulkTransactionIn(TransactionFields):
    is_income: bool
    client_id: Optional[str] = Field(default=None, min_length=1, max_length=128)


class BulkCommitIn(BaseModel):
    transactions: list[BulkTransactionIn] = Field(..., min_length=1)


class CategorizeIn(BaseModel):
    text: str = Field(..., min_length=5)
    operation_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("operation_id")
    @classmethod
    def _reserved_prefix(cls, value: Optional[str]) -> Optional[str]:
        return _check_operation_id(value)


class BulkCategorizeIn(BaseModel):
    # The upper bound is enforced by the service so that it can be reported
    # as an oversized input rather than a field error.
    text: str = Field(..., min_length=10)


class AskIn(BaseModel):
    question: str = Field(..., min_length=1, max_length=2000)


class ProfileUpdateIn(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    photo_url: Optional[str] = None
    timezone: Optional[str] = None
    balance: Optional[Decimal] = Field(default=None, max_digits=14, decimal_places=2)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not is_valid_timezone(value):
            raise ValueError(f"Unknown timezone: {value}")
        return value


class CategorizedTransaction(BaseModel):
    """Structured transaction guess returned by the categorization model."""

    model_config = ConfigDict(populate_by_name=True)

    is_income: bool = Field(..., alias="isIncome")
    category: str = Field(..., min_length=1)
    amount: Decimal = Field(..., ge=0)
    date: datetime
    description: str = Field(..., min_length=1)

    @field_validator("amount", mode="before")
    @classmethod
    def _magnitude(cls, value: object) -> object:
        # Some model outputs sign expenses negatively; the flag carries direction.
        if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
            return value
        try:
            amount = Decimal(str(value).strip())
            if not amount.is_finite():
                return value
            return abs(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        except InvalidOperation:
            return value

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value: object) -> object:
        return _coerce_datetime(value)


class BulkCategorizeOut(BaseModel):
    transactions: list[CategorizedTransaction] = Field(default_factory=list)


class GeneratedInsight(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    summary: str = Field(..., min_length=1)
    detailed_analysis: str = Field(..., min_length=1, alias="detailedAnalysis")


class AnswerOut(BaseModel):
    answer: str
