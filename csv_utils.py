import csv
import re
from decimal import ROUND_HALF_UP, Decimal
from io import StringIO
from typing import Optional, Sequence

from models import Transaction
from timezones import now_in, resolve_timezone


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_amount(cents: int) -> float:
    return round(cents / 100, 2)


def format_money(cents: int, symbol: str) -> str:
    sign = "-" if cents < 0 else ""
    return f"{sign}{symbol}{abs(cents) / 100:.2f}"


def export_transactions(
    transactions: Sequence[Transaction], timezone: Optional[str] = None
) -> str:
    zone = resolve_timezone(timezone)
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["Date", "Type", "Amount", "Category", "Description"])
    for txn in transactions:
        local = now_in(zone.key, now=txn.occurred_at)
        writer.writerow(
            [
                local.date().isoformat(),
                txn.type.value,
                f"{txn.amount_cents / 100:.2f}",
                sanitize_csv_value(txn.category or ""),
                sanitize_csv_value(txn.description or ""),
            ]
        )
    return output.getvalue()
