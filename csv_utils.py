import csv
import re
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Sequence

from config import get_settings
from models import Expense, ExpenseType
from recurrence import describe, monthly_amount


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
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def _strip_separators(clean: str) -> str:
    # Pesos are written "1.200.000,50"; a lone "." or "," followed by exactly
    # three digits is a thousands separator.
    if "," in clean and "." in clean:
        if clean.rfind(",") > clean.rfind("."):
            return clean.replace(".", "").replace(",", ".")
        return clean.replace(",", "")
    for sep in (",", "."):
        if sep in clean:
            parts = clean.split(sep)
            if len(parts) > 2 or len(parts[-1]) == 3:
                return clean.replace(sep, "")
            return clean.replace(sep, ".")
    return clean


def parse_amount(value: str, *, allow_negative: bool = False) -> Decimal:
    clean = (
        value.strip()
        .upper()
        .replace(get_settings().currency_code, "")
        .replace("$", "")
        .replace(" ", "")
        .replace("\u00a0", "")
    )
    if not clean:
        raise ValueError("Invalid amount")
    try:
        amount = Decimal(_strip_separators(clean))
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    if amount < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return amount.quantize(Decimal("0.01"))


def export_expenses(expenses: Sequence[Expense], *, month: str) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(
        [
            "Date",
            "Type",
            "Amount",
            "Category",
            "PaymentMethod",
            "Frequency",
            "MonthlyAmount",
            "Description",
        ]
    )
    for expense in expenses:
        record = expense.to_record()
        if expense.type in (ExpenseType.recurring, ExpenseType.recurring_template):
            frequency = describe(record)
            month_total = str(monthly_amount(record, month))
        else:
            frequency = ""
            month_total = ""
        writer.writerow(
            [
                expense.date.isoformat() if expense.date else "",
                expense.type.value,
                f"{expense.amount:.2f}",
                sanitize_csv_value(expense.category or ""),
                sanitize_csv_value(expense.payment_method or ""),
                frequency,
                month_total,
                sanitize_csv_value(expense.description or ""),
            ]
        )
    return output.getvalue()
