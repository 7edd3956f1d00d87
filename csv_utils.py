import csv
import re
from io import StringIO
from typing import Sequence

from models import Subscription, Transaction
from money import cents_to_amount

TRANSACTION_COLUMNS = [
    "Date",
    "Type",
    "Amount",
    "Category",
    "SubCategory",
    "Tags",
    "Payment Method",
    "Account",
    "Notes",
]

SUBSCRIPTION_COLUMNS = [
    "Name",
    "Amount",
    "Billing Cycle",
    "Next Payment Date",
    "Payment Method",
    "Active",
    "Auto Renew",
]


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


def _yes_no(flag: bool) -> str:
    return "Yes" if flag else "No"


def _amount(cents: int) -> str:
    return f"{cents_to_amount(cents):.2f}"


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(TRANSACTION_COLUMNS)
    for txn in transactions:
        writer.writerow(
            [
                txn.date.date().isoformat(),
                txn.type.value,
                _amount(txn.amount_cents),
                sanitize_csv_value(txn.category.name if txn.category else ""),
                sanitize_csv_value(txn.sub_category.name if txn.sub_category else ""),
                sanitize_csv_value(", ".join(tag.name for tag in txn.tags)),
                sanitize_csv_value(
                    txn.payment_method.name if txn.payment_method else ""
                ),
                txn.account.value,
                sanitize_csv_value(txn.notes or ""),
            ]
        )
    return output.getvalue()


def export_subscriptions(subscriptions: Sequence[Subscription]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(SUBSCRIPTION_COLUMNS)
    for sub in subscriptions:
        writer.writerow(
            [
                sanitize_csv_value(sub.name),
                _amount(sub.amount_cents),
                sub.billing_cycle.value,
                sub.next_payment_date.isoformat(),
                sanitize_csv_value(
                    sub.payment_method.name if sub.payment_method else ""
                ),
                _yes_no(sub.is_active),
                _yes_no(sub.auto_renew),
            ]
        )
    return output.getvalue()
