import csv
from datetime import date, datetime
from io import StringIO

import pytest

from csv_utils import SUBSCRIPTION_COLUMNS, TRANSACTION_COLUMNS, sanitize_csv_value
from errors import ValidationError
from models import BillingCycle, TransactionType
from periods import local_now
from services import ExportService


def _rows(text: str) -> list[list[str]]:
    return list(csv.reader(StringIO(text)))


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Groceries", "Groceries"),
        ("  padded  ", "padded"),
        ("", ""),
        ("   ", ""),
        ("=SUM(A1:A9)", "\t=SUM(A1:A9)"),
        ("+1", "\t+1"),
        ("@cmd", "\t@cmd"),
        ("cmd /c calc", "\tcmd /c calc"),
        ("https://example.com", "\thttps://example.com"),
    ],
)
def test_sanitize_csv_value(raw, expected) -> None:
    assert sanitize_csv_value(raw) == expected


async def test_transactions_csv(session, seed) -> None:
    food = await seed.category("Food")
    fruit = await seed.subcategory(food, "Fruit")
    card = await seed.payment_method("Visa")
    market = await seed.tag("market")
    weekly = await seed.tag("weekly")
    await seed.transaction(
        "12.5",
        datetime(2024, 2, 3, 9, 30),
        category_id=food.id,
        sub_category_id=fruit.id,
        payment_method_id=card.id,
        tag_ids=[market.id, weekly.id],
        notes="=HYPERLINK(1)",
    )
    await seed.transaction(1000, datetime(2024, 2, 1), type=TransactionType.income)

    rows = _rows(await ExportService(session, 1).transactions_csv())

    assert rows[0] == TRANSACTION_COLUMNS
    assert rows[1] == ["2024-02-01", "income", "1000.00", "", "", "", "", "self", ""]
    assert rows[2][:5] == ["2024-02-03", "expense", "12.50", "Food", "Fruit"]
    assert sorted(rows[2][5].split(", ")) == ["market", "weekly"]
    assert rows[2][6:] == ["Visa", "self", "\t=HYPERLINK(1)"]


async def test_transactions_csv_filters(session, seed) -> None:
    await seed.transaction(5, datetime(2024, 1, 31))
    await seed.transaction(6, datetime(2024, 2, 1))
    await seed.transaction(7, datetime(2024, 2, 2), type=TransactionType.income)
    await seed.transaction(8, datetime(2024, 2, 2), user_id=2)
    service = ExportService(session, 1)

    rows = _rows(
        await service.transactions_csv("expense", "2024-02-01", "2024-02-29")
    )

    assert [row[2] for row in rows[1:]] == ["6.00"]
    with pytest.raises(ValidationError):
        await service.transactions_csv(start_date="2024-03-01", end_date="2024-02-01")


async def test_subscriptions_csv(session, seed) -> None:
    card = await seed.payment_method("Amex")
    await seed.subscription(
        "Video",
        120,
        date(2024, 5, 1),
        billing_cycle=BillingCycle.yearly,
        payment_method_id=card.id,
    )
    await seed.subscription("Music", "9.99", date(2024, 3, 15), is_active=False)

    rows = _rows(await ExportService(session, 1).subscriptions_csv())

    assert rows == [
        SUBSCRIPTION_COLUMNS,
        ["Music", "9.99", "monthly", "2024-03-15", "", "No", "Yes"],
        ["Video", "120.00", "yearly", "2024-05-01", "Amex", "Yes", "Yes"],
    ]


async def test_export_download_headers(client) -> None:
    await client.post(
        "/api/transactions",
        json={"type": "expense", "amount": 3, "date": local_now().isoformat()},
    )

    response = await client.get("/api/export/transactions")

    today = local_now().date().isoformat()
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert (
        response.headers["content-disposition"]
        == f'attachment; filename="transactions_{today}.csv"'
    )
    assert response.text.splitlines()[0].startswith("Date,Type,Amount")
    assert len(response.text.splitlines()) == 2
