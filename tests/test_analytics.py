from datetime import date, datetime

import pytest
from sqlalchemy.exc import OperationalError

from analytics import AnalyticsService
from cache_keys import ChartKey, DashboardKey
from errors import DataStoreError, ValidationError
from models import BillingCycle, CategoryType, TransactionType
from periods import resolve_range

FEB = resolve_range(month="2024-02")


def _now() -> datetime:
    return datetime(2024, 2, 20, 9, 0)


async def test_category_split_conserves_total(session, seed) -> None:
    food = await seed.category("Food")
    travel = await seed.category("Travel")
    await seed.transaction(100, datetime(2024, 2, 3), category_id=food.id)
    await seed.transaction(200, datetime(2024, 2, 4), category_id=food.id)
    await seed.transaction(50, datetime(2024, 2, 5), category_id=travel.id)

    rows = await AnalyticsService(session, 1).category_split(TransactionType.expense, FEB)

    assert rows == [
        {"categoryId": food.id, "category": "Food", "amount": 300.0},
        {"categoryId": travel.id, "category": "Travel", "amount": 50.0},
    ]
    assert sum(row["amount"] for row in rows) == 350.0


async def test_splits_skip_transactions_without_the_dimension(session, seed) -> None:
    food = await seed.category("Food")
    await seed.transaction(10, datetime(2024, 2, 3), category_id=food.id)
    await seed.transaction(99, datetime(2024, 2, 3))

    service = AnalyticsService(session, 1)

    assert [r["amount"] for r in await service.category_split(TransactionType.expense, FEB)] == [10.0]
    assert await service.payment_method_split(TransactionType.expense, FEB) == []
    assert await service.tag_split(TransactionType.expense, FEB) == []


async def test_missing_dimensions_get_fallback_labels(session, seed) -> None:
    await seed.transaction(
        25,
        datetime(2024, 2, 8),
        category_id=404,
        sub_category_id=405,
        payment_method_id=406,
        tag_ids=[407],
    )
    service = AnalyticsService(session, 1)
    expense = TransactionType.expense

    assert (await service.category_split(expense, FEB))[0]["category"] == "Uncategorized"
    assert (await service.subcategory_split(expense, FEB))[0]["subCategory"] == "Uncategorized"
    assert (await service.payment_method_split(expense, FEB))[0]["paymentMethod"] == "Unknown"
    assert (await service.tag_split(expense, FEB))[0] == {
        "tagId": 407,
        "tag": "Unknown Tag",
        "amount": 25.0,
    }


async def test_labels_of_another_user_are_not_joined(session, seed) -> None:
    foreign = await seed.category("Secret", user_id=2)
    await seed.transaction(5, datetime(2024, 2, 8), category_id=foreign.id)

    rows = await AnalyticsService(session, 1).category_split(TransactionType.expense, FEB)

    assert rows[0]["category"] == "Uncategorized"


async def test_tag_split_counts_transaction_once_per_tag(session, seed) -> None:
    groceries = await seed.tag("groceries")
    weekly = await seed.tag("weekly")
    await seed.transaction(40, datetime(2024, 2, 1), tag_ids=[groceries.id, weekly.id])
    await seed.transaction(10, datetime(2024, 2, 2), tag_ids=[weekly.id])

    rows = await AnalyticsService(session, 1).tag_split(TransactionType.expense, FEB)

    assert rows == [
        {"tagId": weekly.id, "tag": "weekly", "amount": 50.0},
        {"tagId": groceries.id, "tag": "groceries", "amount": 40.0},
    ]


async def test_subcategory_split_can_be_narrowed_to_a_category(session, seed) -> None:
    food = await seed.category("Food")
    home = await seed.category("Home")
    fruit = await seed.subcategory(food, "Fruit")
    repairs = await seed.subcategory(home, "Repairs")
    await seed.transaction(12, datetime(2024, 2, 1), category_id=food.id, sub_category_id=fruit.id)
    await seed.transaction(80, datetime(2024, 2, 1), category_id=home.id, sub_category_id=repairs.id)
    service = AnalyticsService(session, 1)

    everything = await service.subcategory_split(TransactionType.expense, FEB)
    only_food = await service.subcategory_split(TransactionType.expense, FEB, food.id)

    assert [r["subCategory"] for r in everything] == ["Repairs", "Fruit"]
    assert only_food == [{"subCategoryId": fruit.id, "subCategory": "Fruit", "amount": 12.0}]


async def test_monthly_trend_groups_by_day_ascending(session, seed) -> None:
    await seed.transaction(5, datetime(2024, 2, 10, 18, 0))
    await seed.transaction(7.25, datetime(2024, 2, 10, 8, 0))
    await seed.transaction(1, datetime(2024, 2, 2, 23, 59))
    await seed.transaction(100, datetime(2024, 2, 2), type=TransactionType.income)
    await seed.transaction(3, datetime(2024, 3, 1))

    rows = await AnalyticsService(session, 1).monthly_trend(TransactionType.expense, FEB)

    assert rows == [
        {"date": "2024-02-02", "amount": 1.0},
        {"date": "2024-02-10", "amount": 12.25},
    ]


async def test_amounts_are_summed_exactly_before_rounding(session, seed) -> None:
    await seed.transaction(0.1, datetime(2024, 2, 1), category_id=1)
    await seed.transaction(0.2, datetime(2024, 2, 1), category_id=1)

    rows = await AnalyticsService(session, 1).category_split(TransactionType.expense, FEB)

    assert rows[0]["amount"] == 0.3


async def test_kpis(session, seed) -> None:
    await seed.transaction(1000, datetime(2024, 2, 1), type=TransactionType.income)
    await seed.transaction(300, datetime(2024, 2, 5))
    await seed.transaction(50, datetime(2024, 2, 29, 23, 0))
    await seed.transaction(120, datetime(2024, 2, 9), type=TransactionType.savings)
    await seed.transaction(80, datetime(2024, 2, 9), type=TransactionType.investment)
    await seed.transaction(999, datetime(2024, 3, 1))
    await seed.transaction(999, datetime(2024, 2, 9), user_id=2)
    await seed.subscription("Music", 10, date(2024, 5, 1))
    await seed.subscription("Cloud", 120, date(2024, 9, 1), billing_cycle=BillingCycle.yearly)
    await seed.subscription("Old", 30, date(2024, 1, 1), is_active=False)

    kpis = await AnalyticsService(session, 1).kpis(FEB)

    assert kpis == {
        "totalIncome": 1000.0,
        "totalExpenses": 350.0,
        "netSavings": 650.0,
        "savingsRate": 65.0,
        "totalSavings": 120.0,
        "totalInvestments": 80.0,
        "avgDailyExpense": 12.07,
        "activeSubscriptions": 2,
        "monthlySubscriptionSpend": 20.0,
    }


async def test_savings_rate_is_null_without_income(session, seed) -> None:
    await seed.transaction(42, datetime(2024, 2, 14))

    kpis = await AnalyticsService(session, 1).kpis(FEB)

    assert kpis["savingsRate"] is None
    assert kpis["netSavings"] == -42.0


async def test_dashboard_response_shape_and_cache_key(session, seed, cache) -> None:
    await seed.transaction(10, datetime(2024, 2, 14))
    service = AnalyticsService(session, 1, cache, now=_now)

    body = await service.dashboard()

    assert body["success"] is True
    assert body["range"] == {
        "startDate": "2024-02-01T00:00:00.000",
        "endDate": "2024-02-29T23:59:59.999",
    }
    assert body["kpis"]["totalExpenses"] == 10.0
    assert await cache.get(DashboardKey(1, "2024-02").key()) == body


async def test_dashboard_hit_is_returned_verbatim(session, seed, cache) -> None:
    service = AnalyticsService(session, 1, cache, now=_now)
    first = await service.dashboard(month="2024-02")
    await seed.transaction(10, datetime(2024, 2, 14))

    second = await service.dashboard(month="2024-02")

    assert second == first
    assert second["kpis"]["totalExpenses"] == 0.0


async def test_dashboard_is_correct_without_a_cache(session, seed, failing_cache) -> None:
    service = AnalyticsService(session, 1, failing_cache, now=_now)
    await service.dashboard()
    await seed.transaction(10, datetime(2024, 2, 14))

    body = await service.dashboard()

    assert body["kpis"]["totalExpenses"] == 10.0


async def test_charts_response(session, seed, cache) -> None:
    food = await seed.category("Food")
    await seed.transaction(10, datetime(2024, 1, 14), category_id=food.id)

    body = await AnalyticsService(session, 1, cache, now=_now).charts(
        "expense", "categorySplit", start_date="2024-01-01", end_date="2024-01-31"
    )

    assert body["chartType"] == "Category Split"
    assert body["type"] == "expense"
    assert body["data"] == [{"categoryId": food.id, "category": "Food", "amount": 10.0}]
    key = ChartKey(1, "expense", "categorySplit", "2024-01-01:2024-01-31").key()
    assert await cache.get(key) == body


async def test_chart_type_defaults_to_monthly_trend(session) -> None:
    body = await AnalyticsService(session, 1, now=_now).charts("income")

    assert body["chartType"] == "Monthly Trend"
    assert body["data"] == []


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"type": None}, "Type is required"),
        ({"type": "gifts"}, "Type must be one of"),
        ({"type": "expense", "chart_type": "pie"}, "Invalid chartType"),
        (
            {"type": "expense", "chart_type": "subCategorySplit", "category_id": "abc"},
            "Invalid categoryId format",
        ),
        ({"type": "expense", "month": "2024-2"}, "YYYY-MM"),
    ],
)
async def test_chart_input_validation(session, kwargs, message) -> None:
    with pytest.raises(ValidationError, match=message):
        await AnalyticsService(session, 1, now=_now).charts(**kwargs)


async def test_category_is_ignored_outside_subcategory_split(session) -> None:
    body = await AnalyticsService(session, 1, now=_now).charts(
        "expense", "categorySplit", category_id="abc"
    )

    assert body["data"] == []


class _BrokenSession:
    async def execute(self, stmt):
        raise OperationalError("SELECT", {}, Exception("database is locked"))


async def test_query_failures_surface_as_data_store_errors() -> None:
    service = AnalyticsService(_BrokenSession(), 1, now=_now)

    with pytest.raises(DataStoreError):
        await service.kpis(FEB)
    with pytest.raises(DataStoreError):
        await service.dashboard()


async def test_income_category_split(session, seed) -> None:
    salary = await seed.category("Salary", CategoryType.income)
    await seed.transaction(2500, datetime(2024, 2, 1), type=TransactionType.income, category_id=salary.id)
    await seed.transaction(30, datetime(2024, 2, 1), category_id=salary.id)

    rows = await AnalyticsService(session, 1).category_split(TransactionType.income, FEB)

    assert rows == [{"categoryId": salary.id, "category": "Salary", "amount": 2500.0}]
