from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional, Union

from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cache import CacheClient, NullCache, cached
from cache_keys import (
    ALERTS_TTL,
    CHART_TTL,
    CHART_TYPES,
    DASHBOARD_TTL,
    AlertsKey,
    ChartKey,
    DashboardKey,
)
from errors import DataStoreError, ValidationError
from models import (
    BillingCycle,
    Category,
    PaymentMethod,
    SubCategory,
    Subscription,
    Tag,
    Transaction,
    TransactionType,
    transaction_tags,
)
from money import cents_to_amount, monthly_equivalent_cents, round_currency
from periods import DateRange, local_now, month_bounds, resolve_range

logger = logging.getLogger(__name__)

CHART_LABELS = {
    "monthlyTrend": "Monthly Trend",
    "categorySplit": "Category Split",
    "subCategorySplit": "Sub-Category Split",
    "tagBased": "Tag-Based Spending",
    "paymentMethodSplit": "Payment Method Split",
}

UNCATEGORIZED = "Uncategorized"
UNKNOWN_PAYMENT_METHOD = "Unknown"
UNKNOWN_TAG = "Unknown Tag"

MAX_ALERT_DAYS = 365
DEFAULT_ALERT_DAYS = 7

_TYPE_CHOICES = ", ".join(t.value for t in TransactionType)


def parse_transaction_type(value: Optional[str]) -> TransactionType:
    if not value:
        raise ValidationError(f"Type is required. Must be one of: {_TYPE_CHOICES}")
    try:
        return TransactionType(value)
    except ValueError as exc:
        raise ValidationError(f"Type must be one of: {_TYPE_CHOICES}") from exc


def parse_chart_type(value: Optional[str]) -> str:
    chart_type = value or "monthlyTrend"
    if chart_type not in CHART_TYPES:
        raise ValidationError(
            f"Invalid chartType. Must be one of: {', '.join(CHART_TYPES)}"
        )
    return chart_type


def parse_id(value: Union[str, int, None], field: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid {field} format") from exc
    if parsed < 1:
        raise ValidationError(f"Invalid {field} format")
    return parsed


def parse_days(value: Union[str, int, None]) -> int:
    if value is None or value == "":
        return DEFAULT_ALERT_DAYS
    try:
        days = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Days must be a positive number") from exc
    if days < 1:
        raise ValidationError("Days must be a positive number")
    if days > MAX_ALERT_DAYS:
        raise ValidationError(f"Days must be at most {MAX_ALERT_DAYS}")
    return days


def _sum_cents(column) -> Any:
    return func.coalesce(func.sum(column), 0)


class AnalyticsService:
    """Dashboard KPIs and chart series for one user.

    Aggregations sum integer cents in the database and convert to currency
    amounts only when building the response rows. ``dashboard`` and ``charts``
    are the cached entry points; the other methods always hit the database.
    """

    def __init__(
        self,
        session: AsyncSession,
        user_id: int,
        cache: Optional[CacheClient] = None,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.cache = cache or NullCache()
        self.now = now or local_now

    async def _rows(self, stmt) -> list[Any]:
        try:
            result = await self.session.execute(stmt)
            return list(result.all())
        except SQLAlchemyError as exc:
            logger.exception(f"analytics query failed for user {self.user_id}")
            raise DataStoreError("Failed to compute analytics") from exc

    def _in_range(self, txn_type: Optional[TransactionType], date_range: DateRange):
        clauses = [
            Transaction.user_id == self.user_id,
            Transaction.date.between(date_range.start, date_range.end),
        ]
        if txn_type is not None:
            clauses.append(Transaction.type == txn_type)
        return clauses

    async def kpis(self, date_range: DateRange) -> dict[str, Any]:
        totals_stmt = (
            select(Transaction.type, _sum_cents(Transaction.amount_cents).label("total"))
            .where(*self._in_range(None, date_range))
            .group_by(Transaction.type)
        )
        totals = {row.type: int(row.total or 0) for row in await self._rows(totals_stmt)}

        income = totals.get(TransactionType.income, 0)
        expenses = totals.get(TransactionType.expense, 0)
        net = income - expenses
        savings_rate = None
        if income > 0:
            savings_rate = round_currency(Decimal(net) / Decimal(income) * 100)
        avg_daily = Decimal(expenses) / 100 / date_range.days

        subs_stmt = (
            select(
                Subscription.billing_cycle,
                func.count(Subscription.id).label("count"),
                _sum_cents(Subscription.amount_cents).label("total"),
            )
            .where(
                Subscription.user_id == self.user_id,
                Subscription.is_active.is_(True),
            )
            .group_by(Subscription.billing_cycle)
        )
        active = 0
        monthly_cents = Decimal(0)
        for row in await self._rows(subs_stmt):
            active += int(row.count or 0)
            monthly_cents += monthly_equivalent_cents(int(row.total or 0), row.billing_cycle)

        return {
            "totalIncome": cents_to_amount(income),
            "totalExpenses": cents_to_amount(expenses),
            "netSavings": cents_to_amount(net),
            "savingsRate": savings_rate,
            "totalSavings": cents_to_amount(totals.get(TransactionType.savings, 0)),
            "totalInvestments": cents_to_amount(
                totals.get(TransactionType.investment, 0)
            ),
            "avgDailyExpense": round_currency(avg_daily),
            "activeSubscriptions": active,
            "monthlySubscriptionSpend": round_currency(monthly_cents / 100),
        }

    async def monthly_trend(
        self, txn_type: TransactionType, date_range: DateRange
    ) -> list[dict[str, Any]]:
        day = func.strftime("%Y-%m-%d", Transaction.date).label("day")
        stmt = (
            select(day, _sum_cents(Transaction.amount_cents).label("total"))
            .where(*self._in_range(txn_type, date_range))
            .group_by(day)
            .order_by(day)
        )
        return [
            {"date": row.day, "amount": cents_to_amount(row.total)}
            for row in await self._rows(stmt)
        ]

    async def category_split(
        self, txn_type: TransactionType, date_range: DateRange
    ) -> list[dict[str, Any]]:
        total = _sum_cents(Transaction.amount_cents).label("total")
        stmt = (
            select(Transaction.category_id, Category.name, total)
            .outerjoin(
                Category,
                and_(
                    Category.id == Transaction.category_id,
                    Category.user_id == self.user_id,
                ),
            )
            .where(
                *self._in_range(txn_type, date_range),
                Transaction.category_id.is_not(None),
            )
            .group_by(Transaction.category_id, Category.name)
            .order_by(total.desc(), Transaction.category_id)
        )
        return [
            {
                "categoryId": row.category_id,
                "category": row.name or UNCATEGORIZED,
                "amount": cents_to_amount(row.total),
            }
            for row in await self._rows(stmt)
        ]

    async def subcategory_split(
        self,
        txn_type: TransactionType,
        date_range: DateRange,
        category_id: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        total = _sum_cents(Transaction.amount_cents).label("total")
        stmt = (
            select(Transaction.sub_category_id, SubCategory.name, total)
            .outerjoin(
                SubCategory,
                and_(
                    SubCategory.id == Transaction.sub_category_id,
                    SubCategory.user_id == self.user_id,
                ),
            )
            .where(
                *self._in_range(txn_type, date_range),
                Transaction.sub_category_id.is_not(None),
            )
            .group_by(Transaction.sub_category_id, SubCategory.name)
            .order_by(total.desc(), Transaction.sub_category_id)
        )
        if category_id is not None:
            stmt = stmt.where(Transaction.category_id == category_id)
        return [
            {
                "subCategoryId": row.sub_category_id,
                "subCategory": row.name or UNCATEGORIZED,
                "amount": cents_to_amount(row.total),
            }
            for row in await self._rows(stmt)
        ]

    async def payment_method_split(
        self, txn_type: TransactionType, date_range: DateRange
    ) -> list[dict[str, Any]]:
        total = _sum_cents(Transaction.amount_cents).label("total")
        stmt = (
            select(Transaction.payment_method_id, PaymentMethod.name, total)
            .outerjoin(
                PaymentMethod,
                and_(
                    PaymentMethod.id == Transaction.payment_method_id,
                    PaymentMethod.user_id == self.user_id,
                ),
            )
            .where(
                *self._in_range(txn_type, date_range),
                Transaction.payment_method_id.is_not(None),
            )
            .group_by(Transaction.payment_method_id, PaymentMethod.name)
            .order_by(total.desc(), Transaction.payment_method_id)
        )
        return [
            {
                "paymentMethodId": row.payment_method_id,
                "paymentMethod": row.name or UNKNOWN_PAYMENT_METHOD,
                "amount": cents_to_amount(row.total),
            }
            for row in await self._rows(stmt)
        ]

    async def tag_split(
        self, txn_type: TransactionType, date_range: DateRange
    ) -> list[dict[str, Any]]:
        # one row per (transaction, tag) pair before grouping
        tag_id = transaction_tags.c.tag_id
        total = _sum_cents(Transaction.amount_cents).label("total")
        stmt = (
            select(tag_id, Tag.name, total)
            .select_from(Transaction)
            .join(transaction_tags, transaction_tags.c.transaction_id == Transaction.id)
            .outerjoin(Tag, and_(Tag.id == tag_id, Tag.user_id == self.user_id))
            .where(*self._in_range(txn_type, date_range))
            .group_by(tag_id, Tag.name)
            .order_by(total.desc(), tag_id)
        )
        return [
            {
                "tagId": row.tag_id,
                "tag": row.name or UNKNOWN_TAG,
                "amount": cents_to_amount(row.total),
            }
            for row in await self._rows(stmt)
        ]

    async def chart(
        self,
        chart_type: str,
        txn_type: TransactionType,
        date_range: DateRange,
        category_id: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        if chart_type == "categorySplit":
            return await self.category_split(txn_type, date_range)
        if chart_type == "subCategorySplit":
            return await self.subcategory_split(txn_type, date_range, category_id)
        if chart_type == "tagBased":
            return await self.tag_split(txn_type, date_range)
        if chart_type == "paymentMethodSplit":
            return await self.payment_method_split(txn_type, date_range)
        return await self.monthly_trend(txn_type, date_range)

    async def dashboard(
        self,
        month: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> dict[str, Any]:
        date_range = resolve_range(month, start_date, end_date, now=self.now())
        key = DashboardKey(self.user_id, date_range.window).key()

        async def compute() -> dict[str, Any]:
            return {
                "success": True,
                "range": date_range.as_dict(),
                "kpis": await self.kpis(date_range),
            }

        return await cached(self.cache, key, DASHBOARD_TTL, compute)

    async def charts(
        self,
        type: Optional[str],
        chart_type: Optional[str] = None,
        month: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        category_id: Union[str, int, None] = None,
    ) -> dict[str, Any]:
        txn_type = parse_transaction_type(type)
        chart = parse_chart_type(chart_type)
        date_range = resolve_range(month, start_date, end_date, now=self.now())
        category = None
        if chart == "subCategorySplit":
            category = parse_id(category_id, "categoryId")
        key = ChartKey(
            self.user_id, txn_type.value, chart, date_range.window, category
        ).key()

        async def compute() -> dict[str, Any]:
            return {
                "success": True,
                "chartType": CHART_LABELS[chart],
                "type": txn_type.value,
                "range": date_range.as_dict(),
                "data": await self.chart(chart, txn_type, date_range, category),
            }

        return await cached(self.cache, key, CHART_TTL, compute)


def _alert_item(sub: Subscription) -> dict[str, Any]:
    return {
        "id": sub.id,
        "name": sub.name,
        "amount": cents_to_amount(sub.amount_cents),
        "billingCycle": sub.billing_cycle.value,
        "nextPaymentDate": sub.next_payment_date.isoformat(),
    }


class SubscriptionAlertService:
    """Upcoming and overdue payments plus this month's subscription load.

    The three reads are independent; each runs on its own session so they can
    be awaited together.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        user_id: int,
        cache: Optional[CacheClient] = None,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.session_factory = session_factory
        self.user_id = user_id
        self.cache = cache or NullCache()
        self.now = now or local_now

    async def _fetch(self, stmt, *, scalars: bool = False) -> list[Any]:
        try:
            async with self.session_factory() as session:
                if scalars:
                    return list((await session.scalars(stmt)).all())
                return list((await session.execute(stmt)).all())
        except SQLAlchemyError as exc:
            logger.exception(f"subscription alert query failed for user {self.user_id}")
            raise DataStoreError("Failed to compute subscription alerts") from exc

    def _active(self):
        return (
            Subscription.user_id == self.user_id,
            Subscription.is_active.is_(True),
        )

    async def compute(self, days: int, today: date) -> dict[str, Any]:
        horizon_end = today + timedelta(days=days)
        month_start, month_end = month_bounds(today.year, today.month)

        upcoming_stmt = (
            select(Subscription)
            .where(
                *self._active(),
                Subscription.next_payment_date >= today,
                Subscription.next_payment_date <= horizon_end,
            )
            .order_by(Subscription.next_payment_date, Subscription.id)
        )
        overdue_stmt = (
            select(Subscription)
            .where(*self._active(), Subscription.next_payment_date < today)
            .order_by(Subscription.next_payment_date, Subscription.id)
        )
        load_stmt = (
            select(
                Subscription.billing_cycle,
                _sum_cents(Subscription.amount_cents).label("total"),
            )
            .where(
                *self._active(),
                Subscription.next_payment_date >= month_start.date(),
                Subscription.next_payment_date <= month_end.date(),
            )
            .group_by(Subscription.billing_cycle)
        )

        upcoming, overdue, load_rows = await asyncio.gather(
            self._fetch(upcoming_stmt, scalars=True),
            self._fetch(overdue_stmt, scalars=True),
            self._fetch(load_stmt),
        )

        monthly_cents = sum(
            (
                monthly_equivalent_cents(int(row.total or 0), BillingCycle(row.billing_cycle))
                for row in load_rows
            ),
            Decimal(0),
        )
        return {
            "success": True,
            "range": {"from": today.isoformat(), "to": horizon_end.isoformat()},
            "summary": {
                "upcomingCount": len(upcoming),
                "overdueCount": len(overdue),
                "monthlySubscriptionSpend": round_currency(monthly_cents / 100),
            },
            "upcoming": [_alert_item(sub) for sub in upcoming],
            "overdue": [_alert_item(sub) for sub in overdue],
        }

    async def alerts(self, days: Union[str, int, None] = None) -> dict[str, Any]:
        horizon = parse_days(days)
        today = self.now().date()
        key = AlertsKey(self.user_id, horizon).key()
        return await cached(
            self.cache, key, ALERTS_TTL, lambda: self.compute(horizon, today)
        )
