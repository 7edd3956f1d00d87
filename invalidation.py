"""Cache invalidation for mutations.

The cache backend cannot list or pattern-match keys, so analytics invalidation
is bounded: for a mutation we delete the month-keyed dashboard and chart entries
of the current month, the previous month and any month the mutation touched.
Custom ``startDate``/``endDate`` windows, older months, filtered transaction
pages and unconfigured alert horizons are left to expire by TTL.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from cache import CacheClient
from cache_keys import (
    CHART_TYPES,
    AlertsKey,
    CategoryListKey,
    ChartKey,
    DashboardKey,
    SubCategoryListKey,
    TransactionPageKey,
)
from config import get_settings
from models import TransactionType
from periods import local_now, month_key, previous_month_key

logger = logging.getLogger(__name__)

class CacheInvalidator:
    def __init__(
        self,
        cache: CacheClient,
        *,
        alert_horizons: Optional[Iterable[int]] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.cache = cache
        if alert_horizons is None:
            alert_horizons = get_settings().alert_horizons
        self.alert_horizons = tuple(sorted(set(alert_horizons) | {7}))
        self.now = now or local_now

    def recent_months(self, extra: Iterable[str] = ()) -> list[str]:
        today = self.now().date()
        months = {month_key(today), previous_month_key(today)}
        months.update(m for m in extra if m)
        return sorted(months)

    def transaction_page_keys(self, user_id: int) -> list[str]:
        keys = [TransactionPageKey(user_id).key()]
        for txn_type in TransactionType:
            keys.append(TransactionPageKey(user_id, type=txn_type.value).key())
        return keys

    def dashboard_keys(self, user_id: int, months: Iterable[str]) -> list[str]:
        return [DashboardKey(user_id, month).key() for month in months]

    def chart_keys(
        self,
        user_id: int,
        months: Iterable[str],
        category_ids: Iterable[int] = (),
    ) -> list[str]:
        category_ids = sorted({c for c in category_ids if c is not None})
        keys: list[str] = []
        for month in months:
            for txn_type in TransactionType:
                for chart_type in CHART_TYPES:
                    keys.append(
                        ChartKey(user_id, txn_type.value, chart_type, month).key()
                    )
                for category_id in category_ids:
                    keys.append(
                        ChartKey(
                            user_id,
                            txn_type.value,
                            "subCategorySplit",
                            month,
                            category_id,
                        ).key()
                    )
        return keys

    def analytics_keys(
        self,
        user_id: int,
        months: Iterable[str] = (),
        category_ids: Iterable[int] = (),
    ) -> list[str]:
        window = self.recent_months(months)
        return self.dashboard_keys(user_id, window) + self.chart_keys(
            user_id, window, category_ids
        )

    async def delete_keys(self, keys: Iterable[str]) -> int:
        unique = list(dict.fromkeys(keys))
        if not unique:
            return 0
        results = await asyncio.gather(
            *(self.cache.delete(key) for key in unique), return_exceptions=True
        )
        acknowledged = 0
        for key, result in zip(unique, results):
            if isinstance(result, BaseException):
                logger.warning(f"cache invalidation failed for {key!r}: {result!r}")
            elif result:
                acknowledged += 1
        return acknowledged

    async def transactions_changed(
        self,
        user_id: int,
        *,
        dates: Iterable[datetime] = (),
        category_ids: Iterable[Optional[int]] = (),
    ) -> int:
        months = [month_key(d) for d in dates if d is not None]
        keys = self.transaction_page_keys(user_id) + self.analytics_keys(
            user_id, months, [c for c in category_ids if c is not None]
        )
        deleted = await self.delete_keys(keys)
        logger.info(f"invalidated transaction caches for user {user_id}: {deleted} keys")
        return deleted

    async def categories_changed(
        self,
        user_id: int,
        *,
        types: Iterable[Optional[str]] = (),
        category_ids: Iterable[Optional[int]] = (),
        labels_changed: bool = False,
    ) -> int:
        keys = [CategoryListKey(user_id).key()]
        keys.extend(CategoryListKey(user_id, t).key() for t in types if t)
        if labels_changed:
            # subcategory lists and transaction pages embed the category name
            keys.append(SubCategoryListKey(user_id).key())
            keys.extend(
                SubCategoryListKey(user_id, c).key()
                for c in category_ids
                if c is not None
            )
            keys.extend(self.transaction_page_keys(user_id))
            keys.extend(self.analytics_keys(user_id))
        return await self.delete_keys(keys)

    async def subcategories_changed(
        self,
        user_id: int,
        *,
        category_ids: Iterable[Optional[int]] = (),
        labels_changed: bool = False,
    ) -> int:
        keys = [SubCategoryListKey(user_id).key()]
        keys.extend(
            SubCategoryListKey(user_id, c).key() for c in category_ids if c is not None
        )
        if labels_changed:
            keys.extend(self.transaction_page_keys(user_id))
            keys.extend(self.analytics_keys(user_id))
        return await self.delete_keys(keys)

    async def dimension_labels_changed(self, user_id: int) -> int:
        """Tag or payment-method rename/delete: labels in pages and charts."""
        keys = self.transaction_page_keys(user_id) + self.analytics_keys(user_id)
        return await self.delete_keys(keys)

    async def subscriptions_changed(self, user_id: int) -> int:
        keys = [AlertsKey(user_id, days).key() for days in self.alert_horizons]
        keys.extend(self.dashboard_keys(user_id, self.recent_months()))
        return await self.delete_keys(keys)
