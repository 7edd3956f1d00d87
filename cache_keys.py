"""Canonical cache keys, one frozen dataclass per cache family.

Read paths and the invalidation policy both build keys through these classes,
so the two sides always agree on the exact string.
"""

from dataclasses import dataclass
from typing import Optional

DASHBOARD_TTL = 600
CHART_TTL = 600
ALERTS_TTL = 300
TRANSACTIONS_PAGE_TTL = 300
REFERENCE_LIST_TTL = 3600

DEFAULT_PAGE_SIZE = 20

CHART_TYPES = (
    "monthlyTrend",
    "categorySplit",
    "subCategorySplit",
    "tagBased",
    "paymentMethodSplit",
)


@dataclass(frozen=True)
class DashboardKey:
    user_id: int
    window: str

    def key(self) -> str:
        return f"analytics:{self.user_id}:dashboard:{self.window}"


@dataclass(frozen=True)
class ChartKey:
    user_id: int
    type: str
    chart_type: str
    window: str
    category_id: Optional[int] = None

    def key(self) -> str:
        # categoryId only narrows the sub-category split
        category = "all"
        if self.chart_type == "subCategorySplit" and self.category_id is not None:
            category = str(self.category_id)
        return (
            f"analytics:{self.user_id}:charts:{self.type}:{self.chart_type}"
            f":{self.window}:{category}"
        )


@dataclass(frozen=True)
class AlertsKey:
    user_id: int
    days: int

    def key(self) -> str:
        return f"subscriptions:{self.user_id}:alerts:{self.days}"


@dataclass(frozen=True)
class TransactionPageKey:
    user_id: int
    type: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    category_id: Optional[int] = None
    tag_id: Optional[int] = None

    def key(self) -> str:
        parts = [f"transactions:{self.user_id}:page1"]
        if self.type:
            parts.append(f"type:{self.type}")
        if self.start_date:
            parts.append(f"start:{self.start_date}")
        if self.end_date:
            parts.append(f"end:{self.end_date}")
        if self.category_id is not None:
            parts.append(f"cat:{self.category_id}")
        if self.tag_id is not None:
            parts.append(f"tag:{self.tag_id}")
        return ":".join(parts)


@dataclass(frozen=True)
class CategoryListKey:
    user_id: int
    type: Optional[str] = None

    def key(self) -> str:
        return f"categories:{self.user_id}:{self.type or 'all'}"


@dataclass(frozen=True)
class SubCategoryListKey:
    user_id: int
    category_id: Optional[int] = None

    def key(self) -> str:
        scope = "all" if self.category_id is None else str(self.category_id)
        return f"subcategories:{self.user_id}:{scope}"
