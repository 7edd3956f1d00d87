from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Optional
from zoneinfo import ZoneInfo

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from config import get_settings
from models import (
    Account,
    BillingCycle,
    CategoryType,
    PaymentMethodType,
    TransactionType,
)


def _strip_required(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    clean = value.strip()
    if not clean:
        raise ValueError("must not be empty")
    return clean


def _strip_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    clean = value.strip()
    return clean or None


def _to_local_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    tz = ZoneInfo(get_settings().timezone)
    return value.astimezone(tz).replace(tzinfo=None)


Name = Annotated[str, Field(min_length=1, max_length=100), AfterValidator(_strip_required)]
ShortName = Annotated[str, Field(min_length=1, max_length=50), AfterValidator(_strip_required)]
Detail = Annotated[Optional[str], Field(max_length=100), AfterValidator(_strip_optional)]
LocalDateTime = Annotated[datetime, AfterValidator(_to_local_naive)]
Amount = Annotated[Decimal, Field(gt=0, max_digits=14, decimal_places=2)]
Month = Annotated[str, Field(pattern=r"^\d{4}-\d{2}$")]


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )


class CategoryIn(ApiModel):
    name: Name
    type: CategoryType


class CategoryUpdate(ApiModel):
    name: Optional[Name] = None
    type: Optional[CategoryType] = None


class SubCategoryIn(ApiModel):
    name: Name
    category_id: int


class SubCategoryUpdate(ApiModel):
    name: Optional[Name] = None
    category_id: Optional[int] = None


class TagIn(ApiModel):
    name: ShortName
    color: Optional[str] = Field(default=None, max_length=9)


class TagUpdate(ApiModel):
    name: Optional[ShortName] = None
    color: Optional[str] = Field(default=None, max_length=9)


class PaymentMethodIn(ApiModel):
    name: Name
    icon: Name
    type: PaymentMethodType = PaymentMethodType.other
    detail_label: Detail = None


class PaymentMethodUpdate(ApiModel):
    name: Optional[Name] = None
    icon: Optional[Name] = None
    type: Optional[PaymentMethodType] = None
    detail_label: Detail = None


class TransactionIn(ApiModel):
    type: TransactionType
    amount: Amount
    date: LocalDateTime
    category_id: Optional[int] = None
    sub_category_id: Optional[int] = None
    tags: list[int] = Field(default_factory=list)
    payment_method_id: Optional[int] = None
    payment_method_detail: Detail = None
    account: Account = Account.self_
    notes: Optional[str] = Field(default=None, max_length=500)


class TransactionUpdate(ApiModel):
    """Partial update; only fields present in the request body are applied."""

    type: Optional[TransactionType] = None
    amount: Optional[Amount] = None
    date: Optional[LocalDateTime] = None
    category_id: Optional[int] = None
    sub_category_id: Optional[int] = None
    tags: Optional[list[int]] = None
    payment_method_id: Optional[int] = None
    payment_method_detail: Detail = None
    account: Optional[Account] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class SubscriptionIn(ApiModel):
    name: Annotated[str, Field(min_length=1, max_length=120), AfterValidator(_strip_required)]
    amount: Amount
    category_id: Optional[int] = None
    billing_cycle: BillingCycle
    next_payment_date: date
    payment_method_id: Optional[int] = None
    payment_method_detail: Detail = None
    is_active: bool = True
    auto_renew: bool = True


class SubscriptionUpdate(ApiModel):
    name: Optional[
        Annotated[str, Field(min_length=1, max_length=120), AfterValidator(_strip_required)]
    ] = None
    amount: Optional[Amount] = None
    category_id: Optional[int] = None
    billing_cycle: Optional[BillingCycle] = None
    next_payment_date: Optional[date] = None
    payment_method_id: Optional[int] = None
    payment_method_detail: Detail = None
    is_active: Optional[bool] = None
    auto_renew: Optional[bool] = None


class BudgetIn(ApiModel):
    category_id: Optional[int] = None
    sub_category_id: Optional[int] = None
    amount: Amount
    month: Month


class BudgetUpdate(ApiModel):
    category_id: Optional[int] = None
    sub_category_id: Optional[int] = None
    amount: Optional[Amount] = None
    month: Optional[Month] = None
