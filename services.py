from __future__ import annotations

import logging
import math
from datetime import datetime, time
from decimal import Decimal
from typing import Any, Iterable, Optional, Union

from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from analytics import parse_id, parse_transaction_type
from cache import CacheClient, NullCache, cached
from cache_keys import (
    DEFAULT_PAGE_SIZE,
    REFERENCE_LIST_TTL,
    TRANSACTIONS_PAGE_TTL,
    CategoryListKey,
    SubCategoryListKey,
    TransactionPageKey,
)
from csv_utils import export_subscriptions, export_transactions
from errors import DuplicateError, NotFoundError, ReferenceInUseError, ValidationError
from invalidation import CacheInvalidator
from models import (
    Budget,
    Category,
    CategoryType,
    PaymentMethod,
    SubCategory,
    Subscription,
    Tag,
    Transaction,
    TransactionType,
    transaction_tags,
)
from money import cents_to_amount, round_currency, to_cents
from periods import END_OF_DAY, month_bounds, parse_calendar_date, parse_month
from schemas import (
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    CategoryUpdate,
    PaymentMethodIn,
    PaymentMethodUpdate,
    SubCategoryIn,
    SubCategoryUpdate,
    SubscriptionIn,
    SubscriptionUpdate,
    TagIn,
    TagUpdate,
    TransactionIn,
    TransactionUpdate,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds")


def _ref(obj) -> Optional[dict[str, Any]]:
    if obj is None:
        return None
    return {"id": obj.id, "name": obj.name}


def category_out(category: Category) -> dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "createdAt": _iso(category.created_at),
        "updatedAt": _iso(category.updated_at),
    }


def subcategory_out(sub: SubCategory) -> dict[str, Any]:
    return {
        "id": sub.id,
        "name": sub.name,
        "categoryId": sub.category_id,
        "category": _ref(sub.category),
        "createdAt": _iso(sub.created_at),
        "updatedAt": _iso(sub.updated_at),
    }


def tag_out(tag: Tag) -> dict[str, Any]:
    return {"id": tag.id, "name": tag.name, "color": tag.color}


def payment_method_out(method: PaymentMethod) -> dict[str, Any]:
    return {
        "id": method.id,
        "name": method.name,
        "icon": method.icon,
        "type": method.type.value,
        "detailLabel": method.detail_label,
    }


def transaction_out(txn: Transaction) -> dict[str, Any]:
    return {
        "id": txn.id,
        "type": txn.type.value,
        "amount": cents_to_amount(txn.amount_cents),
        "date": _iso(txn.date),
        "categoryId": txn.category_id,
        "category": _ref(txn.category),
        "subCategoryId": txn.sub_category_id,
        "subCategory": _ref(txn.sub_category),
        "tags": [tag_out(tag) for tag in txn.tags],
        "paymentMethodId": txn.payment_method_id,
        "paymentMethod": _ref(txn.payment_method),
        "paymentMethodDetail": txn.payment_method_detail,
        "account": txn.account.value,
        "notes": txn.notes,
        "createdAt": _iso(txn.created_at),
        "updatedAt": _iso(txn.updated_at),
    }


def subscription_out(sub: Subscription) -> dict[str, Any]:
    return {
        "id": sub.id,
        "name": sub.name,
        "amount": cents_to_amount(sub.amount_cents),
        "categoryId": sub.category_id,
        "category": _ref(sub.category),
        "billingCycle": sub.billing_cycle.value,
        "nextPaymentDate": sub.next_payment_date.isoformat(),
        "paymentMethodId": sub.payment_method_id,
        "paymentMethod": _ref(sub.payment_method),
        "paymentMethodDetail": sub.payment_method_detail,
        "isActive": sub.is_active,
        "autoRenew": sub.auto_renew,
    }


def budget_out(budget: Budget) -> dict[str, Any]:
    return {
        "id": budget.id,
        "categoryId": budget.category_id,
        "category": _ref(budget.category),
        "subCategoryId": budget.sub_category_id,
        "subCategory": _ref(budget.sub_category),
        "amount": cents_to_amount(budget.amount_cents),
        "month": budget.month,
        "createdAt": _iso(budget.created_at),
        "updatedAt": _iso(budget.updated_at),
    }


async def _get_owned(session: AsyncSession, model, obj_id: int, user_id: int, message: str):
    obj = await session.get(model, obj_id)
    if obj is None or obj.user_id != user_id:
        raise NotFoundError(message)
    return obj


async def _commit(session: AsyncSession, conflict: str) -> None:
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicateError(conflict) from exc


async def _count(session: AsyncSession, stmt) -> int:
    return int(await session.scalar(stmt) or 0)


def _parse_category_type(value: Optional[str]) -> Optional[CategoryType]:
    if not value:
        return None
    try:
        return CategoryType(value)
    except ValueError as exc:
        raise ValidationError('Type must be either "expense" or "income"') from exc


def _parse_bool(value: Union[str, bool, None], field: str) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    lowered = value.strip().lower()
    if lowered in {"true", "1"}:
        return True
    if lowered in {"false", "0"}:
        return False
    raise ValidationError(f"{field} must be a boolean value")


def _parse_int(value: Union[str, int, None], default: int, message: str) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(message) from exc


class CategoryService:
    def __init__(
        self, session: AsyncSession, user_id: int, cache: Optional[CacheClient] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.cache = cache or NullCache()
        self.invalidator = CacheInvalidator(self.cache)

    async def get(self, category_id: int) -> Category:
        return await _get_owned(
            self.session, Category, category_id, self.user_id, "Category not found"
        )

    async def _ensure_unique(
        self, name: str, category_type: CategoryType, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.type == category_type,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if await self.session.scalar(stmt) is not None:
            raise DuplicateError(
                f'Category "{name}" already exists for type "{category_type.value}"'
            )

    async def list_all(self, type: Optional[str] = None) -> list[dict[str, Any]]:
        category_type = _parse_category_type(type)
        key = CategoryListKey(
            self.user_id, category_type.value if category_type else None
        ).key()

        async def compute() -> list[dict[str, Any]]:
            stmt = (
                select(Category)
                .where(Category.user_id == self.user_id)
                .order_by(Category.name, Category.id)
            )
            if category_type is not None:
                stmt = stmt.where(Category.type == category_type)
            return [category_out(c) for c in await self.session.scalars(stmt)]

        return await cached(self.cache, key, REFERENCE_LIST_TTL, compute)

    async def create(self, data: CategoryIn) -> dict[str, Any]:
        await self._ensure_unique(data.name, data.type)
        category = Category(user_id=self.user_id, name=data.name, type=data.type)
        self.session.add(category)
        await _commit(
            self.session,
            f'Category "{data.name}" already exists for type "{data.type.value}"',
        )
        await self.invalidator.categories_changed(
            self.user_id, types=[category.type.value]
        )
        return category_out(category)

    async def update(self, category_id: int, data: CategoryUpdate) -> dict[str, Any]:
        category = await self.get(category_id)
        old_type = category.type
        name = data.name if data.name is not None else category.name
        category_type = data.type if data.type is not None else category.type
        await self._ensure_unique(name, category_type, exclude_id=category.id)

        category.name = name
        category.type = category_type
        await _commit(
            self.session,
            f'Category "{name}" already exists for type "{category_type.value}"',
        )
        await self.invalidator.categories_changed(
            self.user_id,
            types=[old_type.value, category_type.value],
            category_ids=[category.id],
            labels_changed=True,
        )
        return category_out(category)

    async def delete(self, category_id: int) -> None:
        category = await self.get(category_id)
        used = await _count(
            self.session,
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                Transaction.category_id == category.id,
            ),
        )
        if used:
            raise ReferenceInUseError(
                f"Cannot delete category. It is used in {used} transaction(s). "
                "Please remove or update those transactions first."
            )
        children = await _count(
            self.session,
            select(func.count(SubCategory.id)).where(
                SubCategory.user_id == self.user_id,
                SubCategory.category_id == category.id,
            ),
        )
        if children:
            raise ReferenceInUseError(
                f"Cannot delete category. It has {children} subcategory(ies). "
                "Please delete those subcategories first."
            )

        await self.session.execute(
            delete(Budget).where(
                Budget.user_id == self.user_id, Budget.category_id == category.id
            )
        )
        await self.session.delete(category)
        await self.session.commit()
        await self.invalidator.categories_changed(
            self.user_id,
            types=[category.type.value],
            category_ids=[category.id],
            labels_changed=True,
        )


class SubCategoryService:
    def __init__(
        self, session: AsyncSession, user_id: int, cache: Optional[CacheClient] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.cache = cache or NullCache()
        self.invalidator = CacheInvalidator(self.cache)

    async def get(self, sub_category_id: int) -> SubCategory:
        stmt = (
            select(SubCategory)
            .options(selectinload(SubCategory.category))
            .where(
                SubCategory.id == sub_category_id,
                SubCategory.user_id == self.user_id,
            )
            .execution_options(populate_existing=True)
        )
        sub = await self.session.scalar(stmt)
        if sub is None:
            raise NotFoundError("SubCategory not found")
        return sub

    async def _ensure_unique(
        self, name: str, category_id: int, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(SubCategory.id).where(
            SubCategory.user_id == self.user_id,
            SubCategory.category_id == category_id,
            func.lower(SubCategory.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(SubCategory.id != exclude_id)
        if await self.session.scalar(stmt) is not None:
            raise DuplicateError(f'SubCategory "{name}" already exists for this category')

    async def list_all(
        self, category_id: Union[str, int, None] = None
    ) -> list[dict[str, Any]]:
        parent = parse_id(category_id, "categoryId")
        key = SubCategoryListKey(self.user_id, parent).key()

        async def compute() -> list[dict[str, Any]]:
            stmt = (
                select(SubCategory)
                .options(selectinload(SubCategory.category))
                .where(SubCategory.user_id == self.user_id)
                .order_by(SubCategory.name, SubCategory.id)
            )
            if parent is not None:
                stmt = stmt.where(SubCategory.category_id == parent)
            return [subcategory_out(s) for s in await self.session.scalars(stmt)]

        return await cached(self.cache, key, REFERENCE_LIST_TTL, compute)

    async def create(self, data: SubCategoryIn) -> dict[str, Any]:
        await CategoryService(self.session, self.user_id).get(data.category_id)
        await self._ensure_unique(data.name, data.category_id)
        sub = SubCategory(
            user_id=self.user_id, category_id=data.category_id, name=data.name
        )
        self.session.add(sub)
        await _commit(
            self.session, f'SubCategory "{data.name}" already exists for this category'
        )
        await self.invalidator.subcategories_changed(
            self.user_id, category_ids=[data.category_id]
        )
        return subcategory_out(await self.get(sub.id))

    async def update(
        self, sub_category_id: int, data: SubCategoryUpdate
    ) -> dict[str, Any]:
        sub = await self.get(sub_category_id)
        old_parent = sub.category_id
        parent = data.category_id if data.category_id is not None else sub.category_id
        if parent != old_parent:
            await CategoryService(self.session, self.user_id).get(parent)
        name = data.name if data.name is not None else sub.name
        await self._ensure_unique(name, parent, exclude_id=sub.id)

        sub.name = name
        sub.category_id = parent
        await _commit(self.session, f'SubCategory "{name}" already exists for this category')
        await self.invalidator.subcategories_changed(
            self.user_id, category_ids=[old_parent, parent], labels_changed=True
        )
        return subcategory_out(await self.get(sub.id))

    async def delete(self, sub_category_id: int) -> None:
        sub = await self.get(sub_category_id)
        used = await _count(
            self.session,
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                Transaction.sub_category_id == sub.id,
            ),
        )
        if used:
            raise ReferenceInUseError(
                f"Cannot delete subcategory. It is used in {used} transaction(s). "
                "Please remove or update those transactions first."
            )
        await self.session.execute(
            delete(Budget).where(
                Budget.user_id == self.user_id, Budget.sub_category_id == sub.id
            )
        )
        parent = sub.category_id
        await self.session.delete(sub)
        await self.session.commit()
        await self.invalidator.subcategories_changed(
            self.user_id, category_ids=[parent], labels_changed=True
        )


class TagService:
    def __init__(
        self, session: AsyncSession, user_id: int, cache: Optional[CacheClient] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.cache = cache or NullCache()
        self.invalidator = CacheInvalidator(self.cache)

    async def get(self, tag_id: int) -> Tag:
        return await _get_owned(self.session, Tag, tag_id, self.user_id, "Tag not found")

    async def _ensure_unique(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(Tag.id).where(
            Tag.user_id == self.user_id, func.lower(Tag.name) == name.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Tag.id != exclude_id)
        if await self.session.scalar(stmt) is not None:
            raise DuplicateError(f'Tag "{name}" already exists')

    async def list_all(self) -> list[dict[str, Any]]:
        stmt = select(Tag).where(Tag.user_id == self.user_id).order_by(Tag.name)
        return [tag_out(tag) for tag in await self.session.scalars(stmt)]

    async def create(self, data: TagIn) -> dict[str, Any]:
        await self._ensure_unique(data.name)
        tag = Tag(user_id=self.user_id, name=data.name, color=data.color)
        self.session.add(tag)
        await _commit(self.session, f'Tag "{data.name}" already exists')
        return tag_out(tag)

    async def update(self, tag_id: int, data: TagUpdate) -> dict[str, Any]:
        tag = await self.get(tag_id)
        if data.name is not None:
            await self._ensure_unique(data.name, exclude_id=tag.id)
            tag.name = data.name
        if "color" in data.model_fields_set:
            tag.color = data.color
        await _commit(self.session, f'Tag "{tag.name}" already exists')
        await self.invalidator.dimension_labels_changed(self.user_id)
        return tag_out(tag)

    async def delete(self, tag_id: int) -> None:
        tag = await self.get(tag_id)
        used = await _count(
            self.session,
            select(func.count())
            .select_from(transaction_tags)
            .where(transaction_tags.c.tag_id == tag.id),
        )
        if used:
            raise ReferenceInUseError(
                f"Cannot delete tag. It is used in {used} transaction(s). "
                "Please remove or update those transactions first."
            )
        await self.session.delete(tag)
        await self.session.commit()
        await self.invalidator.dimension_labels_changed(self.user_id)


class PaymentMethodService:
    def __init__(
        self, session: AsyncSession, user_id: int, cache: Optional[CacheClient] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.cache = cache or NullCache()
        self.invalidator = CacheInvalidator(self.cache)

    async def get(self, payment_method_id: int) -> PaymentMethod:
        return await _get_owned(
            self.session,
            PaymentMethod,
            payment_method_id,
            self.user_id,
            "Payment method not found",
        )

    async def _ensure_unique(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(PaymentMethod.id).where(
            PaymentMethod.user_id == self.user_id,
            func.lower(PaymentMethod.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(PaymentMethod.id != exclude_id)
        if await self.session.scalar(stmt) is not None:
            raise DuplicateError(f'Payment method "{name}" already exists')

    async def list_all(self) -> list[dict[str, Any]]:
        stmt = (
            select(PaymentMethod)
            .where(PaymentMethod.user_id == self.user_id)
            .order_by(PaymentMethod.name)
        )
        return [payment_method_out(m) for m in await self.session.scalars(stmt)]

    async def create(self, data: PaymentMethodIn) -> dict[str, Any]:
        await self._ensure_unique(data.name)
        method = PaymentMethod(
            user_id=self.user_id,
            name=data.name,
            icon=data.icon,
            type=data.type,
            detail_label=data.detail_label,
        )
        self.session.add(method)
        await _commit(self.session, f'Payment method "{data.name}" already exists')
        return payment_method_out(method)

    async def update(
        self, payment_method_id: int, data: PaymentMethodUpdate
    ) -> dict[str, Any]:
        method = await self.get(payment_method_id)
        if data.name is not None:
            await self._ensure_unique(data.name, exclude_id=method.id)
            method.name = data.name
        if data.icon is not None:
            method.icon = data.icon
        if data.type is not None:
            method.type = data.type
        if "detail_label" in data.model_fields_set:
            method.detail_label = data.detail_label
        await _commit(self.session, f'Payment method "{method.name}" already exists')
        await self.invalidator.dimension_labels_changed(self.user_id)
        return payment_method_out(method)

    async def delete(self, payment_method_id: int) -> None:
        method = await self.get(payment_method_id)
        used = await _count(
            self.session,
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                Transaction.payment_method_id == method.id,
            ),
        )
        if used:
            raise ReferenceInUseError(
                f"Cannot delete payment method. It is used in {used} transaction(s). "
                "Please remove or update those transactions first."
            )
        subscribed = await _count(
            self.session,
            select(func.count(Subscription.id)).where(
                Subscription.user_id == self.user_id,
                Subscription.payment_method_id == method.id,
            ),
        )
        if subscribed:
            raise ReferenceInUseError(
                f"Cannot delete payment method. It is used in {subscribed} "
                "subscription(s). Please remove or update those subscriptions first."
            )
        await self.session.delete(method)
        await self.session.commit()
        await self.invalidator.dimension_labels_changed(self.user_id)


def _transaction_clauses(
    user_id: int,
    txn_type: Optional[TransactionType],
    start: Optional[datetime],
    end: Optional[datetime],
    category_id: Optional[int] = None,
    tag_id: Optional[int] = None,
) -> list[Any]:
    clauses: list[Any] = [Transaction.user_id == user_id]
    if txn_type is not None:
        clauses.append(Transaction.type == txn_type)
    if start is not None:
        clauses.append(Transaction.date >= start)
    if end is not None:
        clauses.append(Transaction.date <= end)
    if category_id is not None:
        clauses.append(Transaction.category_id == category_id)
    if tag_id is not None:
        clauses.append(
            Transaction.id.in_(
                select(transaction_tags.c.transaction_id).where(
                    transaction_tags.c.tag_id == tag_id
                )
            )
        )
    return clauses


def _date_bounds(
    start_date: Optional[str], end_date: Optional[str]
) -> tuple[Optional[datetime], Optional[datetime]]:
    start = end = None
    if start_date:
        start = datetime.combine(parse_calendar_date(start_date, "startDate"), time.min)
    if end_date:
        end = datetime.combine(parse_calendar_date(end_date, "endDate"), END_OF_DAY)
    if start is not None and end is not None and start > end:
        raise ValidationError("startDate must be before or equal to endDate")
    return start, end


def _with_details(stmt):
    return stmt.options(
        selectinload(Transaction.category),
        selectinload(Transaction.sub_category),
        selectinload(Transaction.payment_method),
        selectinload(Transaction.tags),
    )


class TransactionService:
    def __init__(
        self, session: AsyncSession, user_id: int, cache: Optional[CacheClient] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.cache = cache or NullCache()
        self.invalidator = CacheInvalidator(self.cache)

    async def _load(self, transaction_id: int) -> Transaction:
        stmt = (
            _with_details(select(Transaction))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
            .execution_options(populate_existing=True)
        )
        txn = await self.session.scalar(stmt)
        if txn is None:
            raise NotFoundError("Transaction not found")
        return txn

    async def get(self, transaction_id: int) -> dict[str, Any]:
        return transaction_out(await self._load(transaction_id))

    async def _check_references(
        self,
        category_id: Optional[int],
        sub_category_id: Optional[int],
        payment_method_id: Optional[int],
        tag_ids: Iterable[int] = (),
    ) -> None:
        if category_id is not None:
            await CategoryService(self.session, self.user_id).get(category_id)
        if sub_category_id is not None:
            sub = await _get_owned(
                self.session,
                SubCategory,
                sub_category_id,
                self.user_id,
                "SubCategory not found",
            )
            if category_id is not None and sub.category_id != category_id:
                raise ValidationError(
                    "SubCategory does not belong to the specified category"
                )
        if payment_method_id is not None:
            await PaymentMethodService(self.session, self.user_id).get(payment_method_id)
        wanted = set(tag_ids)
        if wanted:
            found = set(
                await self.session.scalars(
                    select(Tag.id).where(Tag.user_id == self.user_id, Tag.id.in_(wanted))
                )
            )
            if found != wanted:
                raise NotFoundError("One or more tags not found")

    async def _replace_tags(self, transaction_id: int, tag_ids: list[int]) -> None:
        await self.session.execute(
            delete(transaction_tags).where(
                transaction_tags.c.transaction_id == transaction_id
            )
        )
        if tag_ids:
            await self.session.execute(
                insert(transaction_tags),
                [{"transaction_id": transaction_id, "tag_id": t} for t in tag_ids],
            )

    async def create(self, data: TransactionIn) -> dict[str, Any]:
        tag_ids = list(dict.fromkeys(data.tags))
        await self._check_references(
            data.category_id, data.sub_category_id, data.payment_method_id, tag_ids
        )
        txn = Transaction(
            user_id=self.user_id,
            type=data.type,
            amount_cents=to_cents(data.amount),
            date=data.date,
            category_id=data.category_id,
            sub_category_id=data.sub_category_id,
            payment_method_id=data.payment_method_id,
            payment_method_detail=data.payment_method_detail,
            account=data.account,
            notes=data.notes,
        )
        self.session.add(txn)
        await self.session.flush()
        await self._replace_tags(txn.id, tag_ids)
        await self.session.commit()
        await self.invalidator.transactions_changed(
            self.user_id, dates=[txn.date], category_ids=[txn.category_id]
        )
        return await self.get(txn.id)

    async def update(self, transaction_id: int, data: TransactionUpdate) -> dict[str, Any]:
        txn = await self._load(transaction_id)
        fields = data.model_fields_set
        old_date = txn.date
        old_category_id = txn.category_id

        category_id = data.category_id if "category_id" in fields else txn.category_id
        sub_category_id = (
            data.sub_category_id if "sub_category_id" in fields else txn.sub_category_id
        )
        payment_method_id = (
            data.payment_method_id
            if "payment_method_id" in fields
            else txn.payment_method_id
        )
        tag_ids = None
        if "tags" in fields and data.tags is not None:
            tag_ids = list(dict.fromkeys(data.tags))

        refs_changed = (
            category_id != txn.category_id or sub_category_id != txn.sub_category_id
        )
        await self._check_references(
            category_id if refs_changed else None,
            sub_category_id if refs_changed else None,
            payment_method_id if payment_method_id != txn.payment_method_id else None,
            tag_ids or (),
        )

        if data.type is not None:
            txn.type = data.type
        if data.amount is not None:
            txn.amount_cents = to_cents(data.amount)
        if data.date is not None:
            txn.date = data.date
        if data.account is not None:
            txn.account = data.account
        txn.category_id = category_id
        txn.sub_category_id = sub_category_id
        txn.payment_method_id = payment_method_id
        if "payment_method_detail" in fields:
            txn.payment_method_detail = data.payment_method_detail
        if "notes" in fields:
            txn.notes = data.notes
        if tag_ids is not None:
            await self._replace_tags(txn.id, tag_ids)
        await self.session.commit()

        await self.invalidator.transactions_changed(
            self.user_id,
            dates=[old_date, txn.date],
            category_ids=[old_category_id, txn.category_id],
        )
        return await self.get(txn.id)

    async def delete(self, transaction_id: int) -> None:
        txn = await self._load(transaction_id)
        txn_date = txn.date
        category_id = txn.category_id
        await self._replace_tags(txn.id, [])
        await self.session.delete(txn)
        await self.session.commit()
        await self.invalidator.transactions_changed(
            self.user_id, dates=[txn_date], category_ids=[category_id]
        )

    async def list(
        self,
        *,
        type: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        category_id: Union[str, int, None] = None,
        tag: Union[str, int, None] = None,
        page: Union[str, int, None] = None,
        limit: Union[str, int, None] = None,
    ) -> dict[str, Any]:
        txn_type = parse_transaction_type(type) if type else None
        start, end = _date_bounds(start_date, end_date)
        category = parse_id(category_id, "categoryId")
        tag_id = parse_id(tag, "tag ID")
        page_size = _parse_int(limit, DEFAULT_PAGE_SIZE, "Limit must be between 1 and 100")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError("Limit must be between 1 and 100")
        page_number = _parse_int(page, 1, "Page must be greater than 0")
        if page_number < 1:
            raise ValidationError("Page must be greater than 0")

        clauses = _transaction_clauses(
            self.user_id, txn_type, start, end, category, tag_id
        )

        async def compute() -> dict[str, Any]:
            total = await _count(
                self.session, select(func.count(Transaction.id)).where(*clauses)
            )
            stmt = (
                _with_details(select(Transaction))
                .where(*clauses)
                .order_by(Transaction.date.desc(), Transaction.id.desc())
                .offset((page_number - 1) * page_size)
                .limit(page_size)
            )
            rows = await self.session.scalars(stmt)
            return {
                "success": True,
                "data": [transaction_out(txn) for txn in rows],
                "pagination": {
                    "page": page_number,
                    "limit": page_size,
                    "total": total,
                    "pages": math.ceil(total / page_size) if total else 0,
                },
            }

        if page_number != 1 or page_size != DEFAULT_PAGE_SIZE:
            return await compute()
        key = TransactionPageKey(
            self.user_id,
            type=txn_type.value if txn_type else None,
            start_date=start.date().isoformat() if start else None,
            end_date=end.date().isoformat() if end else None,
            category_id=category,
            tag_id=tag_id,
        ).key()
        return await cached(self.cache, key, TRANSACTIONS_PAGE_TTL, compute)


class SubscriptionService:
    def __init__(
        self, session: AsyncSession, user_id: int, cache: Optional[CacheClient] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.cache = cache or NullCache()
        self.invalidator = CacheInvalidator(self.cache)

    async def _load(self, subscription_id: int) -> Subscription:
        stmt = (
            select(Subscription)
            .options(
                selectinload(Subscription.category),
                selectinload(Subscription.payment_method),
            )
            .where(
                Subscription.user_id == self.user_id,
                Subscription.id == subscription_id,
            )
            .execution_options(populate_existing=True)
        )
        sub = await self.session.scalar(stmt)
        if sub is None:
            raise NotFoundError("Subscription not found")
        return sub

    async def get(self, subscription_id: int) -> dict[str, Any]:
        return subscription_out(await self._load(subscription_id))

    async def _check_references(
        self, category_id: Optional[int], payment_method_id: Optional[int]
    ) -> None:
        if category_id is not None:
            await CategoryService(self.session, self.user_id).get(category_id)
        if payment_method_id is not None:
            await PaymentMethodService(self.session, self.user_id).get(payment_method_id)

    async def list_all(
        self, is_active: Union[str, bool, None] = None
    ) -> list[dict[str, Any]]:
        active = _parse_bool(is_active, "isActive")
        stmt = (
            select(Subscription)
            .options(
                selectinload(Subscription.category),
                selectinload(Subscription.payment_method),
            )
            .where(Subscription.user_id == self.user_id)
            .order_by(Subscription.next_payment_date, Subscription.id)
        )
        if active is not None:
            stmt = stmt.where(Subscription.is_active.is_(active))
        return [subscription_out(s) for s in await self.session.scalars(stmt)]

    async def create(self, data: SubscriptionIn) -> dict[str, Any]:
        await self._check_references(data.category_id, data.payment_method_id)
        sub = Subscription(
            user_id=self.user_id,
            name=data.name,
            amount_cents=to_cents(data.amount),
            category_id=data.category_id,
            billing_cycle=data.billing_cycle,
            next_payment_date=data.next_payment_date,
            payment_method_id=data.payment_method_id,
            payment_method_detail=data.payment_method_detail,
            is_active=data.is_active,
            auto_renew=data.auto_renew,
        )
        self.session.add(sub)
        await self.session.commit()
        await self.invalidator.subscriptions_changed(self.user_id)
        return await self.get(sub.id)

    async def update(
        self, subscription_id: int, data: SubscriptionUpdate
    ) -> dict[str, Any]:
        sub = await self._load(subscription_id)
        fields = data.model_fields_set
        category_id = data.category_id if "category_id" in fields else sub.category_id
        payment_method_id = (
            data.payment_method_id
            if "payment_method_id" in fields
            else sub.payment_method_id
        )
        await self._check_references(
            category_id if category_id != sub.category_id else None,
            payment_method_id if payment_method_id != sub.payment_method_id else None,
        )

        if data.name is not None:
            sub.name = data.name
        if data.amount is not None:
            sub.amount_cents = to_cents(data.amount)
        if data.billing_cycle is not None:
            sub.billing_cycle = data.billing_cycle
        if data.next_payment_date is not None:
            sub.next_payment_date = data.next_payment_date
        if data.is_active is not None:
            sub.is_active = data.is_active
        if data.auto_renew is not None:
            sub.auto_renew = data.auto_renew
        if "payment_method_detail" in fields:
            sub.payment_method_detail = data.payment_method_detail
        sub.category_id = category_id
        sub.payment_method_id = payment_method_id
        await self.session.commit()
        await self.invalidator.subscriptions_changed(self.user_id)
        return await self.get(sub.id)

    async def delete(self, subscription_id: int) -> None:
        sub = await self._load(subscription_id)
        await self.session.delete(sub)
        await self.session.commit()
        await self.invalidator.subscriptions_changed(self.user_id)


def _check_budget_scope(category_id: Optional[int], sub_category_id: Optional[int]) -> None:
    if category_id is None and sub_category_id is None:
        raise ValidationError("Either categoryId or subCategoryId must be provided")
    if category_id is not None and sub_category_id is not None:
        raise ValidationError(
            "Cannot provide both categoryId and subCategoryId. Provide only one."
        )


class BudgetService:
    def __init__(self, session: AsyncSession, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    async def _load(self, budget_id: int) -> Budget:
        stmt = (
            select(Budget)
            .options(selectinload(Budget.category), selectinload(Budget.sub_category))
            .where(Budget.user_id == self.user_id, Budget.id == budget_id)
            .execution_options(populate_existing=True)
        )
        budget = await self.session.scalar(stmt)
        if budget is None:
            raise NotFoundError("Budget not found")
        return budget

    async def get(self, budget_id: int) -> dict[str, Any]:
        return budget_out(await self._load(budget_id))

    async def _check_scope(
        self,
        category_id: Optional[int],
        sub_category_id: Optional[int],
        month: str,
        exclude_id: Optional[int] = None,
    ) -> None:
        _check_budget_scope(category_id, sub_category_id)
        parse_month(month)
        if category_id is not None:
            await CategoryService(self.session, self.user_id).get(category_id)
            column, value, entity = Budget.category_id, category_id, "category"
        else:
            await SubCategoryService(self.session, self.user_id).get(sub_category_id)
            column, value, entity = Budget.sub_category_id, sub_category_id, "subcategory"
        stmt = select(Budget.id).where(
            Budget.user_id == self.user_id, column == value, Budget.month == month
        )
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        if await self.session.scalar(stmt) is not None:
            raise DuplicateError(f"Budget already exists for this {entity} in {month}")

    async def list_all(
        self,
        month: Optional[str] = None,
        category_id: Union[str, int, None] = None,
        sub_category_id: Union[str, int, None] = None,
    ) -> list[dict[str, Any]]:
        stmt = (
            select(Budget)
            .options(selectinload(Budget.category), selectinload(Budget.sub_category))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.month.desc(), Budget.created_at.desc(), Budget.id.desc())
        )
        if month:
            parse_month(month)
            stmt = stmt.where(Budget.month == month)
        category = parse_id(category_id, "categoryId")
        if category is not None:
            stmt = stmt.where(Budget.category_id == category)
        sub_category = parse_id(sub_category_id, "subCategoryId")
        if sub_category is not None:
            stmt = stmt.where(Budget.sub_category_id == sub_category)
        return [budget_out(b) for b in await self.session.scalars(stmt)]

    async def create(self, data: BudgetIn) -> dict[str, Any]:
        await self._check_scope(data.category_id, data.sub_category_id, data.month)
        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            sub_category_id=data.sub_category_id,
            amount_cents=to_cents(data.amount),
            month=data.month,
        )
        self.session.add(budget)
        await _commit(self.session, "Budget already exists for this scope and month")
        return await self.get(budget.id)

    async def update(self, budget_id: int, data: BudgetUpdate) -> dict[str, Any]:
        budget = await self._load(budget_id)
        fields = data.model_fields_set
        category_id = data.category_id if "category_id" in fields else budget.category_id
        sub_category_id = (
            data.sub_category_id if "sub_category_id" in fields else budget.sub_category_id
        )
        month = data.month if data.month is not None else budget.month
        await self._check_scope(category_id, sub_category_id, month, exclude_id=budget.id)

        budget.category_id = category_id
        budget.sub_category_id = sub_category_id
        budget.month = month
        if data.amount is not None:
            budget.amount_cents = to_cents(data.amount)
        await _commit(self.session, "Budget already exists for this scope and month")
        return await self.get(budget.id)

    async def delete(self, budget_id: int) -> None:
        budget = await self._load(budget_id)
        await self.session.delete(budget)
        await self.session.commit()

    async def _spent_by(self, column, start: datetime, end: datetime) -> dict[int, int]:
        stmt = (
            select(column, func.coalesce(func.sum(Transaction.amount_cents), 0))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(start, end),
                column.is_not(None),
            )
            .group_by(column)
        )
        return {row[0]: int(row[1] or 0) for row in await self.session.execute(stmt)}

    async def progress_for_month(self, month: str) -> list[dict[str, Any]]:
        year, month_num = parse_month(month)
        start, end = month_bounds(year, month_num)
        budgets = await self.list_all(month=month)
        by_category = await self._spent_by(Transaction.category_id, start, end)
        by_sub_category = await self._spent_by(Transaction.sub_category_id, start, end)

        progress = []
        for row in budgets:
            if row["categoryId"] is not None:
                spent_cents = by_category.get(row["categoryId"], 0)
            else:
                spent_cents = by_sub_category.get(row["subCategoryId"], 0)
            budget_cents = to_cents(row["amount"])
            progress.append(
                {
                    **row,
                    "spent": cents_to_amount(spent_cents),
                    "remaining": cents_to_amount(budget_cents - spent_cents),
                    "percentUsed": round_currency(
                        Decimal(spent_cents) / Decimal(budget_cents) * 100
                    ),
                }
            )
        return progress


class ExportService:
    def __init__(self, session: AsyncSession, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    async def transactions_csv(
        self,
        type: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> str:
        txn_type = parse_transaction_type(type) if type else None
        start, end = _date_bounds(start_date, end_date)
        stmt = (
            _with_details(select(Transaction))
            .where(*_transaction_clauses(self.user_id, txn_type, start, end))
            .order_by(Transaction.date, Transaction.id)
        )
        transactions = list(await self.session.scalars(stmt))
        logger.info(f"exporting {len(transactions)} transactions for user {self.user_id}")
        return export_transactions(transactions)

    async def subscriptions_csv(self) -> str:
        stmt = (
            select(Subscription)
            .options(selectinload(Subscription.payment_method))
            .where(Subscription.user_id == self.user_id)
            .order_by(Subscription.name, Subscription.id)
        )
        return export_subscriptions(list(await self.session.scalars(stmt)))
