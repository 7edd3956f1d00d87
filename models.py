from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    expense = "expense"
    income = "income"
    savings = "savings"
    investment = "investment"


class CategoryType(str, Enum):
    expense = "expense"
    income = "income"


class Account(str, Enum):
    self_ = "self"
    family = "family"


class PaymentMethodType(str, Enum):
    card = "card"
    digital_wallet = "digital_wallet"
    cash = "cash"
    bank = "bank"
    other = "other"


class BillingCycle(str, Enum):
    monthly = "monthly"
    yearly = "yearly"


def _values(enum_cls):
    return [member.value for member in enum_cls]


ACCOUNT_ENUM = SAEnum(Account, name="account", values_callable=_values)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "name", "type", name="uq_category_user_name_type"),
    )


class SubCategory(Base, TimestampMixin):
    __tablename__ = "subcategories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint(
            "user_id", "category_id", "name", name="uq_subcategory_user_category_name"
        ),
    )


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_tag_user_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(9))


class PaymentMethod(Base, TimestampMixin):
    __tablename__ = "payment_methods"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_payment_method_user_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    icon: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[PaymentMethodType] = mapped_column(
        SAEnum(PaymentMethodType), nullable=False, default=PaymentMethodType.other
    )
    detail_label: Mapped[Optional[str]] = mapped_column(String(100))


# Dimension references on transactions are soft: the referenced row may be
# deleted later and analytics substitute a fallback label.
transaction_tags = Table(
    "transaction_tags",
    Base.metadata,
    Column(
        "transaction_id",
        Integer,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("tag_id", Integer, primary_key=True, index=True),
)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(Integer)
    sub_category_id: Mapped[Optional[int]] = mapped_column(Integer)
    payment_method_id: Mapped[Optional[int]] = mapped_column(Integer)
    payment_method_detail: Mapped[Optional[str]] = mapped_column(String(100))
    account: Mapped[Account] = mapped_column(
        ACCOUNT_ENUM, nullable=False, default=Account.self_
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped[Optional["Category"]] = relationship(
        "Category",
        primaryjoin="foreign(Transaction.category_id) == Category.id",
        viewonly=True,
    )
    sub_category: Mapped[Optional["SubCategory"]] = relationship(
        "SubCategory",
        primaryjoin="foreign(Transaction.sub_category_id) == SubCategory.id",
        viewonly=True,
    )
    payment_method: Mapped[Optional["PaymentMethod"]] = relationship(
        "PaymentMethod",
        primaryjoin="foreign(Transaction.payment_method_id) == PaymentMethod.id",
        viewonly=True,
    )
    tags: Mapped[list["Tag"]] = relationship(
        "Tag",
        secondary=transaction_tags,
        primaryjoin="Transaction.id == transaction_tags.c.transaction_id",
        secondaryjoin="foreign(transaction_tags.c.tag_id) == Tag.id",
        order_by="Tag.name",
        viewonly=True,
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_type_date", "user_id", "type", "date"),
        Index("ix_transactions_user_category_date", "user_id", "category_id", "date"),
        Index(
            "ix_transactions_user_payment_method_date",
            "user_id",
            "payment_method_id",
            "date",
        ),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class Subscription(Base, TimestampMixin):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(Integer)
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        SAEnum(BillingCycle), nullable=False
    )
    next_payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_method_id: Mapped[Optional[int]] = mapped_column(Integer)
    payment_method_detail: Mapped[Optional[str]] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped[Optional["Category"]] = relationship(
        "Category",
        primaryjoin="foreign(Subscription.category_id) == Category.id",
        viewonly=True,
    )
    payment_method: Mapped[Optional["PaymentMethod"]] = relationship(
        "PaymentMethod",
        primaryjoin="foreign(Subscription.payment_method_id) == PaymentMethod.id",
        viewonly=True,
    )

    __table_args__ = (
        Index("ix_subscriptions_user_active_next", "user_id", "is_active", "next_payment_date"),
        CheckConstraint("amount_cents > 0", name="ck_subscriptions_amount_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    sub_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("subcategories.id")
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)

    category: Mapped[Optional["Category"]] = relationship("Category")
    sub_category: Mapped[Optional["SubCategory"]] = relationship("SubCategory")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
        CheckConstraint(
            "(category_id IS NULL) <> (sub_category_id IS NULL)",
            name="ck_budget_single_scope",
        ),
        UniqueConstraint(
            "user_id", "category_id", "month", name="uq_budget_user_category_month"
        ),
        UniqueConstraint(
            "user_id",
            "sub_category_id",
            "month",
            name="uq_budget_user_subcategory_month",
        ),
        Index("ix_budget_user_month", "user_id", "month"),
    )
