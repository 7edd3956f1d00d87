"""initial finance schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None

TRANSACTION_TYPE = sa.Enum(
    "expense", "income", "savings", "investment", name="transactiontype"
)
CATEGORY_TYPE = sa.Enum("expense", "income", name="categorytype")
ACCOUNT = sa.Enum("self", "family", name="account")
PAYMENT_METHOD_TYPE = sa.Enum(
    "card", "digital_wallet", "cash", "bank", "other", name="paymentmethodtype"
)
BILLING_CYCLE = sa.Enum("monthly", "yearly", name="billingcycle")


def _timestamps():
    return [
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    ]


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", CATEGORY_TYPE, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", "type", name="uq_category_user_name_type"),
    )
    op.create_index("ix_categories_user_id", "categories", ["user_id"])

    op.create_table(
        "subcategories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "category_id", "name", name="uq_subcategory_user_category_name"
        ),
    )
    op.create_index("ix_subcategories_user_id", "subcategories", ["user_id"])

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("color", sa.String(length=9), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_tag_user_name"),
    )
    op.create_index("ix_tags_user_id", "tags", ["user_id"])

    op.create_table(
        "payment_methods",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("icon", sa.String(length=100), nullable=False),
        sa.Column("type", PAYMENT_METHOD_TYPE, nullable=False),
        sa.Column("detail_label", sa.String(length=100), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_payment_method_user_name"),
    )
    op.create_index("ix_payment_methods_user_id", "payment_methods", ["user_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("sub_category_id", sa.Integer(), nullable=True),
        sa.Column("payment_method_id", sa.Integer(), nullable=True),
        sa.Column("payment_method_detail", sa.String(length=100), nullable=True),
        sa.Column("account", ACCOUNT, nullable=False, server_default="self"),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_type_date", "transactions", ["user_id", "type", "date"]
    )
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category_id", "date"],
    )
    op.create_index(
        "ix_transactions_user_payment_method_date",
        "transactions",
        ["user_id", "payment_method_id", "date"],
    )

    op.create_table(
        "transaction_tags",
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), primary_key=True),
    )
    op.create_index("ix_transaction_tags_tag_id", "transaction_tags", ["tag_id"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("billing_cycle", BILLING_CYCLE, nullable=False),
        sa.Column("next_payment_date", sa.Date(), nullable=False),
        sa.Column("payment_method_id", sa.Integer(), nullable=True),
        sa.Column("payment_method_detail", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_subscriptions_amount_positive"),
    )
    op.create_index(
        "ix_subscriptions_user_active_next",
        "subscriptions",
        ["user_id", "is_active", "next_payment_date"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column(
            "sub_category_id",
            sa.Integer(),
            sa.ForeignKey("subcategories.id"),
            nullable=True,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("month", sa.String(length=7), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
        sa.CheckConstraint(
            "(category_id IS NULL) <> (sub_category_id IS NULL)",
            name="ck_budget_single_scope",
        ),
        sa.UniqueConstraint(
            "user_id", "category_id", "month", name="uq_budget_user_category_month"
        ),
        sa.UniqueConstraint(
            "user_id",
            "sub_category_id",
            "month",
            name="uq_budget_user_subcategory_month",
        ),
    )
    op.create_index("ix_budget_user_month", "budgets", ["user_id", "month"])


def downgrade():
    op.drop_table("budgets")
    op.drop_table("subscriptions")
    op.drop_table("transaction_tags")
    op.drop_table("transactions")
    op.drop_table("payment_methods")
    op.drop_table("tags")
    op.drop_table("subcategories")
    op.drop_table("categories")
