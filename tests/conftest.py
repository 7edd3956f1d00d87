import os
import tempfile
from datetime import date, datetime
from typing import Iterable, Optional

os.environ.setdefault("FINANCE_DATA_DIR", tempfile.mkdtemp(prefix="finance-tests-"))
os.environ["FINANCE_TIMEZONE"] = "UTC"
os.environ.pop("FINANCE_REDIS_URL", None)

import httpx
import pytest
from sqlalchemy import insert
from sqlalchemy.pool import NullPool

from cache import RedisCache
from database import Base, create_engine_for_url, make_sessionmaker
from fakes import BrokenRedis, MemoryCache, auth_headers
from models import (
    Account,
    BillingCycle,
    Category,
    CategoryType,
    PaymentMethod,
    PaymentMethodType,
    SubCategory,
    Subscription,
    Tag,
    Transaction,
    TransactionType,
    transaction_tags,
)
from money import to_cents


class Seeder:
    def __init__(self, session) -> None:
        self.session = session

    async def _add(self, obj):
        self.session.add(obj)
        await self.session.commit()
        return obj

    async def category(
        self, name: str, type: CategoryType = CategoryType.expense, user_id: int = 1
    ) -> Category:
        return await self._add(Category(user_id=user_id, name=name, type=type))

    async def subcategory(
        self, category: Category, name: str, user_id: int = 1
    ) -> SubCategory:
        return await self._add(
            SubCategory(user_id=user_id, category_id=category.id, name=name)
        )

    async def tag(self, name: str, user_id: int = 1) -> Tag:
        return await self._add(Tag(user_id=user_id, name=name))

    async def payment_method(self, name: str, user_id: int = 1) -> PaymentMethod:
        return await self._add(
            PaymentMethod(
                user_id=user_id, name=name, icon="card", type=PaymentMethodType.card
            )
        )

    async def transaction(
        self,
        amount,
        when: datetime,
        *,
        type: TransactionType = TransactionType.expense,
        user_id: int = 1,
        category_id: Optional[int] = None,
        sub_category_id: Optional[int] = None,
        payment_method_id: Optional[int] = None,
        tag_ids: Iterable[int] = (),
        notes: Optional[str] = None,
    ) -> Transaction:
        txn = Transaction(
            user_id=user_id,
            type=type,
            amount_cents=to_cents(amount),
            date=when,
            category_id=category_id,
            sub_category_id=sub_category_id,
            payment_method_id=payment_method_id,
            account=Account.self_,
            notes=notes,
        )
        self.session.add(txn)
        await self.session.flush()
        tag_ids = list(tag_ids)
        if tag_ids:
            await self.session.execute(
                insert(transaction_tags),
                [{"transaction_id": txn.id, "tag_id": t} for t in tag_ids],
            )
        await self.session.commit()
        return txn

    async def subscription(
        self,
        name: str,
        amount,
        next_payment_date: date,
        *,
        billing_cycle: BillingCycle = BillingCycle.monthly,
        is_active: bool = True,
        user_id: int = 1,
        payment_method_id: Optional[int] = None,
    ) -> Subscription:
        return await self._add(
            Subscription(
                user_id=user_id,
                name=name,
                amount_cents=to_cents(amount),
                billing_cycle=billing_cycle,
                next_payment_date=next_payment_date,
                payment_method_id=payment_method_id,
                is_active=is_active,
            )
        )


@pytest.fixture
async def engine(tmp_path):
    eng = create_engine_for_url(
        f"sqlite+aiosqlite:///{tmp_path / 'finance.db'}", poolclass=NullPool
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_sessionmaker(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def seed(session) -> Seeder:
    return Seeder(session)


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def failing_cache() -> RedisCache:
    return RedisCache(BrokenRedis())


@pytest.fixture
async def client(session_factory, cache):
    from main import app, get_cache, get_db, get_session_factory

    async def override_db():
        async with session_factory() as db:
            yield db

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_cache] = lambda: cache
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://test", headers=auth_headers(1)
    ) as http:
        yield http
    app.dependency_overrides.clear()
