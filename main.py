import logging
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from analytics import AnalyticsService, SubscriptionAlertService
from auth import current_user_id
from cache import CacheClient, NullCache, create_cache
from config import get_settings
from database import SessionLocal
from errors import DataStoreError, NotFoundError, ValidationError
from periods import local_now, month_key
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
from services import (
    BudgetService,
    CategoryService,
    ExportService,
    PaymentMethodService,
    SubCategoryService,
    SubscriptionService,
    TagService,
    TransactionService,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker API")


async def get_db():
    async with SessionLocal() as db:
        yield db


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return SessionLocal


def get_cache(request: Request) -> CacheClient:
    cache = getattr(request.app.state, "cache", None)
    return cache if cache is not None else NullCache()


@app.on_event("startup")
async def startup_event():
    app.state.cache = create_cache(get_settings())


@app.on_event("shutdown")
async def shutdown_event():
    cache = getattr(app.state, "cache", None)
    if cache is not None:
        await cache.close()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"success": False, "error": message}
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error(400, str(exc))


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error(404, str(exc))


@app.exception_handler(DataStoreError)
async def data_store_error_handler(request: Request, exc: DataStoreError):
    return _error(500, str(exc))


@app.exception_handler(SQLAlchemyError)
async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception(f"database error on {request.method} {request.url.path}")
    return _error(500, "Internal server error")


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if not errors:
        return _error(400, "Invalid request")
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid value")
    return _error(400, f"{field}: {message}" if field else message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, str(exc.detail))


def _ok(data) -> dict:
    return {"success": True, "data": data}


def _deleted(entity: str) -> dict:
    return {"success": True, "message": f"{entity} deleted successfully"}


def _csv_response(csv_text: str, prefix: str) -> StreamingResponse:
    filename = f"{prefix}_{local_now().date().isoformat()}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/health")
async def health():
    return {"success": True, "status": "ok"}


@app.get("/api/analytics/dashboard")
async def analytics_dashboard(
    month: Optional[str] = None,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    return await AnalyticsService(db, user_id, cache).dashboard(
        month, start_date, end_date
    )


@app.get("/api/analytics/charts")
async def analytics_charts(
    type: Optional[str] = None,
    chart_type: Optional[str] = Query(None, alias="chartType"),
    month: Optional[str] = None,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    category_id: Optional[str] = Query(None, alias="categoryId"),
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    return await AnalyticsService(db, user_id, cache).charts(
        type, chart_type, month, start_date, end_date, category_id
    )


@app.get("/api/transactions")
async def list_transactions(
    type: Optional[str] = None,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    category_id: Optional[str] = Query(None, alias="categoryId"),
    tag: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    return await TransactionService(db, user_id, cache).list(
        type=type,
        start_date=start_date,
        end_date=end_date,
        category_id=category_id,
        tag=tag,
        page=page,
        limit=limit,
    )


@app.post("/api/transactions", status_code=201)
async def create_transaction(
    data: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    return _ok(await TransactionService(db, user_id, cache).create(data))


@app.get("/api/transactions/{transaction_id}")
async def get_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return _ok(await TransactionService(db, user_id).get(transaction_id))


@app.put("/api/transactions/{transaction_id}")
async def update_transaction(
    transaction_id: int,
    data: TransactionUpdate,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    return _ok(await TransactionService(db, user_id, cache).update(transaction_id, data))


@app.delete("/api/transactions/{transaction_id}")
async def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    await TransactionService(db, user_id, cache).delete(transaction_id)
    return _deleted("Transaction")


@app.get("/api/categories")
async def list_categories(
    type: Optional[str] = None,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    return _ok(await CategoryService(db, user_id, cache).list_all(type))


@app.post("/api/categories", status_code=201)
async def create_category(
    data: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    return _ok(await CategoryService(db, user_id, cache).create(data))


@app.put("/api/categories/{category_id}")
async def update_category(
    category_id: int,
    data: CategoryUpdate,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    return _ok(await CategoryService(db, user_id, cache).update(category_id, data))


@app.delete("/api/categories/{category_id}")
async def delete_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    await CategoryService(db, user_id, cache).delete(category_id)
    return _deleted("Category")


@app.get("/api/subcategories")
async def list_subcategories(
    category_id: Optional[str] = Query(None, alias="categoryId"),
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    return _ok(await SubCategoryService(db, user_id, cache).list_all(category_id))


@app.post("/api/subcategories", status_code=201)
async def create_subcategory(
    data: SubCategoryIn,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    return _ok(await SubCategoryService(db, user_id, cache).create(data))


@app.put("/api/subcategories/{sub_category_id}")
async def update_subcategory(
    sub_category_id: int,
    data: SubCategoryUpdate,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    return _ok(
        await SubCategoryService(db, user_id, cache).update(sub_category_id, data)
    )


@app.delete("/api/subcategories/{sub_category_id}")
async def delete_subcategory(
    sub_category_id: int,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    await SubCategoryService(db, user_id, cache).delete(sub_category_id)
    return _deleted("SubCategory")


@app.get("/api/tags")
async def list_tags(
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return _ok(await TagService(db, user_id).list_all())


@app.post("/api/tags", status_code=201)
async def create_tag(
    data: TagIn,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return _ok(await TagService(db, user_id).create(data))


@app.put("/api/tags/{tag_id}")
async def update_tag(
    tag_id: int,
    data: TagUpdate,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    return _ok(await TagService(db, user_id, cache).update(tag_id, data))


@app.delete("/api/tags/{tag_id}")
async def delete_tag(
    tag_id: int,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    await TagService(db, user_id, cache).delete(tag_id)
    return _deleted("Tag")


@app.get("/api/payment-methods")
async def list_payment_methods(
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return _ok(await PaymentMethodService(db, user_id).list_all())


@app.post("/api/payment-methods", status_code=201)
async def create_payment_method(
    data: PaymentMethodIn,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return _ok(await PaymentMethodService(db, user_id).create(data))


@app.put("/api/payment-methods/{payment_method_id}")
async def update_payment_method(
    payment_method_id: int,
    data: PaymentMethodUpdate,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    return _ok(
        await PaymentMethodService(db, user_id, cache).update(payment_method_id, data)
    )


@app.delete("/api/payment-methods/{payment_method_id}")
async def delete_payment_method(
    payment_method_id: int,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    await PaymentMethodService(db, user_id, cache).delete(payment_method_id)
    return _deleted("Payment method")


@app.get("/api/subscriptions/alerts")
async def subscription_alerts(
    days: Optional[str] = None,
    user_id: int = Depends(current_user_id),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    cache: CacheClient = Depends(get_cache),
):
    return await SubscriptionAlertService(session_factory, user_id, cache).alerts(days)


@app.get("/api/subscriptions")
async def list_subscriptions(
    is_active: Optional[str] = Query(None, alias="isActive"),
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return _ok(await SubscriptionService(db, user_id).list_all(is_active))


@app.post("/api/subscriptions", status_code=201)
async def create_subscription(
    data: SubscriptionIn,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    return _ok(await SubscriptionService(db, user_id, cache).create(data))


@app.get("/api/subscriptions/{subscription_id}")
async def get_subscription(
    subscription_id: int,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return _ok(await SubscriptionService(db, user_id).get(subscription_id))


@app.put("/api/subscriptions/{subscription_id}")
async def update_subscription(
    subscription_id: int,
    data: SubscriptionUpdate,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    return _ok(
        await SubscriptionService(db, user_id, cache).update(subscription_id, data)
    )


@app.delete("/api/subscriptions/{subscription_id}")
async def delete_subscription(
    subscription_id: int,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    await SubscriptionService(db, user_id, cache).delete(subscription_id)
    return _deleted("Subscription")


@app.get("/api/budgets")
async def list_budgets(
    month: Optional[str] = None,
    category_id: Optional[str] = Query(None, alias="categoryId"),
    sub_category_id: Optional[str] = Query(None, alias="subCategoryId"),
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return _ok(
        await BudgetService(db, user_id).list_all(month, category_id, sub_category_id)
    )


@app.post("/api/budgets", status_code=201)
async def create_budget(
    data: BudgetIn,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return _ok(await BudgetService(db, user_id).create(data))


@app.get("/api/budgets/progress")
async def budget_progress(
    month: Optional[str] = None,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    target = month or month_key(local_now())
    return {
        "success": True,
        "month": target,
        "data": await BudgetService(db, user_id).progress_for_month(target),
    }


@app.put("/api/budgets/{budget_id}")
async def update_budget(
    budget_id: int,
    data: BudgetUpdate,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return _ok(await BudgetService(db, user_id).update(budget_id, data))


@app.delete("/api/budgets/{budget_id}")
async def delete_budget(
    budget_id: int,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    await BudgetService(db, user_id).delete(budget_id)
    return _deleted("Budget")


@app.get("/api/export/transactions")
async def export_transactions_csv(
    type: Optional[str] = None,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    csv_text = await ExportService(db, user_id).transactions_csv(
        type, start_date, end_date
    )
    return _csv_response(csv_text, "transactions")


@app.get("/api/export/subscriptions")
async def export_subscriptions_csv(
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    csv_text = await ExportService(db, user_id).subscriptions_csv()
    return _csv_response(csv_text, "subscriptions")


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
