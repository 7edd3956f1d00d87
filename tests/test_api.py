from datetime import timedelta

from cache import NullCache
from fakes import auth_headers
from main import app, get_cache
from periods import local_now, month_key


async def _expense(client, amount, when=None, **extra):
    body = {
        "type": "expense",
        "amount": amount,
        "date": (when or local_now()).isoformat(),
        **extra,
    }
    response = await client.post("/api/transactions", json=body)
    assert response.status_code == 201, response.text
    return response.json()["data"]


async def test_health_needs_no_token(client) -> None:
    response = await client.get("/api/health", headers={"Authorization": ""})
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


async def test_missing_or_bad_token_is_rejected(client) -> None:
    missing = await client.get("/api/categories", headers={"Authorization": ""})
    forged = await client.get(
        "/api/categories", headers={"Authorization": "Bearer not-a-token"}
    )

    assert missing.status_code == 401
    assert missing.json() == {"success": False, "error": "Not authenticated"}
    assert forged.status_code == 401


async def test_dashboard_reflects_new_transaction(client, cache) -> None:
    before = (await client.get("/api/analytics/dashboard")).json()
    assert before["kpis"]["totalExpenses"] == 0
    assert any(key.endswith(f":dashboard:{month_key(local_now())}") for key in cache.store)

    await _expense(client, 500)

    after = (await client.get("/api/analytics/dashboard")).json()
    assert after["kpis"]["totalExpenses"] == before["kpis"]["totalExpenses"] + 500


async def test_dashboard_after_update_and_delete(client) -> None:
    txn = await _expense(client, 40)
    await client.get("/api/analytics/dashboard")

    updated = await client.put(f"/api/transactions/{txn['id']}", json={"amount": 60})
    assert updated.status_code == 200
    assert (await client.get("/api/analytics/dashboard")).json()["kpis"][
        "totalExpenses"
    ] == 60

    deleted = await client.delete(f"/api/transactions/{txn['id']}")
    assert deleted.json() == {"success": True, "message": "Transaction deleted successfully"}
    assert (await client.get("/api/analytics/dashboard")).json()["kpis"][
        "totalExpenses"
    ] == 0


async def test_results_are_correct_without_a_cache(client) -> None:
    app.dependency_overrides[get_cache] = lambda: NullCache()
    await _expense(client, 25)

    dashboard = (await client.get("/api/analytics/dashboard")).json()
    assert dashboard["kpis"]["totalExpenses"] == 25


async def test_results_are_correct_when_cache_is_down(client, failing_cache) -> None:
    app.dependency_overrides[get_cache] = lambda: failing_cache
    await _expense(client, 25)

    dashboard = await client.get("/api/analytics/dashboard")
    listing = await client.get("/api/transactions")

    assert dashboard.status_code == 200
    assert dashboard.json()["kpis"]["totalExpenses"] == 25
    assert listing.json()["pagination"]["total"] == 1


async def test_charts_label_and_data(client) -> None:
    food = (
        await client.post("/api/categories", json={"name": "Food", "type": "expense"})
    ).json()["data"]
    await _expense(client, "12.50", categoryId=food["id"])
    await _expense(client, "7.50")

    response = await client.get(
        "/api/analytics/charts", params={"type": "expense", "chartType": "categorySplit"}
    )

    body = response.json()
    assert body["chartType"] == "Category Split"
    assert body["type"] == "expense"
    assert [row["category"] for row in body["data"]] == ["Food"]


async def test_analytics_input_errors_are_400(client) -> None:
    bad_month = await client.get("/api/analytics/dashboard", params={"month": "2024-13"})
    no_type = await client.get("/api/analytics/charts")
    bad_chart = await client.get(
        "/api/analytics/charts", params={"type": "expense", "chartType": "pie"}
    )

    assert bad_month.status_code == 400
    assert bad_month.json()["error"].startswith("Month must be in YYYY-MM format")
    assert no_type.status_code == 400
    assert no_type.json()["error"].startswith("Type is required")
    assert bad_chart.status_code == 400
    assert bad_chart.json()["error"].startswith("Invalid chartType")


async def test_body_validation_errors_are_400(client) -> None:
    response = await client.post(
        "/api/transactions",
        json={"type": "expense", "amount": -5, "date": local_now().isoformat()},
    )

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["error"].startswith("amount:")


async def test_other_users_transactions_are_not_found(client) -> None:
    theirs = await client.post(
        "/api/transactions",
        json={"type": "income", "amount": 10, "date": local_now().isoformat()},
        headers=auth_headers(2),
    )

    response = await client.get(f"/api/transactions/{theirs.json()['data']['id']}")

    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Transaction not found"}


async def test_reference_in_use_is_400(client) -> None:
    food = (
        await client.post("/api/categories", json={"name": "Food", "type": "expense"})
    ).json()["data"]
    await _expense(client, 3, categoryId=food["id"])

    response = await client.delete(f"/api/categories/{food['id']}")

    assert response.status_code == 400
    assert "Cannot delete category" in response.json()["error"]


async def test_subscription_alerts_follow_changes(client) -> None:
    soon = (local_now() + timedelta(days=3)).date().isoformat()
    payload = {"name": "Music", "amount": "9.99", "billingCycle": "monthly"}

    await client.post("/api/subscriptions", json={**payload, "nextPaymentDate": soon})
    first = (await client.get("/api/subscriptions/alerts")).json()
    await client.post(
        "/api/subscriptions", json={**payload, "name": "Video", "nextPaymentDate": soon}
    )
    second = (await client.get("/api/subscriptions/alerts")).json()

    assert first["summary"]["upcomingCount"] == 1
    assert second["summary"]["upcomingCount"] == 2
    assert [item["name"] for item in second["upcoming"]] == ["Music", "Video"]


async def test_subscription_alert_days_are_validated(client) -> None:
    response = await client.get("/api/subscriptions/alerts", params={"days": "0"})

    assert response.status_code == 400
    assert response.json()["error"] == "Days must be a positive number"


async def test_budget_scope_errors_are_400(client) -> None:
    response = await client.post(
        "/api/budgets", json={"amount": 100, "month": "2024-02"}
    )

    assert response.status_code == 400
    assert "Either categoryId or subCategoryId" in response.json()["error"]


async def test_budget_progress_defaults_to_current_month(client) -> None:
    food = (
        await client.post("/api/categories", json={"name": "Food", "type": "expense"})
    ).json()["data"]
    month = month_key(local_now())
    await client.post(
        "/api/budgets", json={"categoryId": food["id"], "amount": 100, "month": month}
    )
    await _expense(client, 40, categoryId=food["id"])

    body = (await client.get("/api/budgets/progress")).json()

    assert body["month"] == month
    assert body["data"][0]["spent"] == 40
    assert body["data"][0]["percentUsed"] == 40


async def test_tag_and_payment_method_create(client, cache) -> None:
    tag = await client.post("/api/tags", json={"name": "trip", "color": "#00ff00"})
    method = await client.post(
        "/api/payment-methods", json={"name": "Visa", "icon": "card", "type": "card"}
    )

    assert tag.status_code == 201
    assert tag.json()["data"]["name"] == "trip"
    assert method.status_code == 201
    assert method.json()["data"]["type"] == "card"
    assert cache.deleted == []
