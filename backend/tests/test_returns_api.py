"""
API Tests: returns listing, metrics, export and enrichment actions.
"""

import uuid
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from httpx import AsyncClient

ACCOUNT_ID = "00000000-0000-0000-0000-000000000001"
OTHER_ACCOUNT_ID = "00000000-0000-0000-0000-000000000002"
BASE = "/api/v1/returns"


@pytest.mark.asyncio
class TestHealthCheck:
    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
class TestListReturns:
    async def test_list_empty(self, client: AsyncClient):
        response = await client.get(f"{BASE}/")
        assert response.status_code == 200
        assert response.json() == []

    async def test_list_default_window(self, client: AsyncClient, seeded_db):
        response = await client.get(f"{BASE}/")
        assert response.status_code == 200
        orders = {item["order_id"] for item in response.json()}
        assert orders == {"ORD-1001", "ORD-1002", "ORD-1003"}

    async def test_extracted_text_fields(self, client: AsyncClient, seeded_db):
        response = await client.get(f"{BASE}/", params={"search": "ORD-1001"})
        item = response.json()[0]
        assert item["cancel_reason"] == "Produto com defeito"
        assert item["message_text"] == "Olá, o produto chegou com defeito"

    async def test_other_account_is_forbidden(self, client: AsyncClient, seeded_db):
        response = await client.get(f"{BASE}/", params={"account_ids": OTHER_ACCOUNT_ID})
        assert response.status_code == 403

    async def test_comma_separated_priorities(self, client: AsyncClient, seeded_db):
        response = await client.get(f"{BASE}/", params={"priorities": "critical,high"})
        orders = {item["order_id"] for item in response.json()}
        assert orders == {"ORD-1001", "ORD-1002"}

    async def test_explicit_dates_replace_default_window(self, client: AsyncClient, seeded_db):
        date_from = (datetime.utcnow() - timedelta(days=60)).date().isoformat()
        response = await client.get(f"{BASE}/", params={"date_from": date_from})
        assert len(response.json()) == 4

    async def test_table_view_limit(self, client: AsyncClient, seeded_db):
        response = await client.get(f"{BASE}/", params={"view": "table", "limit": 2})
        assert len(response.json()) == 2

    async def test_unknown_sort_field(self, client: AsyncClient, seeded_db):
        response = await client.get(f"{BASE}/", params={"sort_field": "buyer_password"})
        assert response.status_code == 422


@pytest.mark.asyncio
class TestMetricsAPI:
    async def test_metrics(self, client: AsyncClient, seeded_db):
        response = await client.get(f"{BASE}/metrics")
        assert response.status_code == 200
        data = response.json()
        assert data["metrics"]["total_count"] == 3
        assert data["metrics"]["high_priority_count"] == 2
        assert data["metrics"]["overdue_actions_count"] == 1
        assert data["trends"] == {}
        assert data["previous"] is None

    async def test_metrics_with_comparison_window(self, client: AsyncClient, seeded_db):
        today = datetime.utcnow().date()
        params = {
            "compare_from": (today - timedelta(days=50)).isoformat(),
            "compare_to": (today - timedelta(days=40)).isoformat(),
        }
        response = await client.get(f"{BASE}/metrics", params=params)
        data = response.json()
        assert data["previous"]["total_count"] == 1
        assert data["trends"]["total_count"] == {"percent": 200.0, "direction": "up"}


@pytest.mark.asyncio
class TestExportAPI:
    async def test_csv_export(self, client: AsyncClient, seeded_db):
        response = await client.get(f"{BASE}/export")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        lines = response.text.lstrip("\ufeff").splitlines()
        assert lines[0].startswith("Order ID,")
        assert len(lines) == 4

    async def test_analytics_export(self, client: AsyncClient, seeded_db):
        response = await client.get(f"{BASE}/export", params={"kind": "analytics"})
        lines = response.text.lstrip("\ufeff").splitlines()
        assert lines[0] == "metric,value"
        assert "total_count,3" in lines


@pytest.mark.asyncio
class TestEnrichmentAPI:
    async def test_enrich(self, client: AsyncClient, endpoint, notifier):
        response = await client.post(f"{BASE}/enrich", json={"account_id": ACCOUNT_ID, "limit": 5})
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["enriched_count"] == 10
        assert endpoint.requests[0]["limit"] == 5
        assert notifier.levels == ["success"]

    async def test_enrich_other_account(self, client: AsyncClient, endpoint):
        response = await client.post(f"{BASE}/enrich", json={"account_id": OTHER_ACCOUNT_ID})
        assert response.status_code == 403
        assert endpoint.requests == []

    async def test_batch_counts_incomplete_records(self, client: AsyncClient, endpoint, seeded_db):
        response = await client.post(f"{BASE}/enrich/batch", json={"account_id": ACCOUNT_ID})
        data = response.json()
        # Only ORD-1003 is missing timeline/attachments
        assert data["status"] == "success"
        assert data["total_batches"] == 1
        assert len(endpoint.requests) == 1

    async def test_batch_in_background(self, client: AsyncClient, endpoint, monkeypatch):
        sent = []

        def _capture_send_task(task_name: str, kwargs: dict):
            sent.append((task_name, kwargs))
            return SimpleNamespace(id="task-123")

        monkeypatch.setattr("api.v1.routers.returns.celery_app.send_task", _capture_send_task)

        response = await client.post(
            f"{BASE}/enrich/batch", json={"account_id": ACCOUNT_ID, "background": True}
        )
        assert response.json() == {"status": "queued", "task_id": "task-123", "account_id": ACCOUNT_ID}
        assert sent == [("workers.enrichment.batch_enrich_account", {"account_id": ACCOUNT_ID})]
        assert endpoint.requests == []

    async def test_endpoint_failure_is_reported_not_raised(self, client: AsyncClient, endpoint, notifier):
        endpoint.responses = [{"success": False, "error": "Token expirado"}]
        response = await client.post(f"{BASE}/sync-advanced-fields", json={"account_id": ACCOUNT_ID})
        assert response.status_code == 200
        assert response.json() == {"success": False, "error": "Token expirado"}
        assert notifier.levels == ["error"]

    async def test_advanced_metrics(self, client: AsyncClient, endpoint):
        endpoint.responses = [{"success": True, "metrics": {"total_claims": 4}}]
        response = await client.get(
            f"{BASE}/advanced-metrics",
            params={"account_id": ACCOUNT_ID, "date_from": "2024-01-01"},
        )
        assert response.json()["metrics"] == {"total_claims": 4}
        assert endpoint.requests[0]["date_from"] == "2024-01-01"


@pytest.mark.asyncio
class TestActionsAPI:
    async def test_mark_as_read(self, client: AsyncClient, endpoint, seeded_db):
        endpoint.responses = [{"success": True, "updated_count": 1}]
        record_id = str(seeded_db["returns"][1].id)
        response = await client.post(
            f"{BASE}/actions",
            json={"account_id": ACCOUNT_ID, "action": "mark_as_read", "ids": [record_id]},
        )
        assert response.status_code == 200
        assert response.json()["updated_count"] == 1
        update = endpoint.requests[0]["updates"][0]
        assert update["id"] == record_id
        assert update["data"]["unread_messages"] == 0
        assert "updated_at" in update["data"]

    async def test_unknown_priority(self, client: AsyncClient, seeded_db):
        response = await client.post(
            f"{BASE}/actions",
            json={
                "account_id": ACCOUNT_ID,
                "action": "update_priority",
                "ids": [str(seeded_db["returns"][0].id)],
                "priority": "urgent",
            },
        )
        assert response.status_code == 422

    async def test_ids_from_another_account(self, client: AsyncClient, endpoint, seeded_db):
        foreign_id = str(seeded_db["returns"][4].id)
        response = await client.post(
            f"{BASE}/actions",
            json={"account_id": ACCOUNT_ID, "action": "mark_as_read", "ids": [foreign_id]},
        )
        assert response.status_code == 404
        assert endpoint.requests == []

    async def test_unknown_ids(self, client: AsyncClient, seeded_db):
        response = await client.post(
            f"{BASE}/actions",
            json={"account_id": ACCOUNT_ID, "action": "seller_action", "ids": [str(uuid.uuid4())]},
        )
        assert response.status_code == 404

    async def test_empty_ids_rejected(self, client: AsyncClient):
        response = await client.post(
            f"{BASE}/actions",
            json={"account_id": ACCOUNT_ID, "action": "mark_as_read", "ids": []},
        )
        assert response.status_code == 422
