"""
Tests for the enrichment endpoint client (httpx.MockTransport).
"""

import json
from datetime import date

import httpx
import pytest

from integrations.base import ActionResult, EnrichmentAction
from integrations.enrichment_client import UNKNOWN_ERROR, EnrichmentClient

ACCOUNT_ID = "00000000-0000-0000-0000-000000000001"


@pytest.mark.asyncio
class TestDispatch:
    async def test_envelope_and_auth_header(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.read())
            return httpx.Response(200, json={"success": True, "enriched_count": 7, "processed_count": 10})

        client = EnrichmentClient("https://enrichment.test/sync", api_key="secret", transport=httpx.MockTransport(handler))
        result = await client.enrich_existing_data(ACCOUNT_ID, limit=10)

        assert result.success
        assert result.enriched_count == 7
        assert result.processed_count == 10
        assert seen["auth"] == "Bearer secret"
        assert seen["body"] == {"action": "enrich_existing_data", "account_id": ACCOUNT_ID, "limit": 10}

    async def test_success_false_is_a_failure(self, make_endpoint):
        endpoint = make_endpoint({"success": False, "error": "Token expirado"})
        result = await endpoint.client().sync_advanced_fields(ACCOUNT_ID)
        assert not result.success
        assert result.error == "Token expirado"

    async def test_success_false_without_reason(self, make_endpoint):
        endpoint = make_endpoint({"success": False})
        result = await endpoint.client().sync_advanced_fields(ACCOUNT_ID)
        assert result.error == UNKNOWN_ERROR

    async def test_http_error_status(self, make_endpoint):
        endpoint = make_endpoint((500, {"message": "boom"}))
        result = await endpoint.client().enrich_existing_data(ACCOUNT_ID)
        assert not result.success
        assert "500" in result.error
        # Status errors are not retried
        assert len(endpoint.requests) == 1

    async def test_transport_error_is_retried_then_reported(self, make_endpoint):
        endpoint = make_endpoint(httpx.ConnectError("connection refused"))
        result = await endpoint.client(max_attempts=3).enrich_existing_data(ACCOUNT_ID)
        assert not result.success
        assert "connection refused" in result.error
        assert len(endpoint.requests) == 3

    async def test_transport_error_then_success(self, make_endpoint):
        endpoint = make_endpoint(httpx.ReadTimeout("timed out"), {"success": True, "enriched_count": 2})
        result = await endpoint.client(max_attempts=3).enrich_existing_data(ACCOUNT_ID)
        assert result.success
        assert result.enriched_count == 2

    async def test_non_json_body(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>gateway</html>"))
        client = EnrichmentClient("https://enrichment.test/sync", transport=transport)
        result = await client.enrich_existing_data(ACCOUNT_ID)
        assert not result.success
        assert "JSON" in result.error

    async def test_non_object_json(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=[1, 2, 3]))
        client = EnrichmentClient("https://enrichment.test/sync", transport=transport)
        result = await client.enrich_existing_data(ACCOUNT_ID)
        assert not result.success

    async def test_metrics_dates_are_iso(self, make_endpoint):
        endpoint = make_endpoint({"success": True, "metrics": {"total_claims": 4}})
        result = await endpoint.client().fetch_advanced_metrics(ACCOUNT_ID, date(2024, 1, 1), date(2024, 1, 31))
        assert result.data["metrics"] == {"total_claims": 4}
        assert endpoint.requests[0]["date_from"] == "2024-01-01"
        assert endpoint.requests[0]["date_to"] == "2024-01-31"

    async def test_unset_params_are_omitted(self, make_endpoint):
        endpoint = make_endpoint({"success": True})
        await endpoint.client().fetch_advanced_metrics(ACCOUNT_ID)
        assert "date_from" not in endpoint.requests[0]

    async def test_update_columns_payload(self, make_endpoint):
        endpoint = make_endpoint({"success": True, "updated_count": 1})
        updates = [{"id": "abc", "data": {"priority": "high"}}]
        result = await endpoint.client().update_phase2_columns(ACCOUNT_ID, updates)
        assert result.updated_count == 1
        assert endpoint.requests[0] == {
            "action": EnrichmentAction.UPDATE_PHASE2_COLUMNS.value,
            "account_id": ACCOUNT_ID,
            "updates": updates,
        }


class TestActionResult:
    def test_counts_default_to_zero(self):
        result = ActionResult.ok({})
        assert result.enriched_count == 0
        assert result.updated_count == 0

    def test_processed_count_falls_back_to_total_processed(self):
        assert ActionResult.ok({"total_processed": 9}).processed_count == 9

    def test_garbage_counts(self):
        assert ActionResult.ok({"enriched_count": "many"}).enriched_count == 0

    def test_to_dict(self):
        payload = ActionResult.failure("boom").to_dict()
        assert payload == {"success": False, "error": "boom"}
