"""
Enrichment Endpoint Client

Single POST endpoint, dispatched on an ``action`` field:

    {"action": "enrich_existing_data", "account_id": "...", "limit": 25}
    → {"success": true, "enriched_count": 23, "processed_count": 25, ...}

Transport failures are retried (tenacity); everything that still goes
wrong comes back as ``ActionResult(success=False, error=...)``. Nothing in
this module raises to the caller.
"""

from datetime import date
from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import Settings
from integrations.base import ActionResult, EnrichmentAction

logger = structlog.get_logger()

UNKNOWN_ERROR = "Unknown enrichment error"


class EnrichmentClient:
    """Client for the enrichment edge function."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 60.0,
        max_attempts: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
        wait=None,
    ):
        self.base_url = base_url
        self.timeout = httpx.Timeout(timeout)
        self.max_attempts = max(1, max_attempts)
        self.transport = transport
        self.wait = wait if wait is not None else wait_exponential(min=1, max=10)
        self.headers = {"Content-Type": "application/json"}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "EnrichmentClient":
        kwargs = {
            "base_url": settings.enrichment_base_url,
            "api_key": settings.enrichment_api_key,
            "timeout": settings.enrichment_timeout_seconds,
            "max_attempts": settings.enrichment_max_attempts,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    async def _post(self, body: dict[str, Any]) -> httpx.Response:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait,
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                    response = await client.post(self.base_url, headers=self.headers, json=body)
                    response.raise_for_status()
                    return response

    async def dispatch(self, action: EnrichmentAction, account_id: str, **params: Any) -> ActionResult:
        """POST one action envelope and normalize the reply."""
        log = logger.bind(action=action.value, account_id=account_id)
        body = {"action": action.value, "account_id": account_id}
        body.update({key: value for key, value in params.items() if value is not None})

        try:
            response = await self._post(body)
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            log.warning("enrichment.http_error", status_code=exc.response.status_code)
            return ActionResult.failure(f"HTTP {exc.response.status_code} from enrichment endpoint")
        except httpx.HTTPError as exc:
            log.warning("enrichment.transport_error", error=str(exc) or type(exc).__name__)
            return ActionResult.failure(str(exc) or type(exc).__name__)
        except ValueError as exc:
            log.warning("enrichment.invalid_json", error=str(exc))
            return ActionResult.failure("Invalid JSON from enrichment endpoint")

        if not isinstance(payload, dict):
            log.warning("enrichment.invalid_payload", payload_type=type(payload).__name__)
            return ActionResult.failure("Unexpected response from enrichment endpoint")

        if not payload.get("success"):
            error = payload.get("error") or UNKNOWN_ERROR
            log.warning("enrichment.rejected", error=error)
            return ActionResult.failure(str(error), data=payload)

        data = {key: value for key, value in payload.items() if key != "success"}
        log.info("enrichment.completed", keys=sorted(data))
        return ActionResult.ok(data)

    # ── Actions ───────────────────────────────────────────────────────

    async def enrich_existing_data(self, account_id: str, limit: int = 50) -> ActionResult:
        return await self.dispatch(EnrichmentAction.ENRICH_EXISTING_DATA, account_id, limit=limit)

    async def sync_advanced_fields(self, account_id: str) -> ActionResult:
        return await self.dispatch(EnrichmentAction.SYNC_ADVANCED_FIELDS, account_id)

    async def fetch_advanced_metrics(
        self,
        account_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> ActionResult:
        return await self.dispatch(
            EnrichmentAction.FETCH_ADVANCED_METRICS,
            account_id,
            date_from=date_from.isoformat() if date_from else None,
            date_to=date_to.isoformat() if date_to else None,
        )

    async def update_phase2_columns(self, account_id: str, updates: list[dict[str, Any]]) -> ActionResult:
        return await self.dispatch(EnrichmentAction.UPDATE_PHASE2_COLUMNS, account_id, updates=updates)
