"""
Enrichment integration package.

Request/response client for the external enrichment endpoint that fills
the advanced columns of return records (messages, priority, attachments,
financial impact).

Usage:
    from integrations.enrichment_client import EnrichmentClient

    client = EnrichmentClient.from_settings(get_settings())
    result = await client.enrich_existing_data(account_id, limit=25)
    if result.success:
        print(result.enriched_count)
"""

from integrations.base import ActionResult, EnrichmentAction, RunStatus
from integrations.enrichment_client import EnrichmentClient

__all__ = [
    "ActionResult",
    "EnrichmentAction",
    "RunStatus",
    "EnrichmentClient",
]
