"""
Enrichment Integration: shared result types

Every call to the enrichment endpoint, and every orchestrated run built on
top of it, reports back through these containers instead of raising, so
callers (API, console, Celery tasks) handle success and failure uniformly.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# ── Actions ───────────────────────────────────────────────────────────────


class EnrichmentAction(str, Enum):
    """Actions understood by the enrichment endpoint."""

    ENRICH_EXISTING_DATA = "enrich_existing_data"
    SYNC_ADVANCED_FIELDS = "sync_advanced_fields"
    FETCH_ADVANCED_METRICS = "fetch_advanced_metrics"
    UPDATE_PHASE2_COLUMNS = "update_phase2_columns"


class RunStatus(str, Enum):
    """Terminal status of an orchestrated enrichment run."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some batches failed
    FAILED = "failed"  # Every batch failed
    ABORTED = "aborted"  # Run never started or crashed


# ── Single-call result container ──────────────────────────────────────────


@dataclass
class ActionResult:
    """Outcome of one enrichment endpoint call."""

    success: bool
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    completed_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def ok(cls, data: dict[str, Any] | None = None) -> "ActionResult":
        return cls(success=True, data=dict(data or {}))

    @classmethod
    def failure(cls, error: str, data: dict[str, Any] | None = None) -> "ActionResult":
        return cls(success=False, error=error, data=dict(data or {}))

    def _count(self, key: str) -> int:
        value = self.data.get(key)
        try:
            return int(value or 0)
        except (TypeError, ValueError):
            return 0

    @property
    def enriched_count(self) -> int:
        return self._count("enriched_count")

    @property
    def processed_count(self) -> int:
        return self._count("processed_count") or self._count("total_processed")

    @property
    def updated_count(self) -> int:
        return self._count("updated_count")

    @property
    def message(self) -> str | None:
        return self.data.get("message")

    def to_dict(self) -> dict[str, Any]:
        payload = {"success": self.success, **self.data}
        if self.error is not None:
            payload["error"] = self.error
        return payload
