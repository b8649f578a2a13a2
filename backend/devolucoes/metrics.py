"""
Return metrics: aggregate analytics over an already-fetched collection.

Pure and synchronous. The snapshot is recomputed whenever the record
collection changes; it has no lifecycle of its own.

Averages only count records where the field is present and non-zero, so a
record that was never enriched does not drag the mean toward zero. Rates
are percentages of the full collection and are 0 for an empty one.

Rounding is half-up throughout, and trends are computed from the rounded
snapshot values, so a trend always agrees with the numbers on screen.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from devolucoes.extraction import record_value

DEFAULT_PRIORITY = "medium"
UNKNOWN_BUCKET = "unknown"
HIGH_PRIORITY_LEVELS = frozenset({"high", "critical"})

# Snapshot fields eligible for period-over-period comparison
TREND_FIELDS = (
    "total_count",
    "avg_response_time",
    "avg_resolution_time",
    "avg_satisfaction",
    "escalation_rate",
    "mediation_rate",
    "high_priority_count",
    "unread_messages_count",
    "overdue_actions_count",
    "retained_value_total",
    "shipping_cost_total",
    "compensation_value_total",
)


def round_half_up(value: float, places: int = 0) -> float:
    """Round like a spreadsheet (2.5 → 3), not like banker's rounding."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class MetricsSnapshot:
    total_count: int = 0
    by_priority: dict[str, int] = field(default_factory=dict)
    by_status: dict[str, int] = field(default_factory=dict)
    by_type: dict[str, int] = field(default_factory=dict)
    avg_response_time: int = 0
    avg_resolution_time: int = 0
    avg_satisfaction: float = 0.0
    escalation_rate: float = 0.0
    mediation_rate: float = 0.0
    high_priority_count: int = 0
    unread_messages_count: int = 0
    overdue_actions_count: int = 0
    retained_value_total: float = 0.0
    shipping_cost_total: float = 0.0
    compensation_value_total: float = 0.0

    @property
    def net_impact(self) -> float:
        # Upstream already signs costs; sum as-is.
        return round_half_up(self.retained_value_total + self.shipping_cost_total + self.compensation_value_total, 2)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["net_impact"] = self.net_impact
        return payload


@dataclass(frozen=True)
class Trend:
    percent: float
    direction: str  # "up" | "down"

    @property
    def is_positive(self) -> bool:
        return self.direction == "up"


class _Mean:
    """Running mean over truthy samples only."""

    __slots__ = ("total", "count")

    def __init__(self) -> None:
        self.total = 0.0
        self.count = 0

    def add(self, value: Any) -> None:
        if value:
            self.total += value
            self.count += 1

    @property
    def value(self) -> float:
        return self.total / self.count if self.count else 0.0


def _rate(count: int, total: int) -> float:
    if total == 0:
        return 0.0
    return round_half_up(count / total * 100, 2)


def compute_metrics(records: Iterable[Any], now: datetime | None = None) -> MetricsSnapshot:
    """Single pass over ``records`` (ORM rows or mappings)."""
    now = now or datetime.utcnow()

    by_priority: Counter[str] = Counter()
    by_status: Counter[str] = Counter()
    by_type: Counter[str] = Counter()
    response = _Mean()
    resolution = _Mean()
    satisfaction = _Mean()

    total = 0
    escalated = 0
    mediated = 0
    high_priority = 0
    unread = 0
    overdue = 0
    retained = 0.0
    shipping = 0.0
    compensation = 0.0

    for record in records:
        total += 1
        priority = record_value(record, "priority") or DEFAULT_PRIORITY
        by_priority[priority] += 1
        by_status[record_value(record, "status") or UNKNOWN_BUCKET] += 1
        by_type[record_value(record, "claim_type") or UNKNOWN_BUCKET] += 1

        response.add(record_value(record, "avg_response_time"))
        resolution.add(record_value(record, "total_resolution_time"))
        satisfaction.add(record_value(record, "satisfaction_rate"))

        if record_value(record, "escalated_to_marketplace"):
            escalated += 1
        if record_value(record, "in_mediation"):
            mediated += 1
        if priority in HIGH_PRIORITY_LEVELS:
            high_priority += 1

        unread += record_value(record, "unread_messages") or 0

        due = record_value(record, "action_due_at")
        if due is not None and due < now:
            overdue += 1

        retained += record_value(record, "retained_value") or 0
        shipping += record_value(record, "shipping_cost") or 0
        compensation += record_value(record, "compensation_value") or 0

    return MetricsSnapshot(
        total_count=total,
        by_priority=dict(by_priority),
        by_status=dict(by_status),
        by_type=dict(by_type),
        avg_response_time=int(round_half_up(response.value)),
        avg_resolution_time=int(round_half_up(resolution.value)),
        avg_satisfaction=round_half_up(satisfaction.value, 2),
        escalation_rate=_rate(escalated, total),
        mediation_rate=_rate(mediated, total),
        high_priority_count=high_priority,
        unread_messages_count=int(unread),
        overdue_actions_count=overdue,
        retained_value_total=round_half_up(retained, 2),
        shipping_cost_total=round_half_up(shipping, 2),
        compensation_value_total=round_half_up(compensation, 2),
    )


def calculate_trend(current: float, previous: float | None) -> Trend | None:
    """Percentage change against ``previous``; None when there is nothing to compare against."""
    if not previous:
        return None
    change = (current - previous) / previous * 100
    return Trend(
        percent=round_half_up(abs(change), 1),
        direction="up" if change >= 0 else "down",
    )


def compare_snapshots(current: MetricsSnapshot, previous: MetricsSnapshot | None) -> dict[str, Trend]:
    """Trends for every comparable field whose previous value is non-zero."""
    if previous is None:
        return {}
    known = {f.name for f in fields(MetricsSnapshot)}
    trends: dict[str, Trend] = {}
    for name in TREND_FIELDS:
        if name not in known:
            continue
        trend = calculate_trend(getattr(current, name), getattr(previous, name))
        if trend is not None:
            trends[name] = trend
    return trends


def distribution_share(distribution: dict[str, int], total: int) -> dict[str, float]:
    """Share of each bucket as a whole-number percentage."""
    if total == 0:
        return {bucket: 0.0 for bucket in distribution}
    return {bucket: round_half_up(count / total * 100) for bucket, count in distribution.items()}
