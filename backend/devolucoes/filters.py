"""
Return filter compiler: FilterCriteria → SQLAlchemy SELECT.

Rules:
  1. Account scope is mandatory and applied first. An empty scope compiles
     to None and fetch_returns() short-circuits to [] without a query.
  2. Free-text search is a case-insensitive OR across order id, claim id,
     product title and SKU.
  3. Every other criterion is ANDed.
  4. "Overdue" is evaluated against the clock at compile time, per call.
  5. Presence filters use explicit NULL / zero checks.
  6. One (field, direction) ordering; ties are left to the store.
  7. The caller's page size caps the result.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta

import structlog
from pydantic import BaseModel, field_validator
from sqlalchemy import Select, and_, false, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ReturnRecord

logger = structlog.get_logger()

SORTABLE_FIELDS = {
    "created_at": ReturnRecord.created_at,
    "updated_at": ReturnRecord.updated_at,
    "action_due_at": ReturnRecord.action_due_at,
    "priority": ReturnRecord.priority,
    "status": ReturnRecord.status,
    "retained_value": ReturnRecord.retained_value,
    "unread_messages": ReturnRecord.unread_messages,
    "avg_response_time": ReturnRecord.avg_response_time,
    "order_id": ReturnRecord.order_id,
}
SORT_DIRECTIONS = ("asc", "desc")


class FilterCriteria(BaseModel):
    """Optional predicates over return records. Unset fields impose no constraint."""

    account_ids: list[str] = []
    search: str | None = None
    status: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    priorities: list[str] | None = None
    moderation_statuses: list[str] | None = None
    reputation_impacts: list[str] | None = None
    escalated: bool | None = None
    in_mediation: bool | None = None
    seller_action_required: bool | None = None
    unread_messages_min: int | None = None
    response_time_max: int | None = None
    retained_value_min: float | None = None
    retained_value_max: float | None = None
    has_tracking: bool | None = None
    has_attachments: bool | None = None
    overdue_actions: bool | None = None

    @field_validator("account_ids", mode="before")
    @classmethod
    def _drop_blank_accounts(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return [str(v).strip() for v in value if v is not None and str(v).strip()]

    @field_validator("search", "status", mode="before")
    @classmethod
    def _blank_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @classmethod
    def default(cls, account_ids: list[str], window_days: int = 30, today: date | None = None) -> "FilterCriteria":
        """Screen default: last ``window_days`` days across every account in scope."""
        today = today or datetime.utcnow().date()
        return cls(
            account_ids=account_ids,
            status="all",
            date_from=today - timedelta(days=window_days),
            date_to=today,
        )


def _search_clause(term: str):
    return or_(
        ReturnRecord.order_id.icontains(term, autoescape=True),
        ReturnRecord.claim_id.icontains(term, autoescape=True),
        ReturnRecord.product_title.icontains(term, autoescape=True),
        ReturnRecord.sku.icontains(term, autoescape=True),
    )


def build_predicates(criteria: FilterCriteria, now: datetime | None = None) -> list:
    """Non-scope predicates, in evaluation order, to be ANDed together."""
    clauses: list = []

    if criteria.search:
        clauses.append(_search_clause(criteria.search.strip()))

    if criteria.status and criteria.status != "all":
        clauses.append(ReturnRecord.status == criteria.status)

    if criteria.date_from:
        clauses.append(ReturnRecord.created_at >= datetime.combine(criteria.date_from, time.min))

    if criteria.date_to:
        # Inclusive calendar day
        clauses.append(ReturnRecord.created_at < datetime.combine(criteria.date_to + timedelta(days=1), time.min))

    if criteria.priorities:
        clauses.append(ReturnRecord.priority.in_(criteria.priorities))

    if criteria.moderation_statuses:
        clauses.append(ReturnRecord.moderation_status.in_(criteria.moderation_statuses))

    if criteria.reputation_impacts:
        clauses.append(ReturnRecord.reputation_impact.in_(criteria.reputation_impacts))

    if criteria.escalated is not None:
        clauses.append(ReturnRecord.escalated_to_marketplace.is_(criteria.escalated))

    if criteria.in_mediation is not None:
        clauses.append(ReturnRecord.in_mediation.is_(criteria.in_mediation))

    if criteria.seller_action_required is not None:
        clauses.append(ReturnRecord.seller_action_required.is_(criteria.seller_action_required))

    if criteria.unread_messages_min is not None:
        clauses.append(ReturnRecord.unread_messages >= criteria.unread_messages_min)

    if criteria.response_time_max is not None:
        clauses.append(ReturnRecord.avg_response_time <= criteria.response_time_max)

    if criteria.retained_value_min is not None:
        clauses.append(ReturnRecord.retained_value >= criteria.retained_value_min)

    if criteria.retained_value_max is not None:
        clauses.append(ReturnRecord.retained_value <= criteria.retained_value_max)

    if criteria.has_tracking is not None:
        if criteria.has_tracking:
            clauses.append(ReturnRecord.tracking_code.is_not(None))
        else:
            clauses.append(ReturnRecord.tracking_code.is_(None))

    if criteria.has_attachments is not None:
        if criteria.has_attachments:
            clauses.append(ReturnRecord.attachments_count > 0)
        else:
            clauses.append(or_(ReturnRecord.attachments_count.is_(None), ReturnRecord.attachments_count == 0))

    if criteria.overdue_actions:
        clauses.append(ReturnRecord.action_due_at < (now or datetime.utcnow()))

    return clauses


def compile_return_query(
    criteria: FilterCriteria,
    *,
    sort_field: str = "created_at",
    sort_direction: str = "desc",
    limit: int | None = None,
    now: datetime | None = None,
) -> Select | None:
    """
    Build the SELECT for ``criteria``.

    Returns None when the account scope is empty: the caller must treat
    that as an empty result, never as "all accounts".
    """
    if sort_field not in SORTABLE_FIELDS:
        raise ValueError(f"Unsupported sort field: {sort_field}")
    if sort_direction not in SORT_DIRECTIONS:
        raise ValueError(f"Unsupported sort direction: {sort_direction}")

    if not criteria.account_ids:
        return None

    query = select(ReturnRecord).where(ReturnRecord.integration_account_id.in_(criteria.account_ids))
    predicates = build_predicates(criteria, now=now)
    if predicates:
        query = query.where(and_(*predicates))

    column = SORTABLE_FIELDS[sort_field]
    query = query.order_by(column.asc() if sort_direction == "asc" else column.desc())

    if limit is not None:
        query = query.limit(limit)
    return query


async def fetch_returns(
    db: AsyncSession,
    criteria: FilterCriteria,
    *,
    sort_field: str = "created_at",
    sort_direction: str = "desc",
    limit: int | None = None,
    now: datetime | None = None,
) -> list[ReturnRecord]:
    """Run the compiled query. Recompiled on every call so "overdue" tracks the clock."""
    query = compile_return_query(
        criteria,
        sort_field=sort_field,
        sort_direction=sort_direction,
        limit=limit,
        now=now,
    )
    if query is None:
        logger.info("filters.empty_scope")
        return []

    result = await db.execute(query)
    records = list(result.scalars().all())
    logger.debug("filters.fetched", count=len(records), accounts=len(criteria.account_ids))
    return records


def incomplete_records_clause():
    """SQL form of the auto-enrichment completeness heuristic."""
    return or_(
        ReturnRecord.message_timeline.is_(None),
        ReturnRecord.priority.is_(None),
        ReturnRecord.attachments_count.is_(None),
    )


def account_scope_clause(account_ids: list[str]):
    """Account restriction used by count/aggregate queries outside compile_return_query()."""
    if not account_ids:
        return false()
    return ReturnRecord.integration_account_id.in_(account_ids)


async def count_incomplete_returns(db: AsyncSession, account_ids: list[str]) -> int:
    """How many returns in scope still lack timeline, priority or attachment data."""
    result = await db.execute(
        select(func.count())
        .select_from(ReturnRecord)
        .where(account_scope_clause(account_ids), incomplete_records_clause())
    )
    return int(result.scalar_one())
