"""
Returns Router: filtered listing, metrics, export and enrichment actions.

Every endpoint is scoped to the caller's integration accounts; asking for
an account outside that scope is a 403.
"""

from datetime import date, datetime
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.notifier import Notifier
from api.deps import get_account_scope, get_db, get_enrichment_client, get_notifier, resolve_accounts
from core.config import get_settings
from db.models import PRIORITY_LEVELS, ReturnRecord
from devolucoes.console import ViewMode, build_column_updates
from devolucoes.export import build_analytics_frame, build_export_frame, to_csv
from devolucoes.extraction import extract_fields
from devolucoes.filters import FilterCriteria, account_scope_clause, count_incomplete_returns, fetch_returns
from devolucoes.metrics import compare_snapshots, compute_metrics
from integrations.enrichment_client import EnrichmentClient
from workers.celery_app import celery_app
from workers.enrichment import EnrichmentOrchestrator

router = APIRouter(prefix="/api/v1/returns", tags=["returns"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ReturnResponse(BaseModel):
    id: UUID
    integration_account_id: UUID
    order_id: str
    claim_id: str | None = None
    account_name: str | None = None
    product_title: str | None = None
    sku: str | None = None
    quantity: int | None = None
    status: str | None = None
    priority: str | None = None
    claim_type: str | None = None
    moderation_status: str | None = None
    reputation_impact: str | None = None
    escalated_to_marketplace: bool | None = None
    in_mediation: bool | None = None
    seller_action_required: bool | None = None
    unread_messages: int | None = None
    attachments_count: int | None = None
    retained_value: float | None = None
    shipping_cost: float | None = None
    compensation_value: float | None = None
    avg_response_time: int | None = None
    tracking_code: str | None = None
    buyer_nickname: str | None = None
    auto_tags: list[str] | None = None
    created_at: datetime
    updated_at: datetime | None = None
    action_due_at: datetime | None = None

    # Extracted display text
    cancel_reason: str | None = None
    detailed_reason: str | None = None
    message_text: str | None = None
    last_message_text: str | None = None

    model_config = {"from_attributes": True}


class AccountRequest(BaseModel):
    account_id: str


class EnrichRequest(AccountRequest):
    limit: int = Field(50, ge=1, le=500)


class BatchEnrichRequest(AccountRequest):
    total_records: int | None = Field(None, ge=0)
    batch_size: int | None = Field(None, ge=1, le=500)
    background: bool = False


class ReturnActionRequest(AccountRequest):
    action: Literal["mark_as_read", "update_priority", "seller_action"]
    ids: list[UUID] = Field(..., min_length=1)
    priority: str | None = None
    required: bool = True


# ─── Dependencies ───────────────────────────────────────────────────────────


def _split(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


async def get_filter_criteria(
    account_ids: str | None = Query(None, description="Comma-separated integration account ids"),
    search: str | None = None,
    status: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    priorities: str | None = Query(None, description="Comma-separated, e.g. critical,high"),
    moderation_statuses: str | None = None,
    reputation_impacts: str | None = None,
    escalated: bool | None = None,
    in_mediation: bool | None = None,
    seller_action_required: bool | None = None,
    unread_messages_min: int | None = Query(None, ge=0),
    response_time_max: int | None = Query(None, ge=0),
    retained_value_min: float | None = None,
    retained_value_max: float | None = None,
    has_tracking: bool | None = None,
    has_attachments: bool | None = None,
    overdue_actions: bool | None = None,
    scope: list[str] = Depends(get_account_scope),
) -> FilterCriteria:
    accounts = resolve_accounts(_split(account_ids), scope)
    if date_from is None and date_to is None:
        window = FilterCriteria.default(accounts, get_settings().default_window_days)
        date_from, date_to = window.date_from, window.date_to
    return FilterCriteria(
        account_ids=accounts,
        search=search,
        status=status,
        date_from=date_from,
        date_to=date_to,
        priorities=_split(priorities),
        moderation_statuses=_split(moderation_statuses),
        reputation_impacts=_split(reputation_impacts),
        escalated=escalated,
        in_mediation=in_mediation,
        seller_action_required=seller_action_required,
        unread_messages_min=unread_messages_min,
        response_time_max=response_time_max,
        retained_value_min=retained_value_min,
        retained_value_max=retained_value_max,
        has_tracking=has_tracking,
        has_attachments=has_attachments,
        overdue_actions=overdue_actions,
    )


def _orchestrator(account_id: str, client: EnrichmentClient, notifier: Notifier) -> EnrichmentOrchestrator:
    settings = get_settings()
    return EnrichmentOrchestrator(
        client,
        notifier,
        account_id,
        batch_size=settings.enrichment_batch_size,
        cooldown_seconds=settings.enrichment_cooldown_seconds,
        auto_enrich_limit=settings.auto_enrich_limit,
    )


def _serialize_return(record: ReturnRecord) -> ReturnResponse:
    return ReturnResponse.model_validate(record).model_copy(update=extract_fields(record))


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[ReturnResponse])
async def list_returns(
    view: ViewMode = ViewMode.CARDS,
    limit: int | None = Query(None, ge=1, le=500),
    sort_field: str = "created_at",
    sort_direction: str = "desc",
    criteria: FilterCriteria = Depends(get_filter_criteria),
    db: AsyncSession = Depends(get_db),
):
    """Filtered returns for the caller's accounts, one page."""
    settings = get_settings()
    page_size = limit or (settings.cards_per_page if view == ViewMode.CARDS else settings.table_page_size)
    try:
        records = await fetch_returns(
            db,
            criteria,
            sort_field=sort_field,
            sort_direction=sort_direction,
            limit=min(page_size, settings.max_page_size),
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return [_serialize_return(record) for record in records]


@router.get("/metrics")
async def get_metrics(
    compare_from: date | None = None,
    compare_to: date | None = None,
    criteria: FilterCriteria = Depends(get_filter_criteria),
    db: AsyncSession = Depends(get_db),
):
    """Metrics snapshot over every matching return, optionally with trends against another window."""
    now = datetime.utcnow()
    records = await fetch_returns(db, criteria, now=now)
    snapshot = compute_metrics(records, now=now)
    response = {"metrics": snapshot.to_dict(), "trends": {}, "previous": None}

    if compare_from is not None or compare_to is not None:
        previous_criteria = criteria.model_copy(update={"date_from": compare_from, "date_to": compare_to})
        previous = compute_metrics(await fetch_returns(db, previous_criteria, now=now), now=now)
        trends = compare_snapshots(snapshot, previous)
        response["previous"] = previous.to_dict()
        response["trends"] = {
            name: {"percent": trend.percent, "direction": trend.direction} for name, trend in trends.items()
        }
    return response


@router.get("/export")
async def export_returns(
    include_details: bool = False,
    kind: Literal["records", "analytics"] = "records",
    criteria: FilterCriteria = Depends(get_filter_criteria),
    db: AsyncSession = Depends(get_db),
):
    """CSV download of the filtered returns (or of their metrics)."""
    records = await fetch_returns(db, criteria, limit=get_settings().max_page_size)
    if kind == "analytics":
        frame = build_analytics_frame(compute_metrics(records))
    else:
        frame = build_export_frame(records, include_details=include_details)
    filename = f"devolucoes_{kind}_{datetime.utcnow():%Y%m%d_%H%M}.csv"
    return Response(
        content=to_csv(frame),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/enrich")
async def enrich_returns(
    body: EnrichRequest,
    scope: list[str] = Depends(get_account_scope),
    client: EnrichmentClient = Depends(get_enrichment_client),
    notifier: Notifier = Depends(get_notifier),
):
    """Enrich up to ``limit`` incomplete returns for one account."""
    resolve_accounts([body.account_id], scope)
    result = await _orchestrator(body.account_id, client, notifier).enrich(body.limit)
    return result.to_dict()


@router.post("/enrich/batch")
async def batch_enrich_returns(
    body: BatchEnrichRequest,
    scope: list[str] = Depends(get_account_scope),
    db: AsyncSession = Depends(get_db),
    client: EnrichmentClient = Depends(get_enrichment_client),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Enrich in sequential batches. Without ``total_records`` every
    incomplete return of the account is targeted. ``background`` hands
    the run to the Celery worker instead of waiting for it.
    """
    resolve_accounts([body.account_id], scope)

    if body.background:
        task = celery_app.send_task(
            "workers.enrichment.batch_enrich_account",
            kwargs={"account_id": body.account_id},
        )
        return {"status": "queued", "task_id": getattr(task, "id", None), "account_id": body.account_id}

    total = body.total_records
    if total is None:
        total = await count_incomplete_returns(db, [body.account_id])

    report = await _orchestrator(body.account_id, client, notifier).batch_enrich(total, body.batch_size)
    return report.to_dict()


@router.post("/sync-advanced-fields")
async def sync_advanced_fields(
    body: AccountRequest,
    scope: list[str] = Depends(get_account_scope),
    client: EnrichmentClient = Depends(get_enrichment_client),
    notifier: Notifier = Depends(get_notifier),
):
    resolve_accounts([body.account_id], scope)
    result = await _orchestrator(body.account_id, client, notifier).sync_advanced_fields()
    return result.to_dict()


@router.get("/advanced-metrics")
async def advanced_metrics(
    account_id: str,
    date_from: date | None = None,
    date_to: date | None = None,
    scope: list[str] = Depends(get_account_scope),
    client: EnrichmentClient = Depends(get_enrichment_client),
    notifier: Notifier = Depends(get_notifier),
):
    """Metrics computed by the enrichment service itself."""
    resolve_accounts([account_id], scope)
    result = await _orchestrator(account_id, client, notifier).fetch_advanced_metrics(date_from, date_to)
    return result.to_dict()


@router.post("/actions")
async def apply_action(
    body: ReturnActionRequest,
    scope: list[str] = Depends(get_account_scope),
    db: AsyncSession = Depends(get_db),
    client: EnrichmentClient = Depends(get_enrichment_client),
    notifier: Notifier = Depends(get_notifier),
):
    """Batch user action over selected returns (mark read, set priority, flag seller action)."""
    resolve_accounts([body.account_id], scope)

    if body.action == "mark_as_read":
        data = {"unread_messages": 0}
    elif body.action == "update_priority":
        if body.priority not in PRIORITY_LEVELS:
            raise HTTPException(status_code=422, detail=f"Unknown priority: {body.priority}")
        data = {"priority": body.priority}
    else:
        data = {"seller_action_required": body.required}

    result = await db.execute(
        select(func.count())
        .select_from(ReturnRecord)
        .where(ReturnRecord.id.in_(body.ids), account_scope_clause([body.account_id]))
    )
    if int(result.scalar_one()) != len(set(body.ids)):
        raise HTTPException(status_code=404, detail="Return not found for this account")

    updates = build_column_updates(body.ids, data)
    outcome = await _orchestrator(body.account_id, client, notifier).update_phase2_columns(updates)
    return outcome.to_dict()
