"""Account-aware scheduler helpers for Celery beat fan-out."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy import select

from workers.celery_app import celery_app

logger = structlog.get_logger()

DEFAULT_ACTIVE_STATUSES = ("active",)


@celery_app.task(
    name="workers.scheduler.dispatch_active_accounts",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_active_accounts(
    self,
    task_name: str,
    task_kwargs: dict | None = None,
    statuses: list[str] | None = None,
):
    """
    Dispatch an account-scoped task across all active integration accounts.
    """
    from core.config import get_settings
    from db.models import IntegrationAccount
    from db.session import worker_session

    run_id = self.request.id or "manual"
    payload = dict(task_kwargs or {})
    selected_statuses = tuple(statuses or DEFAULT_ACTIVE_STATUSES)

    if not task_name.startswith("workers."):
        return {"status": "failed", "reason": "invalid_task_name", "task_name": task_name}

    async def _dispatch():
        settings = get_settings()
        async with worker_session(settings.database_url) as db:
            result = await db.execute(
                select(IntegrationAccount.account_id)
                .where(IntegrationAccount.status.in_(selected_statuses))
                .order_by(IntegrationAccount.created_at)
            )
            accounts = [str(row.account_id) for row in result.all()]

        for account_id in accounts:
            kwargs = dict(payload)
            kwargs["account_id"] = account_id
            celery_app.send_task(task_name, kwargs=kwargs)

        summary = {
            "status": "success",
            "task_name": task_name,
            "account_count": len(accounts),
            "dispatched_count": len(accounts),
            "statuses": list(selected_statuses),
            "triggered_at": datetime.now(timezone.utc).isoformat(),
            "run_id": run_id,
        }
        logger.info("scheduler.dispatch_complete", **summary)
        return summary

    try:
        return asyncio.run(_dispatch())
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.dispatch_failed", task_name=task_name, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
