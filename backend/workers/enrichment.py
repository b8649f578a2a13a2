"""
Enrichment Orchestrator: bounded, throttled calls to the enrichment endpoint.

State machine per orchestrator (one account scope):

    Idle ──batch_enrich()──▶ Running ──▶ Completed | Failed ──▶ Idle

Batches run strictly one after another with a cooldown in between (never
after the last one). A failed batch is recorded and the loop moves on;
progress always ends at 100. Nothing here raises to the caller: every
operation returns an ActionResult or a BatchReport and emits exactly one
notification.

Successful mutations await ``on_mutation`` before notifying, so whoever
shows the success message is already looking at refreshed data.

Also hosts the Celery task that runs a batch for one account from beat.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

import structlog

from alerts.notifier import Notification, Notifier
from devolucoes.extraction import record_value
from integrations.base import ActionResult, RunStatus
from integrations.enrichment_client import EnrichmentClient
from workers.celery_app import celery_app

logger = structlog.get_logger()

MISSING_ACCOUNT = "ID da conta de integração não fornecido"
ALREADY_RUNNING = "Enriquecimento em lote já em andamento"
NO_UPDATES = "Nenhuma atualização fornecida"


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class EnrichmentJob:
    """Live state of one batch run. Dropped when the run ends."""

    account_id: str
    batch_size: int
    batches_total: int
    batches_done: int = 0
    batches_failed: int = 0
    records_enriched: int = 0
    progress: float = 0.0
    state: JobState = JobState.RUNNING
    outcome: RunStatus | None = None
    error: str | None = None
    started_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def batches_succeeded(self) -> int:
        return self.batches_done - self.batches_failed


@dataclass
class BatchReport:
    """Final outcome of a batch run, kept after the job is dropped."""

    status: RunStatus
    account_id: str | None
    total_batches: int = 0
    batches_processed: int = 0
    batches_failed: int = 0
    total_enriched: int = 0
    errors: list[str] = field(default_factory=list)
    error: str | None = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    @property
    def success(self) -> bool:
        return self.status in (RunStatus.SUCCESS, RunStatus.PARTIAL)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status.value,
            "account_id": self.account_id,
            "total_batches": self.total_batches,
            "batches_processed": self.batches_processed,
            "batches_failed": self.batches_failed,
            "total_enriched": self.total_enriched,
            "errors": list(self.errors),
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def needs_enrichment(records: Iterable[Any]) -> bool:
    """True when any record lacks a message timeline, a priority or an attachment count."""
    for record in records:
        if not record_value(record, "message_timeline"):
            return True
        if not record_value(record, "priority"):
            return True
        if record_value(record, "attachments_count") is None:
            return True
    return False


class EnrichmentOrchestrator:
    """
    Drives the enrichment endpoint for one account.

    ``sleep`` is injected so tests can run batch loops without wall-clock
    waits; ``on_mutation`` is awaited after every successful write.
    """

    def __init__(
        self,
        client: EnrichmentClient,
        notifier: Notifier,
        account_id: str | None,
        *,
        batch_size: int = 25,
        cooldown_seconds: float = 1.0,
        auto_enrich_limit: int = 10,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_mutation: Callable[[], Awaitable[Any]] | None = None,
        on_progress: Callable[[EnrichmentJob], Any] | None = None,
    ):
        self.client = client
        self.notifier = notifier
        self.account_id = account_id
        self.batch_size = batch_size
        self.cooldown_seconds = cooldown_seconds
        self.auto_enrich_limit = auto_enrich_limit
        self.sleep = sleep
        self.on_mutation = on_mutation
        self.on_progress = on_progress
        self.logger = logger.bind(account_id=account_id)

        self.progress: float = 0.0
        self.job: EnrichmentJob | None = None
        self.last_report: BatchReport | None = None
        self.last_sync: datetime | None = None
        self.remote_metrics: dict[str, Any] | None = None
        self._in_flight = 0
        self._auto_running = False

    # ── Observable state ──────────────────────────────────────────────

    @property
    def is_loading(self) -> bool:
        return self._in_flight > 0

    @property
    def is_running(self) -> bool:
        return self.job is not None

    # ── Helpers ───────────────────────────────────────────────────────

    async def _notify(self, level: str, message: str, **data: Any) -> None:
        await self.notifier.notify(Notification(level=level, message=message, account_id=self.account_id, data=data))

    async def _mutated(self) -> None:
        self.last_sync = datetime.utcnow()
        if self.on_mutation is None:
            return
        try:
            await self.on_mutation()
        except Exception as exc:  # noqa: BLE001
            self.logger.error("enrichment.invalidate_failed", error=str(exc), exc_info=True)

    async def _missing_account(self) -> ActionResult:
        self.logger.warning("enrichment.missing_account")
        await self._notify("error", MISSING_ACCOUNT)
        return ActionResult.failure(MISSING_ACCOUNT)

    # ── Single-shot actions ───────────────────────────────────────────

    async def enrich(self, limit: int = 50) -> ActionResult:
        """Ask the endpoint to enrich up to ``limit`` records."""
        if not self.account_id:
            return await self._missing_account()

        self._in_flight += 1
        self.progress = 0.0
        try:
            self.logger.info("enrichment.enrich.started", limit=limit)
            result = await self.client.enrich_existing_data(self.account_id, limit=limit)
            if not result.success:
                await self._notify("error", f"Erro no enriquecimento: {result.error}")
                return result

            self.progress = 100.0
            await self._mutated()
            await self._notify(
                "success",
                f"{result.enriched_count} devoluções enriquecidas",
                enriched_count=result.enriched_count,
                processed_count=result.processed_count,
            )
            return result
        finally:
            self._in_flight -= 1

    async def auto_enrich(self, records: Iterable[Any]) -> ActionResult | None:
        """Low-limit enrichment when the fetched records look incomplete; None when skipped."""
        if not needs_enrichment(records):
            return None
        if self.is_running or self._auto_running:
            self.logger.debug("enrichment.auto.skipped", reason="in_flight")
            return None

        self._auto_running = True
        try:
            self.logger.info("enrichment.auto.triggered", limit=self.auto_enrich_limit)
            return await self.enrich(self.auto_enrich_limit)
        finally:
            self._auto_running = False

    async def sync_advanced_fields(self) -> ActionResult:
        if not self.account_id:
            return await self._missing_account()

        self._in_flight += 1
        try:
            result = await self.client.sync_advanced_fields(self.account_id)
            if not result.success:
                await self._notify("error", f"Erro na sincronização: {result.error}")
                return result
            await self._mutated()
            await self._notify("success", "Campos avançados sincronizados")
            return result
        finally:
            self._in_flight -= 1

    async def fetch_advanced_metrics(self, date_from: date | None = None, date_to: date | None = None) -> ActionResult:
        if not self.account_id:
            return await self._missing_account()

        self._in_flight += 1
        try:
            result = await self.client.fetch_advanced_metrics(self.account_id, date_from=date_from, date_to=date_to)
            if not result.success:
                await self._notify("error", f"Erro ao buscar métricas: {result.error}")
                return result
            self.remote_metrics = result.data.get("metrics")
            await self._notify("success", "Métricas avançadas carregadas")
            return result
        finally:
            self._in_flight -= 1

    async def update_phase2_columns(self, updates: list[dict[str, Any]]) -> ActionResult:
        """Write explicit column updates (``[{"id": ..., "data": {...}}, ...]``)."""
        if not self.account_id:
            return await self._missing_account()
        if not updates:
            await self._notify("error", NO_UPDATES)
            return ActionResult.failure(NO_UPDATES)

        self._in_flight += 1
        try:
            self.logger.info("enrichment.update.started", updates=len(updates))
            result = await self.client.update_phase2_columns(self.account_id, updates)
            if not result.success:
                await self._notify("error", f"Erro na atualização: {result.error}")
                return result
            await self._mutated()
            await self._notify(
                "success",
                f"{result.updated_count} registros atualizados",
                updated_count=result.updated_count,
            )
            return result
        finally:
            self._in_flight -= 1

    # ── Batch run ─────────────────────────────────────────────────────

    async def _abort(self, error: str) -> BatchReport:
        report = BatchReport(status=RunStatus.ABORTED, account_id=self.account_id, error=error)
        report.completed_at = datetime.utcnow()
        self.logger.warning("enrichment.batch.aborted", error=error)
        await self._notify("error", error)
        return report

    async def batch_enrich(self, total_records: int, batch_size: int | None = None) -> BatchReport:
        """
        Enrich ``total_records`` in sequential batches of ``batch_size``.

        A second call while a run is in progress is rejected as ABORTED.
        """
        if not self.account_id:
            return await self._abort(MISSING_ACCOUNT)
        if self.is_running:
            return await self._abort(ALREADY_RUNNING)

        size = max(1, batch_size or self.batch_size)
        job = EnrichmentJob(
            account_id=self.account_id,
            batch_size=size,
            batches_total=math.ceil(max(0, total_records) / size),
        )
        self.job = job
        self.progress = 0.0
        self._in_flight += 1
        errors: list[str] = []
        report: BatchReport | None = None

        try:
            self.logger.info("enrichment.batch.started", batches=job.batches_total, batch_size=size)
            for index in range(job.batches_total):
                result = await self.client.enrich_existing_data(self.account_id, limit=size)
                job.batches_done += 1
                if result.success:
                    job.records_enriched += result.enriched_count
                else:
                    job.batches_failed += 1
                    errors.append(result.error or "")
                    self.logger.warning(
                        "enrichment.batch.failed",
                        batch=index + 1,
                        batches=job.batches_total,
                        error=result.error,
                    )

                job.progress = job.batches_done / job.batches_total * 100
                self.progress = job.progress
                if self.on_progress is not None:
                    self.on_progress(job)

                if index < job.batches_total - 1:
                    await self.sleep(self.cooldown_seconds)

            if job.batches_failed == 0:
                job.outcome = RunStatus.SUCCESS
            elif job.batches_failed == job.batches_total:
                job.outcome = RunStatus.FAILED
                job.error = errors[-1]
            else:
                job.outcome = RunStatus.PARTIAL
                job.error = f"{job.batches_failed} de {job.batches_total} lotes falharam"
        except Exception as exc:  # noqa: BLE001
            self.logger.error("enrichment.batch.crashed", error=str(exc), exc_info=True)
            job.outcome = RunStatus.ABORTED
            job.error = str(exc) or type(exc).__name__
        finally:
            job.progress = 100.0
            self.progress = 100.0
            job.state = JobState.COMPLETED if job.outcome in (RunStatus.SUCCESS, RunStatus.PARTIAL) else JobState.FAILED
            report = BatchReport(
                status=job.outcome or RunStatus.ABORTED,
                account_id=job.account_id,
                total_batches=job.batches_total,
                batches_processed=job.batches_succeeded,
                batches_failed=job.batches_failed,
                total_enriched=job.records_enriched,
                errors=errors,
                error=job.error,
                started_at=job.started_at,
                completed_at=datetime.utcnow(),
            )
            self.last_report = report
            self.job = None
            self._in_flight -= 1

        self.logger.info(
            "enrichment.batch.completed",
            status=report.status.value,
            enriched=report.total_enriched,
            failed=report.batches_failed,
        )

        if report.batches_processed > 0:
            await self._mutated()
        await self._notify_report(report)
        return report

    async def _notify_report(self, report: BatchReport) -> None:
        data = report.to_dict()
        if report.status == RunStatus.SUCCESS:
            await self._notify(
                "success",
                f"Processamento em lote concluído! {report.total_enriched} registros enriquecidos "
                f"em {report.batches_processed} lotes.",
                **data,
            )
        elif report.status == RunStatus.PARTIAL:
            await self._notify(
                "warning",
                f"Processamento em lote concluído com falhas: {report.total_enriched} registros enriquecidos, "
                f"{report.batches_failed} de {report.total_batches} lotes falharam.",
                **data,
            )
        else:
            await self._notify("error", f"Erro no processamento em lote: {report.error}", **data)


# ──────────────────────────────────────────────────────────────────────────
# Scheduled run (Celery)
# ──────────────────────────────────────────────────────────────────────────


async def run_account_enrichment(db, *, account_id: str, orchestrator: EnrichmentOrchestrator) -> BatchReport | None:
    """Count this account's incomplete records and enrich them in batches."""
    from devolucoes.filters import count_incomplete_returns

    pending = await count_incomplete_returns(db, [account_id])
    if pending == 0:
        logger.info("enrichment.scheduled.nothing_pending", account_id=account_id)
        return None
    return await orchestrator.batch_enrich(pending)


@celery_app.task(
    name="workers.enrichment.batch_enrich_account",
    bind=True,
    max_retries=1,
    default_retry_delay=300,
    acks_late=True,
)
def batch_enrich_account(self, account_id: str):
    """
    Enrich every incomplete return for one account.
    Scheduled via Celery Beat through workers.scheduler.dispatch_active_accounts.
    """
    run_id = self.request.id or "manual"
    logger.info("enrichment.scheduled.started", account_id=account_id, run_id=run_id)

    async def _run():
        from alerts.notifier import RedisNotifier
        from core.config import get_settings
        from db.session import worker_session

        settings = get_settings()
        orchestrator = EnrichmentOrchestrator(
            EnrichmentClient.from_settings(settings),
            RedisNotifier(settings.redis_url, settings.notification_channel_prefix),
            account_id,
            batch_size=settings.enrichment_batch_size,
            cooldown_seconds=settings.enrichment_cooldown_seconds,
            auto_enrich_limit=settings.auto_enrich_limit,
        )
        async with worker_session(settings.database_url) as db:
            report = await run_account_enrichment(db, account_id=account_id, orchestrator=orchestrator)

        if report is None:
            return {"status": "no_data", "account_id": account_id, "run_id": run_id}
        return {**report.to_dict(), "run_id": run_id}

    try:
        return asyncio.run(_run())
    except Exception as exc:  # noqa: BLE001
        logger.error("enrichment.scheduled.failed", account_id=account_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
