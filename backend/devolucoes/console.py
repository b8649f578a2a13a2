"""
Returns console: per-screen session state.

Owns the filter criteria, view configuration, selection, the fetched
record collection and its metrics snapshot, and the two timers of a
console screen:

  - debounced auto-enrichment, re-armed (cancel + reschedule) on every fetch;
    a trigger that already fired runs to completion
  - periodic refresh, when real-time mode is on

Nothing is shared between console instances. ``close()`` cancels both
timers and refuses any further scheduling, so a torn-down screen can never
fire enrichment.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError

from alerts.notifier import Notification, Notifier
from core.config import Settings, get_settings
from db.models import PRIORITY_LEVELS, ReturnRecord
from devolucoes.filters import SORT_DIRECTIONS, SORTABLE_FIELDS, FilterCriteria, count_incomplete_returns, fetch_returns
from devolucoes.metrics import MetricsSnapshot, compute_metrics
from integrations.base import ActionResult
from workers.enrichment import BatchReport, EnrichmentOrchestrator

logger = structlog.get_logger()

DEFAULT_COLUMNS = [
    "order_id",
    "product_title",
    "status",
    "priority",
    "retained_value",
    "cancel_reason",
    "buyer_nickname",
    "created_at",
]

NO_ACCOUNT_SELECTED = "Nenhuma conta de integração selecionada"


def build_column_updates(ids: Iterable[str], data: dict[str, Any], now: datetime | None = None) -> list[dict[str, Any]]:
    """``[{"id": ..., "data": {...}}]`` payload for update_phase2_columns, stamped with updated_at."""
    stamp = (now or datetime.utcnow()).isoformat()
    return [{"id": str(record_id), "data": {**data, "updated_at": stamp}} for record_id in ids]


class ViewMode(str, Enum):
    CARDS = "cards"
    TABLE = "table"


class ViewConfig(BaseModel):
    mode: ViewMode = ViewMode.CARDS
    cards_per_page: int = 20
    table_page_size: int = 25
    sort_field: str = "created_at"
    sort_direction: str = "desc"
    columns_visible: list[str] = DEFAULT_COLUMNS
    compact_mode: bool = False

    @field_validator("sort_field")
    @classmethod
    def _known_sort_field(cls, value: str) -> str:
        if value not in SORTABLE_FIELDS:
            raise ValueError(f"Unsupported sort field: {value}")
        return value

    @field_validator("sort_direction")
    @classmethod
    def _known_sort_direction(cls, value: str) -> str:
        if value not in SORT_DIRECTIONS:
            raise ValueError(f"Unsupported sort direction: {value}")
        return value

    @property
    def page_size(self) -> int:
        return self.cards_per_page if self.mode == ViewMode.CARDS else self.table_page_size


def _log_task_failure(task: asyncio.Task) -> None:
    """Done-callback: surface an exception nobody awaited."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("console.task_failed", task=task.get_name(), error=str(exc), exc_info=exc)


class ScheduledTask:
    """A coroutine run once after ``delay`` seconds, cancelable until it fires."""

    def __init__(
        self,
        delay: float,
        callback: Callable[[], Awaitable[Any]],
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        name: str | None = None,
    ):
        self.delay = delay
        self.callback = callback
        self.sleep = sleep
        self.name = name
        self.fired = False
        self._task: asyncio.Task = asyncio.create_task(self._run(), name=name)
        self._task.add_done_callback(_log_task_failure)

    async def _run(self) -> Any:
        await self.sleep(self.delay)
        self.fired = True
        return await self.callback()

    def cancel(self) -> bool:
        """Cancel before the delay elapses; a fired callback is left to finish."""
        if self.fired:
            return False
        return self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()

    @property
    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> Any:
        """Await completion; a cancelled task resolves to None."""
        with contextlib.suppress(asyncio.CancelledError):
            return await self._task
        return None


class ReturnsConsole:
    """
    Session state for one returns screen, scoped to ``account_ids``.

    ``session_factory`` is called with no arguments and must return an async
    context manager yielding an AsyncSession (an ``async_sessionmaker`` works).
    """

    def __init__(
        self,
        session_factory: Callable[[], Any],
        orchestrator: EnrichmentOrchestrator,
        notifier: Notifier,
        account_ids: list[str],
        *,
        auto_enrich: bool = False,
        real_time: bool = False,
        settings: Settings | None = None,
        default_filters: FilterCriteria | None = None,
        default_view: ViewConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.account_ids = [str(account_id) for account_id in account_ids if account_id]
        self.auto_enrich = auto_enrich
        self.real_time = real_time
        self.sleep = sleep
        self.logger = logger.bind(accounts=len(self.account_ids))

        self._default_filters = default_filters
        self.filters = self._initial_filters()
        self.view = default_view or ViewConfig(
            cards_per_page=self.settings.cards_per_page,
            table_page_size=self.settings.table_page_size,
        )

        self.records: list[ReturnRecord] = []
        self.metrics: MetricsSnapshot = compute_metrics([])
        self.selected: set[str] = set()
        self.last_refreshed_at: datetime | None = None
        self.stale = True
        self.closed = False

        self._auto_task: ScheduledTask | None = None
        self._refresh_task: asyncio.Task | None = None

        if orchestrator.on_mutation is None:
            orchestrator.on_mutation = self._after_mutation

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def start(self) -> "ReturnsConsole":
        if self.closed:
            raise RuntimeError("Console is closed")
        await self.refresh()
        if self.real_time and self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop(), name="returns-console-refresh")
            self._refresh_task.add_done_callback(_log_task_failure)
        return self

    async def close(self) -> None:
        """Cancel pending timers. Idempotent."""
        self.closed = True
        if self._auto_task is not None:
            self._auto_task.cancel()
            await self._auto_task.wait()
            self._auto_task = None
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._refresh_task
            self._refresh_task = None
        self.logger.info("console.closed")

    async def __aenter__(self) -> "ReturnsConsole":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _refresh_loop(self) -> None:
        while not self.closed:
            await self.sleep(self.settings.refresh_interval_seconds)
            if self.closed:
                break
            try:
                await self.refresh()
            except Exception as exc:  # noqa: BLE001
                self.logger.error("console.refresh_loop_error", error=str(exc), exc_info=True)

    # ── Records & metrics ─────────────────────────────────────────────

    def _initial_filters(self) -> FilterCriteria:
        if self._default_filters is None:
            return FilterCriteria.default(self.account_ids, self.settings.default_window_days)
        return self._scoped(self._default_filters)

    def _scoped(self, criteria: FilterCriteria) -> FilterCriteria:
        """Restrict ``criteria.account_ids`` to this console's scope (all of it when unset)."""
        requested = criteria.account_ids or self.account_ids
        allowed = [account_id for account_id in requested if account_id in self.account_ids]
        if len(allowed) != len(requested):
            self.logger.warning("console.accounts_out_of_scope", dropped=len(requested) - len(allowed))
        return criteria.model_copy(update={"account_ids": allowed})

    async def refresh(self, *, notify: bool = False, arm_auto_enrich: bool = True) -> list[ReturnRecord]:
        """Fetch the current page, recompute metrics and re-arm auto-enrichment."""
        if not self.filters.account_ids:
            self.records = []
            self.metrics = compute_metrics([])
            self.selected.clear()
            self.stale = False
            if notify:
                await self._notify("warning", NO_ACCOUNT_SELECTED)
            return self.records

        try:
            async with self.session_factory() as db:
                records = await fetch_returns(
                    db,
                    self.filters,
                    sort_field=self.view.sort_field,
                    sort_direction=self.view.sort_direction,
                    limit=self.view.page_size,
                )
        except SQLAlchemyError as exc:
            self.logger.error("console.refresh_failed", error=str(exc), exc_info=True)
            if notify:
                await self._notify("error", f"Erro ao carregar devoluções: {exc}")
            return self.records

        self.records = records
        self.metrics = compute_metrics(records)
        self.selected &= {str(record.id) for record in records}
        self.last_refreshed_at = datetime.utcnow()
        self.stale = False
        self.logger.debug("console.refreshed", count=len(records))

        if notify:
            await self._notify("info", f"{len(records)} devoluções encontradas", count=len(records))
        if arm_auto_enrich:
            self._schedule_auto_enrich()
        return self.records

    def invalidate(self) -> None:
        """Mark the collection stale; the next ensure_fresh() refetches."""
        self.stale = True

    async def ensure_fresh(self) -> list[ReturnRecord]:
        if self.stale:
            return await self.refresh()
        return self.records

    async def _after_mutation(self) -> None:
        self.invalidate()
        await self.refresh(arm_auto_enrich=False)

    # ── Filters & view ────────────────────────────────────────────────

    async def update_filters(self, **changes: Any) -> list[ReturnRecord]:
        unknown = set(changes) - set(FilterCriteria.model_fields)
        if unknown:
            raise ValueError(f"Unknown filter fields: {', '.join(sorted(unknown))}")
        merged = FilterCriteria.model_validate({**self.filters.model_dump(), **changes})
        self.filters = self._scoped(merged)
        return await self.refresh(notify=True)

    async def clear_filters(self) -> list[ReturnRecord]:
        self._default_filters = None
        self.filters = self._initial_filters()
        return await self.refresh(notify=True)

    async def set_view_mode(self, mode: ViewMode | str) -> list[ReturnRecord]:
        self.view = self.view.model_copy(update={"mode": ViewMode(mode)})
        return await self.refresh()

    async def set_sort(self, field: str, direction: str = "desc") -> list[ReturnRecord]:
        self.view = ViewConfig.model_validate({**self.view.model_dump(), "sort_field": field, "sort_direction": direction})
        return await self.refresh()

    def set_compact_mode(self, compact: bool) -> None:
        self.view = self.view.model_copy(update={"compact_mode": compact})

    def set_columns(self, columns: list[str]) -> None:
        self.view = self.view.model_copy(update={"columns_visible": list(columns)})

    # ── Selection ─────────────────────────────────────────────────────

    def select(self, ids: Iterable[str]) -> None:
        self.selected.update(str(record_id) for record_id in ids)

    def toggle(self, record_id: str) -> bool:
        """Flip one record's selection; returns whether it is now selected."""
        record_id = str(record_id)
        if record_id in self.selected:
            self.selected.discard(record_id)
            return False
        self.selected.add(record_id)
        return True

    def select_all(self) -> None:
        self.selected = {str(record.id) for record in self.records}

    def clear_selection(self) -> None:
        self.selected.clear()

    # ── Batch user actions ────────────────────────────────────────────

    def _target_ids(self, ids: Iterable[str] | None) -> list[str]:
        return sorted(self.selected) if ids is None else [str(record_id) for record_id in ids]

    async def _apply(self, ids: Iterable[str] | None, data: dict[str, Any]) -> ActionResult:
        updates = build_column_updates(self._target_ids(ids), data)
        result = await self.orchestrator.update_phase2_columns(updates)
        if result.success:
            self.clear_selection()
        return result

    async def mark_as_read(self, ids: Iterable[str] | None = None) -> ActionResult:
        return await self._apply(ids, {"unread_messages": 0})

    async def update_priority(self, ids: Iterable[str] | None, priority: str) -> ActionResult:
        if priority not in PRIORITY_LEVELS:
            raise ValueError(f"Unknown priority: {priority}")
        return await self._apply(ids, {"priority": priority})

    async def mark_seller_action(self, ids: Iterable[str] | None = None, required: bool = True) -> ActionResult:
        return await self._apply(ids, {"seller_action_required": required})

    # ── Enrichment ────────────────────────────────────────────────────

    async def enrich_now(self, limit: int = 50) -> ActionResult:
        return await self.orchestrator.enrich(limit)

    async def batch_enrich(self, total_records: int | None = None) -> BatchReport:
        """Without ``total_records`` every incomplete return of the account is targeted, not just this page."""
        total = total_records
        if total is None:
            account_id = self.orchestrator.account_id
            async with self.session_factory() as db:
                total = await count_incomplete_returns(db, [account_id] if account_id else [])
        return await self.orchestrator.batch_enrich(total, self.settings.enrichment_batch_size)

    @property
    def is_loading(self) -> bool:
        return self.orchestrator.is_loading

    @property
    def progress(self) -> float:
        return self.orchestrator.progress

    def _schedule_auto_enrich(self) -> ScheduledTask | None:
        if self.closed or not self.auto_enrich:
            return None
        if self._auto_task is not None and not self._auto_task.done and not self._auto_task.fired:
            self._auto_task.cancel()
        self._auto_task = ScheduledTask(
            self.settings.auto_enrich_delay_seconds,
            self._run_auto_enrich,
            sleep=self.sleep,
            name="returns-console-auto-enrich",
        )
        return self._auto_task

    async def _run_auto_enrich(self) -> ActionResult | None:
        if self.closed:
            return None
        return await self.orchestrator.auto_enrich(self.records)

    @property
    def pending_auto_enrich(self) -> ScheduledTask | None:
        return self._auto_task

    # ── Notifications ─────────────────────────────────────────────────

    async def _notify(self, level: str, message: str, **data: Any) -> None:
        account_id = self.account_ids[0] if len(self.account_ids) == 1 else None
        await self.notifier.notify(Notification(level=level, message=message, account_id=account_id, data=data))
