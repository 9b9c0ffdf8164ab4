"""Processing-queue worker.

Picks due ``processing_queue`` rows, runs the handler registered for their
``process_type`` and records the outcome. Failed tasks are rescheduled with
exponential backoff until they run out of retries.
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import uuid4

import structlog

from contaflix.config import get_settings
from contaflix.events import EventPublisher
from contaflix.events.types import (
    queue_batch_completed,
    queue_task_completed,
    queue_task_failed,
)
from contaflix.tools.baas_api import BaaSClient, BaaSError, eq, lt, lte

logger = structlog.get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
BACKOFF_BASE_MINUTES = 5

Task = dict[str, Any]
TaskHandler = Callable[[BaaSClient, Task], Awaitable[dict[str, Any]]]


class QueueTaskError(Exception):
    """Raised by handlers for tasks that cannot be processed."""

    pass


@dataclass
class QueueSummary:
    total: int
    processed: int
    failed: int
    execution_time_ms: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def retry_delay(retry_count: int) -> timedelta:
    """Backoff before the next attempt: 10, 20, 40... minutes."""
    return timedelta(minutes=BACKOFF_BASE_MINUTES * 2**retry_count)


def _max_retries(task: Task) -> int:
    return int(task.get("max_retries") or DEFAULT_MAX_RETRIES)


def _parameters(task: Task) -> dict[str, Any]:
    params = task.get("parameters") or task.get("payload") or {}
    if not isinstance(params, dict):
        raise QueueTaskError(f"Task {task.get('id')} has malformed parameters")
    return params


def _require(params: dict[str, Any], *names: str) -> None:
    missing = [n for n in names if params.get(n) in (None, "")]
    if missing:
        raise QueueTaskError(f"Missing task parameters: {', '.join(missing)}")


# === Task handlers ===


async def update_account_balances(baas: BaaSClient, task: Task) -> dict[str, Any]:
    params = _parameters(task)
    _require(params, "lancamento_id")
    items = await baas.select(
        "lancamentos_itens", {"lancamento_id": eq(params["lancamento_id"])}
    )
    accounts = params.get("contas_afetadas") or sorted(
        {i["conta_id"] for i in items if i.get("conta_id")}
    )

    results = []
    for account_id in accounts:
        account_items = [i for i in items if i.get("conta_id") == account_id]
        variation = Decimal("0")
        for item in account_items:
            value = Decimal(str(item.get("valor") or 0))
            variation += value if item.get("tipo_movimento") == "DEBITO" else -value
        results.append(
            {
                "conta_id": account_id,
                "variacao": str(variation),
                "itens_processados": len(account_items),
            }
        )
    return {"contas_atualizadas": len(accounts), "resultados": results}


async def recalculate_reports(baas: BaaSClient, task: Task) -> dict[str, Any]:
    params = _parameters(task)
    _require(params, "client_id")
    data = await baas.invoke(
        "generate-pdf-report",
        {
            "client_id": params["client_id"],
            "report_type": params.get("report_type", "balancete"),
            "periodo": params.get("periodo"),
            "auto_generated": True,
        },
    )
    report_id = data.get("report_id") if isinstance(data, dict) else None
    return {"relatorio_gerado": True, "report_id": report_id}


async def send_notifications(baas: BaaSClient, task: Task) -> dict[str, Any]:
    params = _parameters(task)
    notification_type = params.get("notification_type", "info")
    entry_id = params.get("lancamento_id")
    await baas.insert(
        "notifications",
        {
            "user_id": params.get("user_id"),
            "title": params.get("title", "Lançamento Contábil Processado"),
            "message": params.get(
                "message", f"Lançamento contábil {entry_id} foi processado com sucesso"
            ),
            "type": notification_type,
            "priority": params.get("priority", 2),
            "category": params.get("category", "contabil"),
            "metadata": {"lancamento_id": entry_id, "client_id": params.get("client_id")},
        },
        returning=False,
    )
    return {"notificacao_enviada": True, "tipo": notification_type}


BACKUP_TABLES = ("lancamentos_contabeis", "client_documents", "obrigacoes_fiscais")


async def backup_data(baas: BaaSClient, task: Task) -> dict[str, Any]:
    """Snapshot a client's rows into ``data_backups``."""
    params = _parameters(task)
    _require(params, "client_id")
    client_id = params["client_id"]
    tables = params.get("tables") or list(BACKUP_TABLES)

    snapshot: dict[str, list[dict[str, Any]]] = {}
    for table in tables:
        snapshot[table] = await baas.select(table, {"client_id": eq(client_id)})

    rows = await baas.insert(
        "data_backups",
        {
            "client_id": client_id,
            "tables": tables,
            "row_counts": {t: len(r) for t, r in snapshot.items()},
            "payload": snapshot,
        },
    )
    return {
        "backup_created": True,
        "backup_id": rows[0].get("id") if rows else None,
        "records": sum(len(r) for r in snapshot.values()),
    }


CLEANUP_TABLES = {"automation_logs": "created_at", "notifications": "created_at"}


async def cleanup_old_data(baas: BaaSClient, task: Task) -> dict[str, Any]:
    params = _parameters(task)
    days = int(params.get("older_than_days") or get_settings().queue_retention_days)
    cutoff = datetime.now(UTC) - timedelta(days=days)

    cleaned: dict[str, int] = {}
    for table in params.get("tables") or list(CLEANUP_TABLES):
        column = CLEANUP_TABLES.get(table)
        if column is None:
            raise QueueTaskError(f"Table {table} is not eligible for cleanup")
        deleted = await baas.delete(table, {column: lt(cutoff)})
        cleaned[table] = len(deleted)
    return {"records_cleaned": sum(cleaned.values()), "by_table": cleaned}


DEFAULT_HANDLERS: dict[str, TaskHandler] = {
    "update_account_balances": update_account_balances,
    "recalculate_reports": recalculate_reports,
    "send_notifications": send_notifications,
    "backup_data": backup_data,
    "cleanup_old_data": cleanup_old_data,
}


class QueueProcessor:
    """Processes one batch of the ``processing_queue`` table per call."""

    def __init__(
        self,
        baas: BaaSClient,
        publisher: EventPublisher | None = None,
        batch_size: int | None = None,
        worker_id: str | None = None,
    ):
        settings = get_settings()
        self._baas = baas
        self._publisher = publisher
        self._batch_size = batch_size or settings.queue_batch_size
        self._timeout = timedelta(minutes=settings.queue_task_timeout_minutes)
        self._retention = timedelta(days=settings.queue_retention_days)
        self.worker_id = worker_id or f"worker-{uuid4()}"
        self._handlers: dict[str, TaskHandler] = dict(DEFAULT_HANDLERS)
        self._logger = logger.bind(component="queue_processor", worker_id=self.worker_id)

    def register(self, process_type: str, handler: TaskHandler) -> None:
        self._handlers[process_type] = handler

    @property
    def process_types(self) -> list[str]:
        return sorted(self._handlers)

    async def fetch_due_tasks(self, now: datetime) -> list[Task]:
        """Due pending tasks, highest priority first.

        Pending rows that already used up their retries are marked ``failed``
        on sight so they stop occupying the head of every batch.
        """
        rows = await self._baas.select(
            "processing_queue",
            {"status": eq("pending"), "scheduled_at": lte(now)},
            order="priority.asc,scheduled_at.asc",
            limit=self._batch_size,
        )
        due = []
        for row in rows:
            if int(row.get("retry_count") or 0) < _max_retries(row):
                due.append(row)
            else:
                await self._retire(row, now)
        return due

    async def _retire(self, task: Task, now: datetime) -> None:
        try:
            await self._baas.update(
                "processing_queue",
                {
                    "status": "failed",
                    "error_details": {
                        "message": "Retry limit reached before the task was picked up",
                        "max_retries_exceeded": True,
                        "timestamp": now.isoformat(),
                    },
                    "updated_at": now.isoformat(),
                },
                {"id": eq(task["id"]), "status": eq("pending")},
            )
        except BaaSError as e:
            self._logger.warning("exhausted_task_not_retired", task_id=task["id"], error=str(e))
            return
        self._logger.warning("exhausted_task_retired", task_id=task["id"])

    async def reset_timed_out(self, now: datetime) -> int:
        """Return stuck ``processing`` rows to the pending pool."""
        rows = await self._baas.update(
            "processing_queue",
            {
                "status": "pending",
                "started_at": None,
                "timeout_at": None,
                "worker_id": None,
                "updated_at": now.isoformat(),
            },
            {"status": eq("processing"), "timeout_at": lt(now)},
        )
        if rows:
            self._logger.warning("timed_out_tasks_reset", count=len(rows))
        return len(rows)

    async def cleanup_completed(self, now: datetime) -> int:
        try:
            rows = await self._baas.delete(
                "processing_queue",
                {"status": eq("completed"), "completed_at": lt(now - self._retention)},
            )
        except BaaSError as e:
            self._logger.warning("completed_tasks_cleanup_failed", error=str(e))
            return 0
        self._logger.debug("completed_tasks_cleaned", count=len(rows))
        return len(rows)

    async def _log_event(
        self,
        event_type: str,
        message: str,
        metadata: dict[str, Any],
        severity: str = "info",
    ) -> None:
        # Audit events never change the outcome of a task.
        try:
            await self._baas.log_critical_event(event_type, message, metadata, severity=severity)
        except BaaSError as e:
            self._logger.warning("critical_event_not_logged", event_type=event_type, error=str(e))

    async def _claim(self, task: Task) -> None:
        started_at = datetime.now(UTC)
        await self._baas.update(
            "processing_queue",
            {
                "status": "processing",
                "started_at": started_at.isoformat(),
                "timeout_at": (started_at + self._timeout).isoformat(),
                "worker_id": self.worker_id,
            },
            {"id": eq(task["id"])},
        )

    async def _run_task(self, task: Task) -> dict[str, Any]:
        process_type = task.get("process_type")
        handler = self._handlers.get(str(process_type))
        if handler is None:
            raise QueueTaskError(f"Unsupported process type: {process_type}")
        return await handler(self._baas, task)

    async def _complete(self, task: Task, result: dict[str, Any]) -> None:
        now = datetime.now(UTC).isoformat()
        await self._baas.update(
            "processing_queue",
            {"status": "completed", "result": result, "completed_at": now, "updated_at": now},
            {"id": eq(task["id"])},
        )
        await self._log_event(
            "task_completed",
            f"Tarefa {task.get('process_type')} concluída com sucesso",
            {"task_id": task["id"], "process_type": task.get("process_type"), "result": result},
        )

    async def _fail(self, task: Task, error: Exception) -> bool:
        """Reschedule or give up on a failed task; True when it will retry."""
        now = datetime.now(UTC)
        retry_count = int(task.get("retry_count") or 0) + 1
        max_retries = _max_retries(task)
        error_details: dict[str, Any] = {"message": str(error), "timestamp": now.isoformat()}

        if retry_count < max_retries:
            next_attempt = now + retry_delay(retry_count)
            await self._baas.update(
                "processing_queue",
                {
                    "status": "pending",
                    "retry_count": retry_count,
                    "error_details": error_details,
                    "scheduled_at": next_attempt.isoformat(),
                    "started_at": None,
                    "timeout_at": None,
                    "updated_at": now.isoformat(),
                },
                {"id": eq(task["id"])},
            )
            self._logger.info(
                "task_rescheduled", task_id=task["id"], next_attempt=next_attempt.isoformat()
            )
            return True

        error_details["max_retries_exceeded"] = True
        await self._baas.update(
            "processing_queue",
            {
                "status": "failed",
                "retry_count": retry_count,
                "error_details": error_details,
                "updated_at": now.isoformat(),
            },
            {"id": eq(task["id"])},
        )
        await self._log_event(
            "task_failed_permanently",
            f"Tarefa {task.get('process_type')} falhou permanentemente "
            f"após {max_retries} tentativas",
            {
                "task_id": task["id"],
                "process_type": task.get("process_type"),
                "error": str(error),
                "retry_count": retry_count,
            },
            severity="critical",
        )
        return False

    async def process_batch(self) -> QueueSummary:
        """Run one batch; a task's failure never stops the tasks after it."""
        started = time.monotonic()
        now = datetime.now(UTC)

        await self.reset_timed_out(now)
        tasks = await self.fetch_due_tasks(now)
        self._logger.info("queue_batch_started", tasks=len(tasks))

        processed = failed = 0
        for task in tasks:
            task_id = str(task["id"])
            process_type = str(task.get("process_type"))
            task_log = self._logger.bind(task_id=task_id, process_type=process_type)
            try:
                await self._claim(task)
                result = await self._run_task(task)
            except Exception as e:
                failed += 1
                task_log.error("task_failed", error=str(e))
                try:
                    will_retry = await self._fail(task, e)
                except BaaSError as db_error:
                    # A later batch picks the row up again.
                    task_log.error("task_failure_not_recorded", error=str(db_error))
                    will_retry = True
                self._publish(queue_task_failed(task_id, process_type, str(e), will_retry))
                continue

            processed += 1
            try:
                await self._complete(task, result)
            except BaaSError as e:
                task_log.error("task_completion_not_recorded", error=str(e))
            else:
                task_log.info("task_completed")
            self._publish(queue_task_completed(task_id, process_type, result))

        await self.cleanup_completed(now)

        summary = QueueSummary(
            total=len(tasks),
            processed=processed,
            failed=failed,
            execution_time_ms=int((time.monotonic() - started) * 1000),
        )
        await self._log_event(
            "queue_processing_completed",
            f"Processamento da fila concluído em {summary.execution_time_ms}ms",
            summary.to_dict(),
            severity="warning" if failed else "info",
        )
        self._logger.info("queue_batch_completed", **summary.to_dict())
        self._publish(queue_batch_completed(summary.to_dict()))
        return summary

    def _publish(self, event: Any) -> None:
        if self._publisher is not None:
            self._publisher.publish(event)
