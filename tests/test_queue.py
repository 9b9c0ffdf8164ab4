"""Tests for the processing-queue worker."""

from datetime import UTC, datetime, timedelta

import pytest

from contaflix.events import EventPublisher, EventType
from contaflix.queue import (
    QueueProcessor,
    QueueTaskError,
    backup_data,
    cleanup_old_data,
    recalculate_reports,
    retry_delay,
    send_notifications,
    update_account_balances,
)
from contaflix.tools.baas_api import BaaSError


def _task(task_id: str, process_type: str, **extra):
    return {
        "id": task_id,
        "process_type": process_type,
        "status": "pending",
        "retry_count": 0,
        "max_retries": 3,
        "parameters": {},
        **extra,
    }


class TestHandlers:
    """Tests for the built-in task handlers."""

    @pytest.mark.asyncio
    async def test_update_account_balances(self, baas):
        baas.tables["lancamentos_itens"] = [
            {"conta_id": "caixa", "tipo_movimento": "DEBITO", "valor": "100.00"},
            {"conta_id": "caixa", "tipo_movimento": "CREDITO", "valor": "30.00"},
            {"conta_id": "vendas", "tipo_movimento": "CREDITO", "valor": "70.00"},
        ]
        task = _task("t1", "update_account_balances", parameters={"lancamento_id": "l1"})

        result = await update_account_balances(baas, task)

        assert result["contas_atualizadas"] == 2
        assert result["resultados"][0] == {
            "conta_id": "caixa",
            "variacao": "70.00",
            "itens_processados": 2,
        }
        assert result["resultados"][1]["variacao"] == "-70.00"

    @pytest.mark.asyncio
    async def test_update_account_balances_requires_entry(self, baas):
        with pytest.raises(QueueTaskError, match="lancamento_id"):
            await update_account_balances(baas, _task("t1", "update_account_balances"))

    @pytest.mark.asyncio
    async def test_recalculate_reports_invokes_function(self, baas):
        baas.invoke_results["generate-pdf-report"] = {"report_id": "r1"}
        task = _task("t1", "recalculate_reports", payload={"client_id": "c1"}, parameters=None)

        result = await recalculate_reports(baas, task)

        assert result == {"relatorio_gerado": True, "report_id": "r1"}
        _, function, body = baas.calls_to("invoke")[0]
        assert function == "generate-pdf-report"
        assert body["report_type"] == "balancete"
        assert body["auto_generated"] is True

    @pytest.mark.asyncio
    async def test_send_notifications(self, baas):
        task = _task(
            "t1", "send_notifications", parameters={"user_id": "u1", "lancamento_id": "l9"}
        )

        result = await send_notifications(baas, task)

        assert result == {"notificacao_enviada": True, "tipo": "info"}
        notification = baas.inserted["notifications"][0]
        assert notification["user_id"] == "u1"
        assert "l9" in notification["message"]

    @pytest.mark.asyncio
    async def test_backup_data(self, baas):
        baas.tables["lancamentos_contabeis"] = [{"id": "l1"}, {"id": "l2"}]
        task = _task(
            "t1",
            "backup_data",
            parameters={"client_id": "c1", "tables": ["lancamentos_contabeis"]},
        )

        result = await backup_data(baas, task)

        assert result == {"backup_created": True, "backup_id": "data_backups-1", "records": 2}
        backup = baas.inserted["data_backups"][0]
        assert backup["row_counts"] == {"lancamentos_contabeis": 2}

    @pytest.mark.asyncio
    async def test_cleanup_old_data(self, baas):
        baas.delete_results["automation_logs"] = [{"id": "a"}, {"id": "b"}]

        result = await cleanup_old_data(
            baas, _task("t1", "cleanup_old_data", parameters={"older_than_days": 90})
        )

        assert result == {
            "records_cleaned": 2,
            "by_table": {"automation_logs": 2, "notifications": 0},
        }
        _, table, filters = baas.calls_to("delete")[0]
        assert table == "automation_logs"
        assert filters["created_at"].startswith("lt.")

    @pytest.mark.asyncio
    async def test_cleanup_rejects_unknown_table(self, baas):
        task = _task("t1", "cleanup_old_data", parameters={"tables": ["lancamentos_contabeis"]})

        with pytest.raises(QueueTaskError, match="not eligible"):
            await cleanup_old_data(baas, task)

    @pytest.mark.asyncio
    async def test_malformed_parameters(self, baas):
        with pytest.raises(QueueTaskError, match="malformed"):
            await send_notifications(baas, _task("t1", "send_notifications", parameters=["x"]))


class TestRetryDelay:
    def test_exponential_backoff(self):
        assert retry_delay(1) == timedelta(minutes=10)
        assert retry_delay(2) == timedelta(minutes=20)
        assert retry_delay(3) == timedelta(minutes=40)


class TestQueueProcessor:
    """Tests for batch processing."""

    @pytest.mark.asyncio
    async def test_fetch_due_tasks_skips_exhausted(self, baas):
        baas.tables["processing_queue"] = [
            _task("t1", "send_notifications"),
            _task("t2", "send_notifications", retry_count=3),
        ]
        processor = QueueProcessor(baas, batch_size=5)

        tasks = await processor.fetch_due_tasks(datetime(2026, 10, 1, tzinfo=UTC))

        assert [t["id"] for t in tasks] == ["t1"]
        assert baas.updates_to("processing_queue")[0][2]["id"] == "eq.t2"
        _, _, filters, order, limit = baas.calls_to("select", "processing_queue")[0]
        assert filters["status"] == "eq.pending"
        assert filters["scheduled_at"].startswith("lte.2026-10-01")
        assert order == "priority.asc,scheduled_at.asc"
        assert limit == 5

    @pytest.mark.asyncio
    async def test_exhausted_tasks_leave_the_pending_pool(self, baas):
        baas.tables["processing_queue"] = [
            _task(f"x{n}", "send_notifications", retry_count=3) for n in range(5)
        ]
        processor = QueueProcessor(baas, batch_size=5)

        tasks = await processor.fetch_due_tasks(datetime(2026, 10, 1, tzinfo=UTC))

        assert tasks == []
        retired = baas.updates_to("processing_queue")
        assert [f["id"] for _, _, f in retired] == [f"eq.x{n}" for n in range(5)]
        assert all(f["status"] == "eq.pending" for _, _, f in retired)
        assert all(v["status"] == "failed" for _, v, _ in retired)
        assert retired[0][1]["error_details"]["max_retries_exceeded"] is True

    @pytest.mark.asyncio
    async def test_successful_batch(self, baas):
        baas.tables["processing_queue"] = [
            _task("t1", "send_notifications", parameters={"user_id": "u1"})
        ]
        publisher = EventPublisher()
        processor = QueueProcessor(baas, publisher=publisher, worker_id="w1")

        summary = await processor.process_batch()

        assert summary.total == 1
        assert summary.processed == 1
        assert summary.failed == 0
        statuses = [values["status"] for _, values, _ in baas.updates_to("processing_queue")]
        # timed-out reset, claim, completion
        assert statuses == ["pending", "processing", "completed"]
        claim = baas.updates_to("processing_queue")[1][1]
        assert claim["worker_id"] == "w1"
        events = [c[2]["p_event_type"] for c in baas.calls_to("rpc", "log_critical_event")]
        assert events == ["task_completed", "queue_processing_completed"]
        assert [e.event_type for e in publisher.recent_events] == [
            EventType.QUEUE_TASK_COMPLETED,
            EventType.QUEUE_BATCH_COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_failed_task_is_rescheduled(self, baas):
        baas.tables["processing_queue"] = [_task("t1", "update_account_balances")]
        publisher = EventPublisher()

        summary = await QueueProcessor(baas, publisher=publisher).process_batch()

        assert summary.failed == 1
        retry = baas.updates_to("processing_queue")[-1][1]
        assert retry["status"] == "pending"
        assert retry["retry_count"] == 1
        assert "lancamento_id" in retry["error_details"]["message"]
        failed_event = publisher.recent_events[0]
        assert failed_event.event_type == EventType.QUEUE_TASK_FAILED
        assert failed_event.data["will_retry"] is True
        batch_log = baas.calls_to("rpc", "log_critical_event")[-1][2]
        assert batch_log["p_severity"] == "warning"

    @pytest.mark.asyncio
    async def test_last_retry_fails_permanently(self, baas):
        baas.tables["processing_queue"] = [_task("t1", "unknown_type", retry_count=2)]

        await QueueProcessor(baas).process_batch()

        final = baas.updates_to("processing_queue")[-1][1]
        assert final["status"] == "failed"
        assert final["retry_count"] == 3
        assert final["error_details"]["max_retries_exceeded"] is True
        critical = baas.calls_to("rpc", "log_critical_event")[0][2]
        assert critical["p_event_type"] == "task_failed_permanently"
        assert critical["p_severity"] == "critical"

    @pytest.mark.asyncio
    async def test_registered_handler(self, baas):
        async def ping(client, task):
            return {"pong": task["id"]}

        baas.tables["processing_queue"] = [_task("t1", "ping")]
        processor = QueueProcessor(baas)
        processor.register("ping", ping)

        summary = await processor.process_batch()

        assert "ping" in processor.process_types
        assert summary.processed == 1
        completion = baas.updates_to("processing_queue")[-1][1]
        assert completion["result"] == {"pong": "t1"}

    @pytest.mark.asyncio
    async def test_housekeeping(self, baas):
        baas.update_results["processing_queue"] = [{"id": "stuck"}]
        baas.delete_results["processing_queue"] = [{"id": "old-1"}, {"id": "old-2"}]
        processor = QueueProcessor(baas)

        now = datetime(2026, 10, 1, tzinfo=UTC)
        assert await processor.reset_timed_out(now) == 1
        assert await processor.cleanup_completed(now) == 2

        _, _, filters = baas.calls_to("delete", "processing_queue")[0]
        assert filters["status"] == "eq.completed"
        assert filters["completed_at"].startswith("lt.2026-09-01")

    @pytest.mark.asyncio
    async def test_audit_log_outage_does_not_touch_task_state(self, baas):
        baas.tables["processing_queue"] = [
            _task("t1", "send_notifications", parameters={"user_id": "u1"})
        ]
        baas.rpc_results["log_critical_event"] = BaaSError("API error: 503", status_code=503)

        summary = await QueueProcessor(baas).process_batch()

        assert summary.processed == 1
        assert summary.failed == 0
        statuses = [values["status"] for _, values, _ in baas.updates_to("processing_queue")]
        assert statuses == ["pending", "processing", "completed"]
        assert len(baas.inserted["notifications"]) == 1

    @pytest.mark.asyncio
    async def test_claim_failure_does_not_stop_the_batch(self, baas):
        baas.tables["processing_queue"] = [
            _task("t1", "send_notifications", parameters={"user_id": "u1"}),
            _task("t2", "send_notifications", parameters={"user_id": "u2"}),
        ]
        record_update = baas.update

        async def update(table, values, filters):
            if values.get("status") == "processing" and filters["id"] == "eq.t1":
                raise BaaSError("API error: 503", status_code=503)
            return await record_update(table, values, filters)

        baas.update = update

        summary = await QueueProcessor(baas).process_batch()

        assert summary.failed == 1
        assert summary.processed == 1
        by_task = [(f.get("id"), v["status"]) for _, v, f in baas.updates_to("processing_queue")]
        assert ("eq.t1", "pending") in by_task
        assert ("eq.t2", "completed") in by_task
        assert len(baas.inserted["notifications"]) == 1

    @pytest.mark.asyncio
    async def test_unrecorded_completion_is_not_retried(self, baas):
        baas.tables["processing_queue"] = [
            _task("t1", "send_notifications", parameters={"user_id": "u1"})
        ]
        publisher = EventPublisher()
        record_update = baas.update

        async def update(table, values, filters):
            if values.get("status") == "completed":
                raise BaaSError("API error: 503", status_code=503)
            return await record_update(table, values, filters)

        baas.update = update

        summary = await QueueProcessor(baas, publisher=publisher).process_batch()

        assert summary.processed == 1
        assert summary.failed == 0
        statuses = [values["status"] for _, values, _ in baas.updates_to("processing_queue")]
        assert statuses == ["pending", "processing"]
        assert publisher.recent_events[0].event_type == EventType.QUEUE_TASK_COMPLETED
