"""On-demand report generation (financial, compliance, tax, performance)."""

import base64
import csv
import io
import json
import time
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog

from contaflix.events import EventPublisher
from contaflix.events.types import report_generated
from contaflix.fiscal.taxes import ZERO, money
from contaflix.tools.baas_api import BaaSClient, BaaSError, between, eq, within

logger = structlog.get_logger(__name__)

REPORT_TTL = timedelta(days=30)

TITLES = {
    "financial": "Relatório Financeiro",
    "compliance": "Relatório de Conformidade",
    "tax": "Relatório Tributário",
    "performance": "Relatório de Performance",
}


class ReportError(Exception):
    """Raised for invalid report requests."""

    pass


class ReportType(str, Enum):
    FINANCIAL = "financial"
    COMPLIANCE = "compliance"
    TAX = "tax"
    PERFORMANCE = "performance"


class ReportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"
    PDF = "pdf"


CONTENT_TYPES = {
    ReportFormat.CSV: "text/csv",
    ReportFormat.JSON: "application/json",
    ReportFormat.PDF: "application/pdf",
}


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value or 0))


def _percent(part: int, total: int) -> float:
    return round(part / total * 100, 1) if total else 100.0


def _duration_seconds(row: dict[str, Any]) -> float | None:
    try:
        started = datetime.fromisoformat(str(row["started_at"]))
        completed = datetime.fromisoformat(str(row["completed_at"]))
    except (KeyError, ValueError):
        return None
    return (completed - started).total_seconds()


# === Renderers ===


def render_json(data: dict[str, Any]) -> str:
    return json.dumps(data, default=str, ensure_ascii=False, indent=2)


def render_csv(data: dict[str, Any]) -> str:
    """One line per detail row; columns are the union of the rows' keys."""
    rows: list[dict[str, Any]] = data.get("rows") or []
    fieldnames: list[str] = []
    for row in rows:
        fieldnames.extend(k for k in row if k not in fieldnames)

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=fieldnames or ["resumo"], extrasaction="ignore")
    writer.writeheader()
    if rows:
        for row in rows:
            writer.writerow({k: _csv_cell(v) for k, v in row.items()})
    else:
        writer.writerow({"resumo": json.dumps(data.get("summary", {}), default=str)})
    return buffer.getvalue()


def _csv_cell(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str, ensure_ascii=False)
    return value


def render_pdf(data: dict[str, Any]) -> str:
    """Plain-text rendition, base64 encoded."""
    period = data.get("period", {})
    lines = [
        f"PDF Report: {data.get('title', '')}",
        f"Generated: {data.get('generated_at', '')}",
        f"Period: {period.get('start')} to {period.get('end')}",
        "",
        "Summary:",
    ]
    for key, value in (data.get("summary") or {}).items():
        lines.append(f"  {key}: {value}")
    lines.extend(["", f"Rows: {len(data.get('rows') or [])}"])
    return base64.b64encode("\n".join(lines).encode("utf-8")).decode("ascii")


RENDERERS = {
    ReportFormat.CSV: render_csv,
    ReportFormat.JSON: render_json,
    ReportFormat.PDF: render_pdf,
}


class ReportGenerator:
    """Builds a report, records it in ``generated_reports`` and audits it."""

    def __init__(self, baas: BaaSClient, publisher: EventPublisher | None = None):
        self._baas = baas
        self._publisher = publisher
        self._logger = logger.bind(component="report_generator")

    # --- data builders ---

    async def _financial(self, client_id: str, start: date, end: date) -> dict[str, Any]:
        rows = await self._baas.select(
            "financial_transactions",
            {"client_id": eq(client_id), **between("date", start, end)},
            order="date.desc",
        )
        amounts = [_decimal(r.get("amount")) for r in rows]
        revenue = sum((a for a in amounts if a > 0), ZERO)
        expenses = sum((-a for a in amounts if a < 0), ZERO)
        return {
            "summary": {
                "total_receitas": str(money(revenue)),
                "total_despesas": str(money(expenses)),
                "resultado": str(money(revenue - expenses)),
                "transacoes": len(rows),
            },
            "rows": [
                {
                    "data": r.get("date"),
                    "tipo": r.get("type"),
                    "valor": r.get("amount"),
                    "descricao": r.get("description"),
                }
                for r in rows
            ],
        }

    async def _compliance(self, client_id: str, start: date, end: date) -> dict[str, Any]:
        rows = await self._baas.select(
            "obrigacoes_fiscais",
            {"client_id": eq(client_id), **between("prazo", start, end)},
            order="prazo.asc",
        )
        done = [r for r in rows if r.get("status") == "concluido"]
        pending = [r for r in rows if r.get("status") != "concluido"]
        return {
            "summary": {
                "compliance_score": _percent(len(done), len(rows)),
                "obrigacoes": len(rows),
                "concluidas": len(done),
                "pendentes": len(pending),
            },
            "pending_actions": [
                {
                    "obrigacao": r.get("nome") or r.get("tipo"),
                    "prazo": r.get("prazo"),
                    "status": r.get("status"),
                }
                for r in pending
            ],
            "rows": [
                {
                    "obrigacao": r.get("nome") or r.get("tipo"),
                    "prazo": r.get("prazo"),
                    "status": r.get("status"),
                    "prioridade": r.get("prioridade"),
                }
                for r in rows
            ],
        }

    async def _tax(self, client_id: str, start: date, end: date) -> dict[str, Any]:
        rows = await self._baas.select(
            "tax_payments",
            {"client_id": eq(client_id), **between("payment_date", start, end)},
            order="payment_date.desc",
        )
        by_tax: dict[str, Decimal] = {}
        for row in rows:
            tax = str(row.get("tax_type"))
            by_tax[tax] = by_tax.get(tax, ZERO) + _decimal(row.get("amount"))
        total = sum(by_tax.values(), ZERO)
        return {
            "summary": {
                "total_impostos": str(money(total)),
                "por_imposto": {k: str(money(v)) for k, v in sorted(by_tax.items())},
                "guias": len(rows),
            },
            "rows": [
                {
                    "imposto": r.get("tax_type"),
                    "periodo": r.get("period"),
                    "valor": r.get("amount"),
                    "vencimento": r.get("due_date"),
                    "status": r.get("status"),
                }
                for r in rows
            ],
        }

    async def _performance(self, client_id: str, start: date, end: date) -> dict[str, Any]:
        rows = await self._baas.select(
            "automation_logs",
            {"client_id": eq(client_id), **within("created_at", start, end + timedelta(days=1))},
            order="created_at.desc",
        )
        completed = sum(1 for r in rows if r.get("status") == "completed")
        durations = [d for d in (_duration_seconds(r) for r in rows) if d is not None]
        return {
            "summary": {
                "total_processes": len(rows),
                "success_rate": _percent(completed, len(rows)),
                "avg_processing_seconds": (
                    round(sum(durations) / len(durations), 1) if durations else None
                ),
            },
            "rows": [
                {
                    "processo": r.get("process_type"),
                    "status": r.get("status"),
                    "registros": r.get("records_processed"),
                    "inicio": r.get("started_at"),
                    "fim": r.get("completed_at"),
                }
                for r in rows
            ],
        }

    async def build(
        self, client_id: str, report_type: ReportType, start: date, end: date
    ) -> dict[str, Any]:
        builders = {
            ReportType.FINANCIAL: self._financial,
            ReportType.COMPLIANCE: self._compliance,
            ReportType.TAX: self._tax,
            ReportType.PERFORMANCE: self._performance,
        }
        data = await builders[report_type](client_id, start, end)
        return {
            "title": TITLES[report_type.value],
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "generated_at": datetime.now(UTC).isoformat(),
            **data,
        }

    async def generate(
        self,
        client_id: str,
        report_type: str,
        fmt: str,
        start: date,
        end: date,
        template_id: str | None = None,
    ) -> dict[str, Any]:
        try:
            rtype = ReportType(report_type)
        except ValueError as e:
            raise ReportError(f"Unsupported report type: {report_type}") from e
        try:
            rformat = ReportFormat(fmt)
        except ValueError as e:
            raise ReportError(f"Unsupported format: {fmt}") from e
        if not client_id:
            raise ReportError("client_id is required")
        if start > end:
            raise ReportError(f"Report period starts after it ends: {start} > {end}")

        expires_at = datetime.now(UTC) + REPORT_TTL
        records = await self._baas.insert(
            "generated_reports",
            {
                "client_id": client_id,
                "title": TITLES[rtype.value],
                "description": f"Relatório {rtype.value} período {start} a {end}",
                "report_type": rtype.value,
                "file_format": rformat.value,
                "generation_status": "generating",
                "template_id": template_id,
                "expires_at": expires_at.isoformat(),
            },
        )
        if not records:
            raise ReportError("Report record was not created")
        report_id = str(records[0]["id"])

        try:
            data = await self.build(client_id, rtype, start, end)
        except BaaSError as e:
            await self._baas.update(
                "generated_reports",
                {"generation_status": "failed", "error_message": str(e)},
                {"id": eq(report_id)},
            )
            self._logger.error("report_failed", report_id=report_id, error=str(e))
            raise

        content = RENDERERS[rformat](data)
        file_name = f"{rtype.value}_{client_id}_{int(time.time() * 1000)}.{rformat.value}"
        file_path = f"reports/{file_name}"
        file_size = len(content.encode("utf-8"))

        await self._baas.update(
            "generated_reports",
            {
                "generation_status": "completed",
                "file_path": file_path,
                "file_size": file_size,
                "download_count": 0,
            },
            {"id": eq(report_id)},
        )
        await self._baas.insert_audit_log(
            "generated_reports",
            "REPORT_GENERATED",
            report_id,
            {
                "report_type": rtype.value,
                "format": rformat.value,
                "client_id": client_id,
                "file_size": file_size,
            },
            {"period": data["period"], "generation_time": data["generated_at"]},
            source="report_generator",
        )

        self._logger.info(
            "report_generated", report_id=report_id, report_type=rtype.value, format=rformat.value
        )
        if self._publisher is not None:
            self._publisher.publish(
                report_generated(client_id, report_id, rtype.value, rformat.value)
            )

        return {
            "report_id": report_id,
            "file_name": file_name,
            "file_path": file_path,
            "file_size": file_size,
            "content_type": CONTENT_TYPES[rformat],
            "expires_at": expires_at.isoformat(),
            "summary": data.get("summary", {}),
            "content": content,
        }
