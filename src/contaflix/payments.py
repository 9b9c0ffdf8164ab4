"""Payment alerts and the scheduled payment run."""

import html
from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

import structlog

from contaflix.events import EventPublisher
from contaflix.events.types import payment_processed
from contaflix.fiscal.darf import SlipRegistry, generate_slip, slip_type_for
from contaflix.fiscal.taxes import TaxRegime, TaxType, due_date_for, revenue_code_for
from contaflix.tools.baas_api import BaaSClient, eq, in_

logger = structlog.get_logger(__name__)

TAX_PAYMENT_WINDOW = (15, 20)
# A tax in one of these states is not scheduled again for the same period.
SCHEDULED_STATUSES = ("scheduled", "paid")


class UnknownAlertTypeError(ValueError):
    pass


class UnsupportedTaxError(ValueError):
    pass


@dataclass(frozen=True)
class AlertTemplate:
    subject: str
    title: str
    urgency: str


ALERT_TEMPLATES = {
    "warning_10_days": AlertTemplate(
        subject="Lembrete: Pagamento vence em {days} dias",
        title="Pagamento Próximo do Vencimento",
        urgency="informativo",
    ),
    "warning_5_days": AlertTemplate(
        subject="Urgente: Pagamento vence em {days} dias",
        title="Pagamento Vence em Breve",
        urgency="atenção",
    ),
    "final_notice": AlertTemplate(
        subject="FINAL: Pagamento vence amanhã - Acesso será bloqueado",
        title="Aviso Final - Pagamento Urgente",
        urgency="crítico",
    ),
}

FINAL_NOTICE_BLOCK = """
      <div style="background-color: #fef2f2; border: 2px solid #fca5a5; padding: 15px;">
        <p style="color: #dc2626; font-weight: bold;">ATENÇÃO URGENTE:</p>
        <p style="color: #dc2626;">Caso o pagamento não seja efetuado até amanhã, seu acesso
        ao sistema será temporariamente bloqueado automaticamente.</p>
      </div>"""


def _due_date_label(value: Any) -> str:
    try:
        return date.fromisoformat(str(value)[:10]).strftime("%d/%m/%Y")
    except ValueError:
        return str(value)


def build_alert_email(alert: dict[str, Any]) -> dict[str, str]:
    """Subject and HTML body for a payment alert."""
    alert_type = alert.get("alert_type")
    template = ALERT_TEMPLATES.get(str(alert_type))
    if template is None:
        raise UnknownAlertTypeError(f"Unknown alert type: {alert_type}")

    days = alert.get("days_until_due", "")
    name = html.escape(str(alert.get("client_name", "")))
    final_block = FINAL_NOTICE_BLOCK if alert_type == "final_notice" else ""
    body = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
  <h1 style="color: #2563eb;">ContaFlix</h1>
  <h2>{template.title}</h2>
  <p><strong>Prezado(a) {name},</strong></p>
  <p>Este é um lembrete sobre o vencimento da sua mensalidade do ContaFlix.</p>
  <p><strong>Data de Vencimento:</strong> {_due_date_label(alert.get("payment_due_date"))}</p>
  <p><strong>Dias restantes:</strong> {days} dia(s)</p>{final_block}
  <p>Para manter seu acesso ativo e evitar interrupções no serviço, por favor efetue o
  pagamento até a data de vencimento.</p>
  <p>Atenciosamente,<br><strong>Equipe ContaFlix</strong></p>
</div>
"""
    return {"subject": template.subject.format(days=days), "html": body}


@dataclass
class AlertSummary:
    alerts_processed: int = 0
    emails_sent: int = 0
    emails_errored: int = 0
    error_details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PaymentAlertProcessor:
    """Sends subscription payment reminders queued by the database."""

    def __init__(self, baas: BaaSClient):
        self._baas = baas
        self._logger = logger.bind(component="payment_alerts")

    async def run(self) -> AlertSummary:
        await self._baas.rpc("check_overdue_payments")
        alerts = await self._baas.rpc("get_pending_payment_alerts") or []
        self._logger.info("pending_alerts_found", count=len(alerts))

        summary = AlertSummary(alerts_processed=len(alerts))
        for alert in alerts:
            try:
                email = build_alert_email(alert)
                await self._baas.invoke(
                    "send-email",
                    {
                        "to": alert.get("client_email"),
                        "subject": email["subject"],
                        "html": email["html"],
                    },
                )
                await self._baas.update(
                    "payment_alerts",
                    {"email_sent": True, "alert_sent_date": datetime.now(UTC).isoformat()},
                    {"id": eq(alert.get("alert_id"))},
                )
            except Exception as e:
                summary.emails_errored += 1
                summary.error_details.append(
                    {
                        "alert_id": alert.get("alert_id"),
                        "client_name": alert.get("client_name"),
                        "error": str(e),
                    }
                )
                self._logger.error("alert_failed", alert_id=alert.get("alert_id"), error=str(e))
                continue
            summary.emails_sent += 1

        self._logger.info(
            "alerts_processed", sent=summary.emails_sent, errored=summary.emails_errored
        )
        return summary


@dataclass
class _StepResult:
    processed: int = 0
    errors: int = 0
    error_details: list[dict[str, Any]] = field(default_factory=list)

    def fail(self, error: Exception, **context: Any) -> None:
        self.errors += 1
        self.error_details.append({**context, "error": str(error)})


def _regime(client: dict[str, Any]) -> TaxRegime:
    try:
        return TaxRegime(client.get("regime_tributario") or TaxRegime.LUCRO_PRESUMIDO)
    except ValueError:
        return TaxRegime.LUCRO_PRESUMIDO


class ScheduledPaymentProcessor:
    """Daily payment run: alerts, tax slips inside the payment window and PIX status."""

    def __init__(
        self,
        baas: BaaSClient,
        registry: SlipRegistry | None = None,
        publisher: EventPublisher | None = None,
    ):
        self._baas = baas
        self._alerts = PaymentAlertProcessor(baas)
        self._registry = registry or SlipRegistry(baas)
        self._publisher = publisher
        self._logger = logger.bind(component="scheduled_payments")

    def _publish(self, client_id: str | None, kind: str, details: dict[str, Any]) -> None:
        if self._publisher is not None:
            self._publisher.publish(payment_processed(client_id, kind, details))

    async def _process_alerts(self) -> _StepResult:
        step = _StepResult()
        try:
            summary = await self._alerts.run()
        except Exception as e:
            step.fail(e, operation="check_pending_alerts")
            return step
        step.processed = summary.emails_sent
        step.errors = summary.emails_errored
        step.error_details = summary.error_details
        return step

    async def _already_scheduled(self, client_id: Any, period: str, tax_type: TaxType) -> bool:
        rows = await self._baas.select(
            "tax_payments",
            {
                "client_id": eq(client_id),
                "period": eq(period),
                "tax_type": eq(tax_type.value),
                "status": in_(list(SCHEDULED_STATUSES)),
            },
            columns="id",
            limit=1,
        )
        return bool(rows)

    async def _pay_tax(
        self, row: dict[str, Any], tax_type: TaxType, amount: Decimal, today: date
    ) -> bool:
        """Issue the slip and schedule one tax; False when it was already scheduled."""
        client = row.get("accounting_clients") or {}
        client_id = row.get("client_id")
        period = row["period"]
        if await self._already_scheduled(client_id, period, tax_type):
            self._logger.debug(
                "tax_payment_already_scheduled",
                client_id=client_id,
                period=period,
                tax_type=tax_type.value,
            )
            return False

        slip = generate_slip(
            slip_type_for(tax_type),
            period=period,
            cnpj=str(client.get("cnpj") or ""),
            revenue_code=revenue_code_for(tax_type, _regime(client)),
            principal=amount,
            due_date=due_date_for(tax_type, period),
            issued_on=today,
        )
        await self._registry.add(slip)
        await self._baas.insert(
            "tax_payments",
            {
                "client_id": client_id,
                "tax_type": tax_type.value,
                "amount": str(slip.total),
                "period": period,
                "payment_date": today.isoformat(),
                "due_date": slip.due_date.isoformat(),
                "slip_id": slip.id,
                "status": "scheduled",
                "reference": f"AUTO_{tax_type.value}_{slip.id}",
            },
            returning=False,
        )
        self._publish(
            client_id,
            "tax",
            {"tax_type": tax_type.value, "amount": str(slip.total), "slip_id": slip.id},
        )
        return True

    async def _pay_taxes(self, row: dict[str, Any], today: date, step: _StepResult) -> None:
        """Schedule each positive tax of ``row``; a bad tax never blocks the others."""
        client_id = row.get("client_id")
        for tax_name, raw_amount in (row.get("calculated_taxes") or {}).items():
            try:
                amount = Decimal(str(raw_amount or 0))
                if amount <= 0:
                    continue
                try:
                    tax_type = TaxType(str(tax_name).upper())
                except ValueError as e:
                    raise UnsupportedTaxError(f"No slip rules for tax {tax_name!r}") from e
                if await self._pay_tax(row, tax_type, amount, today):
                    step.processed += 1
            except Exception as e:
                step.fail(e, client_id=client_id, period=row.get("period"), tax=tax_name)
                self._logger.error(
                    "tax_payment_failed", client_id=client_id, tax=tax_name, error=str(e)
                )

    async def _process_tax_payments(self, today: date) -> _StepResult:
        step = _StepResult()
        first, last = TAX_PAYMENT_WINDOW
        if not first <= today.day <= last:
            self._logger.debug("outside_tax_payment_window", day=today.day)
            return step

        period = today.strftime("%Y-%m")
        try:
            rows = await self._baas.select(
                "processed_accounting_data",
                {"period": eq(period)},
                columns="*,accounting_clients!inner(*)",
            )
        except Exception as e:
            step.fail(e, operation="process_tax_payments")
            return step

        for row in rows:
            await self._pay_taxes(row, today, step)
        return step

    async def _check_pix_payment(self, payment: dict[str, Any]) -> None:
        response = await self._baas.invoke(
            "pix-integration",
            {
                "action": "check_status",
                "payment_id": payment["id"],
                "end_to_end_id": payment.get("end_to_end_id"),
            },
        )
        status = str((response or {}).get("status", "")).lower()
        now = datetime.now(UTC).isoformat()
        if status in ("completed", "concluido"):
            await self._baas.update(
                "pix_payments",
                {"status": "completed", "completed_at": now},
                {"id": eq(payment["id"])},
            )
            self._publish(
                payment.get("client_id"),
                "pix",
                {"payment_id": payment["id"], "status": "completed"},
            )
        elif status in ("failed", "rejected", "rejeitado"):
            await self._baas.update(
                "pix_payments",
                {
                    "status": "failed",
                    "failure_reason": (response or {}).get("reason"),
                    "updated_at": now,
                },
                {"id": eq(payment["id"])},
            )

    async def _process_pix_payments(self) -> _StepResult:
        step = _StepResult()
        try:
            payments = await self._baas.select(
                "pix_payments", {"status": eq("processing")}, order="initiated_at.asc"
            )
        except Exception as e:
            step.fail(e, operation="process_pix_payments")
            return step

        for payment in payments:
            try:
                await self._check_pix_payment(payment)
            except Exception as e:
                step.fail(e, payment_id=payment.get("id"))
            else:
                step.processed += 1
        return step

    async def run(self, today: date | None = None) -> dict[str, Any]:
        today = today or date.today()
        log_row = await self._baas.log_automation(
            "payment_automation", "running", metadata={"trigger": "automated_cron"}
        )

        alerts = await self._process_alerts()
        taxes = await self._process_tax_payments(today)
        pix = await self._process_pix_payments()

        steps = (alerts, taxes, pix)
        processed = sum(s.processed for s in steps)
        errors = sum(s.errors for s in steps)
        error_details = [d for s in steps for d in s.error_details]

        if log_row.get("id"):
            await self._baas.update_automation_log(
                str(log_row["id"]),
                {
                    "status": "completed",
                    "completed_at": datetime.now(UTC).isoformat(),
                    "records_processed": processed,
                    "errors_count": errors,
                    "error_details": error_details or None,
                },
            )

        self._logger.info("payment_run_completed", processed=processed, errors=errors)
        return {
            "success": True,
            "processed": processed,
            "errors": errors,
            "breakdown": {
                "payment_alerts": alerts.processed,
                "tax_payments": taxes.processed,
                "pix_payments": pix.processed,
            },
            "error_details": error_details,
        }
