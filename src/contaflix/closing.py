"""Continuous month-end close: validate the period, build the statements, log it."""

import calendar
import time
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

import structlog

from contaflix.events import EventPublisher
from contaflix.events.types import close_finished, close_started
from contaflix.fiscal.taxes import ZERO, TaxCalculationError, money, parse_period
from contaflix.tools.baas_api import BaaSClient, eq, within

logger = structlog.get_logger(__name__)

VALIDATION_LEVELS = ("basic", "complete", "strict")
BALANCE_TOLERANCE = Decimal("0.01")
BANK_ACCOUNT_PREFIX = "1.1.1"

ENTRY_COLUMNS = (
    "id,data_competencia,status,historico,"
    "lancamentos_itens(conta_id,tipo_movimento,valor,"
    "plano_contas(codigo,nome,natureza,tipo,ativo))"
)

# Account groups by the first digit of the chart-of-accounts code.
_TYPE_BY_PREFIX = {"1": "ATIVO", "2": "PASSIVO", "3": "RECEITA", "4": "DESPESA"}


class CloseError(Exception):
    """Raised for invalid close requests."""

    pass


@dataclass
class ValidationResult:
    name: str
    passed: bool
    severity: str  # error | warning
    message: str
    issues: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class CloseResult:
    success: bool
    client_id: str
    period: str
    close_id: str | None = None
    validation_results: list[ValidationResult] = field(default_factory=list)
    generated_reports: dict[str, Any] = field(default_factory=dict)
    processing_time_ms: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _Item:
    entry_id: str
    entry_status: str
    account_id: str | None
    code: str
    name: str
    account_type: str
    active: bool
    known: bool
    debit: bool
    amount: Decimal


def period_bounds(period: str) -> tuple[date, date]:
    """First day of the period and first day of the following month."""
    try:
        year, month = parse_period(period)
    except TaxCalculationError as e:
        raise CloseError(str(e)) from e
    start = date(year, month, 1)
    end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return start, end


def _account_type(account: dict[str, Any]) -> str:
    if account.get("tipo"):
        return str(account["tipo"]).upper()
    code = str(account.get("codigo") or "")
    return _TYPE_BY_PREFIX.get(code[:1], "OUTROS")


def _flatten(entries: list[dict[str, Any]]) -> list[_Item]:
    items: list[_Item] = []
    for entry in entries:
        for row in entry.get("lancamentos_itens") or []:
            account = row.get("plano_contas") or {}
            items.append(
                _Item(
                    entry_id=str(entry.get("id")),
                    entry_status=str(entry.get("status") or ""),
                    account_id=row.get("conta_id"),
                    code=str(account.get("codigo") or ""),
                    name=str(account.get("nome") or ""),
                    account_type=_account_type(account) if account else "OUTROS",
                    active=account.get("ativo", True) is not False,
                    known=bool(account),
                    debit=str(row.get("tipo_movimento", "")).upper() == "DEBITO",
                    amount=Decimal(str(row.get("valor") or 0)),
                )
            )
    return items


# === Validations ===


def check_balance(items: list[_Item]) -> ValidationResult:
    debits = sum((i.amount for i in items if i.debit), ZERO)
    credits = sum((i.amount for i in items if not i.debit), ZERO)
    difference = abs(debits - credits)
    passed = difference <= BALANCE_TOLERANCE
    return ValidationResult(
        name="balance",
        passed=passed,
        severity="error",
        message=(
            "Débitos e créditos balanceados"
            if passed
            else f"Diferença de {money(difference)} entre débitos e créditos"
        ),
        details={
            "total_debits": str(money(debits)),
            "total_credits": str(money(credits)),
            "difference": str(money(difference)),
        },
    )


def check_consistency(entries: list[dict[str, Any]], items: list[_Item]) -> ValidationResult:
    issues: list[str] = []
    for entry in entries:
        if not entry.get("lancamentos_itens"):
            issues.append(f"Lançamento {entry.get('id')} sem itens")
    for item in items:
        if not item.known:
            issues.append(f"Item do lançamento {item.entry_id} com conta inexistente")
        elif not item.active:
            issues.append(f"Item do lançamento {item.entry_id} usa conta inativa {item.code}")
    return ValidationResult(
        name="consistency",
        passed=not issues,
        severity="error",
        message="Lançamentos consistentes" if not issues else f"{len(issues)} inconsistências",
        issues=issues,
    )


def check_completeness(
    entries: list[dict[str, Any]],
    pending_documents: int,
    start: date,
    level: str,
) -> ValidationResult:
    issues: list[str] = []
    if pending_documents:
        issues.append(f"{pending_documents} documentos pendentes de processamento")

    days_in_period = calendar.monthrange(start.year, start.month)[1]
    days_with_entries = {
        str(e["data_competencia"])[:10] for e in entries if e.get("data_competencia")
    }
    if len(days_with_entries) < days_in_period * 0.5:
        issues.append(
            f"Apenas {len(days_with_entries)} de {days_in_period} dias com lançamentos"
        )

    return ValidationResult(
        name="completeness",
        passed=not issues or level != "strict",
        severity="warning",
        message="Período completo" if not issues else "; ".join(issues),
        issues=issues,
        details={
            "pending_documents": pending_documents,
            "days_with_entries": len(days_with_entries),
        },
    )


def check_reconciliation(items: list[_Item], level: str) -> ValidationResult:
    pending = sorted(
        {
            i.entry_id
            for i in items
            if i.code.startswith(BANK_ACCOUNT_PREFIX) and i.entry_status != "conciliado"
        }
    )
    issues = [f"Lançamento bancário {entry_id} não conciliado" for entry_id in pending]
    return ValidationResult(
        name="reconciliation",
        passed=not issues or level != "strict",
        severity="warning",
        message=(
            "Contas bancárias conciliadas"
            if not issues
            else f"{len(issues)} lançamentos bancários não conciliados"
        ),
        issues=issues,
    )


# === Reports ===


def _natural_balance(account_type: str, debits: Decimal, credits: Decimal) -> Decimal:
    if account_type in ("ATIVO", "DESPESA"):
        return debits - credits
    return credits - debits


def general_ledger(items: list[_Item]) -> list[dict[str, Any]]:
    """Movements grouped by account with debit and credit balances."""
    accounts: dict[str, dict[str, Any]] = {}
    for item in items:
        key = item.account_id or item.code
        account = accounts.setdefault(
            key,
            {
                "conta_id": item.account_id,
                "codigo": item.code,
                "nome": item.name,
                "movimentos": [],
                "debitos": ZERO,
                "creditos": ZERO,
            },
        )
        account["movimentos"].append(
            {
                "lancamento_id": item.entry_id,
                "tipo": "DEBITO" if item.debit else "CREDITO",
                "valor": str(money(item.amount)),
            }
        )
        if item.debit:
            account["debitos"] += item.amount
        else:
            account["creditos"] += item.amount

    ledger = []
    for account in sorted(accounts.values(), key=lambda a: a["codigo"]):
        net = account["debitos"] - account["creditos"]
        ledger.append(
            {
                **account,
                "debitos": str(money(account["debitos"])),
                "creditos": str(money(account["creditos"])),
                "saldo_devedor": str(money(net)) if net > 0 else "0.00",
                "saldo_credor": str(money(-net)) if net < 0 else "0.00",
            }
        )
    return ledger


def _balances_by_account(items: list[_Item]) -> dict[tuple[str, str], Decimal]:
    debits: dict[tuple[str, str], Decimal] = defaultdict(lambda: ZERO)
    credits: dict[tuple[str, str], Decimal] = defaultdict(lambda: ZERO)
    for item in items:
        key = (item.code, item.account_type)
        if item.debit:
            debits[key] += item.amount
        else:
            credits[key] += item.amount
    return {
        key: _natural_balance(key[1], debits[key], credits[key])
        for key in set(debits) | set(credits)
    }


def balance_sheet(items: list[_Item]) -> dict[str, Any]:
    groups = {
        "ativo_circulante": ZERO,
        "ativo_nao_circulante": ZERO,
        "passivo_circulante": ZERO,
        "passivo_nao_circulante": ZERO,
        "patrimonio_liquido": ZERO,
    }
    for (code, account_type), balance in _balances_by_account(items).items():
        if account_type == "ATIVO":
            key = "ativo_circulante" if code.startswith("1.1") else "ativo_nao_circulante"
        elif account_type == "PASSIVO" and code.startswith("2.1"):
            key = "passivo_circulante"
        elif account_type == "PASSIVO" and code.startswith("2.2"):
            key = "passivo_nao_circulante"
        elif account_type in ("PASSIVO", "PATRIMONIO_LIQUIDO"):
            key = "patrimonio_liquido"
        else:
            continue
        groups[key] += balance

    total_assets = groups["ativo_circulante"] + groups["ativo_nao_circulante"]
    total_liabilities = (
        groups["passivo_circulante"]
        + groups["passivo_nao_circulante"]
        + groups["patrimonio_liquido"]
    )
    return {
        **{k: str(money(v)) for k, v in groups.items()},
        "total_ativo": str(money(total_assets)),
        "total_passivo_pl": str(money(total_liabilities)),
    }


def income_statement(items: list[_Item]) -> dict[str, Any]:
    gross_revenue = other_revenue = ZERO
    costs = operating = financial = ZERO
    for (code, account_type), balance in _balances_by_account(items).items():
        if account_type == "RECEITA":
            if code.startswith("3.1"):
                gross_revenue += balance
            else:
                other_revenue += balance
        elif account_type == "DESPESA":
            if code.startswith("4.1"):
                costs += balance
            elif code.startswith("4.2"):
                operating += balance
            else:
                financial += balance

    gross_profit = gross_revenue - costs
    operating_profit = gross_profit - operating
    net_profit = operating_profit + other_revenue - financial
    return {
        "receita_bruta": str(money(gross_revenue)),
        "outras_receitas": str(money(other_revenue)),
        "custos": str(money(costs)),
        "despesas_operacionais": str(money(operating)),
        "despesas_financeiras": str(money(financial)),
        "resultado_bruto": str(money(gross_profit)),
        "resultado_operacional": str(money(operating_profit)),
        "resultado_liquido": str(money(net_profit)),
    }


class ContinuousCloseService:
    """Closes an accounting period for one client."""

    def __init__(self, baas: BaaSClient, publisher: EventPublisher | None = None):
        self._baas = baas
        self._publisher = publisher
        self._logger = logger.bind(component="continuous_close")

    def _publish(self, event: Any) -> None:
        if self._publisher is not None:
            self._publisher.publish(event)

    async def _already_closed(self, client_id: str, period: str) -> bool:
        rows = await self._baas.select(
            "automation_logs",
            {
                "process_type": eq("continuous_close"),
                "client_id": eq(client_id),
                "metadata->>period": eq(period),
                "status": eq("completed"),
            },
            columns="id",
            limit=1,
        )
        return bool(rows)

    async def _load(
        self, client_id: str, start: date, end: date
    ) -> tuple[list[dict[str, Any]], int]:
        entries = await self._baas.select(
            "lancamentos_contabeis",
            {"client_id": eq(client_id), **within("data_competencia", start, end)},
            columns=ENTRY_COLUMNS,
        )
        documents = await self._baas.select(
            "client_documents",
            {
                "client_id": eq(client_id),
                "status": eq("pendente"),
                **within("created_at", start, end),
            },
            columns="id",
        )
        return entries, len(documents)

    async def close(
        self,
        client_id: str,
        period: str,
        force_close: bool = False,
        validation_level: str = "complete",
    ) -> CloseResult:
        if not client_id or not period:
            raise CloseError("client_id and period are required")
        if validation_level not in VALIDATION_LEVELS:
            raise CloseError(f"Unknown validation level: {validation_level}")
        start, end = period_bounds(period)

        started = time.monotonic()
        log = self._logger.bind(client_id=client_id, period=period)
        log.info("close_started", validation_level=validation_level, force=force_close)
        self._publish(close_started(client_id, period))

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        if not force_close and await self._already_closed(client_id, period):
            log.warning("close_already_done")
            self._publish(close_finished(client_id, period, False, {"reason": "already_closed"}))
            return CloseResult(
                success=False,
                client_id=client_id,
                period=period,
                processing_time_ms=elapsed(),
                error=f"Period {period} already closed; use force_close to close again",
            )

        entries, pending_documents = await self._load(client_id, start, end)
        items = _flatten(entries)

        validations = [
            check_balance(items),
            check_consistency(entries, items),
            check_completeness(entries, pending_documents, start, validation_level),
        ]
        if validation_level in ("complete", "strict"):
            validations.append(check_reconciliation(items, validation_level))

        failed = [v.name for v in validations if not v.passed]
        if failed and not force_close:
            log.warning("close_blocked", failed_validations=failed)
            self._publish(close_finished(client_id, period, False, {"failed_validations": failed}))
            return CloseResult(
                success=False,
                client_id=client_id,
                period=period,
                validation_results=validations,
                processing_time_ms=elapsed(),
                error=f"Validations failed: {', '.join(failed)}",
            )

        reports = {
            "razao": general_ledger(items),
            "balanco": balance_sheet(items),
            "dre": income_statement(items),
        }
        close_id = f"close_{client_id}_{period}_{int(time.time() * 1000)}"

        await self._baas.log_automation(
            "continuous_close",
            "completed",
            client_id=client_id,
            records_processed=len(entries),
            metadata={
                "close_id": close_id,
                "period": period,
                "forced": force_close,
                "validation_results": [asdict(v) for v in validations],
                "reports_generated": sorted(reports),
                "execution_timestamp": datetime.now(UTC).isoformat(),
            },
        )

        log.info("close_completed", close_id=close_id, entries=len(entries))
        self._publish(close_finished(client_id, period, True, {"close_id": close_id}))
        return CloseResult(
            success=True,
            client_id=client_id,
            period=period,
            close_id=close_id,
            validation_results=validations,
            generated_reports=reports,
            processing_time_ms=elapsed(),
        )
