"""Monthly payroll: employee INSS/IRRF withholding, FGTS and payroll entries."""

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Any

import structlog

from contaflix.fiscal.taxes import ZERO, load_tax_tables, money, parse_period
from contaflix.tools.baas_api import BaaSClient, eq, in_

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class InssBracket:
    ceiling: Decimal
    rate: Decimal


@dataclass(frozen=True)
class IrrfBracket:
    ceiling: Decimal | None
    rate: Decimal
    deduction: Decimal


@dataclass(frozen=True)
class PayrollResult:
    gross: Decimal
    inss: Decimal
    irrf: Decimal
    fgts: Decimal
    total_deductions: Decimal
    net: Decimal


@lru_cache
def _payroll_tables() -> tuple[tuple[InssBracket, ...], Decimal, tuple[IrrfBracket, ...], Decimal]:
    tables = load_tax_tables()["payroll"]
    inss = tuple(
        InssBracket(ceiling=Decimal(str(b["ceiling"])), rate=Decimal(str(b["rate"])))
        for b in tables["inss"]["brackets"]
    )
    inss_cap = Decimal(str(tables["inss"]["ceiling_contribution"]))
    irrf = tuple(
        IrrfBracket(
            ceiling=Decimal(str(b["ceiling"])) if b["ceiling"] is not None else None,
            rate=Decimal(str(b["rate"])),
            deduction=Decimal(str(b["deduction"])),
        )
        for b in tables["irrf"]["brackets"]
    )
    return inss, inss_cap, irrf, Decimal(str(tables["fgts_rate"]))


def employee_inss(gross: Decimal) -> Decimal:
    """Progressive employee contribution, each slice taxed at its own rate."""
    brackets, cap, _, _ = _payroll_tables()
    contribution = ZERO
    lower = ZERO
    for bracket in brackets:
        if gross <= lower:
            break
        slice_top = min(gross, bracket.ceiling)
        contribution += (slice_top - lower) * bracket.rate
        lower = bracket.ceiling
    return money(min(contribution, cap))


def withholding_irrf(taxable: Decimal) -> Decimal:
    _, _, brackets, _ = _payroll_tables()
    for bracket in brackets:
        if bracket.ceiling is None or taxable <= bracket.ceiling:
            return money(max(ZERO, taxable * bracket.rate - bracket.deduction))
    return ZERO


def calculate_payroll(base_salary: Decimal, additions: Decimal = ZERO) -> PayrollResult:
    """Gross-to-net for one employee-month.

    FGTS is an employer cost and is reported but not deducted.
    """
    if base_salary < 0 or additions < 0:
        raise ValueError("Salary amounts must be non-negative")

    _, _, _, fgts_rate = _payroll_tables()
    gross = money(base_salary + additions)
    inss = employee_inss(gross)
    irrf = withholding_irrf(gross - inss)
    total_deductions = inss + irrf
    return PayrollResult(
        gross=gross,
        inss=inss,
        irrf=irrf,
        fgts=money(gross * fgts_rate),
        total_deductions=total_deductions,
        net=gross - total_deductions,
    )


class PayrollService:
    """Generates draft payroll entries for a client's active employees."""

    def __init__(self, baas: BaaSClient):
        self._baas = baas
        self._logger = logger.bind(component="payroll")

    async def run(
        self,
        client_id: str,
        period: str,
        employee_ids: list[str] | None = None,
    ) -> dict[str, Any]:
        parse_period(period)

        filters = {"client_id": eq(client_id), "status": eq("active")}
        if employee_ids:
            filters["id"] = in_(employee_ids)
        employees = await self._baas.select("employees", filters)
        # Re-running a period only fills in employees that have no entry yet.
        existing = await self._baas.select(
            "payroll_entries",
            {"client_id": eq(client_id), "period": eq(period)},
            columns="employee_id",
        )
        has_entry = {row.get("employee_id") for row in existing}

        entries: list[dict[str, Any]] = []
        total_gross = ZERO
        total_net = ZERO
        total_fgts = ZERO
        skipped = 0

        for employee in employees:
            if employee["id"] in has_entry:
                skipped += 1
                continue
            base_salary = Decimal(str(employee.get("base_salary") or 0))
            result = calculate_payroll(base_salary)

            rows = await self._baas.insert(
                "payroll_entries",
                {
                    "client_id": client_id,
                    "employee_id": employee["id"],
                    "period": period,
                    "base_salary": str(base_salary),
                    "gross_salary": str(result.gross),
                    "deductions": str(result.total_deductions),
                    "net_salary": str(result.net),
                    "status": "draft",
                },
            )
            if rows:
                await self._baas.insert(
                    "payroll_deductions",
                    [
                        {
                            "payroll_entry_id": rows[0]["id"],
                            "type": "inss",
                            "description": "INSS",
                            "amount": str(result.inss),
                        },
                        {
                            "payroll_entry_id": rows[0]["id"],
                            "type": "irrf",
                            "description": "IRRF",
                            "amount": str(result.irrf),
                        },
                    ],
                    returning=False,
                )

            total_gross += result.gross
            total_net += result.net
            total_fgts += result.fgts
            entries.append({"employee_id": employee["id"], "net_salary": str(result.net)})

        self._logger.info(
            "payroll_generated",
            client_id=client_id,
            period=period,
            employees=len(entries),
            skipped=skipped,
        )
        return {
            "client_id": client_id,
            "period": period,
            "employees": len(entries),
            "skipped": skipped,
            "total_gross": str(total_gross),
            "total_net": str(total_net),
            "total_fgts": str(total_fgts),
            "entries": entries,
        }
