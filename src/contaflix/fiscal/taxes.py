"""Brazilian tax calculators (federal, municipal, payroll and Simples Nacional)."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

import structlog
import yaml  # type: ignore[import-untyped]

from contaflix.config.holidays import (
    last_business_day_of_month,
    next_business_day,
    previous_business_day,
)

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")
RATE_PLACES = Decimal("0.0001")
ZERO = Decimal("0")

IRPJ_RATE = Decimal("0.15")
IRPJ_SURTAX_RATE = Decimal("0.10")
IRPJ_SURTAX_THRESHOLD = Decimal("20000")
CSLL_RATE = Decimal("0.09")
PRESUMED_PROFIT_SHARE = Decimal("0.32")
ISS_MIN_RATE = Decimal("0.02")
ISS_MAX_RATE = Decimal("0.05")
INSS_EMPLOYER_RATE = Decimal("0.20")


class TaxCalculationError(Exception):
    """Raised when a tax cannot be computed from the given parameters."""

    pass


class TaxRegime(str, Enum):
    """Company tax regime."""

    SIMPLES_NACIONAL = "simples_nacional"
    LUCRO_PRESUMIDO = "lucro_presumido"
    LUCRO_REAL = "lucro_real"


class TaxType(str, Enum):
    """Supported taxes."""

    IRPJ = "IRPJ"
    CSLL = "CSLL"
    PIS = "PIS"
    COFINS = "COFINS"
    ISS = "ISS"
    INSS = "INSS"
    FGTS = "FGTS"
    DAS = "DAS"


REVENUE_CODES: dict[TaxType, str] = {
    TaxType.IRPJ: "2203",
    TaxType.CSLL: "2372",
    TaxType.ISS: "ISS",
    TaxType.INSS: "2100",
    TaxType.FGTS: "FGTS",
    TaxType.DAS: "3333",
}


@dataclass
class TaxParameters:
    """Inputs for a single tax calculation.

    ``amount`` is revenue for income/turnover taxes and payroll for INSS/FGTS.
    ``extra`` carries tax-specific knobs: ``iss_rate``, ``rbt12``, ``annex``.
    """

    amount: Decimal
    period: str
    regime: TaxRegime = TaxRegime.LUCRO_PRESUMIDO
    deductions: Decimal = ZERO
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TaxResult:
    """Outcome of a tax calculation."""

    tax_type: TaxType
    base_amount: Decimal
    tax_amount: Decimal
    effective_rate: Decimal
    deductions: Decimal
    final_amount: Decimal
    due_date: date
    revenue_code: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "tax_type": self.tax_type.value,
            "base_amount": str(self.base_amount),
            "tax_amount": str(self.tax_amount),
            "effective_rate": str(self.effective_rate),
            "deductions": str(self.deductions),
            "final_amount": str(self.final_amount),
            "due_date": self.due_date.isoformat(),
            "revenue_code": self.revenue_code,
        }


@dataclass(frozen=True)
class SimplesBracket:
    ceiling: Decimal
    rate: Decimal
    deduction: Decimal


# === Tables ===


@lru_cache
def load_tax_tables() -> dict[str, Any]:
    """Load the packaged bracket tables."""
    tables_path = Path(__file__).resolve().parent / "tables.yaml"
    data = yaml.safe_load(tables_path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("tables.yaml must be a mapping")
    return data


def _dec(value: Any) -> Decimal:
    return Decimal(str(value))


@lru_cache
def simples_annexes() -> dict[str, tuple[SimplesBracket, ...]]:
    """Simples Nacional annex brackets keyed by roman numeral."""
    annexes = load_tax_tables()["simples_nacional"]["annexes"]
    return {
        str(name): tuple(
            SimplesBracket(
                ceiling=_dec(item["ceiling"]),
                rate=_dec(item["rate"]),
                deduction=_dec(item["deduction"]),
            )
            for item in brackets
        )
        for name, brackets in annexes.items()
    }


def simples_revenue_ceiling() -> Decimal:
    return _dec(load_tax_tables()["simples_nacional"]["revenue_ceiling"])


# === Helpers ===


def money(value: Decimal) -> Decimal:
    """Round to cents, half up."""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_period(period: str) -> tuple[int, int]:
    """Parse a ``YYYY-MM`` period."""
    try:
        year_text, month_text = period.split("-")
        year, month = int(year_text), int(month_text)
    except (AttributeError, ValueError) as e:
        raise TaxCalculationError(f"Invalid period {period!r}, expected YYYY-MM") from e
    if not 1 <= month <= 12:
        raise TaxCalculationError(f"Invalid period {period!r}, expected YYYY-MM")
    return year, month


def _following_month(period: str) -> tuple[int, int]:
    year, month = parse_period(period)
    if month == 12:
        return year + 1, 1
    return year, month + 1


def _effective_rate(tax: Decimal, amount: Decimal) -> Decimal:
    if amount == 0:
        return ZERO
    return (tax / amount).quantize(RATE_PLACES, rounding=ROUND_HALF_UP)


def _result(
    tax_type: TaxType,
    params: TaxParameters,
    base: Decimal,
    tax: Decimal,
    due: date,
) -> TaxResult:
    tax = money(tax)
    return TaxResult(
        tax_type=tax_type,
        base_amount=money(base),
        tax_amount=tax,
        effective_rate=_effective_rate(tax, params.amount),
        deductions=money(params.deductions),
        final_amount=tax,
        due_date=due,
        revenue_code=revenue_code_for(tax_type, params.regime),
    )


def _profit_base(params: TaxParameters) -> Decimal:
    base = params.amount
    if params.regime == TaxRegime.LUCRO_PRESUMIDO:
        base = base * PRESUMED_PROFIT_SHARE
    return max(ZERO, base - params.deductions)


def _turnover_base(params: TaxParameters) -> Decimal:
    return max(ZERO, params.amount - params.deductions)


def due_date_for(tax_type: TaxType, period: str) -> date:
    """Statutory due date of a tax assessed for ``period``.

    Federal and payroll dates falling on a non-business day move back,
    except DAS which moves forward. ISS follows municipal calendars and
    is left on day 10.
    """
    year, month = _following_month(period)
    if tax_type in (TaxType.IRPJ, TaxType.CSLL):
        return last_business_day_of_month(year, month)
    if tax_type in (TaxType.PIS, TaxType.COFINS):
        return previous_business_day(date(year, month, 25))
    if tax_type == TaxType.ISS:
        return date(year, month, 10)
    if tax_type in (TaxType.INSS, TaxType.FGTS):
        return previous_business_day(date(year, month, 20))
    if tax_type == TaxType.DAS:
        return next_business_day(date(year, month, 20))
    raise TaxCalculationError(f"Unsupported tax type: {tax_type}")


def revenue_code_for(tax_type: TaxType, regime: TaxRegime = TaxRegime.LUCRO_PRESUMIDO) -> str:
    presumed = regime == TaxRegime.LUCRO_PRESUMIDO
    if tax_type == TaxType.PIS:
        return "8109" if presumed else "6912"
    if tax_type == TaxType.COFINS:
        return "2172" if presumed else "5856"
    return REVENUE_CODES[tax_type]


# === Calculators ===


def calculate_irpj(params: TaxParameters) -> TaxResult:
    base = _profit_base(params)
    tax = base * IRPJ_RATE
    if base > IRPJ_SURTAX_THRESHOLD:
        tax += (base - IRPJ_SURTAX_THRESHOLD) * IRPJ_SURTAX_RATE
    due = due_date_for(TaxType.IRPJ, params.period)
    return _result(TaxType.IRPJ, params, base, tax, due)


def calculate_csll(params: TaxParameters) -> TaxResult:
    base = _profit_base(params)
    due = due_date_for(TaxType.CSLL, params.period)
    return _result(TaxType.CSLL, params, base, base * CSLL_RATE, due)


def calculate_pis(params: TaxParameters) -> TaxResult:
    presumed = params.regime == TaxRegime.LUCRO_PRESUMIDO
    rate = Decimal("0.0065") if presumed else Decimal("0.0165")
    base = _turnover_base(params)
    due = due_date_for(TaxType.PIS, params.period)
    return _result(TaxType.PIS, params, base, base * rate, due)


def calculate_cofins(params: TaxParameters) -> TaxResult:
    presumed = params.regime == TaxRegime.LUCRO_PRESUMIDO
    rate = Decimal("0.03") if presumed else Decimal("0.076")
    base = _turnover_base(params)
    due = due_date_for(TaxType.COFINS, params.period)
    return _result(TaxType.COFINS, params, base, base * rate, due)


def calculate_iss(params: TaxParameters) -> TaxResult:
    rate = _dec(params.extra.get("iss_rate", ISS_MAX_RATE))
    rate = min(ISS_MAX_RATE, max(ISS_MIN_RATE, rate))
    base = _turnover_base(params)
    due = due_date_for(TaxType.ISS, params.period)
    return _result(TaxType.ISS, params, base, base * rate, due)


def calculate_inss(params: TaxParameters) -> TaxResult:
    """Employer (patronal) contribution over the month's payroll."""
    base = _turnover_base(params)
    due = due_date_for(TaxType.INSS, params.period)
    return _result(TaxType.INSS, params, base, base * INSS_EMPLOYER_RATE, due)


def calculate_fgts(params: TaxParameters) -> TaxResult:
    rate = _dec(load_tax_tables()["payroll"]["fgts_rate"])
    base = _turnover_base(params)
    due = due_date_for(TaxType.FGTS, params.period)
    return _result(TaxType.FGTS, params, base, base * rate, due)


def simples_effective_rate(rbt12: Decimal, annex: str = "III") -> Decimal:
    """Effective DAS rate for a trailing-12-month revenue."""
    brackets = simples_annexes().get(annex)
    if brackets is None:
        raise TaxCalculationError(f"Unknown Simples Nacional annex {annex!r}")
    if rbt12 > simples_revenue_ceiling():
        raise TaxCalculationError(
            f"Trailing revenue {rbt12} exceeds the Simples Nacional ceiling"
        )
    if rbt12 <= 0:
        return ZERO

    for bracket in brackets:
        if rbt12 <= bracket.ceiling:
            return (rbt12 * bracket.rate - bracket.deduction) / rbt12

    # Unreachable while the last ceiling equals the regime ceiling.
    raise TaxCalculationError(f"No bracket covers trailing revenue {rbt12}")


def calculate_das(params: TaxParameters) -> TaxResult:
    rbt12 = _dec(params.extra.get("rbt12", params.amount * 12))
    annex = str(params.extra.get("annex", "III")).upper()
    rate = simples_effective_rate(rbt12, annex)
    base = _turnover_base(params)
    due = due_date_for(TaxType.DAS, params.period)
    return _result(TaxType.DAS, params, base, base * rate, due)


CALCULATORS: dict[TaxType, Callable[[TaxParameters], TaxResult]] = {
    TaxType.IRPJ: calculate_irpj,
    TaxType.CSLL: calculate_csll,
    TaxType.PIS: calculate_pis,
    TaxType.COFINS: calculate_cofins,
    TaxType.ISS: calculate_iss,
    TaxType.INSS: calculate_inss,
    TaxType.FGTS: calculate_fgts,
    TaxType.DAS: calculate_das,
}


def calculate_tax(tax_type: TaxType | str, params: TaxParameters) -> TaxResult:
    """Dispatch to the calculator for ``tax_type``."""
    try:
        resolved = TaxType(tax_type)
    except ValueError as e:
        raise TaxCalculationError(f"Unsupported tax type: {tax_type}") from e

    parse_period(params.period)
    result = CALCULATORS[resolved](params)
    logger.debug(
        "tax_calculated",
        tax_type=resolved.value,
        period=params.period,
        amount=str(result.final_amount),
    )
    return result


REGIME_TAXES: dict[TaxRegime, tuple[TaxType, ...]] = {
    TaxRegime.SIMPLES_NACIONAL: (TaxType.DAS,),
    TaxRegime.LUCRO_PRESUMIDO: (TaxType.IRPJ, TaxType.CSLL, TaxType.PIS, TaxType.COFINS),
    TaxRegime.LUCRO_REAL: (TaxType.IRPJ, TaxType.CSLL, TaxType.PIS, TaxType.COFINS),
}


def calculate_taxes_for_regime(
    revenue: Decimal,
    period: str,
    regime: TaxRegime | str,
    deductions: Decimal = ZERO,
    extra: dict[str, Any] | None = None,
) -> list[TaxResult]:
    """Compute the standard monthly taxes of a regime."""
    try:
        resolved = TaxRegime(regime)
    except ValueError as e:
        raise TaxCalculationError(f"Unsupported tax regime: {regime}") from e
    params = TaxParameters(
        amount=revenue,
        period=period,
        regime=resolved,
        deductions=deductions,
        extra=extra or {},
    )
    return [calculate_tax(tax_type, params) for tax_type in REGIME_TAXES[resolved]]
