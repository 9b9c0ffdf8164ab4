"""Payment slips (DARF, DAS, GPS...) and late-payment charges."""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

import structlog

from contaflix.fiscal.taxes import ZERO, TaxType, money
from contaflix.tools.baas_api import BaaSClient, eq

logger = structlog.get_logger(__name__)

DAILY_FINE_RATE = Decimal("0.0033")
MAX_FINE_RATE = Decimal("0.20")
PAYMENT_MONTH_INTEREST = Decimal("0.01")


class SlipType(str, Enum):
    DARF = "DARF"
    DARF_SIMPLES = "DARF SIMPLES"
    GPS = "GPS"
    DAS = "DAS"
    GARE = "GARE"
    FGTS = "FGTS"


class SlipStatus(str, Enum):
    ISSUED = "issued"
    PAID = "paid"
    CANCELLED = "cancelled"
    OVERDUE = "overdue"


BARCODE_PREFIXES: dict[SlipType, str] = {
    SlipType.DARF: "858",
    SlipType.DARF_SIMPLES: "858",
    SlipType.GPS: "859",
    SlipType.DAS: "856",
}
DEFAULT_BARCODE_PREFIX = "847"

TAX_SLIP_TYPES: dict[TaxType, SlipType] = {
    TaxType.DAS: SlipType.DAS,
    TaxType.INSS: SlipType.GPS,
    TaxType.FGTS: SlipType.FGTS,
}


def slip_type_for(tax_type: TaxType) -> SlipType:
    """Slip used to pay a given tax; federal taxes default to DARF."""
    return TAX_SLIP_TYPES.get(tax_type, SlipType.DARF)


@dataclass
class PaymentSlip:
    """An issued payment slip (guia)."""

    id: str
    slip_type: SlipType
    period: str
    cnpj: str
    revenue_code: str
    principal: Decimal
    fine: Decimal
    interest: Decimal
    total: Decimal
    due_date: date
    issued_on: date
    status: SlipStatus = SlipStatus.ISSUED
    barcode: str = ""
    reference: str | None = None

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tipo_documento": self.slip_type.value,
            "periodo": self.period,
            "cnpj": self.cnpj,
            "codigo_receita": self.revenue_code,
            "valor_principal": str(self.principal),
            "valor_multa": str(self.fine),
            "valor_juros": str(self.interest),
            "valor_total": str(self.total),
            "data_vencimento": self.due_date.isoformat(),
            "data_emissao": self.issued_on.isoformat(),
            "status": self.status.value,
            "codigo_barras": self.barcode,
            "referencia": self.reference,
        }


@dataclass(frozen=True)
class LateCharges:
    days_late: int
    fine: Decimal
    interest: Decimal

    @property
    def total(self) -> Decimal:
        return self.fine + self.interest


# === Barcode ===


def mod10(digits: str) -> int:
    """Febraban modulo-10 check digit (weights 2,1 from the right)."""
    total = 0
    weight = 2
    for char in reversed(digits):
        product = int(char) * weight
        total += product // 10 + product % 10
        weight = 1 if weight == 2 else 2
    return (10 - total % 10) % 10


def _block(digits: str) -> str:
    return f"{digits}-{mod10(digits)}"


def build_barcode(
    slip_type: SlipType,
    total: Decimal,
    due_date: date,
    cnpj: str,
    period: str,
    revenue_code: str,
) -> str:
    """Four-block digitable line derived only from the slip content."""
    prefix = BARCODE_PREFIXES.get(slip_type, DEFAULT_BARCODE_PREFIX)
    code_digits = "".join(ch for ch in revenue_code if ch.isdigit())[:4].rjust(4, "0")
    cents = int(money(total) * 100)
    seed = f"{slip_type.value}|{cnpj}|{period}|{revenue_code}|{cents}".encode()
    digest = int(hashlib.sha256(seed).hexdigest(), 16) % 10**11

    blocks = [
        f"{prefix}{code_digits}0000",
        f"{cents:011d}",
        f"{due_date:%Y%m%d}000",
        f"{digest:011d}",
    ]
    return " ".join(_block(b) for b in blocks)


# === Late payment ===


def _months_between(due_date: date, paid_on: date) -> int:
    return (paid_on.year - due_date.year) * 12 + paid_on.month - due_date.month


def late_charges(
    principal: Decimal,
    due_date: date,
    paid_on: date,
    selic_monthly: Sequence[Decimal] = (),
) -> LateCharges:
    """Fine and interest for paying a federal tax after its due date.

    Fine is 0.33% per day late, capped at 20%. Interest is the SELIC rate
    accumulated over the whole months between the due month and the
    payment month, plus 1% for the payment month. ``selic_monthly`` lists
    those intermediate monthly rates in order; missing months count as 0.
    """
    days_late = (paid_on - due_date).days
    if days_late <= 0:
        return LateCharges(days_late=0, fine=ZERO, interest=ZERO)

    fine_rate = min(DAILY_FINE_RATE * days_late, MAX_FINE_RATE)

    months = _months_between(due_date, paid_on)
    interest_rate = ZERO
    if months > 0:
        interest_rate = sum(selic_monthly[: months - 1], ZERO) + PAYMENT_MONTH_INTEREST

    return LateCharges(
        days_late=days_late,
        fine=money(principal * fine_rate),
        interest=money(principal * interest_rate),
    )


# === Issuing ===


def generate_slip(
    slip_type: SlipType | str,
    period: str,
    cnpj: str,
    revenue_code: str,
    principal: Decimal,
    due_date: date,
    fine: Decimal = ZERO,
    interest: Decimal = ZERO,
    reference: str | None = None,
    issued_on: date | None = None,
) -> PaymentSlip:
    """Issue a payment slip with its digitable line."""
    resolved = SlipType(slip_type)
    principal = money(principal)
    fine = money(fine)
    interest = money(interest)
    total = principal + fine + interest

    slip = PaymentSlip(
        id=f"{resolved.name}-{uuid4().hex[:12]}",
        slip_type=resolved,
        period=period,
        cnpj=cnpj,
        revenue_code=revenue_code,
        principal=principal,
        fine=fine,
        interest=interest,
        total=total,
        due_date=due_date,
        issued_on=issued_on or date.today(),
        barcode=build_barcode(resolved, total, due_date, cnpj, period, revenue_code),
        reference=reference,
    )
    logger.info(
        "slip_issued",
        slip_id=slip.id,
        slip_type=resolved.value,
        period=period,
        total=str(total),
    )
    return slip


@dataclass
class SlipRegistry:
    """Issued slips, optionally mirrored into the ``guias_fiscais`` table."""

    baas: BaaSClient | None = None
    _slips: list[PaymentSlip] = field(default_factory=list)

    async def add(self, slip: PaymentSlip) -> PaymentSlip:
        self._slips.append(slip)
        if self.baas is not None:
            await self.baas.insert("guias_fiscais", slip.to_row(), returning=False)
        return slip

    def find(
        self,
        cnpj: str | None = None,
        period: str | None = None,
        slip_type: SlipType | None = None,
    ) -> list[PaymentSlip]:
        results = list(self._slips)
        if cnpj:
            results = [s for s in results if s.cnpj == cnpj]
        if period:
            results = [s for s in results if s.period == period]
        if slip_type:
            results = [s for s in results if s.slip_type == slip_type]
        return results

    async def update_status(self, slip_id: str, status: SlipStatus) -> PaymentSlip | None:
        """Set a slip's status; returns None when the id is unknown."""
        for idx, slip in enumerate(self._slips):
            if slip.id == slip_id:
                updated = replace(slip, status=SlipStatus(status))
                self._slips[idx] = updated
                if self.baas is not None:
                    await self.baas.update(
                        "guias_fiscais", {"status": updated.status.value}, {"id": eq(slip_id)}
                    )
                return updated
        return None
