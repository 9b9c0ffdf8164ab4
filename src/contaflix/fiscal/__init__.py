"""Tax calculation and payment slip generation."""

from contaflix.fiscal.darf import (
    LateCharges,
    PaymentSlip,
    SlipRegistry,
    SlipStatus,
    SlipType,
    generate_slip,
    late_charges,
    slip_type_for,
)
from contaflix.fiscal.taxes import (
    TaxCalculationError,
    TaxParameters,
    TaxRegime,
    TaxResult,
    TaxType,
    calculate_tax,
    calculate_taxes_for_regime,
    due_date_for,
    revenue_code_for,
)

__all__ = [
    "LateCharges",
    "PaymentSlip",
    "SlipRegistry",
    "SlipStatus",
    "SlipType",
    "TaxCalculationError",
    "TaxParameters",
    "TaxRegime",
    "TaxResult",
    "TaxType",
    "calculate_tax",
    "calculate_taxes_for_regime",
    "due_date_for",
    "generate_slip",
    "late_charges",
    "revenue_code_for",
    "slip_type_for",
]
