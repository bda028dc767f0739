"""Tax withholding for agent payouts."""
from __future__ import annotations

from dataclasses import dataclass

from settlement.core.results import UnknownTaxStatusError
from settlement.models import TaxStatus

# Rates in percent; amounts are floored so the platform never under-withholds
INCOME_TAX_PERCENT = 13
SOCIAL_CONTRIBUTION_PERCENT = 30
SELF_EMPLOYED_TAX_PERCENT = 6  # paid by the agent, shown for information only


@dataclass(frozen=True)
class TaxBreakdown:
    gross: int
    net: int
    tax: int
    social: int
    self_employed_estimate: int = 0


def coerce_tax_status(value: TaxStatus | str | bool | None) -> TaxStatus:
    """Normalise loose inputs (enum, its value, or a yes/no flag) to TaxStatus."""

    if isinstance(value, TaxStatus):
        return value
    if value is None:
        return TaxStatus.UNKNOWN
    if isinstance(value, bool):
        return TaxStatus.SELF_EMPLOYED if value else TaxStatus.INDIVIDUAL
    try:
        return TaxStatus(str(value))
    except ValueError:
        return TaxStatus.UNKNOWN


def calculate_tax(gross: int, tax_status: TaxStatus | str | bool | None) -> TaxBreakdown:
    """Split a gross payout into net, income tax and social contribution.

    Self-employed agents receive the gross amount in full. Individuals have
    13% income tax and 30% social contributions withheld. An undeclared
    status has no valid computation and raises ``UnknownTaxStatusError``.
    """

    if gross < 0:
        raise ValueError("gross amount cannot be negative")

    status = coerce_tax_status(tax_status)
    if status is TaxStatus.SELF_EMPLOYED:
        return TaxBreakdown(
            gross=gross,
            net=gross,
            tax=0,
            social=0,
            self_employed_estimate=gross * SELF_EMPLOYED_TAX_PERCENT // 100,
        )
    if status is TaxStatus.INDIVIDUAL:
        tax = gross * INCOME_TAX_PERCENT // 100
        social = gross * SOCIAL_CONTRIBUTION_PERCENT // 100
        return TaxBreakdown(gross=gross, net=gross - tax - social, tax=tax, social=social)

    raise UnknownTaxStatusError("Tax status is not declared; ask the agent to choose one before payout")
