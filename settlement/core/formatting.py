"""Human-readable labels and money formatting for dashboards.

The state machines only know their enums; everything a person reads lives here.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any

from settlement.models import PaymentStatus, ProviderStatus, ReferralStatus

REFERRAL_STATUS_LABELS: dict[ReferralStatus, str] = {
    ReferralStatus.NEW: "New",
    ReferralStatus.IN_PROGRESS: "In progress",
    ReferralStatus.CONTACTED: "Contacted",
    ReferralStatus.SCHEDULED: "Scheduled",
    ReferralStatus.VISITED: "Visited",
    ReferralStatus.DUPLICATE: "Duplicate",
    ReferralStatus.NO_ANSWER: "No answer",
    ReferralStatus.CANCELLED: "Cancelled",
}

PAYMENT_STATUS_LABELS: dict[PaymentStatus, str] = {
    PaymentStatus.PENDING: "Requested",
    PaymentStatus.ACT_GENERATED: "Act generated",
    PaymentStatus.SENT_FOR_SIGNING: "Awaiting signature",
    PaymentStatus.SIGNED: "Signed",
    PaymentStatus.READY_FOR_PAYMENT: "Ready for payment",
    PaymentStatus.COMPLETED: "Paid",
    PaymentStatus.FAILED: "Failed",
}

PROVIDER_STATUS_LABELS: dict[ProviderStatus, str] = {
    ProviderStatus.PAID: "Paid",
    ProviderStatus.REJECTED: "Rejected by provider",
    ProviderStatus.PROCESSING: "Processing",
    ProviderStatus.AWAITING_PAYMENT: "Awaiting payment",
    ProviderStatus.ERROR: "Provider error",
    ProviderStatus.DELETED: "Deleted",
    ProviderStatus.AWAITING_CONFIRMATION: "Awaiting confirmation",
    ProviderStatus.AWAITING_SIGNATURE: "Awaiting signature",
}


def referral_status_label(status: ReferralStatus | str) -> str:
    try:
        return REFERRAL_STATUS_LABELS[ReferralStatus(status)]
    except ValueError:
        return str(status)


def display_payment_status(status: PaymentStatus | str, provider_status: int | None = None) -> str:
    """Label shown for a payment; a provider status always takes precedence."""

    if provider_status is not None:
        try:
            return PROVIDER_STATUS_LABELS[ProviderStatus(provider_status)]
        except ValueError:
            return f"Provider status #{provider_status}"
    try:
        return PAYMENT_STATUS_LABELS[PaymentStatus(status)]
    except ValueError:
        return str(status)


def format_minor_units(value: Any) -> str:
    """Render an integer kopeck amount as 1,234.56."""

    if value in (None, ""):
        value = 0
    amount = (Decimal(int(value)) / Decimal(100)).quantize(Decimal("0.01"))
    return f"{amount:,.2f}"


__all__ = [
    "display_payment_status",
    "format_minor_units",
    "referral_status_label",
]
