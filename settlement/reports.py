"""Tabular read models for dashboards and exports."""
from __future__ import annotations

from typing import Iterable

import pandas as pd
from sqlalchemy.orm import Session

from settlement import crud
from settlement.core.formatting import display_payment_status, format_minor_units, referral_status_label
from settlement.models import Payment, Referral

STATEMENT_COLUMNS = [
    "referral_id",
    "patient_full_name",
    "visit_date",
    "status",
    "treatment_amount",
    "commission_amount",
    "effective_rate_percent",
]

PAYMENT_COLUMNS = [
    "payment_id",
    "requested_at",
    "status",
    "amount",
    "tax_amount",
    "social_amount",
    "net_amount",
    "net_display",
    "external_reference",
]


def _statement_df(referrals: Iterable[Referral]) -> pd.DataFrame:
    rows = []
    for item in referrals:
        treatment = item.treatment_amount or 0
        commission = item.commission_amount or 0
        rows.append(
            {
                "referral_id": item.id,
                "patient_full_name": item.patient_full_name,
                "visit_date": item.visit_date,
                "status": referral_status_label(item.status),
                "treatment_amount": treatment,
                "commission_amount": commission,
                "effective_rate_percent": round(commission * 100 / treatment, 2) if treatment else 0.0,
            }
        )
    return pd.DataFrame(rows, columns=STATEMENT_COLUMNS)


def agent_month_statement(db: Session, agent_id: int, month: str) -> pd.DataFrame:
    """Settled referrals that counted toward ``month`` (YYYY-MM), oldest visit first."""

    return _statement_df(crud.list_settled_referrals(db, agent_id, month))


def statement_totals(statement: pd.DataFrame) -> dict[str, int]:
    if statement.empty:
        return {"referrals": 0, "treatment_amount": 0, "commission_amount": 0}
    return {
        "referrals": int(len(statement)),
        "treatment_amount": int(statement["treatment_amount"].sum()),
        "commission_amount": int(statement["commission_amount"].sum()),
    }


def payments_frame(payments: Iterable[Payment]) -> pd.DataFrame:
    rows = []
    for item in payments:
        rows.append(
            {
                "payment_id": item.id,
                "requested_at": item.requested_at,
                "status": display_payment_status(item.status, item.provider_status),
                "amount": item.amount,
                "tax_amount": item.tax_amount,
                "social_amount": item.social_amount,
                "net_amount": item.net_amount,
                "net_display": format_minor_units(item.net_amount),
                "external_reference": item.external_reference,
            }
        )
    return pd.DataFrame(rows, columns=PAYMENT_COLUMNS)
