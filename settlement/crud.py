"""Database access helpers."""
from __future__ import annotations

import json
from datetime import date
from typing import Any, Iterable, Iterator, Sequence

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from settlement.core.matching import ReferralSnapshot, normalize_name, parse_row_date
from settlement.core.tiers import Tier, validate_tiers
from settlement.models import (
    OPEN_REFERRAL_STATUSES,
    Agent,
    AuditLog,
    Clinic,
    CommissionTier,
    OtpSession,
    Payment,
    PaymentAct,
    PaymentStatus,
    Referral,
    ReferralClinic,
    ReferralStatus,
    TaxStatus,
    TERMINAL_PAYMENT_STATUSES,
)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def create_agent(
    db: Session,
    full_name: str,
    email: str | None = None,
    email_verified: bool = False,
    telegram_id: str | None = None,
    tax_status: TaxStatus = TaxStatus.UNKNOWN,
) -> Agent:
    name = (full_name or "").strip()
    if not name:
        raise ValueError("Agent name is required.")
    agent = Agent(
        full_name=name,
        email=email,
        email_verified=email_verified,
        telegram_id=telegram_id,
        tax_status=tax_status,
    )
    db.add(agent)
    db.commit()
    db.refresh(agent)
    return agent


def get_agent(db: Session, agent_id: int) -> Agent | None:
    return db.get(Agent, agent_id)


def get_agent_for_update(db: Session, agent_id: int) -> Agent | None:
    """Load an agent row with a row lock, bypassing any stale identity-map copy."""

    stmt = (
        select(Agent)
        .where(Agent.id == agent_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalar_one_or_none()


def deactivate_agent(db: Session, agent: Agent) -> Agent:
    agent.is_active = False
    db.add(agent)
    db.commit()
    db.refresh(agent)
    return agent


def create_clinic(db: Session, name: str) -> Clinic:
    clinic = Clinic(name=name.strip())
    db.add(clinic)
    db.commit()
    db.refresh(clinic)
    return clinic


def create_referral(
    db: Session,
    agent: Agent,
    patient_full_name: str,
    patient_birthdate: date | str,
    clinic_ids: Iterable[int] = (),
    patient_phone: str | None = None,
    patient_email: str | None = None,
    patient_city: str | None = None,
    notes: str | None = None,
) -> Referral:
    name = " ".join((patient_full_name or "").split())
    if not name:
        raise ValueError("Patient full name is required.")
    birthdate = parse_row_date(patient_birthdate)
    if birthdate is None:
        raise ValueError(f"Could not parse patient birthdate '{patient_birthdate}'")

    referral = Referral(
        agent_id=agent.id,
        patient_full_name=name,
        patient_birthdate=birthdate,
        patient_phone=patient_phone,
        patient_email=patient_email,
        patient_city=patient_city,
        notes=notes,
        status=ReferralStatus.NEW,
        targets=[ReferralClinic(clinic_id=clinic_id) for clinic_id in sorted(set(clinic_ids))],
    )
    db.add(referral)
    db.commit()
    db.refresh(referral)
    return referral


def get_referral(db: Session, referral_id: int) -> Referral | None:
    return db.get(Referral, referral_id)


def get_referral_fresh(db: Session, referral_id: int) -> Referral | None:
    stmt = (
        select(Referral)
        .where(Referral.id == referral_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalar_one_or_none()


def list_clinic_referral_pool(db: Session, clinic_id: int) -> Sequence[Referral]:
    """Referrals aimed at this clinic, or at no clinic in particular."""

    stmt = (
        select(Referral)
        .where(
            or_(
                ~Referral.targets.any(),
                Referral.targets.any(ReferralClinic.clinic_id == clinic_id),
            )
        )
        .order_by(Referral.created_at, Referral.id)
    )
    return db.execute(stmt).scalars().all()


def lock_open_identity_matches(db: Session, referral: Referral, clinic_id: int | None = None) -> list[Referral]:
    """Lock the other open referrals for the same patient as ``referral``.

    With ``clinic_id`` only referrals aimed at that clinic (or at no clinic in
    particular) are returned.
    """

    stmt = select(Referral).where(
        Referral.patient_birthdate == referral.patient_birthdate,
        Referral.status.in_(list(OPEN_REFERRAL_STATUSES)),
        Referral.id != referral.id,
    )
    if clinic_id is not None:
        stmt = stmt.where(
            or_(
                ~Referral.targets.any(),
                Referral.targets.any(ReferralClinic.clinic_id == clinic_id),
            )
        )
    stmt = (
        stmt.order_by(Referral.created_at, Referral.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    name = normalize_name(referral.patient_full_name)
    return [
        candidate
        for candidate in db.execute(stmt).scalars().all()
        if normalize_name(candidate.patient_full_name) == name
    ]


def snapshot_referral(referral: Referral) -> ReferralSnapshot:
    return ReferralSnapshot(
        id=referral.id,
        status=referral.status,
        patient_full_name=referral.patient_full_name,
        patient_birthdate=referral.patient_birthdate,
        created_at=referral.created_at,
        version=referral.version,
        clinic_ids=tuple(referral.clinic_ids),
        visit_date=referral.visit_date,
        treatment_amount=referral.treatment_amount,
    )


def list_settled_referrals(db: Session, agent_id: int, month: str) -> Sequence[Referral]:
    stmt = (
        select(Referral)
        .where(
            Referral.agent_id == agent_id,
            Referral.settled_month == month,
            Referral.status == ReferralStatus.VISITED,
        )
        .order_by(Referral.visit_date, Referral.id)
    )
    return db.execute(stmt).scalars().all()


def get_tiers(db: Session) -> list[Tier]:
    stmt = select(CommissionTier).order_by(CommissionTier.min_monthly_revenue)
    return [
        Tier(min_monthly_revenue=row.min_monthly_revenue, rate_percent=row.rate_percent)
        for row in db.execute(stmt).scalars().all()
    ]


def replace_tiers(
    db: Session, tiers: Iterable[Tier | tuple[int, Any]], actor: str | None = None
) -> list[Tier]:
    """Validate and store a new tier table in place of the current one.

    The audit entry is written in the same transaction as the new table.
    """

    validated = validate_tiers(tiers)
    db.execute(delete(CommissionTier))
    db.add_all(
        CommissionTier(min_monthly_revenue=tier.min_monthly_revenue, rate_percent=tier.rate_percent)
        for tier in validated
    )
    record_audit(
        db,
        "tiers_replaced",
        {"tiers": [[tier.min_monthly_revenue, str(tier.rate_percent)] for tier in validated]},
        actor,
    )
    db.commit()
    return validated


def get_payment(db: Session, payment_id: int) -> Payment | None:
    return db.get(Payment, payment_id)


def get_payment_for_update(db: Session, payment_id: int) -> Payment | None:
    stmt = (
        select(Payment)
        .where(Payment.id == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalar_one_or_none()


def list_payments(
    db: Session,
    agent_id: int | None = None,
    status: PaymentStatus | None = None,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> tuple[Sequence[Payment], int]:
    """Newest-first page of payments plus the total count for the filter."""

    page = max(page, 1)
    page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

    stmt = select(Payment)
    count_stmt = select(func.count(Payment.id))
    if agent_id is not None:
        stmt = stmt.where(Payment.agent_id == agent_id)
        count_stmt = count_stmt.where(Payment.agent_id == agent_id)
    if status is not None:
        stmt = stmt.where(Payment.status == status)
        count_stmt = count_stmt.where(Payment.status == status)

    stmt = stmt.order_by(Payment.requested_at.desc(), Payment.id.desc())
    stmt = stmt.offset((page - 1) * page_size).limit(page_size)
    total = db.execute(count_stmt).scalar_one()
    return db.execute(stmt).scalars().all(), total


def iter_payments(
    db: Session,
    agent_id: int | None = None,
    status: PaymentStatus | None = None,
) -> Iterator[Payment]:
    """Every payment matching the filter, newest first, without paging."""

    stmt = select(Payment)
    if agent_id is not None:
        stmt = stmt.where(Payment.agent_id == agent_id)
    if status is not None:
        stmt = stmt.where(Payment.status == status)
    stmt = stmt.order_by(Payment.requested_at.desc(), Payment.id.desc())
    yield from db.execute(stmt).scalars()


def reserved_amount(db: Session, agent_id: int) -> int:
    """Sum of gross amounts still held by unfinished payments."""

    stmt = select(func.coalesce(func.sum(Payment.amount), 0)).where(
        Payment.agent_id == agent_id,
        Payment.status.not_in(list(TERMINAL_PAYMENT_STATUSES)),
    )
    return int(db.execute(stmt).scalar_one())


def get_act(db: Session, act_id: int) -> PaymentAct | None:
    return db.get(PaymentAct, act_id)


def current_act(db: Session, payment: Payment) -> PaymentAct | None:
    if payment.act_id is None:
        return None
    return db.get(PaymentAct, payment.act_id)


def record_audit(db: Session, action: str, details: dict[str, Any] | None = None, actor: str | None = None) -> None:
    """Queue an audit entry; committed with the caller's transaction."""

    db.add(
        AuditLog(
            actor=actor,
            action=action,
            details=json.dumps(details or {}, default=str, sort_keys=True),
        )
    )


def list_audit_entries(db: Session, action: str | None = None) -> Sequence[AuditLog]:
    stmt = select(AuditLog)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    return db.execute(stmt.order_by(AuditLog.id)).scalars().all()


def reset_application_data(db: Session) -> None:
    """Delete all settlement data (used by test fixtures and admin maintenance)."""

    for model in (PaymentAct, Payment, ReferralClinic, Referral, OtpSession, AuditLog, CommissionTier, Clinic, Agent):
        db.execute(delete(model))
    db.commit()
