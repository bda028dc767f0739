"""SQLAlchemy models for the settlement service."""
from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from settlement.database import Base


class TaxStatus(str, enum.Enum):
    SELF_EMPLOYED = "selfEmployed"
    INDIVIDUAL = "individual"
    UNKNOWN = "unknown"


class ReferralStatus(str, enum.Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    CONTACTED = "contacted"
    SCHEDULED = "scheduled"
    VISITED = "visited"
    DUPLICATE = "duplicate"
    NO_ANSWER = "no_answer"
    CANCELLED = "cancelled"


OPEN_REFERRAL_STATUSES = frozenset(
    {ReferralStatus.NEW, ReferralStatus.IN_PROGRESS, ReferralStatus.CONTACTED, ReferralStatus.SCHEDULED}
)
TERMINAL_REFERRAL_STATUSES = frozenset(
    {ReferralStatus.VISITED, ReferralStatus.DUPLICATE, ReferralStatus.NO_ANSWER, ReferralStatus.CANCELLED}
)


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    ACT_GENERATED = "act_generated"
    SENT_FOR_SIGNING = "sent_for_signing"
    SIGNED = "signed"
    READY_FOR_PAYMENT = "ready_for_payment"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED})


class PayoutRoute(str, enum.Enum):
    MANUAL = "manual"
    PROVIDER = "provider"


class ProviderStatus(int, enum.Enum):
    PAID = 1
    REJECTED = 2
    PROCESSING = 3
    AWAITING_PAYMENT = 4
    ERROR = 5
    DELETED = 6
    AWAITING_CONFIRMATION = 7
    AWAITING_SIGNATURE = 8


class ActStatus(str, enum.Enum):
    GENERATED = "generated"
    SENT_FOR_SIGNING = "sent_for_signing"
    SIGNED = "signed"
    CANCELLED = "cancelled"


class OtpChannel(str, enum.Enum):
    EMAIL = "email"
    TELEGRAM = "telegram"


def _enum_column(enum_cls: type[enum.Enum], length: int = 20) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


class Agent(Base):
    __tablename__ = "agents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    telegram_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    tax_status: Mapped[TaxStatus] = mapped_column(
        _enum_column(TaxStatus), nullable=False, default=TaxStatus.UNKNOWN
    )

    # Money columns are integer minor units (kopecks)
    available_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_earnings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_paid_out: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bonus_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_referrals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Month-to-date treatment revenue; revenue_month is "YYYY-MM"
    month_revenue: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revenue_month: Mapped[str | None] = mapped_column(String(7), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    referrals: Mapped[list["Referral"]] = relationship(back_populates="agent")
    payments: Mapped[list["Payment"]] = relationship(back_populates="agent", order_by="Payment.id")

    __table_args__ = (
        CheckConstraint("month_revenue >= 0", name="ck_agents_month_revenue_nonnegative"),
        CheckConstraint("bonus_points >= 0", name="ck_agents_bonus_nonnegative"),
        CheckConstraint("lifetime_paid_out >= 0", name="ck_agents_paid_out_nonnegative"),
    )


class Clinic(Base):
    __tablename__ = "clinics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class ReferralClinic(Base):
    __tablename__ = "referral_clinics"

    referral_id: Mapped[int] = mapped_column(
        ForeignKey("referrals.id", ondelete="CASCADE"), primary_key=True
    )
    clinic_id: Mapped[int] = mapped_column(ForeignKey("clinics.id", ondelete="CASCADE"), primary_key=True)

    referral: Mapped["Referral"] = relationship(back_populates="targets")


class Referral(Base):
    __tablename__ = "referrals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id"), nullable=False, index=True)
    patient_full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    patient_birthdate: Mapped[date] = mapped_column(Date, nullable=False)
    patient_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    patient_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    patient_city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[ReferralStatus] = mapped_column(
        _enum_column(ReferralStatus), nullable=False, default=ReferralStatus.NEW
    )
    treatment_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    commission_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    visit_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    settled_month: Mapped[str | None] = mapped_column(String(7), nullable=True)
    booked_clinic_id: Mapped[int | None] = mapped_column(ForeignKey("clinics.id"), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    agent: Mapped[Agent] = relationship(back_populates="referrals")
    targets: Mapped[list[ReferralClinic]] = relationship(
        back_populates="referral", cascade="all, delete-orphan", lazy="selectin"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("treatment_amount IS NULL OR treatment_amount >= 0", name="ck_referrals_treatment_nonnegative"),
        CheckConstraint(
            "commission_amount IS NULL OR (treatment_amount IS NOT NULL AND status = 'visited')",
            name="ck_referrals_commission_requires_visit",
        ),
        Index("idx_referrals_identity", "patient_birthdate", "status"),
    )

    @property
    def clinic_ids(self) -> list[int]:
        return sorted(target.clinic_id for target in self.targets)

    @validates("patient_full_name", "patient_birthdate")
    def _identity_is_immutable(self, key, value):
        if self.id is not None and getattr(self, key) is not None and getattr(self, key) != value:
            raise ValueError(f"Referral {self.id}: {key} cannot change after creation")
        return value


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id"), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)

    # Tax snapshot taken at request time
    tax_status_snapshot: Mapped[TaxStatus] = mapped_column(_enum_column(TaxStatus), nullable=False)
    tax_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    social_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    net_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    tax_frozen_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )
    payout_route: Mapped[PayoutRoute] = mapped_column(
        _enum_column(PayoutRoute), nullable=False, default=PayoutRoute.MANUAL
    )
    provider_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    provider_payment_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Current act; plain id reference, the act row points back via payment_id
    act_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    receipt_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reservation_released: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    requested_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    agent: Mapped[Agent] = relationship(back_populates="payments")
    acts: Mapped[list["PaymentAct"]] = relationship(
        back_populates="payment", cascade="all, delete-orphan", order_by="PaymentAct.id"
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        CheckConstraint("net_amount = amount - tax_amount - social_amount", name="ck_payments_net_consistent"),
        Index("idx_payments_agent_status", "agent_id", "status"),
    )


class PaymentAct(Base):
    __tablename__ = "payment_acts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id"), nullable=False)
    act_number: Mapped[str | None] = mapped_column(String(50), unique=True, nullable=True)
    act_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ActStatus] = mapped_column(
        _enum_column(ActStatus), nullable=False, default=ActStatus.GENERATED
    )
    otp_session_key: Mapped[str | None] = mapped_column(String(100), nullable=True)
    otp_channel: Mapped[OtpChannel | None] = mapped_column(_enum_column(OtpChannel), nullable=True)
    otp_sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)

    payment: Mapped[Payment] = relationship(back_populates="acts")


class CommissionTier(Base):
    __tablename__ = "commission_tiers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    min_monthly_revenue: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    rate_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)

    __table_args__ = (
        CheckConstraint("min_monthly_revenue >= 0", name="ck_tiers_threshold_nonnegative"),
        CheckConstraint("rate_percent >= 0 AND rate_percent <= 100", name="ck_tiers_rate_range"),
    )


class OtpSession(Base):
    __tablename__ = "otp_sessions"

    session_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    code: Mapped[str] = mapped_column(String(6), nullable=False)
    channel: Mapped[OtpChannel] = mapped_column(_enum_column(OtpChannel), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor: Mapped[str | None] = mapped_column(String(100), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
