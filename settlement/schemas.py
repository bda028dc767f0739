"""Pydantic schemas for API requests and responses."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from settlement.core.formatting import display_payment_status
from settlement.core.results import FailureKind
from settlement.models import ActStatus, OtpChannel, PaymentStatus, PayoutRoute, ReferralStatus, TaxStatus


class CandidateRowIn(BaseModel):
    row_index: int
    patient_name: Optional[str] = None
    birthdate: Optional[str] = None
    visit_date: Optional[str] = None
    amount: Any = None


class PreviewRequest(BaseModel):
    rows: list[CandidateRowIn]


class MatchedRowOut(BaseModel):
    row_index: int
    patient_name: str
    birthdate: date
    visit_date: date
    amount: int
    referral_id: int
    referral_version: int
    duplicate_referral_ids: list[int] = []
    clinic_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class AlreadyTreatedRowOut(BaseModel):
    row_index: int
    patient_name: str
    birthdate: date
    referral_id: int

    model_config = ConfigDict(from_attributes=True)


class NotFoundRowOut(BaseModel):
    row_index: int
    patient_name: str
    birthdate: date
    reason: str

    model_config = ConfigDict(from_attributes=True)


class RowErrorOut(BaseModel):
    row_index: int
    message: str

    model_config = ConfigDict(from_attributes=True)


class PreviewResponse(BaseModel):
    clinic_id: int
    matched: list[MatchedRowOut]
    already_treated: list[AlreadyTreatedRowOut]
    not_found: list[NotFoundRowOut]
    errors: list[RowErrorOut]

    model_config = ConfigDict(from_attributes=True)


class CommitItemIn(BaseModel):
    referral_id: int
    visit_date: date
    amount: int = Field(..., gt=0)
    referral_version: Optional[int] = None
    duplicate_referral_ids: list[int] = []
    clinic_id: Optional[int] = None
    row_index: Optional[int] = None


class CommitRequest(BaseModel):
    items: list[CommitItemIn]


class CommitIssueOut(BaseModel):
    referral_id: int
    kind: FailureKind
    message: str
    detail: Optional[str] = None
    current_state: Optional[str] = None
    row_index: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class CommitResponse(BaseModel):
    updated_count: int
    unchanged_count: int
    duplicates_marked: int
    commission_total: int
    conflicts: list[CommitIssueOut]
    errors: list[CommitIssueOut]

    model_config = ConfigDict(from_attributes=True)


class PaymentRequest(BaseModel):
    amount: int = Field(..., gt=0)
    tax_status: Optional[TaxStatus] = None
    payout_route: PayoutRoute = PayoutRoute.MANUAL


class PaymentRead(BaseModel):
    id: int
    agent_id: int
    amount: int
    tax_status_snapshot: TaxStatus
    tax_amount: int
    social_amount: int
    net_amount: int
    tax_frozen_at: Optional[datetime] = None
    status: PaymentStatus
    payout_route: PayoutRoute
    provider_status: Optional[int] = None
    provider_payment_id: Optional[str] = None
    act_id: Optional[int] = None
    receipt_reference: Optional[str] = None
    external_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    requested_at: datetime
    signed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    display_status: str = ""

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="after")
    def fill_display_status(self) -> "PaymentRead":
        self.display_status = display_payment_status(self.status, self.provider_status)
        return self


class PaymentPage(BaseModel):
    items: list[PaymentRead]
    total: int
    page: int
    page_size: int


class ActRead(BaseModel):
    id: int
    payment_id: int
    act_number: Optional[str] = None
    act_date: date
    total_amount: int
    status: ActStatus
    otp_channel: Optional[OtpChannel] = None
    otp_sent_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SendForSigningRequest(BaseModel):
    channel: Optional[OtpChannel] = None


class SigningDispatchRead(BaseModel):
    payment_id: int
    act_id: int
    channel: OtpChannel
    delivered: bool
    expires_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SignRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=12)

    @field_validator("code", mode="before")
    def strip_code(cls, value: Any) -> str:
        return str(value or "").strip()


class ReceiptRequest(BaseModel):
    receipt_reference: str = Field(..., min_length=1, max_length=255)


class PaymentIdsRequest(BaseModel):
    payment_ids: list[int] = Field(..., min_length=1)


class CompleteRequest(PaymentIdsRequest):
    external_reference: str = Field(..., min_length=1, max_length=255)


class FailRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class ProviderStatusRequest(BaseModel):
    status_code: int = Field(..., ge=1, le=8)
    external_id: Optional[str] = None


class BatchResponse(BaseModel):
    updated: list[int]
    unchanged: list[int]
    failed: dict[int, str]


class BalanceRead(BaseModel):
    agent_id: int
    available_balance: int
    reserved: int
    lifetime_earnings: int
    lifetime_paid_out: int
    bonus_points: int
    bonus_locked: bool
    paid_referrals: int
    month: str
    month_revenue: int
    current_rate: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)


class StatementRow(BaseModel):
    referral_id: int
    patient_full_name: str
    visit_date: Optional[date] = None
    status: str
    treatment_amount: int
    commission_amount: int
    effective_rate_percent: float


class StatementRead(BaseModel):
    agent_id: int
    month: str
    rows: list[StatementRow]
    totals: dict[str, int]


class TierIn(BaseModel):
    min_monthly_revenue: int = Field(..., ge=0)
    rate_percent: Decimal = Field(..., ge=0, le=100)


class TierRead(TierIn):
    model_config = ConfigDict(from_attributes=True)


class TierTableUpdate(BaseModel):
    tiers: list[TierIn] = Field(..., min_length=1)


class RecomputeRequest(BaseModel):
    month: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$")


class RecomputeRead(BaseModel):
    agent_id: int
    month: str
    month_revenue: int
    rate_percent: Decimal
    referrals_adjusted: int
    commission_delta: int

    model_config = ConfigDict(from_attributes=True)


class BonusAward(BaseModel):
    amount: int = Field(..., gt=0)


class AgentCreate(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = Field(None, max_length=320)
    email_verified: bool = False
    telegram_id: Optional[str] = Field(None, max_length=64)
    tax_status: TaxStatus = TaxStatus.UNKNOWN

    @field_validator("full_name", mode="before")
    def strip_required(cls, value: Any, info: ValidationInfo) -> str:
        if value is None or not str(value).strip():
            raise ValueError(f"{info.field_name.replace('_', ' ').title()} is required.")
        return str(value).strip()


class AgentRead(BaseModel):
    id: int
    full_name: str
    email: Optional[str] = None
    email_verified: bool
    telegram_id: Optional[str] = None
    is_active: bool
    tax_status: Optional[TaxStatus] = None
    available_balance: int

    model_config = ConfigDict(from_attributes=True)


class ReferralCreate(BaseModel):
    patient_full_name: str = Field(..., min_length=1, max_length=255)
    patient_birthdate: str
    clinic_ids: list[int] = []
    patient_phone: Optional[str] = Field(None, max_length=50)
    patient_email: Optional[str] = Field(None, max_length=320)
    patient_city: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None


class ReferralRead(BaseModel):
    id: int
    agent_id: int
    patient_full_name: str
    patient_birthdate: date
    status: ReferralStatus
    treatment_amount: Optional[int] = None
    commission_amount: Optional[int] = None
    visit_date: Optional[date] = None
    clinic_ids: list[int] = []
    version: int

    model_config = ConfigDict(from_attributes=True)


class ReferralStatusOverride(BaseModel):
    status: ReferralStatus


class ReferralAmountsOverride(BaseModel):
    treatment_amount: int = Field(..., ge=0)
    commission_amount: int = Field(..., ge=0)


class ClinicCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class ClinicRead(ClinicCreate):
    id: int
    is_active: bool

    model_config = ConfigDict(from_attributes=True)
