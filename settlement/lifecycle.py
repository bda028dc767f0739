"""Payment lifecycle: acts, signing, payout and failure.

pending -> act_generated -> sent_for_signing -> signed -> ready_for_payment -> completed,
with failed reachable from every non-terminal state.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy.orm import Session

from settlement import crud
from settlement.core.formatting import PROVIDER_STATUS_LABELS
from settlement.core.results import FailureKind, OperationResult, not_found, state_conflict
from settlement.ledger import SettlementLedger, agent_lock
from settlement.models import (
    TERMINAL_PAYMENT_STATUSES,
    ActStatus,
    Agent,
    OtpChannel,
    Payment,
    PaymentAct,
    PaymentStatus,
    ProviderStatus,
    TaxStatus,
)
from settlement.otp import OtpSigner
from settlement.providers import PayoutGateway, channel_for

logger = logging.getLogger(__name__)

_ACT_HOLDING_STATUSES = frozenset(
    {
        PaymentStatus.ACT_GENERATED,
        PaymentStatus.SENT_FOR_SIGNING,
        PaymentStatus.SIGNED,
        PaymentStatus.READY_FOR_PAYMENT,
        PaymentStatus.COMPLETED,
    }
)
_REGENERABLE_STATUSES = frozenset({PaymentStatus.ACT_GENERATED, PaymentStatus.SENT_FOR_SIGNING})
_RECEIPT_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.ACT_GENERATED, PaymentStatus.SENT_FOR_SIGNING})
_PROVIDER_FAILURE_CODES = frozenset({ProviderStatus.REJECTED, ProviderStatus.DELETED})


def act_number(act: PaymentAct) -> str:
    return f"ACT-{act.act_date.year}-{act.id:06d}"


def signing_session_key(act: PaymentAct) -> str:
    return f"act:{act.id}"


def select_channel(agent: Agent, preferred: OtpChannel | None = None) -> tuple[OtpChannel, str] | None:
    """Pick a verified delivery channel for the agent, honouring a preference when possible."""

    available: dict[OtpChannel, str] = {}
    if agent.email and agent.email_verified:
        available[OtpChannel.EMAIL] = agent.email
    if agent.telegram_id:
        available[OtpChannel.TELEGRAM] = agent.telegram_id
    if preferred is not None:
        destination = available.get(preferred)
        return (preferred, destination) if destination else None
    for channel, destination in available.items():
        return channel, destination
    return None


@dataclass(frozen=True)
class SigningDispatch:
    payment_id: int
    act_id: int
    channel: OtpChannel
    delivered: bool
    expires_at: datetime


@dataclass
class BatchResult:
    updated: list[int] = field(default_factory=list)
    unchanged: list[int] = field(default_factory=list)
    failed: dict[int, OperationResult] = field(default_factory=dict)


class PaymentLifecycle:
    def __init__(
        self,
        db: Session,
        signer: OtpSigner,
        gateway: PayoutGateway | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.db = db
        self.signer = signer
        self.gateway = gateway
        self.clock = clock
        self.ledger = SettlementLedger(db, clock=clock)

    # -- acts ----------------------------------------------------------------

    def generate_act(self, payment_id: int) -> OperationResult:
        """Create the payment's act and freeze its tax snapshot. Repeat calls return the same act."""

        payment = crud.get_payment_for_update(self.db, payment_id)
        if payment is None:
            return not_found("Payment", payment_id)
        if payment.status in _ACT_HOLDING_STATUSES and payment.act_id is not None:
            act = crud.current_act(self.db, payment)
            self.db.rollback()
            return OperationResult.unchanged(act)
        if payment.status is not PaymentStatus.PENDING:
            status = payment.status
            self.db.rollback()
            return state_conflict("An act can only be generated for a pending payment", status)

        act = self._new_act(payment)
        payment.status = PaymentStatus.ACT_GENERATED
        if payment.tax_frozen_at is None:
            payment.tax_frozen_at = self.clock()
        self.db.commit()
        logger.info("Generated act %s for payment %s", act.act_number, payment.id)
        return OperationResult.success(act)

    def regenerate_act(self, payment_id: int, actor: str | None = None) -> OperationResult:
        """Cancel the current act and issue a new one; only before signing."""

        payment = crud.get_payment_for_update(self.db, payment_id)
        if payment is None:
            return not_found("Payment", payment_id)
        if payment.status not in _REGENERABLE_STATUSES:
            status = payment.status
            self.db.rollback()
            return state_conflict("Acts can only be regenerated before signing", status)

        previous = crud.current_act(self.db, payment)
        stale_key = previous.otp_session_key if previous else None
        if previous is not None:
            previous.status = ActStatus.CANCELLED
        act = self._new_act(payment)
        payment.status = PaymentStatus.ACT_GENERATED
        crud.record_audit(
            self.db,
            "act_regenerated",
            {"payment_id": payment.id, "previous": previous.act_number if previous else None, "act": act.act_number},
            actor,
        )
        self.db.commit()
        if stale_key:
            self.signer.store.discard(stale_key)
        logger.info("Regenerated act for payment %s as %s", payment.id, act.act_number)
        return OperationResult.success(act)

    def _new_act(self, payment: Payment) -> PaymentAct:
        act = PaymentAct(
            payment_id=payment.id,
            agent_id=payment.agent_id,
            act_date=self.clock().date(),
            total_amount=payment.amount,
            status=ActStatus.GENERATED,
        )
        self.db.add(act)
        self.db.flush()
        act.act_number = act_number(act)
        payment.act_id = act.id
        return act

    # -- signing -------------------------------------------------------------

    def send_for_signing(self, payment_id: int, preferred_channel: OtpChannel | None = None) -> OperationResult:
        payment = crud.get_payment(self.db, payment_id)
        if payment is None:
            return not_found("Payment", payment_id)
        self.db.refresh(payment)
        if payment.status is PaymentStatus.SENT_FOR_SIGNING:
            return state_conflict("A signing code was already sent; request a new code instead", payment.status)
        if payment.status is not PaymentStatus.ACT_GENERATED:
            return state_conflict("Generate the act before sending it for signing", payment.status)

        selected = select_channel(payment.agent, preferred_channel)
        if selected is None:
            self.db.rollback()
            return OperationResult.failure(
                FailureKind.VALIDATION,
                "No verified channel to send the signing code to",
                detail=f"Agent {payment.agent_id} has no verified email or Telegram account",
                current_state=payment.status.value,
            )
        channel, destination = selected
        act = crud.current_act(self.db, payment)
        # Codes are stored in their own transaction, before this session writes anything
        self.db.rollback()

        issued = self.signer.issue(signing_session_key(act), channel, destination)
        act = crud.current_act(self.db, payment)
        act.otp_session_key = issued.record.session_key
        act.otp_channel = channel
        act.otp_sent_at = issued.record.issued_at
        act.status = ActStatus.SENT_FOR_SIGNING
        payment.status = PaymentStatus.SENT_FOR_SIGNING
        self.db.commit()
        logger.info("Payment %s sent for signing via %s", payment.id, channel.value)
        return OperationResult.success(
            SigningDispatch(
                payment_id=payment.id,
                act_id=act.id,
                channel=channel,
                delivered=issued.delivered,
                expires_at=issued.record.expires_at,
            )
        )

    def resend_signing_code(self, payment_id: int) -> OperationResult:
        payment = crud.get_payment(self.db, payment_id)
        if payment is None:
            return not_found("Payment", payment_id)
        self.db.refresh(payment)
        if payment.status is not PaymentStatus.SENT_FOR_SIGNING:
            return state_conflict("No signing code is pending for this payment", payment.status)
        act = crud.current_act(self.db, payment)
        wait = self.signer.seconds_until_resend(act.otp_session_key)
        if wait > 0:
            return OperationResult.failure(
                FailureKind.VALIDATION,
                f"Please wait {wait} seconds before requesting a new code",
                current_state=payment.status.value,
            )
        selected = select_channel(payment.agent, act.otp_channel)
        if selected is None:
            selected = select_channel(payment.agent)
        if selected is None:
            self.db.rollback()
            return OperationResult.failure(
                FailureKind.VALIDATION,
                "No verified channel to send the signing code to",
                current_state=payment.status.value,
            )
        channel, destination = selected
        session_key = act.otp_session_key
        self.db.rollback()

        issued = self.signer.issue(session_key, channel, destination)
        act = crud.current_act(self.db, payment)
        act.otp_channel = channel
        act.otp_sent_at = issued.record.issued_at
        self.db.commit()
        return OperationResult.success(
            SigningDispatch(
                payment_id=payment.id,
                act_id=act.id,
                channel=channel,
                delivered=issued.delivered,
                expires_at=issued.record.expires_at,
            )
        )

    def sign(self, payment_id: int, code: str) -> OperationResult:
        payment = crud.get_payment(self.db, payment_id)
        if payment is None:
            return not_found("Payment", payment_id)
        self.db.refresh(payment)
        if payment.status is not PaymentStatus.SENT_FOR_SIGNING:
            return state_conflict("This payment is not awaiting a signature", payment.status)
        act = crud.current_act(self.db, payment)
        session_key = act.otp_session_key
        self.db.rollback()

        outcome = self.signer.verify(session_key, code)
        if not outcome.ok:
            return OperationResult.failure(
                FailureKind.OTP,
                "The code is invalid or has expired",
                detail=f"Signing code for payment {payment_id} rejected: {outcome.value}",
                current_state=PaymentStatus.SENT_FOR_SIGNING.value,
            )

        payment = crud.get_payment_for_update(self.db, payment_id)
        if payment.status is not PaymentStatus.SENT_FOR_SIGNING:
            status = payment.status
            self.db.rollback()
            return state_conflict("Payment changed while it was being signed", status)
        now = self.clock()
        act = crud.current_act(self.db, payment)
        act.status = ActStatus.SIGNED
        act.signed_at = now
        payment.status = PaymentStatus.SIGNED
        payment.signed_at = now
        if payment.tax_frozen_at is None:
            payment.tax_frozen_at = now
        self.db.commit()
        logger.info("Payment %s signed with act %s", payment.id, act.act_number)
        return OperationResult.success(payment)

    def record_receipt(self, payment_id: int, receipt_reference: str) -> OperationResult:
        """Self-employed agents sign by issuing their own tax receipt."""

        reference = (receipt_reference or "").strip()
        if not reference:
            return OperationResult.failure(FailureKind.VALIDATION, "Receipt reference is required")
        payment = crud.get_payment_for_update(self.db, payment_id)
        if payment is None:
            return not_found("Payment", payment_id)
        if payment.tax_status_snapshot is not TaxStatus.SELF_EMPLOYED:
            self.db.rollback()
            return OperationResult.failure(
                FailureKind.VALIDATION,
                "Only self-employed payouts are confirmed with a receipt",
                current_state=payment.status.value,
            )
        if payment.status is PaymentStatus.SIGNED and payment.receipt_reference == reference:
            self.db.rollback()
            return OperationResult.unchanged(payment)
        if payment.status not in _RECEIPT_STATUSES:
            status = payment.status
            self.db.rollback()
            return state_conflict("A receipt cannot be recorded at this stage", status)

        now = self.clock()
        act = crud.current_act(self.db, payment)
        stale_key = act.otp_session_key if act else None
        if act is not None:
            act.status = ActStatus.SIGNED
            act.signed_at = now
        payment.receipt_reference = reference
        payment.status = PaymentStatus.SIGNED
        payment.signed_at = now
        if payment.tax_frozen_at is None:
            payment.tax_frozen_at = now
        self.db.commit()
        if stale_key:
            self.signer.store.discard(stale_key)
        logger.info("Payment %s confirmed by receipt %s", payment.id, reference)
        return OperationResult.success(payment)

    # -- payout --------------------------------------------------------------

    def mark_ready(self, payment_ids: Iterable[int]) -> BatchResult:
        """Confirm funds for signed payments; provider-routed payments are submitted here."""

        batch = BatchResult()
        for payment_id in payment_ids:
            payment = crud.get_payment_for_update(self.db, payment_id)
            if payment is None:
                batch.failed[payment_id] = not_found("Payment", payment_id)
                continue
            if payment.status is PaymentStatus.READY_FOR_PAYMENT:
                self.db.rollback()
                batch.unchanged.append(payment_id)
                continue
            if payment.status is not PaymentStatus.SIGNED:
                status = payment.status
                self.db.rollback()
                batch.failed[payment_id] = state_conflict("Only signed payments can be marked ready", status)
                continue
            try:
                channel_for(payment.payout_route, self.gateway).submit(payment)
            except Exception as exc:
                self.db.rollback()
                logger.warning("Provider submission for payment %s failed: %s", payment_id, exc)
                batch.failed[payment_id] = state_conflict(
                    "Payout provider did not accept the payment", PaymentStatus.SIGNED, detail=str(exc)
                )
                continue
            payment.status = PaymentStatus.READY_FOR_PAYMENT
            self.db.commit()
            batch.updated.append(payment_id)
            logger.info("Payment %s ready for payment via %s", payment_id, payment.payout_route.value)
        return batch

    def mark_completed(self, payment_id: int, external_reference: str) -> OperationResult:
        reference = (external_reference or "").strip()
        if not reference:
            return OperationResult.failure(FailureKind.VALIDATION, "Transaction reference is required")
        payment = crud.get_payment(self.db, payment_id)
        if payment is None:
            return not_found("Payment", payment_id)
        if not channel_for(payment.payout_route).manual_completion:
            self.db.rollback()
            return state_conflict("This payment is completed by the payout provider", payment.status)
        with agent_lock(payment.agent_id):
            return self._complete(payment_id, reference)

    def batch_mark_completed(self, payment_ids: Iterable[int], external_reference: str) -> BatchResult:
        batch = BatchResult()
        for payment_id in payment_ids:
            result = self.mark_completed(payment_id, external_reference)
            if not result.ok:
                batch.failed[payment_id] = result
            elif result.changed:
                batch.updated.append(payment_id)
            else:
                batch.unchanged.append(payment_id)
        return batch

    def _complete(self, payment_id: int, reference: str) -> OperationResult:
        payment = crud.get_payment_for_update(self.db, payment_id)
        if payment.status is PaymentStatus.COMPLETED:
            self.db.rollback()
            return OperationResult.unchanged(payment)
        if payment.status is not PaymentStatus.READY_FOR_PAYMENT:
            status = payment.status
            self.db.rollback()
            return state_conflict("Only payments ready for payment can be completed", status)
        agent = crud.get_agent_for_update(self.db, payment.agent_id)
        payment.status = PaymentStatus.COMPLETED
        payment.external_reference = reference
        payment.completed_at = self.clock()
        self.ledger.record_payout(agent, payment)
        self.db.commit()
        logger.info("Payment %s completed with reference %s", payment.id, reference)
        return OperationResult.success(payment)

    def mark_failed(self, payment_id: int, reason: str, actor: str | None = None) -> OperationResult:
        """Fail a payment and return its reservation to the balance exactly once."""

        reason = (reason or "").strip()
        if not reason:
            return OperationResult.failure(FailureKind.VALIDATION, "A failure reason is required")
        payment = crud.get_payment(self.db, payment_id)
        if payment is None:
            return not_found("Payment", payment_id)
        with agent_lock(payment.agent_id):
            return self._fail(payment_id, reason, actor)

    def _fail(self, payment_id: int, reason: str, actor: str | None) -> OperationResult:
        payment = crud.get_payment_for_update(self.db, payment_id)
        if payment.status is PaymentStatus.FAILED:
            self.db.rollback()
            return OperationResult.unchanged(payment)
        if payment.status in TERMINAL_PAYMENT_STATUSES:
            status = payment.status
            self.db.rollback()
            return state_conflict("Completed payments cannot fail", status)

        agent = crud.get_agent_for_update(self.db, payment.agent_id)
        previous = payment.status
        act = crud.current_act(self.db, payment)
        stale_key = act.otp_session_key if act and act.status is not ActStatus.SIGNED else None
        if act is not None and act.status is not ActStatus.SIGNED:
            act.status = ActStatus.CANCELLED
        payment.status = PaymentStatus.FAILED
        payment.failure_reason = reason
        payment.failed_at = self.clock()
        released = self.ledger.release_reservation(agent, payment)
        crud.record_audit(
            self.db,
            "payment_failed",
            {"payment_id": payment.id, "from": previous.value, "reason": reason, "released": released},
            actor,
        )
        self.db.commit()
        if stale_key:
            self.signer.store.discard(stale_key)
        logger.info(
            "Payment %s failed from %s (%s); released %s", payment.id, previous.value, reason, payment.amount if released else 0
        )
        return OperationResult.success(payment)

    def apply_provider_status(
        self, payment_id: int, code: int, external_id: str | None = None
    ) -> OperationResult:
        """Record the provider's status for a payment and act on final outcomes."""

        try:
            status = ProviderStatus(code)
        except ValueError:
            return OperationResult.failure(FailureKind.VALIDATION, f"Unknown provider status {code!r}")
        payment = crud.get_payment(self.db, payment_id)
        if payment is None:
            return not_found("Payment", payment_id)

        with agent_lock(payment.agent_id):
            payment = crud.get_payment_for_update(self.db, payment_id)
            payment.provider_status = int(status)
            if external_id:
                payment.provider_payment_id = external_id
            self.db.commit()
            logger.info("Provider status for payment %s is now %s", payment_id, status.name)

            if status is ProviderStatus.PAID and payment.status is PaymentStatus.READY_FOR_PAYMENT:
                return self._complete(payment_id, payment.provider_payment_id or f"provider-{payment_id}")
            if status in _PROVIDER_FAILURE_CODES and payment.status not in TERMINAL_PAYMENT_STATUSES:
                return self._fail(payment_id, PROVIDER_STATUS_LABELS[status], actor="provider")
        return OperationResult.success(payment)
