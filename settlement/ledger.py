"""Settlement ledger: commission crediting, balance reservation and admin corrections."""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Iterable, Iterator

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from settlement import crud, settings
from settlement.core.matching import identity_key
from settlement.core.results import (
    ConfigurationError,
    FailureKind,
    OperationResult,
    not_found,
    state_conflict,
)
from settlement.core.tax import calculate_tax, coerce_tax_status
from settlement.core.tiers import commission_for, resolve_rate
from settlement.models import (
    OPEN_REFERRAL_STATUSES,
    Agent,
    Payment,
    PaymentStatus,
    PayoutRoute,
    Referral,
    ReferralStatus,
    TaxStatus,
)

logger = logging.getLogger(__name__)

_locks_guard = threading.Lock()
_agent_locks: dict[int, threading.Lock] = {}


@contextmanager
def agent_lock(agent_id: int) -> Iterator[None]:
    """Serialize balance mutations for one agent within this process."""

    with _locks_guard:
        lock = _agent_locks.setdefault(agent_id, threading.Lock())
    with lock:
        yield


def month_key(moment: date | datetime) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


@dataclass(frozen=True)
class TreatmentApplied:
    referral_id: int
    agent_id: int
    treatment_amount: int
    commission_amount: int
    rate_percent: Decimal
    month: str
    month_revenue: int
    duplicates_marked: int = 0
    bonus_unlocked: int = 0


@dataclass(frozen=True)
class BalanceBreakdown:
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
    current_rate: Decimal | None


@dataclass(frozen=True)
class RecomputeSummary:
    agent_id: int
    month: str
    month_revenue: int
    rate_percent: Decimal
    referrals_adjusted: int
    commission_delta: int


class SettlementLedger:
    """Owns referral settlement and agent balance mutations.

    Every public method commits its own transaction and reports problems as an
    ``OperationResult`` rather than raising.
    """

    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.now) -> None:
        self.db = db
        self.clock = clock

    # -- treatments -------------------------------------------------------

    def apply_treatment(
        self,
        referral_id: int,
        visit_date: date,
        treatment_amount: int,
        clinic_id: int | None = None,
        expected_version: int | None = None,
        duplicate_referral_ids: Iterable[int] = (),
    ) -> OperationResult:
        """Mark a referral visited and credit the owning agent's commission.

        Re-applying identical values to an already visited referral is a no-op.
        """

        if isinstance(treatment_amount, bool) or not isinstance(treatment_amount, int) or treatment_amount < 0:
            return OperationResult.failure(
                FailureKind.VALIDATION,
                "Treatment amount must be a non-negative whole amount",
                detail=f"Invalid treatment amount {treatment_amount!r} for referral {referral_id}",
            )

        referral = crud.get_referral(self.db, referral_id)
        if referral is None:
            return not_found("Referral", referral_id)

        with agent_lock(referral.agent_id):
            try:
                return self._apply_treatment_locked(
                    referral_id, visit_date, treatment_amount, clinic_id, expected_version, duplicate_referral_ids
                )
            except StaleDataError:
                self.db.rollback()
                logger.warning("Referral %s was modified concurrently; treatment not applied", referral_id)
                current = crud.get_referral(self.db, referral_id)
                return state_conflict(
                    "Referral changed while it was being settled",
                    current.status if current else None,
                )
            except Exception:
                self.db.rollback()
                raise

    def _apply_treatment_locked(
        self,
        referral_id: int,
        visit_date: date,
        treatment_amount: int,
        clinic_id: int | None,
        expected_version: int | None,
        duplicate_referral_ids: Iterable[int],
    ) -> OperationResult:
        referral = crud.get_referral_fresh(self.db, referral_id)
        if referral is None:
            return not_found("Referral", referral_id)

        if referral.status is ReferralStatus.VISITED:
            if referral.visit_date == visit_date and referral.treatment_amount == treatment_amount:
                self.db.rollback()
                return OperationResult.unchanged(
                    TreatmentApplied(
                        referral_id=referral.id,
                        agent_id=referral.agent_id,
                        treatment_amount=treatment_amount,
                        commission_amount=referral.commission_amount or 0,
                        rate_percent=Decimal(0),
                        month=referral.settled_month or "",
                        month_revenue=0,
                    )
                )
            self.db.rollback()
            return state_conflict("Referral was already settled with different values", referral.status)

        if referral.status not in OPEN_REFERRAL_STATUSES:
            stale = expected_version is not None and referral.version != expected_version
            self.db.rollback()
            message = "Referral changed since the preview" if stale else "Referral is closed"
            return state_conflict(message, referral.status)

        if expected_version is not None and referral.version != expected_version:
            logger.info(
                "Referral %s moved from version %s to %s since preview but is still open",
                referral.id,
                expected_version,
                referral.version,
            )

        tiers = crud.get_tiers(self.db)
        agent = crud.get_agent_for_update(self.db, referral.agent_id)
        if agent is None:
            self.db.rollback()
            return not_found("Agent", referral.agent_id)

        month = month_key(self.clock())
        if agent.revenue_month != month:
            agent.revenue_month = month
            agent.month_revenue = 0
        month_revenue = agent.month_revenue + treatment_amount

        try:
            rate = resolve_rate(month_revenue, tiers)
        except ConfigurationError as exc:
            self.db.rollback()
            logger.error("Cannot settle referral %s: %s", referral.id, exc)
            return OperationResult.failure(
                FailureKind.CONFIGURATION,
                "Commission tiers are not configured",
                detail=str(exc),
            )
        commission = commission_for(treatment_amount, rate)

        referral.status = ReferralStatus.VISITED
        referral.visit_date = visit_date
        referral.treatment_amount = treatment_amount
        referral.commission_amount = commission
        referral.settled_month = month
        if clinic_id is not None:
            referral.booked_clinic_id = clinic_id

        agent.month_revenue = month_revenue
        agent.available_balance += commission
        agent.lifetime_earnings += commission
        agent.paid_referrals += 1
        unlocked = self._unlock_bonus(agent)

        duplicates = {item.id: item for item in crud.lock_open_identity_matches(self.db, referral, clinic_id)}
        patient = identity_key(referral.patient_full_name, referral.patient_birthdate)
        # Caller-supplied ids only count when they are the same patient.
        for duplicate_id in duplicate_referral_ids:
            if duplicate_id == referral.id or duplicate_id in duplicates:
                continue
            hinted = crud.get_referral_fresh(self.db, duplicate_id)
            if (
                hinted is not None
                and hinted.status in OPEN_REFERRAL_STATUSES
                and identity_key(hinted.patient_full_name, hinted.patient_birthdate) == patient
            ):
                duplicates[hinted.id] = hinted
            elif hinted is not None:
                logger.warning(
                    "Ignoring duplicate hint %s for referral %s: not an open referral for the same patient",
                    duplicate_id,
                    referral.id,
                )
        for duplicate in duplicates.values():
            duplicate.status = ReferralStatus.DUPLICATE
        marked = len(duplicates)

        self.db.commit()
        logger.info(
            "Settled referral %s for agent %s: treatment=%s rate=%s%% commission=%s month_revenue=%s",
            referral.id,
            agent.id,
            treatment_amount,
            rate,
            commission,
            month_revenue,
        )
        return OperationResult.success(
            TreatmentApplied(
                referral_id=referral.id,
                agent_id=agent.id,
                treatment_amount=treatment_amount,
                commission_amount=commission,
                rate_percent=rate,
                month=month,
                month_revenue=month_revenue,
                duplicates_marked=marked,
                bonus_unlocked=unlocked,
            )
        )

    # -- payouts ----------------------------------------------------------

    def request_payment(
        self,
        agent_id: int,
        gross_amount: int,
        tax_status: TaxStatus | str | bool | None,
        route: PayoutRoute = PayoutRoute.MANUAL,
    ) -> OperationResult:
        """Reserve ``gross_amount`` from the agent's balance and open a pending payment."""

        if isinstance(gross_amount, bool) or not isinstance(gross_amount, int) or gross_amount <= 0:
            return OperationResult.failure(
                FailureKind.VALIDATION,
                "Payout amount must be a positive whole amount",
                detail=f"Invalid payout amount {gross_amount!r}",
            )
        if gross_amount < settings.MIN_PAYOUT_AMOUNT:
            return OperationResult.failure(
                FailureKind.VALIDATION,
                f"Minimum payout is {settings.MIN_PAYOUT_AMOUNT}",
                detail=f"Requested {gross_amount}, minimum is {settings.MIN_PAYOUT_AMOUNT}",
            )
        status = coerce_tax_status(tax_status)
        if status is TaxStatus.UNKNOWN:
            return OperationResult.failure(
                FailureKind.CONFIGURATION,
                "Choose your tax status before requesting a payout",
                detail=f"Agent {agent_id} requested a payout without a declared tax status",
            )
        breakdown = calculate_tax(gross_amount, status)

        with agent_lock(agent_id):
            try:
                agent = crud.get_agent_for_update(self.db, agent_id)
                if agent is None:
                    self.db.rollback()
                    return not_found("Agent", agent_id)
                if not agent.is_active:
                    self.db.rollback()
                    return state_conflict("Agent account is deactivated", "inactive")
                if gross_amount > agent.available_balance:
                    available = agent.available_balance
                    self.db.rollback()
                    return OperationResult.failure(
                        FailureKind.INSUFFICIENT_FUNDS,
                        "Insufficient balance",
                        detail=f"Agent {agent_id} requested {gross_amount} with {available} available",
                        available_balance=available,
                    )

                if agent.tax_status is TaxStatus.UNKNOWN:
                    agent.tax_status = status
                agent.available_balance -= gross_amount
                payment = Payment(
                    agent_id=agent.id,
                    amount=gross_amount,
                    tax_status_snapshot=status,
                    tax_amount=breakdown.tax,
                    social_amount=breakdown.social,
                    net_amount=breakdown.net,
                    status=PaymentStatus.PENDING,
                    payout_route=route,
                    requested_at=self.clock(),
                )
                self.db.add(payment)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        self.db.refresh(payment)
        logger.info(
            "Payment %s requested by agent %s: gross=%s net=%s status=%s route=%s",
            payment.id,
            agent_id,
            gross_amount,
            breakdown.net,
            status.value,
            route.value,
        )
        return OperationResult.success(payment)

    def release_reservation(self, agent: Agent, payment: Payment) -> bool:
        """Return a failed payment's gross amount to the balance, at most once.

        Caller holds the agent lock and commits.
        """

        if payment.reservation_released or payment.status is PaymentStatus.COMPLETED:
            return False
        agent.available_balance += payment.amount
        payment.reservation_released = True
        return True

    def record_payout(self, agent: Agent, payment: Payment) -> None:
        agent.lifetime_paid_out += payment.amount

    # -- bonus points -----------------------------------------------------

    def award_bonus(self, agent_id: int, amount: int, actor: str | None = None) -> OperationResult:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            return OperationResult.failure(FailureKind.VALIDATION, "Bonus amount must be positive")
        with agent_lock(agent_id):
            agent = crud.get_agent_for_update(self.db, agent_id)
            if agent is None:
                self.db.rollback()
                return not_found("Agent", agent_id)
            agent.bonus_points += amount
            unlocked = self._unlock_bonus(agent)
            crud.record_audit(self.db, "bonus_awarded", {"agent_id": agent_id, "amount": amount}, actor)
            self.db.commit()
        return OperationResult.success({"bonus_points": agent.bonus_points, "unlocked": unlocked})

    def unlock_bonus(self, agent_id: int) -> OperationResult:
        with agent_lock(agent_id):
            agent = crud.get_agent_for_update(self.db, agent_id)
            if agent is None:
                self.db.rollback()
                return not_found("Agent", agent_id)
            unlocked = self._unlock_bonus(agent)
            self.db.commit()
        if not unlocked:
            return OperationResult.unchanged(0)
        return OperationResult.success(unlocked)

    def _unlock_bonus(self, agent: Agent) -> int:
        if agent.bonus_points <= 0 or agent.paid_referrals < settings.BONUS_UNLOCK_THRESHOLD:
            return 0
        bonus = agent.bonus_points
        agent.available_balance += bonus
        agent.lifetime_earnings += bonus
        agent.bonus_points = 0
        logger.info("Unlocked %s bonus points for agent %s", bonus, agent.id)
        return bonus

    # -- administrative actions -------------------------------------------

    def recompute_month(self, agent_id: int, month: str, actor: str | None = None) -> OperationResult:
        """Re-rate every referral settled in ``month`` at the tier for the month's total.

        Commission deltas are applied to the balance and lifetime earnings. The
        month-to-date accumulator is left untouched.
        """

        with agent_lock(agent_id):
            try:
                agent = crud.get_agent_for_update(self.db, agent_id)
                if agent is None:
                    self.db.rollback()
                    return not_found("Agent", agent_id)
                referrals = crud.list_settled_referrals(self.db, agent_id, month)
                total = sum(referral.treatment_amount or 0 for referral in referrals)
                try:
                    rate = resolve_rate(total, crud.get_tiers(self.db))
                except ConfigurationError as exc:
                    self.db.rollback()
                    return OperationResult.failure(
                        FailureKind.CONFIGURATION, "Commission tiers are not configured", detail=str(exc)
                    )

                adjusted = 0
                delta_total = 0
                for referral in referrals:
                    new_commission = commission_for(referral.treatment_amount or 0, rate)
                    delta = new_commission - (referral.commission_amount or 0)
                    if delta:
                        referral.commission_amount = new_commission
                        delta_total += delta
                        adjusted += 1
                agent.available_balance += delta_total
                agent.lifetime_earnings += delta_total
                crud.record_audit(
                    self.db,
                    "commission_recomputed",
                    {"agent_id": agent_id, "month": month, "rate": rate, "delta": delta_total, "adjusted": adjusted},
                    actor,
                )
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                return state_conflict("Referrals changed during recompute", None)
            except Exception:
                self.db.rollback()
                raise

        logger.info(
            "Recomputed %s for agent %s at %s%%: %s referrals adjusted, delta %s",
            month,
            agent_id,
            rate,
            adjusted,
            delta_total,
        )
        return OperationResult.success(
            RecomputeSummary(
                agent_id=agent_id,
                month=month,
                month_revenue=total,
                rate_percent=rate,
                referrals_adjusted=adjusted,
                commission_delta=delta_total,
            ),
            changed=adjusted > 0,
        )

    def override_referral_status(
        self, referral_id: int, status: ReferralStatus, actor: str | None = None
    ) -> OperationResult:
        """Administrative status change. Visits are only recorded through settlement."""

        referral = crud.get_referral_fresh(self.db, referral_id)
        if referral is None:
            return not_found("Referral", referral_id)
        if status is ReferralStatus.VISITED:
            self.db.rollback()
            return OperationResult.failure(
                FailureKind.VALIDATION,
                "Visits are recorded through clinic reconciliation",
                current_state=referral.status.value,
            )
        if referral.status is ReferralStatus.VISITED:
            self.db.rollback()
            return state_conflict("Settled referrals cannot change status", referral.status)
        if referral.status is status:
            self.db.rollback()
            return OperationResult.unchanged(referral)

        previous = referral.status
        referral.status = status
        crud.record_audit(
            self.db,
            "referral_status_override",
            {"referral_id": referral_id, "from": previous.value, "to": status.value},
            actor,
        )
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            return state_conflict("Referral changed concurrently", previous)
        return OperationResult.success(referral)

    def override_referral_amounts(
        self,
        referral_id: int,
        treatment_amount: int,
        commission_amount: int,
        actor: str | None = None,
    ) -> OperationResult:
        """Correct a settled referral's amounts, moving the commission delta through the balance."""

        if min(treatment_amount, commission_amount) < 0:
            return OperationResult.failure(FailureKind.VALIDATION, "Amounts cannot be negative")
        referral = crud.get_referral(self.db, referral_id)
        if referral is None:
            return not_found("Referral", referral_id)

        with agent_lock(referral.agent_id):
            try:
                referral = crud.get_referral_fresh(self.db, referral_id)
                if referral.status is not ReferralStatus.VISITED:
                    self.db.rollback()
                    return state_conflict("Only settled referrals carry amounts", referral.status)
                agent = crud.get_agent_for_update(self.db, referral.agent_id)
                delta = commission_amount - (referral.commission_amount or 0)
                crud.record_audit(
                    self.db,
                    "referral_amounts_override",
                    {
                        "referral_id": referral_id,
                        "treatment": [referral.treatment_amount, treatment_amount],
                        "commission": [referral.commission_amount, commission_amount],
                    },
                    actor,
                )
                referral.treatment_amount = treatment_amount
                referral.commission_amount = commission_amount
                agent.available_balance += delta
                agent.lifetime_earnings += delta
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                return state_conflict("Referral changed concurrently", None)
            except Exception:
                self.db.rollback()
                raise
        return OperationResult.success(referral)

    # -- read models ------------------------------------------------------

    def balance_breakdown(self, agent_id: int) -> BalanceBreakdown | None:
        agent = crud.get_agent(self.db, agent_id)
        if agent is None:
            return None
        self.db.refresh(agent)

        month = month_key(self.clock())
        month_revenue = agent.month_revenue if agent.revenue_month == month else 0
        try:
            current_rate = resolve_rate(month_revenue, crud.get_tiers(self.db))
        except ConfigurationError:
            current_rate = None

        return BalanceBreakdown(
            agent_id=agent.id,
            available_balance=agent.available_balance,
            reserved=crud.reserved_amount(self.db, agent.id),
            lifetime_earnings=agent.lifetime_earnings,
            lifetime_paid_out=agent.lifetime_paid_out,
            bonus_points=agent.bonus_points,
            bonus_locked=agent.bonus_points > 0 and agent.paid_referrals < settings.BONUS_UNLOCK_THRESHOLD,
            paid_referrals=agent.paid_referrals,
            month=month,
            month_revenue=month_revenue,
            current_rate=current_rate,
        )
