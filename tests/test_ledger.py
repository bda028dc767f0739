from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from settlement import crud
from settlement.core.results import FailureKind
from settlement.database import Base
from settlement.ledger import SettlementLedger
from settlement.models import Payment, PaymentStatus, ReferralStatus, TaxStatus

NOW = datetime(2026, 3, 15, 12, 0)


def _clock():
    return NOW


def _make_session():
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)()


def _seed(session, month_revenue=0, balance=0, tax_status=TaxStatus.UNKNOWN):
    crud.replace_tiers(session, [(0, "7"), (1_000_000, "10")])
    agent = crud.create_agent(session, "Dr. Petrova", tax_status=tax_status)
    agent.month_revenue = month_revenue
    agent.revenue_month = "2026-03"
    agent.available_balance = balance
    session.commit()
    return agent


def _referral(session, agent, name="Сидоров Пётр", birthdate="1990-05-01"):
    return crud.create_referral(session, agent, name, birthdate)


def test_apply_treatment_crosses_tier_and_credits_commission():
    session = _make_session()
    try:
        agent = _seed(session, month_revenue=900_000)
        referral = _referral(session, agent)

        result = SettlementLedger(session, clock=_clock).apply_treatment(referral.id, date(2026, 3, 10), 200_000)

        assert result.ok and result.changed
        assert result.value.rate_percent == Decimal("10.00")
        assert result.value.commission_amount == 20_000

        session.refresh(agent)
        session.refresh(referral)
        assert referral.status is ReferralStatus.VISITED
        assert referral.treatment_amount == 200_000
        assert referral.commission_amount == 20_000
        assert referral.settled_month == "2026-03"
        assert agent.month_revenue == 1_100_000
        assert agent.available_balance == 20_000
        assert agent.lifetime_earnings == 20_000
        assert agent.paid_referrals == 1
    finally:
        session.close()


def test_reapplying_identical_treatment_is_a_no_op():
    session = _make_session()
    try:
        agent = _seed(session)
        referral = _referral(session, agent)
        ledger = SettlementLedger(session, clock=_clock)

        first = ledger.apply_treatment(referral.id, date(2026, 3, 10), 100_000)
        second = ledger.apply_treatment(referral.id, date(2026, 3, 10), 100_000)

        assert first.changed is True
        assert second.ok is True and second.changed is False
        session.refresh(agent)
        assert agent.available_balance == 7_000
        assert agent.paid_referrals == 1
        assert agent.month_revenue == 100_000
    finally:
        session.close()


def test_reapplying_with_different_values_is_a_state_conflict():
    session = _make_session()
    try:
        agent = _seed(session)
        referral = _referral(session, agent)
        ledger = SettlementLedger(session, clock=_clock)
        ledger.apply_treatment(referral.id, date(2026, 3, 10), 100_000)

        result = ledger.apply_treatment(referral.id, date(2026, 3, 11), 100_000)

        assert result.ok is False
        assert result.kind is FailureKind.STATE_CONFLICT
        assert result.current_state == "visited"
        assert result.retryable is True
    finally:
        session.close()


def test_closed_referral_cannot_be_settled():
    session = _make_session()
    try:
        agent = _seed(session)
        referral = _referral(session, agent)
        referral.status = ReferralStatus.CANCELLED
        session.commit()

        result = SettlementLedger(session, clock=_clock).apply_treatment(referral.id, date(2026, 3, 10), 100_000)

        assert result.kind is FailureKind.STATE_CONFLICT
        assert result.current_state == "cancelled"
        session.refresh(agent)
        assert agent.available_balance == 0
    finally:
        session.close()


def test_missing_tiers_fail_without_side_effects():
    session = _make_session()
    try:
        agent = crud.create_agent(session, "No Tiers")
        referral = _referral(session, agent)

        result = SettlementLedger(session, clock=_clock).apply_treatment(referral.id, date(2026, 3, 10), 100_000)

        assert result.kind is FailureKind.CONFIGURATION
        session.refresh(referral)
        assert referral.status is ReferralStatus.NEW
    finally:
        session.close()


def test_month_accumulator_resets_in_a_new_month():
    session = _make_session()
    try:
        agent = _seed(session, month_revenue=2_000_000)
        agent.revenue_month = "2026-02"
        session.commit()
        referral = _referral(session, agent)

        result = SettlementLedger(session, clock=_clock).apply_treatment(referral.id, date(2026, 3, 1), 100_000)

        assert result.value.rate_percent == Decimal("7.00")
        session.refresh(agent)
        assert agent.month_revenue == 100_000
        assert agent.revenue_month == "2026-03"
    finally:
        session.close()


def test_payment_exceeding_balance_is_rejected_and_balance_unchanged():
    session = _make_session()
    try:
        agent = _seed(session, balance=1_200, tax_status=TaxStatus.INDIVIDUAL)

        result = SettlementLedger(session, clock=_clock).request_payment(agent.id, 1_500, TaxStatus.INDIVIDUAL)

        assert result.ok is False
        assert result.kind is FailureKind.INSUFFICIENT_FUNDS
        assert result.available_balance == 1_200
        session.refresh(agent)
        assert agent.available_balance == 1_200
        assert session.query(Payment).count() == 0
    finally:
        session.close()


def test_payment_below_minimum_is_rejected():
    session = _make_session()
    try:
        agent = _seed(session, balance=50_000)
        result = SettlementLedger(session, clock=_clock).request_payment(agent.id, 999, TaxStatus.INDIVIDUAL)
        assert result.kind is FailureKind.VALIDATION
    finally:
        session.close()


def test_payment_with_unknown_tax_status_is_a_configuration_failure():
    session = _make_session()
    try:
        agent = _seed(session, balance=50_000)
        result = SettlementLedger(session, clock=_clock).request_payment(agent.id, 10_000, TaxStatus.UNKNOWN)
        assert result.kind is FailureKind.CONFIGURATION
        session.refresh(agent)
        assert agent.available_balance == 50_000
    finally:
        session.close()


def test_payment_reserves_balance_and_snapshots_tax():
    session = _make_session()
    try:
        agent = _seed(session, balance=25_000)

        result = SettlementLedger(session, clock=_clock).request_payment(agent.id, 10_000, "individual")

        payment = result.value
        assert result.ok
        assert payment.status is PaymentStatus.PENDING
        assert (payment.tax_amount, payment.social_amount, payment.net_amount) == (1_300, 3_000, 5_700)
        assert payment.tax_status_snapshot is TaxStatus.INDIVIDUAL
        session.refresh(agent)
        assert agent.available_balance == 15_000
        assert agent.tax_status is TaxStatus.INDIVIDUAL
    finally:
        session.close()


def test_inactive_agent_cannot_request_payment():
    session = _make_session()
    try:
        agent = _seed(session, balance=25_000)
        crud.deactivate_agent(session, agent)
        result = SettlementLedger(session, clock=_clock).request_payment(agent.id, 10_000, TaxStatus.SELF_EMPLOYED)
        assert result.kind is FailureKind.STATE_CONFLICT
    finally:
        session.close()


def test_bonus_unlocks_after_tenth_paid_referral():
    session = _make_session()
    try:
        agent = _seed(session)
        ledger = SettlementLedger(session, clock=_clock)
        award = ledger.award_bonus(agent.id, 5_000)
        assert award.value == {"bonus_points": 5_000, "unlocked": 0}

        for index in range(10):
            referral = _referral(session, agent, name=f"Patient {index}")
            ledger.apply_treatment(referral.id, date(2026, 3, 2), 10_000)

        session.refresh(agent)
        assert agent.paid_referrals == 10
        assert agent.bonus_points == 0
        assert agent.available_balance == 10 * 700 + 5_000
        assert agent.lifetime_earnings == 10 * 700 + 5_000
    finally:
        session.close()


def test_recompute_month_applies_month_rate_to_earlier_referrals():
    session = _make_session()
    try:
        agent = _seed(session)
        ledger = SettlementLedger(session, clock=_clock)
        first = _referral(session, agent, name="Early Patient")
        second = _referral(session, agent, name="Late Patient")
        ledger.apply_treatment(first.id, date(2026, 3, 2), 600_000)  # 7% -> 42 000
        ledger.apply_treatment(second.id, date(2026, 3, 9), 600_000)  # 10% -> 60 000

        result = ledger.recompute_month(agent.id, "2026-03", actor="admin")

        assert result.ok
        assert result.value.rate_percent == Decimal("10.00")
        assert result.value.referrals_adjusted == 1
        assert result.value.commission_delta == 18_000
        session.refresh(agent)
        session.refresh(first)
        assert first.commission_amount == 60_000
        assert agent.available_balance == 120_000
        assert [entry.action for entry in crud.list_audit_entries(session)] == ["tiers_replaced", "commission_recomputed"]
    finally:
        session.close()


def test_recompute_is_idempotent():
    session = _make_session()
    try:
        agent = _seed(session)
        ledger = SettlementLedger(session, clock=_clock)
        referral = _referral(session, agent)
        ledger.apply_treatment(referral.id, date(2026, 3, 2), 100_000)

        result = ledger.recompute_month(agent.id, "2026-03")

        assert result.ok and result.changed is False
        assert result.value.commission_delta == 0
    finally:
        session.close()


def test_status_override_never_marks_visited():
    session = _make_session()
    try:
        agent = _seed(session)
        referral = _referral(session, agent)
        ledger = SettlementLedger(session, clock=_clock)

        refused = ledger.override_referral_status(referral.id, ReferralStatus.VISITED)
        moved = ledger.override_referral_status(referral.id, ReferralStatus.NO_ANSWER, actor="admin")

        assert refused.kind is FailureKind.VALIDATION
        assert moved.ok and moved.value.status is ReferralStatus.NO_ANSWER
    finally:
        session.close()


def test_amount_override_moves_commission_delta_through_balance():
    session = _make_session()
    try:
        agent = _seed(session)
        referral = _referral(session, agent)
        ledger = SettlementLedger(session, clock=_clock)
        ledger.apply_treatment(referral.id, date(2026, 3, 2), 100_000)

        result = ledger.override_referral_amounts(referral.id, 80_000, 5_600, actor="admin")

        assert result.ok
        session.refresh(agent)
        assert agent.available_balance == 5_600
        assert agent.lifetime_earnings == 5_600
        assert crud.list_audit_entries(session, "referral_amounts_override")
    finally:
        session.close()


def test_balance_breakdown_reports_reserved_and_rate():
    session = _make_session()
    try:
        agent = _seed(session, balance=30_000, month_revenue=1_200_000)
        ledger = SettlementLedger(session, clock=_clock)
        ledger.request_payment(agent.id, 10_000, TaxStatus.SELF_EMPLOYED)

        breakdown = ledger.balance_breakdown(agent.id)

        assert breakdown.available_balance == 20_000
        assert breakdown.reserved == 10_000
        assert breakdown.current_rate == Decimal("10.00")
        assert breakdown.month == "2026-03"
    finally:
        session.close()


def test_unlock_bonus_on_demand_moves_points_once():
    session = _make_session()
    try:
        agent = _seed(session)
        agent.bonus_points = 3_000
        agent.paid_referrals = 12
        session.commit()
        ledger = SettlementLedger(session, clock=_clock)

        first = ledger.unlock_bonus(agent.id)
        second = ledger.unlock_bonus(agent.id)

        assert (first.changed, first.value) == (True, 3_000)
        assert (second.changed, second.value) == (False, 0)
        session.refresh(agent)
        assert agent.bonus_points == 0
        assert agent.available_balance == 3_000
    finally:
        session.close()
