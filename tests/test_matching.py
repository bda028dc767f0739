from datetime import date, datetime

from settlement.core.matching import (
    CandidateRow,
    ReferralSnapshot,
    normalize_name,
    parse_row_amount,
    parse_row_date,
    preview_matches,
)
from settlement.models import ReferralStatus

CLINIC = 3


def _snapshot(referral_id, name="Иванов Иван Иванович", birthdate=date(1985, 3, 15), **overrides):
    values = dict(
        id=referral_id,
        status=ReferralStatus.NEW,
        patient_full_name=name,
        patient_birthdate=birthdate,
        created_at=datetime(2026, 1, 1, 9, 0) + (datetime(2026, 1, 2) - datetime(2026, 1, 1)) * referral_id,
        version=1,
        clinic_ids=(),
    )
    values.update(overrides)
    return ReferralSnapshot(**values)


def _row(index=2, name="Иванов Иван Иванович", birthdate="15.03.1985", visit="20.02.2026", amount=500_000):
    return CandidateRow(row_index=index, patient_name=name, birthdate=birthdate, visit_date=visit, amount=amount)


def test_normalize_name_is_case_and_whitespace_insensitive():
    assert normalize_name("  ИВАНОВ   Иван\tИванович ") == normalize_name("иванов иван иванович")
    assert normalize_name("Алёна") == normalize_name("Алена")


def test_parse_row_date_accepts_common_formats():
    assert parse_row_date("15.03.1985") == date(1985, 3, 15)
    assert parse_row_date("1985-03-15") == date(1985, 3, 15)
    assert parse_row_date("15/03/1985") == date(1985, 3, 15)
    assert parse_row_date(datetime(1985, 3, 15, 0, 0)) == date(1985, 3, 15)
    assert parse_row_date("not a date") is None
    assert parse_row_date("") is None


def test_parse_row_amount_only_accepts_whole_numbers():
    assert parse_row_amount(500) == 500
    assert parse_row_amount("1200") == 1200
    assert parse_row_amount(1200.0) == 1200
    assert parse_row_amount("12.5") is None
    assert parse_row_amount(True) is None
    assert parse_row_amount("abc") is None


def test_row_matches_by_normalized_name_and_birthdate():
    referrals = [_snapshot(1, name="иванов  иван иванович")]
    preview = preview_matches(CLINIC, [_row()], referrals)

    assert [match.referral_id for match in preview.matched] == [1]
    match = preview.matched[0]
    assert match.visit_date == date(2026, 2, 20)
    assert match.amount == 500_000
    assert match.duplicate_referral_ids == []


def test_birthdate_is_compared_as_a_date():
    referrals = [_snapshot(1)]
    preview = preview_matches(CLINIC, [_row(birthdate="1985-03-15")], referrals)
    assert len(preview.matched) == 1


def test_oldest_open_referral_wins_and_others_are_duplicates():
    referrals = [_snapshot(7), _snapshot(4), _snapshot(9)]
    preview = preview_matches(CLINIC, [_row()], referrals)

    assert preview.matched[0].referral_id == 4
    assert preview.matched[0].duplicate_referral_ids == [7, 9]


def test_visited_referral_is_reported_as_already_treated():
    referrals = [
        _snapshot(1, status=ReferralStatus.VISITED, visit_date=date(2026, 1, 10), treatment_amount=100),
    ]
    preview = preview_matches(CLINIC, [_row()], referrals)
    assert preview.matched == []
    assert [row.referral_id for row in preview.already_treated] == [1]


def test_resubmitted_row_is_already_treated_even_with_newer_open_referral():
    referrals = [
        _snapshot(1, status=ReferralStatus.VISITED, visit_date=date(2026, 2, 20), treatment_amount=500_000),
        _snapshot(2),
    ]
    preview = preview_matches(CLINIC, [_row()], referrals)
    assert preview.matched == []
    assert preview.already_treated[0].referral_id == 1


def test_same_patient_twice_in_one_upload_matches_once():
    preview = preview_matches(CLINIC, [_row(index=2), _row(index=3)], [_snapshot(1)])
    assert [match.row_index for match in preview.matched] == [2]
    assert [row.row_index for row in preview.already_treated] == [3]


def test_referrals_for_other_clinics_are_not_considered():
    referrals = [_snapshot(1, clinic_ids=(CLINIC + 1,))]
    preview = preview_matches(CLINIC, [_row()], referrals)
    assert preview.matched == []
    assert preview.not_found[0].reason == "No referral for this patient at this clinic"


def test_closed_referral_is_not_found_with_reason():
    referrals = [_snapshot(1, status=ReferralStatus.CANCELLED)]
    preview = preview_matches(CLINIC, [_row()], referrals)
    assert preview.not_found[0].reason == "Referral is closed"


def test_invalid_rows_are_collected_without_stopping_the_batch():
    rows = [
        _row(index=2, name="  "),
        _row(index=3, birthdate="31.02.1985"),
        _row(index=4, visit=""),
        _row(index=5, amount=0),
        _row(index=6),
    ]
    preview = preview_matches(CLINIC, rows, [_snapshot(1)])

    assert [error.row_index for error in preview.errors] == [2, 3, 4, 5]
    assert [match.row_index for match in preview.matched] == [6]
