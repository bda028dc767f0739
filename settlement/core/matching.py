"""Side-effect-free matching of clinic treatment rows against referrals."""
from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Sequence

from dateutil import parser as date_parser

from settlement.models import OPEN_REFERRAL_STATUSES, ReferralStatus

DATE_FORMATS: tuple[str, ...] = ("%d.%m.%Y", "%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y")

_WHITESPACE = re.compile(r"\s+")


@dataclass
class CandidateRow:
    """One normalized row from a clinic upload; amount is in minor units."""

    row_index: int
    patient_name: str | None
    birthdate: Any
    visit_date: Any
    amount: Any


@dataclass(frozen=True)
class ReferralSnapshot:
    id: int
    status: ReferralStatus
    patient_full_name: str
    patient_birthdate: date
    created_at: datetime
    version: int
    clinic_ids: tuple[int, ...] = ()
    visit_date: date | None = None
    treatment_amount: int | None = None

    def targets(self, clinic_id: int) -> bool:
        return not self.clinic_ids or clinic_id in self.clinic_ids


@dataclass(frozen=True)
class IdentityKey:
    name: str
    birthdate: date


@dataclass
class MatchedRow:
    row_index: int
    patient_name: str
    birthdate: date
    visit_date: date
    amount: int
    referral_id: int
    referral_version: int
    duplicate_referral_ids: list[int] = field(default_factory=list)
    clinic_id: int | None = None


@dataclass
class AlreadyTreatedRow:
    row_index: int
    patient_name: str
    birthdate: date
    referral_id: int


@dataclass
class NotFoundRow:
    row_index: int
    patient_name: str
    birthdate: date
    reason: str


@dataclass
class RowError:
    row_index: int
    message: str


@dataclass
class ReconciliationPreview:
    clinic_id: int
    matched: list[MatchedRow] = field(default_factory=list)
    already_treated: list[AlreadyTreatedRow] = field(default_factory=list)
    not_found: list[NotFoundRow] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)


def normalize_name(value: str) -> str:
    """Case-insensitive, whitespace-collapsed form of a patient's full name."""

    return _WHITESPACE.sub(" ", value.casefold().replace("ё", "е")).strip()


def parse_row_date(raw: Any) -> date | None:
    """Parse a calendar date from a cell value; day-first for ambiguous text."""

    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = str(raw).strip()
    if not text:
        return None
    for pattern in DATE_FORMATS:
        try:
            return datetime.strptime(text, pattern).date()
        except ValueError:
            continue
    try:
        return date_parser.parse(text, dayfirst=True).date()
    except (ValueError, TypeError, OverflowError):
        return None


def parse_row_amount(raw: Any) -> int | None:
    """Return a whole minor-unit amount, or None when the value is unusable."""

    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite() or value != value.to_integral_value():
        return None
    return int(value)


def identity_key(full_name: str, birthdate: date) -> IdentityKey:
    return IdentityKey(name=normalize_name(full_name), birthdate=birthdate)


def _validate(row: CandidateRow) -> tuple[str, date, date, int] | RowError:
    name = (row.patient_name or "").strip()
    if not name:
        return RowError(row.row_index, "Patient name is missing")
    birthdate = parse_row_date(row.birthdate)
    if birthdate is None:
        return RowError(row.row_index, f"Unrecognized birthdate: {row.birthdate!r}")
    visit_date = parse_row_date(row.visit_date)
    if visit_date is None:
        return RowError(row.row_index, f"Unrecognized visit date: {row.visit_date!r}")
    amount = parse_row_amount(row.amount)
    if amount is None or amount <= 0:
        return RowError(row.row_index, f"Treatment amount must be a positive number: {row.amount!r}")
    return name, birthdate, visit_date, amount


def preview_matches(
    clinic_id: int,
    rows: Iterable[CandidateRow],
    referrals: Sequence[ReferralSnapshot],
) -> ReconciliationPreview:
    """Classify each row as matched, already treated, not found or invalid.

    Only referrals aimed at ``clinic_id`` (or at no clinic in particular) are
    considered. When several open referrals share a patient identity the
    oldest one is matched and the rest are listed as duplicates; nothing is
    written until the preview is committed.
    """

    preview = ReconciliationPreview(clinic_id=clinic_id)

    by_identity: dict[IdentityKey, list[ReferralSnapshot]] = defaultdict(list)
    for referral in referrals:
        if referral.targets(clinic_id):
            by_identity[identity_key(referral.patient_full_name, referral.patient_birthdate)].append(referral)
    for group in by_identity.values():
        group.sort(key=lambda snapshot: (snapshot.created_at, snapshot.id))

    claimed: dict[int, int] = {}
    for row in rows:
        validated = _validate(row)
        if isinstance(validated, RowError):
            preview.errors.append(validated)
            continue
        name, birthdate, visit_date, amount = validated

        group = by_identity.get(identity_key(name, birthdate), [])
        open_referrals = [snapshot for snapshot in group if snapshot.status in OPEN_REFERRAL_STATUSES]
        visited = [snapshot for snapshot in group if snapshot.status is ReferralStatus.VISITED]

        resubmitted = next(
            (
                snapshot
                for snapshot in visited
                if snapshot.visit_date == visit_date and snapshot.treatment_amount == amount
            ),
            None,
        )
        if resubmitted is not None:
            preview.already_treated.append(AlreadyTreatedRow(row.row_index, name, birthdate, resubmitted.id))
            continue

        if open_referrals:
            target = open_referrals[0]
            if target.id in claimed:
                # Same patient twice in one upload: the first row wins.
                preview.already_treated.append(AlreadyTreatedRow(row.row_index, name, birthdate, target.id))
                continue
            claimed[target.id] = row.row_index
            preview.matched.append(
                MatchedRow(
                    row_index=row.row_index,
                    patient_name=name,
                    birthdate=birthdate,
                    visit_date=visit_date,
                    amount=amount,
                    referral_id=target.id,
                    referral_version=target.version,
                    duplicate_referral_ids=[snapshot.id for snapshot in open_referrals[1:]],
                    clinic_id=clinic_id,
                )
            )
            continue

        if visited:
            preview.already_treated.append(AlreadyTreatedRow(row.row_index, name, birthdate, visited[0].id))
            continue

        reason = "Referral is closed" if group else "No referral for this patient at this clinic"
        preview.not_found.append(NotFoundRow(row.row_index, name, birthdate, reason))

    return preview
