"""Clinic reconciliation: preview matching rows, then commit them one by one."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Iterable

from sqlalchemy.orm import Session

from settlement import crud
from settlement.core.matching import CandidateRow, MatchedRow, ReconciliationPreview, preview_matches
from settlement.core.results import FailureKind
from settlement.ledger import SettlementLedger

logger = logging.getLogger(__name__)


@dataclass
class CommitItem:
    referral_id: int
    visit_date: date
    amount: int
    referral_version: int | None = None
    duplicate_referral_ids: list[int] = field(default_factory=list)
    clinic_id: int | None = None
    row_index: int | None = None

    @classmethod
    def from_match(cls, match: MatchedRow, clinic_id: int | None = None) -> "CommitItem":
        return cls(
            referral_id=match.referral_id,
            visit_date=match.visit_date,
            amount=match.amount,
            referral_version=match.referral_version,
            duplicate_referral_ids=list(match.duplicate_referral_ids),
            clinic_id=clinic_id if clinic_id is not None else match.clinic_id,
            row_index=match.row_index,
        )


@dataclass
class CommitIssue:
    referral_id: int
    kind: FailureKind
    message: str
    detail: str | None = None
    current_state: str | None = None
    row_index: int | None = None


@dataclass
class CommitSummary:
    updated_count: int = 0
    unchanged_count: int = 0
    duplicates_marked: int = 0
    commission_total: int = 0
    conflicts: list[CommitIssue] = field(default_factory=list)
    errors: list[CommitIssue] = field(default_factory=list)


class ReconciliationService:
    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.now) -> None:
        self.db = db
        self.ledger = SettlementLedger(db, clock=clock)

    def preview(self, clinic_id: int, rows: Iterable[CandidateRow]) -> ReconciliationPreview:
        """Classify rows against the clinic's referral pool without writing anything."""

        pool = [crud.snapshot_referral(referral) for referral in crud.list_clinic_referral_pool(self.db, clinic_id)]
        # The preview must not hold the read transaction open between requests
        self.db.rollback()
        preview = preview_matches(clinic_id, rows, pool)
        logger.info(
            "Reconciliation preview for clinic %s: %s matched, %s already treated, %s not found, %s errors",
            clinic_id,
            len(preview.matched),
            len(preview.already_treated),
            len(preview.not_found),
            len(preview.errors),
        )
        return preview

    def commit(self, items: Iterable[CommitItem | MatchedRow]) -> CommitSummary:
        """Apply each matched item in its own transaction.

        A failing item is reported in the summary and never stops the others.
        Re-submitting an item that was already applied with identical values
        counts as unchanged.
        """

        summary = CommitSummary()
        for raw in items:
            item = raw if isinstance(raw, CommitItem) else CommitItem.from_match(raw)
            try:
                result = self.ledger.apply_treatment(
                    item.referral_id,
                    item.visit_date,
                    item.amount,
                    clinic_id=item.clinic_id,
                    expected_version=item.referral_version,
                    duplicate_referral_ids=item.duplicate_referral_ids,
                )
            except Exception:
                self.db.rollback()
                logger.exception("Unexpected failure committing referral %s", item.referral_id)
                summary.errors.append(
                    CommitIssue(
                        referral_id=item.referral_id,
                        kind=FailureKind.VALIDATION,
                        message="Row could not be applied",
                        row_index=item.row_index,
                    )
                )
                continue

            if result.ok and result.changed:
                summary.updated_count += 1
                summary.duplicates_marked += result.value.duplicates_marked
                summary.commission_total += result.value.commission_amount
            elif result.ok:
                summary.unchanged_count += 1
            else:
                issue = CommitIssue(
                    referral_id=item.referral_id,
                    kind=result.kind,
                    message=result.message,
                    detail=result.detail,
                    current_state=result.current_state,
                    row_index=item.row_index,
                )
                if result.kind is FailureKind.STATE_CONFLICT:
                    summary.conflicts.append(issue)
                else:
                    summary.errors.append(issue)

        logger.info(
            "Reconciliation commit: %s updated, %s unchanged, %s duplicates, %s conflicts, %s errors",
            summary.updated_count,
            summary.unchanged_count,
            summary.duplicates_marked,
            len(summary.conflicts),
            len(summary.errors),
        )
        return summary
