"""Routes for reconciling clinic treatment reports against referrals."""
from __future__ import annotations

import io

import pandas as pd
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.orm import Session

from settlement.core.matching import CandidateRow
from settlement.database import get_session
from settlement.dependencies import Caller, get_admin
from settlement.importers.clinic_rows import candidate_rows_from_frame
from settlement.reconciliation import CommitItem, ReconciliationService
from settlement.schemas import CommitRequest, CommitResponse, PreviewRequest, PreviewResponse

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


@router.post("/{clinic_id}/preview", response_model=PreviewResponse)
def preview(
    clinic_id: int,
    payload: PreviewRequest,
    db: Session = Depends(get_session),
    _: Caller = Depends(get_admin),
):
    rows = [
        CandidateRow(
            row_index=row.row_index,
            patient_name=row.patient_name,
            birthdate=row.birthdate,
            visit_date=row.visit_date,
            amount=row.amount,
        )
        for row in payload.rows
    ]
    return ReconciliationService(db).preview(clinic_id, rows)


@router.post("/{clinic_id}/preview-upload", response_model=PreviewResponse)
async def preview_upload(
    clinic_id: int,
    file: UploadFile = File(...),
    db: Session = Depends(get_session),
    _: Caller = Depends(get_admin),
):
    """Preview a CSV export of the clinic's treated-patients table (amounts in major units)."""
    content = await file.read()
    try:
        frame = pd.read_csv(io.BytesIO(content), dtype=str, keep_default_na=False)
        rows = candidate_rows_from_frame(frame)
    except (ValueError, pd.errors.ParserError) as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return ReconciliationService(db).preview(clinic_id, rows)


@router.post("/commit", response_model=CommitResponse)
def commit(
    payload: CommitRequest,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_admin),
):
    items = [
        CommitItem(
            referral_id=item.referral_id,
            visit_date=item.visit_date,
            amount=item.amount,
            referral_version=item.referral_version,
            duplicate_referral_ids=list(item.duplicate_referral_ids),
            clinic_id=item.clinic_id,
            row_index=item.row_index,
        )
        for item in payload.items
    ]
    return ReconciliationService(db).commit(items)
