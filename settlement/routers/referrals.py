"""Routes for referral registration, clinics and administrative referral corrections."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from settlement import crud
from settlement.database import get_session
from settlement.dependencies import Caller, get_admin, get_agent_caller, get_caller, raise_for_failure
from settlement.ledger import SettlementLedger
from settlement.schemas import (
    ClinicCreate,
    ClinicRead,
    ReferralAmountsOverride,
    ReferralCreate,
    ReferralRead,
    ReferralStatusOverride,
)

router = APIRouter(tags=["Referrals"])


@router.post("/clinics", response_model=ClinicRead, status_code=201)
def create_clinic(payload: ClinicCreate, db: Session = Depends(get_session), _: Caller = Depends(get_admin)):
    return crud.create_clinic(db, payload.name)


@router.post("/referrals", response_model=ReferralRead, status_code=201)
def create_referral(
    payload: ReferralCreate,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_agent_caller),
):
    agent = crud.get_agent(db, caller.agent_id)
    if agent is None or not agent.is_active:
        raise HTTPException(status_code=404, detail="Agent not found")
    try:
        return crud.create_referral(
            db,
            agent,
            payload.patient_full_name,
            payload.patient_birthdate,
            clinic_ids=payload.clinic_ids,
            patient_phone=payload.patient_phone,
            patient_email=payload.patient_email,
            patient_city=payload.patient_city,
            notes=payload.notes,
        )
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=422, detail=str(exc))


@router.get("/referrals/{referral_id}", response_model=ReferralRead)
def get_referral(referral_id: int, db: Session = Depends(get_session), caller: Caller = Depends(get_caller)):
    referral = crud.get_referral(db, referral_id)
    if referral is None or (not caller.is_admin and referral.agent_id != caller.agent_id):
        raise HTTPException(status_code=404, detail="Referral not found")
    return referral


@router.put("/referrals/{referral_id}/status", response_model=ReferralRead)
def override_status(
    referral_id: int,
    payload: ReferralStatusOverride,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_admin),
):
    result = SettlementLedger(db).override_referral_status(referral_id, payload.status, actor=caller.actor())
    raise_for_failure(result, caller)
    return result.value


@router.put("/referrals/{referral_id}/amounts", response_model=ReferralRead)
def override_amounts(
    referral_id: int,
    payload: ReferralAmountsOverride,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_admin),
):
    result = SettlementLedger(db).override_referral_amounts(
        referral_id, payload.treatment_amount, payload.commission_amount, actor=caller.actor()
    )
    raise_for_failure(result, caller)
    return result.value
