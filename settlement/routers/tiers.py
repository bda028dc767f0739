"""Routes for the commission tier table."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from settlement import crud
from settlement.core.results import TierConfigurationError
from settlement.database import get_session
from settlement.dependencies import Caller, get_admin, get_caller
from settlement.schemas import TierRead, TierTableUpdate

router = APIRouter(prefix="/tiers", tags=["Commission tiers"])


@router.get("", response_model=list[TierRead])
def list_tiers(db: Session = Depends(get_session), _: Caller = Depends(get_caller)):
    return crud.get_tiers(db)


@router.put("", response_model=list[TierRead])
def replace_tiers(
    payload: TierTableUpdate,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_admin),
):
    try:
        tiers = crud.replace_tiers(
            db,
            [(tier.min_monthly_revenue, tier.rate_percent) for tier in payload.tiers],
            actor=caller.actor(),
        )
    except TierConfigurationError as exc:
        db.rollback()
        raise HTTPException(status_code=422, detail=str(exc))
    return tiers
