"""Routes for agent accounts, balances and administrative ledger actions."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from settlement import crud
from settlement.database import get_session
from settlement.dependencies import Caller, get_admin, get_agent_caller, raise_for_failure
from settlement.ledger import SettlementLedger, month_key
from settlement.reports import agent_month_statement, statement_totals
from settlement.schemas import (
    AgentCreate,
    AgentRead,
    BalanceRead,
    BonusAward,
    RecomputeRead,
    RecomputeRequest,
    StatementRead,
    StatementRow,
)

router = APIRouter(prefix="/agents", tags=["Agents"])


def _balance(db: Session, agent_id: int) -> BalanceRead:
    breakdown = SettlementLedger(db).balance_breakdown(agent_id)
    if breakdown is None:
        raise HTTPException(status_code=404, detail="Agent not found")
    return BalanceRead.model_validate(breakdown)


def _statement(db: Session, agent_id: int, month: Optional[str]) -> StatementRead:
    if crud.get_agent(db, agent_id) is None:
        raise HTTPException(status_code=404, detail="Agent not found")
    month = month or month_key(SettlementLedger(db).clock())
    frame = agent_month_statement(db, agent_id, month)
    rows = [StatementRow(**record) for record in frame.to_dict(orient="records")]
    return StatementRead(agent_id=agent_id, month=month, rows=rows, totals=statement_totals(frame))


@router.post("", response_model=AgentRead, status_code=201)
def create_agent(
    payload: AgentCreate,
    db: Session = Depends(get_session),
    _: Caller = Depends(get_admin),
):
    return crud.create_agent(
        db,
        full_name=payload.full_name,
        email=payload.email,
        email_verified=payload.email_verified,
        telegram_id=payload.telegram_id,
        tax_status=payload.tax_status,
    )


@router.get("/me/balance", response_model=BalanceRead)
def my_balance(db: Session = Depends(get_session), caller: Caller = Depends(get_agent_caller)):
    return _balance(db, caller.agent_id)


@router.get("/me/statement", response_model=StatementRead)
def my_statement(
    month: Optional[str] = Query(None, pattern=r"^\d{4}-(0[1-9]|1[0-2])$"),
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_agent_caller),
):
    return _statement(db, caller.agent_id, month)


@router.get("/{agent_id}/balance", response_model=BalanceRead)
def agent_balance(agent_id: int, db: Session = Depends(get_session), _: Caller = Depends(get_admin)):
    return _balance(db, agent_id)


@router.get("/{agent_id}/statement", response_model=StatementRead)
def agent_statement(
    agent_id: int,
    month: Optional[str] = Query(None, pattern=r"^\d{4}-(0[1-9]|1[0-2])$"),
    db: Session = Depends(get_session),
    _: Caller = Depends(get_admin),
):
    return _statement(db, agent_id, month)


@router.post("/{agent_id}/deactivate", response_model=AgentRead)
def deactivate_agent(agent_id: int, db: Session = Depends(get_session), caller: Caller = Depends(get_admin)):
    agent = crud.get_agent(db, agent_id)
    if agent is None:
        raise HTTPException(status_code=404, detail="Agent not found")
    crud.record_audit(db, "agent_deactivated", {"agent_id": agent_id}, caller.actor())
    return crud.deactivate_agent(db, agent)


@router.post("/{agent_id}/recompute", response_model=RecomputeRead)
def recompute_month(
    agent_id: int,
    payload: RecomputeRequest,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_admin),
):
    result = SettlementLedger(db).recompute_month(agent_id, payload.month, actor=caller.actor())
    raise_for_failure(result, caller)
    return result.value


@router.post("/{agent_id}/bonus", response_model=BalanceRead)
def award_bonus(
    agent_id: int,
    payload: BonusAward,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_admin),
):
    result = SettlementLedger(db).award_bonus(agent_id, payload.amount, actor=caller.actor())
    raise_for_failure(result, caller)
    return _balance(db, agent_id)
