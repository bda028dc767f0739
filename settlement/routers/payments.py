"""Routes for payout requests and the payment lifecycle."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from settlement import crud
from settlement.database import get_session
from settlement.dependencies import (
    Caller,
    get_admin,
    get_caller,
    get_agent_caller,
    get_gateway,
    get_signer,
    raise_for_failure,
)
from settlement.ledger import SettlementLedger
from settlement.lifecycle import BatchResult, PaymentLifecycle
from settlement.models import Payment, PaymentStatus
from settlement.otp import OtpSigner
from settlement.reports import payments_frame
from settlement.schemas import (
    ActRead,
    BatchResponse,
    CompleteRequest,
    FailRequest,
    PaymentIdsRequest,
    PaymentPage,
    PaymentRead,
    PaymentRequest,
    ProviderStatusRequest,
    ReceiptRequest,
    SendForSigningRequest,
    SignRequest,
    SigningDispatchRead,
)

router = APIRouter(prefix="/payments", tags=["Payments"])


def _lifecycle(db: Session, signer: OtpSigner, gateway) -> PaymentLifecycle:
    return PaymentLifecycle(db, signer, gateway=gateway)


def _load_payment(db: Session, payment_id: int, caller: Caller) -> Payment:
    """Agents only ever see their own payments; anything else looks missing."""
    payment = crud.get_payment(db, payment_id)
    if payment is None or (not caller.is_admin and payment.agent_id != caller.agent_id):
        raise HTTPException(status_code=404, detail="Payment not found")
    return payment


def _batch_response(batch: BatchResult, caller: Caller) -> BatchResponse:
    failed = {
        payment_id: (result.detail if caller.is_admin else result.message) or ""
        for payment_id, result in batch.failed.items()
    }
    return BatchResponse(updated=batch.updated, unchanged=batch.unchanged, failed=failed)


@router.post("", response_model=PaymentRead, status_code=201)
def request_payment(
    payload: PaymentRequest,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_agent_caller),
):
    agent = crud.get_agent(db, caller.agent_id)
    if agent is None:
        raise HTTPException(status_code=404, detail="Agent not found")
    tax_status = payload.tax_status or agent.tax_status
    result = SettlementLedger(db).request_payment(
        caller.agent_id, payload.amount, tax_status, route=payload.payout_route
    )
    raise_for_failure(result, caller)
    return result.value


@router.get("", response_model=PaymentPage)
def list_payments(
    page: int = Query(1, ge=1),
    page_size: int = Query(crud.DEFAULT_PAGE_SIZE, ge=1, le=crud.MAX_PAGE_SIZE),
    status: Optional[PaymentStatus] = None,
    agent_id: Optional[int] = None,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_caller),
):
    if not caller.is_admin:
        agent_id = caller.agent_id
    items, total = crud.list_payments(db, agent_id=agent_id, status=status, page=page, page_size=page_size)
    return PaymentPage(items=items, total=total, page=page, page_size=page_size)


@router.get("/export.csv")
def export_payments(
    agent_id: Optional[int] = None,
    status: Optional[PaymentStatus] = None,
    db: Session = Depends(get_session),
    _: Caller = Depends(get_admin),
):
    frame = payments_frame(crud.iter_payments(db, agent_id=agent_id, status=status))
    content = frame.to_csv(index=False)
    return StreamingResponse(
        iter([content]),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=payments.csv"},
    )


@router.get("/{payment_id}", response_model=PaymentRead)
def get_payment(
    payment_id: int,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_caller),
):
    return _load_payment(db, payment_id, caller)


@router.post("/{payment_id}/act", response_model=ActRead)
def generate_act(
    payment_id: int,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_caller),
    signer: OtpSigner = Depends(get_signer),
):
    _load_payment(db, payment_id, caller)
    result = _lifecycle(db, signer, None).generate_act(payment_id)
    raise_for_failure(result, caller)
    return result.value


@router.post("/{payment_id}/act/regenerate", response_model=ActRead)
def regenerate_act(
    payment_id: int,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_admin),
    signer: OtpSigner = Depends(get_signer),
):
    result = _lifecycle(db, signer, None).regenerate_act(payment_id, actor=caller.actor())
    raise_for_failure(result, caller)
    return result.value


@router.post("/{payment_id}/send-for-signing", response_model=SigningDispatchRead)
def send_for_signing(
    payment_id: int,
    payload: Optional[SendForSigningRequest] = None,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_caller),
    signer: OtpSigner = Depends(get_signer),
):
    _load_payment(db, payment_id, caller)
    channel = payload.channel if payload else None
    result = _lifecycle(db, signer, None).send_for_signing(payment_id, channel)
    raise_for_failure(result, caller)
    return result.value


@router.post("/{payment_id}/resend-code", response_model=SigningDispatchRead)
def resend_code(
    payment_id: int,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_caller),
    signer: OtpSigner = Depends(get_signer),
):
    _load_payment(db, payment_id, caller)
    result = _lifecycle(db, signer, None).resend_signing_code(payment_id)
    raise_for_failure(result, caller)
    return result.value


@router.post("/{payment_id}/sign", response_model=PaymentRead)
def sign(
    payment_id: int,
    payload: SignRequest,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_caller),
    signer: OtpSigner = Depends(get_signer),
):
    _load_payment(db, payment_id, caller)
    result = _lifecycle(db, signer, None).sign(payment_id, payload.code)
    raise_for_failure(result, caller)
    return result.value


@router.post("/{payment_id}/receipt", response_model=PaymentRead)
def record_receipt(
    payment_id: int,
    payload: ReceiptRequest,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_caller),
    signer: OtpSigner = Depends(get_signer),
):
    _load_payment(db, payment_id, caller)
    result = _lifecycle(db, signer, None).record_receipt(payment_id, payload.receipt_reference)
    raise_for_failure(result, caller)
    return result.value


@router.post("/ready", response_model=BatchResponse)
def mark_ready(
    payload: PaymentIdsRequest,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_admin),
    signer: OtpSigner = Depends(get_signer),
    gateway=Depends(get_gateway),
):
    batch = _lifecycle(db, signer, gateway).mark_ready(payload.payment_ids)
    return _batch_response(batch, caller)


@router.post("/complete", response_model=BatchResponse)
def mark_completed(
    payload: CompleteRequest,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_admin),
    signer: OtpSigner = Depends(get_signer),
):
    batch = _lifecycle(db, signer, None).batch_mark_completed(payload.payment_ids, payload.external_reference)
    return _batch_response(batch, caller)


@router.post("/{payment_id}/fail", response_model=PaymentRead)
def mark_failed(
    payment_id: int,
    payload: FailRequest,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_admin),
    signer: OtpSigner = Depends(get_signer),
):
    result = _lifecycle(db, signer, None).mark_failed(payment_id, payload.reason, actor=caller.actor())
    raise_for_failure(result, caller)
    return result.value


@router.post("/{payment_id}/provider-status", response_model=PaymentRead)
def provider_status(
    payment_id: int,
    payload: ProviderStatusRequest,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_admin),
    signer: OtpSigner = Depends(get_signer),
):
    result = _lifecycle(db, signer, None).apply_provider_status(
        payment_id, payload.status_code, payload.external_id
    )
    raise_for_failure(result, caller)
    return result.value
