"""Shared FastAPI dependencies."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from settlement.core.results import FailureKind, OperationResult
from settlement.otp import OtpSigner

ROLE_AGENT = "agent"
ROLE_ADMIN = "admin"

FAILURE_STATUS_CODES: dict[FailureKind, int] = {
    FailureKind.NOT_FOUND: 404,
    FailureKind.STATE_CONFLICT: 409,
    FailureKind.VALIDATION: 422,
    FailureKind.CONFIGURATION: 422,
    FailureKind.INSUFFICIENT_FUNDS: 400,
    FailureKind.OTP: 400,
}


@dataclass(frozen=True)
class Caller:
    """Identity forwarded by the upstream login layer."""

    role: str
    agent_id: int | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def actor(self) -> str:
        return "admin" if self.is_admin else f"agent:{self.agent_id}"


def get_caller(
    x_role: Optional[str] = Header(None),
    x_agent_id: Optional[str] = Header(None),
) -> Caller:
    """Dependency to read the caller identity from request headers."""
    role = (x_role or "").strip().lower()
    if role == ROLE_ADMIN:
        return Caller(role=ROLE_ADMIN)
    if role != ROLE_AGENT:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        agent_id = int(x_agent_id or "")
    except (ValueError, TypeError):
        raise HTTPException(status_code=401, detail="Invalid agent identity")
    return Caller(role=ROLE_AGENT, agent_id=agent_id)


def get_admin(caller: Caller = Depends(get_caller)) -> Caller:
    """Dependency to ensure the caller is an administrator."""
    if not caller.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return caller


def get_agent_caller(caller: Caller = Depends(get_caller)) -> Caller:
    if caller.agent_id is None:
        raise HTTPException(status_code=403, detail="Agent access required")
    return caller


def get_signer(request: Request) -> OtpSigner:
    return request.app.state.signer


def get_gateway(request: Request):
    return getattr(request.app.state, "payout_gateway", None)


def raise_for_failure(result: OperationResult, caller: Caller) -> None:
    """Translate a failed operation into an HTTP error; admins also see the detail."""

    if result.ok:
        return
    detail: dict[str, object] = {"kind": result.kind.value, "message": result.message}
    if result.available_balance is not None:
        detail["available_balance"] = result.available_balance
    if caller.is_admin:
        detail["detail"] = result.detail
        detail["current_state"] = result.current_state
        detail["retryable"] = result.retryable
    raise HTTPException(status_code=FAILURE_STATUS_CODES.get(result.kind, 400), detail=detail)
