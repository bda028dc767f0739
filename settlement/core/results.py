"""Typed outcomes for ledger, reconciliation and payment lifecycle operations."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any


class ConfigurationError(ValueError):
    """A required piece of configuration is missing or invalid."""


class UnknownTaxStatusError(ConfigurationError):
    """Tax cannot be computed until the agent declares a tax status."""


class TierConfigurationError(ConfigurationError):
    """The commission tier table is unusable."""


class FailureKind(str, enum.Enum):
    VALIDATION = "validation"
    STATE_CONFLICT = "state_conflict"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    OTP = "otp"
    CONFIGURATION = "configuration"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class OperationResult:
    """
    Outcome of a mutating operation.

    ``message`` is safe to show to the agent; ``detail`` and ``current_state``
    are meant for administrators and server logs.
    """

    ok: bool
    value: Any = None
    kind: FailureKind | None = None
    message: str | None = None
    detail: str | None = None
    current_state: str | None = None
    available_balance: int | None = None
    changed: bool = True

    @classmethod
    def success(cls, value: Any = None, changed: bool = True) -> "OperationResult":
        return cls(ok=True, value=value, changed=changed)

    @classmethod
    def unchanged(cls, value: Any = None) -> "OperationResult":
        """Idempotent success: the requested state already holds."""
        return cls(ok=True, value=value, changed=False)

    @classmethod
    def failure(
        cls,
        kind: FailureKind,
        message: str,
        detail: str | None = None,
        current_state: str | None = None,
        available_balance: int | None = None,
    ) -> "OperationResult":
        return cls(
            ok=False,
            kind=kind,
            message=message,
            detail=detail or message,
            current_state=current_state,
            available_balance=available_balance,
            changed=False,
        )

    @property
    def retryable(self) -> bool:
        """State conflicts can be retried after re-reading state; everything else is permanent."""
        return self.kind == FailureKind.STATE_CONFLICT


def not_found(entity: str, entity_id: Any) -> OperationResult:
    return OperationResult.failure(
        FailureKind.NOT_FOUND,
        f"{entity} not found",
        detail=f"{entity} {entity_id} does not exist",
    )


def state_conflict(message: str, current_state: Any, detail: str | None = None) -> OperationResult:
    state = getattr(current_state, "value", current_state)
    return OperationResult.failure(
        FailureKind.STATE_CONFLICT,
        message,
        detail=detail or f"{message} (current state: {state})",
        current_state=None if state is None else str(state),
    )
