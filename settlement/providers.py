"""Payout routes: manual bank transfer or an external payout provider."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Protocol

from settlement.models import Payment, PayoutRoute, ProviderStatus

logger = logging.getLogger(__name__)


class PayoutGateway(Protocol):
    """External payout provider client."""

    def submit(self, payment: Payment) -> str:
        """Hand the payment to the provider and return its payment id."""
        ...


class LoggingGateway:
    """Gateway used until a provider client is configured; references are local."""

    def submit(self, payment: Payment) -> str:
        reference = f"local-{payment.id}"
        logger.info("Payment %s queued for provider payout as %s", payment.id, reference)
        return reference


class PayoutChannel(ABC):
    route: PayoutRoute

    @abstractmethod
    def submit(self, payment: Payment) -> None:
        """Called when the payment becomes ready for payment."""

    @property
    @abstractmethod
    def manual_completion(self) -> bool:
        """Whether an administrator records the completion."""


class ManualPayout(PayoutChannel):
    route = PayoutRoute.MANUAL

    def submit(self, payment: Payment) -> None:
        return None

    @property
    def manual_completion(self) -> bool:
        return True


class ProviderPayout(PayoutChannel):
    route = PayoutRoute.PROVIDER

    def __init__(self, gateway: PayoutGateway) -> None:
        self.gateway = gateway

    def submit(self, payment: Payment) -> None:
        payment.provider_payment_id = self.gateway.submit(payment)
        payment.provider_status = int(ProviderStatus.PROCESSING)

    @property
    def manual_completion(self) -> bool:
        return False


def channel_for(route: PayoutRoute, gateway: PayoutGateway | None = None) -> PayoutChannel:
    if PayoutRoute(route) is PayoutRoute.PROVIDER:
        return ProviderPayout(gateway or LoggingGateway())
    return ManualPayout()
