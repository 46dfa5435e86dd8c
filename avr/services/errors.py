# avr/services/errors.py
"""Exception hierarchy for the payment services."""

from __future__ import annotations

from typing import Optional


class PaymentError(Exception):
    """Base for every error raised by the payment services."""


class GatewayError(PaymentError):
    """The payment gateway could not complete a call."""


class GatewayUnreachable(GatewayError):
    """Network failure or timeout; the outcome at the gateway is unknown."""


class GatewayRejected(GatewayError):
    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body or ""

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is None:
            return base
        return f"{base} (status {self.status_code})"


class PlanOrSubscriptionMissing(GatewayRejected):
    """The gateway answered with an empty data array."""


class SignatureInvalid(PaymentError):
    pass


class ConfigurationMissing(PaymentError):
    pass


class PaymentPendingVerification(PaymentError):
    """A charge was sent but no answer came back; reconcile before retrying."""

    def __init__(self, donation_id: str, message: str = "pending verification") -> None:
        super().__init__(message)
        self.donation_id = donation_id


class InvalidDonationTransition(PaymentError):
    pass


class UnknownSubscription(PaymentError):
    """A webhook named a subscription with no local head record yet."""


__all__ = [
    "PaymentError",
    "GatewayError",
    "GatewayUnreachable",
    "GatewayRejected",
    "PlanOrSubscriptionMissing",
    "SignatureInvalid",
    "ConfigurationMissing",
    "PaymentPendingVerification",
    "InvalidDonationTransition",
    "UnknownSubscription",
]
