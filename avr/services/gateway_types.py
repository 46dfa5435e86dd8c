# avr/services/gateway_types.py
"""Request/response shapes exchanged with the payment gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional


def _dec(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0.00")
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return Decimal("0.00")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _str(value: Any) -> str:
    return "" if value is None else str(value)


def parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        pass
    try:
        d = date.fromisoformat(s[:10])
    except ValueError:
        return None
    return datetime(d.year, d.month, d.day)


def money(amount: Decimal) -> float:
    """JSON-safe amount for request bodies."""
    return float(Decimal(amount).quantize(Decimal("0.01")))


# ----------------------------
# One-time payments
# ----------------------------
@dataclass
class PaymentRequest:
    amount: Decimal
    currency: str
    customer_code: str
    card_token: str

    def to_api(self) -> Dict[str, Any]:
        return {
            "amount": money(self.amount),
            "currency": self.currency,
            "customerCode": self.customer_code,
            "cardData": {"cardToken": self.card_token},
        }


@dataclass
class PaymentResponse:
    transaction_id: str
    status: str
    amount: Decimal
    currency: str = ""
    customer_code: str = ""

    @property
    def approved(self) -> bool:
        return self.status.upper() == "APPROVED"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PaymentResponse":
        return cls(
            transaction_id=_str(data.get("transactionId")),
            status=_str(data.get("status")),
            amount=_dec(data.get("amount")),
            currency=_str(data.get("currency")),
            customer_code=_str(data.get("customerCode")),
        )


# ----------------------------
# Recurring
# ----------------------------
@dataclass
class PaymentPlan:
    id: str
    name: str
    recurring_amount: Decimal
    currency: str
    description: str = ""
    type: str = "subscription"
    billing_period: str = "monthly"
    billing_period_increments: int = 1
    date_billing: str = "Sign-up"
    term_type: str = "forever"
    payment_method: str = "card"
    status: str = "active"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PaymentPlan":
        return cls(
            id=_str(data.get("id")),
            name=_str(data.get("name")),
            recurring_amount=_dec(data.get("recurringAmount")),
            currency=_str(data.get("currency")),
            description=_str(data.get("description")),
            type=_str(data.get("type")) or "subscription",
            billing_period=_str(data.get("billingPeriod")) or "monthly",
            billing_period_increments=int(data.get("billingPeriodIncrements") or 1),
            date_billing=_str(data.get("dateBilling")) or "Sign-up",
            term_type=_str(data.get("termType")) or "forever",
            payment_method=_str(data.get("paymentMethod")) or "card",
            status=_str(data.get("status")) or "active",
        )


@dataclass
class SubscriptionRequest:
    customer_code: str
    payment_plan_id: str
    amount: Decimal
    payment_method: str = "card"
    date_activated: Optional[date] = None

    def to_api(self) -> Dict[str, Any]:
        activated = self.date_activated or date.today()
        plan_id: Any = self.payment_plan_id
        if isinstance(plan_id, str) and plan_id.isdigit():
            plan_id = int(plan_id)
        return {
            "customerCode": self.customer_code,
            "paymentPlanId": plan_id,
            "recurringAmount": money(self.amount),
            "paymentMethod": self.payment_method,
            "dateActivated": activated.isoformat(),
        }


@dataclass
class Subscription:
    id: str
    customer_id: str
    payment_plan_id: str
    amount: Decimal
    status: str
    activation_date: str = ""
    next_billing_date: Optional[datetime] = None
    payment_method: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Subscription":
        return cls(
            id=_str(data.get("id")),
            customer_id=_str(data.get("customerId") or data.get("customerCode")),
            payment_plan_id=_str(data.get("paymentPlanId")),
            amount=_dec(data.get("recurringAmount", data.get("amount"))),
            status=_str(data.get("status")),
            activation_date=_str(data.get("activationDate") or data.get("dateActivated")),
            next_billing_date=parse_datetime(data.get("nextBillingDate")),
            payment_method=_str(data.get("paymentMethod")),
        )


# ----------------------------
# Add-ons
# ----------------------------
@dataclass
class AddOnRequest:
    name: str
    amount: Decimal
    description: str = ""
    type: str = "recurring"  # or "one_time"
    quantity: bool = False

    def to_api(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "amount": money(self.amount),
            "type": self.type,
            "quantity": self.quantity,
        }


@dataclass
class AddOn:
    id: str
    name: str
    amount: Decimal
    description: str = ""
    type: str = ""
    quantity: bool = False
    status: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "AddOn":
        return cls(
            id=_str(data.get("id")),
            name=_str(data.get("name")),
            amount=_dec(data.get("amount")),
            description=_str(data.get("description")),
            type=_str(data.get("type")),
            quantity=bool(data.get("quantity")),
            status=_str(data.get("status")),
        )


@dataclass
class SubscriptionAddOnRequest:
    add_on_id: str
    quantity: int = 1

    def to_api(self) -> Dict[str, Any]:
        add_on_id: Any = self.add_on_id
        if isinstance(add_on_id, str) and add_on_id.isdigit():
            add_on_id = int(add_on_id)
        return {"addOnId": add_on_id, "quantity": int(self.quantity)}


@dataclass
class SubscriptionAddOn:
    id: str
    subscription_id: str
    add_on_id: str
    quantity: int
    amount: Decimal
    status: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "SubscriptionAddOn":
        return cls(
            id=_str(data.get("id")),
            subscription_id=_str(data.get("subscriptionId")),
            add_on_id=_str(data.get("addOnId")),
            quantity=int(data.get("quantity") or 0),
            amount=_dec(data.get("amount")),
            status=_str(data.get("status")),
        )


# ----------------------------
# Procedures + sync
# ----------------------------
@dataclass
class PaymentProcedureResult:
    transaction_id: str
    status: str
    amount: Decimal
    processed_at: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PaymentProcedureResult":
        return cls(
            transaction_id=_str(data.get("transactionId")),
            status=_str(data.get("status")),
            amount=_dec(data.get("amount")),
            processed_at=_str(data.get("processedAt")),
        )


@dataclass(frozen=True)
class SubscriptionStatusSync:
    subscription_id: str
    status: str
    next_billing_date: Optional[datetime]
    payment_method: str
    activation_date: str
    last_sync_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_subscription(cls, subscription_id: str, sub: Subscription) -> "SubscriptionStatusSync":
        return cls(
            subscription_id=subscription_id,
            status=sub.status,
            next_billing_date=sub.next_billing_date,
            payment_method=sub.payment_method,
            activation_date=sub.activation_date,
        )
