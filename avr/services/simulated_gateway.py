# avr/services/simulated_gateway.py
"""Gateway stand-in for local development and tests. No network I/O."""

from __future__ import annotations

import collections
import itertools
import logging
import threading
import time
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Deque, Dict, List, Mapping

from avr.services.errors import GatewayRejected
from avr.services.gateway import GatewayAPI
from avr.services.gateway_types import (
    AddOn,
    AddOnRequest,
    PaymentPlan,
    PaymentProcedureResult,
    PaymentRequest,
    PaymentResponse,
    Subscription,
    SubscriptionAddOn,
    SubscriptionAddOnRequest,
    SubscriptionRequest,
)

log = logging.getLogger(__name__)

MAX_RECORDED_CALLS = 1000


def _next_month(d: date) -> datetime:
    # Good enough for simulated billing dates.
    return datetime(d.year, d.month, d.day) + timedelta(days=30)


class SimulatedGatewayClient(GatewayAPI):
    """
    Approves every charge and remembers what it created, so get/list/cancel
    behave consistently within one process.

    ``calls`` records (operation, args) for the most recent MAX_RECORDED_CALLS
    calls; tests use it to count plan creations.
    """

    def __init__(self, currency: str = "USD") -> None:
        self.currency = (currency or "USD").upper()
        self._ids = itertools.count(int(time.time()) % 1_000_000)
        self._lock = threading.Lock()
        self.plans: Dict[str, PaymentPlan] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.add_ons: Dict[str, AddOn] = {}
        self.subscription_add_ons: Dict[str, SubscriptionAddOn] = {}
        self.calls: Deque[tuple] = collections.deque(maxlen=MAX_RECORDED_CALLS)

    @property
    def mode(self) -> str:
        return "simulated"

    def _next_id(self) -> str:
        with self._lock:
            return str(next(self._ids))

    def _record(self, op: str, *args: Any) -> None:
        with self._lock:
            self.calls.append((op, args))

    def call_count(self, op: str) -> int:
        with self._lock:
            return sum(1 for name, _ in self.calls if name == op)

    # ---- payments ----
    def process_payment(self, req: PaymentRequest) -> PaymentResponse:
        self._record("process_payment", req.amount)
        return PaymentResponse(
            transaction_id=f"dev_txn_{time.time_ns()}",
            status="APPROVED",
            amount=req.amount,
            currency=req.currency,
            customer_code=req.customer_code,
        )

    # ---- plans + subscriptions ----
    def create_payment_plan(self, amount: Decimal, name: str) -> PaymentPlan:
        self._record("create_payment_plan", amount, name)
        plan = PaymentPlan(
            id=self._next_id(),
            name=name,
            recurring_amount=Decimal(amount).quantize(Decimal("0.01")),
            currency=self.currency,
            description=f"Dev plan for ${Decimal(amount):.2f}",
        )
        self.plans[plan.id] = plan
        return plan

    def create_subscription(self, req: SubscriptionRequest) -> Subscription:
        self._record("create_subscription", req.payment_plan_id, req.amount)
        activated = req.date_activated or date.today()
        sub = Subscription(
            id=self._next_id(),
            customer_id=req.customer_code,
            payment_plan_id=str(req.payment_plan_id),
            amount=req.amount,
            status="active",
            activation_date=activated.isoformat(),
            next_billing_date=_next_month(activated),
            payment_method=req.payment_method,
        )
        self.subscriptions[sub.id] = sub
        return sub

    def get_subscription(self, subscription_id: str) -> Subscription:
        self._record("get_subscription", subscription_id)
        sub = self.subscriptions.get(str(subscription_id))
        if sub is None:
            raise GatewayRejected("subscription not found", status_code=404, body="")
        return sub

    def cancel_subscription(self, subscription_id: str) -> None:
        self._record("cancel_subscription", subscription_id)
        sub = self.get_subscription(subscription_id)
        sub.status = "cancelled"

    def update_subscription(self, subscription_id: str, updates: Mapping[str, Any]) -> Subscription:
        self._record("update_subscription", subscription_id, dict(updates))
        sub = self.get_subscription(subscription_id)
        if "status" in updates:
            sub.status = str(updates["status"])
        if "recurringAmount" in updates:
            sub.amount = Decimal(str(updates["recurringAmount"])).quantize(Decimal("0.01"))
        if "paymentMethod" in updates:
            sub.payment_method = str(updates["paymentMethod"])
        return sub

    def list_subscriptions_by_customer(self, customer_id: str) -> List[Subscription]:
        self._record("list_subscriptions_by_customer", customer_id)
        return [s for s in self.subscriptions.values() if s.customer_id == customer_id]

    # ---- add-ons ----
    def create_add_on(self, req: AddOnRequest) -> AddOn:
        self._record("create_add_on", req.name)
        addon = AddOn(
            id=self._next_id(),
            name=req.name,
            amount=req.amount,
            description=req.description,
            type=req.type,
            quantity=req.quantity,
            status="active",
        )
        self.add_ons[addon.id] = addon
        return addon

    def get_add_on(self, add_on_id: str) -> AddOn:
        addon = self.add_ons.get(str(add_on_id))
        if addon is None:
            raise GatewayRejected("add-on not found", status_code=404, body="")
        return addon

    def update_add_on(self, add_on_id: str, updates: Mapping[str, Any]) -> AddOn:
        addon = self.get_add_on(add_on_id)
        if "name" in updates:
            addon.name = str(updates["name"])
        if "description" in updates:
            addon.description = str(updates["description"])
        if "amount" in updates:
            addon.amount = Decimal(str(updates["amount"])).quantize(Decimal("0.01"))
        return addon

    def delete_add_on(self, add_on_id: str) -> None:
        self.get_add_on(add_on_id)
        del self.add_ons[str(add_on_id)]

    def list_add_ons(self) -> List[AddOn]:
        return list(self.add_ons.values())

    def link_add_on_to_subscription(
        self, subscription_id: str, req: SubscriptionAddOnRequest
    ) -> SubscriptionAddOn:
        self.get_subscription(subscription_id)
        addon = self.get_add_on(req.add_on_id)
        link = SubscriptionAddOn(
            id=self._next_id(),
            subscription_id=str(subscription_id),
            add_on_id=addon.id,
            quantity=req.quantity,
            amount=addon.amount * req.quantity,
            status="active",
        )
        self.subscription_add_ons[f"{subscription_id}:{addon.id}"] = link
        return link

    def update_subscription_add_on(
        self, subscription_id: str, add_on_id: str, updates: Mapping[str, Any]
    ) -> SubscriptionAddOn:
        link = self.subscription_add_ons.get(f"{subscription_id}:{add_on_id}")
        if link is None:
            raise GatewayRejected("subscription add-on not found", status_code=404, body="")
        if "quantity" in updates:
            link.quantity = int(updates["quantity"])
        return link

    def delete_subscription_add_on(self, subscription_id: str, add_on_id: str) -> None:
        if self.subscription_add_ons.pop(f"{subscription_id}:{add_on_id}", None) is None:
            raise GatewayRejected("subscription add-on not found", status_code=404, body="")

    # ---- default payment methods ----
    def set_customer_card_default(self, customer_id: str, card_id: str) -> None:
        self._record("set_customer_card_default", customer_id, card_id)

    def set_customer_bank_account_default(self, customer_id: str, bank_account_id: str) -> None:
        self._record("set_customer_bank_account_default", customer_id, bank_account_id)

    # ---- procedures ----
    def process_subscription_payment(self, subscription_id: str) -> PaymentProcedureResult:
        self._record("process_subscription_payment", subscription_id)
        sub = self.get_subscription(subscription_id)
        return PaymentProcedureResult(
            transaction_id=f"dev_retry_{time.time_ns()}",
            status="APPROVED",
            amount=sub.amount,
            processed_at=datetime.now().isoformat(timespec="seconds"),
        )
