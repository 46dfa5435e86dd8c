# avr/services/gateway.py
"""
Helcim REST v2 client.

GatewayAPI is the contract the rest of the app codes against; HelcimClient
talks to the real API and SimulatedGatewayClient (simulated_gateway.py)
stands in when no credential is configured. build_gateway_client() picks
one from app config.
"""

from __future__ import annotations

import abc
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

import requests

from avr.services.errors import (
    ConfigurationMissing,
    GatewayRejected,
    GatewayUnreachable,
    PlanOrSubscriptionMissing,
)
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
    SubscriptionStatusSync,
    money,
)
from avr.services.idempotency import IDEMPOTENCY_HEADER, new_idempotency_key

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.helcim.com/v2"
DEFAULT_TIMEOUT = 30


def mask_key(key: str) -> str:
    if len(key) > 10:
        return f"{key[:6]}...{key[-4:]}"
    return "***"


class GatewayAPI(abc.ABC):
    """Operations the donation flows need from the payment gateway."""

    currency: str = "USD"

    # ---- payments ----
    @abc.abstractmethod
    def process_payment(self, req: PaymentRequest) -> PaymentResponse: ...

    # ---- plans + subscriptions ----
    @abc.abstractmethod
    def create_payment_plan(self, amount: Decimal, name: str) -> PaymentPlan: ...

    @abc.abstractmethod
    def create_subscription(self, req: SubscriptionRequest) -> Subscription: ...

    @abc.abstractmethod
    def get_subscription(self, subscription_id: str) -> Subscription: ...

    @abc.abstractmethod
    def cancel_subscription(self, subscription_id: str) -> None: ...

    @abc.abstractmethod
    def update_subscription(self, subscription_id: str, updates: Mapping[str, Any]) -> Subscription: ...

    @abc.abstractmethod
    def list_subscriptions_by_customer(self, customer_id: str) -> List[Subscription]: ...

    # ---- add-ons ----
    @abc.abstractmethod
    def create_add_on(self, req: AddOnRequest) -> AddOn: ...

    @abc.abstractmethod
    def get_add_on(self, add_on_id: str) -> AddOn: ...

    @abc.abstractmethod
    def update_add_on(self, add_on_id: str, updates: Mapping[str, Any]) -> AddOn: ...

    @abc.abstractmethod
    def delete_add_on(self, add_on_id: str) -> None: ...

    @abc.abstractmethod
    def list_add_ons(self) -> List[AddOn]: ...

    @abc.abstractmethod
    def link_add_on_to_subscription(
        self, subscription_id: str, req: SubscriptionAddOnRequest
    ) -> SubscriptionAddOn: ...

    @abc.abstractmethod
    def update_subscription_add_on(
        self, subscription_id: str, add_on_id: str, updates: Mapping[str, Any]
    ) -> SubscriptionAddOn: ...

    @abc.abstractmethod
    def delete_subscription_add_on(self, subscription_id: str, add_on_id: str) -> None: ...

    # ---- default payment methods ----
    @abc.abstractmethod
    def set_customer_card_default(self, customer_id: str, card_id: str) -> None: ...

    @abc.abstractmethod
    def set_customer_bank_account_default(self, customer_id: str, bank_account_id: str) -> None: ...

    # ---- procedures ----
    @abc.abstractmethod
    def process_subscription_payment(self, subscription_id: str) -> PaymentProcedureResult: ...

    def sync_subscription_status(self, subscription_id: str) -> SubscriptionStatusSync:
        sub = self.get_subscription(subscription_id)
        return SubscriptionStatusSync.from_subscription(subscription_id, sub)

    @property
    def mode(self) -> str:
        return "live"


class HelcimClient(GatewayAPI):
    def __init__(
        self,
        api_token: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        currency: str = "USD",
        timeout: int = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not api_token:
            raise ConfigurationMissing("HELCIM_PRIVATE_API_KEY is not set")
        self.api_token = api_token
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.currency = (currency or "USD").upper()
        self.timeout = int(timeout or DEFAULT_TIMEOUT)
        self.session = session or requests.Session()
        log.info("Helcim API key loaded: %s", mask_key(api_token))

    # ----------------------------
    # Transport
    # ----------------------------
    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        expected: Iterable[int] = (200,),
        idempotent: bool = False,
    ) -> requests.Response:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "api-token": self.api_token,
        }
        if idempotent:
            key = new_idempotency_key()
            headers[IDEMPOTENCY_HEADER] = key
            log.debug("%s %s idempotency-key=%s", method, path, key)

        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(
                method,
                url,
                json=json,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            log.warning("Helcim %s %s unreachable: %s", method, path, e)
            raise GatewayUnreachable(f"{method} {path} failed: {e}") from e

        if resp.status_code not in tuple(expected):
            body = resp.text or ""
            log.warning("Helcim %s %s -> %s: %s", method, path, resp.status_code, body[:500])
            raise GatewayRejected(f"{method} {path} rejected", status_code=resp.status_code, body=body)
        return resp

    @staticmethod
    def _json(resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            # The call landed; its outcome cannot be read back.
            raise GatewayUnreachable(f"undecodable gateway response: {e}") from e

    @staticmethod
    def _unwrap_envelope(payload: Any, what: str) -> Dict[str, Any]:
        """Plan/subscription creation answers ``{"status": "ok", "data": [...]}``."""
        if not isinstance(payload, dict):
            raise GatewayRejected(f"unexpected {what} response shape", body=str(payload))
        status = str(payload.get("status") or "")
        if status != "ok":
            raise GatewayRejected(f"Helcim returned status {status!r} for {what}", body=str(payload))
        data = payload.get("data") or []
        if not data:
            raise PlanOrSubscriptionMissing(f"no {what} returned in Helcim response", body=str(payload))
        if not isinstance(data, list) or not isinstance(data[0], dict):
            raise GatewayRejected(f"unexpected {what} entry", body=str(payload))
        return data[0]

    @staticmethod
    def _first(payload: Any, what: str) -> Dict[str, Any]:
        if isinstance(payload, dict) and isinstance(payload.get("data"), list):
            payload = payload["data"]
        if isinstance(payload, list):
            if not payload:
                raise PlanOrSubscriptionMissing(f"no {what} returned in response", body="[]")
            if not isinstance(payload[0], dict):
                raise GatewayRejected(f"unexpected {what} entry", body=str(payload))
            return payload[0]
        if isinstance(payload, dict):
            return payload
        raise GatewayRejected(f"unexpected {what} response shape", body=str(payload))

    @staticmethod
    def _many(payload: Any) -> List[Dict[str, Any]]:
        if isinstance(payload, dict):
            payload = payload.get("data") or []
        return [p for p in (payload or []) if isinstance(p, dict)]

    # ----------------------------
    # Payments
    # ----------------------------
    def process_payment(self, req: PaymentRequest) -> PaymentResponse:
        resp = self._request("POST", "/payment/purchase", json=req.to_api())
        return PaymentResponse.from_api(self._json(resp))

    # ----------------------------
    # Plans + subscriptions
    # ----------------------------
    def create_payment_plan(self, amount: Decimal, name: str) -> PaymentPlan:
        body = {
            "paymentPlans": [
                {
                    "name": name,
                    "description": f"Monthly donation plan for ${money(amount):.2f}",
                    "type": "subscription",
                    "currency": self.currency,
                    "recurringAmount": money(amount),
                    "billingPeriod": "monthly",
                    "billingPeriodIncrements": 1,
                    "dateBilling": "Sign-up",
                    "termType": "forever",
                    "paymentMethod": "card",
                    "taxType": "no_tax",
                    "status": "active",
                }
            ]
        }
        resp = self._request("POST", "/payment-plans", json=body, expected=(200, 201), idempotent=True)
        plan = PaymentPlan.from_api(self._unwrap_envelope(self._json(resp), "payment plan"))
        log.info("Created payment plan %s (%s %s)", plan.id, plan.recurring_amount, plan.currency)
        return plan

    def create_subscription(self, req: SubscriptionRequest) -> Subscription:
        body = {"subscriptions": [req.to_api()]}
        resp = self._request("POST", "/subscriptions", json=body, expected=(200, 201), idempotent=True)
        sub = Subscription.from_api(self._unwrap_envelope(self._json(resp), "subscription"))
        log.info("Created subscription %s on plan %s", sub.id, req.payment_plan_id)
        return sub

    def get_subscription(self, subscription_id: str) -> Subscription:
        resp = self._request("GET", f"/subscriptions/{subscription_id}")
        return Subscription.from_api(self._first(self._json(resp), "subscription"))

    def cancel_subscription(self, subscription_id: str) -> None:
        self._request("DELETE", f"/subscriptions/{subscription_id}", expected=(204,))
        log.info("Cancelled subscription %s", subscription_id)

    def update_subscription(self, subscription_id: str, updates: Mapping[str, Any]) -> Subscription:
        row = dict(updates)
        row["id"] = subscription_id
        resp = self._request("PATCH", "/subscriptions", json={"subscriptions": [row]})
        return Subscription.from_api(self._first(self._json(resp), "subscription"))

    def list_subscriptions_by_customer(self, customer_id: str) -> List[Subscription]:
        resp = self._request("GET", "/subscriptions", params={"customerId": customer_id})
        return [Subscription.from_api(row) for row in self._many(self._json(resp))]

    # ----------------------------
    # Add-ons
    # ----------------------------
    def create_add_on(self, req: AddOnRequest) -> AddOn:
        resp = self._request("POST", "/add-ons", json={"addOns": [req.to_api()]}, expected=(201,))
        return AddOn.from_api(self._first(self._json(resp), "add-on"))

    def get_add_on(self, add_on_id: str) -> AddOn:
        resp = self._request("GET", f"/add-ons/{add_on_id}")
        return AddOn.from_api(self._first(self._json(resp), "add-on"))

    def update_add_on(self, add_on_id: str, updates: Mapping[str, Any]) -> AddOn:
        row = dict(updates)
        row["id"] = add_on_id
        resp = self._request("PATCH", "/add-ons", json={"addOns": [row]})
        return AddOn.from_api(self._first(self._json(resp), "add-on"))

    def delete_add_on(self, add_on_id: str) -> None:
        self._request("DELETE", f"/add-ons/{add_on_id}", expected=(204,))

    def list_add_ons(self) -> List[AddOn]:
        resp = self._request("GET", "/add-ons")
        return [AddOn.from_api(row) for row in self._many(self._json(resp))]

    def link_add_on_to_subscription(
        self, subscription_id: str, req: SubscriptionAddOnRequest
    ) -> SubscriptionAddOn:
        resp = self._request(
            "POST",
            f"/subscriptions/{subscription_id}/add-ons",
            json=req.to_api(),
            expected=(201,),
        )
        return SubscriptionAddOn.from_api(self._first(self._json(resp), "subscription add-on"))

    def update_subscription_add_on(
        self, subscription_id: str, add_on_id: str, updates: Mapping[str, Any]
    ) -> SubscriptionAddOn:
        resp = self._request(
            "PATCH",
            f"/subscriptions/{subscription_id}/add-ons/{add_on_id}",
            json=dict(updates),
        )
        return SubscriptionAddOn.from_api(self._first(self._json(resp), "subscription add-on"))

    def delete_subscription_add_on(self, subscription_id: str, add_on_id: str) -> None:
        self._request(
            "DELETE",
            f"/subscriptions/{subscription_id}/add-ons/{add_on_id}",
            expected=(204,),
        )

    # ----------------------------
    # Default payment methods
    # ----------------------------
    def set_customer_card_default(self, customer_id: str, card_id: str) -> None:
        self._request("PATCH", f"/customers/{customer_id}/cards/{card_id}/default")

    def set_customer_bank_account_default(self, customer_id: str, bank_account_id: str) -> None:
        self._request("PATCH", f"/customers/{customer_id}/bank-accounts/{bank_account_id}/default")

    # ----------------------------
    # Procedures
    # ----------------------------
    def process_subscription_payment(self, subscription_id: str) -> PaymentProcedureResult:
        resp = self._request("POST", f"/subscriptions/{subscription_id}/process-payment")
        return PaymentProcedureResult.from_api(self._first(self._json(resp), "payment"))


# ----------------------------
# Selection
# ----------------------------
def _truthy(v: Any) -> bool:
    return str(v).strip().lower() in {"1", "true", "yes", "on", "y"}


def build_gateway_client(config: Mapping[str, Any]) -> GatewayAPI:
    """
    Pick the gateway implementation for this process.

    - credential present: live client
    - no credential, development env, live testing off: simulated client
    - no credential, HELCIM_SIMULATED set: simulated client
    - anything else raises ConfigurationMissing
    """
    api_key = str(config.get("HELCIM_PRIVATE_API_KEY") or "").strip()
    env = str(config.get("ENV") or "").strip().lower()
    live_testing = _truthy(config.get("HELCIM_LIVE_TESTING", False))
    simulated = _truthy(config.get("HELCIM_SIMULATED", False))
    currency = str(config.get("HELCIM_CURRENCY") or "USD").upper()

    if api_key:
        if env == "development" and live_testing:
            log.warning("Helcim: development mode with LIVE TESTING enabled; using the real API")
        return HelcimClient(
            api_key,
            base_url=str(config.get("HELCIM_API_BASE_URL") or DEFAULT_BASE_URL),
            currency=currency,
            timeout=int(config.get("HELCIM_TIMEOUT") or DEFAULT_TIMEOUT),
        )

    from avr.services.simulated_gateway import SimulatedGatewayClient

    if env == "development" and not live_testing:
        log.warning(
            "!!! Helcim: HELCIM_PRIVATE_API_KEY not set in development; "
            "using SIMULATED gateway, no real charges will be made !!!"
        )
        return SimulatedGatewayClient(currency=currency)

    if simulated:
        log.warning("Helcim: HELCIM_SIMULATED=1; using SIMULATED gateway")
        return SimulatedGatewayClient(currency=currency)

    raise ConfigurationMissing(
        "HELCIM_PRIVATE_API_KEY is not set (set HELCIM_SIMULATED=1 to run without a gateway)"
    )


__all__ = ["GatewayAPI", "HelcimClient", "build_gateway_client", "mask_key"]
