# avr/services/orchestrator.py
"""
Donation charge flows.

Recurring setup is plan -> subscription -> persist -> receipt. The plan step
goes through the shared PaymentPlanCache so donors giving the same monthly
amount share one gateway plan.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import update as sa_update

from avr.extensions import db, safe_commit, tx_commit
from avr.models.donation import Donation
from avr.models.mixins import utcnow
from avr.services.errors import (
    GatewayRejected,
    GatewayUnreachable,
    InvalidDonationTransition,
    PaymentPendingVerification,
)
from avr.services.gateway import GatewayAPI
from avr.services.gateway_types import (
    PaymentPlan,
    PaymentProcedureResult,
    PaymentRequest,
    PaymentResponse,
    Subscription,
    SubscriptionRequest,
    parse_datetime,
)
from avr.services.plan_cache import PaymentPlanCache, plan_cache_key
from avr.services.receipts import send_donation_receipt

log = logging.getLogger(__name__)

PENDING_VERIFICATION = "pending verification"


def plan_name_for(amount: Decimal) -> str:
    return f"Monthly Donation - ${Decimal(amount):.2f}"


class SubscriptionOrchestrator:
    def __init__(self, gateway: GatewayAPI, plan_cache: PaymentPlanCache, currency: Optional[str] = None) -> None:
        self.gateway = gateway
        self.plan_cache = plan_cache
        self.currency = (currency or gateway.currency or "USD").upper()

    # ----------------------------
    # Plans
    # ----------------------------
    def resolve_plan(self, amount: Decimal) -> PaymentPlan:
        """Cached plan for this exact amount, creating one on a miss.

        Two threads missing at once may both create a plan; the later
        insert wins and both plans stay valid at the gateway.
        """
        key = plan_cache_key(amount, self.currency)
        plan, found = self.plan_cache.get(key)
        if found and plan is not None:
            log.info("Using cached payment plan %s for %s", plan.id, key)
            return plan

        self.plan_cache.clear()
        plan = self.gateway.create_payment_plan(amount, plan_name_for(amount))
        self.plan_cache.set(key, plan)
        log.info("Created and cached payment plan %s for %s", plan.id, key)
        return plan

    # ----------------------------
    # Recurring
    # ----------------------------
    def setup_recurring_donation(
        self,
        donation: Donation,
        customer_code: str,
        payment_method: str = "card",
    ) -> Subscription:
        if not donation.is_recurring:
            raise InvalidDonationTransition(f"donation {donation.id} is not recurring")
        if donation.status != "pending":
            raise InvalidDonationTransition(f"donation {donation.id} is already {donation.status}")

        amount = donation.total_amount
        try:
            plan = self.resolve_plan(amount)
            sub = self.gateway.create_subscription(
                SubscriptionRequest(
                    customer_code=customer_code,
                    payment_plan_id=plan.id,
                    amount=amount,
                    payment_method=payment_method,
                )
            )
        except GatewayRejected as e:
            log.warning("Recurring setup rejected for donation %s: %s", donation.id, e)
            donation.mark_failed(f"gateway rejected: {e}")
            tx_commit()
            raise
        except GatewayUnreachable as e:
            log.warning("Recurring setup outcome unknown for donation %s: %s", donation.id, e)
            donation.payment_failure_reason = f"gateway unreachable: {e}"
            donation.last_payment_attempt = utcnow()
            tx_commit()
            raise

        try:
            donation.attach_subscription(
                sub.id,
                customer_id=customer_code,
                payment_plan_id=plan.id,
                status=sub.status or "active",
                activation_date=parse_datetime(sub.activation_date) or utcnow(),
                next_billing_date=sub.next_billing_date,
                payment_method=sub.payment_method or payment_method,
            )
            donation.mark_completed()
            tx_commit()
        except Exception as e:
            db.session.rollback()
            log.error(
                "Subscription %s created for donation %s but not saved: %s", sub.id, donation.id, e
            )
            donation.payment_failure_reason = f"subscription {sub.id} created but not persisted: {e}"[:500]
            donation.last_payment_attempt = utcnow()
            safe_commit()
            raise

        log.info("Donation %s subscribed (%s) on plan %s", donation.id, sub.id, plan.id)

        send_donation_receipt(donation)
        return sub

    def cancel_recurring_donation(self, donation: Donation) -> int:
        """Cancel at the gateway and mirror ``cancelled`` onto every row of the subscription."""
        if not donation.subscription_id:
            raise InvalidDonationTransition(f"donation {donation.id} has no subscription")

        self.gateway.cancel_subscription(donation.subscription_id)
        res = db.session.execute(
            sa_update(Donation)
            .where(Donation.subscription_id == donation.subscription_id)
            .values(subscription_status="cancelled", updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        tx_commit()
        log.info("Subscription %s cancelled (%s rows)", donation.subscription_id, res.rowcount)
        return int(res.rowcount or 0)

    def retry_subscription_payment(self, donation: Donation) -> PaymentProcedureResult:
        if not donation.can_retry_payment:
            raise InvalidDonationTransition(
                f"donation {donation.id} cannot be retried (retries={donation.payment_retry_count})"
            )
        try:
            result = self.gateway.process_subscription_payment(donation.subscription_id)
        except GatewayRejected as e:
            donation.record_payment_failure(f"retry rejected: {e}")
            tx_commit()
            raise

        donation.last_payment_attempt = utcnow()
        if result.status and result.status.upper() != "APPROVED":
            donation.record_payment_failure(f"retry {result.status}")
        tx_commit()
        return result

    # ----------------------------
    # One-time
    # ----------------------------
    def process_one_time_donation(self, donation: Donation, customer_code: str, card_token: str) -> PaymentResponse:
        if donation.status != "pending":
            raise InvalidDonationTransition(f"donation {donation.id} is already {donation.status}")
        if donation.payment_failure_reason == PENDING_VERIFICATION:
            raise PaymentPendingVerification(donation.id)

        req = PaymentRequest(
            amount=donation.total_amount,
            currency=donation.currency or self.currency,
            customer_code=customer_code,
            card_token=card_token,
        )
        try:
            resp = self.gateway.process_payment(req)
        except GatewayRejected as e:
            log.warning("One-time charge rejected for donation %s: %s", donation.id, e)
            donation.mark_failed(f"gateway rejected: {e}")
            tx_commit()
            raise
        except GatewayUnreachable as e:
            log.error("One-time charge outcome unknown for donation %s: %s", donation.id, e)
            donation.payment_failure_reason = PENDING_VERIFICATION
            donation.last_payment_attempt = utcnow()
            tx_commit()
            raise PaymentPendingVerification(donation.id) from e

        donation.customer_id = customer_code
        if resp.approved:
            donation.mark_completed(resp.transaction_id or None)
            tx_commit()
            log.info("Donation %s approved (txn %s)", donation.id, resp.transaction_id)
            send_donation_receipt(donation)
        else:
            donation.mark_failed(f"payment {resp.status or 'declined'}")
            tx_commit()
            log.info("Donation %s not approved: %s", donation.id, resp.status)
        return resp
