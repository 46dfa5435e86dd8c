# avr/services/webhooks.py
"""
Inbound gateway webhooks.

Signatures follow the Standard Webhooks scheme the gateway uses:

    webhook-signature: v1,<base64 hmac-sha256> [v1,<...> ...]
    signed content:    "{webhook-id}.{webhook-timestamp}.{raw body}"
    secret:            base64, optionally prefixed with "whsec_"

Each event id is stored in webhook_events in the same transaction as the
donation changes it causes, so a replay is a no-op.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError

from avr.extensions import db
from avr.models.donation import Donation
from avr.models.mixins import utcnow
from avr.models.webhook_event import WebhookEvent
from avr.services.errors import SignatureInvalid, UnknownSubscription
from avr.services.gateway_types import parse_datetime
from avr.services.receipts import send_donation_receipt

log = logging.getLogger(__name__)

EVENT_CHARGED = "subscription.charged"
EVENT_FAILED = "subscription.failed"
EVENT_CANCELLED = "subscription.cancelled"
EVENT_CARD_TRANSACTION = "cardTransaction"

RESULT_PROCESSED = "processed"
RESULT_DUPLICATE = "duplicate"
RESULT_IGNORED = "ignored"


# ----------------------------
# Signature verification
# ----------------------------
def _decode_secret(secret: str) -> bytes:
    s = (secret or "").strip()
    if s.startswith("whsec_"):
        s = s[len("whsec_"):]
    if not s:
        raise SignatureInvalid("webhook verifier token is not configured")
    try:
        return base64.b64decode(s, validate=True)
    except (binascii.Error, ValueError) as e:
        raise SignatureInvalid("webhook verifier token is not valid base64") from e


def compute_signature(secret: str, msg_id: str, timestamp: str, body: bytes) -> str:
    key = _decode_secret(secret)
    signed = f"{msg_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(key, signed, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(
    secret: str,
    msg_id: str,
    timestamp: str,
    body: bytes,
    signature_header: str,
    *,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> None:
    """Raise SignatureInvalid unless one ``v1`` entry in the header matches."""
    if not msg_id or not timestamp or not signature_header:
        raise SignatureInvalid("missing webhook-id, webhook-timestamp or webhook-signature header")

    try:
        ts = int(str(timestamp).strip())
    except ValueError as e:
        raise SignatureInvalid("webhook-timestamp is not an integer") from e

    if tolerance_seconds and tolerance_seconds > 0:
        current = time.time() if now is None else now
        if abs(current - ts) > tolerance_seconds:
            raise SignatureInvalid("webhook-timestamp outside tolerance")

    expected = compute_signature(secret, msg_id, str(timestamp).strip(), body)
    for entry in signature_header.split():
        version, _, sig = entry.partition(",")
        if version == "v1" and hmac.compare_digest(sig.encode("ascii", "ignore"), expected.encode("ascii")):
            return
    raise SignatureInvalid("no matching v1 signature")


# ----------------------------
# Event handling
# ----------------------------
def _amount(raw: Any) -> Optional[Decimal]:
    """Payload amount; absent means "use the head row's amount"."""
    if raw is None or raw == "":
        return None
    try:
        amt = Decimal(str(raw))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"webhook amount {raw!r} is not a number") from e
    if not amt.is_finite() or amt < 0:
        raise ValueError(f"webhook amount {raw!r} is not a valid charge amount")
    return amt.quantize(Decimal("0.01"))


def _head_donation(subscription_id: str) -> Optional[Donation]:
    """Oldest row for the subscription: the donation that created it."""
    return db.session.execute(
        select(Donation)
        .where(Donation.subscription_id == subscription_id)
        .order_by(Donation.created_at.asc())
        .limit(1)
    ).scalar_one_or_none()


def _already_recorded(event_id: str, transaction_id: str) -> bool:
    if db.session.execute(
        select(WebhookEvent.id).where(WebhookEvent.event_id == event_id)
    ).first() is not None:
        return True
    if not transaction_id:
        return False
    return db.session.execute(
        select(Donation.id).where(Donation.transaction_id == transaction_id)
    ).first() is not None


class WebhookEventHandler:
    """Applies verified gateway events to donation rows."""

    def handle(self, event_id: str, payload: Mapping[str, Any]) -> str:
        """
        Returns "processed", "duplicate" or "ignored".

        Raises on internal failure after rolling back; the caller answers
        500 so the gateway redelivers.
        """
        event_id = str(event_id or payload.get("id") or "").strip()
        etype = str(payload.get("type") or "").strip()
        data: Dict[str, Any] = payload.get("data") if isinstance(payload.get("data"), dict) else {}  # type: ignore[assignment]
        if not event_id:
            raise ValueError("webhook event has no id")

        if db.session.execute(
            select(WebhookEvent.id).where(WebhookEvent.event_id == event_id)
        ).first() is not None:
            log.info("Webhook %s (%s) already processed", event_id, etype)
            return RESULT_DUPLICATE

        subscription_id = str(data.get("subscriptionId") or "").strip()
        transaction_id = str(data.get("transactionId") or "").strip()

        db.session.add(
            WebhookEvent(
                event_id=event_id[:120],
                type=(etype or "unknown")[:120],
                subscription_id=subscription_id or None,
                transaction_id=transaction_id or None,
            )
        )

        receipt_for: Optional[Donation] = None
        try:
            if etype == EVENT_CHARGED:
                receipt_for = self._on_charged(subscription_id, transaction_id, data)
                result = RESULT_PROCESSED if receipt_for is not None else RESULT_DUPLICATE
            elif etype == EVENT_FAILED:
                self._on_failed(subscription_id, transaction_id, data)
                result = RESULT_PROCESSED
            elif etype == EVENT_CANCELLED:
                self._on_cancelled(subscription_id)
                result = RESULT_PROCESSED
            elif etype == EVENT_CARD_TRANSACTION:
                receipt_for, result = self._on_card_transaction(transaction_id or event_id)
            else:
                log.info("Ignoring webhook %s of type %r", event_id, etype)
                result = RESULT_IGNORED
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            if _already_recorded(event_id, transaction_id):
                log.info("Webhook %s (%s) lost a race with a concurrent delivery", event_id, etype)
                return RESULT_DUPLICATE
            log.exception("Webhook %s (%s) violated a constraint", event_id, etype)
            raise
        except ValueError as e:
            db.session.rollback()
            log.warning("Webhook %s (%s) rejected: %s", event_id, etype, e)
            raise
        except Exception:
            db.session.rollback()
            log.exception("Webhook %s (%s) failed", event_id, etype)
            raise

        log.info("Webhook %s (%s) %s", event_id, etype, result)
        if receipt_for is not None:
            send_donation_receipt(receipt_for)
        return result

    # ---- transitions ----
    def _require_head(self, subscription_id: str) -> Donation:
        if not subscription_id:
            raise ValueError("webhook data has no subscriptionId")
        head = _head_donation(subscription_id)
        if head is None:
            raise UnknownSubscription(f"no donation for subscription {subscription_id}")
        return head

    def _spawn(self, head: Donation, amount: Optional[Decimal], currency: str) -> Donation:
        return Donation(
            user_id=head.user_id,
            amount=amount if amount is not None else head.amount,
            currency=(currency or head.currency or "USD").upper(),
            donor_name=head.donor_name,
            donor_email=head.donor_email,
            donor_phone=head.donor_phone,
            address_line1=head.address_line1,
            address_line2=head.address_line2,
            city=head.city,
            state=head.state,
            zip=head.zip,
            donation_type="recurring",
            status="pending",
            customer_id=head.customer_id,
            payment_plan_id=head.payment_plan_id,
            subscription_id=head.subscription_id,
            subscription_status=head.subscription_status,
            payment_method=head.payment_method,
            activation_date=head.activation_date,
            next_billing_date=head.next_billing_date,
        )

    def _on_charged(self, subscription_id: str, transaction_id: str, data: Mapping[str, Any]) -> Optional[Donation]:
        head = self._require_head(subscription_id)

        if transaction_id and db.session.execute(
            select(Donation.id).where(Donation.transaction_id == transaction_id)
        ).first() is not None:
            log.info("Charge %s already recorded for subscription %s", transaction_id, subscription_id)
            return None

        row = self._spawn(head, _amount(data.get("amount")), str(data.get("currency") or ""))
        row.mark_completed(transaction_id or None)
        row.last_payment_attempt = utcnow()

        next_billing = parse_datetime(data.get("nextBillingDate"))
        if next_billing is not None:
            row.next_billing_date = next_billing
            head.next_billing_date = next_billing

        db.session.add(row)
        return row

    def _on_failed(self, subscription_id: str, transaction_id: str, data: Mapping[str, Any]) -> None:
        head = self._require_head(subscription_id)
        reason = str(data.get("reason") or data.get("failureReason") or "")

        row = self._spawn(head, _amount(data.get("amount")), str(data.get("currency") or ""))
        if transaction_id:
            row.transaction_id = transaction_id
        row.mark_failed(reason)
        db.session.add(row)

        head.record_payment_failure(reason)
        log.warning(
            "Subscription %s charge failed (retry %s): %s",
            subscription_id,
            head.payment_retry_count,
            reason,
        )

    def _on_card_transaction(self, transaction_id: str) -> Tuple[Optional[Donation], str]:
        """Confirm a charge the gateway settled for a donation we already know."""
        donation = db.session.execute(
            select(Donation).where(Donation.transaction_id == transaction_id)
        ).scalar_one_or_none()
        if donation is None:
            log.warning("No donation for card transaction %s; may be an external charge", transaction_id)
            return None, RESULT_IGNORED
        if donation.status == "completed":
            return None, RESULT_DUPLICATE
        if donation.status != "pending":
            log.warning(
                "Card transaction %s settled for donation %s which is %s; leaving it alone",
                transaction_id,
                donation.id,
                donation.status,
            )
            return None, RESULT_IGNORED

        donation.mark_completed(transaction_id)
        donation.last_payment_attempt = utcnow()
        return donation, RESULT_PROCESSED

    def _on_cancelled(self, subscription_id: str) -> None:
        if not subscription_id:
            raise ValueError("webhook data has no subscriptionId")
        db.session.execute(
            sa_update(Donation)
            .where(Donation.subscription_id == subscription_id)
            .values(subscription_status="cancelled", updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
