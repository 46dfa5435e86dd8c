#!/usr/bin/env python3
"""
Donations Blueprint (Helcim): thin HTTP layer over the payment services

Mount: /donations  (register blueprint with url_prefix="/donations")

Endpoints:
  POST /donations                      create a pending donation
  GET  /donations?userId=<id>          a donor's subscriptions
  GET  /donations/<id>                 status read
  POST /donations/<id>/process         charge (one-time) or subscribe (recurring)
  POST /donations/<id>/cancel          cancel the recurring subscription
  POST /donations/<id>/sync            pull subscription status from the gateway
  POST /donations/<id>/retry           retry a failed subscription charge
  POST /donations/webhook              gateway webhook receiver

Contracts:
- API-style JSON: never caches; consistent ok/message/error shape.
- Declined one-time charges answer 402 with a generic message; the gateway's
  reason stays in the donation row and the logs.
- A charge whose outcome is unknown answers 202 and is never retried here.
- Webhook: 401 on bad signature, 500 on internal failure so the gateway redelivers.
"""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, cast

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import select

from avr.extensions import db, tx_commit
from avr.models import Donation
from avr.services.errors import (
    GatewayRejected,
    GatewayUnreachable,
    InvalidDonationTransition,
    PaymentPendingVerification,
    SignatureInvalid,
    UnknownSubscription,
)
from avr.services.webhooks import verify_signature

bp = Blueprint("donations", __name__)

MIN_AMOUNT = Decimal("1.00")
MAX_AMOUNT = Decimal("100000.00")


# ----------------------------
# Helpers
# ----------------------------
def _cfg(key: str, default: Any = "") -> Any:
    v = current_app.config.get(key, default)
    return default if v is None else v


def _is_email(s: str) -> bool:
    s = (s or "").strip()
    return ("@" in s) and ("." in s.split("@")[-1])


def _request_payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, dict) and data:
        return cast(Dict[str, Any], data)
    if request.form:
        return cast(Dict[str, Any], request.form.to_dict(flat=True))
    return {}


def _str_opt(data: Dict[str, Any], *keys: str, limit: int = 200) -> Optional[str]:
    for k in keys:
        v = data.get(k)
        if v is not None and str(v).strip():
            return str(v).strip()[:limit]
    return None


def _parse_amount(raw: Any) -> Optional[Decimal]:
    if raw is None or str(raw).strip() == "":
        return None
    try:
        amt = Decimal(str(raw).strip().lstrip("$").replace(",", ""))
    except (InvalidOperation, ValueError):
        return None
    if not amt.is_finite():
        return None
    return amt.quantize(Decimal("0.01"))


def _json_response(payload: Dict[str, Any], status: int = 200):
    resp = jsonify(payload)
    resp.status_code = int(status)
    resp.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, max-age=0")
    resp.headers.setdefault("Pragma", "no-cache")
    resp.headers.setdefault("Expires", "0")
    return resp


def _json_ok(payload: Dict[str, Any], status: int = 200):
    payload.setdefault("ok", True)
    return _json_response(payload, status)


def _json_error(message: str, status: int, extra: Optional[Dict[str, Any]] = None):
    body: Dict[str, Any] = {"ok": False, "message": message, "error": {"message": message}}
    if extra:
        body["error"].update(extra)
        for k, v in extra.items():
            if k not in body:
                body[k] = v
    return _json_response(body, status)


def _svc(name: str) -> Any:
    return current_app.extensions[name]


def _load_donation(donation_id: str) -> Optional[Donation]:
    return db.session.get(Donation, str(donation_id))


def _gateway_error(e: Exception, *, one_time: bool = False):
    """Map gateway failures to HTTP."""
    if isinstance(e, GatewayUnreachable):
        return _json_error("Payment service is temporarily unavailable. Please try again shortly.", 503)
    if one_time:
        return _json_error("Your payment was declined.", 402)
    status_code = getattr(e, "status_code", None)
    return _json_error("Payment gateway rejected the request.", 502, extra={"gatewayStatus": status_code})


# ----------------------------
# Create / read
# ----------------------------
@bp.post("")
def create_donation():
    data = _request_payload()

    amount = _parse_amount(data.get("amount"))
    if amount is None:
        return _json_error("amount is required", 400)
    if amount < MIN_AMOUNT or amount > MAX_AMOUNT:
        return _json_error(f"amount must be between {MIN_AMOUNT} and {MAX_AMOUNT}", 400)

    donor_name = _str_opt(data, "donorName", "donor_name", "name", limit=160)
    donor_email = _str_opt(data, "donorEmail", "donor_email", "email", limit=160)
    if not donor_name:
        return _json_error("donorName is required", 400)
    if not donor_email or not _is_email(donor_email):
        return _json_error("a valid donorEmail is required", 400)

    kind = (_str_opt(data, "donationType", "donation_type") or "one_time").lower()
    if kind in {"monthly", "recurring"}:
        kind = "recurring"
    elif kind in {"one_time", "one-time", "onetime", "once"}:
        kind = "one_time"
    else:
        return _json_error("donationType must be one_time or recurring", 400)

    currency = (_str_opt(data, "currency", limit=3) or _cfg("HELCIM_CURRENCY", "USD")).upper()

    d = Donation(
        user_id=_str_opt(data, "userId", "user_id", limit=36),
        amount=amount,
        currency=currency,
        donor_name=donor_name,
        donor_email=donor_email,
        donor_phone=_str_opt(data, "donorPhone", "donor_phone", limit=40),
        address_line1=_str_opt(data, "addressLine1", "address_line1"),
        address_line2=_str_opt(data, "addressLine2", "address_line2"),
        city=_str_opt(data, "city", limit=100),
        state=_str_opt(data, "state", limit=60),
        zip=_str_opt(data, "zip", "postalCode", limit=20),
        comments=_str_opt(data, "comments", limit=1000),
        donation_type=kind,
        status="pending",
    )

    addons = data.get("addons") or []
    if not isinstance(addons, list):
        return _json_error("addons must be a list", 400)
    for item in addons:
        if not isinstance(item, dict):
            return _json_error("each add-on needs id and amount", 400)
        addon_amount = _parse_amount(item.get("amount"))
        if addon_amount is None or addon_amount < 0:
            return _json_error("each add-on needs id and amount", 400)
        try:
            d.add_addon(str(item.get("id") or ""), addon_amount)
        except ValueError as e:
            return _json_error(str(e), 400)

    db.session.add(d)
    tx_commit()
    current_app.logger.info("donations: created %s (%s %s %s)", d.id, kind, d.amount, d.currency)
    return _json_ok({"donation": d.as_dict()}, 201)


@bp.get("")
def list_subscriptions():
    """A donor's recurring subscriptions, one head row per subscription."""
    user_id = (request.args.get("userId") or "").strip()
    if not user_id:
        return _json_error("userId is required", 400)

    rows = db.session.execute(
        select(Donation)
        .where(Donation.user_id == user_id, Donation.subscription_id.is_not(None))
        .order_by(Donation.created_at.desc())
    ).scalars().all()

    heads: Dict[str, Donation] = {}
    for row in rows:
        heads[row.subscription_id] = row
    return _json_ok({"subscriptions": [d.as_dict() for d in heads.values()]})


@bp.get("/<donation_id>")
def get_donation(donation_id: str):
    d = _load_donation(donation_id)
    if not d:
        return _json_error("Donation not found", 404)
    return _json_ok({"donation": d.as_dict()})


# ----------------------------
# Charge / subscribe
# ----------------------------
@bp.post("/<donation_id>/process")
def process_donation(donation_id: str):
    d = _load_donation(donation_id)
    if not d:
        return _json_error("Donation not found", 404)

    data = _request_payload()
    customer_code = _str_opt(data, "customerCode", "customer_code", limit=120)
    card_token = _str_opt(data, "cardToken", "card_token", limit=500)
    payment_method = _str_opt(data, "paymentMethod", limit=40) or "card"
    if not customer_code:
        return _json_error("customerCode is required", 400)

    orchestrator = _svc("orchestrator")

    if d.is_recurring:
        try:
            sub = orchestrator.setup_recurring_donation(d, customer_code, payment_method)
        except InvalidDonationTransition as e:
            return _json_error(str(e), 409)
        except (GatewayRejected, GatewayUnreachable) as e:
            current_app.logger.warning("donations: recurring setup failed for %s: %s", d.id, e)
            return _gateway_error(e)
        return _json_ok({"donation": d.as_dict(), "subscriptionId": sub.id})

    if not card_token:
        return _json_error("cardToken is required", 400)

    try:
        resp = orchestrator.process_one_time_donation(d, customer_code, card_token)
    except InvalidDonationTransition as e:
        return _json_error(str(e), 409)
    except PaymentPendingVerification:
        return _json_ok(
            {
                "pending": True,
                "message": "We could not confirm your payment yet. Please do not resubmit; we will email you once it is confirmed.",
                "donation": d.as_dict(),
            },
            202,
        )
    except GatewayRejected as e:
        current_app.logger.info("donations: one-time charge declined for %s: %s", d.id, e)
        return _gateway_error(e, one_time=True)

    if not resp.approved:
        return _json_error("Your payment was declined.", 402, extra={"donation": d.as_dict()})
    return _json_ok({"donation": d.as_dict(), "transactionId": resp.transaction_id})


# ----------------------------
# Subscription maintenance
# ----------------------------
@bp.post("/<donation_id>/cancel")
def cancel_donation(donation_id: str):
    d = _load_donation(donation_id)
    if not d:
        return _json_error("Donation not found", 404)
    try:
        rows = _svc("orchestrator").cancel_recurring_donation(d)
    except InvalidDonationTransition as e:
        return _json_error(str(e), 409)
    except (GatewayRejected, GatewayUnreachable) as e:
        return _gateway_error(e)
    return _json_ok({"donation": d.as_dict(), "rowsUpdated": rows})


@bp.post("/<donation_id>/sync")
def sync_donation(donation_id: str):
    d = _load_donation(donation_id)
    if not d:
        return _json_error("Donation not found", 404)
    try:
        _svc("reconciler").refresh_donation(d)
    except InvalidDonationTransition as e:
        return _json_error(str(e), 409)
    except (GatewayRejected, GatewayUnreachable) as e:
        return _gateway_error(e)
    return _json_ok({"donation": d.as_dict()})


@bp.post("/<donation_id>/retry")
def retry_donation(donation_id: str):
    d = _load_donation(donation_id)
    if not d:
        return _json_error("Donation not found", 404)
    try:
        result = _svc("orchestrator").retry_subscription_payment(d)
    except InvalidDonationTransition as e:
        return _json_error(str(e), 409)
    except (GatewayRejected, GatewayUnreachable) as e:
        return _gateway_error(e)
    return _json_ok({"donation": d.as_dict(), "transactionId": result.transaction_id, "status": result.status})


# ----------------------------
# Webhook
# ----------------------------
@bp.post("/webhook")
def gateway_webhook():
    body = request.get_data(cache=True, as_text=False)
    msg_id = (request.headers.get("webhook-id") or "").strip()
    timestamp = (request.headers.get("webhook-timestamp") or "").strip()
    signature = (request.headers.get("webhook-signature") or "").strip()

    try:
        verify_signature(
            str(_cfg("HELCIM_WEBHOOK_VERIFIER_TOKEN", "")),
            msg_id,
            timestamp,
            body,
            signature,
            tolerance_seconds=int(_cfg("HELCIM_WEBHOOK_TOLERANCE_SECONDS", 300)),
        )
    except SignatureInvalid as e:
        current_app.logger.warning("donations: webhook %s rejected: %s", msg_id or "?", e)
        return _json_error("Invalid signature", 401)

    try:
        event = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return _json_error("Invalid JSON", 400)
    if not isinstance(event, dict):
        return _json_error("Invalid JSON", 400)

    event_id = str(event.get("id") or msg_id)
    try:
        result = _svc("webhook_handler").handle(event_id, event)
    except UnknownSubscription as e:
        current_app.logger.warning("donations: webhook %s deferred: %s", event_id, e)
        return ("", 500)
    except ValueError as e:
        return _json_error(str(e), 400)
    except Exception:
        current_app.logger.exception("donations: webhook %s processing failed (will retry)", event_id)
        return ("", 500)

    return _json_ok({"status": result})
