import base64
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError

from avr.models import Donation, WebhookEvent
from avr.services.errors import SignatureInvalid
from avr.services.webhooks import compute_signature, verify_signature

SECRET = base64.b64encode(b"unit-test-key").decode("ascii")
BODY = b'{"id":"evt_1","type":"subscription.charged"}'


def _sig(msg_id="msg_1", ts="1700000000", body=BODY, secret=SECRET):
    return "v1," + compute_signature(secret, msg_id, ts, body)


# ----------------------------
# Signature helper
# ----------------------------
def test_valid_signature():
    verify_signature(SECRET, "msg_1", "1700000000", BODY, _sig(), tolerance_seconds=0)


def test_whsec_prefix_accepted():
    verify_signature("whsec_" + SECRET, "msg_1", "1700000000", BODY, _sig(), tolerance_seconds=0)


def test_any_matching_entry_in_header():
    header = "v1,bm90LWl0 v2,whatever " + _sig()
    verify_signature(SECRET, "msg_1", "1700000000", BODY, header, tolerance_seconds=0)


@pytest.mark.parametrize(
    "msg_id, ts, body, header",
    [
        ("msg_2", "1700000000", BODY, None),
        ("msg_1", "1700000001", BODY, None),
        ("msg_1", "1700000000", BODY + b" ", None),
        ("msg_1", "1700000000", BODY, "v1,AAAA"),
        ("msg_1", "1700000000", BODY, ""),
        ("", "1700000000", BODY, None),
        ("msg_1", "soon", BODY, None),
    ],
)
def test_signature_mismatch(msg_id, ts, body, header):
    if header is None:
        header = _sig()
    with pytest.raises(SignatureInvalid):
        verify_signature(SECRET, msg_id, ts, body, header, tolerance_seconds=0)


def test_timestamp_tolerance():
    verify_signature(SECRET, "msg_1", "1700000000", BODY, _sig(), tolerance_seconds=300, now=1700000200)
    with pytest.raises(SignatureInvalid):
        verify_signature(SECRET, "msg_1", "1700000000", BODY, _sig(), tolerance_seconds=300, now=1700000301)


def test_missing_secret():
    with pytest.raises(SignatureInvalid):
        verify_signature("", "msg_1", "1700000000", BODY, _sig(), tolerance_seconds=0)


# ----------------------------
# Endpoint
# ----------------------------
@pytest.fixture
def head(make_donation):
    return make_donation(
        donation_type="recurring",
        status="completed",
        subscription_id="9001",
        subscription_status="active",
        customer_id="CST1",
        payment_plan_id="77",
    )


def _charged(event_id="evt_1", txn="txn_100", amount="25.00"):
    return {
        "id": event_id,
        "type": "subscription.charged",
        "data": {
            "subscriptionId": "9001",
            "transactionId": txn,
            "amount": amount,
            "currency": "USD",
            "nextBillingDate": "2026-12-18",
        },
    }


def _rows(db):
    db.session.expire_all()
    return db.session.query(Donation).filter_by(subscription_id="9001").all()


def test_charged_creates_completed_row(post_webhook, head, db):
    resp = post_webhook(_charged())
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "processed"

    rows = _rows(db)
    assert len(rows) == 2
    new = next(r for r in rows if r.id != head.id)
    assert new.status == "completed"
    assert new.transaction_id == "txn_100"
    assert new.amount == Decimal("25.00")
    assert new.donor_email == head.donor_email
    assert new.next_billing_date.isoformat().startswith("2026-12-18")
    assert db.session.get(Donation, head.id).next_billing_date.isoformat().startswith("2026-12-18")


def test_replayed_event_is_noop(post_webhook, head, db):
    assert post_webhook(_charged()).get_json()["status"] == "processed"
    second = post_webhook(_charged())

    assert second.status_code == 200
    assert second.get_json()["status"] == "duplicate"
    assert len(_rows(db)) == 2
    assert db.session.query(WebhookEvent).count() == 1


def test_same_transaction_under_new_event_id(post_webhook, head, db):
    post_webhook(_charged("evt_1"))
    resp = post_webhook(_charged("evt_2"), msg_id="msg_2")

    assert resp.get_json()["status"] == "duplicate"
    assert len(_rows(db)) == 2


@pytest.mark.parametrize("amount", ["-5.00", "abc", "NaN"])
def test_bad_charge_amount_is_bad_request(post_webhook, head, db, amount):
    resp = post_webhook(_charged(amount=amount))

    assert resp.status_code == 400
    assert len(_rows(db)) == 1
    assert db.session.query(WebhookEvent).count() == 0


def test_unrelated_constraint_failure_asks_for_redelivery(app, post_webhook, head, db):
    handler = app.extensions["webhook_handler"]
    boom = IntegrityError("INSERT INTO donations", {}, Exception("CHECK constraint failed"))
    with patch.object(handler, "_on_charged", side_effect=boom):
        resp = post_webhook(_charged())

    assert resp.status_code == 500
    assert resp.data == b""
    assert len(_rows(db)) == 1
    assert db.session.query(WebhookEvent).count() == 0


def test_bad_signature_rejected_without_mutation(post_webhook, head, db):
    resp = post_webhook(_charged(), signature="v1,Zm9yZ2Vk")

    assert resp.status_code == 401
    assert len(_rows(db)) == 1
    assert db.session.query(WebhookEvent).count() == 0


def test_failed_increments_retry_with_reason(post_webhook, head, db):
    payload = {
        "id": "evt_fail_1",
        "type": "subscription.failed",
        "data": {"subscriptionId": "9001", "amount": "25.00", "reason": "Card expired (code 54)"},
    }
    resp = post_webhook(payload)
    assert resp.status_code == 200

    db.session.expire_all()
    h = db.session.get(Donation, head.id)
    assert h.payment_retry_count == 1
    assert h.payment_failure_reason == "Card expired (code 54)"

    failed = [r for r in _rows(db) if r.status == "failed"]
    assert len(failed) == 1
    assert failed[0].payment_failure_reason == "Card expired (code 54)"


def test_cancelled_marks_every_row(post_webhook, head, db):
    post_webhook(_charged())
    resp = post_webhook({"id": "evt_c", "type": "subscription.cancelled", "data": {"subscriptionId": "9001"}}, msg_id="msg_c")

    assert resp.status_code == 200
    assert {r.subscription_status for r in _rows(db)} == {"cancelled"}


def test_unknown_type_is_ignored(post_webhook, head, db):
    resp = post_webhook({"id": "evt_x", "type": "customer.updated", "data": {}})
    assert resp.get_json()["status"] == "ignored"
    assert len(_rows(db)) == 1


def test_unknown_subscription_asks_for_redelivery(post_webhook, db):
    resp = post_webhook(_charged())
    assert resp.status_code == 500
    assert resp.data == b""
    assert db.session.query(WebhookEvent).count() == 0


def test_missing_subscription_id_is_bad_request(post_webhook, head):
    resp = post_webhook({"id": "evt_m", "type": "subscription.charged", "data": {"transactionId": "t"}})
    assert resp.status_code == 400


def test_invalid_json_is_bad_request(client):
    token = client.application.config["HELCIM_WEBHOOK_VERIFIER_TOKEN"]
    body = b"not json"
    resp = client.post(
        "/donations/webhook",
        data=body,
        content_type="application/json",
        headers={
            "webhook-id": "msg_j",
            "webhook-timestamp": "1700000000",
            "webhook-signature": "v1," + compute_signature(token, "msg_j", "1700000000", body),
        },
    )
    assert resp.status_code == 400


# ----------------------------
# Card transactions
# ----------------------------
def _card(event_id="evt_card_1", txn="txn_card_1"):
    return {"id": event_id, "type": "cardTransaction", "data": {"transactionId": txn, "amount": "40.00"}}


def test_card_transaction_completes_pending_donation(post_webhook, make_donation, db):
    d = make_donation(amount=Decimal("40"), transaction_id="txn_card_1")

    resp = post_webhook(_card())
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "processed"

    db.session.expire_all()
    row = db.session.get(Donation, d.id)
    assert row.status == "completed"
    assert row.last_payment_attempt is not None


def test_card_transaction_falls_back_to_event_id(post_webhook, make_donation, db):
    d = make_donation(transaction_id="evt_card_9")

    resp = post_webhook({"id": "evt_card_9", "type": "cardTransaction"})
    assert resp.get_json()["status"] == "processed"
    db.session.expire_all()
    assert db.session.get(Donation, d.id).status == "completed"


def test_card_transaction_for_completed_donation_is_duplicate(post_webhook, make_donation):
    make_donation(status="completed", transaction_id="txn_card_1")
    assert post_webhook(_card()).get_json()["status"] == "duplicate"


def test_card_transaction_for_unknown_charge_is_ignored(post_webhook, db):
    resp = post_webhook(_card(txn="txn_external"))

    assert resp.status_code == 200
    assert resp.get_json()["status"] == "ignored"
    assert db.session.query(WebhookEvent).count() == 1


def test_card_transaction_leaves_failed_donation_alone(post_webhook, make_donation, db):
    d = make_donation(status="failed", transaction_id="txn_card_1", payment_failure_reason="declined")

    assert post_webhook(_card()).get_json()["status"] == "ignored"
    db.session.expire_all()
    assert db.session.get(Donation, d.id).status == "failed"
