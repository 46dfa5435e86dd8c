from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

from avr.services.receipts import build_receipt, send_donation_receipt


def test_one_time_receipt_text(app, make_donation):
    d = make_donation(amount=Decimal("40"), transaction_id="txn_9", status="completed")
    text = build_receipt(d, app.config).render()

    assert "Dear Pat Rivera" in text
    assert "one-time donation to American Veterans Rebuilding" in text
    assert "USD 40.00" in text
    assert "txn_9" in text
    assert "Tulsa OK 74103" in text
    assert "Subscription ID" not in text


def test_recurring_receipt_has_subscription_block(app, make_donation):
    d = make_donation(
        donation_type="recurring",
        status="completed",
        subscription_id="9001",
        next_billing_date=datetime(2026, 11, 18),
    )
    text = build_receipt(d, app.config).render()

    assert "monthly donation" in text
    assert "Subscription ID:   9001" in text
    assert "November 18, 2026" in text


def test_disabled_receipts_send_nothing(app, make_donation):
    with patch("avr.services.receipts.send_email_async") as send:
        assert send_donation_receipt(make_donation()) is None
    send.assert_not_called()


def test_receipt_is_queued(app, make_donation):
    app.config["RECEIPTS_ENABLED"] = True
    d = make_donation(status="completed")
    fut = send_donation_receipt(d)

    assert fut is not None
    assert fut.result(timeout=10) is True


def test_mail_failure_never_raises(app, make_donation):
    app.config["RECEIPTS_ENABLED"] = True
    with patch("avr.services.receipts.send_email_async", side_effect=RuntimeError("smtp down")):
        assert send_donation_receipt(make_donation()) is None
