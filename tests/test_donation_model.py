from datetime import datetime
from decimal import Decimal

import pytest

from avr.models import MAX_PAYMENT_RETRIES
from avr.services.errors import InvalidDonationTransition
from avr.services.gateway_types import SubscriptionStatusSync


def test_defaults(make_donation):
    d = make_donation()
    assert len(d.id) == 36
    assert d.status == "pending"
    assert d.payment_retry_count == 0
    assert d.created_at is not None


def test_addons_are_parallel_lists(make_donation, db):
    d = make_donation(amount=Decimal("25.00"))
    d.add_addon("gala", Decimal("15"))
    d.add_addon("tshirt", "7.5")
    db.session.commit()

    assert d.addon_ids == "gala,tshirt"
    assert d.addon_amounts == "15.00,7.50"
    assert d.addons == [("gala", Decimal("15.00")), ("tshirt", Decimal("7.50"))]
    assert d.total_amount == Decimal("47.50")

    d.remove_addon("gala")
    assert d.addons == [("tshirt", Decimal("7.50"))]
    d.remove_addon("tshirt")
    assert d.addon_ids is None
    assert d.total_amount == Decimal("25.00")


def test_addon_id_with_comma_rejected(make_donation):
    d = make_donation()
    with pytest.raises(ValueError):
        d.add_addon("a,b", 1)
    with pytest.raises(ValueError):
        d.add_addon("  ", 1)


def test_retry_count_caps_and_blocks_retry(make_donation):
    d = make_donation(donation_type="recurring", subscription_id="9001")
    assert d.can_retry_payment

    for i in range(5):
        d.record_payment_failure(f"declined {i}")

    assert d.payment_retry_count == MAX_PAYMENT_RETRIES
    assert d.is_permanently_failed
    assert not d.can_retry_payment
    assert d.payment_failure_reason == "declined 4"
    assert d.status == "pending"


def test_one_time_cannot_take_subscription(make_donation):
    d = make_donation(donation_type="one_time")
    with pytest.raises(InvalidDonationTransition):
        d.attach_subscription("9001")
    assert not d.can_retry_payment


def test_terminal_statuses(make_donation):
    d = make_donation()
    d.mark_failed("card declined")
    with pytest.raises(InvalidDonationTransition):
        d.mark_completed("txn_1")

    d2 = make_donation()
    with pytest.raises(InvalidDonationTransition):
        d2.mark_refunded()
    d2.mark_completed("txn_2")
    d2.mark_refunded()
    assert d2.status == "refunded"


def test_apply_status_sync(make_donation):
    d = make_donation(donation_type="recurring", subscription_id="9001")
    d.sync_error = "old error"
    sync = SubscriptionStatusSync(
        subscription_id="9001",
        status="paused",
        next_billing_date=datetime(2026, 12, 1),
        payment_method="card",
        activation_date="2026-11-01",
    )
    d.apply_status_sync(sync)

    assert d.subscription_status == "paused"
    assert d.next_billing_date == datetime(2026, 12, 1)
    assert d.activation_date == datetime(2026, 11, 1)
    assert d.last_status_sync == sync.last_sync_at
    assert d.sync_error is None


def test_as_dict(make_donation):
    d = make_donation(amount=Decimal("10"))
    d.add_addon("gala", 5)
    data = d.as_dict()
    assert data["amount"] == "10.00"
    assert data["total_amount"] == "15.00"
    assert data["addons"] == [{"id": "gala", "amount": "5.00"}]
