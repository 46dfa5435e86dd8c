from unittest.mock import patch

import pytest

from avr.models import Donation
from avr.services.errors import GatewayUnreachable, InvalidDonationTransition


@pytest.fixture
def reconciler(app):
    return app.extensions["reconciler"]


def test_refresh_copies_gateway_view(reconciler, orchestrator, gateway, make_donation, db):
    d = make_donation(donation_type="recurring")
    sub = orchestrator.setup_recurring_donation(d, "CST1")
    gateway.update_subscription(sub.id, {"status": "paused", "paymentMethod": "bank"})

    status = reconciler.refresh_donation(d)

    db.session.expire_all()
    row = db.session.get(Donation, d.id)
    assert status.status == "paused"
    assert row.subscription_status == "paused"
    assert row.payment_method == "bank"
    assert row.last_status_sync is not None
    assert row.sync_error is None


def test_refresh_failure_records_error_and_keeps_mirror(reconciler, orchestrator, gateway, make_donation, db):
    d = make_donation(donation_type="recurring")
    orchestrator.setup_recurring_donation(d, "CST1")

    with patch.object(gateway, "get_subscription", side_effect=GatewayUnreachable("timeout")):
        with pytest.raises(GatewayUnreachable):
            reconciler.refresh_donation(d)

    db.session.expire_all()
    row = db.session.get(Donation, d.id)
    assert row.subscription_status == "active"
    assert "timeout" in row.sync_error


def test_refresh_requires_subscription(reconciler, make_donation):
    with pytest.raises(InvalidDonationTransition):
        reconciler.refresh_donation(make_donation(donation_type="recurring"))
