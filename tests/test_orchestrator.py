from decimal import Decimal
from unittest.mock import patch

import pytest

from avr.models import Donation
from avr.services.errors import (
    GatewayRejected,
    GatewayUnreachable,
    InvalidDonationTransition,
    PaymentPendingVerification,
)
from avr.services.gateway_types import PaymentResponse
from avr.services.orchestrator import PENDING_VERIFICATION, SubscriptionOrchestrator, plan_name_for
from avr.services.plan_cache import PaymentPlanCache
from avr.services.simulated_gateway import SimulatedGatewayClient


def test_plan_name():
    assert plan_name_for(Decimal("25")) == "Monthly Donation - $25.00"


def test_monthly_25_end_to_end(orchestrator, gateway, make_donation, db):
    d = make_donation(donation_type="recurring")
    sub = orchestrator.setup_recurring_donation(d, "CST100")

    db.session.expire_all()
    row = db.session.get(Donation, d.id)
    assert row.status == "completed"
    assert row.subscription_id == sub.id
    assert row.subscription_status == "active"
    assert row.customer_id == "CST100"
    assert row.payment_plan_id == gateway.subscriptions[sub.id].payment_plan_id
    assert row.next_billing_date is not None
    assert row.activation_date is not None
    assert gateway.plans[row.payment_plan_id].recurring_amount == Decimal("25.00")


def test_same_amount_reuses_one_plan(orchestrator, gateway, make_donation):
    a = make_donation(donation_type="recurring", donor_email="a@example.org")
    b = make_donation(donation_type="recurring", donor_email="b@example.org")

    sub_a = orchestrator.setup_recurring_donation(a, "CST-A")
    sub_b = orchestrator.setup_recurring_donation(b, "CST-B")

    assert gateway.call_count("create_payment_plan") == 1
    assert gateway.call_count("create_subscription") == 2
    assert sub_a.payment_plan_id == sub_b.payment_plan_id


def test_different_amounts_get_different_plans(orchestrator, gateway, make_donation):
    orchestrator.setup_recurring_donation(make_donation(donation_type="recurring"), "CST1")
    orchestrator.setup_recurring_donation(
        make_donation(donation_type="recurring", amount=Decimal("50")), "CST2"
    )
    assert gateway.call_count("create_payment_plan") == 2


def test_addons_included_in_plan_amount(orchestrator, gateway, make_donation):
    d = make_donation(donation_type="recurring", amount=Decimal("20"))
    d.add_addon("newsletter", 5)
    orchestrator.setup_recurring_donation(d, "CST1")

    plan = next(iter(gateway.plans.values()))
    assert plan.recurring_amount == Decimal("25.00")


def test_setup_rejects_one_time(orchestrator, make_donation):
    with pytest.raises(InvalidDonationTransition):
        orchestrator.setup_recurring_donation(make_donation(), "CST1")


def test_setup_rejected_marks_failed(orchestrator, gateway, make_donation):
    d = make_donation(donation_type="recurring")
    with patch.object(gateway, "create_subscription", side_effect=GatewayRejected("bad customer", status_code=400)):
        with pytest.raises(GatewayRejected):
            orchestrator.setup_recurring_donation(d, "CST1")

    assert d.status == "failed"
    assert "bad customer" in d.payment_failure_reason


def test_setup_unreachable_leaves_pending(orchestrator, gateway, make_donation):
    d = make_donation(donation_type="recurring")
    with patch.object(gateway, "create_subscription", side_effect=GatewayUnreachable("timeout")):
        with pytest.raises(GatewayUnreachable):
            orchestrator.setup_recurring_donation(d, "CST1")

    assert d.status == "pending"
    assert d.payment_failure_reason.startswith("gateway unreachable")


def test_setup_commit_failure_keeps_subscription_id(orchestrator, gateway, make_donation, db):
    d = make_donation(donation_type="recurring")
    with patch("avr.services.orchestrator.tx_commit", side_effect=RuntimeError("disk full")):
        with pytest.raises(RuntimeError):
            orchestrator.setup_recurring_donation(d, "CST1")

    (sub_id,) = gateway.subscriptions.keys()
    db.session.expire_all()
    row = db.session.get(Donation, d.id)
    assert row.status == "pending"
    assert row.subscription_id is None
    assert sub_id in row.payment_failure_reason
    assert row.last_payment_attempt is not None
    assert gateway.call_count("create_subscription") == 1


def test_one_time_approved(orchestrator, make_donation):
    d = make_donation(amount=Decimal("40"))
    resp = orchestrator.process_one_time_donation(d, "CST1", "tok_1")

    assert resp.approved
    assert d.status == "completed"
    assert d.transaction_id == resp.transaction_id
    assert d.customer_id == "CST1"


def test_one_time_declined(orchestrator, gateway, make_donation):
    d = make_donation()
    declined = PaymentResponse(transaction_id="t9", status="DECLINED", amount=Decimal("25"))
    with patch.object(gateway, "process_payment", return_value=declined):
        resp = orchestrator.process_one_time_donation(d, "CST1", "tok_1")

    assert not resp.approved
    assert d.status == "failed"
    assert d.payment_failure_reason == "payment DECLINED"


def test_one_time_unknown_outcome_is_pending_verification(orchestrator, gateway, make_donation):
    d = make_donation()
    with patch.object(gateway, "process_payment", side_effect=GatewayUnreachable("read timeout")):
        with pytest.raises(PaymentPendingVerification):
            orchestrator.process_one_time_donation(d, "CST1", "tok_1")

    assert d.status == "pending"
    assert d.payment_failure_reason == PENDING_VERIFICATION

    with pytest.raises(PaymentPendingVerification):
        orchestrator.process_one_time_donation(d, "CST1", "tok_1")
    assert gateway.call_count("process_payment") == 0


def test_cancel_updates_every_row(orchestrator, make_donation, db):
    head = make_donation(donation_type="recurring")
    sub = orchestrator.setup_recurring_donation(head, "CST1")
    make_donation(donation_type="recurring", subscription_id=sub.id, status="completed", transaction_id="txn_2")

    rows = orchestrator.cancel_recurring_donation(head)

    assert rows == 2
    statuses = {r.subscription_status for r in db.session.query(Donation).filter_by(subscription_id=sub.id)}
    assert statuses == {"cancelled"}


def test_cancel_without_subscription(orchestrator, make_donation):
    with pytest.raises(InvalidDonationTransition):
        orchestrator.cancel_recurring_donation(make_donation(donation_type="recurring"))


def test_retry_payment(orchestrator, gateway, make_donation):
    d = make_donation(donation_type="recurring")
    orchestrator.setup_recurring_donation(d, "CST1")
    result = orchestrator.retry_subscription_payment(d)
    assert result.status == "APPROVED"
    assert d.payment_retry_count == 0

    with patch.object(gateway, "process_subscription_payment", side_effect=GatewayRejected("nsf", status_code=402)):
        with pytest.raises(GatewayRejected):
            orchestrator.retry_subscription_payment(d)
    assert d.payment_retry_count == 1


def test_retry_refused_after_max(orchestrator, make_donation):
    d = make_donation(donation_type="recurring", subscription_id="9001", payment_retry_count=3)
    with pytest.raises(InvalidDonationTransition):
        orchestrator.retry_subscription_payment(d)


def test_plan_miss_sweeps_expired_plans():
    now = [1000.0]
    cache = PaymentPlanCache(ttl_seconds=60, clock=lambda: now[0])
    orch = SubscriptionOrchestrator(SimulatedGatewayClient(), cache)

    orch.resolve_plan(Decimal("10"))
    orch.resolve_plan(Decimal("20"))
    assert len(cache) == 2

    now[0] += 120
    orch.resolve_plan(Decimal("30"))
    assert len(cache) == 1
