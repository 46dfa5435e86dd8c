import json
from decimal import Decimal

import pytest

from avr import create_app
from avr.extensions import db as _db
from avr.models import Donation
from avr.services.webhooks import compute_signature


@pytest.fixture
def app():
    app = create_app("testing")
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def gateway(app):
    return app.extensions["gateway"]


@pytest.fixture
def orchestrator(app):
    return app.extensions["orchestrator"]


@pytest.fixture
def make_donation(db):
    def _make(**overrides):
        fields = dict(
            amount=Decimal("25.00"),
            currency="USD",
            donor_name="Pat Rivera",
            donor_email="pat@example.org",
            address_line1="12 Main St",
            city="Tulsa",
            state="OK",
            zip="74103",
            donation_type="one_time",
            status="pending",
        )
        fields.update(overrides)
        d = Donation(**fields)
        db.session.add(d)
        db.session.commit()
        return d

    return _make


@pytest.fixture
def post_webhook(client):
    def _post(payload, *, msg_id="msg_1", timestamp="1700000000", secret=None, signature=None):
        body = json.dumps(payload).encode("utf-8")
        if secret is None:
            secret = client.application.config["HELCIM_WEBHOOK_VERIFIER_TOKEN"]
        if signature is None:
            signature = "v1," + compute_signature(secret, msg_id, timestamp, body)
        return client.post(
            "/donations/webhook",
            data=body,
            content_type="application/json",
            headers={
                "webhook-id": msg_id,
                "webhook-timestamp": timestamp,
                "webhook-signature": signature,
            },
        )

    return _post
