from __future__ import annotations

from avr.extensions import db
from avr.models.donation import MAX_PAYMENT_RETRIES, Donation
from avr.models.webhook_event import WebhookEvent

__all__ = ["db", "Donation", "WebhookEvent", "MAX_PAYMENT_RETRIES"]
