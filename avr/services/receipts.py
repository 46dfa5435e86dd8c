# avr/services/receipts.py
"""Donation receipt email, sent fire-and-forget through Flask-Mail."""

from __future__ import annotations

import logging
from concurrent.futures import Future
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from flask import current_app

from avr.extensions import send_email_async
from avr.models.mixins import utcnow

log = logging.getLogger(__name__)


RECEIPT_TEMPLATE = """\
Dear {donor_name},

Thank you for your {donation_type_label} donation to {organization_name}.

Amount:            {currency} {amount}
Date:              {donation_date}
Transaction ID:    {transaction_id}
{recurring_block}
Tax-deductible amount: {currency} {amount}
No goods or services were provided in exchange for this contribution.

{organization_name}
EIN: {organization_ein}
{organization_address}

Donor address on file:
{donor_address}
"""

RECURRING_BLOCK = """\
Subscription ID:   {subscription_id}
Next billing date: {next_billing_date}
"""


@dataclass
class ReceiptData:
    donor_email: str
    donor_name: str
    amount: Decimal
    currency: str
    donation_type: str
    donation_date: datetime
    transaction_id: str = ""
    subscription_id: str = ""
    next_billing_date: Optional[datetime] = None
    organization_name: str = ""
    organization_ein: str = ""
    organization_address: str = ""
    donor_address: str = ""

    @property
    def donation_type_label(self) -> str:
        return "monthly" if self.donation_type == "recurring" else "one-time"

    def render(self) -> str:
        ctx = asdict(self)
        ctx["donation_type_label"] = self.donation_type_label
        ctx["donation_date"] = self.donation_date.strftime("%B %d, %Y")
        ctx["transaction_id"] = self.transaction_id or "(pending)"
        ctx["recurring_block"] = ""
        if self.subscription_id:
            nbd = self.next_billing_date.strftime("%B %d, %Y") if self.next_billing_date else "-"
            ctx["recurring_block"] = RECURRING_BLOCK.format(
                subscription_id=self.subscription_id, next_billing_date=nbd
            )
        return RECEIPT_TEMPLATE.format(**ctx)


def _donor_address(donation: Any) -> str:
    line3 = " ".join(p for p in (donation.city, donation.state, donation.zip) if p)
    lines = [donation.address_line1, donation.address_line2, line3]
    return "\n".join(p for p in lines if p) or "-"


def build_receipt(donation: Any, config: Any) -> ReceiptData:
    return ReceiptData(
        donor_email=donation.donor_email,
        donor_name=donation.donor_name,
        amount=donation.total_amount,
        currency=donation.currency,
        donation_type=donation.donation_type,
        donation_date=donation.created_at or utcnow(),
        transaction_id=donation.transaction_id or "",
        subscription_id=(donation.subscription_id or "") if donation.is_recurring else "",
        next_billing_date=donation.next_billing_date,
        organization_name=config.get("ORGANIZATION_NAME") or "",
        organization_ein=config.get("ORGANIZATION_EIN") or "",
        organization_address=config.get("ORGANIZATION_ADDRESS") or "",
        donor_address=_donor_address(donation),
    )


def send_donation_receipt(donation: Any) -> Optional[Future]:
    """
    Queue a receipt for a completed donation. Never raises; failures are
    logged and the donation's status is unaffected.
    """
    app = current_app._get_current_object()  # type: ignore[attr-defined]
    if not app.config.get("RECEIPTS_ENABLED", True):
        log.debug("Receipts disabled; skipping donation %s", donation.id)
        return None

    try:
        receipt = build_receipt(donation, app.config)
        subject = f"Your donation receipt from {receipt.organization_name}".strip()
        fut = send_email_async(app, subject, [receipt.donor_email], body=receipt.render())
    except Exception as e:
        log.error("Could not queue receipt for donation %s: %s", donation.id, e, exc_info=True)
        return None

    log.info("Receipt queued for donation %s to %s", donation.id, receipt.donor_email)
    return fut
