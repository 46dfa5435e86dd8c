# avr/services/reconciler.py
"""Pull-based subscription status sync."""

from __future__ import annotations

import logging

from avr.extensions import safe_commit, tx_commit
from avr.models.donation import Donation
from avr.services.errors import GatewayError, InvalidDonationTransition
from avr.services.gateway import GatewayAPI
from avr.services.gateway_types import SubscriptionStatusSync

log = logging.getLogger(__name__)


class StatusReconciler:
    def __init__(self, gateway: GatewayAPI) -> None:
        self.gateway = gateway

    def sync(self, subscription_id: str) -> SubscriptionStatusSync:
        return self.gateway.sync_subscription_status(subscription_id)

    def refresh_donation(self, donation: Donation) -> SubscriptionStatusSync:
        """
        Copy the gateway's view of the subscription onto ``donation``.

        On gateway failure the mirror fields are left alone, ``sync_error``
        is recorded, and the error is re-raised.
        """
        if not donation.subscription_id:
            raise InvalidDonationTransition(f"donation {donation.id} has no subscription to sync")

        try:
            status = self.sync(donation.subscription_id)
        except GatewayError as e:
            log.warning("Status sync failed for subscription %s: %s", donation.subscription_id, e)
            donation.record_sync_error(str(e))
            safe_commit()
            raise

        donation.apply_status_sync(status)
        tx_commit()
        log.info(
            "Synced subscription %s: status=%s next_billing=%s",
            status.subscription_id,
            status.status,
            status.next_billing_date,
        )
        return status
