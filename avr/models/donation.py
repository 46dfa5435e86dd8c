from __future__ import annotations

# -----------------------------------------------------------------------------
# Donation Model
# One row per charge. A recurring subscription's first charge is the "head"
# row; every later charge arrives by webhook as a new row sharing the same
# subscription_id.
# -----------------------------------------------------------------------------
import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from avr.extensions import db
from avr.services.errors import InvalidDonationTransition
from avr.services.gateway_types import parse_datetime

from .mixins import TimestampMixin, utcnow

DONATION_TYPES = ("one_time", "recurring")
DONATION_STATUSES = ("pending", "completed", "failed", "refunded")
TERMINAL_STATUSES = frozenset({"failed", "refunded"})

MAX_PAYMENT_RETRIES = 3

_CENTS = Decimal("0.01")


def _money(value: Any) -> Decimal:
    return Decimal(str(value if value is not None else "0")).quantize(_CENTS, rounding=ROUND_HALF_UP)


def _split(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return raw.split(",")


class Donation(db.Model, TimestampMixin):
    __tablename__ = "donations"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_donations_amount_nonneg"),
        CheckConstraint("payment_retry_count >= 0", name="ck_donations_retry_nonneg"),
        Index("ix_donations_subscription_created", "subscription_id", "created_at"),
    )

    # ---- Identifiers ----
    id: Mapped[str] = mapped_column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[Optional[str]] = mapped_column(db.String(36), nullable=True, index=True)

    # ---- Financials ----
    amount: Mapped[Decimal] = mapped_column(
        db.Numeric(12, 2, asdecimal=True),
        nullable=False,
        default=Decimal("0.00"),
    )
    currency: Mapped[str] = mapped_column(
        db.String(3),
        nullable=False,
        default="USD",
        doc="ISO currency code (USD, CAD).",
    )

    # ---- Donor ----
    donor_name: Mapped[str] = mapped_column(db.String(160), nullable=False)
    donor_email: Mapped[str] = mapped_column(db.String(160), nullable=False, index=True)
    donor_phone: Mapped[Optional[str]] = mapped_column(db.String(40), nullable=True)
    address_line1: Mapped[Optional[str]] = mapped_column(db.String(200), nullable=True)
    address_line2: Mapped[Optional[str]] = mapped_column(db.String(200), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(db.String(100), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(db.String(60), nullable=True)
    zip: Mapped[Optional[str]] = mapped_column(db.String(20), nullable=True)
    comments: Mapped[Optional[str]] = mapped_column(db.String(1000), nullable=True)

    donation_type: Mapped[str] = mapped_column(
        db.String(20), nullable=False, default="one_time", index=True
    )
    status: Mapped[str] = mapped_column(
        db.String(20), nullable=False, default="pending", index=True
    )

    # ---- Add-ons (parallel comma-joined lists) ----
    addon_ids: Mapped[Optional[str]] = mapped_column(db.String(500), nullable=True)
    addon_amounts: Mapped[Optional[str]] = mapped_column(db.String(500), nullable=True)

    # ---- Gateway ids ----
    transaction_id: Mapped[Optional[str]] = mapped_column(
        db.String(120),
        nullable=True,
        unique=True,
        index=True,
        doc="Gateway transaction id; unique so a replayed charge cannot land twice.",
    )
    customer_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True, index=True)
    payment_plan_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True, index=True)

    # ---- Recurring mirrors ----
    subscription_status: Mapped[Optional[str]] = mapped_column(db.String(40), nullable=True)
    activation_date: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)
    next_billing_date: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(db.String(40), nullable=True)

    # ---- Failure tracking ----
    payment_retry_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    last_payment_attempt: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)
    payment_failure_reason: Mapped[Optional[str]] = mapped_column(db.String(500), nullable=True)

    # ---- Status sync ----
    last_status_sync: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)
    sync_error: Mapped[Optional[str]] = mapped_column(db.String(500), nullable=True)

    # ==========================================================
    # Add-ons
    # ==========================================================
    def add_addon(self, addon_id: str, amount: Any) -> None:
        addon_id = str(addon_id).strip()
        if not addon_id or "," in addon_id:
            raise ValueError("add-on id must be non-empty and contain no commas")
        ids = _split(self.addon_ids)
        amounts = _split(self.addon_amounts)
        ids.append(addon_id)
        amounts.append(str(_money(amount)))
        self.addon_ids = ",".join(ids)
        self.addon_amounts = ",".join(amounts)

    def remove_addon(self, addon_id: str) -> None:
        """Drop every entry for ``addon_id``; the rest keep their order."""
        pairs = [(i, a) for i, a in zip(_split(self.addon_ids), _split(self.addon_amounts)) if i != addon_id]
        if not pairs:
            self.addon_ids = None
            self.addon_amounts = None
            return
        self.addon_ids = ",".join(i for i, _ in pairs)
        self.addon_amounts = ",".join(a for _, a in pairs)

    @property
    def addons(self) -> List[Tuple[str, Decimal]]:
        out: List[Tuple[str, Decimal]] = []
        for addon_id, raw in zip(_split(self.addon_ids), _split(self.addon_amounts)):
            if addon_id:
                out.append((addon_id, _money(raw)))
        return out

    @property
    def total_amount(self) -> Decimal:
        total = _money(self.amount)
        for _, amt in self.addons:
            total += amt
        return total

    # ==========================================================
    # Recurring / retries
    # ==========================================================
    @property
    def is_recurring(self) -> bool:
        return self.donation_type == "recurring"

    @property
    def is_permanently_failed(self) -> bool:
        return (self.payment_retry_count or 0) >= MAX_PAYMENT_RETRIES

    @property
    def can_retry_payment(self) -> bool:
        return self.is_recurring and bool(self.subscription_id) and not self.is_permanently_failed

    def record_payment_failure(self, reason: str) -> None:
        self.payment_retry_count = min((self.payment_retry_count or 0) + 1, MAX_PAYMENT_RETRIES)
        self.last_payment_attempt = utcnow()
        self.payment_failure_reason = reason

    def attach_subscription(
        self,
        subscription_id: str,
        *,
        customer_id: Optional[str] = None,
        payment_plan_id: Optional[str] = None,
        status: Optional[str] = None,
        activation_date: Optional[datetime] = None,
        next_billing_date: Optional[datetime] = None,
        payment_method: Optional[str] = None,
    ) -> None:
        if not self.is_recurring:
            raise InvalidDonationTransition(
                f"donation {self.id} is {self.donation_type}; only recurring donations take a subscription"
            )
        self.subscription_id = str(subscription_id)
        if customer_id is not None:
            self.customer_id = customer_id
        if payment_plan_id is not None:
            self.payment_plan_id = str(payment_plan_id)
        if status is not None:
            self.subscription_status = status
        if activation_date is not None:
            self.activation_date = activation_date
        if next_billing_date is not None:
            self.next_billing_date = next_billing_date
        if payment_method is not None:
            self.payment_method = payment_method

    # ==========================================================
    # Status transitions
    # ==========================================================
    def _transition(self, new_status: str) -> None:
        current = self.status or "pending"
        if current in TERMINAL_STATUSES and current != new_status:
            raise InvalidDonationTransition(f"donation {self.id} is {current}; cannot become {new_status}")
        self.status = new_status

    def mark_completed(self, transaction_id: Optional[str] = None) -> None:
        self._transition("completed")
        if transaction_id:
            self.transaction_id = transaction_id
        self.payment_failure_reason = None

    def mark_failed(self, reason: str) -> None:
        self._transition("failed")
        self.payment_failure_reason = reason
        self.last_payment_attempt = utcnow()

    def mark_refunded(self) -> None:
        if self.status not in ("completed", "refunded"):
            raise InvalidDonationTransition(f"donation {self.id} is {self.status}; only completed donations refund")
        self._transition("refunded")

    # ==========================================================
    # Status sync
    # ==========================================================
    def apply_status_sync(self, sync: Any) -> None:
        self.subscription_status = sync.status or self.subscription_status
        if sync.next_billing_date is not None:
            self.next_billing_date = sync.next_billing_date
        if sync.payment_method:
            self.payment_method = sync.payment_method
        activated = parse_datetime(sync.activation_date)
        if activated is not None:
            self.activation_date = activated
        self.last_status_sync = sync.last_sync_at
        self.sync_error = None

    def record_sync_error(self, message: str) -> None:
        self.sync_error = (message or "")[:500]
        self.last_status_sync = utcnow()

    # ==========================================================
    # Serialization
    # ==========================================================
    def as_dict(self) -> Dict[str, Any]:
        def _iso(dt: Optional[datetime]) -> Optional[str]:
            return dt.isoformat() if dt else None

        return {
            "id": self.id,
            "amount": str(_money(self.amount)),
            "total_amount": str(self.total_amount),
            "currency": self.currency,
            "donor_name": self.donor_name,
            "donor_email": self.donor_email,
            "donation_type": self.donation_type,
            "status": self.status,
            "addons": [{"id": i, "amount": str(a)} for i, a in self.addons],
            "transaction_id": self.transaction_id,
            "subscription_id": self.subscription_id,
            "subscription_status": self.subscription_status,
            "activation_date": _iso(self.activation_date),
            "next_billing_date": _iso(self.next_billing_date),
            "payment_method": self.payment_method,
            "payment_retry_count": self.payment_retry_count or 0,
            "payment_failure_reason": self.payment_failure_reason,
            "last_status_sync": _iso(self.last_status_sync),
            "sync_error": self.sync_error,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<Donation {self.id} {self.donation_type} {self.status} {self.amount} {self.currency}>"

