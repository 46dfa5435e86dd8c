from __future__ import annotations

from typing import Optional

from sqlalchemy import Index
from sqlalchemy.orm import Mapped, mapped_column

from avr.extensions import db
from avr.models.mixins import TimestampMixin


class WebhookEvent(db.Model, TimestampMixin):
    __tablename__ = "webhook_events"
    __table_args__ = (
        Index("ix_webhook_events_type_created", "type", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    event_id: Mapped[str] = mapped_column(
        db.String(120),
        unique=True,
        index=True,
        nullable=False,
        doc="Gateway webhook id (webhook-id header / body id)",
    )

    type: Mapped[str] = mapped_column(
        db.String(120),
        index=True,
        nullable=False,
        doc="subscription.charged, subscription.failed, ...",
    )

    subscription_id: Mapped[Optional[str]] = mapped_column(
        db.String(120),
        nullable=True,
        index=True,
    )

    transaction_id: Mapped[Optional[str]] = mapped_column(
        db.String(120),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.event_id} {self.type}>"
