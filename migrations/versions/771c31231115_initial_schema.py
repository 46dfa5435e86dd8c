"""initial schema

Revision ID: 771c31231115
Revises:
Create Date: 2026-10-18 09:12:40.118203
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "771c31231115"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # --- donations ---
    op.create_table(
        "donations",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("amount", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("donor_name", sa.String(length=160), nullable=False),
        sa.Column("donor_email", sa.String(length=160), nullable=False),
        sa.Column("donor_phone", sa.String(length=40), nullable=True),
        sa.Column("address_line1", sa.String(length=200), nullable=True),
        sa.Column("address_line2", sa.String(length=200), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("state", sa.String(length=60), nullable=True),
        sa.Column("zip", sa.String(length=20), nullable=True),
        sa.Column("comments", sa.String(length=1000), nullable=True),
        sa.Column("donation_type", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("addon_ids", sa.String(length=500), nullable=True),
        sa.Column("addon_amounts", sa.String(length=500), nullable=True),
        sa.Column("transaction_id", sa.String(length=120), nullable=True),
        sa.Column("customer_id", sa.String(length=120), nullable=True),
        sa.Column("payment_plan_id", sa.String(length=120), nullable=True),
        sa.Column("subscription_id", sa.String(length=120), nullable=True),
        sa.Column("subscription_status", sa.String(length=40), nullable=True),
        sa.Column("activation_date", sa.DateTime(), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(), nullable=True),
        sa.Column("payment_method", sa.String(length=40), nullable=True),
        sa.Column("payment_retry_count", sa.Integer(), nullable=False),
        sa.Column("last_payment_attempt", sa.DateTime(), nullable=True),
        sa.Column("payment_failure_reason", sa.String(length=500), nullable=True),
        sa.Column("last_status_sync", sa.DateTime(), nullable=True),
        sa.Column("sync_error", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_donations_amount_nonneg"),
        sa.CheckConstraint("payment_retry_count >= 0", name="ck_donations_retry_nonneg"),
    )
    with op.batch_alter_table("donations") as batch_op:
        batch_op.create_index(batch_op.f("ix_donations_user_id"), ["user_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_donor_email"), ["donor_email"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_donation_type"), ["donation_type"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_status"), ["status"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_transaction_id"), ["transaction_id"], unique=True)
        batch_op.create_index(batch_op.f("ix_donations_customer_id"), ["customer_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_subscription_id"), ["subscription_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_created_at"), ["created_at"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_updated_at"), ["updated_at"], unique=False)
        batch_op.create_index(
            "ix_donations_subscription_created", ["subscription_id", "created_at"], unique=False
        )

    # --- webhook_events ---
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("event_id", sa.String(length=120), nullable=False),
        sa.Column("type", sa.String(length=120), nullable=False),
        sa.Column("subscription_id", sa.String(length=120), nullable=True),
        sa.Column("transaction_id", sa.String(length=120), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    with op.batch_alter_table("webhook_events") as batch_op:
        batch_op.create_index(batch_op.f("ix_webhook_events_event_id"), ["event_id"], unique=True)
        batch_op.create_index(batch_op.f("ix_webhook_events_type"), ["type"], unique=False)
        batch_op.create_index(batch_op.f("ix_webhook_events_subscription_id"), ["subscription_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_webhook_events_created_at"), ["created_at"], unique=False)
        batch_op.create_index(batch_op.f("ix_webhook_events_updated_at"), ["updated_at"], unique=False)
        batch_op.create_index("ix_webhook_events_type_created", ["type", "created_at"], unique=False)


def downgrade():
    with op.batch_alter_table("webhook_events") as batch_op:
        batch_op.drop_index("ix_webhook_events_type_created")
        batch_op.drop_index(batch_op.f("ix_webhook_events_updated_at"))
        batch_op.drop_index(batch_op.f("ix_webhook_events_created_at"))
        batch_op.drop_index(batch_op.f("ix_webhook_events_subscription_id"))
        batch_op.drop_index(batch_op.f("ix_webhook_events_type"))
        batch_op.drop_index(batch_op.f("ix_webhook_events_event_id"))
    op.drop_table("webhook_events")

    with op.batch_alter_table("donations") as batch_op:
        batch_op.drop_index("ix_donations_subscription_created")
        batch_op.drop_index(batch_op.f("ix_donations_updated_at"))
        batch_op.drop_index(batch_op.f("ix_donations_created_at"))
        batch_op.drop_index(batch_op.f("ix_donations_subscription_id"))
        batch_op.drop_index(batch_op.f("ix_donations_customer_id"))
        batch_op.drop_index(batch_op.f("ix_donations_transaction_id"))
        batch_op.drop_index(batch_op.f("ix_donations_status"))
        batch_op.drop_index(batch_op.f("ix_donations_donation_type"))
        batch_op.drop_index(batch_op.f("ix_donations_donor_email"))
        batch_op.drop_index(batch_op.f("ix_donations_user_id"))
    op.drop_table("donations")
