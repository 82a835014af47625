"""create reminders and deliveries

Revision ID: 4f2c8e1a9b7d
Revises:
Create Date: 2026-10-17 09:12:41.503217

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4f2c8e1a9b7d"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

REMINDER_STATUSES = ("draft", "active", "paused", "completed", "expired", "failed", "cancelled")
DELIVERY_STATUSES = ("pending", "sending", "delivered", "failed", "retrying")
ACK_METHODS = ("reaction", "reply", "button", "web")
ACK_ACTIONS = ("complete", "snooze", "dismiss", "escalate", "react")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "reminders",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("owner_id", sa.String(64), nullable=False, index=True),
        sa.Column("recipient_id", sa.String(64), nullable=False, index=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("schedule", sa.JSON(), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*REMINDER_STATUSES, name="reminderstatus"),
            nullable=False,
            index=True,
        ),
        sa.Column("escalation", sa.JSON(), nullable=True),
        sa.Column("escalation_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_due_at", sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column("last_delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("occurrence_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_snoozed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("snoozed_occurrence_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
    )

    op.create_table(
        "deliveries",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column(
            "reminder_id",
            sa.Integer(),
            sa.ForeignKey("reminders.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("recipient_id", sa.String(64), nullable=False, index=True),
        sa.Column("dedup_key", sa.String(255), nullable=False, unique=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column(
            "status",
            sa.Enum(*DELIVERY_STATUSES, name="deliverystatus"),
            nullable=False,
            index=True,
        ),
        sa.Column("message_ref", sa.String(255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("permanent_failure", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "acknowledged", sa.Boolean(), nullable=False, server_default=sa.false(), index=True
        ),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_by", sa.String(64), nullable=True),
        sa.Column(
            "acknowledgment_method",
            sa.Enum(*ACK_METHODS, name="acknowledgmentmethod"),
            nullable=True,
        ),
        sa.Column(
            "acknowledgment_action",
            sa.Enum(*ACK_ACTIONS, name="acknowledgmentaction"),
            nullable=True,
        ),
        sa.Column("is_escalation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("escalation_level", sa.Integer(), nullable=True),
        sa.Column(
            "original_delivery_id",
            sa.Integer(),
            sa.ForeignKey("deliveries.id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
        sa.Column("current_escalation_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "escalation_halted", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
    )

    # Escalation candidates: delivered, unacknowledged originals with an open chain
    op.create_index(
        "ix_deliveries_escalation_candidates",
        "deliveries",
        ["delivered_at"],
        postgresql_where=sa.text(
            "NOT is_escalation AND NOT acknowledged AND NOT escalation_halted "
            "AND status = 'delivered'"
        ),
    )


def downgrade() -> None:
    op.drop_index("ix_deliveries_escalation_candidates", table_name="deliveries")
    op.drop_table("deliveries")
    op.drop_table("reminders")
    for name in ("acknowledgmentaction", "acknowledgmentmethod", "deliverystatus", "reminderstatus"):
        postgresql.ENUM(name=name).drop(op.get_bind(), checkfirst=True)
