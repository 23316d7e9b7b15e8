"""Create consumer, billing, disconnection, notification, audit and sms tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None

_BIG_ID = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "consumers",
        sa.Column("consumer_id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("first_name", sa.String(length=128), nullable=False),
        sa.Column("last_name", sa.String(length=128), nullable=False),
        sa.Column("contact_number", sa.String(length=32), nullable=True),
        sa.Column("account_number", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="Active"),
        sa.Column("is_disconnected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("active_disconnection_id", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("consumer_id"),
    )

    op.create_table(
        "billings",
        sa.Column("billing_id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("consumer_id", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("amount_due", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(["consumer_id"], ["consumers.consumer_id"]),
        sa.PrimaryKeyConstraint("billing_id"),
    )
    op.create_index("ix_billings_consumer_id", "billings", ["consumer_id"], unique=False)
    op.create_index("ix_billings_due_date", "billings", ["due_date"], unique=False)
    op.create_index("ix_billings_is_paid", "billings", ["is_paid"], unique=False)

    op.create_table(
        "disconnections",
        sa.Column("disconnection_id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("consumer_id", sa.Integer(), nullable=False),
        sa.Column("date_disconnected", sa.DateTime(timezone=True), nullable=False),
        sa.Column("date_reconnected", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_reconnected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("remarks", sa.String(length=256), nullable=False),
        sa.Column("performed_by", sa.String(length=128), nullable=False),
        sa.ForeignKeyConstraint(["consumer_id"], ["consumers.consumer_id"]),
        sa.PrimaryKeyConstraint("disconnection_id"),
    )
    op.create_index("ix_disconnections_consumer_id", "disconnections", ["consumer_id"], unique=False)

    op.create_table(
        "notifications",
        sa.Column("notification_id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("consumer_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("send_to_all", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(["consumer_id"], ["consumers.consumer_id"]),
        sa.PrimaryKeyConstraint("notification_id"),
    )
    op.create_index("ix_notifications_consumer_id", "notifications", ["consumer_id"], unique=False)
    op.create_index("ix_notifications_created_at", "notifications", ["created_at"], unique=False)
    op.create_index("ix_notifications_is_archived", "notifications", ["is_archived"], unique=False)

    op.create_table(
        "audit_trails",
        sa.Column("audit_id", _BIG_ID, nullable=False, autoincrement=True),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("performed_by", sa.String(length=128), nullable=False),
        sa.Column("details", sa.Text(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("audit_id"),
    )
    op.create_index("ix_audit_trails_action", "audit_trails", ["action"], unique=False)
    op.create_index("ix_audit_trails_timestamp", "audit_trails", ["timestamp"], unique=False)

    op.create_table(
        "sms_outbox",
        sa.Column("outbox_id", _BIG_ID, nullable=False, autoincrement=True),
        sa.Column("batch_id", sa.String(length=64), nullable=False),
        sa.Column("consumer_id", sa.Integer(), nullable=True),
        sa.Column("contact_number", sa.String(length=32), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("tries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        sa.Column("error_code", sa.String(length=128), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("outbox_id"),
    )
    op.create_index("ix_sms_outbox_batch_id", "sms_outbox", ["batch_id"], unique=False)
    op.create_index("ix_sms_outbox_consumer_id", "sms_outbox", ["consumer_id"], unique=False)
    op.create_index("ix_sms_outbox_status", "sms_outbox", ["status"], unique=False)
    op.create_index("ix_sms_outbox_available_at", "sms_outbox", ["available_at"], unique=False)

    op.create_table(
        "sms_logs",
        sa.Column("log_id", _BIG_ID, nullable=False, autoincrement=True),
        sa.Column("outbox_id", _BIG_ID, nullable=True),
        sa.Column("consumer_id", sa.Integer(), nullable=True),
        sa.Column("contact_number", sa.String(length=32), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("is_success", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("response_message", sa.Text(), nullable=True),
        sa.Column("attempt_number", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["outbox_id"], ["sms_outbox.outbox_id"]),
        sa.PrimaryKeyConstraint("log_id"),
    )
    op.create_index("ix_sms_logs_outbox_id", "sms_logs", ["outbox_id"], unique=False)
    op.create_index("ix_sms_logs_consumer_id", "sms_logs", ["consumer_id"], unique=False)
    op.create_index("ix_sms_logs_sent_at", "sms_logs", ["sent_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_sms_logs_sent_at", table_name="sms_logs")
    op.drop_index("ix_sms_logs_consumer_id", table_name="sms_logs")
    op.drop_index("ix_sms_logs_outbox_id", table_name="sms_logs")
    op.drop_table("sms_logs")

    op.drop_index("ix_sms_outbox_available_at", table_name="sms_outbox")
    op.drop_index("ix_sms_outbox_status", table_name="sms_outbox")
    op.drop_index("ix_sms_outbox_consumer_id", table_name="sms_outbox")
    op.drop_index("ix_sms_outbox_batch_id", table_name="sms_outbox")
    op.drop_table("sms_outbox")

    op.drop_index("ix_audit_trails_timestamp", table_name="audit_trails")
    op.drop_index("ix_audit_trails_action", table_name="audit_trails")
    op.drop_table("audit_trails")

    op.drop_index("ix_notifications_is_archived", table_name="notifications")
    op.drop_index("ix_notifications_created_at", table_name="notifications")
    op.drop_index("ix_notifications_consumer_id", table_name="notifications")
    op.drop_table("notifications")

    op.drop_index("ix_disconnections_consumer_id", table_name="disconnections")
    op.drop_table("disconnections")

    op.drop_index("ix_billings_is_paid", table_name="billings")
    op.drop_index("ix_billings_due_date", table_name="billings")
    op.drop_index("ix_billings_consumer_id", table_name="billings")
    op.drop_table("billings")

    op.drop_table("consumers")
