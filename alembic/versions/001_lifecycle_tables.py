"""Lifecycle engine tables: check-ins, verification, quorum unlock, retention.

Revision ID: 001_lifecycle_tables
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_lifecycle_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

OPEN_STATUSES = sa.text("status IN ('pending', 'initiated')")


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # --- Liveness ---
    op.create_table(
        "checkin_schedules",
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("frequency_days", sa.Integer, nullable=False),
        sa.Column("grace_period_days", sa.Integer, nullable=False),
        _ts("next_check_in", nullable=False),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        _ts("reminder_sent_for"),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("user_id", name="pk_checkin_schedules"),
    )

    op.create_table(
        "checkin_records",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column("user_id", sa.Uuid, nullable=False),
        _ts("checked_in_at", nullable=False),
        _ts("next_check_in", nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("verification_request_id", sa.Uuid, nullable=True),
        _ts("created_at", nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_checkin_records"),
    )
    op.create_index("ix_checkin_records_user_created", "checkin_records", ["user_id", "created_at"])

    op.create_table(
        "trusted_contacts",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="trusted_contact"),
        sa.Column("confirmed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("id", name="pk_trusted_contacts"),
    )
    op.create_index("ix_trusted_contacts_user_id", "trusted_contacts", ["user_id"])

    op.create_table(
        "liveness_prompts",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column("token", sa.String(64), nullable=False),
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("contact_id", sa.Uuid, nullable=True),
        sa.Column("verification_request_id", sa.Uuid, nullable=True),
        _ts("created_at", nullable=False),
        _ts("expires_at", nullable=False),
        _ts("responded_at"),
        sa.Column("response", sa.String(16), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_liveness_prompts"),
        sa.UniqueConstraint("token", name="uq_liveness_prompts_token"),
    )
    op.create_index("ix_liveness_prompts_user_id", "liveness_prompts", ["user_id"])

    # --- Verification & quorum unlock ---
    op.create_table(
        "verification_requests",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("source", sa.String(20), nullable=False, server_default="missed_checkin"),
        sa.Column("initiated_by", sa.Uuid, nullable=True),
        _ts("initiated_at", nullable=False),
        _ts("expires_at", nullable=False),
        _ts("unlocked_at"),
        sa.Column("downloaded", sa.Boolean, nullable=False, server_default=sa.false()),
        _ts("downloaded_at"),
        sa.PrimaryKeyConstraint("id", name="pk_verification_requests"),
    )
    op.create_index("ix_verification_requests_user_id", "verification_requests", ["user_id"])
    # At most one open request per user: the escalation concurrency guard
    op.create_index(
        "uq_verification_requests_open_per_user",
        "verification_requests",
        ["user_id"],
        unique=True,
        postgresql_where=OPEN_STATUSES,
        sqlite_where=OPEN_STATUSES,
    )

    op.create_table(
        "executor_verifications",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("verification_request_id", sa.Uuid, nullable=False),
        sa.Column("pins_required", sa.Integer, nullable=False),
        sa.Column("pins_received", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        _ts("created_at", nullable=False),
        _ts("expires_at", nullable=False),
        _ts("completed_at"),
        sa.PrimaryKeyConstraint("id", name="pk_executor_verifications"),
        sa.ForeignKeyConstraint(
            ["verification_request_id"], ["verification_requests.id"],
            name="fk_executor_verifications_verification_request_id_verification_requests",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("verification_request_id", name="uq_executor_verifications_verification_request_id"),
        sa.CheckConstraint("pins_received >= 0", name="ck_executor_verifications_pins_received_non_negative"),
    )
    op.create_index("ix_executor_verifications_user_id", "executor_verifications", ["user_id"])

    op.create_table(
        "unlock_codes",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column("code", sa.String(16), nullable=False),
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("verification_request_id", sa.Uuid, nullable=False),
        sa.Column("executor_verification_id", sa.Uuid, nullable=False),
        sa.Column("assigned_contact_id", sa.Uuid, nullable=False),
        sa.Column("used", sa.Boolean, nullable=False, server_default=sa.false()),
        _ts("used_at"),
        sa.Column("redeemed_by", sa.String(200), nullable=True),
        _ts("created_at", nullable=False),
        _ts("expires_at", nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_unlock_codes"),
        sa.UniqueConstraint("code", name="uq_unlock_codes_code"),
        sa.ForeignKeyConstraint(
            ["verification_request_id"], ["verification_requests.id"],
            name="fk_unlock_codes_verification_request_id_verification_requests",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["executor_verification_id"], ["executor_verifications.id"],
            name="fk_unlock_codes_executor_verification_id_executor_verifications",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_unlock_codes_user_id", "unlock_codes", ["user_id"])

    op.create_table(
        "verification_logs",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("action", sa.String(40), nullable=False),
        sa.Column("details", _json(), nullable=False),
        _ts("created_at", nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_verification_logs"),
    )
    op.create_index("ix_verification_logs_user_id", "verification_logs", ["user_id"])

    # --- Content retention ---
    op.create_table(
        "content_items",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("kind", sa.String(16), nullable=False, server_default="will"),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("body", sa.Text, nullable=True),
        _ts("created_at", nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        _ts("grace_period_end"),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("id", name="pk_content_items"),
    )
    op.create_index("ix_content_items_user_id", "content_items", ["user_id"])
    op.create_index("ix_content_items_status", "content_items", ["status"])

    for table, columns in (
        ("will_documents", [
            sa.Column("file_name", sa.String(255), nullable=False),
            sa.Column("file_path", sa.Text, nullable=False),
        ]),
        ("will_executors", [
            sa.Column("name", sa.String(200), nullable=False),
            sa.Column("email", sa.String(320), nullable=True),
            sa.Column("is_primary", sa.Boolean, nullable=False, server_default=sa.false()),
        ]),
        ("will_beneficiaries", [
            sa.Column("name", sa.String(200), nullable=False),
            sa.Column("email", sa.String(320), nullable=True),
            sa.Column("relationship_to_testator", sa.String(100), nullable=True),
        ]),
    ):
        op.create_table(
            table,
            sa.Column("id", sa.Uuid, nullable=False),
            sa.Column("item_id", sa.Uuid, nullable=False),
            *columns,
            sa.PrimaryKeyConstraint("id", name=f"pk_{table}"),
            sa.ForeignKeyConstraint(["item_id"], ["content_items.id"], name=f"fk_{table}_item_id_content_items"),
        )
        op.create_index(f"ix_{table}_item_id", table, ["item_id"])

    # No FK to content_items: the record outlives the deleted item
    op.create_table(
        "monitoring_records",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column("item_id", sa.Uuid, nullable=False),
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("item_kind", sa.String(16), nullable=False),
        sa.Column("item_title", sa.String(200), nullable=False),
        sa.Column("monitoring_status", sa.String(20), nullable=False, server_default="grace_period"),
        _ts("scheduled_deletion"),
        sa.Column("notifications_sent", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_tier", sa.String(16), nullable=True),
        _ts("last_notification_sent"),
        _ts("created_at", nullable=False),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("id", name="pk_monitoring_records"),
        sa.UniqueConstraint("item_id", name="uq_monitoring_records_item_id"),
    )
    op.create_index("ix_monitoring_records_user_id", "monitoring_records", ["user_id"])
    op.create_index(
        "ix_monitoring_records_status_deletion",
        "monitoring_records",
        ["monitoring_status", "scheduled_deletion"],
    )

    # --- Collaborator-owned tables ---
    op.create_table(
        "subscriptions",
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="none"),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("user_id", name="pk_subscriptions"),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("contact_id", sa.Uuid, nullable=True),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("priority", sa.String(16), nullable=False, server_default="normal"),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("item_id", sa.Uuid, nullable=True),
        sa.Column("payload", _json(), nullable=False),
        sa.Column("read", sa.Boolean, nullable=False, server_default=sa.false()),
        _ts("created_at", nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_notifications"),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])


def downgrade() -> None:
    for table in (
        "notifications",
        "subscriptions",
        "monitoring_records",
        "will_beneficiaries",
        "will_executors",
        "will_documents",
        "content_items",
        "verification_logs",
        "unlock_codes",
        "executor_verifications",
        "verification_requests",
        "liveness_prompts",
        "trusted_contacts",
        "checkin_records",
        "checkin_schedules",
    ):
        op.drop_table(table)
