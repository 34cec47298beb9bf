"""willguard core schema

Revision ID: 0001_willguard_core
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_willguard_core"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, *, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "principals",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("push_token", sa.String(), nullable=True),
        sa.Column("checkin_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("checkin_interval_days", sa.Integer(), nullable=False, server_default="14"),
        sa.Column("grace_period_days", sa.Integer(), nullable=False, server_default="7"),
        sa.Column("verification_window_hours", sa.Integer(), nullable=False, server_default="48"),
        sa.Column("notify_email", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("notify_push", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pin_system_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("executor_override_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("trusted_contact_override_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("failsafe_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "parties",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("principal_id", sa.String(), sa.ForeignKey("principals.id"), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("is_primary_executor", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_executor", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_parties_principal_id", "parties", ["principal_id"])
    op.create_index("ix_parties_principal_role", "parties", ["principal_id", "role"])

    # Append-only history; the pointer table names the current record.
    op.create_table(
        "checkin_records",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("principal_id", sa.String(), nullable=False),
        _timestamp("checked_in_at", nullable=False),
        _timestamp("next_check_in", nullable=False),
        sa.Column("interval_days", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="alive"),
        sa.Column("source", sa.String(), nullable=False, server_default="principal"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_checkin_records_principal_id", "checkin_records", ["principal_id"])
    op.create_index("ix_checkin_records_next_check_in", "checkin_records", ["next_check_in"])
    op.create_index(
        "ix_checkin_records_principal_checked_in",
        "checkin_records",
        ["principal_id", "checked_in_at"],
    )

    op.create_table(
        "checkin_pointers",
        sa.Column("principal_id", sa.String(), primary_key=True),
        sa.Column("current_checkin_id", sa.String(), sa.ForeignKey("checkin_records.id"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "verification_requests",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("principal_id", sa.String(), nullable=False),
        sa.Column("checkin_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("result", sa.String(), nullable=True),
        sa.Column("stage", sa.String(), nullable=False),
        _timestamp("initiated_at", nullable=False),
        _timestamp("expires_at", nullable=False),
        _timestamp("resolved_at"),
        sa.Column("resolved_by_party_id", sa.String(), nullable=True),
        _timestamp("pins_issued_at"),
        _timestamp("failsafe_notified_at"),
        _timestamp("unlocked_at"),
        sa.Column("unlock_rule", sa.String(), nullable=True),
        sa.Column("payload_ref", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_verification_requests_principal_id", "verification_requests", ["principal_id"])
    op.create_index("ix_verification_requests_stage_expires", "verification_requests", ["stage", "expires_at"])
    # At most one pending request per principal.
    op.create_index(
        "uq_verification_requests_one_pending",
        "verification_requests",
        ["principal_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "verification_tokens",
        sa.Column("token_hash", sa.String(), primary_key=True),
        sa.Column("request_id", sa.String(), sa.ForeignKey("verification_requests.id"), nullable=False),
        sa.Column("party_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_verification_tokens_request_id", "verification_tokens", ["request_id"])

    op.create_table(
        "verification_responses",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("request_id", sa.String(), sa.ForeignKey("verification_requests.id"), nullable=False),
        sa.Column("party_id", sa.String(), nullable=False),
        sa.Column("report", sa.String(), nullable=False),
        _timestamp("created_at", nullable=False),
    )
    op.create_index("ix_verification_responses_request_id", "verification_responses", ["request_id"])

    op.create_table(
        "unlock_credentials",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("request_id", sa.String(), sa.ForeignKey("verification_requests.id"), nullable=False),
        sa.Column("principal_id", sa.String(), nullable=False),
        sa.Column("person_id", sa.String(), nullable=False),
        sa.Column("person_type", sa.String(), nullable=False),
        sa.Column("pin_hash", sa.String(), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("used_at"),
        _timestamp("invalidated_at"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("request_id", "person_id", name="uq_unlock_credentials_request_person"),
    )
    op.create_index("ix_unlock_credentials_request_id", "unlock_credentials", ["request_id"])
    op.create_index("ix_unlock_credentials_principal_id", "unlock_credentials", ["principal_id"])

    op.create_table(
        "notification_dispatch_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("principal_id", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        _timestamp("occurred_at", nullable=False),
        sa.Column("urgency", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("details_json", postgresql.JSONB(), nullable=True),
    )
    op.create_index(
        "ix_notification_dispatch_logs_principal_action",
        "notification_dispatch_logs",
        ["principal_id", "action", "occurred_at"],
    )

    op.create_table(
        "notification_cursors",
        sa.Column("principal_id", sa.String(), primary_key=True),
        sa.Column("action", sa.String(), primary_key=True),
        _timestamp("last_sent_at", nullable=False),
        sa.Column("dispatch_log_id", sa.String(), nullable=False),
    )

    op.create_table(
        "payload_releases",
        sa.Column("request_id", sa.String(), sa.ForeignKey("verification_requests.id"), primary_key=True),
        sa.Column("principal_id", sa.String(), nullable=False),
        sa.Column("payload_ref", sa.String(), nullable=False),
        sa.Column("unlock_rule", sa.String(), nullable=False),
        _timestamp("released_at", nullable=False),
    )
    op.create_index("ix_payload_releases_principal_id", "payload_releases", ["principal_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        _timestamp("occurred_at", nullable=False),
        sa.Column("principal_id", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("from_state", sa.String(), nullable=True),
        sa.Column("to_state", sa.String(), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False, server_default="success"),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
    )
    op.create_index("ix_audit_events_principal_occurred", "audit_events", ["principal_id", "occurred_at"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_principal_occurred", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_payload_releases_principal_id", table_name="payload_releases")
    op.drop_table("payload_releases")
    op.drop_table("notification_cursors")
    op.drop_index("ix_notification_dispatch_logs_principal_action", table_name="notification_dispatch_logs")
    op.drop_table("notification_dispatch_logs")
    op.drop_index("ix_unlock_credentials_principal_id", table_name="unlock_credentials")
    op.drop_index("ix_unlock_credentials_request_id", table_name="unlock_credentials")
    op.drop_table("unlock_credentials")
    op.drop_index("ix_verification_responses_request_id", table_name="verification_responses")
    op.drop_table("verification_responses")
    op.drop_index("ix_verification_tokens_request_id", table_name="verification_tokens")
    op.drop_table("verification_tokens")
    op.drop_index("uq_verification_requests_one_pending", table_name="verification_requests")
    op.drop_index("ix_verification_requests_stage_expires", table_name="verification_requests")
    op.drop_index("ix_verification_requests_principal_id", table_name="verification_requests")
    op.drop_table("verification_requests")
    op.drop_table("checkin_pointers")
    op.drop_index("ix_checkin_records_principal_checked_in", table_name="checkin_records")
    op.drop_index("ix_checkin_records_next_check_in", table_name="checkin_records")
    op.drop_index("ix_checkin_records_principal_id", table_name="checkin_records")
    op.drop_table("checkin_records")
    op.drop_index("ix_parties_principal_role", table_name="parties")
    op.drop_index("ix_parties_principal_id", table_name="parties")
    op.drop_table("parties")
    op.drop_table("principals")
