from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres and plain JSON elsewhere (SQLite for tests and local runs).
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Principal(Base):
    __tablename__ = "principals"

    # Owned by the excluded settings UI; the engine only reads these rows.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    display_name: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    push_token: Mapped[str | None] = mapped_column(String, nullable=True)
    checkin_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    checkin_interval_days: Mapped[int] = mapped_column(Integer, default=14, nullable=False)
    grace_period_days: Mapped[int] = mapped_column(Integer, default=7, nullable=False)
    verification_window_hours: Mapped[int] = mapped_column(Integer, default=48, nullable=False)
    notify_email: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notify_push: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pin_system_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    executor_override_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    trusted_contact_override_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    failsafe_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Party(Base):
    __tablename__ = "parties"
    __table_args__ = (Index("ix_parties_principal_role", "principal_id", "role"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    principal_id: Mapped[str] = mapped_column(String, ForeignKey("principals.id"), index=True)
    # One of executor, beneficiary, trusted_contact.
    role: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    is_primary_executor: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Trusted contacts may double as executors for override purposes.
    is_executor: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CheckinRecord(Base):
    __tablename__ = "checkin_records"
    __table_args__ = (Index("ix_checkin_records_principal_checked_in", "principal_id", "checked_in_at"),)

    # Append-only history; the pointer row decides which record is current.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    principal_id: Mapped[str] = mapped_column(String, index=True)
    checked_in_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Derived once from checked_in_at and the interval in force at creation.
    next_check_in: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    interval_days: Mapped[int] = mapped_column(Integer)
    # alive or verification_triggered.
    status: Mapped[str] = mapped_column(String, default="alive", nullable=False)
    # Who produced the check-in: principal, party_report, admin.
    source: Mapped[str] = mapped_column(String, default="principal", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CheckinPointer(Base):
    __tablename__ = "checkin_pointers"

    # Explicit current-record pointer, replaced atomically with each append.
    principal_id: Mapped[str] = mapped_column(String, primary_key=True)
    current_checkin_id: Mapped[str] = mapped_column(String, ForeignKey("checkin_records.id"))
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class VerificationRequest(Base):
    __tablename__ = "verification_requests"
    __table_args__ = (
        # At most one pending request per principal, enforced by the database.
        Index(
            "uq_verification_requests_one_pending",
            "principal_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_verification_requests_stage_expires", "stage", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    principal_id: Mapped[str] = mapped_column(String, index=True)
    # Check-in record whose missed deadline opened this request.
    checkin_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # pending, completed, expired.
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    # confirmed_deceased or confirmed_alive once resolved.
    result: Mapped[str | None] = mapped_column(String, nullable=True)
    # Lifecycle stage (LifecycleState value); only changed through compare-and-set.
    stage: Mapped[str] = mapped_column(String, nullable=False)
    initiated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by_party_id: Mapped[str | None] = mapped_column(String, nullable=True)
    pins_issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failsafe_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    unlocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    unlock_rule: Mapped[str | None] = mapped_column(String, nullable=True)
    payload_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class VerificationToken(Base):
    __tablename__ = "verification_tokens"

    # Store only the token hash; the raw token lives in the party's verification link.
    token_hash: Mapped[str] = mapped_column(String, primary_key=True)
    request_id: Mapped[str] = mapped_column(String, ForeignKey("verification_requests.id"), index=True)
    party_id: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class VerificationResponse(Base):
    __tablename__ = "verification_responses"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    request_id: Mapped[str] = mapped_column(String, ForeignKey("verification_requests.id"), index=True)
    party_id: Mapped[str] = mapped_column(String)
    # alive or deceased.
    report: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class UnlockCredential(Base):
    __tablename__ = "unlock_credentials"
    __table_args__ = (
        UniqueConstraint("request_id", "person_id", name="uq_unlock_credentials_request_person"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    request_id: Mapped[str] = mapped_column(String, ForeignKey("verification_requests.id"), index=True)
    principal_id: Mapped[str] = mapped_column(String, index=True)
    person_id: Mapped[str] = mapped_column(String)
    # executor, beneficiary, trusted_contact.
    person_type: Mapped[str] = mapped_column(String)
    # Only the salted hash of the PIN is stored; the plaintext is delivered once.
    pin_hash: Mapped[str] = mapped_column(String)
    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    invalidated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class NotificationDispatchLog(Base):
    __tablename__ = "notification_dispatch_logs"
    __table_args__ = (
        Index("ix_notification_dispatch_logs_principal_action", "principal_id", "action", "occurred_at"),
    )

    # Append-only; never updated after insert.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    principal_id: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    urgency: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    sent_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    details_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)


class NotificationCursor(Base):
    __tablename__ = "notification_cursors"

    # Last successful dispatch per (principal, action), written with the dispatch log entry.
    principal_id: Mapped[str] = mapped_column(String, primary_key=True)
    action: Mapped[str] = mapped_column(String, primary_key=True)
    last_sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    dispatch_log_id: Mapped[str] = mapped_column(String)


class PayloadRelease(Base):
    __tablename__ = "payload_releases"

    # Keyed by verification request id so a request can release at most once.
    request_id: Mapped[str] = mapped_column(String, ForeignKey("verification_requests.id"), primary_key=True)
    principal_id: Mapped[str] = mapped_column(String, index=True)
    payload_ref: Mapped[str] = mapped_column(String)
    unlock_rule: Mapped[str] = mapped_column(String)
    released_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (Index("ix_audit_events_principal_occurred", "principal_id", "occurred_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    principal_id: Mapped[str] = mapped_column(String)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str | None] = mapped_column(String, nullable=True)
    outcome: Mapped[str] = mapped_column(String, default="success", nullable=False)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
