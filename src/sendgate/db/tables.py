"""SQLAlchemy table definitions."""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    DDL,
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from sendgate.db import ddl
from sendgate.db.base import Base
from sendgate.models.enums import EventType, TaskStatus

# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite).
JSONType = JSON().with_variant(JSONB(), "postgresql")

# BIGSERIAL on PostgreSQL; SQLite only autoincrements INTEGER PRIMARY KEY.
SeqType = BigInteger().with_variant(Integer(), "sqlite")

_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in TaskStatus)
_ACTIVE_VALUES = ", ".join(
    f"'{s.value}'" for s in TaskStatus if s in TaskStatus.active_states()
)

# Event types recorded at most once per recipient and newsletter
ONE_TIME_EVENT_WHERE = text(
    "event_type IN ("
    + ", ".join(f"'{t.value}'" for t in EventType if t.is_one_time())
    + ")"
)
ONE_TIME_EVENT_COLUMNS = ["tenant_id", "newsletter_id", "recipient_email", "event_type"]


class TaskTable(Base):
    """Tracked background tasks."""

    __tablename__ = ddl.TASKS_TABLE

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # What to run
    task_name: Mapped[str] = mapped_column(Text, nullable=False)
    run_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    # Status
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=TaskStatus.PENDING.value
    )

    # Attempts
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Scheduling
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Result
    output: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Related record
    related_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    related_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Timestamps
    triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        # Idempotency keys are unique across the whole store, not per tenant
        UniqueConstraint("idempotency_key", name=ddl.IDEMPOTENCY_CONSTRAINT),
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name=ddl.STATUS_CONSTRAINT),
        Index("idx_trigger_tasks_tenant_status", "tenant_id", "status", "created_at"),
        Index("idx_trigger_tasks_related", "related_type", "related_id"),
        Index("idx_trigger_tasks_created_at", "created_at"),
        # Stall sweep scans active tasks by age
        Index(
            ddl.ACTIVE_INDEX,
            "status",
            "updated_at",
            postgresql_where=text(f"status IN ({_ACTIVE_VALUES})"),
        ),
        {"comment": ddl.TASKS_TABLE_COMMENT},
    )


event.listen(
    TaskTable.__table__,
    "after_create",
    DDL(ddl.updated_at_function_sql()).execute_if(dialect="postgresql"),
)
event.listen(
    TaskTable.__table__,
    "after_create",
    DDL(ddl.updated_at_trigger_sql()).execute_if(dialect="postgresql"),
)


class NewsletterSendTable(Base):
    """Newsletter sends - one row per recipient per newsletter."""

    __tablename__ = "newsletter_sends"

    # Export sort key; never changes once assigned
    seq: Mapped[int] = mapped_column(SeqType, primary_key=True, autoincrement=True)
    send_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    newsletter_id: Mapped[str] = mapped_column(String(255), nullable=False)
    group_uuid: Mapped[str] = mapped_column(String(255), nullable=False)
    recipient_email: Mapped[str] = mapped_column(String(320), nullable=False)
    recipient_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recipient_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    first_opened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_opened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    first_clicked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    open_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    click_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "newsletter_id", "recipient_email", name="uq_send_newsletter_recipient"
        ),
        Index("idx_sends_export", "tenant_id", "seq"),
        Index("idx_sends_provider_message", "provider_message_id"),
        Index("idx_sends_newsletter_status", "tenant_id", "newsletter_id", "status"),
    )


class NewsletterEventTable(Base):
    """Newsletter events - append-only provider and dispatch events."""

    __tablename__ = "newsletter_events"

    seq: Mapped[int] = mapped_column(SeqType, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    newsletter_id: Mapped[str] = mapped_column(String(255), nullable=False)
    send_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    recipient_email: Mapped[str] = mapped_column(String(320), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_events_export", "tenant_id", "seq"),
        Index("idx_events_trajectory", "tenant_id", "send_id", "occurred_at", "seq"),
        Index("idx_events_provider_type", "provider_message_id", "event_type"),
        Index(
            "idx_events_recipient_type",
            "tenant_id",
            "newsletter_id",
            "recipient_email",
            "event_type",
        ),
        Index(
            "uq_events_one_time",
            *ONE_TIME_EVENT_COLUMNS,
            unique=True,
            postgresql_where=ONE_TIME_EVENT_WHERE,
            sqlite_where=ONE_TIME_EVENT_WHERE,
        ),
    )


class NewsletterStatsTable(Base):
    """Aggregated per-newsletter counters."""

    __tablename__ = "newsletter_stats"

    seq: Mapped[int] = mapped_column(SeqType, primary_key=True, autoincrement=True)
    stats_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    newsletter_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    total_recipients: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    queued: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    opened: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_opens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    clicked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_clicks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bounced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    complained: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unsubscribed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "newsletter_id", name="uq_stats_newsletter"),
        Index("idx_stats_export", "tenant_id", "seq"),
    )
