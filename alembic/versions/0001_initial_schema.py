"""Initial SendGate schema: trigger_tasks and newsletter tracking tables."""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from sendgate.db import ddl

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

_STATUS_VALUES = "'pending', 'triggered', 'running', 'completed', 'failed', 'cancelled'"
_ACTIVE_VALUES = "'pending', 'triggered', 'running'"
_ONE_TIME_EVENTS = "'sent', 'delivered', 'bounced', 'complained', 'unsubscribed', 'failed'"


def _timestamp(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    """Create tables, indexes, and the tasks updated_at trigger."""
    op.create_table(
        ddl.TASKS_TABLE,
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("task_name", sa.Text(), nullable=False),
        sa.Column("run_id", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.Text(), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        _timestamp("last_attempt_at"),
        _timestamp("scheduled_for"),
        sa.Column("output", postgresql.JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_code", sa.Text(), nullable=True),
        sa.Column("related_type", sa.Text(), nullable=True),
        sa.Column("related_id", sa.String(length=255), nullable=True),
        _timestamp("triggered_at"),
        _timestamp("started_at"),
        _timestamp("completed_at"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name=ddl.PKEY_CONSTRAINT),
        sa.UniqueConstraint("idempotency_key", name=ddl.IDEMPOTENCY_CONSTRAINT),
        sa.CheckConstraint(f"status IN ({_STATUS_VALUES})", name=ddl.STATUS_CONSTRAINT),
        comment=ddl.TASKS_TABLE_COMMENT,
    )
    op.create_index(
        "idx_trigger_tasks_tenant_status", ddl.TASKS_TABLE, ["tenant_id", "status", "created_at"]
    )
    op.create_index("idx_trigger_tasks_related", ddl.TASKS_TABLE, ["related_type", "related_id"])
    op.create_index("idx_trigger_tasks_created_at", ddl.TASKS_TABLE, ["created_at"])
    op.create_index(
        ddl.ACTIVE_INDEX,
        ddl.TASKS_TABLE,
        ["status", "updated_at"],
        postgresql_where=sa.text(f"status IN ({_ACTIVE_VALUES})"),
    )
    op.execute(f"COMMENT ON COLUMN {ddl.TASKS_TABLE}.status IS '{ddl.STATUS_COLUMN_COMMENT}'")
    op.execute(ddl.updated_at_function_sql())
    op.execute(ddl.updated_at_trigger_sql())

    op.create_table(
        "newsletter_sends",
        sa.Column("seq", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("send_id", sa.String(length=36), nullable=False, unique=True),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("newsletter_id", sa.String(length=255), nullable=False),
        sa.Column("group_uuid", sa.String(length=255), nullable=False),
        sa.Column("recipient_email", sa.String(length=320), nullable=False),
        sa.Column("recipient_id", sa.String(length=255), nullable=True),
        sa.Column("recipient_name", sa.Text(), nullable=True),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        _timestamp("sent_at"),
        _timestamp("delivered_at"),
        _timestamp("first_opened_at"),
        _timestamp("last_opened_at"),
        _timestamp("first_clicked_at"),
        sa.Column("open_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("click_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at", nullable=False),
        sa.UniqueConstraint(
            "tenant_id", "newsletter_id", "recipient_email", name="uq_send_newsletter_recipient"
        ),
    )
    op.create_index("idx_sends_export", "newsletter_sends", ["tenant_id", "seq"])
    op.create_index("idx_sends_provider_message", "newsletter_sends", ["provider_message_id"])
    op.create_index(
        "idx_sends_newsletter_status", "newsletter_sends", ["tenant_id", "newsletter_id", "status"]
    )

    op.create_table(
        "newsletter_events",
        sa.Column("seq", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("event_id", sa.String(length=36), nullable=False, unique=True),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("newsletter_id", sa.String(length=255), nullable=False),
        sa.Column("send_id", sa.String(length=36), nullable=True),
        sa.Column("recipient_email", sa.String(length=320), nullable=False),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _timestamp("occurred_at", nullable=False),
    )
    op.create_index("idx_events_export", "newsletter_events", ["tenant_id", "seq"])
    op.create_index(
        "idx_events_trajectory", "newsletter_events", ["tenant_id", "send_id", "occurred_at", "seq"]
    )
    op.create_index(
        "idx_events_provider_type", "newsletter_events", ["provider_message_id", "event_type"]
    )
    op.create_index(
        "idx_events_recipient_type",
        "newsletter_events",
        ["tenant_id", "newsletter_id", "recipient_email", "event_type"],
    )
    op.create_index(
        "uq_events_one_time",
        "newsletter_events",
        ["tenant_id", "newsletter_id", "recipient_email", "event_type"],
        unique=True,
        postgresql_where=sa.text(f"event_type IN ({_ONE_TIME_EVENTS})"),
    )

    counters = [
        "total_recipients",
        "queued",
        "sent",
        "delivered",
        "opened",
        "unique_opens",
        "clicked",
        "unique_clicks",
        "bounced",
        "complained",
        "failed",
        "unsubscribed",
    ]
    op.create_table(
        "newsletter_stats",
        sa.Column("seq", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("stats_id", sa.String(length=36), nullable=False, unique=True),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("newsletter_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False),
        *[sa.Column(c, sa.Integer(), nullable=False, server_default="0") for c in counters],
        _timestamp("started_at"),
        _timestamp("completed_at"),
        _timestamp("last_event_at"),
        _timestamp("created_at", nullable=False),
        sa.UniqueConstraint("tenant_id", "newsletter_id", name="uq_stats_newsletter"),
    )
    op.create_index("idx_stats_export", "newsletter_stats", ["tenant_id", "seq"])


def downgrade() -> None:
    """Drop all SendGate tables."""
    op.drop_index("idx_stats_export", table_name="newsletter_stats")
    op.drop_table("newsletter_stats")

    op.drop_index("uq_events_one_time", table_name="newsletter_events")
    op.drop_index("idx_events_recipient_type", table_name="newsletter_events")
    op.drop_index("idx_events_provider_type", table_name="newsletter_events")
    op.drop_index("idx_events_trajectory", table_name="newsletter_events")
    op.drop_index("idx_events_export", table_name="newsletter_events")
    op.drop_table("newsletter_events")

    op.drop_index("idx_sends_newsletter_status", table_name="newsletter_sends")
    op.drop_index("idx_sends_provider_message", table_name="newsletter_sends")
    op.drop_index("idx_sends_export", table_name="newsletter_sends")
    op.drop_table("newsletter_sends")

    op.execute(f"DROP TRIGGER IF EXISTS {ddl.UPDATED_AT_TRIGGER} ON {ddl.TASKS_TABLE}")
    op.execute(f"DROP FUNCTION IF EXISTS {ddl.UPDATED_AT_FUNCTION}()")
    op.drop_index(ddl.ACTIVE_INDEX, table_name=ddl.TASKS_TABLE)
    op.drop_index("idx_trigger_tasks_created_at", table_name=ddl.TASKS_TABLE)
    op.drop_index("idx_trigger_tasks_related", table_name=ddl.TASKS_TABLE)
    op.drop_index("idx_trigger_tasks_tenant_status", table_name=ddl.TASKS_TABLE)
    op.drop_table(ddl.TASKS_TABLE)
