"""Schema object names and PostgreSQL DDL shared by tables and reconciliation."""

TASKS_TABLE = "trigger_tasks"
LEGACY_TASKS_TABLE = "inngest_events"

STATUS_CONSTRAINT = "check_trigger_task_status"
LEGACY_STATUS_CONSTRAINT = "check_inngest_event_status"

UPDATED_AT_FUNCTION = "update_trigger_tasks_updated_at"
UPDATED_AT_TRIGGER = "update_trigger_tasks_updated_at"
LEGACY_UPDATED_AT_FUNCTION = "update_inngest_events_updated_at"
LEGACY_UPDATED_AT_TRIGGER = "update_inngest_events_updated_at"

PKEY_CONSTRAINT = "trigger_tasks_pkey"
IDEMPOTENCY_CONSTRAINT = "trigger_tasks_idempotency_key_unique"

ACTIVE_INDEX = "idx_trigger_tasks_active"
LEGACY_PENDING_INDEX = "idx_inngest_events_pending"

TASKS_TABLE_COMMENT = (
    "Tracks background newsletter tasks for local status tracking and recovery"
)
STATUS_COLUMN_COMMENT = (
    "pending=not yet triggered, triggered=handed to the runner, running=task executing, "
    "completed=finished successfully, failed=error occurred, cancelled=manually cancelled"
)

# legacy name -> current name
LEGACY_CONSTRAINT_RENAMES: dict[str, str] = {
    "inngest_events_pkey": PKEY_CONSTRAINT,
    "inngest_events_idempotency_key_unique": IDEMPOTENCY_CONSTRAINT,
    "inngest_events_tenant_id_tenants_id_fk": "trigger_tasks_tenant_id_tenants_id_fk",
}

LEGACY_INDEX_RENAMES: dict[str, str] = {
    "idx_inngest_events_tenant_id": "idx_trigger_tasks_tenant_id",
    "idx_inngest_events_event_name": "idx_trigger_tasks_task_name",
    "idx_inngest_events_event_id": "idx_trigger_tasks_run_id",
    "idx_inngest_events_status": "idx_trigger_tasks_status",
    "idx_inngest_events_idempotency_key": "idx_trigger_tasks_idempotency_key",
    "idx_inngest_events_scheduled_for": "idx_trigger_tasks_scheduled_for",
    "idx_inngest_events_related": "idx_trigger_tasks_related",
    "idx_inngest_events_created_at": "idx_trigger_tasks_created_at",
}

LEGACY_COLUMN_RENAMES: dict[str, str] = {
    "event_name": "task_name",
    "event_id": "run_id",
    "event_data": "payload",
    "retry_count": "attempt_count",
    "max_retries": "max_attempts",
    "last_retry_at": "last_attempt_at",
    "result": "output",
    "sent_at": "triggered_at",
}

# column -> SQL type, added when missing
ADDED_COLUMNS: dict[str, str] = {
    "error_code": "TEXT",
    "started_at": "TIMESTAMP WITH TIME ZONE",
}

DROPPED_COLUMNS: tuple[str, ...] = ("next_retry_at",)

JSON_COLUMNS: tuple[str, ...] = ("payload", "output")


def updated_at_function_sql(function: str = UPDATED_AT_FUNCTION) -> str:
    return f"""
        CREATE OR REPLACE FUNCTION {function}()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = NOW();
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql
    """


def updated_at_trigger_sql(
    table: str = TASKS_TABLE,
    trigger: str = UPDATED_AT_TRIGGER,
    function: str = UPDATED_AT_FUNCTION,
) -> str:
    return f"""
        CREATE TRIGGER {trigger}
            BEFORE UPDATE ON {table}
            FOR EACH ROW
            EXECUTE FUNCTION {function}()
    """
