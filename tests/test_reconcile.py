"""
Schema reconciliation tests.

Drives the migration engine against the in-memory schema store, starting
from the legacy inngest_events layout and from half-migrated states.
"""

import pytest

from sendgate.db import ddl
from sendgate.errors import MigrationStepError
from sendgate.models import TaskStatus
from sendgate.reconcile import MigrationEngine
from sendgate.reconcile.steps import Step, default_steps

from fakes import FakeTable, InMemorySchemaOps, legacy_rows, legacy_store

ALL_STEPS = [step.name for step in default_steps()]


async def test_legacy_store_converges():
    ops = legacy_store()
    report = await MigrationEngine(ops).run()

    assert report.applied == ALL_STEPS
    assert report.skipped == []
    # two "sent" rows and one "processing" row
    assert report.rows_remapped == 3
    assert report.converged
    assert set(report.status_values) <= {s.value for s in TaskStatus}
    assert "sent" not in report.status_values
    assert "processing" not in report.status_values

    assert ddl.LEGACY_TASKS_TABLE not in ops.tables
    table = ops.tables[ddl.TASKS_TABLE]

    for old, new in ddl.LEGACY_COLUMN_RENAMES.items():
        assert old not in table.columns
        assert new in table.columns
    assert "error_code" in table.columns
    assert "started_at" in table.columns
    assert "next_retry_at" not in table.columns
    assert table.columns["payload"] == "jsonb"
    assert table.columns["output"] == "jsonb"
    assert table.rows[0]["payload"] == {"newsletterId": "nl-0"}

    statuses = [row["status"] for row in table.rows]
    assert statuses == ["pending", "triggered", "triggered", "running", "completed", "failed"]

    assert ddl.LEGACY_STATUS_CONSTRAINT not in table.constraints
    assert ddl.STATUS_CONSTRAINT in table.constraints
    for old, new in ddl.LEGACY_CONSTRAINT_RENAMES.items():
        assert old not in table.constraints
        assert new in table.constraints

    for old, new in ddl.LEGACY_INDEX_RENAMES.items():
        assert old not in ops.indexes
        assert ops.indexes[new] == ddl.TASKS_TABLE
    assert ddl.LEGACY_PENDING_INDEX not in ops.indexes
    assert ddl.ACTIVE_INDEX in ops.indexes

    assert table.triggers == {ddl.UPDATED_AT_TRIGGER}
    assert ops.functions == {ddl.UPDATED_AT_FUNCTION}
    assert table.comment == ddl.TASKS_TABLE_COMMENT
    assert table.column_comments["status"] == ddl.STATUS_COLUMN_COMMENT


async def test_second_run_is_a_no_op():
    ops = legacy_store()
    engine = MigrationEngine(ops)
    await engine.run()

    state = ops.state()
    writes = ops.writes

    report = await engine.run()

    assert report.applied == []
    assert report.skipped == ALL_STEPS
    assert report.rows_remapped == 0
    assert ops.writes == writes
    assert ops.state() == state


async def test_failed_step_aborts_and_rerun_converges():
    ops = legacy_store()
    ops.fail_on = {"add_check_constraint"}

    with pytest.raises(MigrationStepError) as exc_info:
        await MigrationEngine(ops).run()

    assert exc_info.value.step == "add_status_constraint"
    assert "injected failure" in str(exc_info.value)

    # Earlier steps stay committed
    table = ops.tables[ddl.TASKS_TABLE]
    assert {row["status"] for row in table.rows} <= {s.value for s in TaskStatus}
    assert ddl.STATUS_CONSTRAINT not in table.constraints
    # Later steps never ran
    assert ddl.LEGACY_PENDING_INDEX in ops.indexes

    ops.fail_on = set()
    report = await MigrationEngine(ops).run()

    assert report.skipped == ALL_STEPS[:3]
    assert report.applied == ALL_STEPS[3:]
    assert report.rows_remapped == 0
    assert report.converged

    again = await MigrationEngine(ops).run()
    assert again.applied == []


async def test_failure_inside_step_rolls_back_that_step():
    ops = legacy_store()
    ops.fail_on = {"rename_index"}

    with pytest.raises(MigrationStepError) as exc_info:
        await MigrationEngine(ops).run()

    assert exc_info.value.step == "rename_legacy_constraints"
    table = ops.tables[ddl.TASKS_TABLE]
    # Constraint renames happen before index renames in the same step; both undone
    assert "inngest_events_pkey" in table.constraints
    assert ddl.PKEY_CONSTRAINT not in table.constraints

    ops.fail_on = set()
    report = await MigrationEngine(ops).run()
    assert report.applied == ALL_STEPS[4:]
    assert ddl.PKEY_CONSTRAINT in ops.tables[ddl.TASKS_TABLE].constraints


async def test_invalid_json_payload_aborts_conform_columns():
    rows = legacy_rows()
    rows[1]["event_data"] = "{not json"
    ops = legacy_store(rows)

    with pytest.raises(MigrationStepError) as exc_info:
        await MigrationEngine(ops).run()

    assert exc_info.value.step == "conform_columns"
    table = ops.tables[ddl.TASKS_TABLE]
    # The table rename committed; the column step rolled back entirely
    assert "event_name" in table.columns
    assert "task_name" not in table.columns


async def test_both_tables_present_is_ambiguous():
    ops = legacy_store()
    ops.tables[ddl.TASKS_TABLE] = FakeTable(columns={"id": "character varying"})

    with pytest.raises(MigrationStepError) as exc_info:
        await MigrationEngine(ops).run()

    assert exc_info.value.step == "rename_legacy_table"
    assert "ambiguous" in str(exc_info.value)
    assert ops.writes == 0


async def test_both_column_names_present_is_ambiguous():
    ops = legacy_store()
    table = ops.tables[ddl.LEGACY_TASKS_TABLE]
    table.columns["task_name"] = "text"

    with pytest.raises(MigrationStepError) as exc_info:
        await MigrationEngine(ops).run()

    assert exc_info.value.step == "conform_columns"
    assert "event_name" in str(exc_info.value)


async def test_missing_tasks_table_fails():
    ops = InMemorySchemaOps()

    with pytest.raises(MigrationStepError) as exc_info:
        await MigrationEngine(ops).run()

    assert exc_info.value.step == "rename_legacy_table"
    assert "neither" in str(exc_info.value)


async def test_unknown_status_blocks_constraint():
    rows = legacy_rows()
    rows[0]["status"] = "paused"
    ops = legacy_store(rows)
    # The legacy check would have rejected it; model a store where it was dropped by hand
    del ops.tables[ddl.LEGACY_TASKS_TABLE].constraints[ddl.LEGACY_STATUS_CONSTRAINT]

    with pytest.raises(MigrationStepError) as exc_info:
        await MigrationEngine(ops).run()

    assert exc_info.value.step == "add_status_constraint"
    assert "paused" in str(exc_info.value)


async def test_half_migrated_store_only_runs_missing_steps():
    ops = legacy_store()
    engine = MigrationEngine(ops)
    await engine.run()

    # Someone restored the old trigger and description by hand
    table = ops.tables[ddl.TASKS_TABLE]
    table.triggers.add(ddl.LEGACY_UPDATED_AT_TRIGGER)
    ops.functions.add(ddl.LEGACY_UPDATED_AT_FUNCTION)
    table.comment = "Tracks Inngest events for local status tracking"

    report = await engine.run()

    assert report.applied == ["drop_legacy_trigger", "update_descriptions"]
    assert table.triggers == {ddl.UPDATED_AT_TRIGGER}
    assert ddl.LEGACY_UPDATED_AT_FUNCTION not in ops.functions
    assert table.comment == ddl.TASKS_TABLE_COMMENT


async def test_plan_does_not_mutate():
    ops = legacy_store()
    state = ops.state()

    planned = await MigrationEngine(ops).plan()

    assert [p.name for p in planned] == ALL_STEPS
    assert planned[0].state == "pending"
    assert all(p.state == "blocked" for p in planned[1:])
    assert ops.writes == 0
    assert ops.state() == state


async def test_plan_on_converged_store():
    ops = legacy_store()
    engine = MigrationEngine(ops)
    await engine.run()

    planned = await engine.plan()

    assert [p.state for p in planned] == ["applied"] * len(ALL_STEPS)


async def test_report_serializes():
    report = await MigrationEngine(legacy_store()).run()

    data = report.to_dict()
    assert data["applied"] == ALL_STEPS
    assert data["rows_remapped"] == 3
    assert report.to_dict()["converged"] is True
    assert report.unknown_status_values == []


def test_steps_must_implement_check_and_apply():
    class CheckOnly(Step):
        name = "check_only"

        async def is_applied(self, ops):
            return True

    with pytest.raises(TypeError):
        Step()
    with pytest.raises(TypeError):
        CheckOnly()
    assert all(isinstance(step, Step) for step in default_steps())
