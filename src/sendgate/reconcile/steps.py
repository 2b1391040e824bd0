"""Reconciliation steps for the tasks table.

Each step inspects the current schema first and is skipped when its target
state already holds, so a run that died halfway can simply be repeated.
"""

from abc import ABC, abstractmethod

from sendgate.db import ddl
from sendgate.errors import MigrationStepError
from sendgate.models import LEGACY_STATUS_MAP, TaskStatus
from sendgate.reconcile.ops import SchemaOps

_LEGACY_VALUES = list(LEGACY_STATUS_MAP)
_ACTIVE_VALUES = [s.value for s in TaskStatus if s in TaskStatus.active_states()]


class Step(ABC):
    """One idempotent remediation step."""

    name: str = "step"
    # Later steps cannot be inspected until this one has run
    structural: bool = False

    @abstractmethod
    async def is_applied(self, ops: SchemaOps) -> bool:
        """Whether the target state already holds."""

    @abstractmethod
    async def apply(self, ops: SchemaOps) -> int:
        """Apply the step. Returns the number of rows rewritten."""

    def ambiguous(self, detail: str) -> MigrationStepError:
        return MigrationStepError(self.name, f"ambiguous schema state: {detail}")


class RenameLegacyTable(Step):
    name = "rename_legacy_table"
    structural = True

    async def is_applied(self, ops: SchemaOps) -> bool:
        legacy = await ops.table_exists(ddl.LEGACY_TASKS_TABLE)
        current = await ops.table_exists(ddl.TASKS_TABLE)
        if legacy and current:
            raise self.ambiguous(
                f"both {ddl.LEGACY_TASKS_TABLE} and {ddl.TASKS_TABLE} exist"
            )
        if not legacy and not current:
            raise MigrationStepError(
                self.name,
                f"neither {ddl.LEGACY_TASKS_TABLE} nor {ddl.TASKS_TABLE} exists",
            )
        return current

    async def apply(self, ops: SchemaOps) -> int:
        await ops.rename_table(ddl.LEGACY_TASKS_TABLE, ddl.TASKS_TABLE)
        return 0


class ConformColumns(Step):
    name = "conform_columns"
    structural = True

    async def _pending(self, ops: SchemaOps) -> list[tuple[str, str, str]]:
        columns = await ops.columns(ddl.TASKS_TABLE)
        pending: list[tuple[str, str, str]] = []

        # Renames first so the JSON conversion sees the final names
        renamed = dict(columns)
        for old, new in ddl.LEGACY_COLUMN_RENAMES.items():
            if old in columns and new in columns:
                raise self.ambiguous(f"columns {old} and {new} both exist")
            if old in columns:
                pending.append(("rename", old, new))
                renamed[new] = renamed.pop(old)

        for column, sql_type in ddl.ADDED_COLUMNS.items():
            if column not in renamed:
                pending.append(("add", column, sql_type))
        for column in ddl.DROPPED_COLUMNS:
            if column in renamed:
                pending.append(("drop", column, ""))
        for column in ddl.JSON_COLUMNS:
            if column in renamed and renamed[column] != "jsonb":
                pending.append(("jsonb", column, ""))
        return pending

    async def is_applied(self, ops: SchemaOps) -> bool:
        return not await self._pending(ops)

    async def apply(self, ops: SchemaOps) -> int:
        table = ddl.TASKS_TABLE
        for action, column, arg in await self._pending(ops):
            if action == "rename":
                await ops.rename_column(table, column, arg)
            elif action == "add":
                await ops.add_column(table, column, arg)
            elif action == "drop":
                await ops.drop_column(table, column)
            elif action == "jsonb":
                await ops.convert_column_to_jsonb(table, column)
        return 0


class RemapLegacyStatuses(Step):
    """Rewrite sent/processing rows. The legacy constraint forbids the new values, so it goes first."""

    name = "remap_legacy_statuses"

    async def is_applied(self, ops: SchemaOps) -> bool:
        if await ops.constraint_exists(ddl.TASKS_TABLE, ddl.LEGACY_STATUS_CONSTRAINT):
            return False
        return await ops.count_values(ddl.TASKS_TABLE, "status", _LEGACY_VALUES) == 0

    async def apply(self, ops: SchemaOps) -> int:
        if await ops.constraint_exists(ddl.TASKS_TABLE, ddl.LEGACY_STATUS_CONSTRAINT):
            await ops.drop_constraint(ddl.TASKS_TABLE, ddl.LEGACY_STATUS_CONSTRAINT)
        mapping = {old: new.value for old, new in LEGACY_STATUS_MAP.items()}
        return await ops.remap_values(ddl.TASKS_TABLE, "status", mapping)


class AddStatusConstraint(Step):
    name = "add_status_constraint"

    async def is_applied(self, ops: SchemaOps) -> bool:
        return await ops.constraint_exists(ddl.TASKS_TABLE, ddl.STATUS_CONSTRAINT)

    async def apply(self, ops: SchemaOps) -> int:
        allowed = {s.value for s in TaskStatus}
        unknown = sorted(
            set(await ops.distinct_values(ddl.TASKS_TABLE, "status")) - allowed
        )
        if unknown:
            raise MigrationStepError(self.name, f"rows hold unknown statuses: {unknown}")
        await ops.add_check_constraint(
            ddl.TASKS_TABLE, ddl.STATUS_CONSTRAINT, "status", [s.value for s in TaskStatus]
        )
        return 0


class RenameLegacyConstraints(Step):
    name = "rename_legacy_constraints"

    async def _pending(self, ops: SchemaOps) -> list[tuple[str, str, str]]:
        table = ddl.TASKS_TABLE
        pending: list[tuple[str, str, str]] = []
        for old, new in ddl.LEGACY_CONSTRAINT_RENAMES.items():
            if not await ops.constraint_exists(table, old):
                continue
            if await ops.constraint_exists(table, new):
                raise self.ambiguous(f"constraints {old} and {new} both exist")
            pending.append(("constraint", old, new))

        for old, new in ddl.LEGACY_INDEX_RENAMES.items():
            if not await ops.index_exists(old):
                continue
            if await ops.index_exists(new):
                # Current index already in place; the legacy copy is redundant
                pending.append(("drop_index", old, ""))
            else:
                pending.append(("index", old, new))

        if await ops.index_exists(ddl.LEGACY_PENDING_INDEX):
            pending.append(("drop_index", ddl.LEGACY_PENDING_INDEX, ""))
        if not await ops.index_exists(ddl.ACTIVE_INDEX):
            pending.append(("active_index", ddl.ACTIVE_INDEX, ""))
        return pending

    async def is_applied(self, ops: SchemaOps) -> bool:
        return not await self._pending(ops)

    async def apply(self, ops: SchemaOps) -> int:
        table = ddl.TASKS_TABLE
        for action, old, new in await self._pending(ops):
            if action == "constraint":
                await ops.rename_constraint(table, old, new)
            elif action == "index":
                await ops.rename_index(old, new)
            elif action == "drop_index":
                await ops.drop_index(old)
            elif action == "active_index":
                await ops.create_partial_index(
                    ddl.ACTIVE_INDEX, table, ["status", "updated_at"], "status", _ACTIVE_VALUES
                )
        return 0


class DropLegacyTrigger(Step):
    name = "drop_legacy_trigger"

    async def is_applied(self, ops: SchemaOps) -> bool:
        return not (
            await ops.trigger_exists(ddl.TASKS_TABLE, ddl.LEGACY_UPDATED_AT_TRIGGER)
            or await ops.function_exists(ddl.LEGACY_UPDATED_AT_FUNCTION)
        )

    async def apply(self, ops: SchemaOps) -> int:
        if await ops.trigger_exists(ddl.TASKS_TABLE, ddl.LEGACY_UPDATED_AT_TRIGGER):
            await ops.drop_trigger(ddl.TASKS_TABLE, ddl.LEGACY_UPDATED_AT_TRIGGER)
        if await ops.function_exists(ddl.LEGACY_UPDATED_AT_FUNCTION):
            await ops.drop_function(ddl.LEGACY_UPDATED_AT_FUNCTION)
        return 0


class InstallUpdatedAtTrigger(Step):
    name = "install_updated_at_trigger"

    async def is_applied(self, ops: SchemaOps) -> bool:
        return await ops.function_exists(ddl.UPDATED_AT_FUNCTION) and await ops.trigger_exists(
            ddl.TASKS_TABLE, ddl.UPDATED_AT_TRIGGER
        )

    async def apply(self, ops: SchemaOps) -> int:
        await ops.install_updated_at_trigger(
            ddl.TASKS_TABLE, ddl.UPDATED_AT_FUNCTION, ddl.UPDATED_AT_TRIGGER
        )
        return 0


class UpdateDescriptions(Step):
    name = "update_descriptions"

    async def is_applied(self, ops: SchemaOps) -> bool:
        return (
            await ops.table_comment(ddl.TASKS_TABLE) == ddl.TASKS_TABLE_COMMENT
            and await ops.column_comment(ddl.TASKS_TABLE, "status") == ddl.STATUS_COLUMN_COMMENT
        )

    async def apply(self, ops: SchemaOps) -> int:
        await ops.set_table_comment(ddl.TASKS_TABLE, ddl.TASKS_TABLE_COMMENT)
        await ops.set_column_comment(ddl.TASKS_TABLE, "status", ddl.STATUS_COLUMN_COMMENT)
        return 0


def default_steps() -> list[Step]:
    """Steps in execution order."""
    return [
        RenameLegacyTable(),
        ConformColumns(),
        RemapLegacyStatuses(),
        AddStatusConstraint(),
        RenameLegacyConstraints(),
        DropLegacyTrigger(),
        InstallUpdatedAtTrigger(),
        UpdateDescriptions(),
    ]
