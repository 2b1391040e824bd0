"""Schema operations port used by the reconciliation steps."""

from typing import AsyncContextManager, Protocol, Sequence


class SchemaOps(Protocol):
    """
    Inspection and mutation of the tasks table's schema objects.

    ``step()`` scopes one transaction; every other call must happen inside
    it. Mutations assume the caller has already checked the object's state.
    """

    def step(self) -> AsyncContextManager[None]: ...

    # Tables and columns
    async def table_exists(self, table: str) -> bool: ...
    async def rename_table(self, old: str, new: str) -> None: ...
    async def columns(self, table: str) -> dict[str, str]: ...
    async def rename_column(self, table: str, old: str, new: str) -> None: ...
    async def add_column(self, table: str, column: str, sql_type: str) -> None: ...
    async def drop_column(self, table: str, column: str) -> None: ...
    async def convert_column_to_jsonb(self, table: str, column: str) -> None: ...

    # Constraints and indexes
    async def constraint_exists(self, table: str, name: str) -> bool: ...
    async def add_check_constraint(
        self, table: str, name: str, column: str, values: Sequence[str]
    ) -> None: ...
    async def drop_constraint(self, table: str, name: str) -> None: ...
    async def rename_constraint(self, table: str, old: str, new: str) -> None: ...
    async def index_exists(self, name: str) -> bool: ...
    async def rename_index(self, old: str, new: str) -> None: ...
    async def drop_index(self, name: str) -> None: ...
    async def create_partial_index(
        self,
        name: str,
        table: str,
        columns: Sequence[str],
        where_column: str,
        where_values: Sequence[str],
    ) -> None: ...

    # Triggers and functions
    async def trigger_exists(self, table: str, name: str) -> bool: ...
    async def drop_trigger(self, table: str, name: str) -> None: ...
    async def function_exists(self, name: str) -> bool: ...
    async def drop_function(self, name: str) -> None: ...
    async def install_updated_at_trigger(self, table: str, function: str, trigger: str) -> None: ...

    # Descriptions
    async def table_comment(self, table: str) -> str | None: ...
    async def column_comment(self, table: str, column: str) -> str | None: ...
    async def set_table_comment(self, table: str, comment: str) -> None: ...
    async def set_column_comment(self, table: str, column: str, comment: str) -> None: ...

    # Data
    async def count_values(self, table: str, column: str, values: Sequence[str]) -> int: ...
    async def remap_values(self, table: str, column: str, mapping: dict[str, str]) -> int: ...
    async def distinct_values(self, table: str, column: str) -> list[str]: ...
