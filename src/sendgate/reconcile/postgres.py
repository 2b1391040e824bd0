"""PostgreSQL implementation of the schema operations port."""

import re
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from sendgate.db import ddl

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")


def _ident(name: str) -> str:
    """Identifiers are interpolated into DDL, so only plain lowercase names pass."""
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Refusing unsafe SQL identifier: {name!r}")
    return name


def _literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class PostgresSchemaOps:
    """Catalog inspection and DDL against the current schema of a PostgreSQL database."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._conn: Optional[AsyncConnection] = None

    @asynccontextmanager
    async def step(self) -> AsyncGenerator[None, None]:
        async with self.engine.begin() as conn:
            self._conn = conn
            try:
                yield
            finally:
                self._conn = None

    @property
    def conn(self) -> AsyncConnection:
        if self._conn is None:
            raise RuntimeError("Schema operation outside of a step transaction")
        return self._conn

    async def _scalar(self, sql: str, **params):
        result = await self.conn.execute(text(sql), params)
        return result.scalar()

    async def _execute(self, sql: str) -> None:
        await self.conn.execute(text(sql))

    # Tables and columns

    async def table_exists(self, table: str) -> bool:
        return bool(
            await self._scalar(
                "SELECT EXISTS (SELECT 1 FROM information_schema.tables "
                "WHERE table_schema = current_schema() AND table_name = :t)",
                t=table,
            )
        )

    async def rename_table(self, old: str, new: str) -> None:
        await self._execute(f"ALTER TABLE {_ident(old)} RENAME TO {_ident(new)}")

    async def columns(self, table: str) -> dict[str, str]:
        result = await self.conn.execute(
            text(
                "SELECT column_name, data_type FROM information_schema.columns "
                "WHERE table_schema = current_schema() AND table_name = :t"
            ),
            {"t": table},
        )
        return {name: data_type.lower() for name, data_type in result.all()}

    async def rename_column(self, table: str, old: str, new: str) -> None:
        await self._execute(
            f"ALTER TABLE {_ident(table)} RENAME COLUMN {_ident(old)} TO {_ident(new)}"
        )

    async def add_column(self, table: str, column: str, sql_type: str) -> None:
        await self._execute(f"ALTER TABLE {_ident(table)} ADD COLUMN {_ident(column)} {sql_type}")

    async def drop_column(self, table: str, column: str) -> None:
        await self._execute(f"ALTER TABLE {_ident(table)} DROP COLUMN {_ident(column)}")

    async def convert_column_to_jsonb(self, table: str, column: str) -> None:
        col = _ident(column)
        await self._execute(
            f"ALTER TABLE {_ident(table)} ALTER COLUMN {col} TYPE jsonb USING {col}::jsonb"
        )

    # Constraints and indexes

    async def constraint_exists(self, table: str, name: str) -> bool:
        return bool(
            await self._scalar(
                "SELECT EXISTS (SELECT 1 FROM pg_constraint c "
                "JOIN pg_class t ON t.oid = c.conrelid "
                "JOIN pg_namespace n ON n.oid = t.relnamespace "
                "WHERE n.nspname = current_schema() AND t.relname = :t AND c.conname = :c)",
                t=table,
                c=name,
            )
        )

    async def add_check_constraint(
        self, table: str, name: str, column: str, values: Sequence[str]
    ) -> None:
        allowed = ", ".join(_literal(v) for v in values)
        await self._execute(
            f"ALTER TABLE {_ident(table)} ADD CONSTRAINT {_ident(name)} "
            f"CHECK ({_ident(column)} IN ({allowed}))"
        )

    async def drop_constraint(self, table: str, name: str) -> None:
        await self._execute(f"ALTER TABLE {_ident(table)} DROP CONSTRAINT {_ident(name)}")

    async def rename_constraint(self, table: str, old: str, new: str) -> None:
        await self._execute(
            f"ALTER TABLE {_ident(table)} RENAME CONSTRAINT {_ident(old)} TO {_ident(new)}"
        )

    async def index_exists(self, name: str) -> bool:
        return bool(
            await self._scalar(
                "SELECT EXISTS (SELECT 1 FROM pg_class c "
                "JOIN pg_namespace n ON n.oid = c.relnamespace "
                "WHERE c.relkind = 'i' AND n.nspname = current_schema() AND c.relname = :i)",
                i=name,
            )
        )

    async def rename_index(self, old: str, new: str) -> None:
        await self._execute(f"ALTER INDEX {_ident(old)} RENAME TO {_ident(new)}")

    async def drop_index(self, name: str) -> None:
        await self._execute(f"DROP INDEX {_ident(name)}")

    async def create_partial_index(
        self,
        name: str,
        table: str,
        columns: Sequence[str],
        where_column: str,
        where_values: Sequence[str],
    ) -> None:
        cols = ", ".join(_ident(c) for c in columns)
        allowed = ", ".join(_literal(v) for v in where_values)
        await self._execute(
            f"CREATE INDEX {_ident(name)} ON {_ident(table)} ({cols}) "
            f"WHERE {_ident(where_column)} IN ({allowed})"
        )

    # Triggers and functions

    async def trigger_exists(self, table: str, name: str) -> bool:
        return bool(
            await self._scalar(
                "SELECT EXISTS (SELECT 1 FROM pg_trigger tg "
                "JOIN pg_class t ON t.oid = tg.tgrelid "
                "JOIN pg_namespace n ON n.oid = t.relnamespace "
                "WHERE n.nspname = current_schema() AND t.relname = :t "
                "AND tg.tgname = :g AND NOT tg.tgisinternal)",
                t=table,
                g=name,
            )
        )

    async def drop_trigger(self, table: str, name: str) -> None:
        await self._execute(f"DROP TRIGGER {_ident(name)} ON {_ident(table)}")

    async def function_exists(self, name: str) -> bool:
        return bool(
            await self._scalar(
                "SELECT EXISTS (SELECT 1 FROM pg_proc p "
                "JOIN pg_namespace n ON n.oid = p.pronamespace "
                "WHERE n.nspname = current_schema() AND p.proname = :f)",
                f=name,
            )
        )

    async def drop_function(self, name: str) -> None:
        await self._execute(f"DROP FUNCTION {_ident(name)}() CASCADE")

    async def install_updated_at_trigger(self, table: str, function: str, trigger: str) -> None:
        await self._execute(ddl.updated_at_function_sql(_ident(function)))
        await self._execute(f"DROP TRIGGER IF EXISTS {_ident(trigger)} ON {_ident(table)}")
        await self._execute(ddl.updated_at_trigger_sql(_ident(table), trigger, function))

    # Descriptions

    async def table_comment(self, table: str) -> str | None:
        return await self._scalar(
            "SELECT obj_description(to_regclass(:t), 'pg_class')", t=_ident(table)
        )

    async def column_comment(self, table: str, column: str) -> str | None:
        return await self._scalar(
            "SELECT col_description(a.attrelid, a.attnum) FROM pg_attribute a "
            "WHERE a.attrelid = to_regclass(:t) AND a.attname = :c",
            t=_ident(table),
            c=column,
        )

    async def set_table_comment(self, table: str, comment: str) -> None:
        await self._execute(f"COMMENT ON TABLE {_ident(table)} IS {_literal(comment)}")

    async def set_column_comment(self, table: str, column: str, comment: str) -> None:
        await self._execute(
            f"COMMENT ON COLUMN {_ident(table)}.{_ident(column)} IS {_literal(comment)}"
        )

    # Data

    async def count_values(self, table: str, column: str, values: Sequence[str]) -> int:
        col = _ident(column)
        stmt = text(f"SELECT count(*) FROM {_ident(table)} WHERE {col} IN :vals").bindparams(
            bindparam("vals", expanding=True)
        )
        result = await self.conn.execute(stmt, {"vals": list(values)})
        return int(result.scalar() or 0)

    async def remap_values(self, table: str, column: str, mapping: dict[str, str]) -> int:
        col = _ident(column)
        stmt = text(f"UPDATE {_ident(table)} SET {col} = :new WHERE {col} = :old")
        rows = 0
        for old, new in mapping.items():
            result = await self.conn.execute(stmt, {"old": old, "new": new})
            rows += result.rowcount
        return rows

    async def distinct_values(self, table: str, column: str) -> list[str]:
        col = _ident(column)
        result = await self.conn.execute(
            text(f"SELECT DISTINCT {col} FROM {_ident(table)} ORDER BY {col}")
        )
        return [row[0] for row in result.all()]
