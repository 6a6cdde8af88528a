"""Runtime support imported by generated schema version modules.

Generated modules describe every schema version with the classes below and
expose ``migration_steps`` / ``step_by_step`` factories that drive a
``Migrator`` one version at a time. A database is anything with an awaitable
``execute(sql)`` method.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Awaitable, Callable, Generic, Protocol, TypeVar

from schema_model import SqlType
from sql_render import escape_identifier

__all__ = [
    "DatabaseConnection",
    "DatabaseSchemaEntity",
    "GeneratedColumn",
    "Index",
    "MigrationStepWithVersion",
    "Migrator",
    "OnUpgrade",
    "SqlType",
    "TableSource",
    "Trigger",
    "UnknownMigrationVersionError",
    "VersionedSchema",
    "VersionedTable",
    "VersionedView",
    "VersionedVirtualTable",
    "ViewSource",
    "VirtualTableSource",
]

T = TypeVar("T")


class DatabaseConnection(Protocol):
    async def execute(self, sql: str) -> Any: ...


MigrationStepWithVersion = Callable[[int, Any], Awaitable[int]]
OnUpgrade = Callable[["Migrator", int, int], Awaitable[None]]


class UnknownMigrationVersionError(ValueError):
    def __init__(self, version: int) -> None:
        super().__init__(f"Unknown migration from {version}")
        self.version = version


class GeneratedColumn(Generic[T]):
    def __init__(
        self,
        name: str,
        aliased_name: str,
        nullable: bool,
        *,
        type: SqlType,
        default_constraints: str | None = None,
        custom_constraints: str | None = None,
        default_value: str | None = None,
    ) -> None:
        self.name = name
        self.aliased_name = aliased_name
        self.nullable = nullable
        self.type = type
        self.default_constraints = default_constraints
        self.custom_constraints = custom_constraints
        self.default_value = default_value

    def sql_definition(self) -> str:
        parts = [escape_identifier(self.name), self.type.sql_name]
        if self.custom_constraints is not None:
            if self.custom_constraints:
                parts.append(self.custom_constraints)
        else:
            if not self.nullable:
                parts.append("NOT NULL")
            if self.default_constraints:
                parts.append(self.default_constraints)
        if self.default_value is not None:
            parts.append(f"DEFAULT {self.default_value}")
        return " ".join(parts)

    def __repr__(self) -> str:
        return f"GeneratedColumn({self.aliased_name}.{self.name}: {self.type.value})"


ColumnFactory = Callable[[str], GeneratedColumn]


@dataclasses.dataclass
class TableSource:
    entity_name: str
    columns: list[ColumnFactory]
    attached_database: Any
    without_rowid: bool = False
    is_strict: bool = False
    table_constraints: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class VirtualTableSource:
    entity_name: str
    module_and_args: str
    columns: list[ColumnFactory]
    attached_database: Any


@dataclasses.dataclass
class ViewSource:
    entity_name: str
    create_view_stmt: str
    columns: list[ColumnFactory]
    attached_database: Any


class DatabaseSchemaEntity:
    entity_type = ""
    entity_name: str

    def create_statement(self) -> str:
        raise NotImplementedError

    def drop_statement(self) -> str:
        return f"DROP {self.entity_type} IF EXISTS {escape_identifier(self.entity_name)}"


class _VersionedResultSet(DatabaseSchemaEntity):
    def __init__(self, *, source: Any, alias: str | None = None) -> None:
        self.source = source
        self.entity_name = source.entity_name
        self.alias = alias
        self.attached_database = source.attached_database
        self.columns = [factory(self.aliased_name) for factory in source.columns]
        self.columns_by_name = {column.name: column for column in self.columns}

    @property
    def aliased_name(self) -> str:
        return self.alias or self.entity_name

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.aliased_name!r})"


class VersionedTable(_VersionedResultSet):
    entity_type = "TABLE"
    source: TableSource

    def create_statement(self) -> str:
        definitions = [column.sql_definition() for column in self.columns]
        definitions.extend(self.source.table_constraints)
        stmt = f"CREATE TABLE IF NOT EXISTS {escape_identifier(self.entity_name)} ({', '.join(definitions)})"
        modifiers = []
        if self.source.without_rowid:
            modifiers.append("WITHOUT ROWID")
        if self.source.is_strict:
            modifiers.append("STRICT")
        if modifiers:
            stmt += " " + ", ".join(modifiers)
        return stmt


class VersionedVirtualTable(_VersionedResultSet):
    entity_type = "TABLE"
    source: VirtualTableSource

    def create_statement(self) -> str:
        return (
            f"CREATE VIRTUAL TABLE IF NOT EXISTS {escape_identifier(self.entity_name)} "
            f"USING {self.source.module_and_args}"
        )


class VersionedView(_VersionedResultSet):
    entity_type = "VIEW"
    source: ViewSource

    def create_statement(self) -> str:
        return self.source.create_view_stmt


class Index(DatabaseSchemaEntity):
    entity_type = "INDEX"

    def __init__(self, name: str, create_index_stmt: str) -> None:
        self.entity_name = name
        self.create_index_stmt = create_index_stmt

    def create_statement(self) -> str:
        return self.create_index_stmt


class Trigger(DatabaseSchemaEntity):
    entity_type = "TRIGGER"

    def __init__(self, name: str, create_trigger_stmt: str) -> None:
        self.entity_name = name
        self.create_trigger_stmt = create_trigger_stmt

    def create_statement(self) -> str:
        return self.create_trigger_stmt


class VersionedSchema:
    def __init__(self, *, database: DatabaseConnection, version: int) -> None:
        self.database = database
        self.version = version

    @property
    def entities(self) -> list[DatabaseSchemaEntity]:
        raise NotImplementedError

    @staticmethod
    def step_by_step_helper(*, step: MigrationStepWithVersion) -> OnUpgrade:
        async def on_upgrade(migrator: Migrator, from_version: int, to_version: int) -> None:
            await VersionedSchema.run_migration_steps(
                migrator=migrator,
                from_version=from_version,
                to_version=to_version,
                steps=step,
            )

        return on_upgrade

    @staticmethod
    async def run_migration_steps(
        *,
        migrator: Migrator,
        from_version: int,
        to_version: int,
        steps: MigrationStepWithVersion,
    ) -> None:
        current = from_version
        while current < to_version:
            current = await steps(current, migrator.database)


class Migrator:
    """Issues DDL for the entities of one schema version."""

    def __init__(self, database: DatabaseConnection, schema: VersionedSchema | None = None) -> None:
        self.database = database
        self.schema = schema

    async def create(self, entity: DatabaseSchemaEntity) -> None:
        await self.database.execute(entity.create_statement())

    async def create_all(self) -> None:
        if self.schema is None:
            raise ValueError("Migrator is not bound to a schema version")
        for entity in self.schema.entities:
            await self.create(entity)

    async def add_column(self, table: VersionedTable, column: GeneratedColumn) -> None:
        await self.database.execute(
            f"ALTER TABLE {escape_identifier(table.entity_name)} ADD COLUMN {column.sql_definition()}"
        )

    async def drop(self, entity: DatabaseSchemaEntity) -> None:
        await self.database.execute(entity.drop_statement())
