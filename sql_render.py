"""Render schema model values as SQL text and Python source expressions."""

from __future__ import annotations

import dataclasses
import re
from typing import Any, Union

from emit_scope import TextEmitter
from schema_model import (
    Column,
    ForeignKeyTable,
    Index,
    PrimaryKeyColumns,
    ReferenceAction,
    TableConstraint,
    Trigger,
    UniqueColumns,
)

PLAIN_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

SQL_KEYWORDS: frozenset[str] = frozenset(
    """
    ABORT ACTION ADD AFTER ALL ALTER ALWAYS ANALYZE AND AS ASC ATTACH AUTOINCREMENT
    BEFORE BEGIN BETWEEN BY CASCADE CASE CAST CHECK COLLATE COLUMN COMMIT CONFLICT
    CONSTRAINT CREATE CROSS CURRENT CURRENT_DATE CURRENT_TIME CURRENT_TIMESTAMP
    DATABASE DEFAULT DEFERRABLE DEFERRED DELETE DESC DETACH DISTINCT DO DROP EACH
    ELSE END ESCAPE EXCEPT EXCLUDE EXCLUSIVE EXISTS EXPLAIN FAIL FILTER FIRST
    FOLLOWING FOR FOREIGN FROM FULL GENERATED GLOB GROUP GROUPS HAVING IF IGNORE
    IMMEDIATE IN INDEX INDEXED INITIALLY INNER INSERT INSTEAD INTERSECT INTO IS
    ISNULL JOIN KEY LAST LEFT LIKE LIMIT MATCH MATERIALIZED NATURAL NO NOT NOTHING
    NOTNULL NULL NULLS OF OFFSET ON OR ORDER OTHERS OUTER OVER PARTITION PLAN
    PRAGMA PRECEDING PRIMARY QUERY RAISE RANGE RECURSIVE REFERENCES REGEXP REINDEX
    RELEASE RENAME REPLACE RESTRICT RETURNING RIGHT ROLLBACK ROW ROWS SAVEPOINT
    SELECT SET TABLE TEMP TEMPORARY THEN TIES TO TRANSACTION TRIGGER UNBOUNDED
    UNION UNIQUE UPDATE USING VACUUM VALUES VIEW VIRTUAL WHEN WHERE WINDOW WITH
    WITHOUT
    """.split()
)


def escape_identifier(name: str) -> str:
    if PLAIN_IDENTIFIER.match(name) and name.upper() not in SQL_KEYWORDS:
        return name
    return '"' + name.replace('"', '""') + '"'


def as_python_literal(value: Any) -> str:
    if value is None or isinstance(value, (bool, int, float, str)):
        return repr(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(as_python_literal(v) for v in value) + "]"
    raise ValueError(f"Cannot render {value!r} as a Python literal")


def render_column_list(columns: list[str]) -> str:
    return "(" + ", ".join(escape_identifier(c) for c in columns) + ")"


@dataclasses.dataclass(frozen=True)
class KeyClause:
    is_primary_key: bool
    columns: tuple[str, ...]

    def to_sql(self) -> str:
        keyword = "PRIMARY KEY" if self.is_primary_key else "UNIQUE"
        return f"{keyword} {render_column_list(list(self.columns))}"


@dataclasses.dataclass(frozen=True)
class ForeignKeyTableConstraint:
    columns: tuple[str, ...]
    foreign_table: str
    foreign_columns: tuple[str, ...]
    on_update: ReferenceAction | None = None
    on_delete: ReferenceAction | None = None

    def to_sql(self) -> str:
        parts = [
            f"FOREIGN KEY {render_column_list(list(self.columns))}",
            f"REFERENCES {escape_identifier(self.foreign_table)}",
        ]
        if self.foreign_columns:
            parts.append(render_column_list(list(self.foreign_columns)))
        if self.on_delete is not None:
            parts.append(f"ON DELETE {self.on_delete.value}")
        if self.on_update is not None:
            parts.append(f"ON UPDATE {self.on_update.value}")
        return " ".join(parts)


ConstraintNode = Union[KeyClause, ForeignKeyTableConstraint]


def constraint_clause(constraint: TableConstraint) -> ConstraintNode:
    match constraint:
        case PrimaryKeyColumns(columns=columns):
            return KeyClause(is_primary_key=True, columns=tuple(columns))
        case UniqueColumns(columns=columns):
            return KeyClause(is_primary_key=False, columns=tuple(columns))
        case ForeignKeyTable():
            return ForeignKeyTableConstraint(
                columns=tuple(constraint.local_columns),
                foreign_table=constraint.other_table,
                foreign_columns=tuple(constraint.other_columns),
                on_update=constraint.on_update,
                on_delete=constraint.on_delete,
            )
        case _:
            raise ValueError(f"Unhandled table constraint {constraint!r}")


def instantiate_column(column: Column) -> tuple[str, str]:
    """Return (annotation, constructor expression) for a column.

    The expression refers to ``aliased_name``, the parameter of the factory
    function it ends up in.
    """
    args = [
        as_python_literal(column.sql_name),
        "aliased_name",
        as_python_literal(column.nullable),
        f"type=SqlType.{column.sql_type.name}",
    ]
    if column.custom_constraints is not None:
        args.append(f"custom_constraints={as_python_literal(column.custom_constraints)}")
    elif column.constraints:
        args.append(f"default_constraints={as_python_literal(' '.join(column.constraints))}")
    if column.default_sql is not None:
        args.append(f"default_value={as_python_literal(column.default_sql)}")

    annotation = f"GeneratedColumn[{column.sql_type.python_type}]"
    return annotation, f"GeneratedColumn({', '.join(args)})"


def create_index_statement(index: Index) -> str:
    if index.create_stmt:
        return index.create_stmt
    unique = "UNIQUE " if index.unique else ""
    stmt = (
        f"CREATE {unique}INDEX {escape_identifier(index.name)} "
        f"ON {escape_identifier(index.table)} {render_column_list(index.columns)}"
    )
    if index.where:
        stmt += f" WHERE {index.where}"
    return stmt


def create_index(definition: TextEmitter, index: Index) -> TextEmitter:
    """Write the ``Index(...)`` constructor for ``index`` into a snapshot class body."""
    return definition.write(
        f"Index({as_python_literal(index.name)}, {as_python_literal(create_index_statement(index))})"
    )


def create_trigger(definition: TextEmitter, trigger: Trigger) -> TextEmitter:
    return definition.write(f"Trigger({as_python_literal(trigger.name)}, {as_python_literal(trigger.create_stmt)})")
