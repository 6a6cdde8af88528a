#!/usr/bin/env python3
"""Generate compact step-by-step migration code from dumped schema versions."""

from __future__ import annotations

import argparse
import dataclasses
import difflib
import enum
import sys
from itertools import pairwise
from pathlib import Path
from typing import Union

try:
    import yaml
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required. Install with: pip install pyyaml") from exc

from emit_scope import Scope, TextEmitter
from schema_model import (
    Column,
    Index,
    SchemaElement,
    SchemaVersion,
    SqlType,
    Table,
    Trigger,
    View,
    VirtualTableData,
    is_valid_getter_name,
    load_schema_versions,
)
from sql_render import as_python_literal, constraint_clause, create_index, create_trigger, instantiate_column

RUNTIME_MODULE = "versioned_schema"

RUNTIME_NAMES = [
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

# Attributes of VersionedSchema and its helpers; entity fields must not shadow them.
SCHEMA_RESERVED_NAMES = [
    "database",
    "entities",
    "version",
    "step_by_step_helper",
    "run_migration_steps",
]

ResultSetEntity = Union[Table, View]


class ResultSetKind(enum.Enum):
    TABLE = ("VersionedTable", "TableSource")
    VIRTUAL_TABLE = ("VersionedVirtualTable", "VirtualTableSource")
    VIEW = ("VersionedView", "ViewSource")

    @property
    def superclass(self) -> str:
        return self.value[0]

    @property
    def source_class(self) -> str:
        return self.value[1]


@dataclasses.dataclass(frozen=True)
class Shape:
    """Interface of a generated table or view class.

    Only the kind and the getter -> (sql name, type) pairs matter; the order of
    columns, constraints and the entity name do not.
    """

    kind: ResultSetKind
    column_types: frozenset[tuple[str, tuple[str, SqlType]]]


def columns_from(entity: ResultSetEntity) -> dict[str, tuple[str, SqlType]]:
    return {column.getter_name: (column.sql_name, column.sql_type) for column in entity.columns}


def result_set_kind(entity: SchemaElement) -> ResultSetKind:
    match entity:
        case Table(virtual=None):
            return ResultSetKind.TABLE
        case Table():
            return ResultSetKind.VIRTUAL_TABLE
        case View():
            return ResultSetKind.VIEW
        case _:
            raise ValueError(f"Unknown result set type: {entity!r}")


def suffix_for_element(element: SchemaElement) -> str:
    match element:
        case Table():
            return "table"
        case View():
            return "view"
        case Index():
            return "index"
        case Trigger():
            return "trigger"
        case _:
            raise ValueError(f"Unhandled element type {element!r}")


def table_constraints_for(table: Table) -> list[str]:
    constraints: list[str] = []
    if table.write_default_constraints:
        constraints.extend(constraint_clause(c).to_sql() for c in table.table_constraints)
    constraints.extend(table.override_table_constraints)
    return constraints


def step_name(current: SchemaVersion, following: SchemaVersion) -> str:
    return f"from{current.version}_to{following.version}"


def snapshot_class_name(version: SchemaVersion) -> str:
    return f"_S{version.version}"


class ColumnInterner:
    """Shares one factory function between all columns rendering to the same code."""

    def __init__(self, library_scope: Scope) -> None:
        self.library_scope = library_scope
        self.factories: dict[str, str] = {}

    def intern(self, column: Column) -> str:
        annotation, code = instantiate_column(column)
        existing = self.factories.get(code)
        if existing is not None:
            return existing

        name = f"_column_{len(self.factories)}"
        self.library_scope.reserve_names([name])
        (
            self.library_scope.leaf()
            .writeln()
            .writeln()
            .writeln(f"def {name}(aliased_name: str) -> {annotation}:")
            .writeln(f"    return {code}")
        )
        self.factories[code] = name
        return name


class ShapeInterner:
    """Shares one class between tables and views exposing the same getters.

    Constraints and table names are not part of a shape: migration code only
    depends on the getters, so a table whose constraints changed between two
    versions keeps its class.
    """

    def __init__(self, library_scope: Scope) -> None:
        self.library_scope = library_scope
        self.classes: dict[Shape, str] = {}

    def shape_for(self, entity: ResultSetEntity) -> str:
        kind = result_set_kind(entity)
        column_types = columns_from(entity)
        if len(column_types) != len(entity.columns):
            getters = [column.getter_name for column in entity.columns]
            duplicate = next(g for g in getters if getters.count(g) > 1)
            raise ValueError(f"Duplicate column getter name '{duplicate}' in {entity.name}")
        shape = Shape(kind, frozenset(column_types.items()))

        existing = self.classes.get(shape)
        if existing is not None:
            return existing

        for getter_name in column_types:
            if not is_valid_getter_name(getter_name):
                raise ValueError(f"Invalid column getter name '{getter_name}' in {entity.name}")

        class_name = f"Shape{len(self.classes)}"
        self.library_scope.reserve_names([class_name])
        writer = self.library_scope.leaf()
        (
            writer.writeln()
            .writeln()
            .writeln(f"class {class_name}({kind.superclass}):")
            .writeln(f"    def __init__(self, *, source: {kind.source_class}, alias: str | None = None) -> None:")
            .writeln("        super().__init__(source=source, alias=alias)")
        )

        for getter_name, (sql_name, sql_type) in column_types.items():
            annotation = f"GeneratedColumn[{sql_type.python_type}]"
            (
                writer.writeln()
                .writeln("    @property")
                .writeln(f"    def {getter_name}(self) -> {annotation}:")
                .writeln(f"        return self.columns_by_name[{as_python_literal(sql_name)}]")
            )

        self.classes[shape] = class_name
        return class_name


class SchemaVersionWriter:
    """Writes code describing every known schema version.

    A full description of every version would be huge, so only what
    migrations need is kept and identical column definitions and table
    interfaces are shared between versions.
    """

    def __init__(self, versions: list[SchemaVersion], library_scope: Scope, runtime_module: str = RUNTIME_MODULE) -> None:
        for version in versions:
            if version.version < 0:
                raise ValueError(f"Schema versions must not be negative: {version.version}")
        for previous, current in pairwise(versions):
            if current.version <= previous.version:
                raise ValueError(
                    f"Schema versions must be strictly ascending: {previous.version} is followed by {current.version}"
                )

        self.versions = versions
        self.library_scope = library_scope
        self.runtime_module = runtime_module
        self.columns = ColumnInterner(library_scope)
        self.shapes = ShapeInterner(library_scope)

    def _write_header(self, header_comment: str) -> None:
        writer = self.library_scope.leaf()
        writer.writeln("# GENERATED BY generate_migration.py, DO NOT MODIFY.")
        writer.writeln("# ruff: noqa")
        for line in header_comment.strip().splitlines():
            writer.writeln(line if line.startswith("#") else f"# {line}".rstrip())
        writer.writeln("from __future__ import annotations")
        writer.writeln()
        writer.writeln("from datetime import datetime")
        writer.writeln("from typing import Awaitable, Callable")
        writer.writeln()
        writer.writeln(f"from {self.runtime_module} import (")
        for name in RUNTIME_NAMES:
            writer.writeln(f"    {name},")
        writer.writeln(")")
        self.library_scope.reserve_names(["annotations", "datetime", "Awaitable", "Callable", *RUNTIME_NAMES])

    def _write_columns_argument(self, columns: list[Column], writer: TextEmitter) -> None:
        factories = [self.columns.intern(column) for column in columns]
        writer.writeln(f"                columns=[{', '.join(factories)}],")

    def _write_with_result_set(self, field_name: str, entity: ResultSetEntity, writer: TextEmitter) -> None:
        shape = self.shapes.shape_for(entity)
        writer.writeln(f"        self.{field_name} = {shape}(")

        match entity:
            case Table(virtual=VirtualTableData(module_and_args=module_and_args)):
                (
                    writer.writeln("            source=VirtualTableSource(")
                    .writeln(f"                entity_name={as_python_literal(entity.name)},")
                    .writeln(f"                module_and_args={as_python_literal(module_and_args)},")
                )
            case Table():
                (
                    writer.writeln("            source=TableSource(")
                    .writeln(f"                entity_name={as_python_literal(entity.name)},")
                    .writeln(f"                without_rowid={entity.without_rowid},")
                    .writeln(f"                is_strict={entity.strict},")
                    .writeln(f"                table_constraints={as_python_literal(table_constraints_for(entity))},")
                )
            case View():
                (
                    writer.writeln("            source=ViewSource(")
                    .writeln(f"                entity_name={as_python_literal(entity.name)},")
                    .writeln(f"                create_view_stmt={as_python_literal(entity.create_view_stmt)},")
                )

        self._write_columns_argument(entity.columns, writer)
        (
            writer.writeln("                attached_database=database,")
            .writeln("            ),")
            .writeln("            alias=None,")
            .writeln("        )")
        )

    def _write_entity(self, element: SchemaElement, definition: TextEmitter) -> str:
        suffix = suffix_for_element(element)
        if not is_valid_getter_name(element.getter_name):
            raise ValueError(f"Invalid getter name '{element.getter_name}' for {element.name}")
        name = definition.scope.get_non_conflicting_name(element.getter_name, lambda n: f"{n}_{suffix}")

        match element:
            case Table() | View():
                self._write_with_result_set(name, element, definition)
            case Index():
                create_index(definition.write(f"        self.{name} = "), element).writeln()
            case Trigger():
                create_trigger(definition.write(f"        self.{name} = "), element).writeln()
            case _:
                raise ValueError(f"Unhandled element type {element!r}")
        return name

    def _write_version(self, version: SchemaVersion) -> None:
        version_class = snapshot_class_name(version)
        self.library_scope.reserve_names([version_class])
        version_scope = self.library_scope.child()
        # Entity fields live on the VersionedSchema subclass, so the names it
        # already uses are off limits.
        version_scope.reserve_names(SCHEMA_RESERVED_NAMES)

        (
            version_scope.leaf()
            .writeln()
            .writeln()
            .writeln(f"class {version_class}(VersionedSchema):")
            .writeln("    def __init__(self, *, database: DatabaseConnection) -> None:")
            .writeln(f"        super().__init__(database=database, version={version.version})")
        )

        field_names = [self._write_entity(element, version_scope.leaf()) for element in version.schema]

        entities = (
            version_scope.leaf()
            .writeln()
            .writeln("    @property")
            .writeln("    def entities(self) -> list[DatabaseSchemaEntity]:")
        )
        if not field_names:
            entities.writeln("        return []")
            return
        entities.writeln("        return [")
        for field_name in field_names:
            entities.writeln(f"            self.{field_name},")
        entities.writeln("        ]")

    def _write_callback_parameters(self, writer: TextEmitter) -> None:
        for current, following in pairwise(self.versions):
            writer.writeln(
                f"    {step_name(current, following)}: "
                f"Callable[[Migrator, {snapshot_class_name(following)}], Awaitable[None]],"
            )

    def _write_signature(self, writer: TextEmitter, function_name: str, return_type: str) -> None:
        if len(self.versions) < 2:
            writer.writeln(f"def {function_name}() -> {return_type}:")
            return
        writer.writeln(f"def {function_name}(").writeln("    *,")
        self._write_callback_parameters(writer)
        writer.writeln(f") -> {return_type}:")

    def _write_migration_steps(self) -> None:
        self.library_scope.reserve_names(["migration_steps"])
        steps = self.library_scope.leaf().writeln().writeln()
        self._write_signature(steps, "migration_steps", "MigrationStepWithVersion")
        (
            steps.writeln("    async def step(current_version: int, database: DatabaseConnection) -> int:")
            .writeln("        match current_version:")
        )

        for current, following in pairwise(self.versions):
            (
                steps.writeln(f"            case {current.version}:")
                .writeln(f"                schema = {snapshot_class_name(following)}(database=database)")
                .writeln("                migrator = Migrator(database, schema)")
                .writeln(f"                await {step_name(current, following)}(migrator, schema)")
                .writeln(f"                return {following.version}")
            )

        (
            steps.writeln("            case _:")
            .writeln("                raise UnknownMigrationVersionError(current_version)")
            .writeln()
            .writeln("    return step")
        )

    def _write_step_by_step(self) -> None:
        self.library_scope.reserve_names(["step_by_step"])
        step_by_step = self.library_scope.leaf().writeln().writeln()
        self._write_signature(step_by_step, "step_by_step", "OnUpgrade")
        step_by_step.writeln("    return VersionedSchema.step_by_step_helper(")

        names = [step_name(current, following) for current, following in pairwise(self.versions)]
        if not names:
            step_by_step.writeln("        step=migration_steps(),")
        else:
            step_by_step.writeln("        step=migration_steps(")
            for name in names:
                step_by_step.writeln(f"            {name}={name},")
            step_by_step.writeln("        ),")
        step_by_step.writeln("    )")

    def write(self, header_comment: str = "") -> None:
        self._write_header(header_comment)

        # The oldest version is never a migration target, so it needs no class.
        for version in self.versions[1:]:
            self._write_version(version)

        self._write_migration_steps()
        self._write_step_by_step()


def load_config(config_path: Path | None) -> dict:
    if config_path is None:
        return {}
    return yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}


def generate_code(versions: list[SchemaVersion], config: dict | None = None) -> str:
    rendering = (config or {}).get("rendering", {})
    library_scope = Scope()
    writer = SchemaVersionWriter(
        versions,
        library_scope,
        runtime_module=rendering.get("runtime_module", RUNTIME_MODULE),
    )
    writer.write(header_comment=rendering.get("header_comment", ""))
    return library_scope.render()


def generate_outputs(schemas_dir: Path, config_path: Path | None = None) -> tuple[str, list[SchemaVersion]]:
    config = load_config(config_path)
    versions = load_schema_versions(schemas_dir)
    return generate_code(versions, config), versions


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def check_equal(path: Path, generated: str) -> bool:
    if not path.exists():
        print(f"[check] missing file: {path}", file=sys.stderr)
        return False

    existing = path.read_text(encoding="utf-8")
    if existing == generated:
        return True

    print(f"[check] drift detected: {path}", file=sys.stderr)
    diff = difflib.unified_diff(
        existing.splitlines(),
        generated.splitlines(),
        fromfile=str(path),
        tofile=f"generated:{path}",
        lineterm="",
    )
    for idx, line in enumerate(diff):
        if idx > 200:
            print("... (diff truncated)", file=sys.stderr)
            break
        print(line, file=sys.stderr)
    return False


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate step-by-step migration code from schema versions")
    parser.add_argument("--schemas-dir", default="schemas", help="Directory holding schema_v<N>.yaml files")
    parser.add_argument("--config", default=None, help="Optional YAML rendering config")
    parser.add_argument("--out", default="schema_versions.py", help="Output Python module")
    parser.add_argument("--check", action="store_true", help="Verify output is up-to-date without writing")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    schemas_dir = Path(args.schemas_dir)
    config_path = Path(args.config) if args.config else None
    out = Path(args.out)

    try:
        code, versions = generate_outputs(schemas_dir, config_path)
    except ValueError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 1

    if args.check:
        return 0 if check_equal(out, code) else 1

    write_text(out, code)
    print(f"Generated {out} ({len(versions)} schema versions)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
