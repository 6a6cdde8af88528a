"""Schema version model and loader for schemas/schema_v<N>.yaml snapshots."""

from __future__ import annotations

import dataclasses
import enum
import keyword
import re
from pathlib import Path
from typing import Any, Union

import yaml


class SqlType(enum.Enum):
    BOOL = "bool"
    STRING = "string"
    BIG_INT = "big_int"
    INT = "int"
    DATE_TIME = "date_time"
    BLOB = "blob"
    DOUBLE = "double"
    ANY = "any"

    @property
    def python_type(self) -> str:
        return PYTHON_TYPE_NAMES[self]

    @property
    def sql_name(self) -> str:
        return SQL_TYPE_NAMES[self]


PYTHON_TYPE_NAMES: dict[SqlType, str] = {
    SqlType.BOOL: "bool",
    SqlType.STRING: "str",
    SqlType.BIG_INT: "int",
    SqlType.INT: "int",
    SqlType.DATE_TIME: "datetime",
    SqlType.BLOB: "bytes",
    SqlType.DOUBLE: "float",
    SqlType.ANY: "object",
}

# Date/time values are stored as unix timestamps.
SQL_TYPE_NAMES: dict[SqlType, str] = {
    SqlType.BOOL: "INTEGER",
    SqlType.STRING: "TEXT",
    SqlType.BIG_INT: "INTEGER",
    SqlType.INT: "INTEGER",
    SqlType.DATE_TIME: "INTEGER",
    SqlType.BLOB: "BLOB",
    SqlType.DOUBLE: "REAL",
    SqlType.ANY: "ANY",
}


class ReferenceAction(enum.Enum):
    SET_NULL = "SET NULL"
    SET_DEFAULT = "SET DEFAULT"
    CASCADE = "CASCADE"
    RESTRICT = "RESTRICT"
    NO_ACTION = "NO ACTION"


@dataclasses.dataclass
class Column:
    getter_name: str
    sql_name: str
    sql_type: SqlType
    nullable: bool = False
    default_sql: str | None = None
    constraints: list[str] = dataclasses.field(default_factory=list)
    custom_constraints: str | None = None


@dataclasses.dataclass
class PrimaryKeyColumns:
    columns: list[str]


@dataclasses.dataclass
class UniqueColumns:
    columns: list[str]


@dataclasses.dataclass
class ForeignKeyTable:
    local_columns: list[str]
    other_table: str
    other_columns: list[str]
    on_update: ReferenceAction | None = None
    on_delete: ReferenceAction | None = None


TableConstraint = Union[PrimaryKeyColumns, UniqueColumns, ForeignKeyTable]


@dataclasses.dataclass
class VirtualTableData:
    module_and_args: str


@dataclasses.dataclass
class Table:
    name: str
    columns: list[Column]
    getter_name: str = ""
    table_constraints: list[TableConstraint] = dataclasses.field(default_factory=list)
    virtual: VirtualTableData | None = None
    without_rowid: bool = False
    strict: bool = False
    write_default_constraints: bool = True
    override_table_constraints: list[str] = dataclasses.field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.getter_name:
            self.getter_name = getter_name_for(self.name)

    @property
    def is_virtual(self) -> bool:
        return self.virtual is not None


@dataclasses.dataclass
class View:
    name: str
    columns: list[Column]
    create_view_stmt: str
    getter_name: str = ""

    def __post_init__(self) -> None:
        if not self.getter_name:
            self.getter_name = getter_name_for(self.name)


@dataclasses.dataclass
class Index:
    name: str
    table: str
    columns: list[str] = dataclasses.field(default_factory=list)
    unique: bool = False
    where: str | None = None
    create_stmt: str | None = None
    getter_name: str = ""

    def __post_init__(self) -> None:
        if not self.getter_name:
            self.getter_name = getter_name_for(self.name)


@dataclasses.dataclass
class Trigger:
    name: str
    on: str
    create_stmt: str
    getter_name: str = ""

    def __post_init__(self) -> None:
        if not self.getter_name:
            self.getter_name = getter_name_for(self.name)


SchemaElement = Union[Table, View, Index, Trigger]


@dataclasses.dataclass
class SchemaVersion:
    version: int
    schema: list[SchemaElement]
    options: dict[str, Any] = dataclasses.field(default_factory=dict)


# Attributes set by the runtime result set classes; column getters are
# properties on those classes and must not replace them.
RESERVED_GETTER_NAMES = frozenset(
    {
        "alias",
        "aliased_name",
        "attached_database",
        "columns",
        "columns_by_name",
        "create_statement",
        "drop_statement",
        "entity_name",
        "entity_type",
        "source",
    }
)


def is_valid_getter_name(name: str) -> bool:
    return name.isidentifier() and not keyword.iskeyword(name) and name not in RESERVED_GETTER_NAMES


def getter_name_for(sql_name: str) -> str:
    """Derive a snake_case Python identifier from an SQL name.

    ``userId`` and ``user id`` both become ``user_id``; names clashing with a
    keyword or a runtime attribute get a trailing underscore.
    """
    name = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", sql_name)
    name = re.sub(r"[^0-9A-Za-z_]+", "_", name).strip("_").lower()
    if not name:
        return "entity"
    if name[0].isdigit():
        name = f"_{name}"
    if not is_valid_getter_name(name):
        name += "_"
    return name


def unique_getter_name(sql_name: str, taken: set[str]) -> str:
    """Like getter_name_for, but numbered when the name is already taken.

    ``userId`` and ``user_id`` in one table become ``user_id`` and
    ``user_id_2``. The result is added to ``taken``.
    """
    base = getter_name_for(sql_name)
    name = base
    counter = 2
    while name in taken:
        name = f"{base}_{counter}"
        counter += 1
    taken.add(name)
    return name


def _require(data: dict, key: str, source: str) -> Any:
    if key not in data:
        raise ValueError(f"Missing '{key}' in {source}")
    return data[key]


def _parse_sql_type(raw: str, source: str) -> SqlType:
    try:
        return SqlType(raw)
    except ValueError:
        raise ValueError(f"Unknown SQL type '{raw}' in {source}") from None


def _parse_action(raw: str | None, source: str) -> ReferenceAction | None:
    if raw is None:
        return None
    normalized = raw.replace("_", " ").upper()
    try:
        return ReferenceAction(normalized)
    except ValueError:
        raise ValueError(f"Unknown reference action '{raw}' in {source}") from None


def parse_column(data: dict, source: str, taken: set[str] | None = None) -> Column:
    if not isinstance(data, dict):
        raise ValueError(f"Expected a column mapping in {source}")
    sql_name = _require(data, "name", source)
    return Column(
        getter_name=data.get("getter_name") or unique_getter_name(sql_name, set() if taken is None else taken),
        sql_name=sql_name,
        sql_type=_parse_sql_type(_require(data, "type", source), source),
        nullable=bool(data.get("nullable", False)),
        default_sql=data.get("default"),
        constraints=list(data.get("constraints") or []),
        custom_constraints=data.get("custom_constraints"),
    )


def parse_columns(items: list, source: str) -> list[Column]:
    # Explicit getter names win; derived ones are numbered around them.
    taken = {c["getter_name"] for c in items if isinstance(c, dict) and c.get("getter_name")}
    return [parse_column(c, source, taken) for c in items]


def parse_table_constraints(data: dict, source: str) -> list[TableConstraint]:
    constraints: list[TableConstraint] = []
    primary_key = data.get("primary_key")
    if primary_key:
        constraints.append(PrimaryKeyColumns(columns=list(primary_key)))
    for unique_set in data.get("unique_keys") or []:
        constraints.append(UniqueColumns(columns=list(unique_set)))
    for fk in data.get("foreign_keys") or []:
        constraints.append(
            ForeignKeyTable(
                local_columns=list(_require(fk, "columns", source)),
                other_table=_require(fk, "table", source),
                other_columns=list(fk.get("references") or []),
                on_update=_parse_action(fk.get("on_update"), source),
                on_delete=_parse_action(fk.get("on_delete"), source),
            )
        )
    return constraints


def parse_element(data: dict, source: str) -> SchemaElement:
    if not isinstance(data, dict):
        raise ValueError(f"Expected an element mapping in {source}")
    kind = _require(data, "kind", source)
    name = _require(data, "name", source)
    getter_name = data.get("getter_name", "")
    location = f"{source} ({kind} {name})"

    if kind == "table":
        virtual = data.get("virtual")
        return Table(
            name=name,
            getter_name=getter_name,
            columns=parse_columns(data.get("columns") or [], location),
            table_constraints=parse_table_constraints(data, location),
            virtual=VirtualTableData(module_and_args=_require(virtual, "module_and_args", location))
            if virtual
            else None,
            without_rowid=bool(data.get("without_rowid", False)),
            strict=bool(data.get("strict", False)),
            write_default_constraints=bool(data.get("write_default_constraints", True)),
            override_table_constraints=list(data.get("override_constraints") or []),
        )
    if kind == "view":
        return View(
            name=name,
            getter_name=getter_name,
            columns=parse_columns(data.get("columns") or [], location),
            create_view_stmt=_require(data, "sql", location),
        )
    if kind == "index":
        return Index(
            name=name,
            getter_name=getter_name,
            table=_require(data, "table", location),
            columns=list(data.get("columns") or []),
            unique=bool(data.get("unique", False)),
            where=data.get("where"),
            create_stmt=data.get("sql"),
        )
    if kind == "trigger":
        return Trigger(
            name=name,
            getter_name=getter_name,
            on=_require(data, "on", location),
            create_stmt=_require(data, "sql", location),
        )
    raise ValueError(f"Unsupported element kind '{kind}' in {source}")


def parse_schema_version(data: dict, source: str) -> SchemaVersion:
    if not isinstance(data, dict):
        raise ValueError(f"Expected a mapping in {source}")
    version = _require(data, "version", source)
    if not isinstance(version, int) or isinstance(version, bool):
        raise ValueError(f"Version must be an integer in {source}: {version!r}")
    return SchemaVersion(
        version=version,
        schema=[parse_element(e, source) for e in data.get("schema") or []],
        options=dict(data.get("options") or {}),
    )


def column_to_dict(column: Column) -> dict[str, Any]:
    out: dict[str, Any] = {"name": column.sql_name, "type": column.sql_type.value}
    if column.getter_name != getter_name_for(column.sql_name):
        out["getter_name"] = column.getter_name
    if column.nullable:
        out["nullable"] = True
    if column.default_sql is not None:
        out["default"] = column.default_sql
    if column.constraints:
        out["constraints"] = list(column.constraints)
    if column.custom_constraints is not None:
        out["custom_constraints"] = column.custom_constraints
    return out


def element_to_dict(element: SchemaElement) -> dict[str, Any]:
    match element:
        case Table():
            out: dict[str, Any] = {"kind": "table", "name": element.name}
            out["columns"] = [column_to_dict(c) for c in element.columns]
            for constraint in element.table_constraints:
                match constraint:
                    case PrimaryKeyColumns(columns=columns):
                        out["primary_key"] = list(columns)
                    case UniqueColumns(columns=columns):
                        out.setdefault("unique_keys", []).append(list(columns))
                    case ForeignKeyTable():
                        fk: dict[str, Any] = {
                            "columns": list(constraint.local_columns),
                            "table": constraint.other_table,
                            "references": list(constraint.other_columns),
                        }
                        if constraint.on_update is not None:
                            fk["on_update"] = constraint.on_update.value
                        if constraint.on_delete is not None:
                            fk["on_delete"] = constraint.on_delete.value
                        out.setdefault("foreign_keys", []).append(fk)
            if element.virtual is not None:
                out["virtual"] = {"module_and_args": element.virtual.module_and_args}
            if element.without_rowid:
                out["without_rowid"] = True
            if element.strict:
                out["strict"] = True
            if not element.write_default_constraints:
                out["write_default_constraints"] = False
            if element.override_table_constraints:
                out["override_constraints"] = list(element.override_table_constraints)
        case View():
            out = {"kind": "view", "name": element.name}
            out["columns"] = [column_to_dict(c) for c in element.columns]
            out["sql"] = element.create_view_stmt
        case Index():
            out = {"kind": "index", "name": element.name, "table": element.table}
            if element.columns:
                out["columns"] = list(element.columns)
            if element.unique:
                out["unique"] = True
            if element.where:
                out["where"] = element.where
            if element.create_stmt:
                out["sql"] = element.create_stmt
        case Trigger():
            out = {"kind": "trigger", "name": element.name, "on": element.on, "sql": element.create_stmt}
        case _:
            raise ValueError(f"Unhandled element type {element!r}")

    if element.getter_name != getter_name_for(element.name):
        out["getter_name"] = element.getter_name
    return out


def schema_version_to_dict(version: SchemaVersion) -> dict[str, Any]:
    out: dict[str, Any] = {"version": version.version}
    if version.options:
        out["options"] = dict(version.options)
    out["schema"] = [element_to_dict(e) for e in version.schema]
    return out


def load_schema_version(path: Path) -> SchemaVersion:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return parse_schema_version(data, str(path))


def load_schema_versions(schemas_dir: Path) -> list[SchemaVersion]:
    versions: dict[int, SchemaVersion] = {}
    sources: dict[int, Path] = {}
    for path in sorted(schemas_dir.glob("schema_v*.yaml")):
        version = load_schema_version(path)
        if version.version in versions:
            raise ValueError(
                f"Schema version {version.version} declared twice: {sources[version.version]} and {path}"
            )
        versions[version.version] = version
        sources[version.version] = path
    return [versions[v] for v in sorted(versions)]
