#!/usr/bin/env python3
"""Dump the schema of a SQLite database to schemas/schema_v<N>.yaml.

Reads sqlite_master and the table/index/foreign key pragmas of the main
database and writes a snapshot that generate_migration.py understands.

Usage:
    python dump_schemas.py --db app.db --version 3 [--out-dir schemas]
"""

from __future__ import annotations

import argparse
import re
import sqlite3
import sys
from collections import defaultdict
from pathlib import Path

import yaml

from schema_model import (
    Column,
    ForeignKeyTable,
    Index,
    PrimaryKeyColumns,
    ReferenceAction,
    SchemaElement,
    SchemaVersion,
    SqlType,
    Table,
    TableConstraint,
    Trigger,
    UniqueColumns,
    View,
    VirtualTableData,
    schema_version_to_dict,
    unique_getter_name,
)


def sql_type_for_declared(declared: str) -> SqlType:
    """Map a declared column type to a SqlType, following SQLite's affinity rules."""
    upper = declared.upper()
    if not upper:
        return SqlType.ANY
    if "BOOL" in upper:
        return SqlType.BOOL
    if "DATE" in upper or "TIME" in upper:
        return SqlType.DATE_TIME
    if "BIGINT" in upper:
        return SqlType.BIG_INT
    if "INT" in upper:
        return SqlType.INT
    if "CHAR" in upper or "CLOB" in upper or "TEXT" in upper:
        return SqlType.STRING
    if "BLOB" in upper:
        return SqlType.BLOB
    if "REAL" in upper or "FLOA" in upper or "DOUB" in upper:
        return SqlType.DOUBLE
    return SqlType.ANY


def quote(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def list_schema_rows(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT type, name, tbl_name, sql FROM sqlite_master "
        "WHERE name NOT LIKE 'sqlite_%' "
        "ORDER BY rowid"
    ).fetchall()


def table_list(conn: sqlite3.Connection) -> dict[str, sqlite3.Row]:
    rows = conn.execute("PRAGMA table_list").fetchall()
    return {row["name"]: row for row in rows if row["schema"] == "main"}


def read_columns(conn: sqlite3.Connection, name: str, create_sql: str) -> tuple[list[Column], list[str]]:
    rows = conn.execute(f"PRAGMA table_info({quote(name)})").fetchall()
    primary_key = [row["name"] for row in sorted((r for r in rows if r["pk"]), key=lambda r: r["pk"])]
    autoincrement = re.search(r"\bAUTOINCREMENT\b", create_sql or "", flags=re.I) is not None

    columns: list[Column] = []
    taken: set[str] = set()
    for row in rows:
        constraints: list[str] = []
        if len(primary_key) == 1 and row["name"] == primary_key[0]:
            constraints.append("PRIMARY KEY AUTOINCREMENT" if autoincrement else "PRIMARY KEY")
        columns.append(
            Column(
                getter_name=unique_getter_name(row["name"], taken),
                sql_name=row["name"],
                sql_type=sql_type_for_declared(row["type"] or ""),
                nullable=not (row["notnull"] or row["pk"]),
                default_sql=row["dflt_value"],
                constraints=constraints,
            )
        )
    return columns, primary_key


def read_unique_keys(conn: sqlite3.Connection, name: str) -> list[UniqueColumns]:
    unique_keys: list[UniqueColumns] = []
    indexes = conn.execute(f"PRAGMA index_list({quote(name)})").fetchall()
    for index in sorted(indexes, key=lambda r: r["seq"], reverse=True):
        if index["origin"] != "u":
            continue
        info = conn.execute(f"PRAGMA index_info({quote(index['name'])})").fetchall()
        unique_keys.append(UniqueColumns(columns=[r["name"] for r in sorted(info, key=lambda r: r["seqno"])]))
    return unique_keys


def parse_reference_action(raw: str) -> ReferenceAction | None:
    action = ReferenceAction(raw.upper())
    return None if action is ReferenceAction.NO_ACTION else action


def read_foreign_keys(conn: sqlite3.Connection, name: str) -> list[ForeignKeyTable]:
    grouped: dict[int, list[sqlite3.Row]] = defaultdict(list)
    for row in conn.execute(f"PRAGMA foreign_key_list({quote(name)})").fetchall():
        grouped[row["id"]].append(row)

    foreign_keys: list[ForeignKeyTable] = []
    # SQLite numbers foreign keys in reverse declaration order.
    for fk_id in sorted(grouped, reverse=True):
        rows = sorted(grouped[fk_id], key=lambda r: r["seq"])
        foreign_keys.append(
            ForeignKeyTable(
                local_columns=[r["from"] for r in rows],
                other_table=rows[0]["table"],
                other_columns=[r["to"] for r in rows if r["to"] is not None],
                on_update=parse_reference_action(rows[0]["on_update"]),
                on_delete=parse_reference_action(rows[0]["on_delete"]),
            )
        )
    return foreign_keys


def read_table(conn: sqlite3.Connection, name: str, create_sql: str, info: sqlite3.Row | None) -> Table:
    columns, primary_key = read_columns(conn, name, create_sql)

    if info is not None and info["type"] == "virtual":
        m = re.search(r"\bUSING\s+(.+?)\s*;?\s*$", create_sql, flags=re.I | re.S)
        if not m:
            raise ValueError(f"Cannot find module of virtual table {name}")
        return Table(name=name, columns=columns, virtual=VirtualTableData(module_and_args=m.group(1)))

    constraints: list[TableConstraint] = []
    if len(primary_key) > 1:
        constraints.append(PrimaryKeyColumns(columns=primary_key))
    constraints.extend(read_unique_keys(conn, name))
    constraints.extend(read_foreign_keys(conn, name))

    return Table(
        name=name,
        columns=columns,
        table_constraints=constraints,
        without_rowid=bool(info["wr"]) if info is not None else False,
        strict=bool(info["strict"]) if info is not None else False,
    )


def read_index(conn: sqlite3.Connection, name: str, table: str, create_sql: str) -> Index:
    info = conn.execute(f"PRAGMA index_info({quote(name)})").fetchall()
    return Index(
        name=name,
        table=table,
        columns=[r["name"] for r in sorted(info, key=lambda r: r["seqno"]) if r["name"] is not None],
        unique=re.match(r"^\s*CREATE\s+UNIQUE\b", create_sql, flags=re.I) is not None,
        create_stmt=create_sql,
    )


def dump_schema(db_path: Path, version: int) -> SchemaVersion:
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        tables = table_list(conn)
        elements: list[SchemaElement] = []
        for row in list_schema_rows(conn):
            kind, name, table, sql = row["type"], row["name"], row["tbl_name"], row["sql"]
            info = tables.get(name)
            if kind == "table":
                if info is not None and info["type"] == "shadow":
                    continue
                elements.append(read_table(conn, name, sql or "", info))
            elif kind == "view":
                columns, _ = read_columns(conn, name, "")
                elements.append(View(name=name, columns=columns, create_view_stmt=sql))
            elif kind == "index":
                # Indexes backing UNIQUE / PRIMARY KEY constraints have no statement.
                if sql is None:
                    continue
                elements.append(read_index(conn, name, table, sql))
            elif kind == "trigger":
                elements.append(Trigger(name=name, on=table, create_stmt=sql))
        return SchemaVersion(version=version, schema=elements)
    finally:
        conn.close()


def write_schema_version(version: SchemaVersion, out_dir: Path) -> Path:
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / f"schema_v{version.version}.yaml"
    text = yaml.safe_dump(schema_version_to_dict(version), sort_keys=False, allow_unicode=True)
    out_path.write_text(text, encoding="utf-8")
    return out_path


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Dump a SQLite schema as a versioned YAML snapshot")
    parser.add_argument("--db", required=True, help="SQLite database file")
    parser.add_argument("--version", type=int, required=True, help="Schema version of the database")
    parser.add_argument("--out-dir", default="schemas", help="Output directory (default: schemas)")
    args = parser.parse_args(argv)

    db_path = Path(args.db)
    if not db_path.exists():
        print(f"Error: database not found: {db_path}", file=sys.stderr)
        return 1

    version = dump_schema(db_path, args.version)
    for i, element in enumerate(version.schema, 1):
        print(f"  [{i}/{len(version.schema)}] {type(element).__name__.lower()} {element.name}", flush=True)

    out_path = write_schema_version(version, Path(args.out_dir))
    print(f"\nSchema version {version.version} written to {out_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
