import contextlib
import io
import sqlite3
import tempfile
import unittest
from pathlib import Path

from dump_schemas import dump_schema, main, sql_type_for_declared, write_schema_version
from generate_migration import generate_code
from schema_model import (
    ForeignKeyTable,
    Index,
    PrimaryKeyColumns,
    ReferenceAction,
    SchemaVersion,
    SqlType,
    Table,
    Trigger,
    UniqueColumns,
    View,
    load_schema_versions,
)
from versioned_schema import Migrator

SCHEMA_SQL = """
CREATE TABLE teams (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL UNIQUE
);
CREATE TABLE members (
    team_id INTEGER NOT NULL REFERENCES teams (id) ON DELETE CASCADE,
    userName VARCHAR(40) NOT NULL,
    joined_at DATETIME DEFAULT 0,
    score REAL,
    PRIMARY KEY (team_id, userName)
);
CREATE TABLE kv (k TEXT PRIMARY KEY, v BLOB) WITHOUT ROWID;
CREATE TABLE counters (name TEXT NOT NULL, hits INTEGER NOT NULL DEFAULT 0) STRICT;
CREATE INDEX members_by_join ON members (joined_at);
CREATE VIEW team_titles AS SELECT id, title FROM teams;
CREATE TRIGGER teams_cleanup AFTER DELETE ON teams BEGIN DELETE FROM members WHERE team_id = old.id; END;
"""


def create_database(path: Path, script: str = SCHEMA_SQL) -> None:
    conn = sqlite3.connect(path)
    try:
        conn.executescript(script)
        conn.commit()
    finally:
        conn.close()


def element_names(version: SchemaVersion) -> list[tuple[str, str]]:
    return [(type(e).__name__, e.name) for e in version.schema]


class SqliteDatabase:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    async def execute(self, sql: str) -> None:
        self.conn.execute(sql)


class TestDeclaredTypes(unittest.TestCase):
    def test_affinity_rules(self) -> None:
        checks = [
            ("INTEGER", SqlType.INT),
            ("BIGINT", SqlType.BIG_INT),
            ("VARCHAR(40)", SqlType.STRING),
            ("TEXT", SqlType.STRING),
            ("BLOB", SqlType.BLOB),
            ("DOUBLE PRECISION", SqlType.DOUBLE),
            ("REAL", SqlType.DOUBLE),
            ("BOOLEAN", SqlType.BOOL),
            ("DATETIME", SqlType.DATE_TIME),
            ("", SqlType.ANY),
            ("NUMERIC", SqlType.ANY),
        ]
        for declared, expected in checks:
            self.assertEqual(sql_type_for_declared(declared), expected, declared)


class TestDumpSchemas(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.db_path = self.tmp / "app.db"
        create_database(self.db_path)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_dumps_elements_in_creation_order(self) -> None:
        version = dump_schema(self.db_path, 3)
        self.assertEqual(version.version, 3)
        self.assertEqual(
            element_names(version),
            [
                ("Table", "teams"),
                ("Table", "members"),
                ("Table", "kv"),
                ("Table", "counters"),
                ("Index", "members_by_join"),
                ("View", "team_titles"),
                ("Trigger", "teams_cleanup"),
            ],
        )

    def test_reads_columns_and_constraints(self) -> None:
        teams, members = dump_schema(self.db_path, 1).schema[:2]
        assert isinstance(teams, Table) and isinstance(members, Table)

        self.assertEqual([c.sql_name for c in teams.columns], ["id", "title"])
        self.assertEqual(teams.columns[0].constraints, ["PRIMARY KEY AUTOINCREMENT"])
        self.assertFalse(teams.columns[0].nullable)
        self.assertEqual(teams.table_constraints, [UniqueColumns(["title"])])

        user_name = members.columns[1]
        self.assertEqual((user_name.getter_name, user_name.sql_name), ("user_name", "userName"))
        self.assertEqual(user_name.sql_type, SqlType.STRING)
        joined_at = members.columns[2]
        self.assertEqual(joined_at.sql_type, SqlType.DATE_TIME)
        self.assertTrue(joined_at.nullable)
        self.assertEqual(joined_at.default_sql, "0")
        self.assertEqual(
            members.table_constraints,
            [
                PrimaryKeyColumns(["team_id", "userName"]),
                ForeignKeyTable(["team_id"], "teams", ["id"], on_update=None, on_delete=ReferenceAction.CASCADE),
            ],
        )

    def test_clashing_column_getters_are_numbered(self) -> None:
        db_path = self.tmp / "clash.db"
        create_database(db_path, "CREATE TABLE accounts (userId INTEGER, user_id TEXT);")
        [accounts] = dump_schema(db_path, 1).schema
        self.assertEqual([c.getter_name for c in accounts.columns], ["user_id", "user_id_2"])

        code = generate_code([SchemaVersion(1, []), dump_schema(db_path, 2)])
        self.assertIn("    def user_id_2(self) -> GeneratedColumn[str]:", code)

    def test_reads_table_flags(self) -> None:
        tables = {e.name: e for e in dump_schema(self.db_path, 1).schema if isinstance(e, Table)}
        self.assertTrue(tables["kv"].without_rowid)
        self.assertFalse(tables["kv"].strict)
        self.assertTrue(tables["counters"].strict)
        self.assertFalse(tables["teams"].without_rowid)

    def test_reads_index_view_and_trigger(self) -> None:
        schema = dump_schema(self.db_path, 1).schema
        index = next(e for e in schema if isinstance(e, Index))
        view = next(e for e in schema if isinstance(e, View))
        trigger = next(e for e in schema if isinstance(e, Trigger))

        self.assertEqual((index.table, index.columns, index.unique), ("members", ["joined_at"], False))
        self.assertEqual(index.create_stmt, "CREATE INDEX members_by_join ON members (joined_at)")
        self.assertEqual([c.sql_name for c in view.columns], ["id", "title"])
        self.assertTrue(view.create_view_stmt.startswith("CREATE VIEW team_titles"))
        self.assertEqual(trigger.on, "teams")

    def test_written_snapshot_loads_back(self) -> None:
        dumped = dump_schema(self.db_path, 7)
        out_path = write_schema_version(dumped, self.tmp / "schemas")
        self.assertEqual(out_path.name, "schema_v7.yaml")

        [loaded] = load_schema_versions(self.tmp / "schemas")
        self.assertEqual(loaded, dumped)

    def test_main_writes_snapshot(self) -> None:
        out_dir = self.tmp / "schemas"
        stdout = io.StringIO()
        with contextlib.redirect_stdout(stdout):
            code = main(["--db", str(self.db_path), "--version", "2", "--out-dir", str(out_dir)])
        self.assertEqual(code, 0)
        self.assertTrue((out_dir / "schema_v2.yaml").exists())
        self.assertIn("[1/7] table teams", stdout.getvalue())

    def test_main_reports_missing_database(self) -> None:
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr):
            code = main(["--db", str(self.tmp / "missing.db"), "--version", "1"])
        self.assertEqual(code, 1)
        self.assertIn("database not found", stderr.getvalue())


class TestDumpedSchemaRecreation(unittest.IsolatedAsyncioTestCase):
    async def test_generated_snapshot_recreates_database(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            source = Path(td) / "source.db"
            create_database(source)
            versions = [SchemaVersion(1, []), dump_schema(source, 2)]

            namespace: dict = {"__name__": "generated_schema_versions"}
            exec(compile(generate_code(versions), "<generated>", "exec"), namespace)

            async def from1_to2(migrator: Migrator, schema) -> None:
                await migrator.create_all()

            target = sqlite3.connect(":memory:")
            try:
                step = namespace["migration_steps"](from1_to2=from1_to2)
                self.assertEqual(await step(1, SqliteDatabase(target)), 2)

                recreated = target.execute(
                    "SELECT type, name FROM sqlite_master WHERE name NOT LIKE 'sqlite_%' ORDER BY rowid"
                ).fetchall()
                self.assertEqual(
                    recreated,
                    [
                        ("table", "teams"),
                        ("table", "members"),
                        ("table", "kv"),
                        ("table", "counters"),
                        ("index", "members_by_join"),
                        ("view", "team_titles"),
                        ("trigger", "teams_cleanup"),
                    ],
                )
            finally:
                target.close()


if __name__ == "__main__":
    unittest.main()
