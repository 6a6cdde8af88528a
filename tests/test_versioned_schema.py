import unittest

from versioned_schema import (
    GeneratedColumn,
    Index,
    Migrator,
    SqlType,
    TableSource,
    UnknownMigrationVersionError,
    VersionedSchema,
    VersionedTable,
    VersionedView,
    ViewSource,
)


class RecordingDatabase:
    def __init__(self) -> None:
        self.statements: list[str] = []

    async def execute(self, sql: str) -> None:
        self.statements.append(sql)


def id_column(aliased_name: str) -> GeneratedColumn[int]:
    return GeneratedColumn("id", aliased_name, False, type=SqlType.INT, default_constraints="PRIMARY KEY")


def note_column(aliased_name: str) -> GeneratedColumn[str]:
    return GeneratedColumn("note", aliased_name, True, type=SqlType.STRING, default_value="''")


def notes_source(**kwargs) -> TableSource:
    return TableSource(entity_name="notes", columns=[id_column, note_column], attached_database=None, **kwargs)


class TestResultSets(unittest.TestCase):
    def test_alias_is_passed_to_column_factories(self) -> None:
        table = VersionedTable(source=notes_source(), alias="n")
        self.assertEqual(table.aliased_name, "n")
        self.assertEqual([c.aliased_name for c in table.columns], ["n", "n"])
        self.assertIs(table.columns_by_name["note"], table.columns[1])
        self.assertEqual(VersionedTable(source=notes_source()).aliased_name, "notes")

    def test_create_and_drop_statements(self) -> None:
        table = VersionedTable(source=notes_source(without_rowid=True, table_constraints=["UNIQUE (note)"]))
        self.assertEqual(
            table.create_statement(),
            "CREATE TABLE IF NOT EXISTS notes "
            "(id INTEGER NOT NULL PRIMARY KEY, note TEXT DEFAULT '', UNIQUE (note)) WITHOUT ROWID",
        )
        self.assertEqual(table.drop_statement(), "DROP TABLE IF EXISTS notes")

        view = VersionedView(
            source=ViewSource(
                entity_name="order",
                create_view_stmt='CREATE VIEW "order" AS SELECT 1 AS id',
                columns=[id_column],
                attached_database=None,
            )
        )
        self.assertEqual(view.drop_statement(), 'DROP VIEW IF EXISTS "order"')

    def test_custom_constraints_replace_not_null(self) -> None:
        column = GeneratedColumn("code", "t", False, type=SqlType.STRING, custom_constraints="COLLATE NOCASE")
        self.assertEqual(column.sql_definition(), "code TEXT COLLATE NOCASE")


class NotesSchema(VersionedSchema):
    def __init__(self, *, database) -> None:
        super().__init__(database=database, version=2)
        self.notes = VersionedTable(source=notes_source())
        self.notes_by_note = Index("notes_by_note", "CREATE INDEX notes_by_note ON notes (note)")

    @property
    def entities(self):
        return [self.notes, self.notes_by_note]


class TestMigrator(unittest.IsolatedAsyncioTestCase):
    async def test_create_all_and_add_column(self) -> None:
        database = RecordingDatabase()
        schema = NotesSchema(database=database)
        migrator = Migrator(database, schema)

        await migrator.create_all()
        await migrator.add_column(schema.notes, note_column("notes"))
        await migrator.drop(schema.notes_by_note)

        self.assertEqual(
            database.statements,
            [
                schema.notes.create_statement(),
                "CREATE INDEX notes_by_note ON notes (note)",
                "ALTER TABLE notes ADD COLUMN note TEXT DEFAULT ''",
                "DROP INDEX IF EXISTS notes_by_note",
            ],
        )

    async def test_create_all_requires_a_schema(self) -> None:
        with self.assertRaises(ValueError):
            await Migrator(RecordingDatabase()).create_all()

    async def test_step_by_step_runs_until_target(self) -> None:
        seen: list[int] = []

        async def step(current_version: int, database) -> int:
            seen.append(current_version)
            if current_version > 3:
                raise UnknownMigrationVersionError(current_version)
            return current_version + 1

        on_upgrade = VersionedSchema.step_by_step_helper(step=step)
        await on_upgrade(Migrator(RecordingDatabase()), 1, 4)
        self.assertEqual(seen, [1, 2, 3])

        with self.assertRaises(UnknownMigrationVersionError) as ctx:
            await on_upgrade(Migrator(RecordingDatabase()), 4, 5)
        self.assertEqual(ctx.exception.version, 4)
        self.assertEqual(str(ctx.exception), "Unknown migration from 4")


if __name__ == "__main__":
    unittest.main()
