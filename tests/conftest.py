"""
Pytest configuration and shared fixtures for the migration tests.
"""

import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

from db.config import Settings, settings
from migrations.sqlite_to_postgres.models import ForeignKeyInfo, TransformedDataset, TypeName


class FakeTarget:
    """In-memory stand-in for PostgresTarget.

    Stores upserted rows per table keyed by id so re-imports behave like
    ON CONFLICT (id) DO UPDATE.
    """

    def __init__(
        self,
        connected: bool = True,
        fail_tables: set[str] | None = None,
        fail_constraints: set[str] | None = None,
        fail_schema: bool = False,
    ):
        self.connected = connected
        self.fail_tables = fail_tables or set()
        self.fail_constraints = fail_constraints or set()
        self.fail_schema = fail_schema
        self.tables: dict[str, dict] = {}
        self.executed: list[str] = []
        self.applied_constraints: list[str] = []
        self.upsert_calls: list[tuple[str, int]] = []
        self.open_connections = 0
        self.max_open_connections = 0
        self.closed = False

    async def test_connection(self) -> bool:
        return self.connected

    @asynccontextmanager
    async def connection(self):
        self.open_connections += 1
        self.max_open_connections = max(self.max_open_connections, self.open_connections)
        try:
            yield self
        finally:
            self.open_connections -= 1

    async def execute_in_transaction(self, statements: list[str]):
        if self.fail_schema:
            raise RuntimeError("relation already exists")
        self.executed.extend(statements)

    async def upsert_batch(self, conn, target_table, rows: list[dict]) -> int:
        if target_table.name in self.fail_tables:
            raise RuntimeError(f"insert into {target_table.name} failed")
        stored = self.tables.setdefault(target_table.name, {})
        for index, row in enumerate(rows):
            stored[row.get("id", (target_table.name, len(stored), index))] = row
        self.upsert_calls.append((target_table.name, len(rows)))
        return len(rows)

    async def apply_constraints(self, constraints: list[tuple[str, list[str]]]) -> list[tuple[str, str]]:
        failures = []
        for name, _statements in constraints:
            if name in self.fail_constraints:
                failures.append((name, "violates foreign key constraint"))
            else:
                self.applied_constraints.append(name)
        return failures

    async def count_rows(self, table_name: str) -> int:
        return len(self.tables.get(table_name, {}))

    async def close(self):
        self.closed = True


def create_sqlite_database(path: Path, statements: list[str], rows: dict[str, list[tuple]] | None = None) -> Path:
    conn = sqlite3.connect(path)
    try:
        for statement in statements:
            conn.execute(statement)
        for table, values in (rows or {}).items():
            if not values:
                continue
            placeholders = ", ".join("?" for _ in values[0])
            conn.executemany(f"INSERT INTO {table} VALUES ({placeholders})", values)
        conn.commit()
    finally:
        conn.close()
    return path


@pytest.fixture
def make_sqlite_db(tmp_path):
    """Factory creating a SQLite file from DDL statements and row tuples."""

    def factory(statements: list[str], rows: dict[str, list[tuple]] | None = None, name: str = "data.db") -> Path:
        return create_sqlite_database(tmp_path / name, statements, rows)

    return factory


@pytest.fixture
def teams_players_db(make_sqlite_db):
    """teams(1 row) and players(2 rows), one player pointing at a missing team."""
    return make_sqlite_db(
        [
            "CREATE TABLE teams (id INTEGER PRIMARY KEY, name TEXT, created_at DATETIME)",
            "CREATE TABLE players (id INTEGER PRIMARY KEY, name TEXT, team_id INTEGER REFERENCES teams(id))",
        ],
        {
            "teams": [(1, "Falcons", "2024-01-15 10:30:00")],
            "players": [(1, "Ada", 1), (2, "Ben", 99)],
        },
    )


@pytest.fixture
def test_settings(tmp_path, teams_players_db) -> Settings:
    values = settings.model_dump()
    values.update(
        database_filename=str(teams_players_db),
        export_dir=str(tmp_path / "exports"),
        backup_dir=str(tmp_path / "backups"),
        database_schema="public",
        migration_batch_size=1,
    )
    return Settings.model_validate(values)


@pytest.fixture
def fake_target():
    return FakeTarget()


@pytest.fixture
def sample_dataset() -> TransformedDataset:
    """A small consistent dataset: two teams and three players."""
    return TransformedDataset(
        tables={
            "teams": [
                {"id": 1, "name": "Falcons", "created_at": "2024-01-15T10:30:00.000Z"},
                {"id": 2, "name": "Herons", "created_at": "2024-02-01T08:00:00.000Z"},
            ],
            "players": [
                {"id": 1, "name": "Ada", "team_id": 1},
                {"id": 2, "name": "Ben", "team_id": 2},
                {"id": 3, "name": "Cy", "team_id": None},
            ],
        },
        column_types={
            "teams": {"id": TypeName.INTEGER, "name": TypeName.TEXT, "created_at": TypeName.TIMESTAMP},
            "players": {"id": TypeName.INTEGER, "name": TypeName.TEXT, "team_id": TypeName.INTEGER},
        },
        foreign_keys={
            "teams": [],
            "players": [ForeignKeyInfo(from_column="team_id", to_table="teams")],
        },
    )


@pytest.fixture
def make_target():
    """FakeTarget factory for tests that need failure options."""
    return FakeTarget
