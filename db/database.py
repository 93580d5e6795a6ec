import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy import Table, func, select, table, text
from sqlalchemy.dialects.postgresql import Insert, insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from db.config import Settings, settings

logger = logging.getLogger(__name__)

# asyncpg refuses statements with more bind parameters than this
MAX_BIND_PARAMETERS = 32767


def create_target_engine(config: Settings = settings) -> AsyncEngine:
    """Create the async engine for the target database.

    The pool is capped at ``database_max_connections`` with no overflow so a
    migration never opens more connections than configured.
    """
    connect_args: dict[str, Any] = {"timeout": config.database_connect_timeout}
    if config.database_ssl:
        connect_args["ssl"] = "require"

    return create_async_engine(
        config.postgres_uri,
        echo=False,
        pool_size=config.database_max_connections,
        max_overflow=0,
        pool_pre_ping=True,
        pool_recycle=3600,
        connect_args=connect_args,
    )


class PostgresTarget:
    """Thin wrapper around the target engine used by the importer and verifier."""

    def __init__(self, config: Settings = settings, engine: AsyncEngine | None = None):
        self.config = config
        self.schema = config.database_schema
        self.engine = engine or create_target_engine(config)

    async def test_connection(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                version = await conn.scalar(text("SELECT version()"))
            logger.info(f"Connected to PostgreSQL: {version}")
            return True
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"PostgreSQL connection test failed: {e}")
            return False

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[AsyncConnection, None]:
        """Provide one pooled connection for a unit of work"""
        async with self.engine.connect() as conn:
            try:
                yield conn
            except Exception:
                await conn.rollback()
                raise

    async def execute_in_transaction(self, statements: list[str]):
        """Run all statements atomically; any failure rolls back the whole set."""
        async with self.engine.begin() as conn:
            for statement in statements:
                logger.debug(f"Executing: {statement}")
                await conn.execute(text(statement))

    def build_upsert_statements(self, target_table: Table, rows: list[dict]) -> list[Insert]:
        """Build the upsert statements for a batch of rows.

        Rows are split so no statement binds more than MAX_BIND_PARAMETERS
        values; wide tables therefore take several statements per batch.
        """
        rows_per_statement = max(1, MAX_BIND_PARAMETERS // max(1, len(target_table.columns)))
        statements = []
        for start in range(0, len(rows), rows_per_statement):
            stmt = pg_insert(target_table).values(rows[start : start + rows_per_statement])
            if "id" in target_table.c:
                update_columns = {col.name: col for col in stmt.excluded if col.name != "id"}
                if update_columns:
                    stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=update_columns)
                else:
                    stmt = stmt.on_conflict_do_nothing(index_elements=["id"])
            else:
                stmt = stmt.on_conflict_do_nothing()
            statements.append(stmt)
        return statements

    async def upsert_batch(self, conn: AsyncConnection, target_table: Table, rows: list[dict]) -> int:
        """Insert a batch of rows, updating existing rows that share the same id."""
        if not rows:
            return 0

        for stmt in self.build_upsert_statements(target_table, rows):
            await conn.execute(stmt)
        await conn.commit()
        return len(rows)

    async def apply_constraints(self, constraints: list[tuple[str, list[str]]]) -> list[tuple[str, str]]:
        """Apply constraints one savepoint at a time.

        Returns the (name, error) pairs of constraints that could not be applied;
        the rest are committed.
        """
        failures = []
        async with self.engine.begin() as conn:
            for name, statements in constraints:
                try:
                    async with conn.begin_nested():
                        for statement in statements:
                            await conn.execute(text(statement))
                except SQLAlchemyError as e:
                    logger.warning(f"Could not apply constraint {name}: {e}")
                    failures.append((name, str(e.__cause__ or e)))
        return failures

    async def count_rows(self, table_name: str) -> int:
        async with self.engine.connect() as conn:
            count = await conn.scalar(select(func.count()).select_from(table(table_name, schema=self.schema)))
        return count or 0

    async def close(self):
        await self.engine.dispose()
