"""
SQLite source exporter.

Reads every user table of the source database through a read-only
connection, page by page, and produces a JSON-safe snapshot of columns,
foreign keys and rows. Blocking sqlite3 calls run in a worker thread.
"""

import asyncio
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any

import humanize
from tqdm.asyncio import tqdm

from db.config import settings
from migrations.sqlite_to_postgres.exceptions import MigrationCancelled
from migrations.sqlite_to_postgres.models import (
    ColumnInfo,
    DatabaseStatistics,
    ExportMetadata,
    ExportResult,
    ForeignKeyInfo,
    TableSnapshot,
    TableStatistics,
    TypeName,
)
from migrations.sqlite_to_postgres.stats import (
    ProgressCallback,
    ProgressEvent,
    ProgressKind,
    estimate_eta,
    timestamp_slug,
)
from migrations.sqlite_to_postgres.type_converter import convert, detect_type

logger = logging.getLogger(__name__)

EXPORT_FILE_PREFIX = "sqlite-export-"


def quote_sqlite_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class SQLiteExporter:
    def __init__(
        self,
        database_path: str | Path,
        output_dir: str | Path = settings.export_dir,
        batch_size: int = settings.migration_batch_size,
        include_system_tables: bool = settings.include_system_tables,
        system_table_prefixes: list[str] | None = None,
        progress_callback: ProgressCallback | None = None,
        stop_event: asyncio.Event | None = None,
        show_progress: bool = False,
    ):
        self.database_path = Path(database_path)
        self.output_dir = Path(output_dir)
        self.batch_size = batch_size
        self.include_system_tables = include_system_tables
        self.system_table_prefixes = (
            system_table_prefixes if system_table_prefixes is not None else settings.system_table_prefixes
        )
        self.progress_callback = progress_callback
        self.stop_event = stop_event or asyncio.Event()
        self.show_progress = show_progress

    # -- sqlite helpers (run in a worker thread) ---------------------------

    def _connect(self) -> sqlite3.Connection:
        uri = f"{self.database_path.resolve().as_uri()}?mode=ro"
        conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _is_system_table(self, name: str) -> bool:
        return any(name.startswith(prefix) for prefix in self.system_table_prefixes)

    def _list_tables(self, conn: sqlite3.Connection) -> list[str]:
        rows = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        ).fetchall()
        names = [row["name"] for row in rows]
        if self.include_system_tables:
            return names
        return [name for name in names if not self._is_system_table(name)]

    @staticmethod
    def _read_columns(conn: sqlite3.Connection, table: str) -> list[ColumnInfo]:
        rows = conn.execute(f"PRAGMA table_info({quote_sqlite_identifier(table)})").fetchall()
        return [
            ColumnInfo(
                name=row["name"],
                declared_type=row["type"] or None,
                nullable=not row["notnull"] and not row["pk"],
                primary_key=bool(row["pk"]),
                default_value=row["dflt_value"],
            )
            for row in rows
        ]

    @staticmethod
    def _read_foreign_keys(conn: sqlite3.Connection, table: str) -> list[ForeignKeyInfo]:
        rows = conn.execute(f"PRAGMA foreign_key_list({quote_sqlite_identifier(table)})").fetchall()
        return [
            ForeignKeyInfo(
                from_column=row["from"],
                to_table=row["table"],
                # An omitted parent column means the parent's primary key
                to_column=row["to"] or "id",
                on_delete=row["on_delete"] or "NO ACTION",
                on_update=row["on_update"] or "NO ACTION",
            )
            for row in rows
        ]

    @staticmethod
    def _count_rows(conn: sqlite3.Connection, table: str) -> int:
        return conn.execute(f"SELECT COUNT(*) FROM {quote_sqlite_identifier(table)}").fetchone()[0]

    @staticmethod
    def _read_batch(
        conn: sqlite3.Connection, table: str, order_by: list[str], limit: int, offset: int
    ) -> list[dict[str, Any]]:
        query = f"SELECT * FROM {quote_sqlite_identifier(table)}"
        if order_by:
            query += " ORDER BY " + ", ".join(quote_sqlite_identifier(col) for col in order_by)
        query += " LIMIT ? OFFSET ?"
        rows = conn.execute(query, (limit, offset)).fetchall()
        return [
            {
                key: convert(row[key], TypeName.BINARY) if isinstance(row[key], bytes) else row[key]
                for key in row.keys()
            }
            for row in rows
        ]

    # -- export ------------------------------------------------------------

    def _emit(self, kind: ProgressKind, table: str, processed: int, total: int, started: float):
        if self.progress_callback is None:
            return
        eta = estimate_eta(processed, total, time.monotonic() - started) if processed else None
        self.progress_callback(
            ProgressEvent(kind=kind, table=table, processed=processed, total=total, eta_seconds=eta, phase="export")
        )

    async def _export_table(self, conn: sqlite3.Connection, table: str) -> TableSnapshot:
        columns = await asyncio.to_thread(self._read_columns, conn, table)
        foreign_keys = await asyncio.to_thread(self._read_foreign_keys, conn, table)
        total = await asyncio.to_thread(self._count_rows, conn, table)
        order_by = [col.name for col in columns if col.primary_key]

        started = time.monotonic()
        self._emit(ProgressKind.TABLE_STARTED, table, 0, total, started)
        logger.info(f"Exporting {table} ({total:,} records)")

        rows: list[dict[str, Any]] = []
        with tqdm(total=total, desc=f"Exporting {table}", disable=not self.show_progress) as pbar:
            offset = 0
            while offset < total:
                if self.stop_event.is_set():
                    raise MigrationCancelled(f"Export stopped while processing {table}")
                batch = await asyncio.to_thread(self._read_batch, conn, table, order_by, self.batch_size, offset)
                if not batch:
                    break
                rows.extend(batch)
                offset += len(batch)
                pbar.update(len(batch))
                self._emit(ProgressKind.BATCH_PROCESSED, table, len(rows), total, started)

        for column in columns:
            values = [row.get(column.name) for row in rows]
            if any(value is not None for value in values):
                column.detected_type = detect_type(values)

        self._emit(ProgressKind.TABLE_COMPLETED, table, len(rows), total, started)
        return TableSnapshot(
            name=table,
            columns=columns,
            foreign_keys=foreign_keys,
            rows=rows,
            record_count=len(rows),
        )

    async def export(self, write_file: bool = True) -> ExportResult:
        """Export every user table.

        A failing table is recorded in ``errors`` and skipped; the remaining
        tables are still exported and the snapshot is still written.
        """
        start_time = time.monotonic()
        metadata = ExportMetadata(database_path=str(self.database_path))

        if not self.database_path.is_file():
            message = f"SQLite database not found: {self.database_path}"
            logger.error(message)
            return ExportResult(success=False, metadata=metadata, errors=[message])

        data: dict[str, TableSnapshot] = {}
        errors: list[str] = []
        conn = await asyncio.to_thread(self._connect)
        try:
            tables = await asyncio.to_thread(self._list_tables, conn)
            logger.info(f"Found {len(tables)} tables to export from {self.database_path}")

            for table in tables:
                if self.stop_event.is_set():
                    raise MigrationCancelled("Export stopped before completion")
                try:
                    data[table] = await self._export_table(conn, table)
                except MigrationCancelled:
                    raise
                except (sqlite3.Error, ValueError) as e:
                    logger.exception(f"Failed to export table {table}: {e}")
                    errors.append(f"Table {table}: {e}")
        finally:
            await asyncio.to_thread(conn.close)

        metadata.total_tables = len(data)
        metadata.total_records = sum(snapshot.record_count for snapshot in data.values())
        metadata.content_types = sorted(data)
        metadata.duration = time.monotonic() - start_time

        result = ExportResult(success=not errors, data=data, metadata=metadata, errors=errors)
        logger.info(
            f"Export finished: {metadata.total_records:,} records from {metadata.total_tables} tables "
            f"in {metadata.duration:.2f}s ({len(errors)} errors)"
        )

        if write_file:
            await self.write_export(result)
        return result

    async def write_export(self, result: ExportResult) -> Path:
        path = self.output_dir / f"{EXPORT_FILE_PREFIX}{timestamp_slug()}.json"
        await asyncio.to_thread(write_new_file, path, result.model_dump_json(indent=2, by_alias=True))
        logger.info(f"Export written to {path}")
        return path

    async def get_statistics(self) -> DatabaseStatistics:
        """Record counts per table and the database file size, without exporting rows"""
        if not self.database_path.is_file():
            raise FileNotFoundError(f"SQLite database not found: {self.database_path}")

        conn = await asyncio.to_thread(self._connect)
        try:
            tables = await asyncio.to_thread(self._list_tables, conn)
            stats = []
            for table in tables:
                count = await asyncio.to_thread(self._count_rows, conn, table)
                stats.append(TableStatistics(name=table, record_count=count))
        finally:
            await asyncio.to_thread(conn.close)

        result = DatabaseStatistics(
            tables=stats,
            total_records=sum(t.record_count for t in stats),
            database_size=self.database_path.stat().st_size,
        )
        logger.info(
            f"{len(stats)} tables, {humanize.intword(result.total_records)} records, "
            f"{humanize.naturalsize(result.database_size)}"
        )
        return result


def write_new_file(path: Path, content: str):
    """Write a new file; an existing file with the same name is never overwritten"""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "x", encoding="utf-8") as f:
        f.write(content)


def load_export(path: str | Path) -> ExportResult:
    with open(path, encoding="utf-8") as f:
        return ExportResult.model_validate(json.load(f))
