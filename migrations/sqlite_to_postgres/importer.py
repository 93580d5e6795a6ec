"""
PostgreSQL importer.

Loads a transformed dataset into the target database:

1. optionally creates (and drops) the schema in one transaction
2. loads tables in dependency order with idempotent batched upserts
3. applies foreign key constraints once every table is loaded
"""

import asyncio
import json
import logging
import time
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import MetaData, Table
from tqdm.asyncio import tqdm

from db.config import settings
from db.database import PostgresTarget
from migrations.sqlite_to_postgres.exceptions import MigrationCancelled
from migrations.sqlite_to_postgres.models import (
    ImportMetadata,
    ImportResult,
    TableImportResult,
    TargetTableSchema,
    TransformedDataset,
    TypeName,
)
from migrations.sqlite_to_postgres.relationships import Relationship, RelationshipMapper
from migrations.sqlite_to_postgres.schema_generator import SchemaGenerator, quote_identifier
from migrations.sqlite_to_postgres.stats import ProgressCallback, ProgressEvent, ProgressKind, estimate_eta
from migrations.sqlite_to_postgres.type_converter import parse_timestamp
from migrations.sqlite_to_postgres.validator import sanitize_timestamps

logger = logging.getLogger(__name__)


def prepare_value(value: Any, type_name: TypeName) -> Any:
    """Adapt a canonical value to what the asyncpg driver expects"""
    if value is None:
        return None
    match type_name:
        case TypeName.TIMESTAMP:
            return parse_timestamp(value).astimezone(UTC).replace(tzinfo=None)
        case TypeName.BINARY:
            if isinstance(value, str) and value.startswith("\\x"):
                return bytes.fromhex(value[2:])
            return value
        case TypeName.DECIMAL:
            return Decimal(str(value))
        case TypeName.INTEGER:
            return int(value)
        case TypeName.BOOLEAN:
            return bool(value)
        case TypeName.TEXT:
            if isinstance(value, (dict, list)):
                return json.dumps(value)
            return value if isinstance(value, str) else str(value)
    return value


class PostgreSQLImporter:
    def __init__(
        self,
        target: PostgresTarget,
        generator: SchemaGenerator | None = None,
        batch_size: int = settings.migration_batch_size,
        create_schema: bool = True,
        drop_existing: bool = False,
        progress_callback: ProgressCallback | None = None,
        stop_event: asyncio.Event | None = None,
        show_progress: bool = False,
    ):
        self.target = target
        self.generator = generator or SchemaGenerator(schema=settings.database_schema)
        self.batch_size = batch_size
        self.create_schema = create_schema
        self.drop_existing = drop_existing
        self.progress_callback = progress_callback
        self.stop_event = stop_event or asyncio.Event()
        self.show_progress = show_progress

    async def test_connection(self) -> bool:
        return await self.target.test_connection()

    async def close(self):
        await self.target.close()

    def _connection_info(self) -> dict[str, Any]:
        config = getattr(self.target, "config", None)
        return config.sanitized_connection() if config is not None else {}

    async def _create_schema(self, schemas: list[TargetTableSchema]):
        statements = []
        if self.generator.schema:
            statements.append(f"CREATE SCHEMA IF NOT EXISTS {quote_identifier(self.generator.schema)}")
        if self.drop_existing:
            logger.warning(f"Dropping {len(schemas)} existing tables")
            statements.extend(self.generator.generate_drop_table_sql(schema) for schema in reversed(schemas))
        for schema in schemas:
            statements.append(self.generator.generate_create_table_sql(schema))
            statements.extend(self.generator.generate_create_index_sql(schema))
        await self.target.execute_in_transaction(statements)
        logger.info(f"Created schema for {len(schemas)} tables")

    def _import_order(self, schemas: list[TargetTableSchema]) -> tuple[list[str], RelationshipMapper]:
        mapper = RelationshipMapper()
        for schema in schemas:
            for fk in schema.foreign_keys:
                mapper.add_relationship(
                    Relationship(
                        source_table=schema.name,
                        source_field=fk.columns[0],
                        target_table=fk.referenced_table,
                        target_field=fk.referenced_columns[0],
                    )
                )
        return mapper.get_import_order([schema.name for schema in schemas]), mapper

    def _prepare_row(self, record: dict[str, Any], schema: TargetTableSchema) -> dict[str, Any]:
        # Every row carries every column so multi-row VALUES stay uniform
        return {col.name: prepare_value(record.get(col.name), col.logical_type) for col in schema.columns}

    async def _import_table(
        self, schema: TargetTableSchema, target_table: Table, records: list[dict[str, Any]]
    ) -> TableImportResult:
        result = TableImportResult(table=schema.name)
        total = len(records)
        started = time.monotonic()
        self._emit(ProgressKind.TABLE_STARTED, schema.name, 0, total, started)

        try:
            async with self.target.connection() as conn:
                with tqdm(total=total, desc=f"Importing {schema.name}", disable=not self.show_progress) as pbar:
                    for offset in range(0, total, self.batch_size):
                        if self.stop_event.is_set():
                            raise MigrationCancelled(f"Import stopped while processing {schema.name}")
                        batch = records[offset : offset + self.batch_size]
                        rows = []
                        for record in batch:
                            sanitized, corrected = sanitize_timestamps(record)
                            for field in corrected:
                                result.warnings.append(
                                    f"{schema.name} id={record.get('id')!r}: invalid {field} replaced with current time"
                                )
                            rows.append(self._prepare_row(sanitized, schema))

                        result.records_inserted += await self.target.upsert_batch(conn, target_table, rows)
                        result.records_processed += len(batch)
                        pbar.update(len(batch))
                        self._emit(ProgressKind.BATCH_PROCESSED, schema.name, result.records_processed, total, started)
        except MigrationCancelled:
            raise
        except Exception as e:
            logger.exception(f"Failed to import table {schema.name}: {e}")
            result.errors.append(f"Table {schema.name}: {e}")

        result.duration = time.monotonic() - started
        self._emit(ProgressKind.TABLE_COMPLETED, schema.name, result.records_processed, total, started)
        return result

    def _emit(self, kind: ProgressKind, table: str, processed: int, total: int, started: float):
        if self.progress_callback is None:
            return
        eta = estimate_eta(processed, total, time.monotonic() - started) if processed else None
        self.progress_callback(
            ProgressEvent(kind=kind, table=table, processed=processed, total=total, eta_seconds=eta, phase="import")
        )

    async def import_dataset(self, dataset: TransformedDataset) -> ImportResult:
        start_time = time.monotonic()
        metadata = ImportMetadata(
            import_date=datetime.now(UTC),
            total_tables=len(dataset.tables),
            connection=self._connection_info(),
        )
        errors: list[str] = []
        warnings: list[str] = []

        schemas = self.generator.generate_schema(dataset)
        schemas_by_name = {schema.name: schema for schema in schemas}
        for table, column in self.generator.unresolved_references:
            warnings.append(f"Unresolved reference {table}.{column}: no foreign key created")

        if self.create_schema:
            try:
                await self._create_schema(schemas)
                metadata.schema_created = True
            except Exception as e:
                logger.exception(f"Schema creation failed, rolled back: {e}")
                errors.append(f"Schema creation failed: {e}")
                return self._finish(dataset, metadata, errors, warnings, start_time)

        order, mapper = self._import_order(schemas)
        for source, dependency in mapper.detected_cycles:
            warnings.append(f"Circular dependency between {source} and {dependency}; load order is best effort")
        logger.info(f"Import order: {' -> '.join(order)}")

        sa_metadata = MetaData()
        for name in order:
            if self.stop_event.is_set():
                raise MigrationCancelled("Import stopped before completion")
            schema = schemas_by_name[name]
            table_result = await self._import_table(
                schema, self.generator.build_table(schema, sa_metadata), dataset.tables[name]
            )
            metadata.table_results[name] = table_result
            metadata.total_records += table_result.records_inserted
            errors.extend(table_result.errors)
            warnings.extend(table_result.warnings)
            if not table_result.errors:
                metadata.tables_processed.append(name)
            logger.info(f"Imported {table_result.records_inserted:,} records into {name}")

        constraints = [c for name in order for c in self.generator.generate_foreign_key_sql(schemas_by_name[name])]
        if constraints:
            failures = await self.target.apply_constraints(constraints)
            for name, error in failures:
                warnings.append(f"Foreign key {name} could not be applied: {error}")
            logger.info(f"Applied {len(constraints) - len(failures)} of {len(constraints)} foreign keys")

        return self._finish(dataset, metadata, errors, warnings, start_time)

    def _finish(
        self,
        dataset: TransformedDataset,
        metadata: ImportMetadata,
        errors: list[str],
        warnings: list[str],
        start_time: float,
    ) -> ImportResult:
        metadata.duration = time.monotonic() - start_time
        schema_ok = metadata.schema_created or not self.create_schema
        result = ImportResult(
            success=not errors and schema_ok and not dataset.has_errors,
            metadata=metadata,
            errors=errors,
            warnings=warnings,
        )
        logger.info(
            f"Import finished: {metadata.total_records:,} records into {len(metadata.tables_processed)} tables "
            f"in {metadata.duration:.2f}s ({len(errors)} errors, {len(warnings)} warnings)"
        )
        return result
