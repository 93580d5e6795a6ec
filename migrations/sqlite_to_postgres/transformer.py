import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any

from db.config import settings
from migrations.sqlite_to_postgres.exceptions import ConversionError, MigrationCancelled
from migrations.sqlite_to_postgres.exporter import write_new_file
from migrations.sqlite_to_postgres.models import (
    ExportResult,
    Severity,
    TableSnapshot,
    TransformedDataset,
    TransformResult,
    TypeName,
    ValidationIssue,
)
from migrations.sqlite_to_postgres.relationships import RelationshipMapper
from migrations.sqlite_to_postgres.stats import ProgressCallback, ProgressEvent, ProgressKind, timestamp_slug
from migrations.sqlite_to_postgres.type_converter import convert, detect_type, is_key_column, normalize_declared_type
from migrations.sqlite_to_postgres.validator import TIMESTAMP_FIELDS, DataValidator

logger = logging.getLogger(__name__)

TRANSFORM_FILE_PREFIX = "postgresql-data-"


def converts_cleanly(values: list[Any], type_name: TypeName) -> bool:
    if type_name == TypeName.TEXT:
        return True
    try:
        for value in values:
            convert(value, type_name)
    except ConversionError:
        return False
    return True


class DataTransformer:
    """Convert an export snapshot into a typed, validated dataset for PostgreSQL"""

    def __init__(
        self,
        output_dir: str | Path = settings.export_dir,
        batch_size: int = settings.migration_batch_size,
        validator: DataValidator | None = None,
        progress_callback: ProgressCallback | None = None,
        stop_event: asyncio.Event | None = None,
    ):
        self.output_dir = Path(output_dir)
        self.batch_size = batch_size
        self.validator = validator or DataValidator()
        self.progress_callback = progress_callback
        self.stop_event = stop_event or asyncio.Event()

    def resolve_column_types(self, snapshot: TableSnapshot) -> dict[str, TypeName]:
        """Pick one TypeName per column.

        The declared type wins unless it is missing or TEXT, in which case the
        type detected from the values is used when it is more specific. A
        detected type that some value cannot be converted to falls back to
        TEXT.
        """
        column_types = {}
        for column in snapshot.columns:
            declared = normalize_declared_type(column.declared_type)
            if declared is not None and declared != TypeName.TEXT:
                column_types[column.name] = declared
                continue

            if snapshot.rows:
                values = [row.get(column.name) for row in snapshot.rows]
                detected = detect_type(values, allow_boolean=not is_key_column(column.name))
                # lifecycle timestamps are repaired by the validator
                if column.name not in TIMESTAMP_FIELDS and not converts_cleanly(values, detected):
                    logger.debug(f"{snapshot.name}.{column.name}: values do not all fit {detected}, using text")
                    detected = TypeName.TEXT
            else:
                detected = column.detected_type or TypeName.TEXT
                if detected == TypeName.BOOLEAN and is_key_column(column.name):
                    detected = TypeName.INTEGER

            column_types[column.name] = detected
        return column_types

    def transform_record(self, table: str, row: dict[str, Any], column_types: dict[str, TypeName]) -> dict[str, Any]:
        record = {}
        for name, value in row.items():
            type_name = column_types.get(name, TypeName.TEXT)
            try:
                record[name] = convert(value, type_name, field=name, table=table)
            except ConversionError:
                # Lifecycle timestamps are healed by the validator instead
                if name in TIMESTAMP_FIELDS:
                    record[name] = value
                else:
                    raise
        return record

    def transform_table(
        self, snapshot: TableSnapshot
    ) -> tuple[list[dict[str, Any]], dict[str, TypeName], list[ValidationIssue]]:
        column_types = self.resolve_column_types(snapshot)
        records = []
        issues = []
        total = len(snapshot.rows)

        self._emit(ProgressKind.TABLE_STARTED, snapshot.name, 0, total)
        for index, row in enumerate(snapshot.rows, start=1):
            try:
                records.append(self.transform_record(snapshot.name, row, column_types))
            except ConversionError as e:
                issues.append(
                    ValidationIssue(
                        table=snapshot.name,
                        record_id=row.get("id"),
                        field=e.field or "",
                        message=e.message,
                        severity=Severity.ERROR,
                    )
                )
            if index % self.batch_size == 0:
                self._emit(ProgressKind.BATCH_PROCESSED, snapshot.name, index, total)
                if self.stop_event.is_set():
                    raise MigrationCancelled(f"Transformation stopped while processing {snapshot.name}")
        self._emit(ProgressKind.TABLE_COMPLETED, snapshot.name, total, total)

        return records, column_types, issues

    def _emit(self, kind: ProgressKind, table: str, processed: int, total: int):
        if self.progress_callback:
            self.progress_callback(
                ProgressEvent(kind=kind, table=table, processed=processed, total=total, phase="transform")
            )

    async def transform(self, export: ExportResult, write_file: bool = False) -> TransformResult:
        start_time = time.monotonic()
        dataset = TransformedDataset()
        errors: list[str] = []

        for name, snapshot in export.data.items():
            if self.stop_event.is_set():
                raise MigrationCancelled("Transformation stopped before completion")
            try:
                records, column_types, issues = self.transform_table(snapshot)
            except (ValueError, TypeError) as e:
                logger.exception(f"Failed to transform table {name}: {e}")
                errors.append(f"Table {name}: {e}")
                continue

            dataset.tables[name] = records
            dataset.column_types[name] = column_types
            dataset.foreign_keys[name] = list(snapshot.foreign_keys)
            dataset.issues.extend(issues)
            logger.debug(f"Transformed {name}: {len(records):,} records, {len(issues)} row errors")
            # Yield to the loop between tables so signal handlers get a chance to run
            await asyncio.sleep(0)

        dataset.issues.extend(self.validator.validate_data(dataset))
        dataset.issues.extend(self.validator.validate_integrity(dataset))

        mapper = RelationshipMapper()
        mapper.build_from_foreign_keys(dataset.foreign_keys)
        dataset.issues.extend(mapper.validate_relationships(dataset))

        result = TransformResult.from_dataset(dataset, duration=time.monotonic() - start_time, errors=errors)
        metadata = result.metadata
        logger.info(
            f"Transformation finished: {metadata.total_records:,} records from {metadata.total_tables} tables, "
            f"{len(metadata.validation_errors)} validation errors, {len(dataset.warnings)} warnings"
        )

        if write_file:
            await self.write_transformed(result)
        return result

    async def write_transformed(self, result: TransformResult) -> Path:
        path = self.output_dir / f"{TRANSFORM_FILE_PREFIX}{timestamp_slug()}.json"
        await asyncio.to_thread(write_new_file, path, result.model_dump_json(indent=2, by_alias=True))
        logger.info(f"Transformed data written to {path}")
        return path


def load_transformed(path: str | Path) -> TransformResult:
    with open(path, encoding="utf-8") as f:
        return TransformResult.model_validate(json.load(f))
