"""
Data models shared by the migration phases.

Everything that is persisted to disk (export snapshot, transformed dataset,
import result) is a pydantic model so it can be dumped and loaded as JSON.
Persisted models use camelCase keys on disk (``exportDate``,
``transformedData``) and snake_case attributes in Python.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TypeName(StrEnum):
    INTEGER = "integer"
    TEXT = "text"
    DECIMAL = "decimal"
    BINARY = "binary"
    TIMESTAMP = "timestamp"
    BOOLEAN = "boolean"
    JSON = "json"


class Severity(StrEnum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def utc_now() -> datetime:
    return datetime.now(UTC)


class FileModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Source snapshot
# ---------------------------------------------------------------------------


class ColumnInfo(FileModel):
    name: str
    declared_type: str | None = None
    nullable: bool = True
    primary_key: bool = False
    default_value: Any = None
    detected_type: TypeName | None = None


class ForeignKeyInfo(FileModel):
    from_column: str
    to_table: str
    to_column: str = "id"
    on_delete: str = "NO ACTION"
    on_update: str = "NO ACTION"


class TableSnapshot(FileModel):
    model_config = ConfigDict(frozen=True)

    name: str
    columns: list[ColumnInfo] = Field(default_factory=list)
    foreign_keys: list[ForeignKeyInfo] = Field(default_factory=list)
    rows: list[dict[str, Any]] = Field(default_factory=list)
    record_count: int = 0


class ExportMetadata(FileModel):
    export_date: datetime = Field(default_factory=utc_now)
    total_records: int = 0
    total_tables: int = 0
    duration: float = 0.0
    database_path: str = ""
    content_types: list[str] = Field(default_factory=list)


class ExportResult(FileModel):
    success: bool
    data: dict[str, TableSnapshot] = Field(default_factory=dict)
    metadata: ExportMetadata = Field(default_factory=ExportMetadata)
    errors: list[str] = Field(default_factory=list)


class TableStatistics(BaseModel):
    name: str
    record_count: int


class DatabaseStatistics(BaseModel):
    tables: list[TableStatistics] = Field(default_factory=list)
    total_records: int = 0
    database_size: int = 0


# ---------------------------------------------------------------------------
# Transformation
# ---------------------------------------------------------------------------


class ValidationIssue(FileModel):
    table: str
    record_id: Any = None
    field: str
    message: str
    severity: Severity = Severity.ERROR


class TransformedDataset(BaseModel):
    tables: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    column_types: dict[str, dict[str, TypeName]] = Field(default_factory=dict)
    foreign_keys: dict[str, list[ForeignKeyInfo]] = Field(default_factory=dict)
    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(issue.severity == Severity.ERROR for issue in self.issues)

    @property
    def success(self) -> bool:
        return not self.has_errors

    @property
    def total_records(self) -> int:
        return sum(len(records) for records in self.tables.values())

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == Severity.WARNING]


class TransformMetadata(FileModel):
    transformation_date: datetime = Field(default_factory=utc_now)
    total_records: int = 0
    total_tables: int = 0
    duration: float = 0.0
    validation_errors: list[ValidationIssue] = Field(default_factory=list)
    validation_warnings: list[ValidationIssue] = Field(default_factory=list)
    column_types: dict[str, dict[str, TypeName]] = Field(default_factory=dict)
    foreign_keys: dict[str, list[ForeignKeyInfo]] = Field(default_factory=dict)


class TransformResult(FileModel):
    """
    Transformed dataset file: ``transformedData`` maps each table to its
    records, the typing and relationship details needed by the import
    phase travel in ``metadata``.
    """

    success: bool
    transformed_data: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    metadata: TransformMetadata = Field(default_factory=TransformMetadata)
    errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_dataset(
        cls, dataset: TransformedDataset, duration: float = 0.0, errors: list[str] | None = None
    ) -> "TransformResult":
        errors = errors or []
        metadata = TransformMetadata(
            total_records=dataset.total_records,
            total_tables=len(dataset.tables),
            duration=duration,
            validation_errors=[i for i in dataset.issues if i.severity != Severity.WARNING],
            validation_warnings=dataset.warnings,
            column_types=dataset.column_types,
            foreign_keys=dataset.foreign_keys,
        )
        # model_construct keeps the record dicts shared with the dataset
        return cls.model_construct(
            success=not errors and dataset.success,
            transformed_data=dataset.tables,
            metadata=metadata,
            errors=errors,
        )

    @property
    def dataset(self) -> TransformedDataset:
        return TransformedDataset.model_construct(
            tables=self.transformed_data,
            column_types=self.metadata.column_types,
            foreign_keys=self.metadata.foreign_keys,
            issues=self.metadata.validation_errors + self.metadata.validation_warnings,
        )


# ---------------------------------------------------------------------------
# Target schema
# ---------------------------------------------------------------------------


class TargetColumn(BaseModel):
    name: str
    type: str
    logical_type: TypeName
    nullable: bool = True
    is_primary_key: bool = False


class TargetForeignKey(BaseModel):
    name: str
    columns: list[str]
    referenced_table: str
    referenced_columns: list[str] = Field(default_factory=lambda: ["id"])
    on_delete: str = "SET NULL"
    on_update: str = "NO ACTION"


class TargetIndex(BaseModel):
    name: str
    columns: list[str]
    unique: bool = False
    method: str | None = None


class TargetTableSchema(BaseModel):
    name: str
    columns: list[TargetColumn] = Field(default_factory=list)
    primary_key: list[str] = Field(default_factory=list)
    foreign_keys: list[TargetForeignKey] = Field(default_factory=list)
    indexes: list[TargetIndex] = Field(default_factory=list)

    def column(self, name: str) -> TargetColumn | None:
        return next((col for col in self.columns if col.name == name), None)


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


class TableImportResult(BaseModel):
    table: str
    records_processed: int = 0
    records_inserted: int = 0
    duration: float = 0.0
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ImportMetadata(BaseModel):
    import_date: datetime = Field(default_factory=utc_now)
    total_tables: int = 0
    total_records: int = 0
    duration: float = 0.0
    connection: dict[str, Any] = Field(default_factory=dict)
    schema_created: bool = False
    tables_processed: list[str] = Field(default_factory=list)
    table_results: dict[str, TableImportResult] = Field(default_factory=dict)


class ImportResult(BaseModel):
    success: bool
    metadata: ImportMetadata = Field(default_factory=ImportMetadata)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Backup / validation
# ---------------------------------------------------------------------------


class BackupArtifact(BaseModel):
    path: str
    size_bytes: int
    timestamp: datetime = Field(default_factory=utc_now)


class RollbackInfo(BaseModel):
    available: bool = False
    backup_path: str | None = None
    instructions: list[str] = Field(default_factory=list)


class VerificationCheck(BaseModel):
    name: str
    passed: bool
    message: str
    severity: Severity = Severity.ERROR


class VerificationResult(BaseModel):
    success: bool
    checks: list[VerificationCheck] = Field(default_factory=list)
    metrics: dict[str, float] = Field(default_factory=dict)
