import logging
from typing import Any

from sqlalchemy import Boolean, Column, DateTime, Integer, LargeBinary, MetaData, Numeric, Table, Text
from sqlalchemy.dialects.postgresql import JSONB

from db.config import settings
from migrations.sqlite_to_postgres.models import (
    ForeignKeyInfo,
    TargetColumn,
    TargetForeignKey,
    TargetIndex,
    TargetTableSchema,
    TransformedDataset,
    TypeName,
)
from migrations.sqlite_to_postgres.type_converter import detect_type, is_key_column, target_sql_type

logger = logging.getLogger(__name__)

SYSTEM_COLUMNS = (
    "id",
    "document_id",
    "created_at",
    "updated_at",
    "published_at",
    "created_by_id",
    "updated_by_id",
    "locale",
)
INDEXED_COLUMNS = ("created_at", "published_at")
# *_id columns that are identifiers rather than references
NON_REFERENCE_COLUMNS = {"document_id"}
REFERENTIAL_ACTIONS = {"NO ACTION", "RESTRICT", "CASCADE", "SET NULL", "SET DEFAULT"}

SQLALCHEMY_TYPES = {
    TypeName.INTEGER: Integer,
    TypeName.TEXT: Text,
    TypeName.DECIMAL: Numeric,
    TypeName.BINARY: LargeBinary,
    TypeName.TIMESTAMP: DateTime,
    TypeName.BOOLEAN: Boolean,
    TypeName.JSON: JSONB,
}


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def referential_action(action: str | None, default: str = "NO ACTION") -> str:
    action = (action or default).upper()
    return action if action in REFERENTIAL_ACTIONS else default


class SchemaGenerator:
    """Derive PostgreSQL table definitions from a transformed dataset"""

    def __init__(self, schema: str | None = None, table_aliases: dict[str, str] | None = None):
        self.schema = schema
        self.table_aliases = table_aliases if table_aliases is not None else settings.foreign_key_table_aliases
        self.unresolved_references: list[tuple[str, str]] = []

    def qualified_name(self, table: str) -> str:
        if self.schema:
            return f"{quote_identifier(self.schema)}.{quote_identifier(table)}"
        return quote_identifier(table)

    def generate_schema(self, dataset: TransformedDataset) -> list[TargetTableSchema]:
        self.unresolved_references = []
        known_columns = {
            table: set(dataset.column_types.get(table, {})) | {key for record in records for key in record}
            for table, records in dataset.tables.items()
        }
        return [
            self.generate_table_schema(
                table,
                records,
                dataset.column_types.get(table, {}),
                dataset.foreign_keys.get(table, []),
                known_columns,
            )
            for table, records in dataset.tables.items()
        ]

    def generate_table_schema(
        self,
        table: str,
        records: list[dict[str, Any]],
        column_types: dict[str, TypeName],
        foreign_keys: list[ForeignKeyInfo],
        known_columns: dict[str, set[str]],
    ) -> TargetTableSchema:
        source_order = list(column_types)
        for record in records:
            for key in record:
                if key not in source_order:
                    source_order.append(key)
        ordered = [name for name in SYSTEM_COLUMNS if name in source_order]
        ordered += [name for name in source_order if name not in SYSTEM_COLUMNS]

        columns = []
        for name in ordered:
            logical_type = column_types.get(name)
            if logical_type is None:
                values = [record.get(name) for record in records]
                logical_type = detect_type(values, allow_boolean=not is_key_column(name))
            columns.append(
                TargetColumn(
                    name=name,
                    type=target_sql_type(logical_type),
                    logical_type=logical_type,
                    nullable=name != "id",
                    is_primary_key=name == "id",
                )
            )

        primary_key = ["id"] if "id" in ordered else []
        indexes = [
            TargetIndex(name=f"idx_{table}_{name}", columns=[name]) for name in INDEXED_COLUMNS if name in ordered
        ]
        target_fks = self._resolve_foreign_keys(table, ordered, foreign_keys, known_columns)

        return TargetTableSchema(
            name=table,
            columns=columns,
            primary_key=primary_key,
            foreign_keys=target_fks,
            indexes=indexes,
        )

    def _resolve_foreign_keys(
        self,
        table: str,
        columns: list[str],
        foreign_keys: list[ForeignKeyInfo],
        known_columns: dict[str, set[str]],
    ) -> list[TargetForeignKey]:
        resolved = []
        covered = set()

        # Declared foreign keys from the source are authoritative
        for fk in foreign_keys:
            covered.add(fk.from_column)
            if fk.to_column not in known_columns.get(fk.to_table, set()):
                self._unresolved(table, fk.from_column, fk.to_table)
                continue
            resolved.append(
                TargetForeignKey(
                    name=f"fk_{table}_{fk.from_column}",
                    columns=[fk.from_column],
                    referenced_table=fk.to_table,
                    referenced_columns=[fk.to_column],
                    on_delete=referential_action(fk.on_delete),
                    on_update=referential_action(fk.on_update),
                )
            )

        for column in columns:
            if column in covered or column in NON_REFERENCE_COLUMNS or not column.endswith("_id"):
                continue
            base = column[: -len("_id")]
            candidates = [base, self.table_aliases.get(base), f"{base}s"]
            referenced = next((c for c in candidates if c and "id" in known_columns.get(c, set())), None)
            if referenced is None:
                self._unresolved(table, column, None)
                continue
            resolved.append(
                TargetForeignKey(
                    name=f"fk_{table}_{column}",
                    columns=[column],
                    referenced_table=referenced,
                    on_delete="SET NULL",
                )
            )
        return resolved

    def _unresolved(self, table: str, column: str, referenced: str | None):
        target = f" -> {referenced}" if referenced else ""
        logger.warning(f"Could not resolve foreign key {table}.{column}{target}")
        self.unresolved_references.append((table, column))

    # -- SQL generation -----------------------------------------------------

    def generate_create_table_sql(self, schema: TargetTableSchema) -> str:
        lines = []
        for col in schema.columns:
            definition = f"    {quote_identifier(col.name)} {col.type}"
            if not col.nullable:
                definition += " NOT NULL"
            lines.append(definition)
        if schema.primary_key:
            keys = ", ".join(quote_identifier(name) for name in schema.primary_key)
            lines.append(f"    PRIMARY KEY ({keys})")
        body = ",\n".join(lines)
        return f"CREATE TABLE IF NOT EXISTS {self.qualified_name(schema.name)} (\n{body}\n)"

    def generate_create_index_sql(self, schema: TargetTableSchema) -> list[str]:
        statements = []
        for index in schema.indexes:
            unique = "UNIQUE " if index.unique else ""
            method = f" USING {index.method}" if index.method else ""
            columns = ", ".join(quote_identifier(name) for name in index.columns)
            statements.append(
                f"CREATE {unique}INDEX IF NOT EXISTS {quote_identifier(index.name)} "
                f"ON {self.qualified_name(schema.name)}{method} ({columns})"
            )
        return statements

    def generate_foreign_key_sql(self, schema: TargetTableSchema) -> list[tuple[str, list[str]]]:
        """One (constraint name, statements) pair per foreign key; re-applying replaces the constraint"""
        constraints = []
        table = self.qualified_name(schema.name)
        for fk in schema.foreign_keys:
            columns = ", ".join(quote_identifier(name) for name in fk.columns)
            referenced_columns = ", ".join(quote_identifier(name) for name in fk.referenced_columns)
            constraints.append(
                (
                    fk.name,
                    [
                        f"ALTER TABLE {table} DROP CONSTRAINT IF EXISTS {quote_identifier(fk.name)}",
                        f"ALTER TABLE {table} ADD CONSTRAINT {quote_identifier(fk.name)} "
                        f"FOREIGN KEY ({columns}) REFERENCES {self.qualified_name(fk.referenced_table)} "
                        f"({referenced_columns}) ON DELETE {fk.on_delete} ON UPDATE {fk.on_update}",
                    ],
                )
            )
        return constraints

    def generate_drop_table_sql(self, schema: TargetTableSchema) -> str:
        return f"DROP TABLE IF EXISTS {self.qualified_name(schema.name)} CASCADE"

    def build_table(self, schema: TargetTableSchema, metadata: MetaData) -> Table:
        """SQLAlchemy table used to build upsert statements"""
        return Table(
            schema.name,
            metadata,
            *[
                Column(col.name, SQLALCHEMY_TYPES[col.logical_type], primary_key=col.is_primary_key)
                for col in schema.columns
            ],
            schema=self.schema,
        )
