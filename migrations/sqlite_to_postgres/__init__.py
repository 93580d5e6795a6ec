"""
SQLite to PostgreSQL migration module.

Moves a SQLite content database into PostgreSQL in phases:
- export: read-only snapshot of every user table
- transform: type conversion, timestamp repair and integrity checks
- import: schema creation, dependency-ordered upserts, foreign keys
- validation: row counts and functional checks against the target

CLI Usage:
    python -m migrations.sqlite_to_postgres migrate --sqlite-path .tmp/data.db --connection-string ...
    python -m migrations.sqlite_to_postgres export --stats-only
    python -m migrations.sqlite_to_postgres transform --input exports/sqlite-export-....json
    python -m migrations.sqlite_to_postgres import --test-connection
    python -m migrations.sqlite_to_postgres rollback
"""

from migrations.sqlite_to_postgres.cli import app
from migrations.sqlite_to_postgres.exporter import SQLiteExporter
from migrations.sqlite_to_postgres.importer import PostgreSQLImporter
from migrations.sqlite_to_postgres.orchestrator import MigrationOrchestrator, MigrationPhase, MigrationResult
from migrations.sqlite_to_postgres.relationships import Relationship, RelationshipMapper
from migrations.sqlite_to_postgres.schema_generator import SchemaGenerator
from migrations.sqlite_to_postgres.stats import MigrationStatistics
from migrations.sqlite_to_postgres.transformer import DataTransformer
from migrations.sqlite_to_postgres.validator import DataValidator, ValidationRule

__all__ = [
    "app",
    "SQLiteExporter",
    "DataTransformer",
    "DataValidator",
    "ValidationRule",
    "Relationship",
    "RelationshipMapper",
    "SchemaGenerator",
    "PostgreSQLImporter",
    "MigrationOrchestrator",
    "MigrationPhase",
    "MigrationResult",
    "MigrationStatistics",
]
