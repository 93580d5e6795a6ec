"""
Migration orchestrator.

Runs the phases in order (initialization, backup, export, transform, import,
validation, cleanup), records every error and warning with the phase that
produced it, keeps run statistics and weighted progress, and offers a manual
rollback to the backup taken at the start of the run.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Awaitable, Callable

from db.config import Settings, settings
from db.database import PostgresTarget
from migrations.sqlite_to_postgres.backup import build_rollback_info, create_backup, restore_backup
from migrations.sqlite_to_postgres.exceptions import (
    MigrationCancelled,
    PhaseError,
    RollbackUnavailableError,
    SourceDatabaseError,
    TargetConnectionError,
)
from migrations.sqlite_to_postgres.exporter import SQLiteExporter, write_new_file
from migrations.sqlite_to_postgres.importer import PostgreSQLImporter
from migrations.sqlite_to_postgres.models import (
    BackupArtifact,
    ExportResult,
    ImportResult,
    RollbackInfo,
    Severity,
    TransformResult,
    VerificationResult,
)
from migrations.sqlite_to_postgres.schema_generator import SchemaGenerator
from migrations.sqlite_to_postgres.stats import MigrationStatistics, ProgressEvent
from migrations.sqlite_to_postgres.transformer import DataTransformer
from migrations.sqlite_to_postgres.verifier import MigrationVerifier

logger = logging.getLogger(__name__)


class MigrationPhase(StrEnum):
    INITIALIZATION = "initialization"
    BACKUP = "backup"
    EXPORT = "export"
    TRANSFORM = "transform"
    IMPORT = "import"
    VALIDATION = "validation"
    CLEANUP = "cleanup"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


PHASE_WEIGHTS = {
    MigrationPhase.INITIALIZATION: 5,
    MigrationPhase.BACKUP: 10,
    MigrationPhase.EXPORT: 25,
    MigrationPhase.TRANSFORM: 20,
    MigrationPhase.IMPORT: 30,
    MigrationPhase.VALIDATION: 8,
    MigrationPhase.CLEANUP: 2,
}

# Cap on how many validation issues are copied into the run log individually
MAX_RECORDED_ISSUES = 1000


@dataclass
class MigrationError:
    phase: str
    severity: Severity
    message: str
    details: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    recoverable: bool = False


@dataclass
class MigrationWarning:
    phase: str
    message: str
    details: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class PhaseResults:
    backup: BackupArtifact | None = None
    export: ExportResult | None = None
    transform: TransformResult | None = None
    import_result: ImportResult | None = None
    validation: VerificationResult | None = None


@dataclass
class MigrationResult:
    success: bool
    start_time: datetime
    end_time: datetime
    duration: float
    statistics: MigrationStatistics
    phases: PhaseResults
    errors: list[MigrationError]
    warnings: list[MigrationWarning]
    rollback_info: RollbackInfo
    final_phase: MigrationPhase
    cancelled: bool = False
    report_path: str | None = None


@dataclass
class MigrationCallbacks:
    on_progress: Callable[[MigrationPhase, float, ProgressEvent | None], None] | None = None
    on_phase_change: Callable[[MigrationPhase], None] | None = None
    on_error: Callable[[MigrationError], None] | None = None
    on_warning: Callable[[MigrationWarning], None] | None = None


class MigrationOrchestrator:
    PHASE_ORDER = [
        MigrationPhase.INITIALIZATION,
        MigrationPhase.BACKUP,
        MigrationPhase.EXPORT,
        MigrationPhase.TRANSFORM,
        MigrationPhase.IMPORT,
        MigrationPhase.VALIDATION,
        MigrationPhase.CLEANUP,
    ]

    def __init__(
        self,
        config: Settings = settings,
        *,
        target: PostgresTarget | None = None,
        create_backup: bool | None = None,
        validate: bool | None = None,
        create_schema: bool = True,
        drop_existing: bool = False,
        dry_run: bool = False,
        report_path: str | Path | None = None,
        callbacks: MigrationCallbacks | None = None,
        show_progress: bool = False,
    ):
        self.config = config
        self.target = target
        self.create_backup = config.create_backup if create_backup is None else create_backup
        self.validate = config.validate_after_import if validate is None else validate
        self.create_schema = create_schema
        self.drop_existing = drop_existing
        self.dry_run = dry_run
        self.report_path = Path(report_path) if report_path else None
        self.callbacks = callbacks or MigrationCallbacks()
        self.show_progress = show_progress

        self.stop_event = asyncio.Event()
        self.phase = MigrationPhase.INITIALIZATION
        self.statistics = MigrationStatistics()
        self.progress = 0.0
        self.phases = PhaseResults()
        self.errors: list[MigrationError] = []
        self.warnings: list[MigrationWarning] = []
        self.rollback_info = RollbackInfo()
        self._target_closed = False

    # -- bookkeeping --------------------------------------------------------

    def _set_phase(self, phase: MigrationPhase):
        self.phase = phase
        logger.info(f"▶️  Phase: {phase}")
        if self.callbacks.on_phase_change:
            self.callbacks.on_phase_change(phase)

    def add_error(
        self,
        phase: str,
        severity: Severity,
        message: str,
        details: dict[str, Any] | None = None,
        recoverable: bool = False,
    ):
        error = MigrationError(phase=phase, severity=severity, message=message, details=details, recoverable=recoverable)
        self.errors.append(error)
        self.statistics.apply(errors=1)
        log = logger.critical if severity == Severity.CRITICAL else logger.error
        log(f"[{phase}] {message}")
        if self.callbacks.on_error:
            self.callbacks.on_error(error)

    def add_warning(self, phase: str, message: str, details: dict[str, Any] | None = None):
        warning = MigrationWarning(phase=phase, message=message, details=details)
        self.warnings.append(warning)
        self.statistics.apply(warnings=1)
        logger.warning(f"[{phase}] {message}")
        if self.callbacks.on_warning:
            self.callbacks.on_warning(warning)

    def calculate_overall_progress(self, phase: MigrationPhase, phase_progress: float) -> float:
        """Weighted progress over all phases, 0-100"""
        if phase not in PHASE_WEIGHTS:
            return 100.0 if phase == MigrationPhase.COMPLETED else 0.0
        total_weight = sum(PHASE_WEIGHTS.values())
        completed = sum(PHASE_WEIGHTS[p] for p in self.PHASE_ORDER[: self.PHASE_ORDER.index(phase)])
        current = PHASE_WEIGHTS[phase] * max(0.0, min(100.0, phase_progress)) / 100
        return (completed + current) / total_weight * 100

    def _report_progress(self, phase: MigrationPhase, phase_progress: float, event: ProgressEvent | None = None):
        # Per-table events restart at 0%, overall progress never goes backwards
        self.progress = max(self.progress, self.calculate_overall_progress(phase, phase_progress))
        if self.callbacks.on_progress:
            self.callbacks.on_progress(phase, self.progress, event)

    def _progress_callback(self, phase: MigrationPhase) -> Callable[[ProgressEvent], None]:
        def callback(event: ProgressEvent):
            self._report_progress(phase, event.percentage, event)

        return callback

    def request_stop(self):
        """Ask the running migration to stop after the current batch"""
        logger.warning("Stop requested; finishing the current batch")
        self.stop_event.set()

    async def execute_phase(self, phase: MigrationPhase, func: Callable[[], Awaitable[Any]]) -> Any:
        """Run one phase; any exception is recorded as critical and stops the pipeline"""
        self._set_phase(phase)
        self._report_progress(phase, 0)
        try:
            result = await func()
        except MigrationCancelled:
            raise
        except Exception as e:
            logger.exception(f"{phase} phase failed: {e}")
            self.add_error(phase, Severity.CRITICAL, str(e), details={"exception": type(e).__name__})
            raise PhaseError(phase, str(e)) from e
        self._report_progress(phase, 100)
        return result

    # -- phases -------------------------------------------------------------

    async def _initialize(self):
        source = self.config.source_path
        if not source.is_file():
            raise SourceDatabaseError(f"SQLite database not found: {source}")
        Path(self.config.export_dir).mkdir(parents=True, exist_ok=True)
        if self.create_backup:
            Path(self.config.backup_dir).mkdir(parents=True, exist_ok=True)

        if self.dry_run:
            self.add_warning(MigrationPhase.INITIALIZATION, "Dry run: the target database will not be touched")
            return

        if self.target is None:
            self.target = PostgresTarget(self.config)
        if not await self.target.test_connection():
            raise TargetConnectionError("Could not connect to the target PostgreSQL database")
        logger.info(f"Target: {self.config.sanitized_connection()}")

    async def _backup(self) -> BackupArtifact:
        artifact = await create_backup(self.config.source_path, self.config.backup_dir)
        self.phases.backup = artifact
        self.rollback_info = build_rollback_info(artifact, self.config.source_path)
        return artifact

    async def _export(self) -> ExportResult:
        exporter = SQLiteExporter(
            self.config.source_path,
            output_dir=self.config.export_dir,
            batch_size=self.config.migration_batch_size,
            include_system_tables=self.config.include_system_tables,
            system_table_prefixes=self.config.system_table_prefixes,
            progress_callback=self._progress_callback(MigrationPhase.EXPORT),
            stop_event=self.stop_event,
            show_progress=self.show_progress,
        )
        result = await exporter.export()
        self.phases.export = result

        for message in result.errors:
            self.add_error(MigrationPhase.EXPORT, Severity.ERROR, message, recoverable=True)
        if not result.data and result.errors:
            raise SourceDatabaseError("Export produced no data")

        self.statistics.apply(
            total_tables=result.metadata.total_tables,
            total_records=result.metadata.total_records,
            exported_records=result.metadata.total_records,
        )
        return result

    async def _transform(self, export: ExportResult) -> TransformResult:
        transformer = DataTransformer(
            output_dir=self.config.export_dir,
            batch_size=self.config.migration_batch_size,
            progress_callback=self._progress_callback(MigrationPhase.TRANSFORM),
            stop_event=self.stop_event,
        )
        result = await transformer.transform(export, write_file=True)
        self.phases.transform = result

        for message in result.errors:
            self.add_error(MigrationPhase.TRANSFORM, Severity.ERROR, message, recoverable=True)

        dataset = result.dataset
        for issue in dataset.issues[:MAX_RECORDED_ISSUES]:
            details = {"table": issue.table, "record_id": issue.record_id, "field": issue.field}
            if issue.severity == Severity.ERROR:
                self.add_error(MigrationPhase.TRANSFORM, Severity.ERROR, issue.message, details, recoverable=True)
            else:
                self.add_warning(MigrationPhase.TRANSFORM, issue.message, details)
        if len(dataset.issues) > MAX_RECORDED_ISSUES:
            self.add_warning(
                MigrationPhase.TRANSFORM,
                f"{len(dataset.issues) - MAX_RECORDED_ISSUES:,} further validation issues omitted from the log",
            )

        self.statistics.apply(transformed_records=dataset.total_records)
        return result

    async def _import(self, transform: TransformResult) -> ImportResult:
        importer = PostgreSQLImporter(
            self.target,
            generator=SchemaGenerator(
                schema=self.config.database_schema,
                table_aliases=self.config.foreign_key_table_aliases,
            ),
            batch_size=self.config.migration_batch_size,
            create_schema=self.create_schema,
            drop_existing=self.drop_existing,
            progress_callback=self._progress_callback(MigrationPhase.IMPORT),
            stop_event=self.stop_event,
            show_progress=self.show_progress,
        )
        result = await importer.import_dataset(transform.dataset)
        self.phases.import_result = result

        for message in result.errors:
            self.add_error(MigrationPhase.IMPORT, Severity.ERROR, message, recoverable=True)
        for message in result.warnings:
            self.add_warning(MigrationPhase.IMPORT, message)

        self.statistics.apply(
            imported_records=result.metadata.total_records,
            processed_tables=len(result.metadata.tables_processed),
        )
        return result

    async def _validation(self) -> VerificationResult:
        verifier = MigrationVerifier(self.target)
        result = await verifier.verify(
            self.phases.transform.dataset,
            import_result=self.phases.import_result,
            export_result=self.phases.export,
        )
        self.phases.validation = result
        for check in result.checks:
            if check.passed:
                continue
            if check.severity == Severity.WARNING:
                self.add_warning(MigrationPhase.VALIDATION, f"{check.name}: {check.message}")
            else:
                self.add_error(MigrationPhase.VALIDATION, Severity.ERROR, f"{check.name}: {check.message}")
        return result

    async def _cleanup(self):
        await self._close_target()

    async def _close_target(self):
        if self.target is not None and not self._target_closed:
            await self.target.close()
            self._target_closed = True

    # -- entry points -------------------------------------------------------

    async def migrate(self) -> MigrationResult:
        start_time = datetime.now(UTC)
        started = time.monotonic()
        cancelled = False
        logger.info(f"🚀 Starting migration of {self.config.source_path}")

        try:
            await self.execute_phase(MigrationPhase.INITIALIZATION, self._initialize)
            if self.create_backup:
                await self.execute_phase(MigrationPhase.BACKUP, self._backup)
            else:
                self.add_warning(MigrationPhase.BACKUP, "Backup disabled; rollback will not be available")
                self.rollback_info = build_rollback_info(None, self.config.source_path)

            export = await self.execute_phase(MigrationPhase.EXPORT, self._export)
            transform = await self.execute_phase(MigrationPhase.TRANSFORM, lambda: self._transform(export))

            if self.dry_run:
                self.add_warning(MigrationPhase.IMPORT, "Dry run: import and validation skipped")
            else:
                await self.execute_phase(MigrationPhase.IMPORT, lambda: self._import(transform))
                if self.validate:
                    await self.execute_phase(MigrationPhase.VALIDATION, self._validation)

            await self.execute_phase(MigrationPhase.CLEANUP, self._cleanup)
            self._set_phase(MigrationPhase.COMPLETED)
            self._report_progress(MigrationPhase.COMPLETED, 100)
        except MigrationCancelled as e:
            cancelled = True
            self.add_warning(self.phase, e.message)
            self._set_phase(MigrationPhase.FAILED)
        except PhaseError:
            self._set_phase(MigrationPhase.FAILED)
        finally:
            await self._close_target()

        has_errors = any(e.severity in (Severity.CRITICAL, Severity.ERROR) for e in self.errors)
        result = MigrationResult(
            success=self.phase == MigrationPhase.COMPLETED and not has_errors,
            start_time=start_time,
            end_time=datetime.now(UTC),
            duration=time.monotonic() - started,
            statistics=self.statistics,
            phases=self.phases,
            errors=list(self.errors),
            warnings=list(self.warnings),
            rollback_info=self.rollback_info,
            final_phase=self.phase,
            cancelled=cancelled,
        )

        self.statistics.log_summary()
        if result.success:
            logger.info("✅ Migration completed successfully!")
        else:
            logger.error(f"❌ Migration finished with {len(result.errors)} errors (phase: {self.phase})")

        if self.report_path:
            try:
                await self.write_report(result, self.report_path)
            except OSError as e:
                # the migration itself has finished; only the report is lost
                logger.error(f"Could not write report to {self.report_path}: {e}")
        return result

    async def rollback(self, backup_path: str | Path | None = None) -> Path | None:
        """Restore the SQLite database from the run's backup (or an explicit backup file).

        Returns where the replaced database was moved to, if there was one.
        """
        path = backup_path or (self.rollback_info.backup_path if self.rollback_info.available else None)
        if not path:
            raise RollbackUnavailableError()
        preserved = await restore_backup(path, self.config.source_path)
        self._set_phase(MigrationPhase.ROLLED_BACK)
        return preserved

    # -- reporting ----------------------------------------------------------

    def generate_report(self, result: MigrationResult) -> str:
        lines = [
            "=" * 60,
            "SQLITE TO POSTGRESQL MIGRATION REPORT",
            "=" * 60,
            f"Status: {'SUCCESS' if result.success else 'FAILED'}",
            f"Final phase: {result.final_phase}",
            f"Started: {result.start_time.isoformat()}",
            f"Finished: {result.end_time.isoformat()}",
            f"Duration: {result.duration:.2f}s",
        ]
        if result.cancelled:
            lines.append("Cancelled: yes")

        lines += ["", "STATISTICS", "-" * 60]
        for name, value in result.statistics.as_dict().items():
            lines.append(f"  {name.replace('_', ' ').title()}: {value:,}")

        if result.errors:
            lines += ["", f"ERRORS ({len(result.errors)})", "-" * 60]
            for error in result.errors:
                lines.append(f"  [{error.severity.upper()}] {error.phase}: {error.message}")

        if result.warnings:
            lines += ["", f"WARNINGS ({len(result.warnings)})", "-" * 60]
            for warning in result.warnings:
                lines.append(f"  {warning.phase}: {warning.message}")

        lines += ["", "ROLLBACK INFORMATION", "-" * 60]
        lines.append(f"  Available: {'yes' if result.rollback_info.available else 'no'}")
        if result.rollback_info.backup_path:
            lines.append(f"  Backup: {result.rollback_info.backup_path}")
        for step, instruction in enumerate(result.rollback_info.instructions, start=1):
            lines.append(f"  {step}. {instruction}")

        lines.append("=" * 60)
        return "\n".join(lines)

    async def write_report(self, result: MigrationResult, path: Path) -> Path:
        await asyncio.to_thread(write_new_file, path, self.generate_report(result))
        result.report_path = str(path)
        logger.info(f"📄 Report written to {path}")
        return path
