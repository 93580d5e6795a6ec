"""
Post-import verification.

Compares row counts in PostgreSQL with the transformed dataset, records
throughput metrics and runs a couple of functional checks against the target.
"""

import logging

from db.database import PostgresTarget
from migrations.sqlite_to_postgres.models import (
    ExportResult,
    ImportResult,
    Severity,
    TransformedDataset,
    VerificationCheck,
    VerificationResult,
)

logger = logging.getLogger(__name__)


def records_per_second(records: int, duration: float) -> float:
    if duration <= 0:
        return 0.0
    return records / duration


class MigrationVerifier:
    def __init__(self, target: PostgresTarget):
        self.target = target

    async def verify(
        self,
        dataset: TransformedDataset,
        import_result: ImportResult | None = None,
        export_result: ExportResult | None = None,
    ) -> VerificationResult:
        checks = []
        checks.extend(await self._check_record_counts(dataset, import_result))
        checks.extend(await self._functional_checks(import_result))
        metrics = self._performance_metrics(export_result, import_result)

        result = VerificationResult(
            success=all(check.passed for check in checks if check.severity != Severity.WARNING),
            checks=checks,
            metrics=metrics,
        )
        self.log_summary(result)
        return result

    async def _check_record_counts(
        self, dataset: TransformedDataset, import_result: ImportResult | None
    ) -> list[VerificationCheck]:
        checks = []
        for table, records in dataset.tables.items():
            expected = len(records)
            if import_result is not None and table not in import_result.metadata.table_results:
                checks.append(
                    VerificationCheck(
                        name=f"count:{table}",
                        passed=False,
                        message=f"{table} was not imported",
                    )
                )
                continue
            try:
                actual = await self.target.count_rows(table)
            except Exception as e:
                logger.exception(f"Could not count rows in {table}: {e}")
                checks.append(VerificationCheck(name=f"count:{table}", passed=False, message=str(e)))
                continue

            if actual == expected:
                checks.append(
                    VerificationCheck(name=f"count:{table}", passed=True, message=f"{actual:,} records match")
                )
            elif actual > expected:
                # Rows that already existed in the target are kept by the upsert
                checks.append(
                    VerificationCheck(
                        name=f"count:{table}",
                        passed=False,
                        message=f"Target has {actual:,} records, expected {expected:,}",
                        severity=Severity.WARNING,
                    )
                )
            else:
                checks.append(
                    VerificationCheck(
                        name=f"count:{table}",
                        passed=False,
                        message=f"Target has {actual:,} records, expected {expected:,}",
                    )
                )
        return checks

    async def _functional_checks(self, import_result: ImportResult | None) -> list[VerificationCheck]:
        connected = await self.target.test_connection()
        checks = [
            VerificationCheck(
                name="connection",
                passed=connected,
                message="Target database reachable" if connected else "Target database unreachable",
            )
        ]
        if import_result is not None:
            failed = [name for name, r in import_result.metadata.table_results.items() if r.errors]
            checks.append(
                VerificationCheck(
                    name="tables_loaded",
                    passed=not failed,
                    message="All tables loaded" if not failed else f"Failed tables: {', '.join(failed)}",
                )
            )
        return checks

    @staticmethod
    def _performance_metrics(export_result: ExportResult | None, import_result: ImportResult | None) -> dict:
        metrics = {}
        if export_result is not None:
            metrics["export_duration"] = export_result.metadata.duration
            metrics["export_records_per_second"] = records_per_second(
                export_result.metadata.total_records, export_result.metadata.duration
            )
        if import_result is not None:
            metrics["import_duration"] = import_result.metadata.duration
            metrics["import_records_per_second"] = records_per_second(
                import_result.metadata.total_records, import_result.metadata.duration
            )
        return metrics

    @staticmethod
    def log_summary(result: VerificationResult):
        logger.info("\n" + "=" * 60)
        logger.info("🔍 VERIFICATION RESULTS")
        logger.info("=" * 60)
        for check in result.checks:
            icon = "✅" if check.passed else ("⚠️" if check.severity == Severity.WARNING else "❌")
            logger.info(f"  {icon} {check.name}: {check.message}")
        for name, value in result.metrics.items():
            logger.info(f"  {name}: {value:,.2f}")
        logger.info("=" * 60 + "\n")
