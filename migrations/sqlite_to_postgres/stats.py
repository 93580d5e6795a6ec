"""
Migration statistics, progress events and summary helpers.
"""

import logging
from dataclasses import dataclass, fields
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)


def timestamp_slug(moment: datetime | None = None) -> str:
    """Filesystem-safe ISO timestamp, e.g. 2024-05-01T10-20-30-123456+00-00"""
    moment = moment or datetime.now(UTC)
    return moment.isoformat().replace(":", "-").replace(".", "-")


def find_latest_file(directory: str | Path, prefix: str, suffix: str = ".json") -> Path | None:
    """Newest file in ``directory`` named ``<prefix>*<suffix>``"""
    directory = Path(directory)
    if not directory.is_dir():
        return None
    candidates = sorted(directory.glob(f"{prefix}*{suffix}"), key=lambda p: (p.stat().st_mtime, p.name))
    return candidates[-1] if candidates else None


def estimate_eta(processed: int, total: int, elapsed_seconds: float) -> float | None:
    """Remaining seconds at the observed rate, or None before any progress"""
    if processed <= 0 or elapsed_seconds <= 0:
        return None
    rate = processed / elapsed_seconds
    return max(0, total - processed) / rate


class ProgressKind(StrEnum):
    TABLE_STARTED = "table_started"
    BATCH_PROCESSED = "batch_processed"
    TABLE_COMPLETED = "table_completed"


@dataclass
class ProgressEvent:
    kind: ProgressKind
    table: str
    processed: int
    total: int
    eta_seconds: float | None = None
    phase: str | None = None

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 100.0
        return min(100.0, self.processed / self.total * 100)


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class MigrationStatistics:
    """Run-level counters; only ever grow through ``apply``"""

    total_tables: int = 0
    processed_tables: int = 0
    total_records: int = 0
    exported_records: int = 0
    transformed_records: int = 0
    imported_records: int = 0
    errors: int = 0
    warnings: int = 0

    def apply(self, **deltas: int):
        names = {f.name for f in fields(self)}
        for name, delta in deltas.items():
            if name not in names:
                raise AttributeError(f"Unknown statistic: {name}")
            if delta < 0:
                raise ValueError(f"Statistic {name} cannot decrease (delta {delta})")
        for name, delta in deltas.items():
            setattr(self, name, getattr(self, name) + delta)

    def as_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def log_summary(self):
        logger.info("\n" + "=" * 60)
        logger.info("📊 MIGRATION SUMMARY")
        logger.info("=" * 60)
        logger.info(f"  Tables: {self.processed_tables:,} / {self.total_tables:,}")
        logger.info(f"  Exported Records: {self.exported_records:,}")
        logger.info(f"  Transformed Records: {self.transformed_records:,}")
        logger.info(f"  Imported Records: {self.imported_records:,}")
        logger.info(f"  Errors: {self.errors:,}")
        logger.info(f"  Warnings: {self.warnings:,}")
        logger.info("=" * 60 + "\n")


def log_issue_samples(title: str, messages: list[str], limit: int = 5):
    """Log a count plus the first few messages of a category"""
    if not messages:
        return
    logger.info(f"📋 {title}: {len(messages):,}")
    for message in messages[:limit]:
        logger.info(f"    - {message}")
    if len(messages) > limit:
        logger.info(f"    ... and {len(messages) - limit} more")
