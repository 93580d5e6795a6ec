import asyncio
import logging
import shutil
from datetime import UTC, datetime
from pathlib import Path

import humanize

from migrations.sqlite_to_postgres.exceptions import BackupError
from migrations.sqlite_to_postgres.models import BackupArtifact, RollbackInfo
from migrations.sqlite_to_postgres.stats import find_latest_file, timestamp_slug

logger = logging.getLogger(__name__)

BACKUP_FILE_PREFIX = "sqlite-backup-"


def _copy_new_file(source: Path, destination: Path):
    """Copy into a file that must not exist yet"""
    destination.parent.mkdir(parents=True, exist_ok=True)
    with open(source, "rb") as src, open(destination, "xb") as dst:
        shutil.copyfileobj(src, dst)


async def create_backup(source_path: str | Path, backup_dir: str | Path) -> BackupArtifact:
    """Copy the SQLite file into ``backup_dir`` and verify the copy by size"""
    source = Path(source_path)
    if not source.is_file():
        raise BackupError(f"Cannot back up missing database: {source}")

    timestamp = datetime.now(UTC)
    destination = Path(backup_dir) / f"{BACKUP_FILE_PREFIX}{timestamp_slug(timestamp)}.db"
    try:
        await asyncio.to_thread(_copy_new_file, source, destination)
    except FileExistsError as e:
        raise BackupError(f"Backup file already exists: {destination}") from e
    except OSError as e:
        raise BackupError(f"Backup failed: {e}") from e

    source_size = source.stat().st_size
    backup_size = destination.stat().st_size
    if source_size != backup_size:
        raise BackupError(
            f"Backup verification failed: size mismatch ({source_size} != {backup_size})",
            {"backup_path": str(destination)},
        )

    logger.info(f"💾 Backup created: {destination} ({humanize.naturalsize(backup_size)})")
    return BackupArtifact(path=str(destination), size_bytes=backup_size, timestamp=timestamp)


def build_rollback_info(artifact: BackupArtifact | None, source_path: str | Path) -> RollbackInfo:
    if artifact is None:
        return RollbackInfo(
            available=False,
            instructions=["No backup was created; restore the SQLite database from your own backups."],
        )
    return RollbackInfo(
        available=True,
        backup_path=artifact.path,
        instructions=[
            "Stop the application",
            f"Restore the database: copy {artifact.path} to {source_path}",
            "Point the application configuration back to SQLite (DATABASE_CLIENT=sqlite)",
            "Restart the application and verify the content",
            "Or run: python -m migrations.sqlite_to_postgres rollback",
        ],
    )


async def restore_backup(backup_path: str | Path, source_path: str | Path) -> Path | None:
    """Put the backup back in place of the source database.

    The current source file, if any, is moved aside first and its new location
    is returned.
    """
    backup = Path(backup_path)
    source = Path(source_path)
    if not backup.is_file():
        raise BackupError(f"Backup file not found: {backup}")

    preserved = None
    if source.exists():
        preserved = source.with_name(f"{source.name}.pre-rollback-{timestamp_slug()}")
        await asyncio.to_thread(source.rename, preserved)
        logger.info(f"Current database moved to {preserved}")

    await asyncio.to_thread(_copy_new_file, backup, source)
    if source.stat().st_size != backup.stat().st_size:
        raise BackupError(f"Restored database size does not match backup {backup}")

    logger.info(f"⏪ Database restored from {backup}")
    return preserved


def find_latest_backup(backup_dir: str | Path) -> Path | None:
    return find_latest_file(backup_dir, BACKUP_FILE_PREFIX, ".db")
