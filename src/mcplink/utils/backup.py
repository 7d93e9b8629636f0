# ABOUTME: Backup utilities for server config files.
# ABOUTME: Timestamped copies taken before a save, keeping the last few per file.
import logging
import re
import shutil
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

MAX_BACKUPS_PER_FILE = 5

# {stem}_{YYYYMMDD}_{HHMMSS}_{microseconds}.{ext}, e.g. mcp_20260108_143022_000123.json
BACKUP_PATTERN = re.compile(r"^(.+?)_(\d{8}_\d{6}_\d{6})\.(.+)$")


def get_backup_dir() -> Path:
    """Default backup directory, ~/.mcplink/backups (not created here)."""
    return Path.home() / ".mcplink" / "backups"


def create_backup(source_path: Path, backup_dir: Path | None = None) -> Path:
    """Create a timestamped backup of a config file.

    ABOUTME: Uses shutil.copy2() to preserve file metadata
    ABOUTME: Creates backup_dir if it doesn't exist

    Args:
        source_path: Path to file to back up
        backup_dir: Directory for the copy (default: get_backup_dir())

    Returns:
        Path to created backup file

    Raises:
        FileNotFoundError: If source_path doesn't exist
    """
    if not source_path.exists():
        raise FileNotFoundError(f"Source file not found: {source_path}")

    backup_dir = backup_dir or get_backup_dir()
    backup_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    stem = source_path.stem.lstrip(".") or "config"
    backup_path = backup_dir / f"{stem}_{timestamp}{source_path.suffix}"

    shutil.copy2(source_path, backup_path)
    logger.debug(f"Backed up {source_path} to {backup_path}")

    cleanup_old_backups(backup_dir)
    return backup_path


def cleanup_old_backups(backup_dir: Path, max_backups_per_file: int = MAX_BACKUPS_PER_FILE) -> list[Path]:
    """Remove old backups, keeping the newest max_backups_per_file per stem.

    ABOUTME: Logs warnings on errors but does not raise exceptions

    Returns:
        List of paths that were deleted
    """
    deleted_files: list[Path] = []

    if not backup_dir.exists():
        return deleted_files

    backups_by_stem: dict[str, list[tuple[str, Path]]] = {}
    for file_path in backup_dir.iterdir():
        if not file_path.is_file():
            continue
        match = BACKUP_PATTERN.match(file_path.name)
        if not match:
            continue
        backups_by_stem.setdefault(match.group(1), []).append((match.group(2), file_path))

    for backups in backups_by_stem.values():
        backups.sort(key=lambda x: x[0], reverse=True)
        for _, file_path in backups[max_backups_per_file:]:
            try:
                file_path.unlink()
                deleted_files.append(file_path)
                logger.debug(f"Deleted old backup: {file_path}")
            except OSError as e:
                logger.warning(f"Failed to delete old backup {file_path}: {e}")

    return deleted_files
