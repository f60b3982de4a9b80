"""Custom logging handler utilities."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional


class DateStampedFileHandler(logging.FileHandler):
    """File handler that writes one log file per run under a per-day folder.

    The resulting path is ``<directory>/<YYYY-MM-DD>/<prefix>_<time>_<tz>.log``
    using the device's local time zone.
    """

    def __init__(
        self,
        directory: str | Path = "logs/app",
        *,
        prefix: str = "voicebot",
        encoding: str | None = "utf-8",
        mode: str = "a",
        delay: bool = False,
        errors: Optional[str] = None,
        current_time: datetime | None = None,
    ) -> None:
        timestamp = current_time or datetime.now(timezone.utc)
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        local_time = timestamp.astimezone()

        tz_abbr = local_time.tzname() or "local"
        date_folder = local_time.strftime("%Y-%m-%d")
        human_time = local_time.strftime("%Y-%m-%d_%H-%M-%S")
        log_path = (
            Path(directory).resolve() / date_folder / f"{prefix}_{human_time}_{tz_abbr}.log"
        )

        log_path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(
            log_path,
            mode=mode,
            encoding=encoding,
            delay=delay,
            errors=errors,
        )


def cleanup_old_logs(
    log_directories: Iterable[str | Path],
    retention_hours: int,
    logger: logging.Logger | None = None,
) -> tuple[int, int]:
    """
    Delete ``.log`` files older than the retention period.

    Empty per-day folders left behind are removed as well.

    Args:
        log_directories: Directories to scan recursively
        retention_hours: Age limit in hours (0 disables cleanup)
        logger: Optional logger for reporting cleanup activity

    Returns:
        Tuple of (files_deleted, errors_encountered)
    """
    if retention_hours <= 0:
        return (0, 0)

    cutoff_time = datetime.now(timezone.utc) - timedelta(hours=retention_hours)
    files_deleted = 0
    errors = 0

    for directory in log_directories:
        dir_path = Path(directory).resolve()
        if not dir_path.exists():
            continue

        for log_file in dir_path.rglob("*.log"):
            try:
                mtime = datetime.fromtimestamp(log_file.stat().st_mtime, tz=timezone.utc)
                if mtime < cutoff_time:
                    log_file.unlink()
                    files_deleted += 1
                    if logger:
                        logger.debug(f"Deleted old log file: {log_file}")
            except OSError as e:
                errors += 1
                if logger:
                    logger.warning(f"Failed to delete {log_file}: {e}")

        for day_dir in dir_path.iterdir():
            if day_dir.is_dir() and not any(day_dir.iterdir()):
                try:
                    day_dir.rmdir()
                except OSError as e:
                    if logger:
                        logger.debug(f"Could not remove {day_dir}: {e}")

    if logger and files_deleted > 0:
        logger.info(
            f"Log cleanup complete: {files_deleted} file(s) deleted, "
            f"{errors} error(s) encountered"
        )

    return (files_deleted, errors)


__all__ = ["DateStampedFileHandler", "cleanup_old_logs"]
