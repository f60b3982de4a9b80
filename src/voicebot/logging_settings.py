"""Helpers for parsing the logging settings file and wiring up handlers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from voicebot.logging_handlers import DateStampedFileHandler, cleanup_old_logs

_LEVEL_MAP: dict[str, int | None] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "off": None,
}

_DEFAULT_KEYS = ("terminal", "file")
_DEFAULT_LEVEL = "info"
_DEFAULT_RETENTION_HOURS = 48

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class LoggingSettings:
    terminal_level: int | None
    file_level: int | None
    retention_hours: int


def _resolve_level(value: str) -> int | None:
    return _LEVEL_MAP.get(value.strip().lower(), _LEVEL_MAP[_DEFAULT_LEVEL])


def parse_logging_settings(path: Optional[Path]) -> LoggingSettings:
    """Parse the human-readable ``key = value`` logging settings file."""

    levels: dict[str, int | None] = {
        key: _LEVEL_MAP[_DEFAULT_LEVEL] for key in _DEFAULT_KEYS
    }
    retention_hours = _DEFAULT_RETENTION_HOURS

    if path is not None and path.exists():
        for raw_line in path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = (part.strip() for part in line.split("=", 1))
            normalized_key = key.lower()
            if normalized_key == "retention_hours":
                try:
                    retention_hours = max(0, int(value))
                except ValueError:
                    retention_hours = _DEFAULT_RETENTION_HOURS
            elif normalized_key in _DEFAULT_KEYS:
                levels[normalized_key] = _resolve_level(value)

    return LoggingSettings(
        terminal_level=levels["terminal"],
        file_level=levels["file"],
        retention_hours=retention_hours,
    )


def configure_logging(
    settings: LoggingSettings,
    log_dir: Optional[Path] = None,
) -> list[logging.Handler]:
    """Install console and file handlers on the ``voicebot`` logger."""

    root_logger = logging.getLogger("voicebot")
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    handlers: list[logging.Handler] = []
    formatter = logging.Formatter(_FORMAT)

    if settings.terminal_level is not None:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(settings.terminal_level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if settings.file_level is not None and log_dir is not None:
        file_handler = DateStampedFileHandler(log_dir)
        file_handler.setLevel(settings.file_level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    enabled = [level for level in (settings.terminal_level, settings.file_level) if level is not None]
    root_logger.setLevel(min(enabled) if enabled else logging.CRITICAL + 1)
    for handler in handlers:
        root_logger.addHandler(handler)

    if log_dir is not None:
        cleanup_old_logs([log_dir], settings.retention_hours, logger=root_logger)

    # Keep HTTP client chatter out of the device log unless debugging
    if settings.terminal_level is None or settings.terminal_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    return handlers


__all__ = ["LoggingSettings", "configure_logging", "parse_logging_settings"]
