"""Logging setup for hosts embedding the toolrelay engine.

The engine modules only ever call ``logging.getLogger(__name__)``; this
helper is for the host process (or the CLI) to decide where records go.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["setup_logging", "get_logger", "get_log_path", "resolve_level"]

_DEFAULT_LOG_DIR = Path.home() / ".toolrelay" / "logs"
_LEVEL_ENV = "TOOLRELAY_LOG_LEVEL"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore")
_CONFIGURED = False
_LOG_PATH: Path | None = None


def setup_logging(
    level: int | str | None = None,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    to_file: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path | None:
    """Configure root logging with a rotating file and/or console handler.

    ``level`` falls back to ``$TOOLRELAY_LOG_LEVEL`` and then ``INFO``.
    Returns the log file path, or ``None`` when file logging is disabled.
    Repeated calls are no-ops unless ``force`` is set.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force:
        return _LOG_PATH

    resolved = resolve_level(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handlers: list[logging.Handler] = []
    log_path: Path | None = None
    if to_file:
        target_dir = _resolve_log_dir(log_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        log_path = target_dir / "toolrelay.log"
        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        handlers.append(file_handler)

    if console or not handlers:
        handlers.append(logging.StreamHandler())

    for handler in handlers:
        handler.setLevel(resolved)
        handler.setFormatter(formatter)

    logging.basicConfig(level=resolved, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(resolved)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def resolve_level(level: int | str | None) -> int:
    """Translate ``level`` (number, name or ``None``) into a logging level."""

    if level is None:
        level = os.environ.get(_LEVEL_ENV, "INFO")
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.strip().upper())
    return value if isinstance(value, int) else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """Return a module-specific logger."""

    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("TOOLRELAY_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
