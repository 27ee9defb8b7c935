"""Root logger setup for the supervisor process.

The supervisor runs in a terminal next to its agents, so console output is on
by default and uses a compact format; the rotating file keeps full timestamps.
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Any

_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_CONSOLE_FORMAT = "%(asctime)s %(levelname).1s %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Marks handlers installed here; only these are replaced on a repeated setup
_OWNED = "_apm_handler"


def _level(name: Any, default: int = logging.INFO) -> int:
    value = logging.getLevelName(str(name).upper())
    return value if isinstance(value, int) else default


def _rotating_file(project_root: Path, cfg: dict[str, Any]) -> logging.Handler | None:
    log_file = cfg.get("file")
    if not log_file:
        return None
    log_path = Path(log_file)
    if not log_path.is_absolute():
        log_path = project_root / log_path
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
        backupCount=int(cfg.get("backup_count", 3)),
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_DATE_FORMAT))
    return handler


def _console() -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT, datefmt="%H:%M:%S"))
    return handler


def setup_logging(project_root: Path, settings: dict[str, Any]) -> list[logging.Handler]:
    """Configure the root logger from settings["logging"] and return the installed handlers.

    Keys: level, file (relative to project_root; empty disables it), max_bytes,
    backup_count, log_to_console, loggers (logger name -> level). APM_LOG_LEVEL
    overrides level.
    """
    cfg = settings.get("logging", {}) or {}
    level = _level(os.environ.get("APM_LOG_LEVEL") or cfg.get("level", "INFO"))

    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        if getattr(h, _OWNED, False):
            root.removeHandler(h)
            h.close()

    handlers: list[logging.Handler] = []
    file_handler = _rotating_file(project_root, cfg)
    if file_handler is not None:
        handlers.append(file_handler)
    if cfg.get("log_to_console", True):
        handlers.append(_console())
    for h in handlers:
        h.setLevel(level)
        setattr(h, _OWNED, True)
        root.addHandler(h)

    for name, logger_level in (cfg.get("loggers") or {}).items():
        logging.getLogger(name).setLevel(_level(logger_level))
    return handlers
