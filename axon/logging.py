from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


ROOT = "axon"
DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_LEVEL = os.environ.get("AXON_LOG_LEVEL", "INFO").upper()
DEFAULT_LOG_PATH = Path(os.environ.get("AXON_LOG_FILE", "") or (Path.home() / ".cache" / "axon" / "debug.log"))
# rotation of the log file
MAX_BYTES = int(os.environ.get("AXON_LOG_MAX_BYTES", str(1024 * 1024)))
BACKUP_COUNT = int(os.environ.get("AXON_LOG_BACKUPS", "3"))


def _build_handler(to_stdout: bool, path: Optional[Path]) -> logging.Handler:
    if to_stdout:
        handler: logging.Handler = logging.StreamHandler()
    else:
        target = path or DEFAULT_LOG_PATH
        target.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(target, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8")
    handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
    return handler


def configure_logger(
    *,
    level: str | int | None = None,
    to_stdout: bool | None = None,
    path: Optional[Path] = None,
) -> logging.Logger:
    """Attach the single handler to the ``axon`` logger; module loggers propagate to it."""
    logger = logging.getLogger(ROOT)
    if logger.handlers:
        return logger

    resolved_stdout = to_stdout if to_stdout is not None else _env_bool("AXON_LOG_TO_STDOUT", False)
    logger.setLevel(level or DEFAULT_LEVEL)
    logger.addHandler(_build_handler(resolved_stdout, path))
    # pytest's caplog hooks the root logger
    logger.propagate = _env_bool("AXON_LOG_PROPAGATE", False)
    return logger


def get_logger(name: str) -> logging.Logger:
    configure_logger()
    if name != ROOT and not name.startswith(ROOT + "."):
        name = f"{ROOT}.{name}"
    return logging.getLogger(name)


def set_level(level: str | int) -> None:
    logging.getLogger(ROOT).setLevel(level)


def _env_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key)
    if value is None:
        return default
    return value.strip().lower() not in {"", "0", "false", "no", "off"}
