"""Operational logging for the case portal.

One JSON object per line on stderr, and in ``<log_dir>/case-portal.jsonl``
when a log directory is configured. Fields passed with ``extra=`` land
under ``context``; keys that can carry credentials are masked there.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

SERVICE_NAME = "case-portal"

_TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

# Attributes every LogRecord has; anything else came in through ``extra=``.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}

_MASKED_KEYS = frozenset({"password", "token", "code", "otp", "secret", "authorization"})


def _context(record: logging.LogRecord) -> dict[str, Any]:
    ctx = {}
    for key, value in vars(record).items():
        if key in _RECORD_ATTRS or key.startswith("_"):
            continue
        ctx[key] = "***" if key.lower() in _MASKED_KEYS else value
    return ctx


class _StructuredFormatter(logging.Formatter):
    """Renders a record as a single JSON line."""

    def __init__(self, service_name: str = SERVICE_NAME) -> None:
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        ctx = _context(record)
        if ctx:
            entry["context"] = ctx
        if record.levelno >= logging.WARNING:
            entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        if record.exc_info and record.exc_info[0]:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value) if exc_value else None,
            }
        return json.dumps(entry, default=str)


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


def _file_handler(log_dir: str | Path, service_name: str) -> logging.Handler:
    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)
    return logging.FileHandler(path / f"{service_name}.jsonl", encoding="utf-8")


def setup_logging(
    service_name: str = SERVICE_NAME,
    *,
    level: int = logging.INFO,
    log_dir: str | Path | None = None,
    json_format: bool | None = None,
    log_to_file: bool | None = None,
) -> None:
    """Configure the ``case_portal`` logger.

    Safe to call more than once; earlier handlers are replaced.

    Args:
        service_name: Value of the ``service`` field and the log file stem.
        level: Logging level.
        log_dir: Directory for the JSONL file. No file when None.
        json_format: If None, CASE_PORTAL_LOG_FORMAT decides ("text" for
            plain lines, anything else JSON). The file is always JSON.
        log_to_file: If None, CASE_PORTAL_LOG_FILE decides (default "true").
    """
    if json_format is None:
        json_format = os.environ.get("CASE_PORTAL_LOG_FORMAT", "json").lower() != "text"
    if log_to_file is None:
        log_to_file = _env_flag("CASE_PORTAL_LOG_FILE", "true")

    pkg_logger = logging.getLogger("case_portal")
    pkg_logger.setLevel(level)
    pkg_logger.handlers.clear()

    handlers: list[logging.Handler] = []
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(
        _StructuredFormatter(service_name) if json_format else logging.Formatter(_TEXT_FORMAT)
    )
    handlers.append(console)

    file_error = None
    if log_to_file and log_dir is not None:
        try:
            handler = _file_handler(log_dir, service_name)
        except OSError as exc:
            file_error = exc
        else:
            handler.setFormatter(_StructuredFormatter(service_name))
            handlers.append(handler)

    for handler in handlers:
        handler.setLevel(level)
        pkg_logger.addHandler(handler)
    pkg_logger.propagate = False

    if file_error is not None:
        pkg_logger.warning(
            "File logging to %s disabled: %s: %s",
            log_dir,
            type(file_error).__name__,
            file_error,
        )
