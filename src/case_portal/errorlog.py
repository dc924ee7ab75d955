"""Server error tracking.

Every request that ends in a 5xx is appended to a daily
``errors-YYYY-MM-DD.jsonl`` under ``<data_dir>/logs``. Staff read a
summary through ``GET /api/admin/errors/stats``; files older than the
retention window are pruned at startup.
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import traceback
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_STATS_DAYS = 7
MAX_STATS_DAYS = 365
DEFAULT_RETENTION_DAYS = 30
RECENT_COUNT = 10

_FILE_RE = re.compile(r"^errors-(\d{4}-\d{2}-\d{2})\.jsonl$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorLog:
    """Append-only daily error files with summary statistics.

    Thread-safe. Write failures are logged and reported as False, never
    raised, since the caller is already handling an error.
    """

    def __init__(self, log_dir: str | Path, clock: Callable[[], datetime] = _utcnow) -> None:
        self.log_dir = Path(log_dir)
        self._clock = clock
        self._lock = threading.Lock()

    def _file_for(self, day: date) -> Path:
        return self.log_dir / f"errors-{day.isoformat()}.jsonl"

    def _files(self) -> list[tuple[date, Path]]:
        if not self.log_dir.is_dir():
            return []
        found = []
        for path in self.log_dir.iterdir():
            match = _FILE_RE.match(path.name)
            if match:
                found.append((date.fromisoformat(match.group(1)), path))
        return sorted(found)

    def record(self, exc: BaseException, **context: Any) -> bool:
        """Append one error entry. Returns True if it reached disk."""
        now = self._clock()
        entry = {
            "timestamp": now.isoformat(),
            "error": {
                "type": type(exc).__name__,
                "message": str(exc),
                "stack": "".join(
                    traceback.format_exception(type(exc), exc, exc.__traceback__)
                ),
            },
            "context": context,
        }
        try:
            with self._lock:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                with open(self._file_for(now.date()), "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry, default=str) + "\n")
                    f.flush()
                    os.fsync(f.fileno())
            return True
        except OSError as e:
            logger.warning("Failed to record %s in error log: %s", type(exc).__name__, e)
            return False

    def _read(self, path: Path) -> list[dict]:
        entries = []
        try:
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(json.loads(line))
                    except json.JSONDecodeError:
                        logger.warning("Corrupt JSONL line in %s", path)
        except OSError as e:
            logger.warning("Failed to read error log %s: %s", path, e)
        return entries

    def stats(self, days: int = DEFAULT_STATS_DAYS) -> dict:
        """Summarize the last *days* days.

        Returns:
            ``{"total", "byType", "byDay", "recent"}``; ``recent`` holds
            the newest entries (oldest first) without stack traces.
        """
        days = max(1, min(days, MAX_STATS_DAYS))
        cutoff = self._clock() - timedelta(days=days)
        errors = []
        for day, path in self._files():
            if day < cutoff.date():
                continue
            for entry in self._read(path):
                try:
                    ts = datetime.fromisoformat(entry["timestamp"])
                except (KeyError, TypeError, ValueError):
                    continue
                if ts.tzinfo is None:
                    ts = ts.replace(tzinfo=timezone.utc)
                if ts >= cutoff:
                    errors.append(entry)

        by_type: dict[str, int] = {}
        by_day: dict[str, int] = {}
        for entry in errors:
            kind = (entry.get("error") or {}).get("type") or "Unknown"
            by_type[kind] = by_type.get(kind, 0) + 1
            day_key = entry["timestamp"][:10]
            by_day[day_key] = by_day.get(day_key, 0) + 1

        recent = []
        for entry in errors[-RECENT_COUNT:]:
            error = {k: v for k, v in (entry.get("error") or {}).items() if k != "stack"}
            recent.append({**entry, "error": error})
        return {"total": len(errors), "byType": by_type, "byDay": by_day, "recent": recent}

    def prune(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete files dated before the retention window. Returns how many."""
        cutoff = (self._clock() - timedelta(days=retention_days)).date()
        deleted = 0
        with self._lock:
            for day, path in self._files():
                if day >= cutoff:
                    continue
                try:
                    path.unlink()
                    deleted += 1
                except OSError as e:
                    logger.warning("Failed to delete old error log %s: %s", path, e)
        if deleted:
            logger.info("Pruned %d error log file(s) older than %d days", deleted, retention_days)
        return deleted
