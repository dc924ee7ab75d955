"""Staff activity trail.

Security-relevant actions (logins, case changes, emails, exports) are
appended to a daily JSONL file under ``<data_dir>/logs``. A failed write
is logged and never fails the request that triggered it.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

LOGIN_SUCCESS = "login_success"
LOGIN_FAILED = "login_failed"
LOGIN_BLOCKED = "login_blocked"
CASE_UPDATED = "case_updated"
BULK_UPDATE = "bulk_update"
EMAIL_SENT = "email_sent"
CASES_EXPORTED = "cases_exported"
CLIENT_LOGIN = "client_login"
CLIENT_LOGOUT = "client_logout"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActivityLog:
    """Appends activity entries to ``activity-YYYY-MM-DD.jsonl``.

    Thread-safe: writes are serialized and fsynced.
    """

    def __init__(self, log_dir: str | Path, clock: Callable[[], datetime] = _utcnow) -> None:
        self.log_dir = Path(log_dir)
        self._clock = clock
        self._lock = threading.Lock()

    def _file_for(self, ts: datetime) -> Path:
        return self.log_dir / f"activity-{ts.strftime('%Y-%m-%d')}.jsonl"

    def record(
        self,
        action: str,
        *,
        actor: str | None = None,
        ip: str | None = None,
        **details: Any,
    ) -> bool:
        """Write one entry. Returns True if it reached disk."""
        ts = self._clock()
        entry = {
            "ts": ts.isoformat(),
            "action": action,
            "actor": actor,
            "ip": ip,
            "details": details,
        }
        try:
            with self._lock:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                with open(self._file_for(ts), "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry, default=str) + "\n")
                    f.flush()
                    os.fsync(f.fileno())
            return True
        except OSError as e:
            logger.warning("Failed to write activity entry %s by %s: %s", action, actor, e)
            return False

    def entries(self, day: datetime | None = None, action: str | None = None) -> list[dict]:
        """Read back one day's entries, optionally filtered by action."""
        log_file = self._file_for(day or self._clock())
        if not log_file.exists():
            return []
        entries = []
        try:
            with open(log_file, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning("Corrupt JSONL line in %s", log_file)
                        continue
                    if action and entry.get("action") != action:
                        continue
                    entries.append(entry)
        except OSError as e:
            logger.warning("Failed to read activity entries from %s: %s", log_file, e)
        return entries
