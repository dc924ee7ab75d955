"""Record store: durable ID-keyed collections with totally-ordered access.

Every operation on a collection takes a ticket from that collection's FIFO
queue. Operation N+1 starts only after operation N has finished its
durable write (or failed), so a read-modify-write expressed through
``RecordStore.mutate`` is atomic relative to every other one.

Two backends are provided:
    - JsonFileBackend: one JSON object per collection, replaced atomically.
    - SqliteBackend: one WAL-mode database, one transaction per replace.

The ordering lives in RecordStore, not in the backend, so swapping the
storage engine does not change the concurrency contract.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import sqlite3
import tempfile
import threading
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any, TypeVar

from case_portal.errors import StoreError

logger = logging.getLogger(__name__)

CASES = "cases"
IDENTITIES = "identities"
ASSET_RECLAIMS = "asset_reclaims"
COLLECTIONS = (CASES, IDENTITIES, ASSET_RECLAIMS)

T = TypeVar("T")

Records = dict[str, dict[str, Any]]


class _TicketQueue:
    """FIFO mutual exclusion: waiters are served strictly in arrival order."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._now_serving = 0

    @contextlib.contextmanager
    def turn(self) -> Iterator[None]:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._now_serving:
                self._cond.wait()
        try:
            yield
        finally:
            with self._cond:
                self._now_serving += 1
                self._cond.notify_all()


class JsonFileBackend:
    """Stores each collection as ``<data_dir>/<collection>.json``."""

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)

    def _path(self, collection: str) -> Path:
        return self.data_dir / f"{collection}.json"

    def load(self, collection: str) -> Records:
        path = self._path(collection)
        if not path.exists():
            # First-time initialization: an absent collection is empty.
            return {}
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise StoreError(f"Cannot read {path}: {e}") from e
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupt collection file {path}: {e}") from e
        if not isinstance(data, dict):
            raise StoreError(
                f"Collection file {path} must hold a JSON object, got {type(data).__name__}"
            )
        return data

    def save(self, collection: str, records: Records) -> None:
        """Write file atomically via temp file + fsync + rename."""
        path = self._path(collection)
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.data_dir), suffix=".tmp")
        except OSError as e:
            raise StoreError(f"Cannot prepare write to {path}: {e}") from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except BaseException as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            if isinstance(e, (OSError, TypeError, ValueError)):
                raise StoreError(f"Failed to write {path}: {e}") from e
            raise

    def close(self) -> None:
        pass


_SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    body TEXT NOT NULL,
    PRIMARY KEY (collection, id)
);
"""


class SqliteBackend:
    """Stores all collections as rows of one WAL-mode SQLite database."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._conn_lock = threading.Lock()

    def connect(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
                self._conn.execute("PRAGMA journal_mode = WAL")
                self._conn.execute("PRAGMA synchronous = FULL")
                self._conn.executescript(_SQLITE_SCHEMA)
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn = None
                raise StoreError(f"Cannot open {self.db_path}: {e}") from e
        return self._conn

    def load(self, collection: str) -> Records:
        with self._conn_lock:
            conn = self.connect()
            try:
                rows = conn.execute(
                    "SELECT id, body FROM records WHERE collection = ?",
                    (collection,),
                ).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"Cannot read collection {collection}: {e}") from e
        records: Records = {}
        for record_id, body in rows:
            try:
                records[record_id] = json.loads(body)
            except json.JSONDecodeError as e:
                raise StoreError(
                    f"Corrupt record {collection}/{record_id}: {e}"
                ) from e
        return records

    def save(self, collection: str, records: Records) -> None:
        try:
            rows = [
                (collection, record_id, json.dumps(body, default=str))
                for record_id, body in records.items()
            ]
        except (TypeError, ValueError) as e:
            raise StoreError(f"Unserializable record in {collection}: {e}") from e
        with self._conn_lock:
            conn = self.connect()
            try:
                with conn:
                    conn.execute("DELETE FROM records WHERE collection = ?", (collection,))
                    conn.executemany(
                        "INSERT INTO records (collection, id, body) VALUES (?, ?, ?)",
                        rows,
                    )
            except sqlite3.Error as e:
                raise StoreError(f"Failed to write collection {collection}: {e}") from e

    def close(self) -> None:
        """Close database connection."""
        with self._conn_lock:
            if self._conn:
                self._conn.close()
                self._conn = None


def create_backend(kind: str, data_dir: str | Path) -> JsonFileBackend | SqliteBackend:
    """Build a backend by name ("json" or "sqlite")."""
    if kind == "json":
        return JsonFileBackend(data_dir)
    if kind == "sqlite":
        return SqliteBackend(Path(data_dir) / "portal.db")
    raise ValueError(f"Unknown storage backend: {kind!r}")


class RecordStore:
    """ID-keyed collections with a FIFO queue per collection.

    Thread-safe. Handlers running on worker threads (``asyncio.to_thread``)
    share one instance.
    """

    def __init__(self, backend, collections: tuple[str, ...] = COLLECTIONS) -> None:
        self.backend = backend
        self._queues = {name: _TicketQueue() for name in collections}

    def _queue(self, collection: str) -> _TicketQueue:
        try:
            return self._queues[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}") from None

    def read_all(self, collection: str) -> Records:
        """Return a snapshot of every record in *collection*."""
        with self._queue(collection).turn():
            return self.backend.load(collection)

    def replace_all(self, collection: str, records: Records) -> None:
        """Durably replace the whole collection."""
        with self._queue(collection).turn():
            self.backend.save(collection, records)

    def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        return self.read_all(collection).get(record_id)

    def mutate(self, collection: str, fn: Callable[[Records], T]) -> T:
        """Read, apply *fn* in place, write back; all in one queue turn.

        *fn* receives the mutable mapping and may return a result. If *fn*
        raises, nothing is written and the exception propagates.
        """
        with self._queue(collection).turn():
            records = self.backend.load(collection)
            result = fn(records)
            self.backend.save(collection, records)
            return result

    def close(self) -> None:
        self.backend.close()
