"""Case attachments: validation, staging, and safe retrieval.

Uploads are written to ``<uploads_dir>/temp`` under a sanitized,
timestamp-prefixed name, then moved into ``<uploads_dir>/<caseId>/`` once
the case record exists. Retrieval only accepts names matching the stored
pattern, so traversal attempts are rejected before the filesystem is
touched.
"""

from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path

from case_portal.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILES = 5
DEFAULT_MAX_FILE_BYTES = 10 * 1024 * 1024

# MIME type -> extensions accepted with it
ALLOWED_TYPES: dict[str, frozenset[str]] = {
    "image/jpeg": frozenset({".jpg", ".jpeg"}),
    "image/png": frozenset({".png"}),
    "image/gif": frozenset({".gif"}),
    "application/pdf": frozenset({".pdf"}),
    "text/plain": frozenset({".txt"}),
    "application/msword": frozenset({".doc"}),
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": frozenset(
        {".docx"}
    ),
}

# Asset-reclaim intake accepts documents and photos only
RECLAIM_TYPES: dict[str, frozenset[str]] = {
    mime: ALLOWED_TYPES[mime] for mime in ("application/pdf", "image/png", "image/jpeg")
}
RECLAIM_FOLDER = "asset-reclaim"

STORED_NAME_RE = re.compile(r"^\d+-[a-zA-Z0-9._-]+$")
CASE_ID_RE = re.compile(r"^C-[A-Z0-9]+$")
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.\-_]")


def sanitize_filename(original: str) -> str:
    """Replace anything outside ``[a-zA-Z0-9._-]`` with an underscore."""
    name = _UNSAFE_CHARS.sub("_", os.path.basename(original or ""))
    return name or "file"


def stored_name(original: str, timestamp_ms: int | None = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{timestamp_ms}-{sanitize_filename(original)}"


def validate_type(
    filename: str, mimetype: str, allowed_types: dict[str, frozenset[str]] = ALLOWED_TYPES
) -> None:
    """Require an allow-listed MIME type with a matching extension."""
    ext = Path(filename or "").suffix.lower()
    allowed = allowed_types.get(mimetype)
    if allowed is None:
        raise ValidationError(f"File type {mimetype} not allowed")
    if ext not in allowed:
        raise ValidationError(f"File extension {ext or '(none)'} not allowed for {mimetype}")


def check_names(case_id: str, filename: str) -> None:
    """Reject a case id or stored filename that does not match its pattern."""
    if not isinstance(case_id, str) or not CASE_ID_RE.match(case_id):
        raise ValidationError("Invalid case ID format")
    if not isinstance(filename, str) or not STORED_NAME_RE.match(filename):
        raise ValidationError("Invalid filename")


@dataclass
class StagedFile:
    filename: str
    original_name: str
    size: int
    mimetype: str
    path: Path

    def as_record(self, case_id: str) -> dict:
        return {
            "filename": self.filename,
            "originalName": self.original_name,
            "size": self.size,
            "mimetype": self.mimetype,
            "url": f"/api/uploads/{case_id}/{self.filename}",
        }


class AttachmentStore:
    """Filesystem side of case attachments."""

    def __init__(
        self,
        uploads_dir: str | Path,
        *,
        max_files: int = DEFAULT_MAX_FILES,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
    ):
        self.uploads_dir = Path(uploads_dir)
        self.max_files = max_files
        self.max_file_bytes = max_file_bytes

    @property
    def temp_dir(self) -> Path:
        return self.uploads_dir / "temp"

    def check_count(self, count: int) -> None:
        if count > self.max_files:
            raise ValidationError(f"Too many files (max {self.max_files})")

    def stage(
        self,
        original_name: str,
        mimetype: str,
        content: bytes,
        *,
        allowed_types: dict[str, frozenset[str]] = ALLOWED_TYPES,
    ) -> StagedFile:
        """Validate one upload and write it to the temp directory."""
        validate_type(original_name, mimetype, allowed_types)
        if len(content) > self.max_file_bytes:
            raise ValidationError(
                f"File too large (max {self.max_file_bytes // (1024 * 1024)} MB)"
            )
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        name = stored_name(original_name)
        path = self.temp_dir / name
        # Same millisecond and same name: bump the prefix
        while path.exists():
            name = stored_name(original_name, int(name.split("-", 1)[0]) + 1)
            path = self.temp_dir / name
        path.write_bytes(content)
        return StagedFile(
            filename=name,
            original_name=original_name,
            size=len(content),
            mimetype=mimetype,
            path=path,
        )

    def discard(self, staged: list[StagedFile]) -> None:
        for f in staged:
            try:
                f.path.unlink()
            except OSError:
                pass

    def move_to_case(
        self, staged: list[StagedFile], case_id: str, *, folder: str = ""
    ) -> list[str]:
        """Move staged files into ``<uploads_dir>/[folder/]<case_id>``.

        Returns:
            Names that could not be moved (logged, not raised).
        """
        case_dir = self.uploads_dir / folder / case_id
        case_dir.mkdir(parents=True, exist_ok=True)
        failed = []
        for f in staged:
            try:
                os.replace(f.path, case_dir / f.filename)
            except OSError as e:
                logger.error("Failed to move %s into case %s: %s", f.filename, case_id, e)
                failed.append(f.filename)
        return failed

    def resolve(self, case_id: str, filename: str) -> Path:
        """Map ``{caseId, storedFilename}`` to an existing file.

        Raises:
            ValidationError: either component fails its pattern (checked
                before any filesystem access).
            NotFoundError: no such file.
        """
        check_names(case_id, filename)
        path = self.uploads_dir / case_id / filename
        if not path.is_file():
            raise NotFoundError(f"Missing file {path}", safe_message="File not found")
        return path
