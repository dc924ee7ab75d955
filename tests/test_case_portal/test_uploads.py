"""Tests for case_portal.uploads: attachment validation and retrieval."""

import pytest

from case_portal.errors import NotFoundError, ValidationError
from case_portal.uploads import (
    AttachmentStore,
    RECLAIM_FOLDER,
    RECLAIM_TYPES,
    sanitize_filename,
    stored_name,
    validate_type,
)


@pytest.fixture
def attachments(tmp_path):
    return AttachmentStore(tmp_path / "uploads", max_files=2, max_file_bytes=1024)


class TestNames:
    def test_sanitize(self):
        assert sanitize_filename("my report (final).pdf") == "my_report__final_.pdf"

    def test_sanitize_strips_directories(self):
        assert sanitize_filename("../../etc/passwd") == "passwd"

    def test_stored_name_prefix(self):
        assert stored_name("a b.txt", timestamp_ms=1700000000000) == "1700000000000-a_b.txt"


class TestValidateType:
    @pytest.mark.parametrize(
        "filename,mimetype",
        [
            ("photo.JPG", "image/jpeg"),
            ("scan.pdf", "application/pdf"),
            ("notes.txt", "text/plain"),
            (
                "brief.docx",
                "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            ),
        ],
    )
    def test_allowed(self, filename, mimetype):
        validate_type(filename, mimetype)

    def test_disallowed_mime(self):
        with pytest.raises(ValidationError):
            validate_type("run.exe", "application/x-msdownload")

    def test_extension_must_match_mime(self):
        with pytest.raises(ValidationError):
            validate_type("payload.html", "application/pdf")

    def test_narrower_allow_list(self):
        validate_type("deed.pdf", "application/pdf", RECLAIM_TYPES)
        with pytest.raises(ValidationError):
            validate_type("notes.txt", "text/plain", RECLAIM_TYPES)


class TestStage:
    def test_stage_writes_temp_file(self, attachments):
        staged = attachments.stage("a.txt", "text/plain", b"hello")
        assert staged.path.parent == attachments.temp_dir
        assert staged.path.read_bytes() == b"hello"
        assert staged.size == 5

    def test_same_name_same_millisecond(self, attachments):
        a = attachments.stage("a.txt", "text/plain", b"1")
        b = attachments.stage("a.txt", "text/plain", b"2")
        assert a.filename != b.filename

    def test_too_large(self, attachments):
        with pytest.raises(ValidationError):
            attachments.stage("a.txt", "text/plain", b"x" * 2048)

    def test_too_many(self, attachments):
        with pytest.raises(ValidationError):
            attachments.check_count(3)

    def test_discard(self, attachments):
        staged = attachments.stage("a.txt", "text/plain", b"1")
        attachments.discard([staged])
        assert not staged.path.exists()


class TestResolve:
    def test_resolve_moved_file(self, attachments):
        staged = attachments.stage("a.txt", "text/plain", b"hello")
        assert attachments.move_to_case([staged], "C-ABC123") == []
        path = attachments.resolve("C-ABC123", staged.filename)
        assert path.read_bytes() == b"hello"

    def test_move_into_folder(self, attachments):
        staged = attachments.stage("deed.pdf", "application/pdf", b"%PDF")
        assert attachments.move_to_case([staged], "AR-0A1B2C", folder=RECLAIM_FOLDER) == []
        moved = attachments.uploads_dir / "asset-reclaim" / "AR-0A1B2C" / staged.filename
        assert moved.read_bytes() == b"%PDF"
        assert not staged.path.exists()

    @pytest.mark.parametrize(
        "case_id,filename",
        [
            ("C-ABC", "../secret.txt"),
            ("C-ABC", "1700000000000-a/b.txt"),
            ("C-ABC", "notes.txt"),
            ("../C-ABC", "1700000000000-a.txt"),
            ("c-abc", "1700000000000-a.txt"),
        ],
    )
    def test_rejects_bad_names(self, attachments, case_id, filename):
        with pytest.raises(ValidationError):
            attachments.resolve(case_id, filename)

    def test_missing_file(self, attachments):
        with pytest.raises(NotFoundError) as exc_info:
            attachments.resolve("C-ABC", "1700000000000-a.txt")
        assert exc_info.value.safe_message == "File not found"
