"""Tests for the case-portal entry point."""

from unittest.mock import MagicMock, patch

import bcrypt
import pytest

from case_portal.__main__ import hash_password, main

from .conftest import TEST_SECRET


def _write_config(tmp_path, body: str):
    path = tmp_path / "portal.yaml"
    path.write_text(body)
    return str(path)


def _base(tmp_path) -> str:
    return (
        f"storage:\n"
        f"  data_dir: {tmp_path / 'data'}\n"
        f"  uploads_dir: {tmp_path / 'uploads'}\n"
        f"auth:\n"
        f"  jwt_secret: {TEST_SECRET}\n"
    )


class TestStartupValidation:
    def test_missing_config_exits(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(tmp_path / "missing.yaml")])
        assert exc_info.value.code == 1

    def test_invalid_yaml_exits(self, tmp_path):
        path = _write_config(tmp_path, "auth: [unclosed\n")
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", path])
        assert exc_info.value.code == 1

    def test_missing_secret_exits(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CASE_PORTAL_JWT_SECRET", raising=False)
        path = _write_config(tmp_path, "auth:\n  jwt_secret: ${CASE_PORTAL_JWT_SECRET}\n")
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", path])
        assert exc_info.value.code == 1

    def test_missing_tls_key_exits(self, tmp_path):
        cert = tmp_path / "cert.pem"
        cert.write_text("fake cert")
        path = _write_config(
            tmp_path,
            _base(tmp_path)
            + f"server:\n  tls:\n    certfile: {cert}\n    keyfile: /nonexistent/key.pem\n",
        )
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", path])
        assert exc_info.value.code == 1


class TestRun:
    def test_runs_uvicorn_with_config(self, tmp_path):
        path = _write_config(tmp_path, _base(tmp_path) + "server:\n  port: 8123\n")
        with patch("case_portal.__main__.uvicorn") as mock_uvicorn:
            with patch("case_portal.__main__.Portal") as mock_portal_cls:
                mock_portal_cls.return_value.create_app.return_value = MagicMock()
                main(["--config", path])
        kwargs = mock_uvicorn.run.call_args.kwargs
        assert kwargs["host"] == "127.0.0.1"
        assert kwargs["port"] == 8123
        assert "ssl_certfile" not in kwargs

    def test_cli_overrides(self, tmp_path):
        path = _write_config(tmp_path, _base(tmp_path))
        with patch("case_portal.__main__.uvicorn") as mock_uvicorn:
            with patch("case_portal.__main__.Portal"):
                main(["--config", path, "--host", "0.0.0.0", "--port", "9000"])
        kwargs = mock_uvicorn.run.call_args.kwargs
        assert kwargs["host"] == "0.0.0.0"
        assert kwargs["port"] == 9000

    def test_tls_passed_through(self, tmp_path):
        cert = tmp_path / "cert.pem"
        key = tmp_path / "key.pem"
        cert.write_text("fake cert")
        key.write_text("fake key")
        path = _write_config(
            tmp_path,
            _base(tmp_path) + f"server:\n  tls:\n    certfile: {cert}\n    keyfile: {key}\n",
        )
        with patch("case_portal.__main__.uvicorn") as mock_uvicorn:
            with patch("case_portal.__main__.Portal"):
                main(["--config", path])
        kwargs = mock_uvicorn.run.call_args.kwargs
        assert kwargs["ssl_certfile"] == str(cert)
        assert kwargs["ssl_keyfile"] == str(key)


class TestHashPassword:
    def test_hash_verifies(self):
        hashed = hash_password("s3cret", rounds=4)
        assert bcrypt.checkpw(b"s3cret", hashed.encode())

    def test_cli_prints_hash(self, capsys):
        with patch("case_portal.__main__.getpass.getpass", return_value="s3cret"):
            main(["--hash-password"])
        printed = capsys.readouterr().out.strip()
        assert bcrypt.checkpw(b"s3cret", printed.encode())

    def test_cli_rejects_empty(self):
        with patch("case_portal.__main__.getpass.getpass", return_value=""):
            with pytest.raises(SystemExit) as exc_info:
                main(["--hash-password"])
        assert exc_info.value.code == 1
