"""Portal settings: YAML file, ``${VAR}`` interpolation, defaults, validation."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 32

# ${NAME} or ${NAME:-fallback}
_ENV_REF = re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}")


def _expand(value):
    """Expand env references in every string of a parsed YAML tree.

    An unset variable without a fallback becomes "", so a literal
    ``${VAR}`` can never reach the settings.
    """
    if isinstance(value, str):
        return _ENV_REF.sub(
            lambda m: os.environ.get(m.group("name"), m.group("default") or ""), value
        )
    if isinstance(value, dict):
        return {key: _expand(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_expand(item) for item in value]
    return value


def load_config(path: str) -> dict:
    """Read *path* and return the expanded top-level mapping.

    An empty file yields ``{}``.

    Raises:
        FileNotFoundError: no such file.
        yaml.YAMLError: not valid YAML.
        ValueError: the document is not a mapping.
    """
    config_path = Path(path)
    if not config_path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")
    try:
        parsed = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (yaml.YAMLError, OSError) as e:
        logger.error("Cannot load config %s: %s", path, e)
        raise
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ValueError(f"{path}: expected a mapping at the top level, got {type(parsed).__name__}")
    return _expand(parsed)


def _section(config: dict, name: str) -> dict:
    value = config.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    return value


@dataclass
class StaffAccount:
    email: str
    password_hash: str
    role: str = "staff"


@dataclass
class PortalSettings:
    """Typed view of the portal config with defaults for every key."""

    host: str = "127.0.0.1"
    port: int = 3000
    log_level: str = "info"
    tls_certfile: str = ""
    tls_keyfile: str = ""

    storage_backend: str = "json"
    data_dir: Path = Path("data")
    uploads_dir: Path = Path("uploads")

    jwt_secret: str = ""
    session_hours: float = 24
    otp_minutes: float = 10
    otp_hash_rounds: int = 10
    max_login_attempts: int = 5
    lockout_minutes: float = 15
    sweep_interval_seconds: float = 60
    error_retention_days: int = 30
    staff: dict[str, StaffAccount] = field(default_factory=dict)

    enforce_transitions: bool = False

    max_files: int = 5
    max_file_mb: float = 10

    rate_limits: dict = field(default_factory=dict)
    mail: dict = field(default_factory=lambda: {"backend": "log"})

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def staff_address(self) -> str:
        return self.mail.get("staff_address", "")

    @classmethod
    def from_dict(cls, config: dict) -> PortalSettings:
        server = _section(config, "server")
        tls = server.get("tls") or {}
        storage = _section(config, "storage")
        auth = _section(config, "auth")
        lifecycle = _section(config, "lifecycle")
        uploads = _section(config, "uploads")

        staff = {}
        for email, account in (auth.get("staff") or {}).items():
            if not isinstance(account, dict) or not account.get("password_hash"):
                raise ValueError(f"Staff account '{email}' needs a password_hash")
            key = str(email).strip().lower()
            staff[key] = StaffAccount(
                email=key,
                password_hash=account["password_hash"],
                role=account.get("role", "staff"),
            )

        defaults = cls()
        return cls(
            host=server.get("host", defaults.host),
            port=int(server.get("port", defaults.port)),
            log_level=str(server.get("log_level", defaults.log_level)).lower(),
            tls_certfile=tls.get("certfile") or "",
            tls_keyfile=tls.get("keyfile") or "",
            storage_backend=storage.get("backend", defaults.storage_backend),
            data_dir=Path(storage.get("data_dir", defaults.data_dir)),
            uploads_dir=Path(storage.get("uploads_dir", defaults.uploads_dir)),
            error_retention_days=int(
                storage.get("error_retention_days", defaults.error_retention_days)
            ),
            jwt_secret=auth.get("jwt_secret") or "",
            session_hours=float(auth.get("session_hours", defaults.session_hours)),
            otp_minutes=float(auth.get("otp_minutes", defaults.otp_minutes)),
            otp_hash_rounds=int(auth.get("otp_hash_rounds", defaults.otp_hash_rounds)),
            max_login_attempts=int(auth.get("max_login_attempts", defaults.max_login_attempts)),
            lockout_minutes=float(auth.get("lockout_minutes", defaults.lockout_minutes)),
            sweep_interval_seconds=float(
                auth.get("sweep_interval_seconds", defaults.sweep_interval_seconds)
            ),
            staff=staff,
            enforce_transitions=bool(lifecycle.get("enforce_transitions", False)),
            max_files=int(uploads.get("max_files", defaults.max_files)),
            max_file_mb=float(uploads.get("max_file_mb", defaults.max_file_mb)),
            rate_limits=_section(config, "rate_limits"),
            mail=_section(config, "mail") or {"backend": "log"},
        )

    def validate(self) -> None:
        """Raise ValueError describing the first unusable setting."""
        if not self.jwt_secret:
            raise ValueError("auth.jwt_secret is required (set CASE_PORTAL_JWT_SECRET)")
        if len(self.jwt_secret) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"auth.jwt_secret must be at least {MIN_SECRET_LENGTH} characters"
            )
        if bool(self.tls_certfile) != bool(self.tls_keyfile):
            raise ValueError("TLS requires both server.tls.certfile and server.tls.keyfile")
        if self.storage_backend not in ("json", "sqlite"):
            raise ValueError(f"Unknown storage backend: {self.storage_backend!r}")
        if self.max_login_attempts < 1:
            raise ValueError("auth.max_login_attempts must be at least 1")
