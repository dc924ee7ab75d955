"""Entry point for case-portal."""

import argparse
import getpass
import logging
import sys
from pathlib import Path

import bcrypt
import uvicorn
import yaml

from case_portal.config import PortalSettings, load_config
from case_portal.oplog import setup_logging
from case_portal.server import Portal

logger = logging.getLogger(__name__)


def _fail(message: str) -> None:
    logger.error(message)
    print(f"ERROR: {message}", file=sys.stderr)
    sys.exit(1)


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds)).decode("utf-8")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Case portal: case submission and tracking service")
    parser.add_argument(
        "--config",
        default="portal.yaml",
        help="Path to portal YAML config file (default: portal.yaml)",
    )
    parser.add_argument("--host", default=None, help="Bind host (overrides config)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (overrides config)")
    parser.add_argument(
        "--hash-password",
        action="store_true",
        help="Prompt for a password, print its bcrypt hash for auth.staff, and exit",
    )
    args = parser.parse_args(argv)

    if args.hash_password:
        password = getpass.getpass("Password: ")
        if not password:
            print("ERROR: Password must not be empty", file=sys.stderr)
            sys.exit(1)
        print(hash_password(password))
        return

    setup_logging("case-portal", log_to_file=False)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        _fail(f"Config file not found: {args.config}")
    except yaml.YAMLError as exc:
        _fail(f"Invalid YAML in config file {args.config}: {exc}")
    except (OSError, ValueError) as exc:
        _fail(f"Cannot load config file {args.config}: {exc}")

    try:
        settings = PortalSettings.from_dict(config)
        settings.validate()
    except (TypeError, ValueError) as exc:
        _fail(f"Invalid config: {exc}")

    ssl_kwargs = {}
    if settings.tls_certfile:
        if not Path(settings.tls_certfile).is_file():
            _fail(f"TLS certificate file not found: {settings.tls_certfile}")
        if not Path(settings.tls_keyfile).is_file():
            _fail(f"TLS key file not found: {settings.tls_keyfile}")
        ssl_kwargs["ssl_certfile"] = settings.tls_certfile
        ssl_kwargs["ssl_keyfile"] = settings.tls_keyfile

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    setup_logging("case-portal", level=level, log_dir=settings.log_dir)

    if not settings.staff:
        logger.warning("No staff accounts configured; admin login is disabled")

    portal = Portal(settings)
    app = portal.create_app()
    uvicorn.run(
        app,
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_level=settings.log_level,
        **ssl_kwargs,
    )


if __name__ == "__main__":
    main()
