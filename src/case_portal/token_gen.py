"""Random identifiers: case and reclaim ids, one-time codes, client session tokens."""

import secrets
import string
import time

_BASE36 = string.digits + string.ascii_uppercase

OTP_LENGTH = 6
CLIENT_TOKEN_PREFIX = "cp_sess_"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_case_id() -> str:
    """Generate a case id such as ``C-LZ3K9Q1A7F2X``.

    Format: ``C-`` + base36 millisecond timestamp + 4 random base36 chars,
    all uppercase. Ids sort roughly by creation time.
    """
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"C-{_base36(int(time.time() * 1000))}{suffix}"


def generate_reclaim_id() -> str:
    """Generate an asset-reclaim id: ``AR-`` + 12 uppercase hex characters."""
    return f"AR-{secrets.token_hex(6).upper()}"


def generate_otp_code() -> str:
    """Generate a 6-digit numeric code (leading zeros allowed)."""
    return "".join(secrets.choice(string.digits) for _ in range(OTP_LENGTH))


def generate_session_token() -> str:
    """Generate an opaque client session token.

    Format: ``cp_sess_`` prefix + 48 hex characters (192 bits entropy).
    """
    return f"{CLIENT_TOKEN_PREFIX}{secrets.token_hex(24)}"
