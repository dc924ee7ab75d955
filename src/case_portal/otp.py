"""One-time login codes for case submitters.

Codes are single-use, expire after a fixed window, and are bcrypt-hashed
before storage; plaintext is never persisted or logged. Each email has at
most one record in the ``identities`` collection, so issuing a new code
replaces both an older code and any live session, and a verified code is
replaced by a session in the same store mutation.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import bcrypt

from case_portal.errors import (
    CodeExpiredError,
    InvalidCodeError,
    NotFoundError,
    ValidationError,
)
from case_portal.notifier import NotificationDispatcher, otp_issued
from case_portal.sessions import StoreTokenStrategy, utcnow
from case_portal.store import CASES, IDENTITIES, RecordStore
from case_portal.token_gen import OTP_LENGTH, generate_otp_code

logger = logging.getLogger(__name__)

DEFAULT_OTP_MINUTES = 10
DEFAULT_HASH_ROUNDS = 10

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_NON_DIGITS = re.compile(r"[^0-9]")


def normalize_email(email) -> str:
    """Trim and lower-case; raise ValidationError when not an address."""
    if not isinstance(email, str) or not email.strip():
        raise ValidationError("Email is required")
    email = email.strip().lower()
    if len(email) > 255 or not _EMAIL_RE.match(email):
        raise ValidationError("Invalid email format")
    return email


def normalize_code(submitted) -> str:
    """Strip everything but digits; exactly six must remain."""
    digits = _NON_DIGITS.sub("", str(submitted if submitted is not None else ""))
    if len(digits) != OTP_LENGTH:
        raise ValidationError(f"Code must be {OTP_LENGTH} digits")
    return digits


@dataclass(frozen=True)
class IssuedCode:
    email: str
    code: str
    expires_at: datetime


class OtpService:
    """Issues and verifies one-time codes.

    Args:
        store: Record store holding ``cases`` and ``identities``.
        sessions: Client-plane strategy that mints the replacement session.
        dispatcher: Receives the code for delivery.
        lifetime: How long a code stays valid.
        hash_rounds: bcrypt cost factor for stored codes.
        clock: UTC time source (injectable for tests).
    """

    def __init__(
        self,
        store: RecordStore,
        sessions: StoreTokenStrategy,
        dispatcher: NotificationDispatcher,
        *,
        lifetime: timedelta = timedelta(minutes=DEFAULT_OTP_MINUTES),
        hash_rounds: int = DEFAULT_HASH_ROUNDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.sessions = sessions
        self.dispatcher = dispatcher
        self.lifetime = lifetime
        self.hash_rounds = hash_rounds
        self._clock = clock

    def _has_cases(self, email: str) -> bool:
        cases = self.store.read_all(CASES)
        return any(c.get("email", "").lower() == email for c in cases.values())

    def issue(self, email) -> IssuedCode:
        """Generate a code for *email* and hand it to the notifier.

        Raises:
            ValidationError: malformed email.
            NotFoundError: the email owns no case.
        """
        email = normalize_email(email)
        if not self._has_cases(email):
            raise NotFoundError(
                f"No cases for {email}", safe_message="No cases found for this email"
            )

        code = generate_otp_code()
        hashed = bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt(self.hash_rounds))
        now = self._clock()
        expires_at = now + self.lifetime
        record = {
            "email": email,
            "otpHash": hashed.decode("utf-8"),
            "otpExpiresAt": expires_at.isoformat(),
            "issuedAt": now.isoformat(),
        }

        def _replace(records: dict) -> None:
            records[email] = record

        self.store.mutate(IDENTITIES, _replace)
        logger.info("Issued login code for %s (expires %s)", email, expires_at.isoformat())

        minutes = int(self.lifetime.total_seconds() // 60)
        self.dispatcher.submit(otp_issued(email, code, minutes))
        return IssuedCode(email=email, code=code, expires_at=expires_at)

    def verify(self, email, submitted) -> str:
        """Consume a valid code and return a new client session token.

        On any failure the stored code is left untouched, so the
        submitter may retry until it expires.

        Raises:
            ValidationError: malformed email or not six digits.
            InvalidCodeError: no live code, or the code does not match.
            CodeExpiredError: the code matched but has expired.
        """
        email = normalize_email(email)
        code = normalize_code(submitted)
        now = self._clock()

        def _consume(records: dict) -> str:
            record = records.get(email)
            stored = record.get("otpHash") if record else None
            if not stored:
                raise InvalidCodeError(f"No live code for {email}")
            try:
                matched = bcrypt.checkpw(code.encode("utf-8"), stored.encode("utf-8"))
            except (ValueError, TypeError):
                matched = False
            if not matched:
                raise InvalidCodeError(f"Code mismatch for {email}")
            if now >= datetime.fromisoformat(record["otpExpiresAt"]):
                raise CodeExpiredError(f"Code for {email} expired")
            token, session = self.sessions.new_session(email)
            records[email] = session
            return token

        token = self.store.mutate(IDENTITIES, _consume)
        logger.info("Login code verified, client session opened for %s", email)
        return token
