"""Bearer-session validation for the staff and client planes.

Two strategies sit behind one ``SessionManager`` interface:

    - Staff plane: signed, stateless HS256 JWT embedding {sub, role}.
      Verified by signature and expiry only; there is no revocation list
      (``revoke`` raises ValidationError).
    - Client plane: opaque random token. Only its SHA-256 digest is kept
      in the ``identities`` collection, keyed by email; deleting the
      record revokes the session.

Both planes use an absolute window from issuance (no sliding refresh)
and fail closed.
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from case_portal.errors import InvalidTokenError, SessionExpiredError, ValidationError
from case_portal.store import IDENTITIES, RecordStore
from case_portal.token_gen import generate_session_token

logger = logging.getLogger(__name__)

DEFAULT_SESSION_HOURS = 24

# Reject absurd bearer values before hashing or decoding them
_MAX_TOKEN_LENGTH = 1024

_JWT_ALGORITHM = "HS256"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Plane(str, enum.Enum):
    STAFF = "staff"
    CLIENT = "client"


@dataclass(frozen=True)
class Identity:
    """Who a validated token belongs to."""

    email: str
    role: str
    plane: Plane


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _check_shape(token: str) -> None:
    if not token or not isinstance(token, str) or len(token) > _MAX_TOKEN_LENGTH:
        raise InvalidTokenError("Malformed bearer token")


class SignedTokenStrategy:
    """Stateless HS256 tokens for staff."""

    def __init__(
        self,
        secret: str,
        *,
        lifetime: timedelta = timedelta(hours=DEFAULT_SESSION_HOURS),
        clock: Callable[[], datetime] = utcnow,
    ):
        if not secret:
            raise ValueError("A signing secret is required for staff tokens")
        self._secret = secret
        self.lifetime = lifetime
        self._clock = clock

    def issue(self, identity: Identity) -> str:
        now = self._clock()
        payload = {
            "sub": identity.email,
            "role": identity.role,
            "iat": int(now.timestamp()),
            "exp": int((now + self.lifetime).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=_JWT_ALGORITHM)

    def validate(self, token: str) -> Identity:
        _check_shape(token)
        try:
            # Expiry is compared against the injected clock below
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[_JWT_ALGORITHM],
                options={"require": ["sub", "exp", "iat"], "verify_exp": False},
            )
        except jwt.PyJWTError as exc:
            raise InvalidTokenError(f"Staff token rejected: {exc}") from exc
        if self._clock().timestamp() >= claims["exp"]:
            raise SessionExpiredError("Staff token expired")
        return Identity(
            email=claims["sub"],
            role=claims.get("role", "staff"),
            plane=Plane.STAFF,
        )

    def revoke(self, token: str) -> None:
        raise ValidationError("Staff tokens are stateless and cannot be revoked")


class StoreTokenStrategy:
    """Opaque, store-backed tokens for clients."""

    def __init__(
        self,
        store: RecordStore,
        *,
        lifetime: timedelta = timedelta(hours=DEFAULT_SESSION_HOURS),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.lifetime = lifetime
        self._clock = clock

    def new_session(self, email: str) -> tuple[str, dict[str, Any]]:
        """Mint a token and the record that should replace the identity's entry.

        The caller writes the record, so it can land in the same store
        mutation that consumes a one-time code.
        """
        now = self._clock()
        token = generate_session_token()
        record = {
            "email": email,
            "tokenHash": token_digest(token),
            "createdAt": now.isoformat(),
            "expiresAt": (now + self.lifetime).isoformat(),
        }
        return token, record

    def issue(self, identity: Identity) -> str:
        token, record = self.new_session(identity.email)

        def _put(records: dict) -> None:
            records[identity.email] = record

        self.store.mutate(IDENTITIES, _put)
        return token

    def _find(self, records: dict, token: str) -> tuple[str, dict] | None:
        digest = token_digest(token)
        found = None
        for key, record in records.items():
            stored = record.get("tokenHash")
            if stored and hmac.compare_digest(stored, digest) and found is None:
                found = (key, record)
        return found

    def validate(self, token: str) -> Identity:
        _check_shape(token)
        match = self._find(self.store.read_all(IDENTITIES), token)
        if match is None:
            raise InvalidTokenError("Unknown client token")
        _, record = match
        if self._clock() >= _parse_ts(record["expiresAt"]):
            raise SessionExpiredError("Client session expired")
        return Identity(email=record["email"], role="client", plane=Plane.CLIENT)

    def revoke(self, token: str) -> bool:
        """Delete the session record for *token*. Returns False if none existed."""
        _check_shape(token)

        def _drop(records: dict) -> bool:
            match = self._find(records, token)
            if match is None:
                return False
            del records[match[0]]
            return True

        return self.store.mutate(IDENTITIES, _drop)


class SessionManager:
    """Strategy-agnostic facade: call sites only name the plane."""

    def __init__(self, staff: SignedTokenStrategy, client: StoreTokenStrategy):
        self._strategies = {Plane.STAFF: staff, Plane.CLIENT: client}

    @property
    def client(self) -> StoreTokenStrategy:
        return self._strategies[Plane.CLIENT]

    @property
    def staff(self) -> SignedTokenStrategy:
        return self._strategies[Plane.STAFF]

    def issue(self, identity: Identity, plane: Plane | None = None) -> str:
        return self._strategies[plane or identity.plane].issue(identity)

    def validate(self, token: str, plane: Plane) -> Identity:
        return self._strategies[plane].validate(token)

    def revoke(self, token: str, plane: Plane):
        return self._strategies[plane].revoke(token)
