"""Bearer authentication middleware and staff login."""

from __future__ import annotations

import asyncio
import logging

import bcrypt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from case_portal.config import StaffAccount
from case_portal.errors import (
    AuthError,
    ForbiddenError,
    InvalidCredentialsError,
    PortalError,
)
from case_portal.guard import CredentialGuard
from case_portal.sessions import Identity, Plane, SessionManager
from case_portal.token_gen import CLIENT_TOKEN_PREFIX

logger = logging.getLogger(__name__)

# Paths reachable without a token.
_PUBLIC_PATHS = {
    "/api/health",
    "/api/contact",
    "/api/asset-reclaim",
    "/api/admin/login",
    "/api/client/request-login",
    "/api/client/verify-otp",
}
_PUBLIC_PREFIXES = ("/api/case/",)

_STAFF_PREFIX = "/api/admin/"
_CLIENT_PREFIX = "/api/client/"
_UPLOADS_PREFIX = "/api/uploads/"

# Used when the email is unknown, so a miss costs the same as a wrong password.
_DUMMY_HASH = bcrypt.hashpw(b"case-portal-dummy", bcrypt.gensalt(4))


def _bearer(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    if not header.lower().startswith("bearer "):
        return None
    return header[7:].strip() or None


def _error(exc: PortalError) -> JSONResponse:
    return JSONResponse({"error": exc.safe_message}, status_code=exc.status_code)


class AuthMiddleware(BaseHTTPMiddleware):
    """Resolves the bearer token to an ``Identity`` on ``request.state.identity``.

    The plane is chosen by path: /api/admin/* needs a staff token,
    /api/client/* a client token, and /api/uploads/* accepts either (the
    route then checks ownership for clients). Public paths pass through
    with ``identity = None``. Failures are answered here with 401/403.
    """

    def __init__(self, app, sessions: SessionManager):
        super().__init__(app)
        self.sessions = sessions

    @staticmethod
    def _planes_for(path: str) -> tuple[Plane, ...] | None:
        if path in _PUBLIC_PATHS or path.startswith(_PUBLIC_PREFIXES):
            return None
        if path.startswith(_STAFF_PREFIX):
            return (Plane.STAFF,)
        if path.startswith(_CLIENT_PREFIX):
            return (Plane.CLIENT,)
        if path.startswith(_UPLOADS_PREFIX):
            return (Plane.STAFF, Plane.CLIENT)
        return None

    async def _resolve(self, token: str, planes: tuple[Plane, ...]) -> Identity:
        if planes == (Plane.STAFF,) and token.startswith(CLIENT_TOKEN_PREFIX):
            raise ForbiddenError("Client token on staff route", safe_message="Staff access required")
        if planes == (Plane.CLIENT,) and not token.startswith(CLIENT_TOKEN_PREFIX):
            raise ForbiddenError("Non-client token on client route", safe_message="Client access required")
        plane = Plane.CLIENT if token.startswith(CLIENT_TOKEN_PREFIX) else Plane.STAFF
        # Client validation reads the store
        return await asyncio.to_thread(self.sessions.validate, token, plane)

    async def dispatch(self, request: Request, call_next):
        request.state.identity = None
        planes = self._planes_for(request.url.path)
        if planes is None:
            return await call_next(request)

        token = _bearer(request)
        if token is None:
            return JSONResponse({"error": "Access token required"}, status_code=401)

        try:
            request.state.identity = await self._resolve(token, planes)
        except PortalError as exc:
            logger.info("Rejected token on %s: %s", request.url.path, exc)
            return _error(exc)
        return await call_next(request)


def require_identity(request: Request) -> Identity:
    """Return the identity set by AuthMiddleware or raise AuthError."""
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise AuthError("No identity on request", safe_message="Access token required")
    return identity


class StaffAuthenticator:
    """Email/password login for configured staff accounts.

    Order: lockout check, bcrypt comparison, outcome recorded, token issued.
    """

    def __init__(
        self,
        accounts: dict[str, StaffAccount],
        guard: CredentialGuard,
        sessions: SessionManager,
    ):
        self.accounts = accounts
        self.guard = guard
        self.sessions = sessions

    def _password_matches(self, account: StaffAccount | None, password: str) -> bool:
        stored = account.password_hash.encode("utf-8") if account else _DUMMY_HASH
        try:
            matched = bcrypt.checkpw(password.encode("utf-8"), stored)
        except ValueError:
            logger.error("Unusable password hash configured for %s", account.email if account else "?")
            matched = False
        return matched and account is not None

    def login(self, email, password, source_id: str) -> tuple[str, Identity]:
        """Verify credentials and issue a staff token.

        Raises:
            LockoutError: *source_id* is locked out (checked first).
            InvalidCredentialsError: unknown email or wrong password.
        """
        self.guard.enforce(source_id)
        if not isinstance(email, str) or not isinstance(password, str) or not email or not password:
            self.guard.record(source_id, success=False)
            raise InvalidCredentialsError()

        account = self.accounts.get(email.strip().lower())
        if not self._password_matches(account, password):
            self.guard.record(source_id, success=False)
            logger.warning("Failed staff login for %s from %s", email, source_id)
            raise InvalidCredentialsError()

        self.guard.record(source_id, success=True)
        identity = Identity(email=account.email, role=account.role, plane=Plane.STAFF)
        token = self.sessions.issue(identity)
        logger.info("Staff login: %s from %s", account.email, source_id)
        return token, identity
