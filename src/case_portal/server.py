"""Portal class: component wiring and the Starlette app."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta

from starlette.applications import Starlette

from case_portal.activity import ActivityLog
from case_portal.auth import AuthMiddleware, StaffAuthenticator
from case_portal.cases import CaseEngine, StatusPolicy
from case_portal.config import PortalSettings
from case_portal.errorlog import ErrorLog
from case_portal.guard import CredentialGuard
from case_portal.health import health_routes
from case_portal.notifier import NotificationDispatcher, Notifier, create_notifier
from case_portal.otp import OtpService
from case_portal.rate_limit import RateLimitMiddleware, RateLimits
from case_portal.reclaims import ReclaimIntake
from case_portal.rest import exception_handlers, rest_routes
from case_portal.sessions import (
    SessionManager,
    SignedTokenStrategy,
    StoreTokenStrategy,
    utcnow,
)
from case_portal.store import RecordStore, create_backend
from case_portal.uploads import AttachmentStore

logger = logging.getLogger(__name__)


class Portal:
    """Owns every component of one portal instance.

    Nothing here is process-global, so tests can build as many isolated
    portals as they like.

    Args:
        settings: Validated settings.
        notifier: Overrides the notifier built from ``settings.mail``.
        background_notify: Deliver notifications on worker threads.
        clock: UTC clock for records, codes and sessions.
        monotonic: Clock for the login guard and rate limiters.
    """

    def __init__(
        self,
        settings: PortalSettings,
        *,
        notifier: Notifier | None = None,
        background_notify: bool = True,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.store = RecordStore(create_backend(settings.storage_backend, settings.data_dir))
        self.notifier = notifier or create_notifier(settings.mail)
        self.dispatcher = NotificationDispatcher(self.notifier, background=background_notify)
        self.activity = ActivityLog(settings.log_dir)
        self.errors = ErrorLog(settings.log_dir, clock=clock)
        self.limits = RateLimits(settings.rate_limits, clock=monotonic)

        self.guard = CredentialGuard(
            max_attempts=settings.max_login_attempts,
            lockout_seconds=settings.lockout_minutes * 60,
            clock=monotonic,
        )
        lifetime = timedelta(hours=settings.session_hours)
        self.sessions = SessionManager(
            staff=SignedTokenStrategy(settings.jwt_secret, lifetime=lifetime, clock=clock),
            client=StoreTokenStrategy(self.store, lifetime=lifetime, clock=clock),
        )
        self.staff_auth = StaffAuthenticator(settings.staff, self.guard, self.sessions)
        self.otp = OtpService(
            self.store,
            self.sessions.client,
            self.dispatcher,
            lifetime=timedelta(minutes=settings.otp_minutes),
            hash_rounds=settings.otp_hash_rounds,
            clock=clock,
        )
        self.attachments = AttachmentStore(
            settings.uploads_dir,
            max_files=settings.max_files,
            max_file_bytes=int(settings.max_file_mb * 1024 * 1024),
        )
        self.cases = CaseEngine(
            self.store,
            self.dispatcher,
            attachments=self.attachments,
            policy=StatusPolicy(settings.enforce_transitions),
            staff_address=settings.staff_address,
            clock=clock,
        )
        self.reclaims = ReclaimIntake(self.store, self.attachments, clock=clock)

    def close(self) -> None:
        self.dispatcher.shutdown()
        self.store.close()

    def create_app(self) -> Starlette:
        """Build the Starlette application.

        The lifespan prunes old error logs, runs the login-counter sweeper,
        and shuts the dispatcher and store down on exit.
        """
        portal = self

        @contextlib.asynccontextmanager
        async def lifespan(app):
            await asyncio.to_thread(portal.errors.prune, portal.settings.error_retention_days)
            sweeper = asyncio.create_task(
                portal.guard.run_sweeper(portal.settings.sweep_interval_seconds)
            )
            logger.info(
                "Case portal started (storage=%s, data_dir=%s)",
                portal.settings.storage_backend,
                portal.settings.data_dir,
            )
            try:
                yield
            finally:
                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper
                portal.close()
                logger.info("Case portal stopped")

        routes = []
        routes.extend(health_routes())
        routes.extend(rest_routes())

        app = Starlette(
            routes=routes,
            lifespan=lifespan,
            exception_handlers=exception_handlers(),
        )
        app.state.portal = portal

        app.add_middleware(AuthMiddleware, sessions=self.sessions)
        # Outermost: throttle before auth work
        app.add_middleware(RateLimitMiddleware, limits=self.limits)
        return app
