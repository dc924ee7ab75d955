"""Transactional email: notification events, notifiers, and dispatch.

The core never talks to a mail server directly. It builds a
``Notification`` and hands it to a ``NotificationDispatcher``, which
delivers it on a worker thread and swallows delivery failures. Rendering
is deliberately minimal plain text.

Notifiers:
    - SmtpNotifier: delivers through an SMTP relay.
    - LogNotifier: logs the subject and recipient only (development).
    - MemoryNotifier: keeps every notification in memory; the test double
      that exposes issued one-time codes to automated tests.
"""

from __future__ import annotations

import logging
import smtplib
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from email.message import EmailMessage

from case_portal.errors import NotifyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    """One outbound email."""

    kind: str
    to: str
    subject: str
    body: str
    cc: str | None = None
    data: dict = field(default_factory=dict)


def otp_issued(email: str, code: str, expires_minutes: int) -> Notification:
    return Notification(
        kind="otp_issued",
        to=email,
        subject="Your login code",
        body=(
            f"Your one-time login code is: {code}\n\n"
            f"This code expires in {expires_minutes} minutes. "
            "If you did not request it, ignore this email."
        ),
        data={"code": code},
    )


def case_created(case: dict) -> Notification:
    return Notification(
        kind="case_created",
        to=case["email"],
        subject=f"Case Created: {case['id']}",
        body=(
            f"Your case {case['id']} has been received.\n"
            "We will review it and contact you within 24 hours.\n"
            "Log in to the client portal to track its status."
        ),
        data={"case_id": case["id"]},
    )


def status_changed(case: dict, notes: str | None = None) -> Notification:
    body = f"Your case status has been updated to: {case['status']}\n"
    if notes:
        body += f"\nNotes: {notes}\n"
    body += "\nLog in to the client portal to view more details."
    return Notification(
        kind="status_changed",
        to=case["email"],
        subject=f"Case Update: {case['id']}",
        body=body,
        data={"case_id": case["id"], "status": case["status"]},
    )


def client_replied(case: dict, message: str, staff_address: str) -> Notification:
    return Notification(
        kind="client_replied",
        to=staff_address,
        subject=f"New Client Reply: {case['id']}",
        body=(
            f"Client: {case.get('name', '')} ({case['email']})\n\n"
            f"{message}"
        ),
        data={"case_id": case["id"]},
    )


def staff_email(
    to: str,
    subject: str,
    message: str,
    *,
    cc: str | None = None,
    case_id: str | None = None,
    priority: str = "normal",
) -> Notification:
    body = message
    if priority != "normal":
        body = f"[{priority.upper()} PRIORITY]\n\n{body}"
    if case_id:
        body += f"\n\nReference Case: {case_id}"
    return Notification(
        kind="staff_email",
        to=to,
        cc=cc,
        subject=subject,
        body=body,
        data={"case_id": case_id, "priority": priority},
    )


class Notifier:
    """Delivers one notification or raises NotifyError."""

    def send(self, notification: Notification) -> None:
        raise NotImplementedError


class SmtpNotifier(Notifier):
    """SMTP delivery (STARTTLS by default)."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        sender: str,
        username: str = "",
        password: str = "",
        starttls: bool = True,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.starttls = starttls
        self.timeout = timeout

    def send(self, notification: Notification) -> None:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = notification.to
        if notification.cc:
            msg["Cc"] = notification.cc
        msg["Subject"] = notification.subject
        msg.set_content(notification.body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as s:
                if self.starttls:
                    s.starttls()
                if self.username:
                    s.login(self.username, self.password)
                s.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotifyError(
                f"SMTP delivery of {notification.kind} to {notification.to} failed: {e}"
            ) from e


class LogNotifier(Notifier):
    """Logs recipient and subject. Never logs the body (it may hold a code)."""

    def send(self, notification: Notification) -> None:
        logger.info(
            "Email (%s) to %s: %s", notification.kind, notification.to, notification.subject
        )


class MemoryNotifier(Notifier):
    """Collects notifications in memory.

    Test double: ``last_code_for`` returns the most recent one-time code
    sent to an address, so tests never need the code in an HTTP response.
    """

    def __init__(self) -> None:
        self.sent: list[Notification] = []
        self._lock = threading.Lock()

    def send(self, notification: Notification) -> None:
        with self._lock:
            self.sent.append(notification)

    def of_kind(self, kind: str) -> list[Notification]:
        with self._lock:
            return [n for n in self.sent if n.kind == kind]

    def last_code_for(self, email: str) -> str | None:
        for n in reversed(self.of_kind("otp_issued")):
            if n.to == email:
                return n.data["code"]
        return None


class NotificationDispatcher:
    """Best-effort delivery that never fails or blocks the caller.

    With ``background=True`` notifications are delivered on a small
    thread pool; otherwise inline (tests). Either way a delivery error is
    logged and dropped.
    """

    def __init__(self, notifier: Notifier, *, background: bool = True, workers: int = 2):
        self.notifier = notifier
        self._executor = (
            ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify")
            if background
            else None
        )

    def submit(self, notification: Notification) -> None:
        if self._executor is None:
            self._deliver(notification)
            return
        try:
            self._executor.submit(self._deliver, notification)
        except RuntimeError as exc:
            # Executor already shut down
            logger.error("Dropped %s notification: %s", notification.kind, exc)

    def _deliver(self, notification: Notification) -> None:
        try:
            self.notifier.send(notification)
        except NotifyError as exc:
            logger.error("Notification failed: %s", exc)
        except Exception as exc:
            logger.error(
                "Notification %s to %s failed: %s: %s",
                notification.kind,
                notification.to,
                type(exc).__name__,
                exc,
            )

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)


def create_notifier(mail_config: dict) -> Notifier:
    """Build a notifier from the ``mail`` config section."""
    backend = mail_config.get("backend", "log")
    if backend == "smtp":
        host = mail_config.get("host")
        if not host:
            raise ValueError("mail.host is required for the smtp backend")
        return SmtpNotifier(
            host,
            int(mail_config.get("port", 587)),
            sender=mail_config.get("sender", "noreply@localhost"),
            username=mail_config.get("username", ""),
            password=mail_config.get("password", ""),
            starttls=bool(mail_config.get("starttls", True)),
        )
    if backend == "memory":
        return MemoryNotifier()
    if backend == "log":
        return LogNotifier()
    raise ValueError(f"Unknown mail backend: {backend!r}")
