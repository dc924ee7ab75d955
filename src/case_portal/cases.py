"""Case lifecycle: creation, status transitions, audit logs, queries.

All writes go through ``RecordStore.mutate`` on the ``cases`` collection,
so concurrent updates to the same case never lose log entries. The
``updates``, ``notes``, ``clientReplies`` and ``emailHistory`` lists are
append-only. Notifications are submitted after the store write returns,
never from inside it.

Visibility:
    - public view:  id, status, createdAt, service, updates
    - client view:  everything except notes and emailHistory
    - staff view:   full record
"""

from __future__ import annotations

import copy
import csv
import io
import logging
import math
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any

from case_portal.errors import NotFoundError, ValidationError
from case_portal.notifier import (
    NotificationDispatcher,
    case_created,
    client_replied,
    staff_email,
    status_changed,
)
from case_portal.otp import normalize_email
from case_portal.sessions import Identity, utcnow
from case_portal.store import CASES, RecordStore
from case_portal.token_gen import generate_case_id
from case_portal.uploads import CASE_ID_RE, AttachmentStore, StagedFile

logger = logging.getLogger(__name__)

NEW = "new"
IN_PROGRESS = "in-progress"
ON_HOLD = "on-hold"
COMPLETED = "completed"
STATUSES = (NEW, IN_PROGRESS, ON_HOLD, COMPLETED)

TRANSITIONS: dict[str, frozenset[str]] = {
    NEW: frozenset({IN_PROGRESS, ON_HOLD}),
    IN_PROGRESS: frozenset({ON_HOLD, COMPLETED}),
    ON_HOLD: frozenset({IN_PROGRESS}),
    COMPLETED: frozenset(),
}

PUBLIC_FIELDS = ("id", "status", "createdAt", "service", "updates")
_CLIENT_HIDDEN = {"notes", "emailHistory"}

CSV_HEADERS = [
    "Case ID", "Client Name", "Email", "Phone", "Service", "Status", "Created", "Last Updated",
]

SORT_FIELDS = {"createdAt", "updatedAt", "id", "name", "email", "status", "service"}
_DATE_SORT_FIELDS = {"createdAt", "updatedAt"}
SEARCH_FIELDS = ("id", "name", "email", "service", "message")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
PRIORITIES = ("normal", "high", "urgent")

_MAX_CREATE_ATTEMPTS = 5


def sanitize_text(value: Any, max_length: int = 1000) -> str:
    """Trim, truncate, and drop angle brackets and inline script vectors."""
    if not isinstance(value, str):
        return ""
    text = value.strip()[:max_length]
    text = re.sub(r"[<>]", "", text)
    text = re.sub(r"javascript:", "", text, flags=re.IGNORECASE)
    return re.sub(r"on\w+\s*=", "", text, flags=re.IGNORECASE)


def validate_contact(data: dict) -> dict:
    """Validate and sanitize submitted contact fields.

    Raises:
        ValidationError: listing every problem found.
    """
    errors = []
    name = sanitize_text(data.get("name"), 100)
    if not name:
        errors.append("Name is required")
    elif len(name) < 2:
        errors.append("Name must be at least 2 characters")

    email = ""
    try:
        email = normalize_email(data.get("email"))
    except ValidationError as e:
        errors.append(e.safe_message)

    phone = sanitize_text(data.get("phone"), 20)
    if phone and len(phone) < 10:
        errors.append("Phone number is too short")

    if errors:
        raise ValidationError(", ".join(errors))
    return {
        "name": name,
        "email": email,
        "phone": phone,
        "service": sanitize_text(data.get("service"), 100),
        "message": sanitize_text(data.get("message"), 5000),
    }


def validate_status(status: Any) -> str:
    if status not in STATUSES:
        raise ValidationError(
            f"Invalid status {status!r}; expected one of: {', '.join(STATUSES)}"
        )
    return status


class StatusPolicy:
    """Decides whether a status change is allowed.

    Permissive by default: any known status may follow any other. With
    ``enforce_transitions`` only the edges in ``TRANSITIONS`` are legal.
    """

    def __init__(self, enforce_transitions: bool = False):
        self.enforce_transitions = enforce_transitions

    def check(self, current: str, new: str) -> None:
        if not self.enforce_transitions or current == new:
            return
        if new not in TRANSITIONS.get(current, frozenset()):
            raise ValidationError(f"Cannot move a case from {current} to {new}")


def _parse_dt(value: str | None) -> datetime | None:
    """Parse a stored timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_bound(value: str, name: str, *, end: bool) -> datetime:
    """Parse a startDate/endDate filter. A bare date covers the whole day."""
    try:
        if len(value) == 10:
            day = date.fromisoformat(value)
            return datetime.combine(day, time.max if end else time.min, tzinfo=timezone.utc)
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid {name}: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _int_param(value: Any, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def public_view(case: dict) -> dict:
    view = {k: case.get(k) for k in PUBLIC_FIELDS}
    view["updates"] = list(case.get("updates") or [])
    return view


def client_view(case: dict) -> dict:
    view = {k: v for k, v in case.items() if k not in _CLIENT_HIDDEN}
    view.setdefault("updatedAt", case.get("createdAt"))
    return view


def staff_view(case: dict) -> dict:
    view = dict(case)
    view.setdefault("updatedAt", case.get("createdAt"))
    return view


@dataclass
class UpdateResult:
    case: dict
    status_changed: bool


@dataclass
class BulkResult:
    updated: int
    cases: list[dict] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class CaseEngine:
    """Case operations over the ``cases`` collection.

    Args:
        store: Record store.
        dispatcher: Best-effort notification dispatch.
        attachments: Filesystem side of uploads (optional for tests).
        policy: Status transition policy.
        staff_address: Where client replies are forwarded.
        clock: UTC time source.
    """

    def __init__(
        self,
        store: RecordStore,
        dispatcher: NotificationDispatcher,
        *,
        attachments: AttachmentStore | None = None,
        policy: StatusPolicy | None = None,
        staff_address: str = "",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.attachments = attachments
        self.policy = policy or StatusPolicy()
        self.staff_address = staff_address
        self._clock = clock

    # --- helpers ---

    def _now(self) -> str:
        return self._clock().isoformat()

    @staticmethod
    def _touch(case: dict, now: str) -> None:
        """Refresh updatedAt without ever moving it backwards."""
        previous = _parse_dt(case.get("updatedAt")) or _parse_dt(case.get("createdAt"))
        current = _parse_dt(now)
        if previous is not None and current is not None and current < previous:
            return
        case["updatedAt"] = now

    def _apply(
        self,
        case: dict,
        now: str,
        status: str | None,
        notes: str | None,
        raw_updates: list | None,
        actor: str | None,
    ) -> bool:
        """Apply one update to *case* in place. Returns True if status changed."""
        changed = False
        if status and status != case.get("status"):
            self.policy.check(case.get("status", NEW), status)
            case["status"] = status
            case.setdefault("updates", []).append(
                {"timestamp": now, "message": f"Status changed to {status}", "status": status}
            )
            changed = True
        if notes:
            case.setdefault("notes", []).append(
                {"timestamp": now, "message": notes, "author": actor}
            )
        if raw_updates:
            case.setdefault("updates", []).extend(copy.deepcopy(raw_updates))
        self._touch(case, now)
        return changed

    # --- creation & reads ---

    def create(self, contact: dict, staged: Iterable[StagedFile] = ()) -> dict:
        """Create a case from submitted contact data and staged uploads."""
        staged = list(staged)
        try:
            fields = validate_contact(contact)
        except ValidationError:
            if self.attachments:
                self.attachments.discard(staged)
            raise

        now = self._now()

        def _insert(records: dict) -> dict:
            for _ in range(_MAX_CREATE_ATTEMPTS):
                case_id = generate_case_id()
                if case_id not in records:
                    break
            else:
                raise RuntimeError("Could not allocate a unique case id")
            case = {
                "id": case_id,
                **fields,
                "files": [f.as_record(case_id) for f in staged],
                "status": NEW,
                "updates": [],
                "notes": [],
                "clientReplies": [],
                "emailHistory": [],
                "createdAt": now,
                "updatedAt": now,
            }
            records[case_id] = case
            return copy.deepcopy(case)

        try:
            case = self.store.mutate(CASES, _insert)
        except Exception:
            if self.attachments:
                self.attachments.discard(staged)
            raise

        if staged and self.attachments:
            self.attachments.move_to_case(staged, case["id"])
        logger.info("Created case %s (%d files)", case["id"], len(staged))
        self.dispatcher.submit(case_created(case))
        return case

    def _load(self, case_id: str) -> dict:
        case = self.store.get(CASES, case_id)
        if case is None:
            raise NotFoundError(f"Case {case_id} not found", safe_message="Case not found")
        return case

    def get(self, case_id: str) -> dict:
        """Full record (staff)."""
        return staff_view(self._load(case_id))

    def get_public(self, case_id: str) -> dict:
        """Status-only view for anyone holding the case id."""
        if not isinstance(case_id, str) or not CASE_ID_RE.match(case_id):
            raise ValidationError("Invalid case ID format")
        return public_view(self._load(case_id))

    def cases_for(self, email: str) -> list[dict]:
        """Every case owned by *email*, newest first, client view."""
        email = email.lower()
        owned = [
            client_view(c) for c in self.store.read_all(CASES).values()
            if c.get("email", "").lower() == email
        ]
        owned.sort(key=lambda c: c.get("createdAt") or "", reverse=True)
        return owned

    def client_files(self, case_id: str, email: str) -> list[dict]:
        case = self.store.get(CASES, case_id)
        if case is None or case.get("email", "").lower() != email.lower() or not case.get("files"):
            raise NotFoundError(
                f"No files for {case_id} visible to {email}",
                safe_message="Case not found or no files available",
            )
        return [
            {
                "filename": f.get("originalName") or f.get("filename"),
                "url": f"/api/uploads/{case_id}/{f['filename']}",
                "size": f.get("size"),
            }
            for f in case["files"]
        ]

    def owns(self, case_id: str, email: str) -> bool:
        case = self.store.get(CASES, case_id)
        return case is not None and case.get("email", "").lower() == email.lower()

    def list_cases(self, params: dict) -> dict:
        """Filter, sort and paginate cases for the staff dashboard.

        Query parameters: page, limit, sortBy, sortOrder, status,
        startDate, endDate, search. Returns ``{"cases", "pagination"}``.
        """
        page = _int_param(params.get("page"), 1)
        limit = min(_int_param(params.get("limit"), DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)
        sort_by = params.get("sortBy") or "createdAt"
        if sort_by not in SORT_FIELDS:
            raise ValidationError(f"Cannot sort by {sort_by!r}")
        sort_order = (params.get("sortOrder") or "desc").lower()
        if sort_order not in ("asc", "desc"):
            raise ValidationError("sortOrder must be 'asc' or 'desc'")

        cases = list(self.store.read_all(CASES).values())

        status = params.get("status")
        if status:
            cases = [c for c in cases if c.get("status") == status]
        if params.get("startDate"):
            start = _parse_bound(params["startDate"], "startDate", end=False)
            cases = [c for c in cases if (_parse_dt(c.get("createdAt")) or start) >= start]
        if params.get("endDate"):
            end = _parse_bound(params["endDate"], "endDate", end=True)
            cases = [c for c in cases if (_parse_dt(c.get("createdAt")) or end) <= end]
        search = (params.get("search") or "").strip().lower()
        if search:
            cases = [
                c for c in cases
                if any(search in str(c.get(f) or "").lower() for f in SEARCH_FIELDS)
            ]

        def _key(case: dict):
            value = case.get(sort_by)
            if sort_by in _DATE_SORT_FIELDS:
                value = _parse_dt(value)
                return (value is not None, value or datetime.min.replace(tzinfo=timezone.utc))
            return (value is not None, str(value or "").lower())

        cases.sort(key=_key, reverse=(sort_order == "desc"))

        total = len(cases)
        start_index = (page - 1) * limit
        end_index = page * limit
        return {
            "cases": [staff_view(c) for c in cases[start_index:end_index]],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": math.ceil(total / limit),
                "hasNextPage": end_index < total,
                "hasPrevPage": page > 1,
            },
        }

    # --- lifecycle ---

    def update(
        self,
        case_id: str,
        *,
        status: str | None = None,
        notes: str | None = None,
        raw_updates: list | None = None,
        actor: str | None = None,
    ) -> UpdateResult:
        """Change status and/or append notes and raw update entries.

        Raises:
            ValidationError: unknown status, bad raw_updates, or (in strict
                mode) an illegal transition.
            NotFoundError: no such case.
        """
        if status is not None:
            validate_status(status)
        if raw_updates is not None and (
            not isinstance(raw_updates, list)
            or not all(isinstance(u, dict) for u in raw_updates)
        ):
            raise ValidationError("updates must be a list of objects")
        notes = sanitize_text(notes, 5000) if notes else None
        now = self._now()

        def _update(records: dict) -> UpdateResult:
            case = records.get(case_id)
            if case is None:
                raise NotFoundError(f"Case {case_id} not found", safe_message="Case not found")
            changed = self._apply(case, now, status, notes, raw_updates, actor)
            return UpdateResult(case=copy.deepcopy(case), status_changed=changed)

        result = self.store.mutate(CASES, _update)
        logger.info(
            "Updated case %s (status_changed=%s, notes=%s, by=%s)",
            case_id, result.status_changed, bool(notes), actor,
        )
        if result.status_changed:
            self.dispatcher.submit(status_changed(result.case, notes))
        return result

    def bulk_update(
        self,
        case_ids: list,
        *,
        status: str | None = None,
        notes: str | None = None,
        actor: str | None = None,
    ) -> BulkResult:
        """Apply the same update to many cases in one store write.

        Unknown ids are skipped silently and not counted. In strict
        transition mode, cases that cannot make the move are skipped too.
        """
        if not isinstance(case_ids, list) or not case_ids:
            raise ValidationError("caseIds array required")
        if not all(isinstance(c, str) for c in case_ids):
            raise ValidationError("caseIds must be strings")
        if status is not None:
            validate_status(status)
        notes = sanitize_text(notes, 5000) if notes else None
        unique_ids = list(dict.fromkeys(case_ids))
        now = self._now()

        def _bulk(records: dict) -> tuple[BulkResult, list[dict]]:
            result = BulkResult(updated=0)
            changed_cases = []
            for case_id in unique_ids:
                case = records.get(case_id)
                if case is None:
                    continue
                try:
                    changed = self._apply(case, now, status, notes, None, actor)
                except ValidationError:
                    result.skipped.append(case_id)
                    continue
                snapshot = copy.deepcopy(case)
                result.updated += 1
                result.cases.append(snapshot)
                if changed:
                    changed_cases.append(snapshot)
            return result, changed_cases

        result, changed_cases = self.store.mutate(CASES, _bulk)
        logger.info(
            "Bulk update by %s: %d of %d cases updated", actor, result.updated, len(unique_ids)
        )
        for case in changed_cases:
            self.dispatcher.submit(status_changed(case, notes))
        return result

    def reply(self, case_id: str, identity: Identity, message: Any) -> dict:
        """Append a client reply to a case the identity owns."""
        text = sanitize_text(message, 5000)
        if not text:
            raise ValidationError("Message is required")
        now = self._now()

        def _reply(records: dict) -> dict:
            case = records.get(case_id)
            if case is None or case.get("email", "").lower() != identity.email.lower():
                raise NotFoundError(
                    f"Case {case_id} not owned by {identity.email}",
                    safe_message="Case not found",
                )
            case.setdefault("clientReplies", []).append(
                {"timestamp": now, "message": text, "from": "client"}
            )
            self._touch(case, now)
            return copy.deepcopy(case)

        case = self.store.mutate(CASES, _reply)
        logger.info("Client reply recorded on case %s", case_id)
        if self.staff_address:
            self.dispatcher.submit(client_replied(case, text, self.staff_address))
        return case

    def record_email(
        self,
        *,
        to: Any,
        subject: Any,
        message: Any,
        sent_by: str,
        cc: Any = None,
        case_id: str | None = None,
        priority: str | None = None,
    ) -> bool:
        """Queue a staff email and log it on the case when one is referenced.

        Returns:
            True if the email was recorded in a case's emailHistory.
        """
        if not to or not subject or not message:
            raise ValidationError("Missing required fields: to, subject, message")
        to = normalize_email(to)
        cc = normalize_email(cc) if cc else None
        subject = sanitize_text(subject, 200)
        priority = priority or "normal"
        if priority not in PRIORITIES:
            raise ValidationError(f"priority must be one of: {', '.join(PRIORITIES)}")
        if not isinstance(message, str):
            raise ValidationError("message must be text")

        self.dispatcher.submit(
            staff_email(to, subject, message, cc=cc, case_id=case_id, priority=priority)
        )
        if not case_id:
            return False

        now = self._now()

        def _log(records: dict) -> bool:
            case = records.get(case_id)
            if case is None:
                return False
            case.setdefault("emailHistory", []).append(
                {
                    "timestamp": now,
                    "to": to,
                    "cc": cc,
                    "subject": subject,
                    "sentBy": sent_by,
                    "priority": priority,
                    "status": "queued",
                }
            )
            self._touch(case, now)
            return True

        recorded = self.store.mutate(CASES, _log)
        if not recorded:
            logger.warning("Email sent for unknown case %s; history not recorded", case_id)
        return recorded

    # --- export ---

    def export_csv(self) -> str:
        """All cases as CSV, oldest first, with a fixed column order."""
        cases = sorted(
            self.store.read_all(CASES).values(), key=lambda c: c.get("createdAt") or ""
        )
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for case in cases:
            created = _parse_dt(case.get("createdAt"))
            updated = _parse_dt(case.get("updatedAt")) or created
            writer.writerow([
                case.get("id", ""),
                case.get("name", ""),
                case.get("email", ""),
                case.get("phone", ""),
                case.get("service", ""),
                case.get("status", ""),
                created.date().isoformat() if created else "",
                updated.date().isoformat() if updated else "",
            ])
        return buf.getvalue()
