"""REST API routes for /api/."""

import asyncio
import json
import logging
from datetime import datetime, timezone

from starlette.datastructures import UploadFile
from starlette.requests import Request
from starlette.responses import FileResponse, JSONResponse, Response
from starlette.routing import Route

from case_portal import activity
from case_portal.auth import require_identity
from case_portal.errors import (
    ForbiddenError,
    LockoutError,
    PortalError,
    RateLimitError,
    ValidationError,
)
from case_portal.errorlog import DEFAULT_STATS_DAYS, MAX_STATS_DAYS
from case_portal.rate_limit import client_ip
from case_portal.reclaims import FORM_FIELDS
from case_portal.sessions import Plane
from case_portal.uploads import ALLOWED_TYPES, RECLAIM_TYPES, StagedFile, check_names

logger = logging.getLogger(__name__)

# Maximum JSON request body size (1 MB)
_MAX_JSON_BYTES = 1024 * 1024

_CONTACT_FIELDS = ("name", "email", "phone", "service", "message")


def _portal(request: Request):
    return request.app.state.portal


async def _json_body(request: Request) -> dict:
    raw_body = await request.body()
    if len(raw_body) > _MAX_JSON_BYTES:
        raise ValidationError(f"Request body too large (max {_MAX_JSON_BYTES} bytes)")
    if not raw_body:
        return {}
    try:
        body = json.loads(raw_body)
    except json.JSONDecodeError:
        raise ValidationError("Invalid JSON body") from None
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body


def _check_limit(request: Request, name: str) -> None:
    if not _portal(request).limits.check(name, client_ip(request)):
        raise RateLimitError(name)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


async def _read_submission(
    request: Request, fields: tuple[str, ...], allowed_types: dict = ALLOWED_TYPES
) -> tuple[dict, list[StagedFile]]:
    """Parse a multipart form (fields plus ``files``) or a JSON body.

    Uploads are staged as they are read; on a rejected file everything
    staged so far is discarded.
    """
    portal = _portal(request)
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        return await _json_body(request), []

    staged: list[StagedFile] = []
    async with request.form(max_files=portal.attachments.max_files + 1) as form:
        data = {k: form.get(k) for k in fields}
        uploads = [f for f in form.getlist("files") if isinstance(f, UploadFile)]
        portal.attachments.check_count(len(uploads))
        try:
            for upload in uploads:
                content = await upload.read()
                staged.append(
                    await asyncio.to_thread(
                        portal.attachments.stage,
                        upload.filename or "",
                        upload.content_type or "",
                        content,
                        allowed_types=allowed_types,
                    )
                )
        except PortalError:
            portal.attachments.discard(staged)
            raise
    return data, staged


async def submit_contact(request: Request) -> JSONResponse:
    """POST /api/contact — create a case from a contact form.

    Accepts multipart/form-data (fields plus up to N ``files``) or JSON.
    """
    portal = _portal(request)
    contact, staged = await _read_submission(request, _CONTACT_FIELDS)
    case = await asyncio.to_thread(portal.cases.create, contact, staged)
    return JSONResponse(
        {
            "success": True,
            "caseId": case["id"],
            "message": "Your case has been submitted successfully",
        },
        status_code=201,
    )


async def submit_asset_reclaim(request: Request) -> JSONResponse:
    """POST /api/asset-reclaim — store an asset-reclaim claim.

    Same body shapes as the contact form; files are limited to PDF and
    images.
    """
    portal = _portal(request)
    form, staged = await _read_submission(request, FORM_FIELDS, RECLAIM_TYPES)
    claim = await asyncio.to_thread(portal.reclaims.submit, form, staged)
    return JSONResponse(
        {
            "success": True,
            "caseId": claim["id"],
            "message": "Your asset reclaim request has been submitted",
        },
        status_code=201,
    )


async def get_public_case(request: Request) -> JSONResponse:
    """GET /api/case/{caseId} — status view for anyone holding the id."""
    portal = _portal(request)
    case = await asyncio.to_thread(portal.cases.get_public, request.path_params["caseId"])
    return JSONResponse(case)


# ---------------------------------------------------------------------------
# Staff endpoints
# ---------------------------------------------------------------------------


async def admin_login(request: Request) -> JSONResponse:
    """POST /api/admin/login — {email, password} → {token, user}."""
    portal = _portal(request)
    ip = client_ip(request)
    body = await _json_body(request)
    email = body.get("email")
    try:
        token, identity = await asyncio.to_thread(
            portal.staff_auth.login, email, body.get("password"), ip
        )
    except LockoutError:
        portal.activity.record(activity.LOGIN_BLOCKED, actor=email, ip=ip)
        raise
    except PortalError:
        portal.activity.record(activity.LOGIN_FAILED, actor=email, ip=ip)
        raise
    portal.activity.record(activity.LOGIN_SUCCESS, actor=identity.email, ip=ip)
    return JSONResponse(
        {"token": token, "user": {"email": identity.email, "role": identity.role}}
    )


async def list_cases(request: Request) -> JSONResponse:
    """GET /api/admin/cases — filtered, sorted, paginated case list.

    Query params:
        page, limit, sortBy, sortOrder, status, startDate, endDate, search
    """
    portal = _portal(request)
    result = await asyncio.to_thread(portal.cases.list_cases, dict(request.query_params))
    return JSONResponse(result)


async def export_csv(request: Request) -> Response:
    """GET /api/admin/cases/export/csv — every case as a CSV attachment."""
    portal = _portal(request)
    identity = require_identity(request)
    body = await asyncio.to_thread(portal.cases.export_csv)
    portal.activity.record(
        activity.CASES_EXPORTED, actor=identity.email, ip=client_ip(request)
    )
    filename = f"cases-{datetime.now(timezone.utc).strftime('%Y-%m-%d')}.csv"
    return Response(
        body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


async def bulk_update(request: Request) -> JSONResponse:
    """PUT /api/admin/cases/bulk-update — {caseIds, status?, notes?}."""
    portal = _portal(request)
    identity = require_identity(request)
    body = await _json_body(request)
    result = await asyncio.to_thread(
        lambda: portal.cases.bulk_update(
            body.get("caseIds"),
            status=body.get("status") or None,
            notes=body.get("notes") or None,
            actor=identity.email,
        )
    )
    portal.activity.record(
        activity.BULK_UPDATE,
        actor=identity.email,
        ip=client_ip(request),
        requested=len(body.get("caseIds") or []),
        updated=result.updated,
        skipped=result.skipped,
        status=body.get("status"),
    )
    return JSONResponse(
        {
            "success": True,
            "updated": result.updated,
            "skipped": result.skipped,
            "cases": result.cases,
        }
    )


async def get_case(request: Request) -> JSONResponse:
    """GET /api/admin/cases/{caseId} — full record."""
    portal = _portal(request)
    case = await asyncio.to_thread(portal.cases.get, request.path_params["caseId"])
    return JSONResponse(case)


async def update_case(request: Request) -> JSONResponse:
    """PUT /api/admin/cases/{caseId} — {status?, notes?, updates?}."""
    portal = _portal(request)
    identity = require_identity(request)
    case_id = request.path_params["caseId"]
    body = await _json_body(request)
    result = await asyncio.to_thread(
        lambda: portal.cases.update(
            case_id,
            status=body.get("status") or None,
            notes=body.get("notes") or None,
            raw_updates=body.get("updates"),
            actor=identity.email,
        )
    )
    portal.activity.record(
        activity.CASE_UPDATED,
        actor=identity.email,
        ip=client_ip(request),
        case_id=case_id,
        status=body.get("status"),
        status_changed=result.status_changed,
    )
    return JSONResponse({"success": True, "case": result.case})


async def send_email(request: Request) -> JSONResponse:
    """POST /api/admin/send-email — {to, subject, message, cc?, caseId?, priority?}."""
    portal = _portal(request)
    identity = require_identity(request)
    body = await _json_body(request)
    recorded = await asyncio.to_thread(
        lambda: portal.cases.record_email(
            to=body.get("to"),
            subject=body.get("subject"),
            message=body.get("message"),
            cc=body.get("cc"),
            case_id=body.get("caseId"),
            priority=body.get("priority"),
            sent_by=identity.email,
        )
    )
    portal.activity.record(
        activity.EMAIL_SENT,
        actor=identity.email,
        ip=client_ip(request),
        to=body.get("to"),
        case_id=body.get("caseId"),
    )
    return JSONResponse(
        {"success": True, "message": "Email queued for delivery", "recorded": recorded}
    )


async def list_reclaims(request: Request) -> JSONResponse:
    """GET /api/admin/asset-reclaims — every claim, newest first."""
    portal = _portal(request)
    claims = await asyncio.to_thread(portal.reclaims.all)
    return JSONResponse({"claims": claims, "total": len(claims)})


async def error_stats(request: Request) -> JSONResponse:
    """GET /api/admin/errors/stats?days=N — server error summary.

    A missing, non-numeric or non-positive ``days`` means the default week.
    """
    portal = _portal(request)
    try:
        days = int(request.query_params.get("days", ""))
    except ValueError:
        days = DEFAULT_STATS_DAYS
    if days < 1:
        days = DEFAULT_STATS_DAYS
    stats = await asyncio.to_thread(portal.errors.stats, min(days, MAX_STATS_DAYS))
    return JSONResponse({"success": True, "stats": stats})


# ---------------------------------------------------------------------------
# Client endpoints
# ---------------------------------------------------------------------------


async def request_login(request: Request) -> JSONResponse:
    """POST /api/client/request-login — {email}; the code goes out by email only."""
    _check_limit(request, "otp_request")
    portal = _portal(request)
    body = await _json_body(request)
    await asyncio.to_thread(portal.otp.issue, body.get("email"))
    return JSONResponse({"success": True, "message": "Login code sent to your email"})


async def verify_otp(request: Request) -> JSONResponse:
    """POST /api/client/verify-otp — {email, code} → {token, email}."""
    _check_limit(request, "otp_verify")
    portal = _portal(request)
    body = await _json_body(request)
    token = await asyncio.to_thread(portal.otp.verify, body.get("email"), body.get("code"))
    email = body["email"].strip().lower()
    portal.activity.record(activity.CLIENT_LOGIN, actor=email, ip=client_ip(request))
    return JSONResponse({"success": True, "token": token, "email": email})


async def client_cases(request: Request) -> JSONResponse:
    """GET /api/client/cases — the caller's own cases."""
    portal = _portal(request)
    identity = require_identity(request)
    cases = await asyncio.to_thread(portal.cases.cases_for, identity.email)
    return JSONResponse({"cases": cases})


async def client_reply(request: Request) -> JSONResponse:
    """POST /api/client/reply — {caseId, message}."""
    portal = _portal(request)
    identity = require_identity(request)
    body = await _json_body(request)
    case_id = body.get("caseId")
    if not isinstance(case_id, str) or not case_id:
        raise ValidationError("caseId is required")
    await asyncio.to_thread(portal.cases.reply, case_id, identity, body.get("message"))
    return JSONResponse({"success": True, "message": "Reply sent successfully"})


async def client_files(request: Request) -> JSONResponse:
    """GET /api/client/cases/{caseId}/files — download links for own case."""
    portal = _portal(request)
    identity = require_identity(request)
    files = await asyncio.to_thread(
        portal.cases.client_files, request.path_params["caseId"], identity.email
    )
    return JSONResponse({"files": files})


async def client_logout(request: Request) -> JSONResponse:
    """POST /api/client/logout — revoke the presented session."""
    portal = _portal(request)
    identity = require_identity(request)
    token = request.headers["authorization"][7:].strip()
    await asyncio.to_thread(portal.sessions.revoke, token, Plane.CLIENT)
    portal.activity.record(activity.CLIENT_LOGOUT, actor=identity.email, ip=client_ip(request))
    return JSONResponse({"success": True})


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------


async def download_file(request: Request) -> FileResponse:
    """GET /api/uploads/{caseId}/{filename} — staff, or the owning client."""
    portal = _portal(request)
    identity = require_identity(request)
    case_id = request.path_params["caseId"]
    filename = request.path_params["filename"]
    check_names(case_id, filename)
    if identity.plane is Plane.CLIENT:
        owns = await asyncio.to_thread(portal.cases.owns, case_id, identity.email)
        if not owns:
            raise ForbiddenError(
                f"{identity.email} does not own {case_id}", safe_message="Access denied"
            )
    path = await asyncio.to_thread(portal.attachments.resolve, case_id, filename)
    return FileResponse(path, filename=filename)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _track(request: Request, exc: Exception) -> None:
    _portal(request).errors.record(
        exc,
        method=request.method,
        path=request.url.path,
        ip=client_ip(request),
    )


async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        _track(request, exc)
    else:
        logger.info(
            "%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc
        )
    headers = None
    if isinstance(exc, LockoutError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        {"error": exc.safe_message}, status_code=exc.status_code, headers=headers
    )


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "%s %s failed: %s: %s",
        request.method,
        request.url.path,
        type(exc).__name__,
        exc,
        exc_info=exc,
    )
    _track(request, exc)
    return JSONResponse({"error": "Internal server error"}, status_code=500)


def exception_handlers() -> dict:
    return {PortalError: portal_error_handler, Exception: unexpected_error_handler}


def rest_routes() -> list[Route]:
    """Return all /api routes except health.

    Literal admin paths come before ``/api/admin/cases/{caseId}``.
    """
    return [
        Route("/api/contact", submit_contact, methods=["POST"]),
        Route("/api/asset-reclaim", submit_asset_reclaim, methods=["POST"]),
        Route("/api/case/{caseId}", get_public_case, methods=["GET"]),
        Route("/api/admin/login", admin_login, methods=["POST"]),
        Route("/api/admin/cases", list_cases, methods=["GET"]),
        Route("/api/admin/cases/export/csv", export_csv, methods=["GET"]),
        Route("/api/admin/cases/bulk-update", bulk_update, methods=["PUT"]),
        Route("/api/admin/cases/{caseId}", get_case, methods=["GET"]),
        Route("/api/admin/cases/{caseId}", update_case, methods=["PUT"]),
        Route("/api/admin/send-email", send_email, methods=["POST"]),
        Route("/api/admin/asset-reclaims", list_reclaims, methods=["GET"]),
        Route("/api/admin/errors/stats", error_stats, methods=["GET"]),
        Route("/api/client/request-login", request_login, methods=["POST"]),
        Route("/api/client/verify-otp", verify_otp, methods=["POST"]),
        Route("/api/client/cases", client_cases, methods=["GET"]),
        Route("/api/client/reply", client_reply, methods=["POST"]),
        Route("/api/client/cases/{caseId}/files", client_files, methods=["GET"]),
        Route("/api/client/logout", client_logout, methods=["POST"]),
        Route("/api/uploads/{caseId}/{filename}", download_file, methods=["GET"]),
    ]
