"""Health check endpoint."""

import asyncio
import logging

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from case_portal.errors import StoreError
from case_portal.sessions import utcnow
from case_portal.store import CASES

logger = logging.getLogger(__name__)


async def health_endpoint(request: Request) -> JSONResponse:
    """GET /api/health — liveness plus a store read.

    Response:
        {"status": "ok", "timestamp": "...", "storage": "ok", "cases": 12}
    """
    portal = request.app.state.portal
    body = {"status": "ok", "timestamp": utcnow().isoformat()}
    try:
        cases = await asyncio.to_thread(portal.store.read_all, CASES)
        body["storage"] = "ok"
        body["cases"] = len(cases)
    except StoreError as e:
        logger.warning("Health check storage read failed: %s", e)
        body["status"] = "degraded"
        body["storage"] = "error"
    return JSONResponse(body)


def health_routes() -> list[Route]:
    """Return the health check route."""
    return [Route("/api/health", health_endpoint, methods=["GET"])]
