"""
Per-endpoint request body ceilings, enforced before routing.

The check runs on headers alone, so an oversized body is rejected before it
is read or parsed: a truncated 3 MB upload is BODY_TOO_LARGE, never
INVALID_JSON. Bodies sent without Content-Length (chunked) cannot be sized
up front and are refused with LENGTH_REQUIRED.
"""

import logging
from typing import Awaitable, Callable

from fastapi import Request, Response

from analyst.api.errors import error_response
from analyst.models.schemas import (
    CHATTER_MAX_BODY_BYTES,
    PLOTLINE_MAX_BODY_BYTES,
    POINTS_MAX_BODY_BYTES,
    SHORTLIST_MAX_BODY_BYTES,
    STORY_MAX_BODY_BYTES,
    SUMMARY_MAX_BODY_BYTES,
    THREAD_DRAFT_MAX_BODY_BYTES,
    THREAD_REGENERATE_MAX_BODY_BYTES,
)

logger = logging.getLogger(__name__)

# Request path -> maximum body size in bytes
BODY_LIMITS = {
    "/api/chatter/analyze": CHATTER_MAX_BODY_BYTES,
    "/api/points/analyze": POINTS_MAX_BODY_BYTES,
    "/api/plotline/analyze": PLOTLINE_MAX_BODY_BYTES,
    "/api/plotline/summarize": SUMMARY_MAX_BODY_BYTES,
    "/api/plotline/write": STORY_MAX_BODY_BYTES,
    "/api/thread/shortlist": SHORTLIST_MAX_BODY_BYTES,
    "/api/thread/generate": THREAD_DRAFT_MAX_BODY_BYTES,
    "/api/thread/regenerate": THREAD_REGENERATE_MAX_BODY_BYTES,
}


def limit_for(path: str) -> int | None:
    """Body ceiling for a path (trailing slash ignored), None when unlimited."""
    return BODY_LIMITS.get(path.rstrip("/") or "/")


async def enforce_body_limits(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """
    HTTP middleware rejecting oversized or unsized bodies on limited paths.

    Example:
        app.middleware("http")(enforce_body_limits)
    """
    max_bytes = limit_for(request.url.path)
    if max_bytes is None or request.method in ("GET", "HEAD", "OPTIONS"):
        return await call_next(request)

    length = request.headers.get("content-length")
    if length is None:
        if "chunked" in request.headers.get("transfer-encoding", "").lower():
            logger.info(f"{request.url.path}: chunked body without Content-Length")
            return error_response(
                request,
                400,
                "BAD_REQUEST",
                "Request body must be sent with a Content-Length header.",
                "LENGTH_REQUIRED",
            )
        return await call_next(request)

    length = length.strip()
    if not length.isdigit() or int(length) > max_bytes:
        logger.info(f"{request.url.path}: body of {length} bytes over {max_bytes}")
        return error_response(
            request,
            400,
            "BAD_REQUEST",
            f"Request body exceeds {max_bytes // (1024 * 1024)} MB.",
            "BODY_TOO_LARGE",
        )
    return await call_next(request)
