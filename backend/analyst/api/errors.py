"""
Error envelope and exception handlers.

Every failure leaves the API as:

    {"error": {"code", "message", "reasonCode", "retryAdvice",
               "details": {"requestId", "provider"?, "model"?, "retryAfterSeconds"?}}}

Caller mistakes map to 400 before any upstream call; terminal upstream
failures use the orchestrator's status mapping; anything else is a 500.
"""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from analyst.api.dependencies import get_request_id
from analyst.services.ai_clients.base import MissingCredentialError
from analyst.services.extraction.attempt_planner import PlanningError
from analyst.services.extraction.input_shaper import ChunkRangeError
from analyst.services.extraction.orchestrator import ExtractionFailed
from analyst.services.extraction_service import InvalidInputError

logger = logging.getLogger(__name__)

# Body field (wire name) -> reason code when it is missing or blank
MISSING_FIELD_REASONS = {
    "transcript": "MISSING_TRANSCRIPT",
    "keywords": "MISSING_KEYWORDS",
    "quotes": "MISSING_QUOTES",
    "pageImages": "MISSING_PAGE_IMAGES",
    "companies": "MISSING_COMPANIES",
    "selectedQuotes": "MISSING_QUOTES",
}

# Body field -> reason code when a list is too long
TOO_LONG_REASONS = {
    "pageImages": "TOO_MANY_PAGES",
    "quotes": "TOO_MANY_QUOTES",
    "keywords": "TOO_MANY_KEYWORDS",
    "selectedQuotes": "TOO_MANY_QUOTES",
}

# Body field -> reason code for any other problem with it
INVALID_FIELD_REASONS = {
    "tweetKind": "INVALID_TWEET_KIND",
    "targetQuote": "INVALID_TARGET_QUOTE",
}

# List fields whose items are validated one by one
ITEM_REASONS = {
    "selectedQuotes": "INVALID_QUOTE",
}


class ApiError(Exception):
    """
    Error raised by route code with a ready-made envelope.

    Attributes:
        status_code: HTTP status
        code: Coarse error code (BAD_REQUEST, INTERNAL, ...)
        message: Human-readable message
        reason_code: Machine-readable reason
        retry_advice: "retry", "retry_later" or "do_not_retry"
        details: Extra detail fields
    """

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        reason_code: str,
        retry_advice: str = "do_not_retry",
        details: dict[str, Any] | None = None,
    ):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.reason_code = reason_code
        self.retry_advice = retry_advice
        self.details = details or {}
        super().__init__(message)


def bad_request(message: str, reason_code: str) -> ApiError:
    """400 caller error."""
    return ApiError(400, "BAD_REQUEST", message, reason_code)


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    reason_code: str,
    retry_advice: str = "do_not_retry",
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build the error envelope."""
    body_details = {"requestId": get_request_id(request)}
    body_details.update({key: value for key, value in (details or {}).items() if value is not None})
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": code,
                "message": message,
                "reasonCode": reason_code,
                "retryAdvice": retry_advice,
                "details": body_details,
            }
        },
        headers=headers,
    )


def _field_name(loc: tuple) -> str | None:
    parts = [part for part in loc if isinstance(part, str) and part != "body"]
    return parts[0] if parts else None


def _validation_reason(error: dict) -> str:
    error_type = error.get("type", "")
    loc = tuple(error.get("loc", ()))
    field = _field_name(loc)
    message = str(error.get("msg", ""))

    if error_type == "json_invalid":
        return "INVALID_JSON"
    if error_type == "string_too_long":
        return "PAYLOAD_TOO_LARGE"
    if error_type == "too_long" and field in TOO_LONG_REASONS:
        return TOO_LONG_REASONS[field]
    if field == "keywords" and "at most" in message:
        return "TOO_MANY_KEYWORDS"
    if field in INVALID_FIELD_REASONS:
        return INVALID_FIELD_REASONS[field]
    if field in ITEM_REASONS and any(isinstance(part, int) for part in loc):
        return ITEM_REASONS[field]
    if field in MISSING_FIELD_REASONS and error_type in ("missing", "value_error", "too_short", "string_type"):
        return MISSING_FIELD_REASONS[field]
    return "INVALID_REQUEST"


def _validation_message(error: dict) -> str:
    message = str(error.get("msg", "Invalid request."))
    message = message.removeprefix("Value error, ")
    field = _field_name(tuple(error.get("loc", ())))
    if field and field not in message:
        return f"{field}: {message}"
    return message


# =============================================================================
# Handlers
# =============================================================================


async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    logger.info(f"[{get_request_id(request)}] {exc.status_code} {exc.reason_code}: {exc.message}")
    return error_response(
        request,
        exc.status_code,
        exc.code,
        exc.message,
        exc.reason_code,
        exc.retry_advice,
        exc.details,
    )


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    reason_code = _validation_reason(first)
    message = _validation_message(first) if first else "Invalid request."
    logger.info(f"[{get_request_id(request)}] 400 {reason_code}: {message}")
    return error_response(request, 400, "BAD_REQUEST", message, reason_code)


async def handle_caller_error(request: Request, exc: Exception) -> JSONResponse:
    """PlanningError, ChunkRangeError, InvalidInputError."""
    if isinstance(exc, ChunkRangeError):
        reason_code = "INVALID_CHUNK_RANGE"
    else:
        reason_code = getattr(exc, "reason_code", "BAD_REQUEST")
    logger.info(f"[{get_request_id(request)}] 400 {reason_code}: {exc}")
    return error_response(request, 400, "BAD_REQUEST", str(exc), reason_code)


async def handle_missing_credential(request: Request, exc: MissingCredentialError) -> JSONResponse:
    logger.error(f"[{get_request_id(request)}] {exc}")
    return error_response(
        request,
        500,
        "INTERNAL",
        exc.message,
        "MISSING_API_KEY",
        "do_not_retry",
        {"provider": exc.provider, "model": exc.model},
    )


async def handle_extraction_failed(request: Request, exc: ExtractionFailed) -> JSONResponse:
    mapping = exc.mapping
    retry_after = exc.classified.retry_after
    headers = None
    if mapping.status_code == 429 and retry_after:
        headers = {"Retry-After": str(retry_after)}

    logger.warning(
        f"[{get_request_id(request)}] {mapping.status_code} {mapping.reason_code} "
        f"after {len(exc.trace)} attempt(s), last {exc.attempt}"
    )
    return error_response(
        request,
        mapping.status_code,
        mapping.code,
        exc.classified.message,
        mapping.reason_code,
        mapping.retry_advice,
        {
            "provider": exc.attempt.provider,
            "model": exc.attempt.model,
            "retryAfterSeconds": retry_after,
        },
        headers=headers,
    )


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"[{get_request_id(request)}] Unhandled error: {exc}")
    return error_response(
        request,
        500,
        "INTERNAL",
        "Internal server error.",
        "INTERNAL_ERROR",
        "retry_later",
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install all handlers on the app."""
    app.add_exception_handler(ApiError, handle_api_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(PlanningError, handle_caller_error)
    app.add_exception_handler(ChunkRangeError, handle_caller_error)
    app.add_exception_handler(InvalidInputError, handle_caller_error)
    app.add_exception_handler(MissingCredentialError, handle_missing_credential)
    app.add_exception_handler(ExtractionFailed, handle_extraction_failed)
    app.add_exception_handler(Exception, handle_unexpected)
