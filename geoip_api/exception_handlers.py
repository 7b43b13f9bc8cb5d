from fastapi import Request, Response, status
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from geoip_api.errors import AppError, RateLimitedError
from geoip_api.logger import logger
from geoip_api.responses import render_error


def _get_provider_from_request(request: Request) -> str | None:
    """Best-effort extraction of the provider value from the incoming request."""
    return request.query_params.get("provider")


def _validation_message(errors: list[dict]) -> str:
    """Stable API-level message instead of the raw Pydantic text."""
    for error in errors:
        loc = error.get("loc", ())
        if loc:
            return f"Invalid value for parameter '{loc[-1]}'."
    return "Invalid request parameters"


async def app_error_handler(request: Request, exc: AppError) -> Response:
    """Render any AppError as the uniform error payload with its HTTP status."""
    provider = _get_provider_from_request(request)
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.decision.retry_after)}
        logger.warning(f"Rate limit exceeded path={request.url.path} method={request.method}")
    elif exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error(
            f"Request failed path={request.url.path} method={request.method} provider={provider} "
            f"error={type(exc).__name__}: {exc}"
        )
    else:
        logger.info(
            f"Request rejected path={request.url.path} method={request.method} provider={provider} "
            f"status={exc.status_code} error={exc}"
        )
    return render_error(request, str(exc), exc.status_code, headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
    """Routing errors (unknown path, wrong method) in the uniform error payload."""
    logger.info(
        f"Request rejected by router path={request.url.path} method={request.method} status={exc.status_code}"
    )
    return render_error(request, str(exc.detail), exc.status_code, exc.headers)


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> Response:
    """Handle FastAPI request validation errors (e.g. a non-boolean `force`)."""
    logger.info(
        "Request validation error "
        f"path={request.url.path} method={request.method} errors={exc.errors()}"
    )
    return render_error(request, _validation_message(list(exc.errors())), status.HTTP_400_BAD_REQUEST)


async def pydantic_validation_exception_handler(request: Request, exc: ValidationError) -> Response:
    """Handle Pydantic validation errors raised during dependency resolution."""
    logger.info(
        "Pydantic validation error during request handling "
        f"path={request.url.path} method={request.method} errors={exc.errors()}"
    )
    return render_error(request, _validation_message(list(exc.errors())), status.HTTP_400_BAD_REQUEST)


async def unhandled_exception_handler(request: Request, exc: Exception) -> Response:
    """Catch-all handler for unexpected errors to return a structured 500 response."""
    provider = _get_provider_from_request(request)
    logger.exception(
        "Unhandled exception while processing request: "
        f"{repr(exc)} path={request.url.path} method={request.method} provider={provider}"
    )
    return render_error(
        request,
        "An unexpected error occurred while processing the request.",
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
