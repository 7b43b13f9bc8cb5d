from typing import Any

from fastapi import Request, Response

from geoip_api.errors import SerializationError
from geoip_api.formatters import OutputFormat, PayloadKind, negotiate, serialize
from geoip_api.logger import logger
from geoip_api.models.response_models import ErrorResponse
from geoip_api.rate_limiter import RateLimitDecision

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Accept, Authorization, X-API-Key",
}


def client_ip(request: Request, trust_forwarded_for: bool = False) -> str:
    """Caller's observed address; the first X-Forwarded-For hop only when proxies are trusted."""
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(decision.reset_at),
    }


def _response(request: Request, body: bytes, content_type: str, status_code: int, headers: dict[str, str] | None) -> Response:
    response = Response(content=body, status_code=status_code, media_type=content_type)
    response.headers.update(CORS_HEADERS)
    decision = getattr(request.state, "rate_limit", None)
    if decision is not None:
        response.headers.update(rate_limit_headers(decision))
    if headers:
        response.headers.update(headers)
    return response


def render(
    request: Request,
    payload: Any,
    status_code: int = 200,
    kind: PayloadKind = PayloadKind.data,
    headers: dict[str, str] | None = None,
) -> Response:
    """Serialize `payload` in the negotiated format with the standard response headers."""
    settings = request.app.state.settings
    output_format = negotiate(
        request.query_params.get("format"),
        request.headers.get("accept"),
        settings.default_format,
        settings.supported_formats,
    )
    body, content_type = serialize(output_format, payload, kind, request.query_params.get("callback"))
    return _response(request, body, content_type, status_code, headers)


def render_error(request: Request, message: str, status_code: int, headers: dict[str, str] | None = None) -> Response:
    payload = ErrorResponse(message=message, code=status_code)
    try:
        return render(request, payload, status_code, PayloadKind.error, headers)
    except SerializationError as exc:
        logger.exception(f"Failed to render error payload path={request.url.path} error={exc}")
        body, content_type = serialize(OutputFormat.json, payload, PayloadKind.error)
        return _response(request, body, content_type, status_code, headers)
