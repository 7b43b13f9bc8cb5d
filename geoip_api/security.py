import hmac
import re

from fastapi import Request

from geoip_api.errors import AdminNotConfiguredError, ForbiddenError, UnauthorizedError
from geoip_api.logger import logger
from geoip_api.responses import client_ip

_BEARER = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def extract_api_key(request: Request) -> str | None:
    """Read the admin credential from X-API-Key, a Bearer token or the api_key parameter."""
    header_key = request.headers.get("x-api-key")
    if header_key:
        return header_key

    match = _BEARER.match(request.headers.get("authorization", ""))
    if match:
        return match.group(1).strip()

    return request.query_params.get("api_key") or None


def require_admin_key(request: Request) -> None:
    """Dependency guarding administrative endpoints.

    Attempts are logged with caller address, user agent and endpoint; the
    credential itself is never logged.
    """
    settings = request.app.state.settings
    audit = (
        f"ip={client_ip(request, settings.trust_forwarded_for)} "
        f"user_agent={request.headers.get('user-agent')} endpoint={request.url.path}"
    )

    configured_key = settings.admin_api_key
    if not configured_key:
        logger.error(f"Admin endpoint called but no API key is configured {audit}")
        raise AdminNotConfiguredError("Admin API key not configured on server")

    provided_key = extract_api_key(request)
    if not provided_key:
        logger.warning(f"Missing API key for admin endpoint {audit}")
        raise UnauthorizedError(
            "API key required. Provide via X-API-Key header, api_key parameter, or Authorization Bearer token"
        )

    if not hmac.compare_digest(configured_key.encode("utf-8"), provided_key.encode("utf-8")):
        logger.warning(f"Invalid API key attempt for admin endpoint {audit}")
        raise ForbiddenError("Invalid API key")

    logger.info(f"API key authenticated for admin endpoint {audit}")
