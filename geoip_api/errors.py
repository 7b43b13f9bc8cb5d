from http import HTTPStatus
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from geoip_api.rate_limiter import RateLimitDecision


class AppError(Exception):
    """Base application error for the GeoIP service.

    Every subclass carries the HTTP status it is reported with, so the
    exception handlers can render a uniform error payload.
    """

    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR


class InvalidIpError(AppError):
    """Raised when the supplied IP address is syntactically invalid."""

    status_code = HTTPStatus.BAD_REQUEST


class MissingParameterError(AppError):
    """Raised when a required query parameter is absent."""

    status_code = HTTPStatus.BAD_REQUEST


class WrongAddressFamilyError(AppError):
    """Raised when an IPv4-only or IPv6-only lookup receives the other family."""

    status_code = HTTPStatus.BAD_REQUEST


class IpNotFoundError(AppError):
    """Raised when the address is absent from the provider's database."""

    status_code = HTTPStatus.NOT_FOUND


class ProviderNotFoundError(AppError):
    """Raised when a provider identifier is not registered."""

    status_code = HTTPStatus.NOT_FOUND


class DatabaseUnavailableError(AppError):
    """Raised when a provider's database file is missing or cannot be opened."""


class ResolveError(AppError):
    """Raised when a database read fails for a reason other than a missing address."""


class SerializationError(AppError):
    """Raised when a payload cannot be rendered in the negotiated format."""


class UpdateError(AppError):
    """Raised when the database refresh job fails."""


class AdminNotConfiguredError(AppError):
    """Raised when an administrative endpoint is called but no credential is configured."""


class UnauthorizedError(AppError):
    """Raised when an administrative credential is missing."""

    status_code = HTTPStatus.UNAUTHORIZED


class ForbiddenError(AppError):
    """Raised when an administrative credential does not match."""

    status_code = HTTPStatus.FORBIDDEN


class RateLimitedError(AppError):
    """Raised when a client exhausted its request window."""

    status_code = HTTPStatus.TOO_MANY_REQUESTS

    def __init__(self, decision: "RateLimitDecision") -> None:
        super().__init__("Rate limit exceeded. Too many requests.")
        self.decision = decision


class CacheBackendError(Exception):
    """Raised by cache backends when the backing store is unreachable."""
