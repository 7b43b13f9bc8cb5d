import asyncio
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import Annotated, Any

import redis
from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from limits.storage import Storage
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from geoip_api.cache import CacheBackend, LookupCache, MemoryCacheBackend, RedisCacheBackend
from geoip_api.config import Settings, get_settings
from geoip_api.errors import AppError, DatabaseUnavailableError, MissingParameterError, RateLimitedError
from geoip_api.exception_handlers import (
    app_error_handler,
    http_exception_handler,
    pydantic_validation_exception_handler,
    request_validation_exception_handler,
    unhandled_exception_handler,
)
from geoip_api.logger import configure_logging, logger
from geoip_api.models.common import GeoRecord
from geoip_api.models.request_models import GeoIPQuery, ProviderQuery
from geoip_api.models.response_models import (
    DatabaseStats,
    HealthResponse,
    ProvidersResponse,
    SwitchProviderResponse,
    UpdateResponse,
)
from geoip_api.rate_limiter import RateLimitDecision, RateLimiter, build_storage
from geoip_api.registry import ProviderRegistry
from geoip_api.resolver import IpFamily
from geoip_api.responses import client_ip, render
from geoip_api.security import require_admin_key
from geoip_api.service import API_VERSION, GeoIPService
from geoip_api.updater import DatabaseUpdater

router = APIRouter()


def get_service(request: Request) -> GeoIPService:
    """Dependency returning the service built at startup."""
    service = request.app.state.service
    if service is None:
        raise DatabaseUnavailableError("GeoIP service is not initialized.")
    return service


def _check_rate_limit(request: Request, limiter: RateLimiter) -> RateLimitDecision:
    settings = request.app.state.settings
    decision = limiter.check(client_ip(request, settings.trust_forwarded_for), request.url.path)
    # Picked up by the response renderer for the X-RateLimit-* headers.
    request.state.rate_limit = decision
    if not decision.allowed:
        raise RateLimitedError(decision)
    return decision


def public_rate_limit(request: Request) -> RateLimitDecision:
    return _check_rate_limit(request, request.app.state.public_limiter)


def admin_rate_limit(request: Request) -> RateLimitDecision:
    return _check_rate_limit(request, request.app.state.admin_limiter)


ServiceDep = Annotated[GeoIPService, Depends(get_service)]


def _service_description(settings: Settings) -> dict[str, Any]:
    return {
        "name": "GeoIP API",
        "version": API_VERSION,
        "rate_limiting": {
            "limit": (
                f"{settings.public_rate_limit} requests per "
                f"{settings.public_rate_decay_minutes} minute(s) per IP address and endpoint"
            ),
            "headers": {
                "X-RateLimit-Limit": "Maximum requests allowed",
                "X-RateLimit-Remaining": "Requests remaining in current window",
                "X-RateLimit-Reset": "Unix timestamp when rate limit resets",
            },
        },
        "endpoints": {
            "GET /geoip": "Get GeoIP information for any IP address",
            "GET /geoip/ipv4": "Get GeoIP information for IPv4 address only",
            "GET /geoip/ipv6": "Get GeoIP information for IPv6 address only",
            "GET /geoip/stats": "Get database statistics and information",
            "GET /geoip/health": "API health check and basic info",
            "GET /geoip/providers": "Get available providers and current provider info",
            "POST /geoip/switch-provider": "Switch to a different provider",
            "POST /geoip/update": "Update GeoIP databases (maxmind, dbip, or all)",
        },
        "parameters": {
            "ip": "IP address to lookup (optional, defaults to client IP)",
            "format": f"Output format: {', '.join(settings.supported_formats)} (optional, defaults to {settings.default_format})",
            "callback": "JSONP callback function name (optional, JSON format only)",
            "provider": "Provider to use: maxmind, dbip (optional, can be used per request or globally)",
        },
        "examples": [
            "/geoip?ip=8.8.8.8",
            "/geoip?ip=8.8.8.8&format=xml",
            "/geoip?ip=8.8.8.8&provider=dbip",
            "/geoip/ipv4?ip=8.8.8.8&callback=myCallback",
            "/geoip/stats",
            "/geoip/health",
            "/geoip/providers",
            "/geoip/switch-provider?provider=dbip",
            "POST /geoip/update?provider=dbip",
            "POST /geoip/update?provider=all&force=1&no-backup=1",
        ],
    }


@router.get("/", tags=["meta"], summary="Service description")
async def index(request: Request) -> Response:
    return render(request, _service_description(request.app.state.settings))


async def _lookup(request: Request, query: GeoIPQuery, service: GeoIPService, family: IpFamily | None) -> Response:
    settings = request.app.state.settings
    ip = query.ip
    if ip:
        logger.info(
            "Performing explicit IP lookup "
            f"path={request.url.path} method={request.method} ip={ip} provider={query.provider}"
        )
    else:
        ip = client_ip(request, settings.trust_forwarded_for)
        logger.info(
            "Performing client IP lookup "
            f"path={request.url.path} method={request.method} client_ip={ip} "
            f"x_forwarded_for={request.headers.get('x-forwarded-for')} provider={query.provider}"
        )
    record = await asyncio.to_thread(service.lookup, ip, family, query.provider)
    return render(request, record)


@router.get(
    "/geoip",
    response_model=GeoRecord,
    tags=["geoip"],
    summary="Look up geolocation information for an IPv4 or IPv6 address.",
    dependencies=[Depends(public_rate_limit)],
)
async def geoip_lookup(request: Request, query: Annotated[GeoIPQuery, Depends()], service: ServiceDep) -> Response:
    """Look up either the `ip` parameter or, when omitted, the caller's address.

    - `provider` selects a provider for this request only; an unknown value
      falls back to the active provider.
    - `format` and the Accept header select json, xml, csv or yaml output.
    - `callback` wraps JSON output as JSONP.
    """
    return await _lookup(request, query, service, None)


@router.get(
    "/geoip/ipv4",
    response_model=GeoRecord,
    tags=["geoip"],
    summary="Look up an IPv4 address.",
    dependencies=[Depends(public_rate_limit)],
)
async def geoip_lookup_ipv4(request: Request, query: Annotated[GeoIPQuery, Depends()], service: ServiceDep) -> Response:
    return await _lookup(request, query, service, IpFamily.IPV4)


@router.get(
    "/geoip/ipv6",
    response_model=GeoRecord,
    tags=["geoip"],
    summary="Look up an IPv6 address.",
    dependencies=[Depends(public_rate_limit)],
)
async def geoip_lookup_ipv6(request: Request, query: Annotated[GeoIPQuery, Depends()], service: ServiceDep) -> Response:
    return await _lookup(request, query, service, IpFamily.IPV6)


@router.get(
    "/geoip/stats",
    response_model=DatabaseStats,
    tags=["databases"],
    summary="Database statistics and metadata.",
    dependencies=[Depends(public_rate_limit)],
)
async def geoip_stats(request: Request, query: Annotated[ProviderQuery, Depends()], service: ServiceDep) -> Response:
    stats = await asyncio.to_thread(service.database_stats, query.provider)
    return render(request, stats)


@router.get(
    "/geoip/health",
    response_model=HealthResponse,
    tags=["health"],
    summary="Health check",
    dependencies=[Depends(public_rate_limit)],
)
async def geoip_health(request: Request, query: Annotated[ProviderQuery, Depends()]) -> Response:
    """Liveness summary including per-database status; always answers 200."""
    service = request.app.state.service
    if service is None:
        health = HealthResponse(
            status="error",
            api_version=API_VERSION,
            timestamp=datetime.now(timezone.utc).isoformat(),
            databases={},
            error="GeoIP service is not initialized.",
        )
    else:
        health = await asyncio.to_thread(service.health, query.provider)
    return render(request, health)


@router.get(
    "/geoip/providers",
    response_model=ProvidersResponse,
    tags=["providers"],
    summary="Available providers and the active one.",
    dependencies=[Depends(public_rate_limit)],
)
async def geoip_providers(request: Request, service: ServiceDep) -> Response:
    return render(request, service.providers())


@router.api_route(
    "/geoip/switch-provider",
    methods=["GET", "POST"],
    response_model=SwitchProviderResponse,
    tags=["providers"],
    summary="Switch the process-wide active provider.",
    dependencies=[Depends(public_rate_limit)],
)
async def geoip_switch_provider(
    request: Request, query: Annotated[ProviderQuery, Depends()], service: ServiceDep
) -> Response:
    if not query.provider:
        raise MissingParameterError("Provider parameter is required")
    return render(request, service.switch_provider(query.provider))


@router.api_route(
    "/geoip/update",
    methods=["GET", "POST"],
    response_model=UpdateResponse,
    tags=["admin"],
    summary="Download and install fresh databases (requires the admin API key).",
    dependencies=[Depends(admin_rate_limit), Depends(require_admin_key)],
)
async def geoip_update(
    request: Request,
    service: ServiceDep,
    provider: Annotated[str, Query(description="maxmind, dbip or all")] = "all",
    force: Annotated[bool, Query(description="Re-download files that already exist")] = False,
    no_backup: Annotated[bool, Query(alias="no-backup", description="Skip backing up current files")] = False,
) -> Response:
    logger.info(
        f"Database update requested path={request.url.path} provider={provider} force={force} no_backup={no_backup}"
    )
    result = await asyncio.to_thread(service.update_databases, provider, force, not no_backup)
    status_code = status.HTTP_200_OK if result.success else status.HTTP_500_INTERNAL_SERVER_ERROR
    return render(request, result, status_code)


def build_stores(settings: Settings) -> tuple[CacheBackend, Storage]:
    """In-process stores by default; a shared Redis when GEOIP_REDIS_URL is set."""
    storage = build_storage(settings.redis_url)
    if settings.redis_url:
        return RedisCacheBackend(redis.Redis.from_url(settings.redis_url)), storage
    return MemoryCacheBackend(), storage


def create_app(
    settings: Settings | None = None,
    registry: ProviderRegistry | None = None,
    updater: DatabaseUpdater | None = None,
) -> FastAPI:
    """Build the application.

    When `registry` is omitted the configured databases are opened on startup.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    cache_backend, limit_storage = build_stores(settings)
    cache = LookupCache(
        cache_backend,
        ttl=settings.cache_ttl,
        prefix=settings.cache_prefix,
        enabled=settings.cache_enabled,
    )
    updater = updater or DatabaseUpdater(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if app.state.service is None:
            opened = await asyncio.to_thread(ProviderRegistry.from_settings, settings)
            app.state.service = GeoIPService(opened, cache, updater=updater)
        logger.info("Started GeoIP service")
        yield
        app.state.service.close()

    app = FastAPI(
        title="GeoIP API",
        version=API_VERSION,
        description="IP geolocation from local MaxMind / DB-IP databases with json, xml, csv and yaml output.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = GeoIPService(registry, cache, updater=updater) if registry is not None else None
    app.state.public_limiter = RateLimiter(
        limit_storage, settings.public_rate_limit, settings.public_rate_decay_minutes
    )
    app.state.admin_limiter = RateLimiter(
        limit_storage, settings.admin_rate_limit, settings.admin_rate_decay_minutes
    )

    # Register global exception handlers using the shared handlers module.
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(ValidationError, pydantic_validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "Authorization", "X-API-Key"],
    )
    app.include_router(router)
    return app


app = create_app()
