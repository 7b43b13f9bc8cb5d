from datetime import datetime, timezone

from geoip_api.cache import LookupCache
from geoip_api.errors import AppError, ProviderNotFoundError
from geoip_api.logger import logger
from geoip_api.models.common import GeoRecord
from geoip_api.models.response_models import (
    DatabaseHealth,
    DatabaseStats,
    HealthResponse,
    ProvidersResponse,
    SwitchProviderResponse,
    UpdateResponse,
)
from geoip_api.registry import Provider, ProviderRegistry
from geoip_api.resolver import GeoResolver, IpFamily, normalize_ip
from geoip_api.updater import DatabaseUpdater

API_VERSION = "1.0.0"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class GeoIPService:
    """Composes provider selection, caching and resolution for the HTTP layer.

    Methods are synchronous; route handlers run them on a worker thread.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        cache: LookupCache,
        resolver: GeoResolver | None = None,
        updater: DatabaseUpdater | None = None,
    ) -> None:
        self.registry = registry
        self.cache = cache
        self.resolver = resolver or GeoResolver()
        self.updater = updater

    def select_provider(self, override: str | None = None) -> Provider:
        """Return the per-request provider, falling back to the active one if it is unknown."""
        if override:
            try:
                return self.registry.get(override.lower())
            except ProviderNotFoundError:
                logger.warning(f"Unknown provider override, using active provider provider={override}")
        return self.registry.active()

    def lookup(self, ip: str, family: IpFamily | None = None, provider_override: str | None = None) -> GeoRecord:
        normalized = normalize_ip(ip, family)
        provider = self.select_provider(provider_override)
        requested_ip = str(ip).strip()

        cached = self.cache.get(provider.id, normalized)
        if cached is not None:
            logger.debug(f"Cache hit provider={provider.id} ip={normalized}")
            if cached.ip != requested_ip:
                return cached.model_copy(update={"ip": requested_ip})
            return cached

        record = self.resolver.resolve(provider, requested_ip, family)
        self.cache.put(provider.id, normalized, record)
        return record

    def database_stats(self, provider_override: str | None = None) -> DatabaseStats:
        provider = self.select_provider(provider_override)
        databases = {kind: reader.metadata() for kind, reader in provider.readers().items()}
        build_dates = [info.build_date for info in databases.values() if info.build_date]
        return DatabaseStats(
            provider=provider.id,
            databases=databases,
            total_records=sum(info.record_count for info in databases.values()),
            last_updated=max(build_dates) if build_dates else None,
            api_version=API_VERSION,
            generated_at=_now_iso(),
        )

    def health(self, provider_override: str | None = None) -> HealthResponse:
        """Liveness summary; database failures are reported in the payload, never raised."""
        try:
            provider = self.select_provider(provider_override)
            stats = self.database_stats(provider.id)
        except AppError as exc:
            logger.error(f"Health check failed error={exc}")
            return HealthResponse(
                status="error",
                api_version=API_VERSION,
                timestamp=_now_iso(),
                error=str(exc),
                databases={
                    "city_database": DatabaseHealth(status="error"),
                    "asn_database": DatabaseHealth(status="error"),
                },
            )

        return HealthResponse(
            status="healthy",
            api_version=API_VERSION,
            timestamp=_now_iso(),
            provider=self.registry.describe(provider),
            databases={
                f"{kind}_database": DatabaseHealth(
                    status="online",
                    records=info.record_count,
                    last_updated=info.build_date,
                )
                for kind, info in stats.databases.items()
            },
            total_records=stats.total_records,
            uptime="Service is operational",
        )

    def providers(self) -> ProvidersResponse:
        active = self.registry.active()
        return ProvidersResponse(
            current_provider=active.id,
            providers=[self.registry.describe(self.registry.get(name)) for name in self.registry.available()],
        )

    def switch_provider(self, provider_id: str) -> SwitchProviderResponse:
        provider = self.registry.set_active(provider_id.lower())
        return SwitchProviderResponse(
            message=f"Provider switched to '{provider.id}' successfully",
            current_provider=self.registry.describe(provider),
        )

    def update_databases(self, provider: str = "all", force: bool = False, backup: bool = True) -> UpdateResponse:
        """Run the refresh job, then reload the refreshed providers and drop cached lookups."""
        if self.updater is None:
            raise AppError("Database updates are not configured for this service.")

        report = self.updater.update(provider.lower(), force=force, backup=backup)
        refreshed = {entry.split("/", 1)[0] for entry in report.updated}
        for provider_id in refreshed:
            try:
                if provider_id in self.registry.available():
                    self.registry.reload(provider_id)
                else:
                    self.registry.register(provider_id, self.updater.provider_config(provider_id))
            except AppError as exc:
                report.errors.append(f"{provider_id}: reload failed: {exc}")
        if refreshed:
            self.cache.clear()

        return UpdateResponse(
            success=report.success,
            provider=provider,
            updated=report.updated,
            skipped=report.skipped,
            errors=report.errors,
        )

    def close(self) -> None:
        self.registry.close()
