import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from geoip_api.clients.base import BaseGeoReader
from geoip_api.clients.mmdb_client import MmdbReader
from geoip_api.config import ProviderConfig, Settings
from geoip_api.errors import DatabaseUnavailableError, ProviderNotFoundError
from geoip_api.logger import logger
from geoip_api.models.response_models import ProviderInfo

ReaderFactory = Callable[[Path, str], BaseGeoReader]


@dataclass(frozen=True)
class Provider:
    """A named geolocation backend and its opened readers.

    Instances are never mutated: reloading or switching publishes a different
    Provider object.
    """

    id: str
    config: ProviderConfig
    city_reader: BaseGeoReader
    asn_reader: BaseGeoReader | None = None

    @property
    def name(self) -> str:
        return self.config.name

    def readers(self) -> dict[str, BaseGeoReader]:
        readers = {"city": self.city_reader}
        if self.asn_reader is not None:
            readers["asn"] = self.asn_reader
        return readers

    def close(self) -> None:
        for reader in self.readers().values():
            reader.close()


class ProviderRegistry:
    """Holds the registered providers and the process-wide active one.

    Reads go through `get`/`active` and see a fully constructed Provider;
    writes build the new state first and then swap references under a lock.
    """

    def __init__(self, reader_factory: ReaderFactory = MmdbReader) -> None:
        self._reader_factory = reader_factory
        self._providers: dict[str, Provider] = {}
        self._active: Provider | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, reader_factory: ReaderFactory = MmdbReader) -> "ProviderRegistry":
        """Register every configured provider whose databases can be opened.

        Providers that fail to open are skipped. With none available the
        registry stays empty and `active()` raises DatabaseUnavailableError.
        """
        registry = cls(reader_factory)
        for provider_id, provider_config in settings.provider_configs().items():
            try:
                registry.register(provider_id, provider_config)
            except DatabaseUnavailableError as exc:
                logger.warning(f"Skipping provider provider={provider_id} error={exc}")

        if not registry.available():
            logger.error("No GeoIP provider could be opened; lookups fail until the databases are updated")
        elif settings.provider in registry.available():
            registry.set_active(settings.provider)
        else:
            logger.warning(
                f"Configured provider unavailable provider={settings.provider} "
                f"falling_back_to={registry.active().id}"
            )
        return registry

    def register(self, provider_id: str, config: ProviderConfig) -> Provider:
        """Open the provider's databases and publish it.

        The first registered provider becomes active. Re-registering an
        existing identifier replaces it (and the active reference, if it was
        active); superseded readers are released once in-flight requests
        drop them.
        """
        provider = self._open(provider_id, config)
        with self._lock:
            self._providers = {**self._providers, provider_id: provider}
            if self._active is None or self._active.id == provider_id:
                self._active = provider
        logger.info(f"Registered provider provider={provider_id} name={config.name}")
        return provider

    def reload(self, provider_id: str) -> Provider:
        return self.register(provider_id, self.get(provider_id).config)

    def get(self, provider_id: str) -> Provider:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise ProviderNotFoundError(
                f"Provider '{provider_id}' not found. Available providers: {', '.join(self.available())}"
            ) from None

    def set_active(self, provider_id: str) -> Provider:
        provider = self.get(provider_id)
        with self._lock:
            self._active = provider
        logger.info(f"Active provider switched provider={provider_id}")
        return provider

    def active(self) -> Provider:
        provider = self._active
        if provider is None:
            raise DatabaseUnavailableError("No GeoIP provider is registered.")
        return provider

    def available(self) -> list[str]:
        return list(self._providers)

    def describe(self, provider: Provider) -> ProviderInfo:
        config = provider.config
        return ProviderInfo(
            id=provider.id,
            name=config.name,
            website=config.website,
            city_database=str(config.city_database),
            asn_database=str(config.asn_database) if config.asn_database else None,
            country_database=str(config.country_database) if config.country_database else None,
            active=self._active is provider,
        )

    def close(self) -> None:
        with self._lock:
            providers = list(self._providers.values())
            self._providers = {}
            self._active = None
        for provider in providers:
            provider.close()

    def _open(self, provider_id: str, config: ProviderConfig) -> Provider:
        city_reader = self._reader_factory(config.city_database, f"{provider_id}-city")
        asn_reader = None
        if config.asn_database is not None:
            try:
                asn_reader = self._reader_factory(config.asn_database, f"{provider_id}-asn")
            except DatabaseUnavailableError:
                city_reader.close()
                raise
        return Provider(id=provider_id, config=config, city_reader=city_reader, asn_reader=asn_reader)
