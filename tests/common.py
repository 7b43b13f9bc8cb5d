from pathlib import Path
from typing import Any

from geoip_api.clients.base import BaseGeoReader
from geoip_api.config import ProviderConfig, Settings
from geoip_api.errors import DatabaseUnavailableError, IpNotFoundError
from geoip_api.models.common import AsnData, CityData, DatabaseInfo
from geoip_api.registry import ProviderRegistry

GOOGLE_DNS_CITY = CityData(
    country_code="US",
    country="United States",
    region_code="CA",
    region="California",
    city="Mountain View",
    postal_code="94043",
    continent_code="NA",
    latitude=37.4056,
    longitude=-122.0775,
    timezone="America/Los_Angeles",
)
GOOGLE_DNS_ASN = AsnData(asn=15169, organization="Google LLC")


class FakeReader(BaseGeoReader):
    """In-memory reader with call counters, standing in for an .mmdb file."""

    def __init__(
        self,
        cities: dict[str, CityData] | None = None,
        asns: dict[str, AsnData] | None = None,
        name: str = "fake",
        record_count: int = 100,
        build_date: str | None = "2024-05-01T00:00:00+00:00",
    ) -> None:
        self.cities = cities or {}
        self.asns = asns or {}
        self.name = name
        self.record_count = record_count
        self.build_date = build_date
        self.city_calls = 0
        self.asn_calls = 0
        self.closed = False

    def city(self, ip: str) -> CityData:
        self.city_calls += 1
        try:
            return self.cities[ip]
        except KeyError:
            raise IpNotFoundError(f"IP address not found in database: {ip}") from None

    def asn(self, ip: str) -> AsnData:
        self.asn_calls += 1
        try:
            return self.asns[ip]
        except KeyError:
            raise IpNotFoundError(f"IP address not found in ASN database: {ip}") from None

    def metadata(self) -> DatabaseInfo:
        return DatabaseInfo(
            database_name=self.name,
            database_type="GeoLite2-City",
            record_count=self.record_count,
            build_date=self.build_date,
        )

    def close(self) -> None:
        self.closed = True


def provider_config(provider_id: str, with_asn: bool = True) -> ProviderConfig:
    return ProviderConfig(
        name=f"{provider_id.title()} Test",
        website=f"https://{provider_id}.example",
        city_database=Path(f"/data/{provider_id}/city.mmdb"),
        asn_database=Path(f"/data/{provider_id}/asn.mmdb") if with_asn else None,
    )


class ReaderFactory:
    """Reader factory for ProviderRegistry that hands out FakeReaders by database name.

    Names are `<provider>-city` / `<provider>-asn`; names listed in `missing`
    behave like absent files.
    """

    def __init__(self, readers: dict[str, FakeReader] | None = None, missing: set[str] | None = None) -> None:
        self.readers = readers or {}
        self.missing = missing or set()
        self.opened: list[str] = []

    def __call__(self, path: Path, database_name: str) -> FakeReader:
        if database_name in self.missing:
            raise DatabaseUnavailableError(f"GeoIP database file not found: {path}")
        self.opened.append(database_name)
        return self.readers.setdefault(database_name, FakeReader(name=database_name))


def google_dns_factory() -> ReaderFactory:
    """Both providers know 8.8.8.8; dbip has no ASN entry for it."""
    return ReaderFactory(
        {
            "maxmind-city": FakeReader({"8.8.8.8": GOOGLE_DNS_CITY}, name="maxmind-city"),
            "maxmind-asn": FakeReader(asns={"8.8.8.8": GOOGLE_DNS_ASN}, name="maxmind-asn"),
            "dbip-city": FakeReader(
                {"8.8.8.8": GOOGLE_DNS_CITY.model_copy(update={"city": "Mountain View (DB-IP)"})},
                name="dbip-city",
            ),
            "dbip-asn": FakeReader(name="dbip-asn"),
        }
    )


def build_registry(factory: ReaderFactory | None = None, providers: tuple[str, ...] = ("maxmind", "dbip")) -> ProviderRegistry:
    registry = ProviderRegistry(reader_factory=factory or google_dns_factory())
    for provider_id in providers:
        registry.register(provider_id, provider_config(provider_id))
    return registry


def make_settings(tmp_path: Path | None = None, **overrides: Any) -> Settings:
    """Settings isolated from the environment and any .env file."""
    values: dict[str, Any] = {
        "storage_dir": tmp_path or Path("/nonexistent/geoip"),
        "redis_url": None,
        "admin_api_key": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeClock:
    """Manually advanced clock for cache and rate-limit windows."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
