from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class ProviderConfig(BaseModel):
    """Database files and descriptive metadata for one geolocation provider."""

    name: str
    website: str | None = None
    city_database: Path
    asn_database: Path | None = None
    country_database: Path | None = None


class Settings(BaseSettings):
    """Service configuration loaded from GEOIP_* environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_prefix="GEOIP_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    provider: str = "maxmind"
    storage_dir: Path = Path("./storage/geoip")

    # Per-provider overrides; when unset the files live under storage_dir.
    maxmind_city_database: Path | None = None
    maxmind_asn_database: Path | None = None
    dbip_city_database: Path | None = None
    dbip_asn_database: Path | None = None

    default_format: str = "json"
    supported_formats: Annotated[list[str], NoDecode] = ["json", "xml", "csv", "yaml"]

    cache_enabled: bool = True
    cache_ttl: int = Field(default=3600, validation_alias=AliasChoices("GEOIP_CACHE_TIMEOUT", "cache_ttl"))
    cache_prefix: str = "geoip_"
    redis_url: str | None = None

    admin_api_key: str | None = None

    public_rate_limit: int = 100
    public_rate_decay_minutes: int = 1
    admin_rate_limit: int = 10
    admin_rate_decay_minutes: int = 1

    trust_forwarded_for: bool = False

    maxmind_license_key: str | None = Field(
        default=None, validation_alias=AliasChoices("MAXMIND_LICENSE_KEY", "maxmind_license_key")
    )
    log_level: str = Field(default="INFO", validation_alias=AliasChoices("LOG_LEVEL", "log_level"))

    @field_validator("supported_formats", mode="before")
    @classmethod
    def _split_formats(cls, value: str | list[str]) -> list[str]:
        """Accept a comma separated list from the environment."""
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        return [str(item).lower() for item in value]

    @field_validator("default_format", "provider", mode="before")
    @classmethod
    def _lower(cls, value: str) -> str:
        return str(value).strip().lower()

    def provider_configs(self) -> dict[str, ProviderConfig]:
        """Build the provider table from storage_dir and any explicit path overrides."""
        root = Path(self.storage_dir)
        return {
            "maxmind": ProviderConfig(
                name="MaxMind GeoLite2",
                website="https://dev.maxmind.com/geoip/geolite2-free-geolocation-data",
                city_database=self.maxmind_city_database or root / "maxmind" / "GeoLite2-City.mmdb",
                asn_database=self.maxmind_asn_database or root / "maxmind" / "GeoLite2-ASN.mmdb",
                country_database=root / "maxmind" / "GeoLite2-Country.mmdb",
            ),
            "dbip": ProviderConfig(
                name="DB-IP Lite",
                website="https://db-ip.com/db/download/ip-to-city-lite",
                city_database=self.dbip_city_database or root / "dbip" / "dbip-city-lite.mmdb",
                asn_database=self.dbip_asn_database or root / "dbip" / "dbip-asn-lite.mmdb",
                country_database=root / "dbip" / "dbip-country-lite.mmdb",
            ),
        }


@lru_cache
def get_settings() -> Settings:
    return Settings()
