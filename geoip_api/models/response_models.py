from pydantic import BaseModel

from geoip_api.models.common import DatabaseInfo


class ErrorResponse(BaseModel):
    """Uniform error payload, rendered through the same serializers as data."""

    error: bool = True
    message: str
    code: int


class ProviderInfo(BaseModel):
    """Public description of a registered provider."""

    id: str
    name: str
    website: str | None = None
    city_database: str
    asn_database: str | None = None
    country_database: str | None = None
    active: bool = False


class ProvidersResponse(BaseModel):
    current_provider: str
    providers: list[ProviderInfo]


class SwitchProviderResponse(BaseModel):
    success: bool = True
    message: str
    current_provider: ProviderInfo


class DatabaseStats(BaseModel):
    """Metadata of every database backing a provider."""

    provider: str
    databases: dict[str, DatabaseInfo]
    total_records: int
    last_updated: str | None = None
    api_version: str
    generated_at: str


class DatabaseHealth(BaseModel):
    status: str
    records: int | None = None
    last_updated: str | None = None


class HealthResponse(BaseModel):
    """Liveness summary; `status` is `healthy` or `error`."""

    status: str
    api_version: str
    timestamp: str
    provider: ProviderInfo | None = None
    databases: dict[str, DatabaseHealth]
    total_records: int | None = None
    uptime: str | None = None
    error: str | None = None


class UpdateResponse(BaseModel):
    """Summary of a database refresh run."""

    success: bool
    provider: str
    updated: list[str]
    skipped: list[str]
    errors: list[str]
