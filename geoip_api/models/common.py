from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


def _coerce_coordinate(value: Any) -> float | None:
    if value is None:
        return None
    try:
        # For general GPS and mapping, 5-6 decimal places (e.g., 34.052235)
        return round(float(value), 6)
    except (TypeError, ValueError):
        return None


def _coerce_asn(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class GeoRecord(BaseModel):
    """Normalized geolocation record returned by every lookup endpoint.

    All fields except `ip` are optional; `None` means the source database has
    no value for it. Coordinates are either both present or both absent.
    """

    model_config = ConfigDict(frozen=True)

    ip: str
    country_code: str | None = None
    country: str | None = None
    region_code: str | None = None
    region: str | None = None
    city: str | None = None
    postal_code: str | None = None
    continent_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    organization: str | None = None
    asn: int | None = None
    asn_organization: str | None = None
    isp: str | None = None
    timezone: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _pair_coordinates(cls, data: Any) -> Any:
        """Drop a lone latitude or longitude so the pair stays consistent."""
        if not isinstance(data, dict):
            return data
        latitude = _coerce_coordinate(data.get("latitude"))
        longitude = _coerce_coordinate(data.get("longitude"))
        if latitude is None or longitude is None:
            latitude = longitude = None
        return {**data, "latitude": latitude, "longitude": longitude}

    @field_validator("asn", mode="before")
    @classmethod
    def _coerce_asn(cls, value: Any) -> int | None:
        return _coerce_asn(value)


class CityData(BaseModel):
    """City/region fields read from a provider's primary database."""

    country_code: str | None = None
    country: str | None = None
    region_code: str | None = None
    region: str | None = None
    city: str | None = None
    postal_code: str | None = None
    continent_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    timezone: str | None = None
    # Some commercial City/Enterprise databases embed ASN data in traits.
    traits_asn: int | None = None
    traits_organization: str | None = None

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def _coerce_lat_lon(cls, value: Any) -> float | None:
        return _coerce_coordinate(value)

    @field_validator("traits_asn", mode="before")
    @classmethod
    def _coerce_traits_asn(cls, value: Any) -> int | None:
        return _coerce_asn(value)


class AsnData(BaseModel):
    """Autonomous system fields read from a provider's ASN database."""

    asn: int | None = None
    organization: str | None = None

    @field_validator("asn", mode="before")
    @classmethod
    def _coerce_asn(cls, value: Any) -> int | None:
        return _coerce_asn(value)


class DatabaseInfo(BaseModel):
    """Descriptive metadata of one opened database file."""

    database_name: str
    database_type: str = "Unknown"
    record_count: int = 0
    build_date: str | None = None
    description: str = "No description"
    binary_format_major_version: int = 0
    binary_format_minor_version: int = 0
    ip_version: int = 0
    node_byte_size: int = 0
    search_tree_size: int = 0
