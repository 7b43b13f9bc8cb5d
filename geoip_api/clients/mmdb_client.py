from datetime import datetime, timezone
from pathlib import Path

import geoip2.database
import geoip2.errors
import geoip2.models
import maxminddb

from geoip_api.clients.base import BaseGeoReader
from geoip_api.errors import DatabaseUnavailableError, InvalidIpError, IpNotFoundError, ResolveError
from geoip_api.models.common import AsnData, CityData, DatabaseInfo


class MmdbReader(BaseGeoReader):
    """Reader for MaxMind DB (.mmdb) files, used by both MaxMind GeoLite2 and DB-IP Lite.

    The file is opened once at construction time; a missing or corrupt file
    raises DatabaseUnavailableError so misconfigured providers fail fast.
    """

    def __init__(self, path: Path, database_name: str | None = None) -> None:
        path = Path(path)
        if not path.is_file():
            raise DatabaseUnavailableError(f"GeoIP database file not found: {path}")
        try:
            self._reader = geoip2.database.Reader(str(path))
        except (OSError, maxminddb.InvalidDatabaseError, ValueError) as exc:
            raise DatabaseUnavailableError(f"Invalid GeoIP database {path}: {exc}") from exc
        self._path = path
        self._database_name = database_name or path.stem

    @property
    def path(self) -> Path:
        return self._path

    def city(self, ip: str) -> CityData:
        try:
            response = self._reader.city(ip)
        except geoip2.errors.AddressNotFoundError as exc:
            raise IpNotFoundError(f"IP address not found in database: {ip}") from exc
        except ValueError as exc:
            raise InvalidIpError(f"Invalid IP address: {ip}") from exc
        except (geoip2.errors.GeoIP2Error, maxminddb.InvalidDatabaseError, OSError, TypeError) as exc:
            # TypeError: the file is not a City database.
            raise ResolveError(f"Error reading {self._database_name}: {exc}") from exc
        return self._normalize_city(response)

    def asn(self, ip: str) -> AsnData:
        try:
            response = self._reader.asn(ip)
        except geoip2.errors.AddressNotFoundError as exc:
            raise IpNotFoundError(f"IP address not found in ASN database: {ip}") from exc
        except ValueError as exc:
            raise InvalidIpError(f"Invalid IP address: {ip}") from exc
        except (geoip2.errors.GeoIP2Error, maxminddb.InvalidDatabaseError, OSError, TypeError) as exc:
            raise ResolveError(f"Error reading {self._database_name}: {exc}") from exc
        return AsnData(
            asn=response.autonomous_system_number,
            organization=response.autonomous_system_organization,
        )

    def metadata(self) -> DatabaseInfo:
        meta = self._reader.metadata()
        build_date = None
        if meta.build_epoch:
            build_date = datetime.fromtimestamp(meta.build_epoch, tz=timezone.utc).isoformat()
        return DatabaseInfo(
            database_name=self._database_name,
            database_type=meta.database_type or "Unknown",
            record_count=meta.node_count or 0,
            build_date=build_date,
            description=(meta.description or {}).get("en", "No description"),
            binary_format_major_version=meta.binary_format_major_version or 0,
            binary_format_minor_version=meta.binary_format_minor_version or 0,
            ip_version=meta.ip_version or 0,
            node_byte_size=meta.node_byte_size or 0,
            search_tree_size=meta.search_tree_size or 0,
        )

    def close(self) -> None:
        self._reader.close()

    @staticmethod
    def _normalize_city(response: geoip2.models.City) -> CityData:
        """Map a geoip2 City model into our normalized schema."""
        subdivision = response.subdivisions.most_specific
        traits = response.traits
        return CityData(
            country_code=response.country.iso_code,
            country=response.country.name,
            region_code=subdivision.iso_code,
            region=subdivision.name,
            city=response.city.name,
            postal_code=response.postal.code,
            continent_code=response.continent.code,
            latitude=response.location.latitude,
            longitude=response.location.longitude,
            timezone=response.location.time_zone,
            traits_asn=getattr(traits, "autonomous_system_number", None),
            traits_organization=getattr(traits, "autonomous_system_organization", None),
        )
