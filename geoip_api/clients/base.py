from abc import ABC, abstractmethod

from geoip_api.models.common import AsnData, CityData, DatabaseInfo


class BaseGeoReader(ABC):
    """Abstract base for all local geolocation database readers.

    Concrete implementations (e.g. MaxMind/DB-IP .mmdb files) should implement
    these methods and map reader-specific records into the normalized shapes
    (CityData, AsnData). A missing address raises IpNotFoundError; any other
    read failure raises ResolveError.
    """

    @abstractmethod
    def city(self, ip: str) -> CityData:
        """Look up city/region information for a normalized IP address."""
        raise NotImplementedError

    @abstractmethod
    def asn(self, ip: str) -> AsnData:
        """Look up autonomous system information for a normalized IP address."""
        raise NotImplementedError

    @abstractmethod
    def metadata(self) -> DatabaseInfo:
        """Describe the opened database file."""
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError
