from enum import IntEnum
from ipaddress import ip_address

from geoip_api.errors import InvalidIpError, IpNotFoundError, WrongAddressFamilyError
from geoip_api.models.common import AsnData, CityData, GeoRecord
from geoip_api.registry import Provider


class IpFamily(IntEnum):
    IPV4 = 4
    IPV6 = 6


def normalize_ip(ip: str | None, family: IpFamily | None = None) -> str:
    """Validate an address literal and return its canonical text form.

    Raises InvalidIpError for anything that is not an IPv4/IPv6 literal and
    WrongAddressFamilyError when `family` is given and does not match.
    """
    value = str(ip or "").strip()
    try:
        address = ip_address(value)
    except ValueError as exc:
        raise InvalidIpError(f"Invalid IP address: {value}") from exc

    if family is not None and address.version != family:
        raise WrongAddressFamilyError(f"Invalid IPv{int(family)} address: {value}")
    return str(address)


def _traits_organization(city: CityData) -> str | None:
    parts = []
    if city.traits_asn is not None:
        parts.append(f"AS{city.traits_asn}")
    if city.traits_organization:
        parts.append(city.traits_organization)
    return " ".join(parts) or None


class GeoResolver:
    """Turns an address into a GeoRecord using a provider's readers.

    City/region data comes from the primary reader. When the provider has an
    ASN reader its number and organization are merged in; the ASN
    organization always wins over the traits-based organization of the
    primary database. An address missing only from the ASN database yields a
    record without ASN fields.
    """

    def resolve(self, provider: Provider, ip: str, family: IpFamily | None = None) -> GeoRecord:
        normalized = normalize_ip(ip, family)
        city = provider.city_reader.city(normalized)
        asn = self._lookup_asn(provider, normalized)
        return self._merge(str(ip).strip(), city, asn)

    @staticmethod
    def _lookup_asn(provider: Provider, ip: str) -> AsnData:
        if provider.asn_reader is None:
            return AsnData()
        try:
            return provider.asn_reader.asn(ip)
        except IpNotFoundError:
            return AsnData()

    @staticmethod
    def _merge(ip: str, city: CityData, asn: AsnData) -> GeoRecord:
        return GeoRecord(
            ip=ip,
            country_code=city.country_code,
            country=city.country,
            region_code=city.region_code,
            region=city.region,
            city=city.city,
            postal_code=city.postal_code,
            continent_code=city.continent_code,
            latitude=city.latitude,
            longitude=city.longitude,
            organization=asn.organization or _traits_organization(city),
            asn=asn.asn,
            asn_organization=asn.organization,
            isp=asn.organization,
            timezone=city.timezone,
        )
