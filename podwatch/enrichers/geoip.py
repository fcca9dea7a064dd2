"""Geo-IP enricher: MaxMind lookup, cloud detection, region inference, per-IP cache."""

import ipaddress
import logging
import math

import geoip2.database
import geoip2.errors

from podwatch.cache import TTLCache
from podwatch.enrichers import Enricher
from podwatch.models import GeoLocation, NodeRecord

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Hosting ASNs seen among pod operators
# ---------------------------------------------------------------------------

CLOUD_ASN_MAP: dict[int, str] = {
    16509: "AWS",
    14618: "AWS",
    15169: "GCP",
    396982: "GCP",
    8075: "Azure",
    31898: "Oracle",
    14061: "DigitalOcean",
    24940: "Hetzner",
    213230: "Hetzner",
    16276: "OVH",
    51167: "Contabo",
    40021: "Contabo",
    63949: "Linode",
    20473: "Vultr",
    12876: "Scaleway",
    60781: "Leaseweb",
    59642: "Cherry",
    28186: "Latitude",
    197540: "netcup",
}

# ---------------------------------------------------------------------------
# Provider data-centre coordinates (provider/region → lat, lon)
# ---------------------------------------------------------------------------

CLOUD_REGION_COORDS: dict[str, tuple[float, float]] = {
    "AWS/us-east-1": (39.04, -77.49),
    "AWS/us-west-2": (45.59, -122.60),
    "AWS/eu-central-1": (50.11, 8.68),
    "AWS/eu-west-1": (53.35, -6.26),
    "AWS/ap-southeast-1": (1.35, 103.82),
    "AWS/ap-northeast-1": (35.68, 139.69),
    "GCP/us-central1": (41.26, -95.86),
    "GCP/europe-west3": (50.11, 8.68),
    "GCP/asia-southeast1": (1.35, 103.82),
    "Hetzner/fsn1": (50.47, 12.37),
    "Hetzner/nbg1": (49.45, 11.08),
    "Hetzner/hel1": (60.17, 24.94),
    "Hetzner/ash": (39.04, -77.49),
    "Hetzner/hil": (45.52, -122.99),
    "OVH/gra": (50.10, 2.39),
    "OVH/sbg": (48.57, 7.75),
    "OVH/bhs": (46.39, -72.74),
    "Contabo/nuremberg": (49.45, 11.08),
    "Contabo/munich": (48.14, 11.58),
    "Contabo/st-louis": (38.63, -90.20),
    "Contabo/singapore": (1.35, 103.82),
    "DigitalOcean/nyc": (40.71, -74.01),
    "DigitalOcean/fra": (50.11, 8.68),
    "DigitalOcean/sgp": (1.35, 103.82),
}


def _haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in km between two points given in degrees."""
    r = 6371.0
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    return r * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def infer_cloud_region(provider: str, latitude: float, longitude: float) -> str | None:
    """Return the *provider* region nearest to the coordinates.

    Returns:
        Region identifier (e.g. ``"fsn1"``), or ``None`` if no regions are
        known for this provider.
    """
    prefix = f"{provider}/"
    candidates = [
        (_haversine_km(latitude, longitude, rlat, rlon), key.removeprefix(prefix))
        for key, (rlat, rlon) in CLOUD_REGION_COORDS.items()
        if key.startswith(prefix)
    ]
    if not candidates:
        return None
    return min(candidates)[1]


def is_public_ip(ip: str) -> bool:
    """Return whether *ip* is a routable public address worth looking up.

    >>> is_public_ip("10.0.0.1")
    False
    >>> is_public_ip("not-an-ip")
    False
    """
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_global


class GeoIPReader:
    """Wrapper around the MaxMind GeoLite2 City and ASN readers.

    A ``None`` or missing database path disables the matching lookups.

    Args:
        city_db_path: Path to ``GeoLite2-City.mmdb``, or ``None``.
        asn_db_path: Path to ``GeoLite2-ASN.mmdb``, or ``None``.
    """

    def __init__(self, city_db_path: str | None = None, asn_db_path: str | None = None) -> None:
        self._city_reader = self._open(city_db_path, "GeoLite2-City")
        self._asn_reader = self._open(asn_db_path, "GeoLite2-ASN")

    @staticmethod
    def _open(path: str | None, label: str) -> geoip2.database.Reader | None:
        if not path:
            return None
        try:
            reader = geoip2.database.Reader(path)
        except FileNotFoundError:
            logger.warning("%s DB not found at %s; lookups disabled", label, path)
            return None
        logger.debug("Opened %s DB: %s", label, path)
        return reader

    @property
    def available(self) -> bool:
        return self._city_reader is not None or self._asn_reader is not None

    def close(self) -> None:
        if self._city_reader:
            self._city_reader.close()
        if self._asn_reader:
            self._asn_reader.close()

    def lookup(self, ip: str) -> GeoLocation | None:
        """Look up everything known about *ip*.

        Returns:
            A ``GeoLocation``, or ``None`` when neither database knows it.
        """
        location = GeoLocation()
        found = False

        if self._city_reader:
            try:
                resp = self._city_reader.city(ip)
            except (geoip2.errors.AddressNotFoundError, ValueError):
                logger.debug("City lookup failed for %s", ip)
            else:
                found = True
                location.city = resp.city.name
                location.country = resp.country.name
                location.country_code = resp.country.iso_code
                location.latitude = resp.location.latitude
                location.longitude = resp.location.longitude

        if self._asn_reader:
            try:
                resp = self._asn_reader.asn(ip)
            except (geoip2.errors.AddressNotFoundError, ValueError):
                logger.debug("ASN lookup failed for %s", ip)
            else:
                found = True
                location.asn = resp.autonomous_system_number
                location.asn_org = resp.autonomous_system_organization

        if not found:
            return None
        classify_cloud(location)
        return location


def classify_cloud(location: GeoLocation) -> None:
    """Fill the cloud fields of *location* from its ASN and coordinates."""
    provider = CLOUD_ASN_MAP.get(location.asn) if location.asn is not None else None
    location.is_cloud = provider is not None
    location.cloud_provider = provider
    if provider and location.latitude is not None and location.longitude is not None:
        location.cloud_region = infer_cloud_region(
            provider, location.latitude, location.longitude
        )


class GeoIPEnricher(Enricher):
    """Sets ``NodeRecord.location`` for nodes with a public IP.

    Answers are cached per IP for ``geo_cache_ttl`` seconds across cycles.
    """

    name = "geoip"

    def __init__(self, config, client, reader: GeoIPReader | None = None) -> None:
        super().__init__(config, client)
        self._reader = reader
        self.cache: TTLCache[str, GeoLocation] = TTLCache(config.geo_cache_ttl, name="geoip")

    @property
    def reader(self) -> GeoIPReader:
        if self._reader is None:
            self._reader = GeoIPReader(self.config.maxmind_city_db, self.config.maxmind_asn_db)
        return self._reader

    async def enrich(self, nodes: list[NodeRecord]) -> None:
        self.cache.prune()
        looked_up = 0
        cached = 0
        for node in nodes:
            ip = node.ip
            if not ip or not is_public_ip(ip):
                continue

            location = self.cache.get(ip)
            if location is not None:
                cached += 1
            else:
                if not self.reader.available:
                    continue
                location = self.reader.lookup(ip)
                if location is None:
                    continue
                self.cache.set(ip, location)
                looked_up += 1
            node.location = location

        logger.info("Geo-IP: %d looked up, %d from cache", looked_up, cached)

    async def aclose(self) -> None:
        if self._reader is not None:
            self._reader.close()
