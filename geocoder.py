"""
Layered geocoding: address-format variants first, then a second provider.

The primary provider is tried with the address as given, then with a
trailing postal code stripped, then reduced to "city, state".  If every
variant fails, the original address goes to the secondary provider.
Nothing here raises: exhaustion comes back as a failed GeocodeOutcome.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from models import Coordinates, UpstreamUnavailable
from provider_http import ProviderHTTPClient
from providers import GeocodingProvider

logger = logging.getLogger(__name__)

_POSTAL_CODE_RE = re.compile(r"[,\s]+\d{5}(?:-\d{4})?\s*$")
# "..., Austin, TX 78701" style state + zip in the last component
_STATE_ZIP_RE = re.compile(r"^([A-Za-z .]+?)\s+\d{5}(?:-\d{4})?$")
_COUNTRY_SUFFIXES = ("USA", "US", "UNITED STATES")


@dataclass
class GeocodeOutcome:
    coordinates: Optional[Coordinates]
    provider: str = ""
    variant: str = ""
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.coordinates is not None


def strip_postal_code(address: str) -> str:
    """Remove a trailing US postal code ("12345" or "12345-6789")."""
    return _POSTAL_CODE_RE.sub("", address.strip()).strip().rstrip(",").strip()


def city_state(address: str) -> Optional[str]:
    """Reduce an address to its last two comma-separated parts.

    "12 Oak Ln, Austin, TX 78701" -> "Austin, TX".  Returns None when the
    address has fewer than three parts (there is no street to drop).
    """
    parts = [p.strip() for p in strip_postal_code(address).split(",") if p.strip()]
    if parts and parts[-1].upper() in _COUNTRY_SUFFIXES:
        parts = parts[:-1]
    if len(parts) < 3:
        return None
    state = parts[-1]
    m = _STATE_ZIP_RE.match(state)
    if m:
        state = m.group(1).strip()
    return f"{parts[-2]}, {state}"


def address_variants(address: str) -> List[str]:
    """Address formats to try against the primary provider, in order."""
    variants = []
    for candidate in (address.strip(), strip_postal_code(address), city_state(address)):
        if candidate and candidate not in variants:
            variants.append(candidate)
    return variants


def _attempt(provider: GeocodingProvider, address: str) -> Optional[Coordinates]:
    try:
        return provider.geocode(address)
    except UpstreamUnavailable as e:
        logger.warning("Geocode via %s failed for %r: %s", provider.name, address, e.detail or e)
    except Exception:
        logger.warning("Geocode via %s failed for %r", provider.name, address, exc_info=True)
    return None


def geocode_address(
    address: str,
    primary: GeocodingProvider,
    secondary: Optional[GeocodingProvider] = None,
) -> GeocodeOutcome:
    """Resolve *address* through the variant chain, then the secondary provider."""
    attempts = 0
    for variant in address_variants(address):
        attempts += 1
        coords = _attempt(primary, variant)
        if coords is not None:
            return GeocodeOutcome(coords, provider=primary.name, variant=variant, attempts=attempts)
        logger.info("Geocode variant %r produced no match via %s", variant, primary.name)

    if secondary is not None and address.strip():
        attempts += 1
        coords = _attempt(secondary, address.strip())
        if coords is not None:
            return GeocodeOutcome(
                coords, provider=secondary.name, variant=address.strip(), attempts=attempts,
            )

    logger.warning("Geocoding exhausted for %r after %d attempts", address, attempts)
    return GeocodeOutcome(None, attempts=attempts)


class OpenWeatherGeocoder(GeocodingProvider):
    """OpenWeather direct geocoding, used as the secondary provider."""

    name = "openweather_geocoding"

    def __init__(self, api_key: str, timeout: Optional[float] = None):
        self.api_key = api_key
        self.url = "https://api.openweathermap.org/geo/1.0/direct"
        self.http = ProviderHTTPClient("openweather", timeout=timeout)

    def geocode(self, address: str) -> Optional[Coordinates]:
        if not self.api_key:
            raise UpstreamUnavailable("openweather", "OPENWEATHER_API_KEY not configured")
        params = {"q": address, "limit": 1, "appid": self.api_key}
        data = self.http.get_json("geocode", self.url, params)
        if isinstance(data, list) and data:
            first = data[0] or {}
            if first.get("lat") is not None and first.get("lon") is not None:
                return Coordinates(lat=float(first["lat"]), lon=float(first["lon"]))
        return None
