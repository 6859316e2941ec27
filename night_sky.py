"""
Night sky signal — Bortle dark-sky class from lightpollutionmap.app.

Two implementations of NightSkyProvider read the same value:
  - LightPollutionApiProvider: the JSON API (preferred, but frequently
    blocked with 403 for server-side callers)
  - LightPollutionPageProvider: the rendered map page, parsed with
    BeautifulSoup

FallbackNightSkyProvider tries them in order.  The Bortle class (1 darkest,
9 inner-city) is then banded into a 0-100 score; the sky brightness
(mag/arcsec²), when a source reports it, travels in the reading detail.

Page parsing strategies, in priority order:
  1. explicit numeric field (data-bortle attribute, #bortle / .bortle text)
  2. embedded script state ("bortle": 4 inside a <script> body)
  3. regex over the visible page text ("Bortle class 4")
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional

from bs4 import BeautifulSoup

from fit_trace import get_trace
from models import Coordinates, SignalReading, UpstreamUnavailable
from provider_http import ProviderHTTPClient
from providers import NightSkyProvider, SkyReading
from scoring_config import SCORING_MODEL, apply_max_bands

logger = logging.getLogger(__name__)

USER_AGENT = "ListingFit/1.0"

BORTLE_MIN = 1.0
BORTLE_MAX = 9.0

_NUMBER_RE = re.compile(r"([1-9](?:\.\d+)?)")
_SCRIPT_STATE_RE = re.compile(
    r"[\"']?bortle(?:_?class|Class|_?scale)?[\"']?\s*[:=]\s*[\"']?([1-9](?:\.\d+)?)",
    re.IGNORECASE,
)
_TEXT_RE = re.compile(
    r"Bortle(?:\s+(?:class|scale))?[^0-9]{0,20}([1-9](?:\.\d+)?)",
    re.IGNORECASE,
)
# e.g. "20.8 mag/arcsec²" or "21 mag/arcsec"
_SQM_RE = re.compile(r"([0-9]{2}(?:\.[0-9]{1,2})?)\s*mag/arcsec", re.IGNORECASE)


def _valid_bortle(value: Any) -> Optional[float]:
    try:
        b = float(value)
    except (TypeError, ValueError):
        return None
    if BORTLE_MIN <= b <= BORTLE_MAX:
        return b
    return None


def bortle_band(bortle: float):
    """Band (score, label) for a Bortle class."""
    return apply_max_bands(SCORING_MODEL.signals.bortle_bands, bortle)


# =============================================================================
# PAGE PARSING
# =============================================================================

@dataclass
class PageReading:
    bortle: Optional[float]
    strategy: str = ""
    sqm: Optional[float] = None  # sky brightness, mag/arcsec², when shown


def _from_explicit_field(soup: BeautifulSoup) -> Optional[float]:
    tagged = soup.find(attrs={"data-bortle": True})
    if tagged is not None:
        value = _valid_bortle(tagged.get("data-bortle"))
        if value is not None:
            return value
    for el in soup.select("#bortle, .bortle, .bortle-class, [itemprop=bortle]"):
        m = _NUMBER_RE.search(el.get_text(" ", strip=True))
        if m:
            value = _valid_bortle(m.group(1))
            if value is not None:
                return value
    return None


def _from_script_state(soup: BeautifulSoup) -> Optional[float]:
    for script in soup.find_all("script"):
        body = script.string or script.get_text() or ""
        m = _SCRIPT_STATE_RE.search(body)
        if m:
            value = _valid_bortle(m.group(1))
            if value is not None:
                return value
    return None


def _from_page_text(soup: BeautifulSoup) -> Optional[float]:
    for script in soup(["script", "style"]):
        script.decompose()
    m = _TEXT_RE.search(soup.get_text(" ", strip=True))
    return _valid_bortle(m.group(1)) if m else None


def parse_bortle_page(html: str) -> PageReading:
    """Extract the Bortle class from a rendered page, strategies in order."""
    soup = BeautifulSoup(html or "", "html.parser")
    sqm_match = _SQM_RE.search(soup.get_text(" ", strip=True))
    sqm = float(sqm_match.group(1)) if sqm_match else None

    for strategy, extract in (
        ("explicit_field", _from_explicit_field),
        ("script_state", _from_script_state),
        ("page_text", _from_page_text),
    ):
        value = extract(soup)
        if value is not None:
            return PageReading(bortle=value, strategy=strategy, sqm=sqm)
    return PageReading(bortle=None, sqm=sqm)


# =============================================================================
# PROVIDERS
# =============================================================================

def _bortle_from_json(data: Any) -> Optional[float]:
    if not isinstance(data, dict):
        return None
    for key in ("bortle", "bortleClass", "bortle_class"):
        if key in data:
            return _valid_bortle(data[key])
    nested = data.get("data")
    if isinstance(nested, dict):
        return _bortle_from_json(nested)
    return None


def _sqm_from_json(data: Any) -> Optional[float]:
    if not isinstance(data, dict):
        return None
    for key in ("sqm", "brightness", "mpsas"):
        if _is_number(data.get(key)):
            return float(data[key])
    nested = data.get("data")
    if isinstance(nested, dict):
        return _sqm_from_json(nested)
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class LightPollutionApiProvider(NightSkyProvider):
    name = "night_sky_api"

    def __init__(self, url: str, timeout: Optional[float] = None):
        self.url = url
        self.http = ProviderHTTPClient("lightpollutionmap", timeout=timeout, user_agent=USER_AGENT)

    def reading(self, location: Coordinates) -> Optional[SkyReading]:
        params = {"lat": location.lat, "lng": location.lon}
        data = self.http.get_json("api", self.url, params, headers={"Accept": "application/json"})
        bortle = _bortle_from_json(data)
        if bortle is None:
            return None
        return SkyReading(bortle=bortle, sqm=_sqm_from_json(data))

    def bortle(self, location: Coordinates) -> Optional[float]:
        reading = self.reading(location)
        return reading.bortle if reading else None


class LightPollutionPageProvider(NightSkyProvider):
    name = "night_sky_page"

    def __init__(self, url: str, timeout: Optional[float] = None):
        self.url = url
        self.http = ProviderHTTPClient("lightpollutionmap", timeout=timeout, user_agent=USER_AGENT)

    def reading(self, location: Coordinates) -> Optional[SkyReading]:
        params = {"lat": location.lat, "lng": location.lon}
        html = self.http.get_text("page", self.url, params)
        page = parse_bortle_page(html)
        if page.bortle is None:
            logger.warning(
                "No Bortle value on light pollution page for (%.2f, %.2f)",
                location.lat, location.lon,
            )
            return None
        logger.info(
            "Bortle %.1f read from page via %s (sqm=%s)",
            page.bortle, page.strategy, page.sqm,
        )
        return SkyReading(bortle=page.bortle, sqm=page.sqm)

    def bortle(self, location: Coordinates) -> Optional[float]:
        reading = self.reading(location)
        return reading.bortle if reading else None


class FallbackNightSkyProvider(NightSkyProvider):
    """Try each provider in order; the first parseable value wins."""

    name = "night_sky"

    def __init__(self, providers: List[NightSkyProvider]):
        self.providers = providers

    def reading(self, location: Coordinates) -> SkyReading:
        trace = get_trace()
        for provider in self.providers:
            try:
                reading = provider.reading(location)
            except UpstreamUnavailable as e:
                logger.warning("%s failed: %s; trying next source", provider.name, e)
                if trace:
                    trace.record_failure(provider.name, e)
                continue
            if reading is None:
                if trace:
                    trace.record_failure(provider.name, detail="no parseable Bortle value")
                continue
            if trace:
                trace.record_success(provider.name)
            return reading
        raise UpstreamUnavailable("night_sky", "no parseable Bortle value from any source")

    def bortle(self, location: Coordinates) -> Optional[float]:
        return self.reading(location).bortle


def sky_detail(reading: SkyReading) -> str:
    """'Bortle 4 · 20.85 mag/arcsec²', brightness only when known."""
    parts = [f"Bortle {reading.bortle:g}"]
    if reading.sqm is not None:
        parts.append(f"{reading.sqm:g} mag/arcsec²")
    return " · ".join(parts)


def fetch_night_sky_signal(provider: NightSkyProvider, location: Coordinates) -> SignalReading:
    """Read the Bortle class (and sky brightness) and band it.  Raises on failure."""
    reading = provider.reading(location)
    if reading is None:
        raise UpstreamUnavailable(provider.name, "no parseable Bortle value")
    band = bortle_band(reading.bortle)
    return SignalReading(
        score=band.score, label=band.label, raw=reading.bortle, detail=sky_detail(reading),
    )
