"""
Air quality signal — trailing-year average of OpenWeather's categorical AQI.

Fetches the hourly Air Pollution History for the last 365 days and maps
the mean AQI onto a fixed 0-100 band.

Data source:
  - OpenWeather Air Pollution API, history endpoint
    (api.openweathermap.org/data/2.5/air_pollution/history)
  - AQI is categorical: 1 Good, 2 Fair, 3 Moderate, 4 Poor, 5 Very Poor

Limitations:
  - Modelled values on a coarse grid; a single busy road next to the
    property is not visible at this resolution.
"""

import logging
import math
import time
from typing import Callable, List, Optional

from models import Coordinates, SignalReading, UpstreamUnavailable
from provider_http import ProviderHTTPClient
from providers import AirQualityProvider
from scoring_config import SCORING_MODEL, apply_max_bands

logger = logging.getLogger(__name__)

_HISTORY_SECONDS = 365 * 24 * 60 * 60


def air_band(avg_aqi: float):
    """Band (score, label) for a mean AQI value."""
    return apply_max_bands(SCORING_MODEL.signals.air_bands, avg_aqi)


class OpenWeatherAirClient(AirQualityProvider):
    name = "openweather_air"

    def __init__(
        self,
        api_key: str,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.api_key = api_key
        self.url = "https://api.openweathermap.org/data/2.5/air_pollution/history"
        self.http = ProviderHTTPClient("openweather", timeout=timeout)
        self.clock = clock

    def aqi_history(self, location: Coordinates) -> List[float]:
        if not self.api_key:
            raise UpstreamUnavailable("openweather", "OPENWEATHER_API_KEY not configured")
        now = int(self.clock())
        params = {
            "lat": location.lat,
            "lon": location.lon,
            "start": now - _HISTORY_SECONDS,
            "end": now,
            "appid": self.api_key,
        }
        data = self.http.get_json("air_pollution_history", self.url, params)
        entries = data.get("list") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise UpstreamUnavailable("openweather", "air pollution history has no list")
        values = []
        for entry in entries:
            aqi = ((entry or {}).get("main") or {}).get("aqi")
            if isinstance(aqi, (int, float)) and not isinstance(aqi, bool):
                values.append(float(aqi))
        return values


def fetch_air_signal(provider: AirQualityProvider, location: Coordinates) -> SignalReading:
    """Average the hourly AQI history and band it.  Raises on failure."""
    values = [v for v in provider.aqi_history(location) if math.isfinite(v)]
    if not values:
        raise UpstreamUnavailable(provider.name, "no AQI values in the trailing year")
    avg_aqi = sum(values) / len(values)
    band = air_band(avg_aqi)
    return SignalReading(
        score=band.score,
        label=band.label,
        raw=round(avg_aqi, 2),
        detail=f"{len(values)} hourly readings",
    )
