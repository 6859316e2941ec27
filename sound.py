"""
Sound signal — ambient noise score from the HowLoud Soundscore API.

HowLoud returns a 0-100 score directly (higher is quieter), so the only
conversion is the qualitative label.

Limitations:
  - Soundscore models traffic, airport and local sources; it does not
    reflect construction or transient events.
"""

import logging
from typing import Any, Optional

from models import Coordinates, SignalReading, UpstreamUnavailable
from provider_http import ProviderHTTPClient
from providers import SoundProvider
from scoring_config import SCORING_MODEL, clamp

logger = logging.getLogger(__name__)


def sound_label(score: float) -> str:
    """Qualitative label for a 0-100 sound score."""
    for band in SCORING_MODEL.signals.sound_labels:
        if score >= band.min_value:
            return band.label
    return SCORING_MODEL.signals.sound_fallback_label


def _extract_score(data: Any) -> Optional[float]:
    """Pull the score out of the response, tolerating known shape variants."""
    if isinstance(data, dict):
        for key in ("score", "Soundscore", "soundscore"):
            value = data.get(key)
            if value is not None:
                try:
                    return float(value)
                except (TypeError, ValueError):
                    return None
        result = data.get("result")
        if isinstance(result, list) and result:
            return _extract_score(result[0])
        if isinstance(result, dict):
            return _extract_score(result)
    return None


class HowLoudClient(SoundProvider):
    name = "howloud"

    def __init__(self, api_key: str, client_id: str, timeout: Optional[float] = None):
        self.api_key = api_key
        self.client_id = client_id
        self.url = "https://api.howloud.com/v1/soundscore"
        self.http = ProviderHTTPClient("howloud", timeout=timeout)

    def sound_score(self, location: Coordinates) -> float:
        if not self.api_key or not self.client_id:
            raise UpstreamUnavailable("howloud", "HOWLOUD_API_KEY / HOWLOUD_CLIENT_ID not configured")
        params = {"lat": location.lat, "lng": location.lon, "client_id": self.client_id}
        data = self.http.get_json("soundscore", self.url, params, headers={"x-api-key": self.api_key})
        score = _extract_score(data)
        if score is None:
            raise UpstreamUnavailable("howloud", "response has no numeric score")
        return score


def fetch_sound_signal(provider: SoundProvider, location: Coordinates) -> SignalReading:
    """Fetch and label the sound score.  Raises on provider failure."""
    raw = provider.sound_score(location)
    score = clamp(raw, 0.0, 100.0)
    return SignalReading(score=score, label=sound_label(score), raw=raw)
