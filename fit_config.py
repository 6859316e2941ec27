"""
Engine configuration for the listing fit engine.

Credentials and endpoints are read once (from the environment, after
loading a local .env) into a frozen EngineConfig that is injected into
FitEngine at construction time.  Nothing else in the package reads
os.environ directly.
"""

import os
from dataclasses import dataclass
from typing import Dict, List, Optional

from dotenv import load_dotenv

# Config attribute -> environment variable, for credentials only.
_CREDENTIAL_ENV_NAMES: Dict[str, str] = {
    "google_maps_api_key": "GOOGLE_MAPS_API_KEY",
    "mapbox_access_token": "MAPBOX_ACCESS_TOKEN",
    "openweather_api_key": "OPENWEATHER_API_KEY",
    "howloud_api_key": "HOWLOUD_API_KEY",
    "howloud_client_id": "HOWLOUD_CLIENT_ID",
    "openai_api_key": "OPENAI_API_KEY",
}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class EngineConfig:
    """Provider credentials, endpoints and timeouts.

    Read-only after construction, so a single instance is safely shared
    by every concurrent task of every request.
    """
    google_maps_api_key: str = ""
    mapbox_access_token: str = ""
    openweather_api_key: str = ""
    howloud_api_key: str = ""
    howloud_client_id: str = ""
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_timeout_s: float = 12.0

    # Per-call timeout (seconds) for every outbound HTTP request.
    request_timeout_s: float = 10.0
    # Upper bound on the concurrent signals/targets join.
    stage_timeout_s: float = 30.0
    # POI candidates requested per target; matrix calls allow 25 coords
    # including the origin.
    candidate_pool: int = 10
    max_workers: int = 64

    light_pollution_api_url: str = "https://lightpollutionmap.app/api/bortle"
    light_pollution_page_url: str = "https://lightpollutionmap.app/"

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "EngineConfig":
        """Build a config from environment variables (and .env if present)."""
        load_dotenv(dotenv_path)
        return cls(
            google_maps_api_key=os.environ.get("GOOGLE_MAPS_API_KEY", ""),
            mapbox_access_token=os.environ.get("MAPBOX_ACCESS_TOKEN", ""),
            openweather_api_key=os.environ.get("OPENWEATHER_API_KEY", ""),
            howloud_api_key=os.environ.get("HOWLOUD_API_KEY", ""),
            howloud_client_id=os.environ.get("HOWLOUD_CLIENT_ID", ""),
            openai_api_key=os.environ.get("OPENAI_API_KEY", ""),
            openai_model=os.environ.get("OPENAI_MODEL", "gpt-4o-mini"),
            openai_timeout_s=_env_int("OPENAI_TIMEOUT_MS", 12000) / 1000.0,
            request_timeout_s=_env_float("FIT_REQUEST_TIMEOUT", 10.0),
            stage_timeout_s=_env_float("FIT_STAGE_TIMEOUT", 30.0),
            candidate_pool=_env_int("FIT_CANDIDATE_POOL", 10),
            max_workers=_env_int("FIT_MAX_WORKERS", 64),
            light_pollution_api_url=os.environ.get(
                "LIGHT_POLLUTION_API_URL", "https://lightpollutionmap.app/api/bortle",
            ),
            light_pollution_page_url=os.environ.get(
                "LIGHT_POLLUTION_PAGE_URL", "https://lightpollutionmap.app/",
            ),
        )

    def missing_keys(self) -> List[str]:
        """Environment variable names of credentials that are not set."""
        return [
            env_name
            for attr, env_name in _CREDENTIAL_ENV_NAMES.items()
            if not getattr(self, attr)
        ]
