"""
Mapping provider clients: Google Maps (geocoding, places search) and
Mapbox (distance matrix, point-to-point directions).

Requirements:
- Google Maps API key (Geocoding and Places Text Search)
- Mapbox access token (Matrix and Directions APIs)
"""

import logging
import math
from typing import List, Optional

from models import Coordinates, UpstreamUnavailable
from provider_http import ProviderHTTPClient
from providers import (
    DistanceMatrixProvider,
    GeocodingProvider,
    PlaceCandidate,
    PlacesProvider,
    RoutingProvider,
)

logger = logging.getLogger(__name__)

METERS_PER_MILE = 1609.344
EARTH_RADIUS_MILES = 3958.8


def meters_to_miles(meters: float) -> float:
    return meters / METERS_PER_MILE


def haversine_miles(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance in miles."""
    lat1, lon1 = math.radians(a.lat), math.radians(a.lon)
    lat2, lon2 = math.radians(b.lat), math.radians(b.lon)

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * math.asin(math.sqrt(h))


def google_place_link(place_id: str) -> str:
    return f"https://www.google.com/maps/place/?q=place_id:{place_id}" if place_id else ""


class GoogleMapsClient(GeocodingProvider, PlacesProvider):
    """Client for Google Maps APIs"""

    name = "google_maps"

    # Text Search returns at most 20 results per page; one page is enough
    # to pick the closest three.
    MAX_SEARCH_RESULTS = 20

    def __init__(self, api_key: str, timeout: Optional[float] = None):
        self.api_key = api_key
        self.base_url = "https://maps.googleapis.com/maps/api"
        self.http = ProviderHTTPClient("google_maps", timeout=timeout)

    def geocode(self, address: str) -> Optional[Coordinates]:
        """Convert address to lat/lon coordinates, or None on ZERO_RESULTS."""
        if not self.api_key:
            raise UpstreamUnavailable("google_maps", "GOOGLE_MAPS_API_KEY not configured")
        url = f"{self.base_url}/geocode/json"
        params = {"address": address, "key": self.api_key}
        data = self.http.get_json("geocode", url, params)

        status = data.get("status")
        if status == "ZERO_RESULTS":
            return None
        if status != "OK" or not data.get("results"):
            raise UpstreamUnavailable("google_maps", f"Geocoding failed: {status}")

        location = data["results"][0]["geometry"]["location"]
        return Coordinates(lat=location["lat"], lon=location["lng"])

    def search(self, query: str, near: Coordinates, limit: int) -> List[PlaceCandidate]:
        """Search for places using a text query near a location"""
        if not self.api_key:
            raise UpstreamUnavailable("google_maps", "GOOGLE_MAPS_API_KEY not configured")
        url = f"{self.base_url}/place/textsearch/json"
        params = {
            "query": query,
            "location": f"{near.lat},{near.lon}",
            "radius": 50000,
            "key": self.api_key,
        }
        data = self.http.get_json("text_search", url, params)

        status = data.get("status")
        if status not in ["OK", "ZERO_RESULTS"]:
            raise UpstreamUnavailable("google_maps", f"Text Search API failed: {status}")

        candidates = []
        for place in data.get("results", [])[:min(limit, self.MAX_SEARCH_RESULTS)]:
            location = (place.get("geometry") or {}).get("location") or {}
            if location.get("lat") is None or location.get("lng") is None:
                continue
            place_id = place.get("place_id", "")
            candidates.append(PlaceCandidate(
                name=place.get("name", ""),
                address=place.get("formatted_address", place.get("vicinity", "")),
                location=Coordinates(lat=location["lat"], lon=location["lng"]),
                provider_id=place_id,
                external_link=google_place_link(place_id),
            ))
        return candidates


def _mapbox_coords(points: List[Coordinates]) -> str:
    # Mapbox expects lon,lat pairs separated by semicolons.
    return ";".join(f"{p.lon},{p.lat}" for p in points)


class MapboxClient(DistanceMatrixProvider, RoutingProvider):
    """Client for the Mapbox Matrix and Directions APIs (driving profile)."""

    name = "mapbox"

    # The Matrix API accepts up to 25 coordinates per request, origin included.
    MATRIX_MAX_COORDINATES = 25

    def __init__(self, access_token: str, timeout: Optional[float] = None, profile: str = "driving"):
        self.access_token = access_token
        self.profile = profile
        self.base_url = "https://api.mapbox.com"
        self.http = ProviderHTTPClient("mapbox", timeout=timeout)

    def distances_from(
        self,
        origin: Coordinates,
        destinations: List[Coordinates],
    ) -> List[Optional[float]]:
        """One batched matrix request; row 0 includes origin -> origin."""
        if not self.access_token:
            raise UpstreamUnavailable("mapbox", "MAPBOX_ACCESS_TOKEN not configured")
        if not destinations:
            return [0.0]
        if len(destinations) + 1 > self.MATRIX_MAX_COORDINATES:
            raise ValueError(
                f"matrix request limited to {self.MATRIX_MAX_COORDINATES - 1} destinations"
            )

        coords = _mapbox_coords([origin] + list(destinations))
        url = f"{self.base_url}/directions-matrix/v1/mapbox/{self.profile}/{coords}"
        params = {
            "sources": "0",
            "annotations": "distance",
            "access_token": self.access_token,
        }
        data = self.http.get_json("matrix", url, params)

        if data.get("code") != "Ok":
            raise UpstreamUnavailable("mapbox", f"Matrix API failed: {data.get('code')}")
        rows = data.get("distances") or []
        if not rows or len(rows[0]) != len(destinations) + 1:
            raise UpstreamUnavailable("mapbox", "Matrix API returned a malformed distance row")
        return [None if d is None else float(d) for d in rows[0]]

    def route_distance(self, origin: Coordinates, dest: Coordinates) -> Optional[float]:
        """Routed driving distance in meters between two points."""
        if not self.access_token:
            raise UpstreamUnavailable("mapbox", "MAPBOX_ACCESS_TOKEN not configured")
        coords = _mapbox_coords([origin, dest])
        url = f"{self.base_url}/directions/v5/mapbox/{self.profile}/{coords}"
        params = {
            "overview": "false",
            "alternatives": "false",
            "access_token": self.access_token,
        }
        data = self.http.get_json("directions", url, params)

        code = data.get("code")
        if code == "NoRoute":
            return None
        if code != "Ok":
            raise UpstreamUnavailable("mapbox", f"Directions API failed: {code}")
        routes = data.get("routes") or []
        if not routes or routes[0].get("distance") is None:
            return None
        return float(routes[0]["distance"])
