"""Abstract provider interfaces consumed by the fit engine.

Each external collaborator sits behind one of these ABCs so production
clients and test doubles are interchangeable.  Implementations raise
UpstreamUnavailable (or let requests exceptions propagate) on failure;
the caller decides how a failure degrades the result.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from models import Coordinates


@dataclass
class PlaceCandidate:
    """A point of interest returned by a places search, before distances."""
    name: str
    address: str
    location: Coordinates
    provider_id: str = ""
    external_link: str = ""


@dataclass
class SkyReading:
    bortle: float
    sqm: Optional[float] = None  # sky brightness, mag/arcsec², when reported


class GeocodingProvider(ABC):
    name = "geocoder"

    @abstractmethod
    def geocode(self, address: str) -> Optional[Coordinates]:
        """Resolve an address, or None when the provider has no match."""
        ...


class PlacesProvider(ABC):
    name = "places"

    @abstractmethod
    def search(self, query: str, near: Coordinates, limit: int) -> List[PlaceCandidate]:
        """Points of interest matching *query*, biased toward *near*."""
        ...


class DistanceMatrixProvider(ABC):
    name = "distance_matrix"

    @abstractmethod
    def distances_from(
        self,
        origin: Coordinates,
        destinations: List[Coordinates],
    ) -> List[Optional[float]]:
        """Routed distances in meters from *origin*.

        The request is [origin] + destinations, so the returned row has
        len(destinations) + 1 entries and entry 0 is origin -> origin.
        Unroutable entries are None.
        """
        ...


class RoutingProvider(ABC):
    name = "routing"

    @abstractmethod
    def route_distance(self, origin: Coordinates, dest: Coordinates) -> Optional[float]:
        """Point-to-point routed distance in meters, or None when no route."""
        ...


class SoundProvider(ABC):
    name = "sound"

    @abstractmethod
    def sound_score(self, location: Coordinates) -> float:
        """Raw 0-100 sound score (higher is quieter)."""
        ...


class AirQualityProvider(ABC):
    name = "air_quality"

    @abstractmethod
    def aqi_history(self, location: Coordinates) -> List[float]:
        """Hourly categorical AQI values (1-5) over the trailing year."""
        ...


class NightSkyProvider(ABC):
    name = "night_sky"

    @abstractmethod
    def bortle(self, location: Coordinates) -> Optional[float]:
        """Bortle class 1-9, or None when no value could be read."""
        ...

    def reading(self, location: Coordinates) -> Optional[SkyReading]:
        """Bortle class plus sky brightness where the source reports it."""
        value = self.bortle(location)
        return None if value is None else SkyReading(bortle=value)


class TextGenerationProvider(ABC):
    name = "text_generation"

    @abstractmethod
    def complete(self, prompt: str, max_tokens: int, temperature: float) -> str:
        ...


@dataclass
class ProviderSet:
    """Every collaborator the engine talks to, injected at construction."""
    geocoder: GeocodingProvider
    places: PlacesProvider
    distance_matrix: DistanceMatrixProvider
    routing: RoutingProvider
    sound: SoundProvider
    air_quality: AirQualityProvider
    night_sky: NightSkyProvider
    text_generation: Optional[TextGenerationProvider] = None
    secondary_geocoder: Optional[GeocodingProvider] = None
