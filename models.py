"""
Request and result types for the listing fit engine.

Everything here is created fresh per request and discarded once the
result has been serialized; the engine keeps no state between requests.

parse_request() is the only place request JSON is interpreted.  It either
returns a fully-typed FitRequest or raises InputValidationError, which is
the one error class surfaced to callers.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

MOBILITY_SIGNALS = ("walk", "bike", "transit")
ENVIRONMENTAL_PREFS = ("airQuality", "soundScore", "stargazeScore")


# =============================================================================
# ERRORS
# =============================================================================

class FitEngineError(Exception):
    """Base class for engine errors."""


class InputValidationError(FitEngineError):
    """The request is missing or has malformed listing/preference fields."""


class UpstreamUnavailable(FitEngineError):
    """A single provider call failed, timed out, or returned a non-success status."""

    def __init__(self, provider: str, detail: str = ""):
        self.provider = provider
        self.detail = detail
        super().__init__(f"{provider} unavailable: {detail}" if detail else f"{provider} unavailable")


class GeocodingExhausted(FitEngineError):
    """Every address variant and provider failed to geocode."""


class RecapGenerationFailure(FitEngineError):
    """The generative-text provider failed; the template recap is used instead."""


class EvaluationCancelled(FitEngineError):
    """The caller cancelled the evaluation before it completed."""


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class Coordinates:
    lat: float
    lon: float


@dataclass
class ListingBasics:
    beds: Optional[float] = None
    baths: Optional[float] = None
    sqft: Optional[float] = None
    year_built: Optional[int] = None


@dataclass
class SchoolRating:
    label: str
    score: float  # 0-10


@dataclass
class MobilityIndices:
    walk: Optional[float] = None     # 0-100
    bike: Optional[float] = None
    transit: Optional[float] = None

    def get(self, signal: str) -> Optional[float]:
        return getattr(self, signal)


@dataclass
class PlaceResult:
    name: str
    address: str
    distance_miles: float
    external_link: str = ""
    provider_id: str = ""


@dataclass
class ProximityTarget:
    label: str
    max_distance_miles: float
    distance_miles: Optional[float] = None
    places: List[PlaceResult] = field(default_factory=list)  # closest first, <= 3

    @property
    def found(self) -> bool:
        """True when at least one candidate (or a known distance) exists."""
        return bool(self.places) or self.distance_miles is not None


@dataclass
class ScoredTarget:
    target: ProximityTarget
    score: float  # 0-10


@dataclass
class SignalReading:
    """One environmental signal: normalized 0-100 score plus label."""
    score: float
    label: str
    raw: Optional[float] = None  # provider measurement before banding
    detail: str = ""


@dataclass
class EnvironmentSignals:
    sound_score: Optional[float] = None
    sound_label: Optional[str] = None
    air_score: Optional[float] = None
    air_label: Optional[str] = None
    stargaze_score: Optional[float] = None
    stargaze_label: Optional[str] = None

    def score_for(self, pref: str) -> Optional[float]:
        """0-100 score for an environmental preference key."""
        return {
            "soundScore": self.sound_score,
            "airQuality": self.air_score,
            "stargazeScore": self.stargaze_score,
        }.get(pref)


@dataclass
class ListingInput:
    address: str
    coordinates: Optional[Coordinates] = None
    basics: ListingBasics = field(default_factory=ListingBasics)
    schools: List[SchoolRating] = field(default_factory=list)
    mobility: MobilityIndices = field(default_factory=MobilityIndices)
    environment: EnvironmentSignals = field(default_factory=EnvironmentSignals)
    targets: List[ProximityTarget] = field(default_factory=list)


@dataclass
class PlaceTargetPreference:
    label: str
    max_distance_miles: float


@dataclass
class UserPreferences:
    place_targets: List[PlaceTargetPreference] = field(default_factory=list)
    mobility_signals: List[str] = field(default_factory=list)
    environmental_prefs: List[str] = field(default_factory=list)
    notes: str = ""

    @property
    def is_empty(self) -> bool:
        """No place targets, mobility selections, or environmental preferences."""
        return not (self.place_targets or self.mobility_signals or self.environmental_prefs)


@dataclass
class FitRequest:
    listing: ListingInput
    prefs: UserPreferences


@dataclass
class ScoreResult:
    basic_score: int
    personalized_score: int
    recap: str
    scored_targets: List[ScoredTarget] = field(default_factory=list)
    is_personalized: bool = False
    environment: EnvironmentSignals = field(default_factory=EnvironmentSignals)
    coordinates: Optional[Coordinates] = None
    diagnostics: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# PARSING
# =============================================================================

def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _optional_number(obj: Dict[str, Any], key: str, where: str) -> Optional[float]:
    value = obj.get(key)
    if value is None:
        return None
    if not _is_number(value):
        raise InputValidationError(f"{where}.{key} must be a number")
    return value


def _require_dict(value: Any, where: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise InputValidationError(f"{where} must be an object")
    return value


def _optional_dict(obj: Dict[str, Any], key: str, where: str) -> Dict[str, Any]:
    value = obj.get(key)
    if value is None:
        return {}
    return _require_dict(value, f"{where}.{key}")


def _optional_list(obj: Dict[str, Any], key: str, where: str) -> List[Any]:
    value = obj.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise InputValidationError(f"{where}.{key} must be a list")
    return value


def _parse_coordinates(listing: Dict[str, Any]) -> Optional[Coordinates]:
    # Older payloads put lat/lon directly on the listing.
    raw = listing.get("coordinates")
    if raw is None and ("lat" in listing or "lon" in listing):
        raw = {"lat": listing.get("lat"), "lon": listing.get("lon")}
    if raw is None:
        return None
    raw = _require_dict(raw, "listing.coordinates")
    lat = raw.get("lat")
    lon = raw.get("lon", raw.get("lng"))
    if lat is None and lon is None:
        return None
    if not (_is_number(lat) and _is_number(lon)):
        raise InputValidationError("listing.coordinates requires numeric lat and lon")
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        raise InputValidationError("listing.coordinates out of range")
    return Coordinates(lat=float(lat), lon=float(lon))


def _parse_place_target(raw: Any, where: str) -> PlaceTargetPreference:
    raw = _require_dict(raw, where)
    label = raw.get("label")
    if not isinstance(label, str) or not label.strip():
        raise InputValidationError(f"{where}.label is required")
    max_distance = raw.get("maxDistanceMiles")
    if not _is_number(max_distance) or max_distance <= 0:
        raise InputValidationError(f"{where}.maxDistanceMiles must be a positive number")
    return PlaceTargetPreference(label=label.strip(), max_distance_miles=float(max_distance))


def _parse_listing_target(raw: Any, where: str) -> ProximityTarget:
    pref = _parse_place_target(raw, where)
    distance = _optional_number(raw, "distanceMiles", where)
    if distance is not None and distance < 0:
        raise InputValidationError(f"{where}.distanceMiles must be >= 0")
    places = []
    for i, p in enumerate(_optional_list(raw, "places", where)):
        p = _require_dict(p, f"{where}.places[{i}]")
        p_distance = _optional_number(p, "distanceMiles", f"{where}.places[{i}]")
        if p_distance is None or p_distance < 0:
            raise InputValidationError(f"{where}.places[{i}].distanceMiles must be >= 0")
        places.append(PlaceResult(
            name=str(p.get("name", "")),
            address=str(p.get("address", "")),
            distance_miles=float(p_distance),
            external_link=str(p.get("externalLink", "")),
            provider_id=str(p.get("providerId", "")),
        ))
    places.sort(key=lambda p: p.distance_miles)
    return ProximityTarget(
        label=pref.label,
        max_distance_miles=pref.max_distance_miles,
        distance_miles=distance,
        places=places[:3],
    )


def _parse_listing(raw: Any) -> ListingInput:
    listing = _require_dict(raw, "listing")
    address = listing.get("address", "")
    if not isinstance(address, str):
        raise InputValidationError("listing.address must be a string")
    coordinates = _parse_coordinates(listing)
    if not address.strip() and coordinates is None:
        raise InputValidationError("listing.address or listing.coordinates is required")

    basics_raw = _optional_dict(listing, "basics", "listing")
    year = _optional_number(basics_raw, "yearBuilt", "listing.basics")
    if year is None:
        year = _optional_number(basics_raw, "year", "listing.basics")
    basics = ListingBasics(
        beds=_optional_number(basics_raw, "beds", "listing.basics"),
        baths=_optional_number(basics_raw, "baths", "listing.basics"),
        sqft=_optional_number(basics_raw, "sqft", "listing.basics"),
        year_built=int(year) if year is not None else None,
    )

    schools = []
    for i, s in enumerate(_optional_list(listing, "schools", "listing")):
        s = _require_dict(s, f"listing.schools[{i}]")
        score = s.get("score")
        if not _is_number(score):
            raise InputValidationError(f"listing.schools[{i}].score must be a number")
        schools.append(SchoolRating(label=str(s.get("label", "")), score=float(score)))

    mobility_raw = _optional_dict(listing, "mobility", "listing")
    mobility = MobilityIndices(**{
        signal: _optional_number(mobility_raw, signal, "listing.mobility")
        for signal in MOBILITY_SIGNALS
    })

    targets = [
        _parse_listing_target(t, f"listing.targets[{i}]")
        for i, t in enumerate(_optional_list(listing, "targets", "listing"))
    ]

    return ListingInput(
        address=address.strip(),
        coordinates=coordinates,
        basics=basics,
        schools=schools,
        mobility=mobility,
        targets=targets,
    )


def _parse_choices(obj: Dict[str, Any], key: str, allowed: tuple) -> List[str]:
    chosen = []
    for value in _optional_list(obj, key, "prefs"):
        if value not in allowed:
            raise InputValidationError(
                f"prefs.{key} contains unknown value {value!r}; expected one of {', '.join(allowed)}"
            )
        if value not in chosen:
            chosen.append(value)
    return chosen


def _parse_place_targets(prefs: Dict[str, Any]) -> List[PlaceTargetPreference]:
    """One target per label, compared case-insensitively; the first wins."""
    targets: List[PlaceTargetPreference] = []
    seen = set()
    for i, raw in enumerate(_optional_list(prefs, "placeTargets", "prefs")):
        target = _parse_place_target(raw, f"prefs.placeTargets[{i}]")
        if target.label.casefold() in seen:
            continue
        seen.add(target.label.casefold())
        targets.append(target)
    return targets


def _parse_prefs(raw: Any) -> UserPreferences:
    prefs = _require_dict(raw, "prefs")
    notes = prefs.get("notes", prefs.get("extraFocusNotes")) or ""
    if not isinstance(notes, str):
        raise InputValidationError("prefs.notes must be a string")
    return UserPreferences(
        place_targets=_parse_place_targets(prefs),
        mobility_signals=_parse_choices(prefs, "mobilitySignals", MOBILITY_SIGNALS),
        environmental_prefs=_parse_choices(prefs, "environmentalPrefs", ENVIRONMENTAL_PREFS),
        notes=notes.strip(),
    )


def parse_request(body: Any) -> FitRequest:
    """Validate a request body and build a FitRequest.

    Raises InputValidationError on any missing or malformed field; no
    partial request is ever returned.
    """
    body = _require_dict(body, "request")
    if "listing" not in body:
        raise InputValidationError("listing is required")
    if "prefs" not in body:
        raise InputValidationError("prefs is required")
    return FitRequest(listing=_parse_listing(body["listing"]), prefs=_parse_prefs(body["prefs"]))


# =============================================================================
# SERIALIZATION
# =============================================================================

def _round(value: Optional[float], digits: int = 2) -> Optional[float]:
    return None if value is None else round(value, digits)


def place_to_dict(place: PlaceResult) -> Dict[str, Any]:
    return {
        "name": place.name,
        "address": place.address,
        "distanceMiles": _round(place.distance_miles),
        "externalLink": place.external_link,
        "providerId": place.provider_id,
    }


def scored_target_to_dict(scored: ScoredTarget) -> Dict[str, Any]:
    t = scored.target
    return {
        "label": t.label,
        "maxDistanceMiles": t.max_distance_miles,
        "distanceMiles": _round(t.distance_miles),
        "places": [place_to_dict(p) for p in t.places],
        "score": scored.score,
    }


def environment_to_dict(env: EnvironmentSignals) -> Dict[str, Any]:
    return {
        "soundScore": env.sound_score,
        "soundLabel": env.sound_label,
        "airScore": env.air_score,
        "airLabel": env.air_label,
        "stargazeScore": env.stargaze_score,
        "stargazeLabel": env.stargaze_label,
    }


def result_to_dict(result: ScoreResult) -> Dict[str, Any]:
    """Serialize a ScoreResult to the JSON response shape (camelCase keys)."""
    coords = result.coordinates
    return {
        "basicScore": result.basic_score,
        "personalizedScore": result.personalized_score,
        "recap": result.recap,
        "scoredTargets": [scored_target_to_dict(s) for s in result.scored_targets],
        "isPersonalized": result.is_personalized,
        "environment": environment_to_dict(result.environment),
        "coordinates": {"lat": coords.lat, "lon": coords.lon} if coords else None,
        "diagnostics": result.diagnostics,
    }
