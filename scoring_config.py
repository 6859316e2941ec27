"""
Scoring model configuration for the listing fit engine.

Owns every numeric constant that affects either score: the tiered
thresholds for listing basics, the signal bands for sound / air / night
sky, the distance-to-score curve for proximity targets, and the weights
of the generic and personalized composites.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

from dataclasses import dataclass
from typing import Optional, Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class MinThreshold:
    """Score awarded when a value is >= min_value.

    Tiers are evaluated highest-first: the first entry whose
    min_value <= the value is used.
    """
    min_value: float
    score: float


@dataclass(frozen=True)
class MinLabel:
    """Qualitative label for values >= min_value (highest-first)."""
    min_value: float
    label: str


@dataclass(frozen=True)
class MaxBand:
    """Score (and label) awarded when a value is <= max_value.

    Bands are evaluated lowest-first: the first entry whose
    max_value >= the value is used.  The last band should use
    float("inf") as a catch-all.
    """
    max_value: float
    score: float
    label: str = ""


@dataclass(frozen=True)
class AttributeTiers:
    """Tiered thresholds for one listing attribute (beds, baths, ...)."""
    tiers: Tuple[MinThreshold, ...]
    fallback: float = 4.0  # score when below every tier


@dataclass(frozen=True)
class BasicsModel:
    beds: AttributeTiers
    baths: AttributeTiers
    sqft: AttributeTiers
    year_built: AttributeTiers
    default: float = 5.0  # no attribute present


@dataclass(frozen=True)
class GenericWeights:
    """Fixed weights of the generic (viewer-independent) score."""
    basics: float = 0.40
    schools: float = 0.30
    mobility: float = 0.20
    environment: float = 0.10
    environment_neutral: float = 5.0


@dataclass(frozen=True)
class PersonalizedWeights:
    """Additive weights of the personalized score.

    Each category is allocated only when active.  When any weight is left
    unallocated, schools and basics are added at their fixed remainder
    weights (2:1); the remainder is not renormalized.
    """
    targets: float = 0.40
    mobility: float = 0.25
    environment: float = 0.25
    remainder_schools: float = 0.20
    remainder_basics: float = 0.10


@dataclass(frozen=True)
class TargetModel:
    """Distance curve and coverage modifier for proximity targets."""
    distance_bands: Tuple[MaxBand, ...]
    unknown_score: float = 2.0       # target with no candidate found
    empty_list_score: float = 3.0    # targets requested but none resolved
    coverage_floor: float = 0.85     # modifier when nothing was found
    coverage_span: float = 0.15      # floor + span == 1.0 when all found
    # Closest-candidate routed re-check triggers
    recheck_over_miles: float = 5.0
    recheck_detour_ratio: float = 2.0
    max_places: int = 3


@dataclass(frozen=True)
class SignalModel:
    """Bands converting raw provider measurements into 0-100 scores."""
    sound_labels: Tuple["MinLabel", ...]
    sound_fallback_label: str
    air_bands: Tuple[MaxBand, ...]
    bortle_bands: Tuple[MaxBand, ...]


@dataclass(frozen=True)
class RecapTiers:
    """Distance buckets used by the template recap."""
    excellent_miles: float = 2.0
    convenient_miles: float = 5.0


@dataclass(frozen=True)
class ScoringModel:
    """Top-level container for all scoring parameters.

    A single module-level instance (SCORING_MODEL) is the source of truth.
    Bump `version` on every change that alters score outputs.
    """
    version: str
    basics: BasicsModel
    generic: GenericWeights
    personalized: PersonalizedWeights
    targets: TargetModel
    signals: SignalModel
    recap: RecapTiers
    neutral_subscore: float = 5.0  # schools / mobility default


# =============================================================================
# Pure scoring functions
# =============================================================================

def apply_min_thresholds(
    tiers: Tuple[MinThreshold, ...],
    value: float,
    fallback: float,
) -> float:
    """Return the score of the first tier whose min_value <= value."""
    for tier in tiers:
        if value >= tier.min_value:
            return tier.score
    return fallback


def apply_max_bands(bands: Tuple[MaxBand, ...], value: float) -> MaxBand:
    """Return the first band whose max_value >= value.

    Requires at least one band; values above every band fall into the last.
    """
    if not bands:
        raise ValueError("bands must not be empty")
    for band in bands:
        if value <= band.max_value:
            return band
    return bands[-1]


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def round_half_up(value: float) -> int:
    """Round to the nearest integer, .5 rounding up.

    Python's round() uses banker's rounding (round(84.5) -> 84), which
    makes boundary scores depend on parity.
    """
    return int(value + 0.5)


def to_top_level(score_0_10: float) -> int:
    """Rescale a 0-10 composite to an integer 0-100."""
    return int(clamp(round_half_up(score_0_10 * 10), 0, 100))


def rescale_0_100(value: Optional[float]) -> Optional[float]:
    """Rescale a 0-100 index to 0-10, or None when absent."""
    if value is None:
        return None
    return clamp(value / 10.0, 0.0, 10.0)


# =============================================================================
# SCORING_MODEL: current production values
# =============================================================================

_INF = float("inf")

_BASICS = BasicsModel(
    beds=AttributeTiers(
        tiers=(MinThreshold(4, 10), MinThreshold(3, 9), MinThreshold(2, 7)),
    ),
    baths=AttributeTiers(
        tiers=(MinThreshold(2, 10), MinThreshold(1.5, 8), MinThreshold(1, 6)),
    ),
    sqft=AttributeTiers(
        tiers=(MinThreshold(2200, 10), MinThreshold(1400, 8), MinThreshold(1000, 6)),
    ),
    year_built=AttributeTiers(
        tiers=(MinThreshold(2010, 10), MinThreshold(1990, 8), MinThreshold(1970, 6)),
    ),
)

# Sweet-spot curve: a moderate drive (0.5-2 mi) beats both "next door"
# and "across town".
_DISTANCE_BANDS = (
    MaxBand(0.1, 7),
    MaxBand(0.5, 9),
    MaxBand(2.0, 10),
    MaxBand(5.0, 8),
    MaxBand(10.0, 6),
    MaxBand(15.0, 4),
    MaxBand(_INF, 2),
)

_SOUND_LABELS = (
    MinLabel(85, "Excellent"),
    MinLabel(70, "Good"),
    MinLabel(55, "Okay"),
    MinLabel(40, "Not Great"),
)

# OpenWeather AQI: 1 Good, 2 Fair, 3 Moderate, 4 Poor, 5 Very Poor
_AIR_BANDS = (
    MaxBand(1.5, 90, "Good"),
    MaxBand(2.5, 75, "Okay"),
    MaxBand(3.5, 55, "Not Great"),
    MaxBand(_INF, 30, "Not Good"),
)

# Bortle 1 (darkest) .. 9 (inner city)
_BORTLE_BANDS = (
    MaxBand(2.99, 98, "Excellent"),
    MaxBand(3.99, 85, "Good"),
    MaxBand(4.99, 70, "Okay"),
    MaxBand(6.99, 45, "Not Great"),
    MaxBand(_INF, 20, "Not Good"),
)


SCORING_MODEL = ScoringModel(
    version="2.1.0",
    basics=_BASICS,
    generic=GenericWeights(),
    personalized=PersonalizedWeights(),
    targets=TargetModel(distance_bands=_DISTANCE_BANDS),
    signals=SignalModel(
        sound_labels=_SOUND_LABELS,
        sound_fallback_label="Not Good",
        air_bands=_AIR_BANDS,
        bortle_bands=_BORTLE_BANDS,
    ),
    recap=RecapTiers(),
)
