"""
Score composer — generic and personalized composites from the same inputs.

Every sub-score is on a 0-10 scale; only the two composites are rescaled
to integers 0-100.  Constants live in scoring_config.SCORING_MODEL.

Generic score (any viewer):
    0.40 basics + 0.30 schools + 0.20 mobility + 0.10 neutral environment

Personalized score (one user's preferences), built additively:
    0.40 targets      if any place targets were requested
    0.25 mobility     if any mobility signal was selected
    0.25 environment  if any environmental preference has a value
    + 0.20 schools + 0.10 basics whenever weight is left unallocated
The remainder split is fixed at 2:1 and is not renormalized, so the
applied weights can sum to more or less than 1.0; the sum is reported in
diagnostics.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from models import (
    EnvironmentSignals,
    ListingBasics,
    ListingInput,
    MobilityIndices,
    ProximityTarget,
    SchoolRating,
    ScoredTarget,
    UserPreferences,
)
from proximity import distance_to_target_score
from scoring_config import (
    SCORING_MODEL,
    apply_min_thresholds,
    clamp,
    rescale_0_100,
    to_top_level,
)

logger = logging.getLogger(__name__)

# Floating-point slack when deciding whether any weight is unallocated.
_WEIGHT_EPSILON = 1e-9


def _mean(values: List[float]) -> float:
    return sum(values) / len(values)


# =============================================================================
# Sub-scores (0-10)
# =============================================================================

def score_basics(basics: ListingBasics) -> float:
    """Mean of the tiered beds / baths / sqft / year-built scores present."""
    model = SCORING_MODEL.basics
    scores = []
    for value, tiers in (
        (basics.beds, model.beds),
        (basics.baths, model.baths),
        (basics.sqft, model.sqft),
        (basics.year_built, model.year_built),
    ):
        if value is not None:
            scores.append(apply_min_thresholds(tiers.tiers, value, tiers.fallback))
    return _mean(scores) if scores else model.default


def score_schools(schools: List[SchoolRating]) -> float:
    values = [clamp(s.score, 0.0, 10.0) for s in schools]
    return _mean(values) if values else SCORING_MODEL.neutral_subscore


def score_mobility_generic(mobility: MobilityIndices) -> float:
    """Mean of every walk / bike / transit index present."""
    values = [
        rescale_0_100(v)
        for v in (mobility.walk, mobility.bike, mobility.transit)
        if v is not None
    ]
    return _mean(values) if values else SCORING_MODEL.neutral_subscore


def score_mobility_personalized(mobility: MobilityIndices, signals: List[str]) -> float:
    """Mean of only the indices the user selected (and the listing has)."""
    values = [
        rescale_0_100(mobility.get(signal))
        for signal in signals
        if mobility.get(signal) is not None
    ]
    return _mean(values) if values else SCORING_MODEL.neutral_subscore


def score_environment_personalized(
    env: EnvironmentSignals,
    prefs: List[str],
) -> Optional[float]:
    """Mean of the opted-in signals that have a value.

    None (not a default) when nothing opted-in has a value, so the
    category drops out of the personalized weighting entirely.
    """
    values = [
        rescale_0_100(env.score_for(pref))
        for pref in prefs
        if env.score_for(pref) is not None
    ]
    return _mean(values) if values else None


def coverage_modifier(targets: List[ProximityTarget]) -> float:
    """0.85 when no target found a candidate, 1.0 when all did."""
    model = SCORING_MODEL.targets
    if not targets:
        return model.coverage_floor
    found = sum(1 for t in targets if t.found)
    return model.coverage_floor + model.coverage_span * (found / len(targets))


def score_targets(targets: List[ProximityTarget]) -> List[ScoredTarget]:
    return [ScoredTarget(target=t, score=distance_to_target_score(t.distance_miles)) for t in targets]


def score_targets_personalized(scored: List[ScoredTarget]) -> float:
    """Mean curve score times the coverage modifier; 3 when nothing resolved."""
    if not scored:
        return SCORING_MODEL.targets.empty_list_score
    mean = _mean([s.score for s in scored])
    return mean * coverage_modifier([s.target for s in scored])


# =============================================================================
# Composites
# =============================================================================

@dataclass
class CompositeScores:
    basic_score: int
    personalized_score: int
    is_personalized: bool
    scored_targets: List[ScoredTarget] = field(default_factory=list)
    sub_scores: Dict[str, Optional[float]] = field(default_factory=dict)
    weights: Dict[str, float] = field(default_factory=dict)


def generic_composite(basics: float, schools: float, mobility: float) -> float:
    w = SCORING_MODEL.generic
    return (
        w.basics * basics
        + w.schools * schools
        + w.mobility * mobility
        + w.environment * w.environment_neutral
    )


def personalized_weights(
    prefs: UserPreferences,
    environment_score: Optional[float],
) -> Dict[str, float]:
    """Weights applied to each active sub-score (see module docstring)."""
    w = SCORING_MODEL.personalized
    weights: Dict[str, float] = {}
    if prefs.place_targets:
        weights["targets"] = w.targets
    if prefs.mobility_signals:
        weights["mobility"] = w.mobility
    if prefs.environmental_prefs and environment_score is not None:
        weights["environment"] = w.environment
    if 1.0 - sum(weights.values()) > _WEIGHT_EPSILON:
        weights["schools"] = w.remainder_schools
        weights["basics"] = w.remainder_basics
    return weights


def compose_scores(
    listing: ListingInput,
    environment: EnvironmentSignals,
    prefs: UserPreferences,
    targets: List[ProximityTarget],
) -> CompositeScores:
    """Build both composites.  Pure: identical inputs give identical output."""
    basics = score_basics(listing.basics)
    schools = score_schools(listing.schools)
    mobility_generic = score_mobility_generic(listing.mobility)
    scored = score_targets(targets)

    basic_score = to_top_level(generic_composite(basics, schools, mobility_generic))

    sub_scores: Dict[str, Optional[float]] = {
        "basics": basics,
        "schools": schools,
        "mobilityGeneric": mobility_generic,
        "environmentNeutral": SCORING_MODEL.generic.environment_neutral,
    }

    if prefs.is_empty:
        return CompositeScores(
            basic_score=basic_score,
            personalized_score=basic_score,
            is_personalized=False,
            scored_targets=scored,
            sub_scores=sub_scores,
            weights={},
        )

    personal = {
        "targets": score_targets_personalized(scored) if prefs.place_targets else None,
        "mobility": (
            score_mobility_personalized(listing.mobility, prefs.mobility_signals)
            if prefs.mobility_signals else None
        ),
        "environment": score_environment_personalized(environment, prefs.environmental_prefs),
        "schools": schools,
        "basics": basics,
    }
    weights = personalized_weights(prefs, personal["environment"])
    total = sum(weight * personal[name] for name, weight in weights.items())
    personalized_score = to_top_level(total)

    sub_scores.update({
        "targetsPersonalized": personal["targets"],
        "coverageModifier": coverage_modifier(targets) if prefs.place_targets and scored else None,
        "mobilityPersonalized": personal["mobility"],
        "environmentPersonalized": personal["environment"],
    })
    weights_sum = sum(weights.values())
    if abs(weights_sum - 1.0) > _WEIGHT_EPSILON:
        logger.info(
            "Personalized weights sum to %.2f (%s); remainder is not renormalized",
            weights_sum, ", ".join(sorted(weights)),
        )

    return CompositeScores(
        basic_score=basic_score,
        personalized_score=personalized_score,
        is_personalized=True,
        scored_targets=scored,
        sub_scores=sub_scores,
        weights=weights,
    )
