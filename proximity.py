"""
Proximity resolver — distance from the listing to user-chosen place types.

For each target label: search for matching places near the listing, price
every candidate with one batched matrix call, keep the closest three, and
re-check the closest with a routed directions call when the batched value
looks unreliable.

A target's work is sequential (search -> matrix -> optional directions);
separate targets run concurrently under the orchestrator.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from maps_client import haversine_miles, meters_to_miles
from models import (
    Coordinates,
    EvaluationCancelled,
    PlaceResult,
    ProximityTarget,
    UpstreamUnavailable,
)
from providers import DistanceMatrixProvider, PlaceCandidate, PlacesProvider, RoutingProvider
from scoring_config import SCORING_MODEL, apply_max_bands

logger = logging.getLogger(__name__)

# Origin plus at most 24 destinations per matrix request.
MAX_CANDIDATES = 24


def distance_to_target_score(distance_miles: Optional[float]) -> float:
    """Sweet-spot curve: 0-10 score for the distance to the closest match.

    Very close scores slightly below the 0.5-2 mile sweet spot; beyond
    2 miles the score only falls.  Unknown distance scores as far away.
    """
    model = SCORING_MODEL.targets
    if distance_miles is None:
        return model.unknown_score
    return apply_max_bands(model.distance_bands, distance_miles).score


def needs_routed_recheck(batched_miles: float, straight_line_miles: float) -> bool:
    """True when the batched distance is long, or a large detour over the crow-flies line."""
    model = SCORING_MODEL.targets
    if batched_miles > model.recheck_over_miles:
        return True
    return batched_miles > model.recheck_detour_ratio * straight_line_miles


@dataclass
class _Priced:
    candidate: PlaceCandidate
    miles: float


def _to_place(priced: _Priced) -> PlaceResult:
    c = priced.candidate
    return PlaceResult(
        name=c.name,
        address=c.address,
        distance_miles=max(0.0, priced.miles),
        external_link=c.external_link,
        provider_id=c.provider_id,
    )


def resolve_target(
    label: str,
    max_distance_miles: float,
    origin: Coordinates,
    places: PlacesProvider,
    matrix: DistanceMatrixProvider,
    routing: RoutingProvider,
    candidate_pool: int = 10,
) -> ProximityTarget:
    """Resolve one place-type target.

    Search and matrix failures propagate to the caller (the target is then
    recorded as absent).  A routed re-check failure only means the batched
    distance is kept.
    """
    limit = max(1, min(candidate_pool, MAX_CANDIDATES))
    candidates = places.search(label, origin, limit)[:limit]
    if not candidates:
        logger.info("No candidates found for target %r", label)
        return ProximityTarget(label=label, max_distance_miles=max_distance_miles)

    row = matrix.distances_from(origin, [c.location for c in candidates])
    # row[0] is origin -> origin; pair the rest with the candidates.
    paired = row[1:]
    if len(paired) != len(candidates):
        raise UpstreamUnavailable(
            matrix.name,
            f"matrix returned {len(paired)} distances for {len(candidates)} candidates",
        )

    priced = [
        _Priced(candidate=c, miles=meters_to_miles(meters))
        for c, meters in zip(candidates, paired)
        if meters is not None
    ]
    if not priced:
        logger.info("No routable candidates for target %r", label)
        return ProximityTarget(label=label, max_distance_miles=max_distance_miles)

    priced.sort(key=lambda p: p.miles)
    top = priced[:SCORING_MODEL.targets.max_places]

    closest = top[0]
    straight = haversine_miles(origin, closest.candidate.location)
    if needs_routed_recheck(closest.miles, straight):
        try:
            routed = routing.route_distance(origin, closest.candidate.location)
        except EvaluationCancelled:
            raise
        except Exception as e:
            logger.warning(
                "Routed re-check failed for %r (%s); keeping batched %.2f mi",
                label, type(e).__name__, closest.miles,
            )
            routed = None
        if routed is not None:
            logger.info(
                "Routed re-check for %r: %.2f mi batched -> %.2f mi routed (straight %.2f mi)",
                label, closest.miles, meters_to_miles(routed), straight,
            )
            closest.miles = meters_to_miles(routed)
            top.sort(key=lambda p: p.miles)

    results = [_to_place(p) for p in top]
    return ProximityTarget(
        label=label,
        max_distance_miles=max_distance_miles,
        distance_miles=results[0].distance_miles,
        places=results,
    )
