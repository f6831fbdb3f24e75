"""
Geospatial ranking of donors and requests.

Given a center point and candidates exposing ``id`` and ``location``,
produce (candidate, distance, score) triples ordered by the requested
RankingMode. Ranking is synchronous and side-effect free.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from app.infrastructure.observability.logging import get_logger
from app.models.domain.blood_domain import Coordinates
from app.services.errors import InvalidCoordinate
from app.utils.geo import haversine_distance, validate_coordinates

logger = get_logger(__name__)

ScoreFn = Callable[[Any], float]


class RankingMode(str, Enum):
    PROXIMITY = "proximity"
    COMPATIBILITY = "compatibility"
    MIXED = "mixed"


@dataclass(frozen=True, slots=True)
class RankingWeights:
    """Weights for the blended score. Defaults 0.6 / 0.4."""

    compat: float = 0.6
    distance: float = 0.4


@dataclass(slots=True)
class RankedCandidate:
    candidate: Any
    distance_m: float
    score: float


def _no_score(_candidate: Any) -> float:
    return 0.0


class RankingService:
    """
    Orders candidates around a center point.

    Modes:
        proximity: ascending distance
        compatibility: descending compatibility score
        mixed: descending weight_compat * compat + weight_distance * (max_km - km) + bonus

    Distance ties always fall back to candidate id so output is deterministic.
    """

    def __init__(self, weights: RankingWeights | None = None):
        self.weights = weights or RankingWeights()

    def measure(
        self,
        center: Coordinates,
        candidates: Iterable[Any],
        max_distance_m: float | None = None,
    ) -> list[RankedCandidate]:
        """
        Pair each candidate with its distance from center, ascending.

        Raises:
            InvalidCoordinate: If the center or any candidate location is out of range
        """
        validate_coordinates(center.latitude, center.longitude)

        measured = []
        for candidate in candidates:
            location = candidate.location
            if location is None:
                raise InvalidCoordinate(None, None, operation="rank")
            distance = haversine_distance(center, location)
            if max_distance_m is not None and distance > max_distance_m:
                continue
            measured.append(RankedCandidate(candidate=candidate, distance_m=distance, score=0.0))

        measured.sort(key=lambda item: (item.distance_m, str(item.candidate.id)))
        return measured

    def rank(
        self,
        center: Coordinates,
        candidates: Iterable[Any],
        mode: RankingMode,
        *,
        max_distance_m: float | None = None,
        compat_score: ScoreFn = _no_score,
        bonus: ScoreFn = _no_score,
    ) -> list[RankedCandidate]:
        """
        Rank candidates with the given mode.

        Args:
            center: Point distances are measured from
            candidates: Objects with ``id`` and ``location`` attributes
            mode: Ranking mode; there is no implicit default
            max_distance_m: Exclude candidates farther than this; also the
                reference distance of the blended score
            compat_score: Compatibility-derived score per candidate
            bonus: Additive term applied in mixed mode only

        Returns:
            Ranked candidates, best first
        """
        mode = RankingMode(mode)
        measured = self.measure(center, candidates, max_distance_m)

        if mode is RankingMode.PROXIMITY:
            for item in measured:
                item.score = compat_score(item.candidate)
            return measured

        if mode is RankingMode.COMPATIBILITY:
            for item in measured:
                item.score = compat_score(item.candidate)
        else:
            if max_distance_m is not None:
                reference_km = max_distance_m / 1000.0
            else:
                reference_km = max((item.distance_m for item in measured), default=0.0) / 1000.0
            for item in measured:
                item.score = self.blended_score(
                    compat_score(item.candidate), item.distance_m, reference_km
                ) + bonus(item.candidate)

        # sort is stable, so equal scores keep the distance/id order from measure()
        measured.sort(key=lambda item: -item.score)
        return measured

    def blended_score(self, compat: float, distance_m: float, reference_km: float) -> float:
        return self.weights.compat * compat + self.weights.distance * (
            reference_km - distance_m / 1000.0
        )
