"""
Tests for geospatial ranking.
"""

from dataclasses import dataclass

import pytest

from app.models.domain.blood_domain import BloodType, Coordinates
from app.services.compatibility import get_compatible_types
from app.services.errors import InvalidCoordinate
from app.services.ranking_service import RankingMode, RankingService, RankingWeights

CENTER = Coordinates(latitude=40.7128, longitude=-74.0060)


@dataclass
class Candidate:
    id: str
    location: Coordinates | None
    blood_type: BloodType = BloodType.O_NEG
    score: float = 0.0


def north(km: float) -> Coordinates:
    # ~111.195 km per degree of latitude for the 6371 km sphere
    return Coordinates(latitude=CENTER.latitude + km / 111.195, longitude=CENTER.longitude)


@pytest.fixture
def ranking():
    return RankingService()


def test_ab_negative_request_proximity_ranking(ranking):
    pool = [
        Candidate("o-neg", north(2), BloodType.O_NEG),
        Candidate("ab-neg", north(10), BloodType.AB_NEG),
        Candidate("a-pos", north(1), BloodType.A_POS),
    ]
    compatible = get_compatible_types(BloodType.AB_NEG)
    filtered = [c for c in pool if c.blood_type in compatible]

    ranked = ranking.rank(CENTER, filtered, RankingMode.PROXIMITY)

    assert [item.candidate.id for item in ranked] == ["o-neg", "ab-neg"]
    assert ranked[0].distance_m == pytest.approx(2000, rel=0.01)
    assert ranked[1].distance_m == pytest.approx(10_000, rel=0.01)


def test_distance_ties_break_on_id(ranking):
    pool = [Candidate("b", north(3)), Candidate("a", north(3)), Candidate("c", north(1))]

    ranked = ranking.rank(CENTER, pool, RankingMode.PROXIMITY)

    assert [item.candidate.id for item in ranked] == ["c", "a", "b"]


def test_max_distance_excludes_far_candidates(ranking):
    pool = [Candidate("near", north(1)), Candidate("far", north(30))]

    ranked = ranking.rank(CENTER, pool, RankingMode.PROXIMITY, max_distance_m=5_000)

    assert [item.candidate.id for item in ranked] == ["near"]


def test_compatibility_mode_orders_by_score(ranking):
    pool = [Candidate("near", north(1), score=50), Candidate("far", north(9), score=90)]

    ranked = ranking.rank(
        CENTER, pool, RankingMode.COMPATIBILITY, compat_score=lambda c: c.score
    )

    assert [item.candidate.id for item in ranked] == ["far", "near"]
    assert ranked[0].score == 90


def test_mixed_mode_blends_score_and_distance():
    ranking = RankingService(RankingWeights(compat=0.6, distance=0.4))
    pool = [Candidate("near", north(1), score=100), Candidate("far", north(40), score=110)]

    ranked = ranking.rank(
        CENTER,
        pool,
        RankingMode.MIXED,
        max_distance_m=50_000,
        compat_score=lambda c: c.score,
    )

    # near: 0.6*100 + 0.4*(50-1) = 79.6; far: 0.6*110 + 0.4*(50-40) = 70
    assert [item.candidate.id for item in ranked] == ["near", "far"]
    assert ranked[0].score == pytest.approx(79.6, abs=0.1)
    assert ranked[1].score == pytest.approx(70.0, abs=0.1)


def test_mixed_mode_applies_bonus_only_in_mixed(ranking):
    pool = [Candidate("a", north(2)), Candidate("b", north(1))]

    def bonus(candidate):
        return 30.0 if candidate.id == "a" else 0.0

    mixed = ranking.rank(CENTER, pool, RankingMode.MIXED, max_distance_m=10_000, bonus=bonus)
    proximity = ranking.rank(CENTER, pool, RankingMode.PROXIMITY, bonus=bonus)

    assert mixed[0].candidate.id == "a"
    assert proximity[0].candidate.id == "b"


def test_invalid_candidate_location_raises(ranking):
    pool = [Candidate("bad", Coordinates(latitude=95.0, longitude=0.0))]

    with pytest.raises(InvalidCoordinate):
        ranking.rank(CENTER, pool, RankingMode.PROXIMITY)


def test_missing_candidate_location_raises(ranking):
    with pytest.raises(InvalidCoordinate):
        ranking.rank(CENTER, [Candidate("nowhere", None)], RankingMode.PROXIMITY)


def test_unknown_mode_rejected(ranking):
    with pytest.raises(ValueError):
        ranking.rank(CENTER, [], "closest")


def test_empty_pool(ranking):
    assert ranking.rank(CENTER, [], RankingMode.MIXED) == []
