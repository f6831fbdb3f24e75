import math

import pytest

from app.models.domain.blood_domain import Coordinates
from app.services.errors import InvalidCoordinate
from app.utils.geo import (
    estimate_travel_minutes,
    geographic_midpoint,
    haversine_distance,
    is_valid_coordinate,
    validate_coordinates,
)

LONDON = Coordinates(latitude=51.5074, longitude=-0.1278)
PARIS = Coordinates(latitude=48.8566, longitude=2.3522)


def test_haversine_london_paris():
    assert haversine_distance(LONDON, PARIS) == pytest.approx(343_500, rel=0.01)


def test_haversine_same_point_is_zero():
    assert haversine_distance(LONDON, LONDON) == 0.0


def test_haversine_is_symmetric():
    assert haversine_distance(LONDON, PARIS) == pytest.approx(haversine_distance(PARIS, LONDON))


def test_haversine_antipodal_points():
    distance = haversine_distance(
        Coordinates(latitude=0.0, longitude=0.0), Coordinates(latitude=0.0, longitude=180.0)
    )
    assert distance == pytest.approx(math.pi * 6_371_000.0)


@pytest.mark.parametrize(
    "lat, lon",
    [(91.0, 0.0), (-90.5, 10.0), (0.0, 180.1), (0.0, -181.0), (float("nan"), 0.0)],
)
def test_invalid_coordinates_rejected(lat, lon):
    assert is_valid_coordinate(lat, lon) is False
    with pytest.raises(InvalidCoordinate):
        validate_coordinates(lat, lon)


def test_haversine_rejects_invalid_point():
    with pytest.raises(InvalidCoordinate):
        haversine_distance(LONDON, Coordinates(latitude=120.0, longitude=0.0))


def test_boundaries_are_valid():
    assert is_valid_coordinate(90.0, 180.0)
    assert is_valid_coordinate(-90.0, -180.0)


def test_midpoint_is_equidistant():
    midpoint = geographic_midpoint(LONDON, PARIS)
    assert haversine_distance(LONDON, midpoint) == pytest.approx(
        haversine_distance(PARIS, midpoint), rel=1e-6
    )


def test_midpoint_across_antimeridian():
    midpoint = geographic_midpoint(
        Coordinates(latitude=0.0, longitude=179.0), Coordinates(latitude=0.0, longitude=-179.0)
    )
    assert abs(midpoint.longitude) == pytest.approx(180.0)


def test_travel_estimate_two_minutes_per_km():
    assert estimate_travel_minutes(12.5) == 25.0
