"""
Geodesy helpers.

The single haversine implementation used by ranking, matching and the
routing fallback.
"""

import math

from app.models.domain.blood_domain import Coordinates
from app.services.errors import InvalidCoordinate

EARTH_RADIUS_M = 6_371_000.0


def is_valid_coordinate(latitude: float, longitude: float) -> bool:
    """Check latitude/longitude ranges (NaN and infinities are invalid)."""
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def validate_coordinates(latitude: float, longitude: float) -> Coordinates:
    """
    Build a Coordinates value or fail.

    Raises:
        InvalidCoordinate: If latitude is outside [-90, 90] or longitude outside [-180, 180]
    """
    if not is_valid_coordinate(latitude, longitude):
        raise InvalidCoordinate(latitude, longitude, operation="validate_coordinates")
    return Coordinates(latitude=float(latitude), longitude=float(longitude))


def haversine_distance(origin: Coordinates, destination: Coordinates) -> float:
    """
    Great-circle distance between two points in meters.

    Raises:
        InvalidCoordinate: If either point is out of range
    """
    validate_coordinates(origin.latitude, origin.longitude)
    validate_coordinates(destination.latitude, destination.longitude)

    lat1 = math.radians(origin.latitude)
    lat2 = math.radians(destination.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(destination.longitude - origin.longitude)

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    # clamp against rounding drift for antipodal points
    c = 2 * math.asin(math.sqrt(min(1.0, a)))
    return EARTH_RADIUS_M * c


def geographic_midpoint(first: Coordinates, second: Coordinates) -> Coordinates:
    """Midpoint of the great-circle segment between two points."""
    validate_coordinates(first.latitude, first.longitude)
    validate_coordinates(second.latitude, second.longitude)

    lat1 = math.radians(first.latitude)
    lon1 = math.radians(first.longitude)
    lat2 = math.radians(second.latitude)
    dlon = math.radians(second.longitude - first.longitude)

    bx = math.cos(lat2) * math.cos(dlon)
    by = math.cos(lat2) * math.sin(dlon)
    lat = math.atan2(
        math.sin(lat1) + math.sin(lat2),
        math.sqrt((math.cos(lat1) + bx) ** 2 + by**2),
    )
    lon = lon1 + math.atan2(by, math.cos(lat1) + bx)

    # normalise to [-180, 180]
    lon_deg = (math.degrees(lon) + 540.0) % 360.0 - 180.0
    return Coordinates(latitude=math.degrees(lat), longitude=lon_deg)


def estimate_travel_minutes(distance_km: float, minutes_per_km: float = 2.0) -> float:
    """Rough travel time used when no routing service is reachable."""
    return distance_km * minutes_per_km
