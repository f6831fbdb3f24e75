"""
Geocoding and routing client.
Wraps Nominatim (geocode, reverse geocode, place search) and OSRM (routing)
behind one async client. Routing always answers: when OSRM is unreachable
the straight-line distance with a ~2 min/km estimate is returned instead.
"""

import math
from dataclasses import dataclass
from typing import Protocol

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.blood_domain import Coordinates
from app.services.errors import TransientChannelError
from app.utils.geo import estimate_travel_minutes, haversine_distance, validate_coordinates

logger = get_logger(__name__)

PLACE_CATEGORIES = {
    "hospital": "hospital",
    "clinic": "clinic",
    "medical": "hospital",
    "pharmacy": "pharmacy",
}


class GeolocationError(TransientChannelError):
    """Geocoding/routing provider failure."""

    def __init__(self, message: str, operation: str | None = None, status_code: int | None = None):
        super().__init__(message, operation=operation)
        self.status_code = status_code


@dataclass(slots=True)
class GeocodeResult:
    latitude: float
    longitude: float
    formatted_address: str
    source: str

    def to_dict(self) -> dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "formatted_address": self.formatted_address,
            "source": self.source,
        }


@dataclass(slots=True)
class RouteInfo:
    distance_km: float
    duration_minutes: float
    source: str

    def to_dict(self) -> dict:
        return {
            "distance_km": round(self.distance_km, 3),
            "duration_minutes": round(self.duration_minutes, 1),
            "source": self.source,
        }


@dataclass(slots=True)
class NearbyPlace:
    name: str
    address: str
    latitude: float
    longitude: float
    distance_m: float
    source: str


class GeoCollaborator(Protocol):
    """What matching needs from a geocoding/routing provider."""

    async def geocode(self, address: str) -> GeocodeResult: ...

    async def reverse_geocode(self, latitude: float, longitude: float) -> GeocodeResult: ...

    async def calculate_route(self, start: Coordinates, end: Coordinates) -> RouteInfo: ...

    async def find_nearby_places(
        self, center: Coordinates, category: str = "hospital", radius_m: float = 10_000.0
    ) -> list[NearbyPlace]: ...

    async def close(self) -> None: ...


def straight_line_route(start: Coordinates, end: Coordinates) -> RouteInfo:
    """Fallback route: great-circle distance, ~2 minutes per km."""
    distance_km = haversine_distance(start, end) / 1000.0
    return RouteInfo(
        distance_km=distance_km,
        duration_minutes=estimate_travel_minutes(distance_km),
        source="straight-line",
    )


class GeolocationService:
    """
    Async client for the geocoding/routing collaborator.

    geocode, reverse_geocode and find_nearby_places raise GeolocationError;
    calculate_route degrades to straight_line_route instead of raising.
    """

    def __init__(
        self,
        geocoding_base_url: str | None = None,
        routing_base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.geocoding_base_url = (geocoding_base_url or settings.GEOCODING_BASE_URL).rstrip("/")
        self.routing_base_url = (routing_base_url or settings.ROUTING_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.GEO_TIMEOUT_SECONDS
        self._client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.timeout)
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        return httpx.AsyncClient(
            timeout=timeout,
            limits=limits,
            headers={"User-Agent": settings.GEO_USER_AGENT},
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _get_json(self, url: str, params: dict, operation: str):
        try:
            response = await self._client.get(url, params=params)
        except httpx.HTTPError as e:
            logger.warning("Geolocation request failed", operation=operation, error=str(e))
            raise GeolocationError(f"{operation} request failed: {e}", operation=operation) from e

        if not response.is_success:
            logger.warning(
                "Geolocation provider error",
                operation=operation,
                status_code=response.status_code,
            )
            raise GeolocationError(
                f"{operation} returned HTTP {response.status_code}",
                operation=operation,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise GeolocationError(f"Invalid {operation} response: {e}", operation=operation) from e

    async def geocode(self, address: str) -> GeocodeResult:
        """Resolve a free-text address to coordinates."""
        data = await self._get_json(
            f"{self.geocoding_base_url}/search",
            {"q": address, "format": "json", "limit": 1, "addressdetails": 1},
            operation="geocode",
        )
        if not data:
            raise GeolocationError("No geocoding results found", operation="geocode")

        result = data[0]
        return GeocodeResult(
            latitude=float(result["lat"]),
            longitude=float(result["lon"]),
            formatted_address=result.get("display_name", address),
            source="openstreetmap",
        )

    async def reverse_geocode(self, latitude: float, longitude: float) -> GeocodeResult:
        """Resolve coordinates to a formatted address."""
        validate_coordinates(latitude, longitude)
        data = await self._get_json(
            f"{self.geocoding_base_url}/reverse",
            {"lat": latitude, "lon": longitude, "format": "json", "addressdetails": 1},
            operation="reverse_geocode",
        )
        if not data or "display_name" not in data:
            raise GeolocationError(
                "No reverse geocoding results found", operation="reverse_geocode"
            )

        return GeocodeResult(
            latitude=float(latitude),
            longitude=float(longitude),
            formatted_address=data["display_name"],
            source="openstreetmap",
        )

    async def calculate_route(self, start: Coordinates, end: Coordinates) -> RouteInfo:
        """Driving distance/duration between two points, straight-line on failure."""
        validate_coordinates(start.latitude, start.longitude)
        validate_coordinates(end.latitude, end.longitude)

        url = (
            f"{self.routing_base_url}/route/v1/driving/"
            f"{start.longitude},{start.latitude};{end.longitude},{end.latitude}"
        )
        try:
            data = await self._get_json(
                url, {"overview": "false", "steps": "false"}, operation="route"
            )
            routes = data.get("routes") or []
            if routes:
                route = routes[0]
                return RouteInfo(
                    distance_km=route["distance"] / 1000.0,
                    duration_minutes=route["duration"] / 60.0,
                    source="osrm",
                )
            logger.info("No route returned, using straight-line estimate")
        except (GeolocationError, KeyError, TypeError) as e:
            logger.warning("Routing unavailable, using straight-line estimate", error=str(e))

        return straight_line_route(start, end)

    async def find_nearby_places(
        self,
        center: Coordinates,
        category: str = "hospital",
        radius_m: float = 10_000.0,
    ) -> list[NearbyPlace]:
        """Places of a category around center, nearest first."""
        validate_coordinates(center.latitude, center.longitude)

        lat_offset = radius_m / 111_000.0
        cos_lat = max(abs(math.cos(math.radians(center.latitude))), 0.01)
        lon_offset = radius_m / (111_000.0 * cos_lat)
        viewbox = ",".join(
            str(round(value, 6))
            for value in (
                max(center.longitude - lon_offset, -180.0),
                min(center.latitude + lat_offset, 90.0),
                min(center.longitude + lon_offset, 180.0),
                max(center.latitude - lat_offset, -90.0),
            )
        )

        data = await self._get_json(
            f"{self.geocoding_base_url}/search",
            {
                "q": PLACE_CATEGORIES.get(category, "hospital"),
                "format": "json",
                "limit": 20,
                "viewbox": viewbox,
                "bounded": 1,
            },
            operation="nearby_places",
        )

        places = []
        for item in data or []:
            try:
                location = Coordinates(latitude=float(item["lat"]), longitude=float(item["lon"]))
            except (KeyError, TypeError, ValueError):
                continue
            distance = haversine_distance(center, location)
            if distance > radius_m:
                continue
            display_name = item.get("display_name", "")
            places.append(
                NearbyPlace(
                    name=item.get("name") or display_name.split(",")[0],
                    address=display_name,
                    latitude=location.latitude,
                    longitude=location.longitude,
                    distance_m=distance,
                    source="openstreetmap",
                )
            )

        places.sort(key=lambda place: place.distance_m)
        return places
