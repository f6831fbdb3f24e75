"""
Matching API request models.
Used by routes for input validation.
"""

from pydantic import BaseModel, Field


class CoordinatesRequest(BaseModel):
    """A point in decimal degrees."""

    latitude: float = Field(..., ge=-90, le=90, description="Latitude in decimal degrees")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude in decimal degrees")


class LocationUpdateRequest(CoordinatesRequest):
    """Donor location report."""


class ReverseGeocodeRequest(CoordinatesRequest):
    """Coordinates to resolve to an address."""


class NotifyDonorsRequest(BaseModel):
    """Options for notifying compatible donors about a request."""

    max_distance: float | None = Field(
        default=None,
        gt=0,
        alias="maxDistance",
        description="Search radius in metres (default: configured match radius)",
    )

    model_config = {"populate_by_name": True}


class GeocodeRequest(BaseModel):
    """Free-text address lookup."""

    address: str = Field(..., min_length=1, max_length=500, description="Address to resolve")

    model_config = {"str_strip_whitespace": True}


class RouteRequest(BaseModel):
    """Start and end of a driving route."""

    start_lat: float = Field(..., ge=-90, le=90, alias="startLat")
    start_lng: float = Field(..., ge=-180, le=180, alias="startLng")
    end_lat: float = Field(..., ge=-90, le=90, alias="endLat")
    end_lng: float = Field(..., ge=-180, le=180, alias="endLng")

    model_config = {"populate_by_name": True}
