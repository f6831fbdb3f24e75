# app/models/api/match_response.py
"""
Matching API response models.
Used by routes for output formatting.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class CoordinatesResponse(BaseModel):
    latitude: float = Field(..., description="Latitude in decimal degrees")
    longitude: float = Field(..., description="Longitude in decimal degrees")


class DonorSummary(BaseModel):
    """Public view of a donor in match results."""

    id: str = Field(..., description="Donor ID")
    name: str = Field(..., description="Donor display name")
    blood_type: str = Field(..., description="Donor blood type")
    available: bool = Field(..., description="Donor is currently available")
    address: str | None = Field(None, description="Last reported address")
    location: CoordinatesResponse | None = Field(None, description="Last reported position")


class RequestSummary(BaseModel):
    """Public view of a blood request in match results."""

    id: str = Field(..., description="Blood request ID")
    blood_type: str = Field(..., description="Requested blood type")
    urgency: str = Field(..., description="Low, Medium, High or Emergency")
    hospital: str = Field(default="", description="Hospital name")
    address: str | None = Field(None, description="Hospital address")
    location: CoordinatesResponse = Field(..., description="Request position")
    created_at: datetime = Field(..., description="When the request was created")
    fulfilled: bool = Field(..., description="Request already has an accepted offer")


class DonorMatchResponse(BaseModel):
    donor: DonorSummary
    distance_m: float = Field(..., description="Great-circle distance in metres")
    score: float = Field(..., description="Ranking score for the selected mode")
    urgency: str = Field(..., description="Urgency of the request being matched")


class RequestMatchResponse(BaseModel):
    request: RequestSummary
    distance_m: float = Field(..., description="Great-circle distance in metres")
    score: float = Field(..., description="Ranking score for the selected mode")
    urgency: str = Field(..., description="Urgency of this request")


class MatchListMeta(BaseModel):
    status: str = Field(..., description="matched, no_matches or degraded")
    message: str | None = Field(None, description="Explanation for empty or degraded results")
    mode: str = Field(..., description="Ranking mode used")
    total_found: int = Field(..., description="Candidates in range before the limit")
    search_radius_m: float = Field(..., description="Effective search radius in metres")


class DonorMatchesResponse(MatchListMeta):
    request_id: str = Field(..., description="Blood request the donors were matched to")
    donors: list[DonorMatchResponse] = Field(default_factory=list)


class RequestMatchesResponse(MatchListMeta):
    requests: list[RequestMatchResponse] = Field(default_factory=list)


class NotifyDonorsResponse(BaseModel):
    status: str = Field(..., description="Status of the underlying donor search")
    notified: int = Field(..., description="Notification jobs enqueued")
    skipped: int = Field(..., description="Matched donors without contact details")
    escalated: int = Field(default=0, description="Earlier jobs promoted to Emergency")
    search_radius_m: float = Field(..., description="Effective search radius in metres")
    average_distance_m: float | None = Field(None, description="Mean distance of matched donors")


class RouteResponse(BaseModel):
    distance_km: float = Field(..., description="Route distance in kilometres")
    duration_minutes: float = Field(..., description="Estimated travel time")
    source: str = Field(..., description="osrm or straight-line")


class GeocodeResponse(BaseModel):
    latitude: float = Field(..., description="Latitude in decimal degrees")
    longitude: float = Field(..., description="Longitude in decimal degrees")
    formatted_address: str = Field(..., description="Provider formatted address")
    source: str = Field(..., description="Geocoding provider")


class NearbyPlaceResponse(BaseModel):
    name: str
    address: str
    latitude: float
    longitude: float
    distance_m: float = Field(..., description="Distance from the search centre in metres")
    source: str


class NearbyPlacesResponse(BaseModel):
    category: str = Field(..., description="Place category searched")
    radius_m: float = Field(..., description="Search radius in metres")
    places: list[NearbyPlaceResponse] = Field(default_factory=list)


class MeetingPointResponse(BaseModel):
    latitude: float
    longitude: float
    source: str = Field(..., description="Place provider, or 'calculated' for the raw midpoint")
    name: str | None = None
    address: str | None = None


class MeetingPlanResponse(BaseModel):
    meeting_point: MeetingPointResponse
    donor_route: RouteResponse
    hospital_route: RouteResponse
    total_distance_km: float
    max_travel_minutes: float


class LocationUpdateResponse(BaseModel):
    success: bool = True
    location: CoordinatesResponse
    address: str = Field(..., description="Reverse-geocoded address or 'lat, lon'")
    nearby_emergency_requests: int = Field(
        ..., description="Open Emergency requests within the alert radius"
    )
    alert_job_id: str | None = Field(None, description="Alert job enqueued for the donor")
