"""
Matching API Routes
Donor/request matching, bulk donor notification, meeting points,
location updates and thin geocoding, routing and place-search helpers. Matching endpoints always answer 200 with a structured
result; "no matches" and "degraded" are distinguished by status.
"""

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from app.auth.verify import auth_dependency, is_privileged
from app.config import settings
from app.dependencies import get_geo, get_matching_service
from app.infrastructure.observability.logging import get_logger
from app.models.api.match_request import (
    GeocodeRequest,
    LocationUpdateRequest,
    NotifyDonorsRequest,
    ReverseGeocodeRequest,
    RouteRequest,
)
from app.models.api.match_response import (
    CoordinatesResponse,
    DonorMatchesResponse,
    DonorMatchResponse,
    DonorSummary,
    GeocodeResponse,
    LocationUpdateResponse,
    MeetingPlanResponse,
    MeetingPointResponse,
    NearbyPlaceResponse,
    NearbyPlacesResponse,
    NotifyDonorsResponse,
    RequestMatchesResponse,
    RequestMatchResponse,
    RequestSummary,
    RouteResponse,
)
from app.models.domain.blood_domain import BloodRequest, Coordinates, Donor, Urgency
from app.routes.errors import to_http_exception
from app.services.errors import NotFoundError, PermissionDenied, ValidationError
from app.services.geolocation_service import PLACE_CATEGORIES, GeoCollaborator
from app.services.matching_service import (
    Match,
    MatchingService,
    MatchOptions,
    MatchResult,
    MatchStatus,
)
from app.services.ranking_service import RankingMode

logger = get_logger(__name__)

router = APIRouter(prefix="/match", tags=["match"])

NO_DONOR_PROFILE = "No donor profile found for this account."
DEFAULT_MODE = RankingMode(settings.MATCH_RANKING_MODE)


def _user_id(claims: dict) -> str:
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return user_id


def _coordinates(location: Coordinates | None) -> CoordinatesResponse | None:
    if location is None:
        return None
    return CoordinatesResponse(latitude=location.latitude, longitude=location.longitude)


def _donor_summary(donor: Donor) -> DonorSummary:
    return DonorSummary(
        id=donor.id,
        name=donor.name,
        blood_type=donor.blood_type.value,
        available=donor.available,
        address=donor.address,
        location=_coordinates(donor.location),
    )


def _request_summary(request: BloodRequest) -> RequestSummary:
    return RequestSummary(
        id=request.id,
        blood_type=request.blood_type.value,
        urgency=request.urgency.value,
        hospital=request.hospital,
        address=request.address,
        location=_coordinates(request.location),
        created_at=request.created_at,
        fulfilled=request.fulfilled,
    )


def _donor_match(match: Match) -> DonorMatchResponse:
    return DonorMatchResponse(
        donor=_donor_summary(match.candidate),
        distance_m=round(match.distance_m, 1),
        score=round(match.score, 2),
        urgency=match.urgency.value,
    )


def _request_match(match: Match) -> RequestMatchResponse:
    return RequestMatchResponse(
        request=_request_summary(match.candidate),
        distance_m=round(match.distance_m, 1),
        score=round(match.score, 2),
        urgency=match.urgency.value,
    )


def _request_matches_response(result: MatchResult, mode: RankingMode) -> RequestMatchesResponse:
    return RequestMatchesResponse(
        status=result.status.value,
        message=result.message,
        mode=mode.value,
        total_found=result.total_found,
        search_radius_m=result.search_radius_m,
        requests=[_request_match(match) for match in result.matches],
    )


async def _find_for_caller(
    matching: MatchingService, user_id: str, options: MatchOptions
) -> RequestMatchesResponse:
    try:
        donor = await matching.get_donor(user_id)
    except NotFoundError:
        return RequestMatchesResponse(
            status=MatchStatus.DEGRADED.value,
            message=NO_DONOR_PROFILE,
            mode=RankingMode(options.mode).value,
            total_found=0,
            search_radius_m=0.0,
        )

    result = await matching.find_matches_for_donor(donor, options)
    return _request_matches_response(result, options.mode)


async def _owned_request(
    matching: MatchingService, request_id: str, claims: dict, operation: str
) -> BloodRequest:
    request = await matching.get_request(request_id)
    if request.requester_id != _user_id(claims) and not is_privileged(claims):
        raise PermissionDenied("Access denied", operation=operation)
    return request


@router.get("", response_model=RequestMatchesResponse)
async def get_matches(
    claims: dict = Depends(auth_dependency),
    matching: MatchingService = Depends(get_matching_service),
):
    """Ranked open requests the authenticated donor can give to."""
    user_id = _user_id(claims)
    options = MatchOptions(
        max_distance_m=settings.MATCH_DEFAULT_MAX_DISTANCE_M,
        limit=settings.MATCH_DEFAULT_REQUEST_LIMIT,
        mode=DEFAULT_MODE,
    )
    try:
        return await _find_for_caller(matching, user_id, options)
    except Exception as e:
        raise to_http_exception(e, "find_matches", user_id=user_id) from e


@router.get("/nearby", response_model=RequestMatchesResponse)
async def get_nearby_requests(
    max_distance: float = Query(
        default=settings.MATCH_DEFAULT_MAX_DISTANCE_M, gt=0, alias="maxDistance"
    ),
    limit: int = Query(default=settings.MATCH_DEFAULT_REQUEST_LIMIT, ge=1, le=100),
    urgency_filter: Urgency | None = Query(default=None, alias="urgencyFilter"),
    sort_by: RankingMode = Query(default=DEFAULT_MODE, alias="sortBy"),
    claims: dict = Depends(auth_dependency),
    matching: MatchingService = Depends(get_matching_service),
):
    """Donor's view of nearby open requests."""
    user_id = _user_id(claims)
    options = MatchOptions(
        max_distance_m=max_distance,
        limit=limit,
        mode=sort_by,
        urgency_filter=urgency_filter,
    )
    try:
        return await _find_for_caller(matching, user_id, options)
    except Exception as e:
        raise to_http_exception(e, "find_nearby_requests", user_id=user_id) from e


@router.get("/donors/{request_id}", response_model=DonorMatchesResponse)
async def get_compatible_donors(
    request_id: str,
    max_distance: float = Query(
        default=settings.MATCH_DEFAULT_MAX_DISTANCE_M, gt=0, alias="maxDistance"
    ),
    limit: int = Query(default=settings.MATCH_DEFAULT_DONOR_LIMIT, ge=1, le=100),
    sort_by: RankingMode = Query(default=DEFAULT_MODE, alias="sortBy"),
    claims: dict = Depends(auth_dependency),
    matching: MatchingService = Depends(get_matching_service),
):
    """Request owner's view of compatible donors."""
    try:
        request = await _owned_request(matching, request_id, claims, "find_donors")
        result = await matching.find_matches_for_request(
            request, MatchOptions(max_distance_m=max_distance, limit=limit, mode=sort_by)
        )
    except Exception as e:
        raise to_http_exception(e, "find_compatible_donors", request_id=request_id) from e

    return DonorMatchesResponse(
        request_id=request.id,
        status=result.status.value,
        message=result.message,
        mode=sort_by.value,
        total_found=result.total_found,
        search_radius_m=result.search_radius_m,
        donors=[_donor_match(match) for match in result.matches],
    )


@router.post("/notify-donors/{request_id}", response_model=NotifyDonorsResponse)
async def notify_donors(
    request_id: str,
    body: NotifyDonorsRequest | None = Body(default=None),
    claims: dict = Depends(auth_dependency),
    matching: MatchingService = Depends(get_matching_service),
):
    """Enqueue alerts for every compatible donor in range. Requester or privileged role only."""
    try:
        request = await _owned_request(matching, request_id, claims, "notify_donors")
        result = await matching.notify_compatible_donors(
            request, body.max_distance if body else None
        )
    except Exception as e:
        raise to_http_exception(e, "notify_donors", request_id=request_id) from e

    return NotifyDonorsResponse(
        status=result.status.value,
        notified=result.notified,
        skipped=result.skipped,
        escalated=result.escalated,
        search_radius_m=result.search_radius_m,
        average_distance_m=result.average_distance_m,
    )


@router.get("/meeting-point/{request_id}", response_model=MeetingPlanResponse)
async def get_meeting_point(
    request_id: str,
    claims: dict = Depends(auth_dependency),
    matching: MatchingService = Depends(get_matching_service),
):
    """Suggested meeting point between the authenticated donor and the request."""
    user_id = _user_id(claims)
    try:
        donor = await matching.get_donor(user_id)
        request = await matching.get_request(request_id)
        plan = await matching.suggest_meeting_point(donor, request)
    except Exception as e:
        raise to_http_exception(e, "suggest_meeting_point", request_id=request_id) from e

    point = plan.meeting_point
    return MeetingPlanResponse(
        meeting_point=MeetingPointResponse(
            latitude=point.latitude,
            longitude=point.longitude,
            source=point.source,
            name=point.name,
            address=point.address,
        ),
        donor_route=RouteResponse(**plan.donor_route.to_dict()),
        hospital_route=RouteResponse(**plan.hospital_route.to_dict()),
        total_distance_km=round(plan.total_distance_km, 3),
        max_travel_minutes=round(plan.max_travel_minutes, 1),
    )


@router.post("/location", response_model=LocationUpdateResponse)
async def update_location(
    body: LocationUpdateRequest,
    claims: dict = Depends(auth_dependency),
    matching: MatchingService = Depends(get_matching_service),
):
    """Store the donor's position and alert them about nearby emergencies."""
    user_id = _user_id(claims)
    try:
        update = await matching.update_donor_location(user_id, body.latitude, body.longitude)
    except Exception as e:
        raise to_http_exception(e, "update_location", user_id=user_id) from e

    return LocationUpdateResponse(
        location=_coordinates(update.donor.location),
        address=update.address,
        nearby_emergency_requests=update.nearby_emergency_requests,
        alert_job_id=update.alert.job_id if update.alert else None,
    )


# ------------------------------------------------------------------ geo helpers


@router.post("/geocode", response_model=GeocodeResponse)
async def geocode_address(
    body: GeocodeRequest,
    claims: dict = Depends(auth_dependency),
    geo: GeoCollaborator = Depends(get_geo),
):
    """Resolve an address to coordinates."""
    try:
        result = await geo.geocode(body.address)
    except Exception as e:
        raise to_http_exception(e, "geocode_address", user_id=claims.get("sub")) from e
    return GeocodeResponse(**result.to_dict())


@router.post("/reverse-geocode", response_model=GeocodeResponse)
async def reverse_geocode(
    body: ReverseGeocodeRequest,
    claims: dict = Depends(auth_dependency),
    geo: GeoCollaborator = Depends(get_geo),
):
    """Resolve coordinates to an address."""
    try:
        result = await geo.reverse_geocode(body.latitude, body.longitude)
    except Exception as e:
        raise to_http_exception(e, "reverse_geocode", user_id=claims.get("sub")) from e
    return GeocodeResponse(**result.to_dict())


@router.post("/route", response_model=RouteResponse)
async def calculate_route(
    body: RouteRequest,
    claims: dict = Depends(auth_dependency),
    geo: GeoCollaborator = Depends(get_geo),
):
    """Driving distance and duration; straight-line estimate when routing is down."""
    start = Coordinates(latitude=body.start_lat, longitude=body.start_lng)
    end = Coordinates(latitude=body.end_lat, longitude=body.end_lng)
    try:
        route = await geo.calculate_route(start, end)
    except Exception as e:
        raise to_http_exception(e, "calculate_route", user_id=claims.get("sub")) from e
    return RouteResponse(**route.to_dict())


@router.get("/nearby-places", response_model=NearbyPlacesResponse)
async def find_nearby_places(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    category: str = Query(default="hospital"),
    radius: float = Query(default=10_000, gt=0, le=settings.MATCH_MAX_SEARCH_RADIUS_M),
    claims: dict = Depends(auth_dependency),
    geo: GeoCollaborator = Depends(get_geo),
):
    """Hospitals, clinics or pharmacies around a point, nearest first."""
    try:
        if category not in PLACE_CATEGORIES:
            raise ValidationError(
                f"Unknown place category '{category}'", operation="nearby_places"
            )
        places = await geo.find_nearby_places(
            Coordinates(latitude=latitude, longitude=longitude), category, radius
        )
    except Exception as e:
        raise to_http_exception(e, "find_nearby_places", user_id=claims.get("sub")) from e

    return NearbyPlacesResponse(
        category=category,
        radius_m=radius,
        places=[
            NearbyPlaceResponse(
                name=place.name,
                address=place.address,
                latitude=place.latitude,
                longitude=place.longitude,
                distance_m=round(place.distance_m, 1),
                source=place.source,
            )
            for place in places
        ],
    )
