"""
Matching orchestrator.

Combines the compatibility engine, the ranking service and the persistence
radius query into ranked donor/request matches, and hands notification work
to the dispatch pipeline. Matching never fails the caller because of a
collaborator outage: results carry an explicit status that separates
"no matches" from "search degraded".
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.jobs.dispatch_pipeline import DispatchPipeline
from app.models.domain.blood_domain import BloodRequest, Coordinates, Donor, Urgency
from app.models.domain.job_domain import JobHandle
from app.repositories.blood_repository import BloodRepository
from app.services.compatibility import can_donate, get_compatible_types, get_recipient_types
from app.services.errors import NotFoundError, RequestAlreadyFulfilled, ValidationError
from app.services.geolocation_service import GeoCollaborator, RouteInfo, straight_line_route
from app.services.notification_channel import contact_for
from app.services.ranking_service import (
    RankedCandidate,
    RankingMode,
    RankingService,
    RankingWeights,
)
from app.utils.geo import geographic_midpoint, is_valid_coordinate, validate_coordinates

logger = get_logger(__name__)

NO_DONOR_MATCHES = "No compatible donors found within the search radius."
NO_REQUEST_MATCHES = "No blood requests found in your area. Try expanding your search radius."
NO_DONOR_LOCATION = (
    "No location data available for donor. "
    "Please update your location to find nearby requests."
)
SEARCH_DEGRADED = "Search is temporarily degraded. Please try again later."


class MatchStatus(str, Enum):
    MATCHED = "matched"
    NO_MATCHES = "no_matches"
    DEGRADED = "degraded"


@dataclass(slots=True)
class MatchOptions:
    """Search bounds for one matching call. mode is required."""

    max_distance_m: float
    limit: int
    mode: RankingMode
    urgency_filter: Urgency | None = None

    def validate(self) -> None:
        if not self.max_distance_m or self.max_distance_m <= 0:
            raise ValidationError("maxDistance must be positive", operation="match")
        if self.limit < 1:
            raise ValidationError("limit must be at least 1", operation="match")
        self.mode = RankingMode(self.mode)


@dataclass(slots=True)
class Match:
    """A ranked donor or request with its transient distance and score."""

    candidate: Donor | BloodRequest
    distance_m: float
    score: float
    urgency: Urgency

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidate": self.candidate.to_dict(),
            "distance_m": round(self.distance_m, 1),
            "score": round(self.score, 2),
            "urgency": self.urgency.value,
        }


@dataclass(slots=True)
class MatchResult:
    status: MatchStatus
    matches: list[Match] = field(default_factory=list)
    message: str | None = None
    search_radius_m: float = 0.0
    total_found: int = 0
    dropped: int = 0
    center: Coordinates | None = None


@dataclass(slots=True)
class MeetingPoint:
    latitude: float
    longitude: float
    source: str
    name: str | None = None
    address: str | None = None

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(latitude=self.latitude, longitude=self.longitude)


@dataclass(slots=True)
class MeetingPlan:
    meeting_point: MeetingPoint
    donor_route: RouteInfo
    hospital_route: RouteInfo

    @property
    def total_distance_km(self) -> float:
        return self.donor_route.distance_km + self.hospital_route.distance_km

    @property
    def max_travel_minutes(self) -> float:
        return max(self.donor_route.duration_minutes, self.hospital_route.duration_minutes)


@dataclass(slots=True)
class NotifyResult:
    status: MatchStatus
    notified: int
    skipped: int
    search_radius_m: float
    average_distance_m: float | None
    escalated: int = 0
    handles: list[JobHandle] = field(default_factory=list)


@dataclass(slots=True)
class LocationUpdate:
    donor: Donor
    address: str
    nearby_emergency_requests: int
    alert: JobHandle | None = None


class MatchingService:
    """
    Orchestrates matching between donors and requests.

    Collaborators are injected; defaults for radii, cooldown and urgency
    bonuses come from settings.
    """

    def __init__(
        self,
        repository: BloodRepository,
        pipeline: DispatchPipeline,
        geo: GeoCollaborator,
        ranking: RankingService | None = None,
        *,
        max_search_radius_m: float | None = None,
        cooldown_days: int | None = None,
        urgency_bonuses: dict[str, float] | None = None,
        geo_timeout: float | None = None,
    ):
        self.repository = repository
        self.pipeline = pipeline
        self.geo = geo
        self.ranking = ranking or RankingService(RankingWeights(*settings.ranking_weights()))
        self.max_search_radius_m = max_search_radius_m or settings.MATCH_MAX_SEARCH_RADIUS_M
        self.cooldown_days = cooldown_days or settings.DONATION_COOLDOWN_DAYS
        self.urgency_bonuses = urgency_bonuses or settings.urgency_bonuses()
        self.geo_timeout = geo_timeout or settings.GEO_TIMEOUT_SECONDS

    # ------------------------------------------------------------------ lookups

    async def get_request(self, request_id: str) -> BloodRequest:
        request = await self.repository.get_request(request_id)
        if not request:
            raise NotFoundError("Blood request not found", operation="get_request")
        return request

    async def get_donor(self, donor_id: str) -> Donor:
        donor = await self.repository.get_donor(donor_id)
        if not donor:
            raise NotFoundError("Donor not found", operation="get_donor")
        return donor

    # ------------------------------------------------------------------ scoring

    def donor_score(self, donor: Donor, now: datetime) -> float:
        score = 100.0
        if donor.available:
            score += 20.0
        if donor.in_cooldown(now, self.cooldown_days):
            score *= 0.7
        return score

    def request_score(self, request: BloodRequest, now: datetime) -> float:
        score = 100.0
        if now - request.created_at < timedelta(hours=24):
            score += 10.0
        return score

    def urgency_bonus(self, urgency: Urgency) -> float:
        return float(self.urgency_bonuses.get(urgency.value, 0.0))

    def _clamp_radius(self, max_distance_m: float) -> float:
        return min(max_distance_m, self.max_search_radius_m)

    # ----------------------------------------------------------------- matching

    async def find_matches_for_request(
        self, request: BloodRequest, options: MatchOptions
    ) -> MatchResult:
        """
        Rank compatible, available donors around a request.

        Raises:
            ValidationError: Invalid options or request coordinates
        """
        options.validate()
        center = validate_coordinates(request.location.latitude, request.location.longitude)
        radius = self._clamp_radius(options.max_distance_m)
        compatible = get_compatible_types(request.blood_type)

        try:
            donors = await self.repository.find_donors_within_radius(
                center, radius, blood_types=compatible, available_only=True
            )
        except Exception as e:
            logger.error(
                "Donor radius query failed",
                request_id=request.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return MatchResult(
                status=MatchStatus.DEGRADED,
                message=SEARCH_DEGRADED,
                search_radius_m=radius,
                center=center,
            )

        candidates = []
        dropped = 0
        for donor in donors:
            if donor.id == request.requester_id or not donor.available:
                continue
            if not can_donate(donor.blood_type, request.blood_type):
                continue
            if donor.location is None or not is_valid_coordinate(
                donor.location.latitude, donor.location.longitude
            ):
                dropped += 1
                continue
            candidates.append(donor)

        now = datetime.now(UTC)
        bonus = self.urgency_bonus(request.urgency)
        ranked = self.ranking.rank(
            center,
            candidates,
            options.mode,
            max_distance_m=radius,
            compat_score=lambda donor: self.donor_score(donor, now),
            bonus=lambda _donor: bonus,
        )

        result = self._build_result(
            ranked,
            options,
            radius,
            center,
            dropped,
            NO_DONOR_MATCHES,
            urgency_of=lambda _donor: request.urgency,
        )

        logger.info(
            "Donor matching finished",
            request_id=request.id,
            mode=options.mode.value,
            status=result.status.value,
            total_found=result.total_found,
            returned=len(result.matches),
        )
        return result

    async def find_matches_for_donor(self, donor: Donor, options: MatchOptions) -> MatchResult:
        """
        Rank open requests the donor can give to around the donor's location.

        A donor without a location yet gets a degraded result, never an error.
        """
        options.validate()
        radius = self._clamp_radius(options.max_distance_m)

        if donor.location is None:
            return MatchResult(
                status=MatchStatus.DEGRADED,
                message=NO_DONOR_LOCATION,
                search_radius_m=radius,
            )

        center = validate_coordinates(donor.location.latitude, donor.location.longitude)
        recipient_types = get_recipient_types(donor.blood_type)

        try:
            requests = await self.repository.find_open_requests_within_radius(
                center, radius, blood_types=recipient_types, urgency=options.urgency_filter
            )
        except Exception as e:
            logger.error(
                "Request radius query failed",
                donor_id=donor.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return MatchResult(
                status=MatchStatus.DEGRADED,
                message=SEARCH_DEGRADED,
                search_radius_m=radius,
                center=center,
            )

        candidates = []
        dropped = 0
        for request in requests:
            if not request.is_open or request.requester_id == donor.id:
                continue
            if options.urgency_filter is not None and request.urgency != options.urgency_filter:
                continue
            if not can_donate(donor.blood_type, request.blood_type):
                continue
            if not is_valid_coordinate(request.location.latitude, request.location.longitude):
                dropped += 1
                continue
            candidates.append(request)

        now = datetime.now(UTC)
        ranked = self.ranking.rank(
            center,
            candidates,
            options.mode,
            max_distance_m=radius,
            compat_score=lambda request: self.request_score(request, now),
            bonus=lambda request: self.urgency_bonus(request.urgency),
        )

        result = self._build_result(
            ranked,
            options,
            radius,
            center,
            dropped,
            NO_REQUEST_MATCHES,
            urgency_of=lambda request: request.urgency,
        )

        logger.info(
            "Request matching finished",
            donor_id=donor.id,
            mode=options.mode.value,
            status=result.status.value,
            total_found=result.total_found,
            returned=len(result.matches),
        )
        return result

    def _build_result(
        self,
        ranked: list[RankedCandidate],
        options: MatchOptions,
        radius: float,
        center: Coordinates,
        dropped: int,
        empty_message: str,
        urgency_of: Callable[[Any], Urgency],
    ) -> MatchResult:
        matches = [
            Match(
                candidate=item.candidate,
                distance_m=item.distance_m,
                score=item.score,
                urgency=urgency_of(item.candidate),
            )
            for item in ranked[: options.limit]
        ]

        if matches:
            status, message = MatchStatus.MATCHED, None
        elif dropped:
            status, message = MatchStatus.DEGRADED, SEARCH_DEGRADED
        else:
            status, message = MatchStatus.NO_MATCHES, empty_message

        return MatchResult(
            status=status,
            matches=matches,
            message=message,
            search_radius_m=radius,
            total_found=len(ranked),
            dropped=dropped,
            center=center,
        )

    # ------------------------------------------------------------ meeting point

    async def suggest_meeting_point(
        self,
        donor: Donor,
        request: BloodRequest,
        radius_m: float | None = None,
    ) -> MeetingPlan:
        """
        Suggest where donor and hospital should meet.

        The nearest medical place around the geographic midpoint is preferred;
        the raw midpoint (source "calculated") is returned whenever the lookup
        is empty, fails or times out.

        Raises:
            ValidationError: Donor has no location
        """
        if donor.location is None:
            raise ValidationError(
                "Donor location is required for a meeting point", operation="meeting_point"
            )

        midpoint = geographic_midpoint(donor.location, request.location)
        radius = radius_m or settings.MATCH_MEETING_POINT_RADIUS_M

        places = []
        try:
            places = await asyncio.wait_for(
                self.geo.find_nearby_places(midpoint, "hospital", radius),
                timeout=self.geo_timeout,
            )
        except TimeoutError:
            logger.warning("Meeting point lookup timed out", request_id=request.id)
        except Exception as e:
            logger.warning(
                "Meeting point lookup failed",
                request_id=request.id,
                error=str(e),
                error_type=type(e).__name__,
            )

        if places:
            place = places[0]
            meeting_point = MeetingPoint(
                latitude=place.latitude,
                longitude=place.longitude,
                source=place.source,
                name=place.name,
                address=place.address,
            )
        else:
            meeting_point = MeetingPoint(
                latitude=midpoint.latitude,
                longitude=midpoint.longitude,
                source="calculated",
            )

        donor_route, hospital_route = await asyncio.gather(
            self._route(donor.location, meeting_point.coordinates),
            self._route(request.location, meeting_point.coordinates),
        )
        return MeetingPlan(
            meeting_point=meeting_point,
            donor_route=donor_route,
            hospital_route=hospital_route,
        )

    async def _route(self, start: Coordinates, end: Coordinates) -> RouteInfo:
        try:
            return await asyncio.wait_for(
                self.geo.calculate_route(start, end), timeout=self.geo_timeout
            )
        except Exception as e:
            logger.warning("Route lookup failed, using straight line", error=str(e) or "timeout")
            return straight_line_route(start, end)

    # ------------------------------------------------------------ notifications

    async def notify_compatible_donors(
        self, request: BloodRequest, max_distance_m: float | None = None
    ) -> NotifyResult:
        """
        Enqueue one urgent-donor-alert job per compatible donor in range.

        Raises:
            RequestAlreadyFulfilled: The request no longer needs donors
        """
        if request.fulfilled:
            raise RequestAlreadyFulfilled(
                "Blood request already fulfilled", operation="notify_donors"
            )

        result = await self.find_matches_for_request(
            request,
            MatchOptions(
                max_distance_m=max_distance_m or settings.MATCH_DEFAULT_MAX_DISTANCE_M,
                limit=settings.MATCH_NOTIFY_LIMIT,
                mode=RankingMode.PROXIMITY,
            ),
        )

        queue = "urgent" if request.urgency >= Urgency.HIGH else "matching"
        handles = []
        skipped = 0
        for match in result.matches:
            donor = match.candidate
            contact = contact_for(donor)
            if contact is None:
                skipped += 1
                continue

            channel, recipient = contact
            job = self.pipeline.job_for_urgency(
                request.urgency,
                channel=channel,
                recipient=recipient,
                template_id="urgent-donor-alert",
                data={
                    "donorName": donor.name,
                    "bloodType": request.blood_type.value,
                    "hospital": request.hospital,
                    "urgency": request.urgency.value,
                    "distanceKm": round(match.distance_m / 1000.0, 1),
                    "requestId": request.id,
                },
                request_id=request.id,
                queue=queue,
            )
            handles.append(await self.pipeline.enqueue(job))

        escalated = 0
        if request.urgency is Urgency.EMERGENCY:
            # earlier, lower-priority alerts for this request jump the queue too
            escalated = await self.pipeline.escalate_request(request.id)

        notified = len(handles)
        average = (
            sum(match.distance_m for match in result.matches) / len(result.matches)
            if result.matches
            else None
        )

        logger.info(
            "Donor notifications enqueued",
            request_id=request.id,
            urgency=request.urgency.value,
            notified=notified,
            skipped=skipped,
            escalated=escalated,
        )
        return NotifyResult(
            status=result.status,
            notified=notified,
            skipped=skipped,
            search_radius_m=result.search_radius_m,
            average_distance_m=average,
            escalated=escalated,
            handles=handles,
        )

    async def update_donor_location(
        self, donor_id: str, latitude: float, longitude: float
    ) -> LocationUpdate:
        """
        Store a donor's reported position and alert them about nearby emergencies.

        Raises:
            InvalidCoordinate: Out-of-range coordinates
            NotFoundError: Unknown donor
        """
        location = validate_coordinates(latitude, longitude)
        await self.get_donor(donor_id)

        try:
            geocoded = await asyncio.wait_for(
                self.geo.reverse_geocode(latitude, longitude), timeout=self.geo_timeout
            )
            address = geocoded.formatted_address
        except Exception as e:
            logger.warning(
                "Reverse geocoding failed, storing raw coordinates",
                donor_id=donor_id,
                error=str(e) or type(e).__name__,
            )
            address = f"{latitude}, {longitude}"

        donor = await self.repository.update_donor_location(donor_id, location, address)
        if donor is None:
            raise NotFoundError("Donor not found", operation="update_location")

        nearby = await self.find_matches_for_donor(
            donor,
            MatchOptions(
                max_distance_m=settings.MATCH_EMERGENCY_ALERT_RADIUS_M,
                limit=settings.MATCH_DEFAULT_REQUEST_LIMIT,
                mode=RankingMode.PROXIMITY,
                urgency_filter=Urgency.EMERGENCY,
            ),
        )

        alert = None
        contact = contact_for(donor)
        if nearby.matches and contact is not None:
            nearest = nearby.matches[0]
            channel, recipient = contact
            job = self.pipeline.job_for_urgency(
                Urgency.EMERGENCY,
                channel=channel,
                recipient=recipient,
                template_id="nearby-emergency-alert",
                data={
                    "donorName": donor.name,
                    "requestsCount": len(nearby.matches),
                    "nearestRequest": {
                        "id": nearest.candidate.id,
                        "bloodType": nearest.candidate.blood_type.value,
                        "hospital": nearest.candidate.hospital,
                        "distanceKm": round(nearest.distance_m / 1000.0, 1),
                    },
                },
                request_id=nearest.candidate.id,
            )
            alert = await self.pipeline.enqueue(job)

        logger.info(
            "Donor location updated",
            donor_id=donor_id,
            nearby_emergency_requests=len(nearby.matches),
            alerted=alert is not None,
        )
        return LocationUpdate(
            donor=donor,
            address=address,
            nearby_emergency_requests=len(nearby.matches),
            alert=alert,
        )
