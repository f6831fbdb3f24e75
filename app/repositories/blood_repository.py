"""
Persistence contract for donors, blood requests and offers.

The core only talks to BloodRepository. InMemoryBloodRepository backs local
development and tests; PostgresBloodRepository backs deployments.

The two state-machine writes are conditional:
- create_offer_if_open inserts an offer only while the request is open and
  the donor has no active offer on it, bumping the request version.
- commit_acceptance applies accept/fulfil/reject-others only if the request
  version still equals the version the caller read (compare-and-swap).

Radius searches return rows whose stored coordinates are out of range
regardless of distance; the caller decides how to account for them.
"""

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime

from app.infrastructure.observability.logging import get_logger
from app.models.domain.blood_domain import (
    BloodRequest,
    BloodType,
    Coordinates,
    Donor,
    Offer,
    OfferStatus,
    Urgency,
)
from app.services.errors import DuplicateOffer, NotFoundError, RequestAlreadyFulfilled
from app.utils.geo import haversine_distance, is_valid_coordinate

logger = get_logger(__name__)


@dataclass(slots=True)
class AcceptanceCommit:
    """Outcome of a successful acceptance write."""

    request: BloodRequest
    accepted_offer: Offer
    rejected_offers: list[Offer]


class BloodRepository(ABC):
    """Storage operations consumed by the matching core."""

    # Donors
    @abstractmethod
    async def get_donor(self, donor_id: str) -> Donor | None: ...

    @abstractmethod
    async def save_donor(self, donor: Donor) -> Donor: ...

    @abstractmethod
    async def update_donor_location(
        self, donor_id: str, location: Coordinates, address: str | None
    ) -> Donor | None: ...

    @abstractmethod
    async def find_donors_within_radius(
        self,
        center: Coordinates,
        radius_m: float,
        blood_types: Iterable[BloodType] | None = None,
        available_only: bool = True,
    ) -> list[Donor]: ...

    # Requests
    @abstractmethod
    async def get_request(self, request_id: str) -> BloodRequest | None: ...

    @abstractmethod
    async def save_request(self, request: BloodRequest) -> BloodRequest: ...

    @abstractmethod
    async def find_open_requests_within_radius(
        self,
        center: Coordinates,
        radius_m: float,
        blood_types: Iterable[BloodType] | None = None,
        urgency: Urgency | None = None,
    ) -> list[BloodRequest]: ...

    # Offers
    @abstractmethod
    async def get_offer(self, offer_id: str) -> Offer | None: ...

    @abstractmethod
    async def list_offers_for_request(self, request_id: str) -> list[Offer]: ...

    @abstractmethod
    async def list_offers_for_donor(
        self, donor_id: str, status: OfferStatus | None = None
    ) -> list[Offer]: ...

    @abstractmethod
    async def create_offer_if_open(self, offer: Offer) -> Offer:
        """
        Raises:
            NotFoundError: Unknown request
            RequestAlreadyFulfilled: Request no longer open
            DuplicateOffer: Donor already has a pending/accepted offer on the request
        """

    @abstractmethod
    async def commit_acceptance(
        self,
        request_id: str,
        offer_id: str,
        expected_version: int,
        responded_at: datetime,
    ) -> AcceptanceCommit | None:
        """Return None when the version moved, the request closed or the offer left pending."""


def _copy_request(request: BloodRequest) -> BloodRequest:
    return replace(request, offer_ids=list(request.offer_ids))


def _has_valid_location(location: Coordinates) -> bool:
    return is_valid_coordinate(location.latitude, location.longitude)


class InMemoryBloodRepository(BloodRepository):
    """Process-local storage guarded by a single lock."""

    def __init__(
        self, donors: Iterable[Donor] = (), requests: Iterable[BloodRequest] = ()
    ):
        self._lock = threading.Lock()
        self._donors: dict[str, Donor] = {donor.id: replace(donor) for donor in donors}
        self._requests: dict[str, BloodRequest] = {r.id: _copy_request(r) for r in requests}
        self._offers: dict[str, Offer] = {}

    async def get_donor(self, donor_id: str) -> Donor | None:
        with self._lock:
            donor = self._donors.get(donor_id)
            return replace(donor) if donor else None

    async def save_donor(self, donor: Donor) -> Donor:
        with self._lock:
            self._donors[donor.id] = replace(donor)
        return donor

    async def update_donor_location(
        self, donor_id: str, location: Coordinates, address: str | None
    ) -> Donor | None:
        with self._lock:
            donor = self._donors.get(donor_id)
            if not donor:
                return None
            donor.location = location
            donor.address = address
            return replace(donor)

    async def find_donors_within_radius(
        self,
        center: Coordinates,
        radius_m: float,
        blood_types: Iterable[BloodType] | None = None,
        available_only: bool = True,
    ) -> list[Donor]:
        allowed = set(blood_types) if blood_types is not None else None
        with self._lock:
            donors = [replace(donor) for donor in self._donors.values()]

        results = []
        for donor in donors:
            if donor.location is None:
                continue
            if available_only and not donor.available:
                continue
            if allowed is not None and donor.blood_type not in allowed:
                continue
            if not _has_valid_location(donor.location):
                results.append(donor)
            elif haversine_distance(center, donor.location) <= radius_m:
                results.append(donor)
        return results

    async def get_request(self, request_id: str) -> BloodRequest | None:
        with self._lock:
            request = self._requests.get(request_id)
            return _copy_request(request) if request else None

    async def save_request(self, request: BloodRequest) -> BloodRequest:
        with self._lock:
            self._requests[request.id] = _copy_request(request)
        return request

    async def find_open_requests_within_radius(
        self,
        center: Coordinates,
        radius_m: float,
        blood_types: Iterable[BloodType] | None = None,
        urgency: Urgency | None = None,
    ) -> list[BloodRequest]:
        allowed = set(blood_types) if blood_types is not None else None
        with self._lock:
            requests = [_copy_request(r) for r in self._requests.values() if not r.fulfilled]

        results = []
        for request in requests:
            if allowed is not None and request.blood_type not in allowed:
                continue
            if urgency is not None and request.urgency != urgency:
                continue
            if not _has_valid_location(request.location):
                results.append(request)
            elif haversine_distance(center, request.location) <= radius_m:
                results.append(request)
        return results

    async def get_offer(self, offer_id: str) -> Offer | None:
        with self._lock:
            offer = self._offers.get(offer_id)
            return replace(offer) if offer else None

    async def list_offers_for_request(self, request_id: str) -> list[Offer]:
        with self._lock:
            offers = [replace(o) for o in self._offers.values() if o.request_id == request_id]
        return sorted(offers, key=lambda o: o.created_at, reverse=True)

    async def list_offers_for_donor(
        self, donor_id: str, status: OfferStatus | None = None
    ) -> list[Offer]:
        with self._lock:
            offers = [
                replace(o)
                for o in self._offers.values()
                if o.donor_id == donor_id and (status is None or o.status == status)
            ]
        return sorted(offers, key=lambda o: o.created_at, reverse=True)

    async def create_offer_if_open(self, offer: Offer) -> Offer:
        with self._lock:
            request = self._requests.get(offer.request_id)
            if not request:
                raise NotFoundError("Blood request not found", operation="create_offer")
            if request.fulfilled:
                raise RequestAlreadyFulfilled(
                    "Blood request already fulfilled", operation="create_offer"
                )
            for existing in self._offers.values():
                if (
                    existing.request_id == offer.request_id
                    and existing.donor_id == offer.donor_id
                    and existing.is_active
                ):
                    raise DuplicateOffer(
                        "You have already sent an offer for this request",
                        operation="create_offer",
                    )

            self._offers[offer.id] = replace(offer)
            request.offer_ids.append(offer.id)
            request.version += 1
            return replace(offer)

    async def commit_acceptance(
        self,
        request_id: str,
        offer_id: str,
        expected_version: int,
        responded_at: datetime,
    ) -> AcceptanceCommit | None:
        with self._lock:
            request = self._requests.get(request_id)
            offer = self._offers.get(offer_id)
            if not request or not offer or offer.request_id != request_id:
                return None
            if request.version != expected_version or request.fulfilled:
                return None
            if offer.status is not OfferStatus.PENDING:
                return None

            offer.status = OfferStatus.ACCEPTED
            offer.responded_at = responded_at

            request.fulfilled = True
            request.fulfilled_at = responded_at
            request.fulfilled_by = offer.donor_id
            request.accepted_offer_id = offer.id
            request.version += 1

            rejected = []
            for other in self._offers.values():
                if (
                    other.request_id == request_id
                    and other.id != offer_id
                    and other.status is OfferStatus.PENDING
                ):
                    other.status = OfferStatus.REJECTED
                    other.responded_at = responded_at
                    rejected.append(replace(other))

            return AcceptanceCommit(
                request=_copy_request(request),
                accepted_offer=replace(offer),
                rejected_offers=rejected,
            )
