# app/models/domain/blood_domain.py
"""
Blood Domain Models
Donors, blood requests and offers as seen by the matching core.

Donor and BloodRequest are owned by the persistence layer; the core only
mutates them through repository calls. Distance and score projections are
kept in the service layer and never stored on these records.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


class BloodType(str, Enum):
    """ABO group crossed with Rh factor."""

    A_POS = "A+"
    A_NEG = "A-"
    B_POS = "B+"
    B_NEG = "B-"
    AB_POS = "AB+"
    AB_NEG = "AB-"
    O_POS = "O+"
    O_NEG = "O-"

    @property
    def abo(self) -> str:
        return self.value[:-1]

    @property
    def rh_positive(self) -> bool:
        return self.value.endswith("+")

    @classmethod
    def parse(cls, value: "str | BloodType") -> "BloodType":
        """Strict conversion; unknown strings raise ValueError."""
        if isinstance(value, cls):
            return value
        return cls(value.strip().upper())


class Urgency(str, Enum):
    """Ordered severity of a blood request: Low < Medium < High < Emergency."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    EMERGENCY = "Emergency"

    @property
    def rank(self) -> int:
        return _URGENCY_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, Urgency):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Urgency):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Urgency):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Urgency):
            return NotImplemented
        return self.rank >= other.rank


_URGENCY_RANK = {
    Urgency.LOW: 1,
    Urgency.MEDIUM: 2,
    Urgency.HIGH: 3,
    Urgency.EMERGENCY: 4,
}


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class Coordinates:
    """A point in decimal degrees."""

    latitude: float
    longitude: float

    def to_dict(self) -> dict:
        return {"latitude": self.latitude, "longitude": self.longitude}


@dataclass(slots=True)
class Donor:
    """A user who may give blood."""

    id: str
    name: str
    blood_type: BloodType
    location: Coordinates | None = None
    available: bool = True
    last_donation_at: datetime | None = None
    email: str | None = None
    phone: str | None = None
    prefers_sms: bool = False
    address: str | None = None

    def in_cooldown(self, now: datetime, cooldown_days: int) -> bool:
        """True when the donor gave blood within the cooldown window."""
        if not self.last_donation_at:
            return False
        return (now - self.last_donation_at).total_seconds() < cooldown_days * 86400

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "blood_type": self.blood_type.value,
            "location": self.location.to_dict() if self.location else None,
            "available": self.available,
            "address": self.address,
        }


@dataclass(slots=True)
class BloodRequest:
    """A request for blood; terminal once fulfilled."""

    id: str
    requester_id: str
    blood_type: BloodType
    urgency: Urgency
    location: Coordinates
    hospital: str = ""
    address: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    fulfilled: bool = False
    fulfilled_at: datetime | None = None
    fulfilled_by: str | None = None
    accepted_offer_id: str | None = None
    offer_ids: list[str] = field(default_factory=list)
    version: int = 0

    @property
    def is_open(self) -> bool:
        return not self.fulfilled

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "requester_id": self.requester_id,
            "blood_type": self.blood_type.value,
            "urgency": self.urgency.value,
            "location": self.location.to_dict(),
            "hospital": self.hospital,
            "address": self.address,
            "created_at": self.created_at.isoformat(),
            "fulfilled": self.fulfilled,
            "fulfilled_at": self.fulfilled_at.isoformat() if self.fulfilled_at else None,
            "fulfilled_by": self.fulfilled_by,
            "accepted_offer_id": self.accepted_offer_id,
        }


@dataclass(slots=True)
class Offer:
    """A donor's proposal to fulfil a specific request."""

    id: str
    request_id: str
    donor_id: str
    status: OfferStatus = OfferStatus.PENDING
    message: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    responded_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        """Pending and accepted offers block a second offer from the same donor."""
        return self.status in (OfferStatus.PENDING, OfferStatus.ACCEPTED)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "donor_id": self.donor_id,
            "status": self.status.value,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
        }
