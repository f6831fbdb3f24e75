from datetime import UTC, datetime

import pytest

from app.auth.verify import auth_dependency
from app.container import ServiceContainer
from app.jobs.dispatch_pipeline import DispatchPipeline, RetryPolicy
from app.models.domain.blood_domain import (
    BloodRequest,
    BloodType,
    Donor,
    Urgency,
)
from app.models.domain.job_domain import ChannelType
from app.repositories.blood_repository import InMemoryBloodRepository
from app.services.geolocation_service import NearbyPlace
from tests.fakes import CENTER, FakeChannel, FakeGeo, offset


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app, claims: dict | None = None):
        if claims is None:
            app.dependency_overrides[auth_dependency] = auth_override
        else:
            app.dependency_overrides[auth_dependency] = lambda: claims

    return _apply


@pytest.fixture
def fake_geo():
    return FakeGeo(
        places=[
            NearbyPlace(
                name="Bellevue Hospital",
                address="462 1st Avenue, New York",
                latitude=40.7390,
                longitude=-73.9754,
                distance_m=800.0,
                source="openstreetmap",
            )
        ]
    )


@pytest.fixture
def email_channel():
    return FakeChannel()


@pytest.fixture
def sms_channel():
    return FakeChannel()


@pytest.fixture
def channels(email_channel, sms_channel):
    return {ChannelType.EMAIL: email_channel, ChannelType.SMS: sms_channel}


@pytest.fixture
def pipeline(channels):
    return DispatchPipeline(
        channels,
        retry_policy=RetryPolicy(base_seconds=0.01, cap_seconds=0.05),
        send_timeout=0.5,
    )


@pytest.fixture
def make_donor():
    def _make(donor_id, blood_type, location=CENTER, **kwargs):
        kwargs.setdefault("name", donor_id.title())
        kwargs.setdefault("email", f"{donor_id}@example.com")
        return Donor(
            id=donor_id,
            blood_type=BloodType(blood_type),
            location=location,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_request():
    def _make(request_id, blood_type, urgency=Urgency.HIGH, location=CENTER, **kwargs):
        kwargs.setdefault("requester_id", "user-123")
        kwargs.setdefault("hospital", "Mount Sinai")
        kwargs.setdefault("contact_email", "ward@hospital.example")
        kwargs.setdefault("created_at", datetime.now(UTC))
        return BloodRequest(
            id=request_id,
            blood_type=BloodType(blood_type),
            urgency=Urgency(urgency),
            location=location,
            **kwargs,
        )

    return _make


@pytest.fixture
def repository(make_donor, make_request):
    """
    Seeded store:
        requester user-123 (A+, also a donor) owns req-ab-neg (AB-, High, at CENTER)
        donors around CENTER: o-neg 2 km, ab-neg 10 km, a-pos 1 km
    """
    return InMemoryBloodRepository(
        donors=[
            make_donor("user-123", "A+", location=offset(0.005)),
            make_donor("o-neg", "O-", location=offset(0.018)),
            make_donor("ab-neg", "AB-", location=offset(0.09)),
            make_donor("a-pos", "A+", location=offset(0.009)),
        ],
        requests=[make_request("req-ab-neg", "AB-")],
    )


@pytest.fixture
def container(repository, channels, fake_geo):
    return ServiceContainer.build(
        repository=repository, channels=channels, geo=fake_geo, send_timeout=0.5
    )
