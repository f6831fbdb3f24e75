"""
Tests for the PostgreSQL repository with the pool and query helpers mocked.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import psycopg
import pytest

from app.db.helpers import DatabaseError
from app.models.domain.blood_domain import BloodType, Coordinates, Offer, OfferStatus, Urgency
from app.repositories.postgres_blood_repository import PostgresBloodRepository
from app.services.errors import DuplicateOffer, NotFoundError, RequestAlreadyFulfilled

MODULE = "app.repositories.postgres_blood_repository"
NOW = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)


class FakePool:
    def __init__(self):
        self.conn = object()
        self.transactions = 0

    @asynccontextmanager
    async def connection(self):
        yield self.conn

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield self.conn


def donor_row(**overrides):
    row = {
        "id": "o-neg",
        "name": "Olive",
        "blood_type": "O-",
        "latitude": 40.73,
        "longitude": -74.0,
        "available": True,
        "last_donation_at": None,
        "email": "olive@example.com",
        "phone": None,
        "prefers_sms": False,
        "address": None,
    }
    row.update(overrides)
    return row


def request_row(**overrides):
    row = {
        "id": "req-1",
        "requester_id": "user-123",
        "blood_type": "AB-",
        "urgency": "Emergency",
        "latitude": 40.71,
        "longitude": -74.0,
        "hospital": "Mount Sinai",
        "address": None,
        "contact_email": None,
        "contact_phone": None,
        "created_at": NOW,
        "fulfilled": False,
        "fulfilled_at": None,
        "fulfilled_by": None,
        "accepted_offer_id": None,
        "version": 4,
        "offer_ids": ["offer-1"],
    }
    row.update(overrides)
    return row


def offer_row(**overrides):
    row = {
        "id": "offer-1",
        "request_id": "req-1",
        "donor_id": "o-neg",
        "status": "pending",
        "message": "",
        "created_at": NOW,
        "responded_at": None,
    }
    row.update(overrides)
    return row


@pytest.fixture
def pool():
    return FakePool()


@pytest.fixture
def repo(pool):
    return PostgresBloodRepository(pool)


def test_row_mapping():
    donor = PostgresBloodRepository._row_to_donor(donor_row(latitude=None))
    request = PostgresBloodRepository._row_to_request(request_row())
    offer = PostgresBloodRepository._row_to_offer(offer_row(status="accepted"))

    assert donor.blood_type is BloodType.O_NEG
    assert donor.location is None
    assert request.urgency is Urgency.EMERGENCY
    assert request.location == Coordinates(latitude=40.71, longitude=-74.0)
    assert request.offer_ids == ["offer-1"]
    assert offer.status is OfferStatus.ACCEPTED
    assert PostgresBloodRepository._row_to_request(None) is None


@pytest.mark.asyncio
async def test_get_donor(repo, pool, monkeypatch):
    fetch_one = AsyncMock(return_value=donor_row())
    monkeypatch.setattr(f"{MODULE}.fetch_one", fetch_one)

    donor = await repo.get_donor("o-neg")

    assert donor.name == "Olive"
    conn, query, params = fetch_one.await_args.args
    assert conn is pool.conn
    assert params == ("o-neg",)


@pytest.mark.asyncio
async def test_donor_radius_query_filters_in_sql(repo, monkeypatch):
    fetch_all = AsyncMock(return_value=[donor_row()])
    monkeypatch.setattr(f"{MODULE}.fetch_all", fetch_all)

    donors = await repo.find_donors_within_radius(
        Coordinates(latitude=40.71, longitude=-74.0),
        5_000,
        blood_types=[BloodType.O_NEG, BloodType.AB_NEG],
    )

    assert [d.id for d in donors] == ["o-neg"]
    _, query, params = fetch_all.await_args.args
    assert "available" in query
    assert "blood_type = ANY(%(types)s)" in query
    assert "distance_m <= %(radius)s" in query
    assert "NOT (latitude BETWEEN -90 AND 90" in query
    assert sorted(params["types"]) == ["AB-", "O-"]
    assert params["radius"] == 5_000


@pytest.mark.asyncio
async def test_open_request_query_filters_urgency(repo, monkeypatch):
    fetch_all = AsyncMock(return_value=[request_row()])
    monkeypatch.setattr(f"{MODULE}.fetch_all", fetch_all)

    requests = await repo.find_open_requests_within_radius(
        Coordinates(latitude=40.71, longitude=-74.0), 25_000, urgency=Urgency.EMERGENCY
    )

    assert requests[0].id == "req-1"
    _, query, params = fetch_all.await_args.args
    assert "NOT r.fulfilled" in query
    assert params["urgency"] == "Emergency"


@pytest.mark.asyncio
async def test_create_offer_in_one_transaction(repo, pool, monkeypatch):
    monkeypatch.setattr(f"{MODULE}.fetch_val", AsyncMock(return_value=5))
    monkeypatch.setattr(f"{MODULE}.fetch_one", AsyncMock(return_value=offer_row()))

    offer = await repo.create_offer_if_open(
        Offer(id="offer-1", request_id="req-1", donor_id="o-neg")
    )

    assert offer.status is OfferStatus.PENDING
    assert pool.transactions == 1


@pytest.mark.asyncio
async def test_create_offer_unknown_request(repo, monkeypatch):
    monkeypatch.setattr(f"{MODULE}.fetch_val", AsyncMock(side_effect=[None, None]))

    with pytest.raises(NotFoundError):
        await repo.create_offer_if_open(Offer(id="o", request_id="missing", donor_id="d"))


@pytest.mark.asyncio
async def test_create_offer_on_fulfilled_request(repo, monkeypatch):
    monkeypatch.setattr(f"{MODULE}.fetch_val", AsyncMock(side_effect=[None, True]))

    with pytest.raises(RequestAlreadyFulfilled):
        await repo.create_offer_if_open(Offer(id="o", request_id="req-1", donor_id="d"))


@pytest.mark.asyncio
async def test_duplicate_offer_from_unique_index(repo, monkeypatch):
    error = DatabaseError("Query failed", operation="fetch_one")
    error.__cause__ = psycopg.errors.UniqueViolation("duplicate key")
    monkeypatch.setattr(f"{MODULE}.fetch_val", AsyncMock(return_value=5))
    monkeypatch.setattr(f"{MODULE}.fetch_one", AsyncMock(side_effect=error))

    with pytest.raises(DuplicateOffer):
        await repo.create_offer_if_open(Offer(id="o", request_id="req-1", donor_id="o-neg"))


@pytest.mark.asyncio
async def test_other_database_errors_propagate(repo, monkeypatch):
    monkeypatch.setattr(
        f"{MODULE}.fetch_val", AsyncMock(side_effect=DatabaseError("connection reset"))
    )

    with pytest.raises(DatabaseError):
        await repo.create_offer_if_open(Offer(id="o", request_id="req-1", donor_id="o-neg"))


@pytest.mark.asyncio
async def test_commit_acceptance_lost_swap_returns_none(repo, monkeypatch):
    fetch_one = AsyncMock(return_value=None)
    monkeypatch.setattr(f"{MODULE}.fetch_one", fetch_one)

    result = await repo.commit_acceptance("req-1", "offer-1", 4, NOW)

    assert result is None
    _, _, params = fetch_one.await_args.args
    assert params["version"] == 4
    assert fetch_one.await_count == 1


@pytest.mark.asyncio
async def test_commit_acceptance_applies_all_changes(repo, pool, monkeypatch):
    monkeypatch.setattr(
        f"{MODULE}.fetch_one",
        AsyncMock(
            side_effect=[
                {"id": "req-1"},
                offer_row(status="accepted", responded_at=NOW),
                request_row(
                    fulfilled=True,
                    fulfilled_at=NOW,
                    fulfilled_by="o-neg",
                    accepted_offer_id="offer-1",
                    version=5,
                ),
            ]
        ),
    )
    monkeypatch.setattr(
        f"{MODULE}.fetch_all",
        AsyncMock(return_value=[offer_row(id="offer-2", status="rejected", responded_at=NOW)]),
    )

    commit = await repo.commit_acceptance("req-1", "offer-1", 4, NOW)

    assert commit.request.fulfilled is True
    assert commit.request.version == 5
    assert commit.accepted_offer.status is OfferStatus.ACCEPTED
    assert [o.id for o in commit.rejected_offers] == ["offer-2"]
    assert pool.transactions == 1
