"""
PostgreSQL implementation of BloodRepository.

Radius queries compute haversine distance in SQL so only in-range rows
leave the database. Offer creation and acceptance each run in a single
transaction whose first statement is a conditional UPDATE on the request row;
that row lock plus the version check make them atomic per request.
"""

from collections.abc import Iterable
from datetime import datetime

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, fetch_val
from app.db.pool import DatabasePoolManager
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
from app.repositories.blood_repository import AcceptanceCommit, BloodRepository
from app.services.errors import DuplicateOffer, NotFoundError, RequestAlreadyFulfilled
from app.utils.geo import EARTH_RADIUS_M

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS donors (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    blood_type TEXT NOT NULL,
    latitude DOUBLE PRECISION,
    longitude DOUBLE PRECISION,
    available BOOLEAN NOT NULL DEFAULT TRUE,
    last_donation_at TIMESTAMPTZ,
    email TEXT,
    phone TEXT,
    prefers_sms BOOLEAN NOT NULL DEFAULT FALSE,
    address TEXT
);

CREATE TABLE IF NOT EXISTS blood_requests (
    id TEXT PRIMARY KEY,
    requester_id TEXT NOT NULL,
    blood_type TEXT NOT NULL,
    urgency TEXT NOT NULL,
    latitude DOUBLE PRECISION NOT NULL,
    longitude DOUBLE PRECISION NOT NULL,
    hospital TEXT NOT NULL DEFAULT '',
    address TEXT,
    contact_email TEXT,
    contact_phone TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    fulfilled BOOLEAN NOT NULL DEFAULT FALSE,
    fulfilled_at TIMESTAMPTZ,
    fulfilled_by TEXT,
    accepted_offer_id TEXT,
    version INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS offers (
    id TEXT PRIMARY KEY,
    request_id TEXT NOT NULL REFERENCES blood_requests (id),
    donor_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    message TEXT NOT NULL DEFAULT '',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    responded_at TIMESTAMPTZ
);

CREATE UNIQUE INDEX IF NOT EXISTS offers_active_pair
    ON offers (request_id, donor_id) WHERE status IN ('pending', 'accepted');
CREATE INDEX IF NOT EXISTS offers_by_donor ON offers (donor_id, created_at DESC);
CREATE INDEX IF NOT EXISTS blood_requests_open ON blood_requests (fulfilled, blood_type);
"""

# haversine in metres from %(lat)s / %(lon)s; the clamp keeps sqrt and asin defined
# for rounding noise and for out-of-range stored coordinates
DISTANCE_SQL = f"""
    2 * {EARTH_RADIUS_M} * asin(sqrt(GREATEST(0.0, LEAST(1.0,
        power(sin(radians(latitude - %(lat)s) / 2), 2)
        + cos(radians(%(lat)s)) * cos(radians(latitude))
        * power(sin(radians(longitude - %(lon)s) / 2), 2)
    ))))
"""

# rows with out-of-range stored coordinates are returned for the caller to account for
INVALID_LOCATION_SQL = "NOT (latitude BETWEEN -90 AND 90 AND longitude BETWEEN -180 AND 180)"

REQUEST_COLUMNS = """
    r.id, r.requester_id, r.blood_type, r.urgency, r.latitude, r.longitude, r.hospital,
    r.address, r.contact_email, r.contact_phone, r.created_at, r.fulfilled, r.fulfilled_at,
    r.fulfilled_by, r.accepted_offer_id, r.version,
    ARRAY(SELECT o.id FROM offers o WHERE o.request_id = r.id ORDER BY o.created_at) AS offer_ids
"""


class PostgresBloodRepository(BloodRepository):
    def __init__(self, pool: DatabasePoolManager):
        self.pool = pool

    async def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        async with self.pool.transaction() as conn:
            await execute_query(conn, SCHEMA_SQL)
        logger.info("Blood matching schema ensured")

    # ------------------------------------------------------------ row mapping

    @staticmethod
    def _row_to_donor(row: dict | None) -> Donor | None:
        if not row:
            return None
        location = None
        if row.get("latitude") is not None and row.get("longitude") is not None:
            location = Coordinates(latitude=row["latitude"], longitude=row["longitude"])
        return Donor(
            id=row["id"],
            name=row["name"],
            blood_type=BloodType.parse(row["blood_type"]),
            location=location,
            available=row["available"],
            last_donation_at=row.get("last_donation_at"),
            email=row.get("email"),
            phone=row.get("phone"),
            prefers_sms=row.get("prefers_sms", False),
            address=row.get("address"),
        )

    @staticmethod
    def _row_to_request(row: dict | None) -> BloodRequest | None:
        if not row:
            return None
        return BloodRequest(
            id=row["id"],
            requester_id=row["requester_id"],
            blood_type=BloodType.parse(row["blood_type"]),
            urgency=Urgency(row["urgency"]),
            location=Coordinates(latitude=row["latitude"], longitude=row["longitude"]),
            hospital=row.get("hospital") or "",
            address=row.get("address"),
            contact_email=row.get("contact_email"),
            contact_phone=row.get("contact_phone"),
            created_at=row["created_at"],
            fulfilled=row["fulfilled"],
            fulfilled_at=row.get("fulfilled_at"),
            fulfilled_by=row.get("fulfilled_by"),
            accepted_offer_id=row.get("accepted_offer_id"),
            offer_ids=list(row.get("offer_ids") or []),
            version=row["version"],
        )

    @staticmethod
    def _row_to_offer(row: dict | None) -> Offer | None:
        if not row:
            return None
        return Offer(
            id=row["id"],
            request_id=row["request_id"],
            donor_id=row["donor_id"],
            status=OfferStatus(row["status"]),
            message=row.get("message") or "",
            created_at=row["created_at"],
            responded_at=row.get("responded_at"),
        )

    # ----------------------------------------------------------------- donors

    async def get_donor(self, donor_id: str) -> Donor | None:
        async with self.pool.connection() as conn:
            row = await fetch_one(conn, "SELECT * FROM donors WHERE id = %s", (donor_id,))
        return self._row_to_donor(row)

    async def save_donor(self, donor: Donor) -> Donor:
        query = """
            INSERT INTO donors (id, name, blood_type, latitude, longitude, available,
                                last_donation_at, email, phone, prefers_sms, address)
            VALUES (%(id)s, %(name)s, %(blood_type)s, %(latitude)s, %(longitude)s, %(available)s,
                    %(last_donation_at)s, %(email)s, %(phone)s, %(prefers_sms)s, %(address)s)
            ON CONFLICT (id) DO UPDATE SET
                name = EXCLUDED.name,
                blood_type = EXCLUDED.blood_type,
                latitude = EXCLUDED.latitude,
                longitude = EXCLUDED.longitude,
                available = EXCLUDED.available,
                last_donation_at = EXCLUDED.last_donation_at,
                email = EXCLUDED.email,
                phone = EXCLUDED.phone,
                prefers_sms = EXCLUDED.prefers_sms,
                address = EXCLUDED.address
        """
        params = {
            "id": donor.id,
            "name": donor.name,
            "blood_type": donor.blood_type.value,
            "latitude": donor.location.latitude if donor.location else None,
            "longitude": donor.location.longitude if donor.location else None,
            "available": donor.available,
            "last_donation_at": donor.last_donation_at,
            "email": donor.email,
            "phone": donor.phone,
            "prefers_sms": donor.prefers_sms,
            "address": donor.address,
        }
        async with self.pool.connection() as conn:
            await execute_query(conn, query, params)
        return donor

    async def update_donor_location(
        self, donor_id: str, location: Coordinates, address: str | None
    ) -> Donor | None:
        query = """
            UPDATE donors SET latitude = %s, longitude = %s, address = %s
            WHERE id = %s
            RETURNING *
        """
        async with self.pool.connection() as conn:
            row = await fetch_one(
                conn, query, (location.latitude, location.longitude, address, donor_id)
            )
        return self._row_to_donor(row)

    async def find_donors_within_radius(
        self,
        center: Coordinates,
        radius_m: float,
        blood_types: Iterable[BloodType] | None = None,
        available_only: bool = True,
    ) -> list[Donor]:
        params = {"lat": center.latitude, "lon": center.longitude, "radius": radius_m}
        filters = ["latitude IS NOT NULL", "longitude IS NOT NULL"]
        if available_only:
            filters.append("available")
        if blood_types is not None:
            filters.append("blood_type = ANY(%(types)s)")
            params["types"] = [blood_type.value for blood_type in blood_types]

        query = f"""
            SELECT * FROM (
                SELECT d.*, {DISTANCE_SQL} AS distance_m
                FROM donors d
                WHERE {" AND ".join(filters)}
            ) candidates
            WHERE distance_m <= %(radius)s OR {INVALID_LOCATION_SQL}
            ORDER BY distance_m, id
        """
        async with self.pool.connection() as conn:
            rows = await fetch_all(conn, query, params)
        return [self._row_to_donor(row) for row in rows]

    # --------------------------------------------------------------- requests

    async def _select_request(self, conn, request_id: str) -> BloodRequest | None:
        row = await fetch_one(
            conn,
            f"SELECT {REQUEST_COLUMNS} FROM blood_requests r WHERE r.id = %s",
            (request_id,),
        )
        return self._row_to_request(row)

    async def get_request(self, request_id: str) -> BloodRequest | None:
        async with self.pool.connection() as conn:
            return await self._select_request(conn, request_id)

    async def save_request(self, request: BloodRequest) -> BloodRequest:
        query = """
            INSERT INTO blood_requests (id, requester_id, blood_type, urgency, latitude, longitude,
                                        hospital, address, contact_email, contact_phone,
                                        created_at, fulfilled, fulfilled_at, fulfilled_by,
                                        accepted_offer_id, version)
            VALUES (%(id)s, %(requester_id)s, %(blood_type)s, %(urgency)s, %(latitude)s,
                    %(longitude)s, %(hospital)s, %(address)s, %(contact_email)s,
                    %(contact_phone)s, %(created_at)s, %(fulfilled)s, %(fulfilled_at)s,
                    %(fulfilled_by)s, %(accepted_offer_id)s, %(version)s)
            ON CONFLICT (id) DO UPDATE SET
                urgency = EXCLUDED.urgency,
                latitude = EXCLUDED.latitude,
                longitude = EXCLUDED.longitude,
                hospital = EXCLUDED.hospital,
                address = EXCLUDED.address,
                contact_email = EXCLUDED.contact_email,
                contact_phone = EXCLUDED.contact_phone,
                version = blood_requests.version + 1
        """
        params = {
            "id": request.id,
            "requester_id": request.requester_id,
            "blood_type": request.blood_type.value,
            "urgency": request.urgency.value,
            "latitude": request.location.latitude,
            "longitude": request.location.longitude,
            "hospital": request.hospital,
            "address": request.address,
            "contact_email": request.contact_email,
            "contact_phone": request.contact_phone,
            "created_at": request.created_at,
            "fulfilled": request.fulfilled,
            "fulfilled_at": request.fulfilled_at,
            "fulfilled_by": request.fulfilled_by,
            "accepted_offer_id": request.accepted_offer_id,
            "version": request.version,
        }
        async with self.pool.connection() as conn:
            await execute_query(conn, query, params)
        return request

    async def find_open_requests_within_radius(
        self,
        center: Coordinates,
        radius_m: float,
        blood_types: Iterable[BloodType] | None = None,
        urgency: Urgency | None = None,
    ) -> list[BloodRequest]:
        params = {"lat": center.latitude, "lon": center.longitude, "radius": radius_m}
        filters = ["NOT r.fulfilled"]
        if blood_types is not None:
            filters.append("r.blood_type = ANY(%(types)s)")
            params["types"] = [blood_type.value for blood_type in blood_types]
        if urgency is not None:
            filters.append("r.urgency = %(urgency)s")
            params["urgency"] = urgency.value

        query = f"""
            SELECT * FROM (
                SELECT {REQUEST_COLUMNS}, {DISTANCE_SQL} AS distance_m
                FROM blood_requests r
                WHERE {" AND ".join(filters)}
            ) candidates
            WHERE distance_m <= %(radius)s OR {INVALID_LOCATION_SQL}
            ORDER BY distance_m, id
        """
        async with self.pool.connection() as conn:
            rows = await fetch_all(conn, query, params)
        return [self._row_to_request(row) for row in rows]

    # ----------------------------------------------------------------- offers

    async def get_offer(self, offer_id: str) -> Offer | None:
        async with self.pool.connection() as conn:
            row = await fetch_one(conn, "SELECT * FROM offers WHERE id = %s", (offer_id,))
        return self._row_to_offer(row)

    async def list_offers_for_request(self, request_id: str) -> list[Offer]:
        async with self.pool.connection() as conn:
            rows = await fetch_all(
                conn,
                "SELECT * FROM offers WHERE request_id = %s ORDER BY created_at DESC",
                (request_id,),
            )
        return [self._row_to_offer(row) for row in rows]

    async def list_offers_for_donor(
        self, donor_id: str, status: OfferStatus | None = None
    ) -> list[Offer]:
        query = "SELECT * FROM offers WHERE donor_id = %s"
        params: tuple = (donor_id,)
        if status is not None:
            query += " AND status = %s"
            params = (donor_id, status.value)
        query += " ORDER BY created_at DESC"

        async with self.pool.connection() as conn:
            rows = await fetch_all(conn, query, params)
        return [self._row_to_offer(row) for row in rows]

    async def create_offer_if_open(self, offer: Offer) -> Offer:
        try:
            async with self.pool.transaction() as conn:
                version = await fetch_val(
                    conn,
                    """
                    UPDATE blood_requests SET version = version + 1
                    WHERE id = %s AND NOT fulfilled
                    RETURNING version
                    """,
                    (offer.request_id,),
                )
                if version is None:
                    fulfilled = await fetch_val(
                        conn,
                        "SELECT fulfilled FROM blood_requests WHERE id = %s",
                        (offer.request_id,),
                    )
                    if fulfilled is None:
                        raise NotFoundError("Blood request not found", operation="create_offer")
                    raise RequestAlreadyFulfilled(
                        "Blood request already fulfilled", operation="create_offer"
                    )

                row = await fetch_one(
                    conn,
                    """
                    INSERT INTO offers (id, request_id, donor_id, status, message, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        offer.id,
                        offer.request_id,
                        offer.donor_id,
                        offer.status.value,
                        offer.message,
                        offer.created_at,
                    ),
                )
        except DatabaseError as e:
            if e.is_unique_violation:
                raise DuplicateOffer(
                    "You have already sent an offer for this request", operation="create_offer"
                ) from e
            raise

        return self._row_to_offer(row)

    async def commit_acceptance(
        self,
        request_id: str,
        offer_id: str,
        expected_version: int,
        responded_at: datetime,
    ) -> AcceptanceCommit | None:
        async with self.pool.transaction() as conn:
            updated = await fetch_one(
                conn,
                """
                UPDATE blood_requests r SET
                    fulfilled = TRUE,
                    fulfilled_at = %(at)s,
                    fulfilled_by = o.donor_id,
                    accepted_offer_id = o.id,
                    version = r.version + 1
                FROM offers o
                WHERE r.id = %(request_id)s
                  AND r.version = %(version)s
                  AND NOT r.fulfilled
                  AND o.id = %(offer_id)s
                  AND o.request_id = r.id
                  AND o.status = 'pending'
                RETURNING r.id
                """,
                {
                    "at": responded_at,
                    "request_id": request_id,
                    "version": expected_version,
                    "offer_id": offer_id,
                },
            )
            if updated is None:
                return None

            accepted = await fetch_one(
                conn,
                """
                UPDATE offers SET status = 'accepted', responded_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (responded_at, offer_id),
            )
            rejected = await fetch_all(
                conn,
                """
                UPDATE offers SET status = 'rejected', responded_at = %s
                WHERE request_id = %s AND id <> %s AND status = 'pending'
                RETURNING *
                """,
                (responded_at, request_id, offer_id),
            )
            request = await self._select_request(conn, request_id)

        return AcceptanceCommit(
            request=request,
            accepted_offer=self._row_to_offer(accepted),
            rejected_offers=[self._row_to_offer(row) for row in rejected],
        )
