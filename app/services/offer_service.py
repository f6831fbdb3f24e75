"""
Request/offer state machine.

request: open -> fulfilled (terminal)
offer:   pending -> accepted | rejected (both terminal)

Both writes go through conditional repository operations; notifications are
enqueued only after the write has committed, and a failure to enqueue never
undoes or fails the transition.
"""

import uuid
from datetime import UTC, datetime

from app.infrastructure.observability.logging import get_logger
from app.jobs.dispatch_pipeline import DispatchPipeline
from app.models.domain.blood_domain import BloodRequest, Offer, OfferStatus, Urgency
from app.models.domain.job_domain import ChannelType
from app.repositories.blood_repository import AcceptanceCommit, BloodRepository
from app.services.errors import (
    ConflictError,
    NotFoundError,
    OfferNotPending,
    PermissionDenied,
    RequestAlreadyFulfilled,
    ValidationError,
)
from app.services.notification_channel import contact_for

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 1000


class OfferService:
    def __init__(
        self,
        repository: BloodRepository,
        pipeline: DispatchPipeline,
        max_cas_retries: int = 3,
    ):
        self.repository = repository
        self.pipeline = pipeline
        self.max_cas_retries = max_cas_retries

    async def send_offer(self, request_id: str, donor_id: str, message: str = "") -> Offer:
        """
        Create a pending offer from donor_id on request_id.

        Raises:
            ValidationError: Message too long or donor offering on their own request
            NotFoundError: Unknown donor or request
            RequestAlreadyFulfilled: Request is no longer open
            DuplicateOffer: Donor already has a pending/accepted offer on it
        """
        message = (message or "").strip()
        if len(message) > MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message must be at most {MAX_MESSAGE_LENGTH} characters", operation="send_offer"
            )

        donor = await self.repository.get_donor(donor_id)
        if not donor:
            raise NotFoundError("Donor not found", operation="send_offer")

        request = await self.repository.get_request(request_id)
        if not request:
            raise NotFoundError("Blood request not found", operation="send_offer")
        if request.requester_id == donor_id:
            raise ValidationError(
                "You cannot send an offer for your own request", operation="send_offer"
            )

        offer = await self.repository.create_offer_if_open(
            Offer(
                id=str(uuid.uuid4()),
                request_id=request_id,
                donor_id=donor_id,
                message=message,
            )
        )

        logger.info("Offer sent", offer_id=offer.id, request_id=request_id, donor_id=donor_id)

        await self._notify_requester(
            request,
            "new-offer-received",
            {
                "donorName": donor.name,
                "donorBloodType": donor.blood_type.value,
                "message": message or "No message provided",
                "requestBloodType": request.blood_type.value,
                "hospital": request.hospital,
                "offerId": offer.id,
                "requestId": request.id,
            },
        )
        return offer

    async def accept_offer(self, offer_id: str, actor_id: str) -> AcceptanceCommit:
        """
        Accept an offer, fulfil its request and reject the request's other pending offers.

        The three changes are committed by one compare-and-swap on the request
        version. A lost swap re-reads state, so a caller that raced another
        acceptance ends with RequestAlreadyFulfilled.

        Raises:
            NotFoundError: Unknown offer or request
            PermissionDenied: actor is not the requester
            RequestAlreadyFulfilled: Request already fulfilled
            OfferNotPending: Offer already accepted or rejected
            ConflictError: Request kept changing across every retry
        """
        for attempt in range(self.max_cas_retries + 1):
            offer = await self.repository.get_offer(offer_id)
            if not offer:
                raise NotFoundError("Offer not found", operation="accept_offer")

            request = await self.repository.get_request(offer.request_id)
            if not request:
                raise NotFoundError("Blood request not found", operation="accept_offer")
            if request.requester_id != actor_id:
                raise PermissionDenied("Access denied", operation="accept_offer")
            if request.fulfilled:
                raise RequestAlreadyFulfilled(
                    "Blood request already fulfilled", operation="accept_offer"
                )
            if offer.status is not OfferStatus.PENDING:
                raise OfferNotPending(
                    f"Offer is already {offer.status.value}", operation="accept_offer"
                )

            commit = await self.repository.commit_acceptance(
                request.id, offer.id, request.version, datetime.now(UTC)
            )
            if commit is not None:
                break

            logger.info(
                "Offer acceptance lost a concurrent update, re-reading",
                offer_id=offer_id,
                request_id=request.id,
                attempt=attempt + 1,
            )
        else:
            raise ConflictError(
                "Blood request is being updated concurrently, please retry",
                operation="accept_offer",
            )

        logger.info(
            "Offer accepted",
            offer_id=commit.accepted_offer.id,
            request_id=commit.request.id,
            rejected=len(commit.rejected_offers),
        )

        await self._notify_acceptance(commit)
        return commit

    async def list_offers_for_request(self, request_id: str, actor_id: str) -> list[Offer]:
        """Offers on a request, newest first. Only the requester may list them."""
        request = await self.repository.get_request(request_id)
        if not request:
            raise NotFoundError("Blood request not found", operation="list_offers")
        if request.requester_id != actor_id:
            raise PermissionDenied("Access denied", operation="list_offers")
        return await self.repository.list_offers_for_request(request_id)

    async def list_offers_for_donor(
        self, donor_id: str, status: OfferStatus | None = None
    ) -> list[Offer]:
        return await self.repository.list_offers_for_donor(donor_id, status)

    # ------------------------------------------------------------ notifications

    async def _notify_acceptance(self, commit: AcceptanceCommit) -> None:
        request = commit.request
        offer = commit.accepted_offer
        donor = await self.repository.get_donor(offer.donor_id)
        donor_name = donor.name if donor else "Donor"

        if donor:
            await self._notify_donor(
                request,
                donor.id,
                "offer-accepted",
                {
                    "donorName": donor_name,
                    "bloodType": request.blood_type.value,
                    "hospital": request.hospital,
                    "address": request.address,
                    "contactPhone": request.contact_phone,
                    "offerId": offer.id,
                    "requestId": request.id,
                },
            )

        await self._notify_requester(
            request,
            "request-fulfilled",
            {
                "donorName": donor_name,
                "donorPhone": donor.phone if donor else None,
                "donorEmail": donor.email if donor else None,
                "bloodType": request.blood_type.value,
                "offerId": offer.id,
                "requestId": request.id,
            },
        )

        for rejected in commit.rejected_offers:
            await self._notify_donor(
                request,
                rejected.donor_id,
                "offer-rejected",
                {
                    "bloodType": request.blood_type.value,
                    "hospital": request.hospital,
                    "offerId": rejected.id,
                    "requestId": request.id,
                },
                urgency=Urgency.LOW,
            )

    async def _notify_requester(self, request: BloodRequest, template_id: str, data: dict) -> None:
        contact = None
        if request.contact_email:
            contact = (ChannelType.EMAIL, request.contact_email)
        elif request.contact_phone:
            contact = (ChannelType.SMS, request.contact_phone)
        else:
            requester = await self.repository.get_donor(request.requester_id)
            if requester:
                contact = contact_for(requester)

        if contact is None:
            logger.warning(
                "Requester has no contact details, skipping notification",
                request_id=request.id,
                template_id=template_id,
            )
            return

        await self._enqueue(request, contact, template_id, data, request.urgency)

    async def _notify_donor(
        self,
        request: BloodRequest,
        donor_id: str,
        template_id: str,
        data: dict,
        urgency: Urgency | None = None,
    ) -> None:
        donor = await self.repository.get_donor(donor_id)
        contact = contact_for(donor) if donor else None
        if contact is None:
            logger.warning(
                "Donor has no contact details, skipping notification",
                donor_id=donor_id,
                template_id=template_id,
            )
            return

        await self._enqueue(request, contact, template_id, data, urgency or request.urgency)

    async def _enqueue(
        self,
        request: BloodRequest,
        contact: tuple[ChannelType, str],
        template_id: str,
        data: dict,
        urgency: Urgency,
    ) -> None:
        channel, recipient = contact
        job = self.pipeline.job_for_urgency(
            urgency,
            channel=channel,
            recipient=recipient,
            template_id=template_id,
            data=data,
            request_id=request.id,
            queue="notification",
        )
        try:
            await self.pipeline.enqueue(job)
        except Exception as e:
            # the transition already committed; the notification is lost, not the offer
            logger.error(
                "Failed to enqueue offer notification",
                request_id=request.id,
                template_id=template_id,
                error=str(e),
            )
