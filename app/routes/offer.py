"""
Offer API Routes
Donors offer to fulfil a request; the requester accepts exactly one offer.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.auth.verify import auth_dependency
from app.dependencies import get_offer_service
from app.infrastructure.observability.logging import get_logger
from app.models.api.offer_request import SendOfferRequest
from app.models.api.offer_response import (
    AcceptOfferResponse,
    OfferResponse,
    OffersListResponse,
    SendOfferResponse,
)
from app.models.domain.blood_domain import Offer, OfferStatus
from app.routes.errors import to_http_exception
from app.services.offer_service import OfferService

logger = get_logger(__name__)

router = APIRouter(prefix="/offer", tags=["offer"])


def _user_id(claims: dict) -> str:
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return user_id


def _offer_response(offer: Offer) -> OfferResponse:
    return OfferResponse(
        id=offer.id,
        request_id=offer.request_id,
        donor_id=offer.donor_id,
        status=offer.status.value,
        message=offer.message,
        created_at=offer.created_at,
        responded_at=offer.responded_at,
    )


def _offers_list(offers: list[Offer]) -> OffersListResponse:
    return OffersListResponse(
        offers=[_offer_response(offer) for offer in offers],
        count=len(offers),
    )


@router.post("/send", response_model=SendOfferResponse, status_code=status.HTTP_201_CREATED)
async def send_offer(
    body: SendOfferRequest,
    claims: dict = Depends(auth_dependency),
    offers: OfferService = Depends(get_offer_service),
):
    """
    Offer to donate for a blood request.

    At most one pending or accepted offer per donor and request; a second
    one is rejected with 409, as is any offer on a fulfilled request.
    """
    user_id = _user_id(claims)
    try:
        offer = await offers.send_offer(body.request_id, user_id, body.message)
    except Exception as e:
        raise to_http_exception(e, "send_offer", request_id=body.request_id, user_id=user_id) from e

    logger.info("Offer sent", offer_id=offer.id, request_id=offer.request_id, user_id=user_id)
    return SendOfferResponse(offer=_offer_response(offer))


@router.post("/accept/{offer_id}", response_model=AcceptOfferResponse)
async def accept_offer(
    offer_id: str,
    claims: dict = Depends(auth_dependency),
    offers: OfferService = Depends(get_offer_service),
):
    """Accept an offer on your own request. All other pending offers are rejected."""
    user_id = _user_id(claims)
    try:
        commit = await offers.accept_offer(offer_id, user_id)
    except Exception as e:
        raise to_http_exception(e, "accept_offer", offer_id=offer_id, user_id=user_id) from e

    return AcceptOfferResponse(
        offer=_offer_response(commit.accepted_offer),
        request_id=commit.request.id,
        fulfilled_at=commit.request.fulfilled_at,
        rejected_offers=len(commit.rejected_offers),
    )


@router.get("/request/{request_id}", response_model=OffersListResponse)
async def list_request_offers(
    request_id: str,
    claims: dict = Depends(auth_dependency),
    offers: OfferService = Depends(get_offer_service),
):
    """Offers received on one of the caller's requests."""
    user_id = _user_id(claims)
    try:
        found = await offers.list_offers_for_request(request_id, user_id)
    except Exception as e:
        raise to_http_exception(e, "list_request_offers", request_id=request_id) from e

    return _offers_list(found)


@router.get("/my-offers", response_model=OffersListResponse)
async def list_my_offers(
    offer_status: OfferStatus | None = Query(default=None, alias="status"),
    claims: dict = Depends(auth_dependency),
    offers: OfferService = Depends(get_offer_service),
):
    user_id = _user_id(claims)
    try:
        found = await offers.list_offers_for_donor(user_id, offer_status)
    except Exception as e:
        raise to_http_exception(e, "list_my_offers", user_id=user_id) from e

    return _offers_list(found)
