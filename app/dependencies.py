"""FastAPI dependencies resolving services from the app's container."""

from fastapi import Depends, Request

from app.container import ServiceContainer
from app.services.geolocation_service import GeoCollaborator
from app.services.matching_service import MatchingService
from app.services.offer_service import OfferService


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_matching_service(
    container: ServiceContainer = Depends(get_container),
) -> MatchingService:
    return container.matching


def get_offer_service(container: ServiceContainer = Depends(get_container)) -> OfferService:
    return container.offers


def get_geo(container: ServiceContainer = Depends(get_container)) -> GeoCollaborator:
    return container.geo
