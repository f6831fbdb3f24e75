# app/models/api/offer_response.py
"""
Offer API response models.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class OfferResponse(BaseModel):
    id: str = Field(..., description="Offer ID")
    request_id: str = Field(..., description="Blood request ID")
    donor_id: str = Field(..., description="Donor who made the offer")
    status: str = Field(..., description="pending, accepted or rejected")
    message: str = Field(default="", description="Donor's note")
    created_at: datetime = Field(..., description="When the offer was sent")
    responded_at: datetime | None = Field(None, description="When the offer was accepted/rejected")


class SendOfferResponse(BaseModel):
    message: str = Field(default="Offer sent successfully")
    offer: OfferResponse


class AcceptOfferResponse(BaseModel):
    message: str = Field(default="Offer accepted successfully")
    offer: OfferResponse
    request_id: str = Field(..., description="Fulfilled blood request ID")
    fulfilled_at: datetime | None = Field(None, description="When the request was fulfilled")
    rejected_offers: int = Field(..., description="Other pending offers that were rejected")


class OffersListResponse(BaseModel):
    offers: list[OfferResponse] = Field(default_factory=list)
    count: int = Field(..., description="Number of offers returned")
