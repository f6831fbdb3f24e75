# app/models/api/offer_request.py
"""
Offer API request models.
"""

from pydantic import BaseModel, Field


class SendOfferRequest(BaseModel):
    """A donor's offer to fulfil a blood request."""

    request_id: str = Field(..., min_length=1, alias="requestId", description="Blood request ID")
    message: str = Field(default="", max_length=1000, description="Optional note to the requester")

    model_config = {"populate_by_name": True}
