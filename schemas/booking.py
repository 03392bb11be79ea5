from typing import List, Optional

from pydantic import Field, PositiveInt

from models.booking import BookingStatus
from schemas._base import StrictRequestModel


class CheckoutRequest(StrictRequestModel):
    cart_item_ids: List[PositiveInt] = Field(alias="cartItemIds", min_length=1, max_length=50)


class CancelRequest(StrictRequestModel):
    reason: Optional[str] = Field(default=None, max_length=120)


class BookingQuery(StrictRequestModel):
    status: Optional[BookingStatus] = None


class AdminBookingQuery(BookingQuery):
    limit: int = Field(default=50, ge=1, le=200)
    offset: int = Field(default=0, ge=0)
