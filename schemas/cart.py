from pydantic import Field

from schemas._base import StrictRequestModel


class AddCartItemRequest(StrictRequestModel):
    slot_id: int = Field(alias="slotId", gt=0)
