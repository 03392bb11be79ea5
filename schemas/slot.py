import datetime as dt
from typing import Optional

from pydantic import Field, field_validator, model_validator

from models.slot import SlotStatus
from schemas._base import StrictRequestModel, ensure_date_only, parse_hh_mm


class OpenSlotRequest(StrictRequestModel):
    date: dt.date
    start_time: dt.time = Field(alias="startTime")

    @field_validator("date", mode="before")
    @classmethod
    def _date_only(cls, value):
        return ensure_date_only(value, "date")

    @field_validator("start_time", mode="before")
    @classmethod
    def _hh_mm(cls, value):
        return parse_hh_mm(value, "startTime")


class SlotQuery(StrictRequestModel):
    date: Optional[dt.date] = None
    start_date: Optional[dt.date] = Field(default=None, alias="startDate")
    end_date: Optional[dt.date] = Field(default=None, alias="endDate")

    @field_validator("date", "start_date", "end_date", mode="before")
    @classmethod
    def _date_only(cls, value, info):
        if value is None or value == "":
            return None
        return ensure_date_only(value, info.field_name)

    @model_validator(mode="after")
    def _range(self):
        if self.date is not None and (self.start_date is not None or self.end_date is not None):
            raise ValueError("Use either date or startDate/endDate, not both")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("startDate must not be after endDate")
        return self


class MentorSlotQuery(SlotQuery):
    status: Optional[SlotStatus] = None
