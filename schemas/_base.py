import datetime as dt
import re

from pydantic import BaseModel, ConfigDict

DATE_ONLY_REGEX = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_REGEX = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


class StrictRequestModel(BaseModel):
    """Request bodies and query strings. Unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, str_strip_whitespace=True)


def ensure_date_only(value: object, field_name: str) -> object:
    if isinstance(value, str):
        candidate = value.strip()
        if not DATE_ONLY_REGEX.fullmatch(candidate):
            raise ValueError(f"{field_name} must be in YYYY-MM-DD format")
        return candidate
    if isinstance(value, dt.date) and not isinstance(value, dt.datetime):
        return value
    raise ValueError(f"{field_name} must be in YYYY-MM-DD format")


def parse_hh_mm(value: object, field_name: str) -> dt.time:
    if isinstance(value, dt.time):
        return value
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be in HH:MM format (24-hour)")
    match = TIME_REGEX.fullmatch(value.strip())
    if not match:
        raise ValueError(f"{field_name} must be in HH:MM format (24-hour)")
    return dt.time(int(match.group(1)), int(match.group(2)))
