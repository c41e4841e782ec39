import re
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")


def normalize_time(raw: str) -> str:
    """``H:MM`` or ``HH:MM`` to zero padded ``HH:MM``."""
    match = TIME_PATTERN.match((raw or "").strip())
    if not match:
        raise ValueError(f"'{raw}' is not a valid HH:MM time")
    return f"{int(match.group(1)):02d}:{match.group(2)}"


class CreateReservationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    roomId: int
    reservationDate: date = Field(..., alias="date")
    startTime: str
    endTime: str
    reason: str = Field(..., min_length=1, max_length=200)
    group: Optional[str] = Field(None, max_length=50)
    subject: Optional[str] = Field(None, max_length=100)

    @field_validator("startTime", "endTime")
    @classmethod
    def normalize_times(cls, value: str) -> str:
        return normalize_time(value)

    @model_validator(mode="after")
    def check_interval(self):
        if self.startTime >= self.endTime:
            raise ValueError("startTime must be earlier than endTime")
        return self


class ReservationStateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    state: str
    adminComment: Optional[str] = Field(None, max_length=500)
