from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class RoomCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    capacity: int = Field(..., ge=1)
    location: Optional[str] = None


class RoomActiveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    isActive: bool
