from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateReportDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    machineNumber: str = Field(..., min_length=1, max_length=50)
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=500)
    priority: Literal["low", "medium", "high"] = "medium"
    category: Literal["hardware", "software", "network", "peripheral", "other"] = "other"


class ReportStatePatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    state: Literal["pending", "in_progress", "resolved"]
    technicianComment: Optional[str] = Field(None, max_length=300)
