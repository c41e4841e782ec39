from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateLoanDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolId: int
    quantity: int = Field(..., ge=1)
    daysToLoan: int = Field(..., ge=1)
    observations: Optional[str] = None


class RejectLoanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = None
