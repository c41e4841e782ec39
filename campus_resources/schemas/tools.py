from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(..., min_length=1, max_length=255)
    category: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    stockTotal: int = Field(..., ge=0)
    location: Optional[str] = None


class ToolPatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    category: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    location: Optional[str] = None
    stockTotal: Optional[int] = Field(None, ge=0)


class StockAdjustRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    operation: Literal["increase", "decrease"]
    amount: int = Field(..., gt=0)
