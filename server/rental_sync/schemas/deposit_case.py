"""Deposit case Pydantic schemas."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.deposit_case import DepositCaseSource, DepositCaseStatus


class Resolution(str, Enum):
    """Final decision on a deposit case."""
    RETAINED = "retained"
    REVERSED = "reversed"


class FileDepositCaseRequest(BaseModel):
    """Request schema for a host claim against a deposit."""

    booking_id: str = Field(..., description="Completed booking the claim concerns")
    amount: int = Field(..., gt=0, description="Amount claimed in minor units")
    reason: str = Field(..., min_length=1, max_length=2000)


class ReviewDepositCaseRequest(BaseModel):
    case_id: str = Field(..., description="Case to take under review")


class ResolveDepositCaseRequest(BaseModel):
    case_id: str = Field(..., description="Case to resolve")
    resolution: Resolution
    note: Optional[str] = Field(None, max_length=2000)


class DepositCase(BaseModel):
    """Deposit case response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    source: DepositCaseSource
    status: DepositCaseStatus
    amount_claimed: int
    reason: str
    provider_dispute_id: Optional[str] = None
    filed_at: datetime
    reviewed_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None
