"""Booking-related Pydantic schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..core.clock import to_naive_utc
from ..ledger.states import BookingStatus, PaymentStatus


class CreateBookingRequest(BaseModel):
    """Request schema for reserving a car, pending payment."""

    car_id: str = Field(..., min_length=1, max_length=64, description="Car to reserve")
    host_id: str = Field(..., min_length=1, max_length=64, description="Host owning the car")
    starts_at: datetime = Field(..., description="Start of the reservation (ISO 8601)")
    ends_at: datetime = Field(..., description="End of the reservation (ISO 8601)")
    amount_total: int = Field(..., ge=0, description="Amount to charge in minor units")
    deposit_amount: int = Field(0, ge=0, description="Security deposit included in the amount, minor units")

    @field_validator("starts_at", "ends_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

    @model_validator(mode="after")
    def validate_range(self) -> "CreateBookingRequest":
        if self.starts_at >= self.ends_at:
            raise ValueError("starts_at must be before ends_at")
        if self.deposit_amount > self.amount_total:
            raise ValueError("deposit_amount cannot exceed amount_total")
        return self


class CheckoutRequest(BaseModel):
    """Request schema for opening a checkout session."""

    booking_id: str = Field(..., description="Booking to pay for")


class CancelBookingRequest(BaseModel):
    """Request schema for cancelling a booking."""

    booking_id: str = Field(..., description="Booking to cancel")


class GetBookingRequest(BaseModel):
    """Request schema for getting a booking."""

    booking_id: str = Field(..., description="Booking to retrieve")


class Booking(BaseModel):
    """Booking response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Unique booking ID")
    car_id: str
    renter_id: str
    host_id: str
    starts_at: datetime
    ends_at: datetime
    status: BookingStatus = Field(..., description="Reservation status")
    payment_status: PaymentStatus = Field(..., description="Payment status")
    amount_total: int
    deposit_amount: int
    amount_captured: int
    amount_refunded: int
    checkout_session_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = Field(..., description="Concurrency token, increments on every change")
    created_at: datetime


class CheckoutSession(BaseModel):
    """Checkout session response schema."""

    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    provider_session_id: str
    url: Optional[str] = Field(None, description="Hosted checkout page")
    status: str
    expires_at: datetime
