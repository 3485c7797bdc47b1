"""Pydantic models for provider webhook payloads."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _expandable_id(value: Any) -> Any:
    """Provider references arrive as ids or as expanded objects."""
    if isinstance(value, dict):
        return value.get("id")
    return value


class ProviderObject(BaseModel):
    """Common shape of provider objects; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def coerce_metadata(cls, v: Any) -> dict[str, str]:
        if not v:
            return {}
        return {str(k): str(val) for k, val in dict(v).items()}

    @property
    def booking_id(self) -> Optional[str]:
        return self.metadata.get("booking_id")


class CheckoutSessionObject(ProviderObject):
    payment_status: str = "unpaid"
    status: Optional[str] = None
    payment_intent: Optional[str] = None
    amount_total: Optional[int] = None
    client_reference_id: Optional[str] = None

    @field_validator("payment_intent", mode="before")
    @classmethod
    def collapse_expanded(cls, v: Any) -> Any:
        return _expandable_id(v)

    @property
    def is_paid(self) -> bool:
        return self.payment_status in ("paid", "no_payment_required")


class PaymentIntentObject(ProviderObject):
    amount: int = Field(default=0, ge=0)
    amount_received: int = Field(default=0, ge=0)
    amount_capturable: int = Field(default=0, ge=0)
    status: Optional[str] = None
    latest_charge: Optional[str] = None

    @field_validator("latest_charge", mode="before")
    @classmethod
    def collapse_expanded(cls, v: Any) -> Any:
        return _expandable_id(v)


class ChargeObject(ProviderObject):
    amount: int = Field(default=0, ge=0)
    amount_captured: int = Field(default=0, ge=0)
    amount_refunded: int = Field(default=0, ge=0)
    captured: bool = False
    refunded: bool = False
    payment_intent: Optional[str] = None

    @field_validator("payment_intent", mode="before")
    @classmethod
    def collapse_expanded(cls, v: Any) -> Any:
        return _expandable_id(v)


class RefundObject(ProviderObject):
    amount: int = Field(default=0, ge=0)
    status: str
    charge: Optional[str] = None
    payment_intent: Optional[str] = None

    @field_validator("charge", "payment_intent", mode="before")
    @classmethod
    def collapse_expanded(cls, v: Any) -> Any:
        return _expandable_id(v)


class DisputeObject(ProviderObject):
    amount: int = Field(default=0, ge=0)
    charge: Optional[str] = None
    payment_intent: Optional[str] = None
    reason: Optional[str] = None
    status: Optional[str] = None

    @field_validator("charge", "payment_intent", mode="before")
    @classmethod
    def collapse_expanded(cls, v: Any) -> Any:
        return _expandable_id(v)


class AccountObject(ProviderObject):
    """Connected account of a host."""

    details_submitted: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False

    @property
    def host_id(self) -> Optional[str]:
        return self.metadata.get("host_id")


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: dict[str, Any]


class WebhookEnvelope(BaseModel):
    """Signed provider event envelope."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    created: int
    livemode: bool = False
    api_version: Optional[str] = None
    data: EventData


class WebhookAck(BaseModel):
    """Response acknowledging a webhook delivery."""

    received: bool = True
    event_id: Optional[str] = None
    status: str = Field(..., description="applied, dropped, ignored, unresolved, duplicate or unrecognized")
    booking_id: Optional[str] = None
