from __future__ import annotations

from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from tourpay.models.booking import BookingType


class BackUrls(BaseModel):
    success: str
    pending: str
    failure: str


class PreferenceCreate(BaseModel):
    booking_id: UUID
    booking_type: BookingType
    title: str = Field(min_length=1, max_length=255)
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal = Field(gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    back_urls: BackUrls | None = None
    capture_mode: Literal["manual", "automatic"] = "manual"
    metadata: dict[str, Any] = Field(default_factory=dict)


class PreferenceResponse(BaseModel):
    preference_id: str
    init_point: str | None = None
    sandbox_init_point: str | None = None
    redirect_url: str | None = None


class PayerIdentification(BaseModel):
    type: str
    number: str


class Payer(BaseModel):
    email: str
    identification: PayerIdentification | None = None


class CardPaymentCreate(BaseModel):
    booking_id: UUID
    booking_type: BookingType
    token: str | None = None
    payment_method_id: str = Field(min_length=1, max_length=50)
    issuer_id: str | None = None
    amount: Decimal = Field(gt=0)
    installments: int = Field(default=1, ge=1)
    payer: Payer | None = None
    description: str = Field(min_length=1, max_length=255)
    metadata: dict[str, Any] = Field(default_factory=dict)


class CardPaymentResponse(BaseModel):
    payment_id: str
    status: str | None = None
    status_detail: str | None = None
    payment_status: str | None = None
    requires_manual_capture: bool = False
    pix_qr_code: str | None = None
    pix_qr_code_base64: str | None = None
    boleto_url: str | None = None


class CaptureRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)


class RefundCreate(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=255)


class GatewayPaymentResponse(BaseModel):
    payment_id: str
    status: str | None = None
    payment_status: str | None = None


class RefundResponse(BaseModel):
    refund_id: str | None = None
    status: str | None = None
    amount: Decimal | None = None
    booking_id: str | None = None


class BookingDecisionRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class BookingDecisionResponse(BaseModel):
    success: bool
    error: str | None = None
    booking_status: str | None = None
    payment_status: str | None = None


class MercadoPagoNotification(BaseModel):
    """Inbound notification body, current (``type``/``data``) or legacy (``topic``/``resource``) shape."""

    model_config = ConfigDict(extra="allow")

    id: str | int | None = None
    type: str | None = None
    action: str | None = None
    data: dict[str, Any] | None = None
    api_version: str | None = None
    date_created: str | None = None
    live_mode: bool | None = None
    user_id: str | int | None = None
    topic: str | None = None
    resource: str | int | None = None

    @property
    def is_legacy(self) -> bool:
        return self.topic is not None and self.resource is not None and not self.data

    @property
    def has_event_id(self) -> bool:
        """False when deduplication has to fall back to an id naming the payment itself."""
        return self.id is not None and bool(str(self.id).strip())

    @property
    def event_type(self) -> str | None:
        return self.type or self.topic

    def event_id(self, fallback: str | None = None) -> str | None:
        """Id used for deduplication.

        Legacy notifications carry no event id of their own; they fall back to
        the query string id, then to ``{topic}:{resource}``.
        """
        if self.id is not None and str(self.id).strip():
            return str(self.id).strip()
        if fallback and fallback.strip():
            return fallback.strip()
        if self.is_legacy:
            resource_id = self.payment_id()
            if resource_id:
                return f"{self.topic}:{resource_id}"
        return None

    def payment_id(self) -> str | None:
        if self.data and self.data.get("id") is not None:
            return str(self.data["id"]).strip() or None
        if self.resource is not None:
            # Older deliveries send the full resource URL.
            return str(self.resource).rstrip("/").rsplit("/", 1)[-1].strip() or None
        return None

    def is_payment_event(self) -> bool:
        return self.event_type == "payment" or (self.action or "").startswith("payment.")
