"""Payment-side access to the per-asset booking tables.

Each asset type keeps bookings in its own table; callers go through the
dispatch table here instead of naming tables directly.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.models.booking import (
    ActivityBooking,
    BookingPaymentMixin,
    BookingStatus,
    BookingType,
    EventBooking,
    PackageBooking,
    RestaurantReservation,
    VehicleBooking,
)

BOOKING_MODELS: dict[BookingType, type[BookingPaymentMixin]] = {
    BookingType.activity: ActivityBooking,
    BookingType.event: EventBooking,
    BookingType.restaurant: RestaurantReservation,
    BookingType.vehicle: VehicleBooking,
    BookingType.package: PackageBooking,
}

# Plural asset names used in gateway metadata and coupon allow-lists.
ASSET_TYPE_ALIASES: dict[str, BookingType] = {
    "activities": BookingType.activity,
    "events": BookingType.event,
    "restaurants": BookingType.restaurant,
    "vehicles": BookingType.vehicle,
    "packages": BookingType.package,
}

PAYMENT_STATUS_MAP: dict[str, str] = {
    "approved": "paid",
    "in_process": "processing",
    "authorized": "authorized",
    "rejected": "failed",
    "cancelled": "cancelled",
    "refunded": "refunded",
    "charged_back": "charged_back",
    "pending": "pending",
}


def normalize_payment_status(gateway_status: str | None) -> str | None:
    if gateway_status is None:
        return None
    return PAYMENT_STATUS_MAP.get(gateway_status, gateway_status)


def resolve_booking_type(value: Any) -> BookingType | None:
    if value is None:
        return None
    if isinstance(value, BookingType):
        return value
    raw = str(value).strip().lower()
    if raw in ASSET_TYPE_ALIASES:
        return ASSET_TYPE_ALIASES[raw]
    try:
        return BookingType(raw)
    except ValueError:
        return None


def _as_uuid(value: Any) -> UUID | None:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


async def find_booking(session: AsyncSession, booking_id: Any, booking_type: Any) -> BookingPaymentMixin | None:
    kind = resolve_booking_type(booking_type)
    key = _as_uuid(booking_id)
    if kind is None or key is None:
        return None
    return await session.get(BOOKING_MODELS[kind], key)


async def find_booking_any_type(
    session: AsyncSession, booking_id: Any
) -> tuple[BookingPaymentMixin, BookingType] | None:
    key = _as_uuid(booking_id)
    if key is None:
        return None
    for kind, model in BOOKING_MODELS.items():
        booking = await session.get(model, key)
        if booking is not None:
            return booking, kind
    return None


async def find_booking_by_payment_id(
    session: AsyncSession, payment_id: str
) -> tuple[BookingPaymentMixin, BookingType] | None:
    for kind, model in BOOKING_MODELS.items():
        result = await session.execute(select(model).where(model.mp_payment_id == str(payment_id)))
        booking = result.scalars().first()
        if booking is not None:
            return booking, kind
    return None


def update_mp_info(
    booking: BookingPaymentMixin,
    *,
    payment_id: str | None = None,
    preference_id: str | None = None,
    payment_status: str | None = None,
) -> None:
    if payment_id:
        booking.mp_payment_id = str(payment_id)
    if preference_id:
        booking.mp_preference_id = str(preference_id)
    if payment_status:
        booking.payment_status = payment_status


def update_payment_status(
    booking: BookingPaymentMixin,
    payment_status: str | None,
    *,
    payment_id: str | None = None,
    receipt_url: str | None = None,
) -> None:
    if payment_status:
        booking.payment_status = payment_status
    if payment_id:
        booking.mp_payment_id = str(payment_id)
    if receipt_url:
        details = dict(booking.payment_details or {})
        details["receiptUrl"] = receipt_url
        booking.payment_details = details


def add_refund(
    booking: BookingPaymentMixin,
    *,
    refund_id: str,
    amount: Decimal | None,
    reason: str | None,
    refund_status: str | None,
) -> dict[str, Any]:
    now = datetime.now(timezone.utc).isoformat()
    entry: dict[str, Any] = {
        "refundId": str(refund_id),
        "amount": str(amount) if amount is not None else None,
        "reason": reason or "mercado_pago",
        "status": refund_status,
        "createdAt": now,
    }
    if refund_status in {"approved", "succeeded"}:
        entry["processedAt"] = now
    # Reassign so the JSON column is flagged dirty.
    booking.refunds = [*(booking.refunds or []), entry]
    if refund_status == "approved":
        booking.payment_status = "refunded"
    return entry


def update_booking_status(
    booking: BookingPaymentMixin,
    booking_status: BookingStatus,
    *,
    payment_status: str | None = None,
    partner_notes: str | None = None,
) -> None:
    booking.status = booking_status
    if payment_status:
        booking.payment_status = payment_status
    if partner_notes:
        booking.partner_notes = partner_notes
