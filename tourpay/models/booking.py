import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, DateTime, Enum, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from tourpay.db.base import Base


class BookingType(str, enum.Enum):
    activity = "activity"
    event = "event"
    restaurant = "restaurant"
    vehicle = "vehicle"
    package = "package"


class BookingStatus(str, enum.Enum):
    pending = "pending"
    awaiting_confirmation = "awaiting_confirmation"
    confirmed = "confirmed"
    canceled = "canceled"
    completed = "completed"


class BookingPaymentMixin:
    """Columns shared by every bookable asset table.

    Bookings belong to the reservation domain; payment flows only patch
    ``payment_status``, the MercadoPago identifiers, ``payment_details`` and
    append to ``refunds``.
    """

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    asset_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, native_enum=False), nullable=False, default=BookingStatus.pending
    )
    # Free-form: unknown gateway statuses are stored as received.
    payment_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    confirmation_code: Mapped[str | None] = mapped_column(String(40), nullable=True)

    mp_payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    mp_preference_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payment_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    refunds: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    partner_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class ActivityBooking(BookingPaymentMixin, Base):
    __tablename__ = "activity_bookings"


class EventBooking(BookingPaymentMixin, Base):
    __tablename__ = "event_bookings"


class RestaurantReservation(BookingPaymentMixin, Base):
    __tablename__ = "restaurant_reservations"


class VehicleBooking(BookingPaymentMixin, Base):
    __tablename__ = "vehicle_bookings"


class PackageBooking(BookingPaymentMixin, Base):
    __tablename__ = "package_bookings"
